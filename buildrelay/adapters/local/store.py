from __future__ import annotations

import json
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Sequence

from buildrelay.common.time_utils import expiry_after, format_iso8601, parse_iso8601, utcnow
from buildrelay.pipeline.transport import ArtifactInfo, ArtifactNotFoundError, ArtifactStoreError

logger = logging.getLogger(__name__)

_META = "artifact.json"


@dataclass
class LocalArtifactStore:
    """RemoteStore kept in a directory: one sub-directory per artifact name.

    Useful for running the relay on a workstation, where "remote" is a disk
    that outlives the build directory.
    """

    root: Path
    now: Callable[[], datetime] = field(default=utcnow)

    def _slot(self, name: str) -> Path:
        if not name or "/" in name or name in (".", ".."):
            raise ArtifactStoreError(f"Invalid artifact name: {name!r}")
        return self.root / name

    def _read_meta(self, slot: Path) -> dict[str, object] | None:
        meta_path = slot / _META
        if not meta_path.exists():
            return None
        try:
            meta = json.loads(meta_path.read_text())
            expires_at = meta.get("expires_at")
            expired = bool(expires_at) and parse_iso8601(str(expires_at)) <= self.now()
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            raise ArtifactStoreError(f"Unreadable artifact metadata {meta_path}: {exc}") from exc
        if expired:
            logger.info("Artifact %s expired at %s", meta.get("name"), expires_at)
            return None
        return meta

    def get_artifact(self, name: str) -> ArtifactInfo:
        meta = self._read_meta(self._slot(name))
        if meta is None:
            raise ArtifactNotFoundError(f"Artifact not found: {name}")
        try:
            return ArtifactInfo(
                artifact_id=str(meta["id"]),
                name=str(meta["name"]),
                size=int(meta.get("size", 0)),  # type: ignore[arg-type]
                created_at=parse_iso8601(str(meta["created_at"])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ArtifactStoreError(f"Incomplete metadata for artifact {name}: {exc}") from exc

    def _find_by_id(self, artifact_id: str) -> Path:
        if self.root.exists():
            for slot in sorted(self.root.iterdir()):
                meta = self._read_meta(slot) if slot.is_dir() else None
                if meta is not None and str(meta.get("id")) == artifact_id:
                    return slot
        raise ArtifactNotFoundError(f"Artifact id not found: {artifact_id}")

    def download(self, artifact_id: str, dest_dir: Path) -> list[Path]:
        slot = self._find_by_id(artifact_id)
        dest_dir.mkdir(parents=True, exist_ok=True)
        out: list[Path] = []
        try:
            for src in sorted((slot / "files").rglob("*")):
                if src.is_dir():
                    continue
                target = dest_dir / src.relative_to(slot / "files")
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, target)
                out.append(target)
        except OSError as exc:
            raise ArtifactStoreError(f"Download of {artifact_id} failed: {exc}") from exc
        return out

    def upload(
        self,
        name: str,
        files: Sequence[Path],
        root_dir: Path,
        *,
        retention_days: int,
        compression_level: int = 0,
    ) -> ArtifactInfo:
        slot = self._slot(name)
        if self._read_meta(slot) is not None:
            raise ArtifactStoreError(f"Artifact {name} already exists")

        created = self.now()
        staging = self.root / f".{name}.{uuid.uuid4().hex}"
        size = 0
        try:
            staging.mkdir(parents=True)
            for f in files:
                rel = Path(f).resolve().relative_to(Path(root_dir).resolve())
                target = staging / "files" / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(f, target)
                size += target.stat().st_size
            meta = {
                "id": uuid.uuid4().hex,
                "name": name,
                "size": size,
                "created_at": format_iso8601(created),
                "expires_at": format_iso8601(expiry_after(retention_days, now=created)),
            }
            (staging / _META).write_text(json.dumps(meta, indent=2, sort_keys=True))
            shutil.rmtree(slot, ignore_errors=True)
            staging.replace(slot)
        except (OSError, ValueError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise ArtifactStoreError(f"Upload of {name} failed: {exc}") from exc
        return ArtifactInfo(artifact_id=str(meta["id"]), name=name, size=size, created_at=created)

    def delete(self, name: str) -> None:
        slot = self._slot(name)
        if not slot.exists():
            raise ArtifactNotFoundError(f"Artifact not found: {name}")
        try:
            shutil.rmtree(slot)
        except OSError as exc:
            raise ArtifactStoreError(f"Delete of {name} failed: {exc}") from exc
