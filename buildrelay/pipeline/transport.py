from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol, Sequence

from buildrelay.pipeline.errors import ResumptionError

logger = logging.getLogger(__name__)


class ArtifactStoreError(RuntimeError):
    """A remote store call failed; usually transient."""


class ArtifactNotFoundError(ArtifactStoreError):
    pass


@dataclass(frozen=True)
class ArtifactInfo:
    artifact_id: str
    name: str
    size: int = 0
    created_at: datetime | None = None


class RemoteStore(Protocol):
    """Named blob store shared by successive invocations of one build."""

    def get_artifact(self, name: str) -> ArtifactInfo:
        ...

    def download(self, artifact_id: str, dest_dir: Path) -> list[Path]:
        ...

    def upload(
        self,
        name: str,
        files: Sequence[Path],
        root_dir: Path,
        *,
        retention_days: int,
        compression_level: int = 0,
    ) -> ArtifactInfo:
        ...

    def delete(self, name: str) -> None:
        ...


@dataclass
class ArtifactTransport:
    """Bounded-retry publishing and fetching on top of a RemoteStore.

    A name holds at most one live artifact: every publish attempt deletes
    whatever is registered under the name before uploading. Delete failures
    are ignored (there may be nothing to delete yet).
    """

    store: RemoteStore
    attempts: int = 5
    retry_delay_s: float = 10.0
    compression_level: int = 0
    sleep: Callable[[float], None] = time.sleep

    def publish(self, name: str, files: Sequence[Path], root_dir: Path, *, retention_days: int) -> bool:
        for attempt in range(1, self.attempts + 1):
            try:
                self.store.delete(name)
            except ArtifactStoreError as exc:
                logger.debug("Delete of %s before upload failed: %s", name, exc)
            try:
                info = self.store.upload(
                    name,
                    files,
                    root_dir,
                    retention_days=retention_days,
                    compression_level=self.compression_level,
                )
            except ArtifactStoreError as exc:
                logger.error("Upload of %s failed (attempt %d/%d): %s", name, attempt, self.attempts, exc)
                if attempt < self.attempts:
                    self.sleep(self.retry_delay_s)
                continue
            logger.info("Uploaded artifact %s (id=%s, %d bytes)", name, info.artifact_id, info.size)
            return True

        logger.error("Giving up on artifact %s after %d attempts", name, self.attempts)
        return False

    def fetch(self, name: str, dest_dir: Path) -> list[Path]:
        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                info = self.store.get_artifact(name)
                files = self.store.download(info.artifact_id, dest_dir)
            except ArtifactNotFoundError as exc:
                raise ResumptionError(f"No artifact named {name!r} to resume from") from exc
            except ArtifactStoreError as exc:
                last_error = exc
                logger.error("Download of %s failed (attempt %d/%d): %s", name, attempt, self.attempts, exc)
                if attempt < self.attempts:
                    self.sleep(self.retry_delay_s)
                continue
            logger.info("Downloaded artifact %s (id=%s, %d files)", name, info.artifact_id, len(files))
            return files

        raise ResumptionError(f"Could not download artifact {name!r}: {last_error}")
