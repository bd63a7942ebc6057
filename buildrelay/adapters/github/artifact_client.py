from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import requests

from buildrelay.common.time_utils import expiry_after, format_iso8601, parse_iso8601, utcnow
from buildrelay.pipeline.transport import ArtifactInfo, ArtifactNotFoundError, ArtifactStoreError

logger = logging.getLogger(__name__)

_SERVICE = "github.actions.results.api.v1.ArtifactService"
_BLOCK_SIZE = 32 * 1024 * 1024


def _pick(data: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    # Twirp answers with proto field names; accept the JSON names too.
    if snake in data:
        return data[snake]
    return data.get(camel, default)


def backend_ids_from_token(token: str) -> tuple[str, str]:
    """Extract (workflow run, job run) backend ids from the runtime token.

    The token is a JWT whose ``scp`` claim holds space separated scopes, one of
    them ``Actions.Results:<run backend id>:<job backend id>``.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise ArtifactStoreError("ACTIONS_RUNTIME_TOKEN is not a JWT")
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except ValueError as exc:
        raise ArtifactStoreError(f"Cannot decode ACTIONS_RUNTIME_TOKEN: {exc}") from exc

    for scope in str(claims.get("scp", "")).split():
        pieces = scope.split(":")
        if pieces[0] == "Actions.Results" and len(pieces) == 3:
            return pieces[1], pieces[2]
    raise ArtifactStoreError("ACTIONS_RUNTIME_TOKEN has no Actions.Results scope")


@dataclass
class GitHubArtifactStore:
    """RemoteStore over the GitHub Actions artifact (v4) results service.

    Artifacts are scoped to the current workflow run, which is what lets the
    successive jobs of one relay see each other's checkpoints.
    """

    token: str
    results_url: str
    run_backend_id: str
    job_backend_id: str
    user_agent: str = "buildrelay"
    timeout_s: float = 120.0
    session: requests.Session = field(default_factory=requests.Session)

    @classmethod
    def from_env(cls) -> "GitHubArtifactStore":
        token = os.environ.get("ACTIONS_RUNTIME_TOKEN", "")
        results_url = os.environ.get("ACTIONS_RESULTS_URL", "")
        if not token or not results_url:
            raise ArtifactStoreError(
                "ACTIONS_RUNTIME_TOKEN and ACTIONS_RESULTS_URL must be set (run inside GitHub Actions)"
            )
        run_id, job_id = backend_ids_from_token(token)
        return cls(token=token, results_url=results_url, run_backend_id=run_id, job_backend_id=job_id)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }

    def _ids(self) -> dict[str, Any]:
        return {
            "workflow_run_backend_id": self.run_backend_id,
            "workflow_job_run_backend_id": self.job_backend_id,
        }

    def call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.results_url.rstrip('/')}/twirp/{_SERVICE}/{method}"
        try:
            resp = self.session.post(url, headers=self._headers(), json=payload, timeout=self.timeout_s)
        except requests.RequestException as exc:
            raise ArtifactStoreError(f"{method} failed: {exc}") from exc

        if resp.status_code >= 400:
            code = ""
            try:
                code = str(resp.json().get("code", ""))
            except ValueError:
                pass
            msg = f"{method} failed: {resp.status_code} {resp.text}"
            if resp.status_code == 404 or code == "not_found":
                raise ArtifactNotFoundError(msg)
            raise ArtifactStoreError(msg)
        try:
            return resp.json()
        except ValueError as exc:
            raise ArtifactStoreError(f"{method} returned a non-JSON body: {exc}") from exc

    def _list(self, **filters: Any) -> list[dict[str, Any]]:
        data = self.call("ListArtifacts", {**self._ids(), **filters})
        return list(data.get("artifacts") or [])

    @staticmethod
    def _to_info(raw: dict[str, Any]) -> ArtifactInfo:
        created_at = None
        created = _pick(raw, "created_at", "createdAt")
        if created:
            try:
                created_at = parse_iso8601(str(created))
            except ValueError:
                logger.debug("Unparseable created_at: %s", created)
        return ArtifactInfo(
            artifact_id=str(_pick(raw, "database_id", "databaseId")),
            name=str(raw.get("name", "")),
            size=int(raw.get("size") or 0),
            created_at=created_at,
        )

    def get_artifact(self, name: str) -> ArtifactInfo:
        found = [self._to_info(a) for a in self._list(name_filter=name)]
        found = [a for a in found if a.name == name]
        if not found:
            raise ArtifactNotFoundError(f"Artifact not found: {name}")
        return max(found, key=lambda a: int(a.artifact_id))

    def download(self, artifact_id: str, dest_dir: Path) -> list[Path]:
        matches = self._list(id_filter=artifact_id)
        if not matches:
            raise ArtifactNotFoundError(f"Artifact id not found: {artifact_id}")
        name = str(matches[0].get("name", ""))
        signed = self.call("GetSignedArtifactURL", {**self._ids(), "name": name})
        url = _pick(signed, "signed_url", "signedUrl")
        if not url:
            raise ArtifactStoreError(f"No download URL for artifact {name}")

        dest_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="buildrelay-") as tmp:
            zip_path = Path(tmp) / "artifact.zip"
            try:
                with self.session.get(url, stream=True, timeout=self.timeout_s) as resp:
                    if resp.status_code >= 400:
                        raise ArtifactStoreError(f"Blob download failed: {resp.status_code}")
                    with open(zip_path, "wb") as fh:
                        for chunk in resp.iter_content(chunk_size=1024 * 1024):
                            fh.write(chunk)
                with zipfile.ZipFile(zip_path) as zf:
                    names = [n for n in zf.namelist() if not n.endswith("/")]
                    zf.extractall(dest_dir)
            except (requests.RequestException, OSError, zipfile.BadZipFile) as exc:
                raise ArtifactStoreError(f"Download of {name} failed: {exc}") from exc
        logger.info("Downloaded %s into %s", name, dest_dir)
        return [dest_dir / n for n in names]

    def upload(
        self,
        name: str,
        files: Sequence[Path],
        root_dir: Path,
        *,
        retention_days: int,
        compression_level: int = 0,
    ) -> ArtifactInfo:
        expires = expiry_after(retention_days)
        created = self.call(
            "CreateArtifact",
            {
                **self._ids(),
                "name": name,
                "version": 4,
                "expires_at": format_iso8601(expires),
            },
        )
        upload_url = _pick(created, "signed_upload_url", "signedUploadUrl")
        if not created.get("ok") or not upload_url:
            raise ArtifactStoreError(f"CreateArtifact refused {name}: {created}")

        with tempfile.TemporaryDirectory(prefix="buildrelay-") as tmp:
            zip_path = Path(tmp) / "artifact.zip"
            try:
                _write_zip(zip_path, files, root_dir, compression_level)
            except (OSError, ValueError) as exc:
                raise ArtifactStoreError(f"Cannot zip {name}: {exc}") from exc
            size, digest = self._put_blob(upload_url, zip_path)

        final = self.call(
            "FinalizeArtifact",
            {**self._ids(), "name": name, "size": str(size), "hash": f"sha256:{digest}"},
        )
        if not final.get("ok"):
            raise ArtifactStoreError(f"FinalizeArtifact refused {name}: {final}")
        return ArtifactInfo(
            artifact_id=str(_pick(final, "artifact_id", "artifactId")),
            name=name,
            size=size,
            created_at=utcnow(),
        )

    def _put_blob(self, upload_url: str, zip_path: Path) -> tuple[int, str]:
        """Upload a file as staged blocks to a signed Azure blob URL."""
        sha = hashlib.sha256()
        size = 0
        block_ids: list[str] = []
        try:
            with open(zip_path, "rb") as fh:
                while True:
                    chunk = fh.read(_BLOCK_SIZE)
                    if not chunk:
                        break
                    sha.update(chunk)
                    size += len(chunk)
                    block_id = base64.b64encode(f"{len(block_ids):08d}".encode("ascii")).decode("ascii")
                    resp = self.session.put(
                        upload_url,
                        params={"comp": "block", "blockid": block_id},
                        data=chunk,
                        timeout=self.timeout_s,
                    )
                    if resp.status_code >= 400:
                        raise ArtifactStoreError(f"Block upload failed: {resp.status_code} {resp.text}")
                    block_ids.append(block_id)

            body = '<?xml version="1.0" encoding="utf-8"?><BlockList>'
            body += "".join(f"<Latest>{b}</Latest>" for b in block_ids)
            body += "</BlockList>"
            resp = self.session.put(
                upload_url,
                params={"comp": "blocklist"},
                data=body.encode("utf-8"),
                headers={"x-ms-blob-content-type": "application/zip"},
                timeout=self.timeout_s,
            )
        except (requests.RequestException, OSError) as exc:
            raise ArtifactStoreError(f"Blob upload failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ArtifactStoreError(f"Block list commit failed: {resp.status_code} {resp.text}")
        return size, sha.hexdigest()

    def delete(self, name: str) -> None:
        data = self.call("DeleteArtifact", {**self._ids(), "name": name})
        if not data.get("ok"):
            raise ArtifactStoreError(f"DeleteArtifact refused {name}: {data}")
        logger.info("Deleted artifact %s", name)


def _write_zip(zip_path: Path, files: Sequence[Path], root_dir: Path, compression_level: int) -> None:
    root = Path(root_dir).resolve()
    if compression_level <= 0:
        zf = zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_STORED, allowZip64=True)
    else:
        zf = zipfile.ZipFile(
            zip_path,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compression_level,
            allowZip64=True,
        )
    with zf:
        for f in files:
            arcname = Path(f).resolve().relative_to(root).as_posix()
            zf.write(f, arcname=arcname)
