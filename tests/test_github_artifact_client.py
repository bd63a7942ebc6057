from __future__ import annotations

import base64
import io
import json
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from buildrelay.adapters.github.artifact_client import GitHubArtifactStore, backend_ids_from_token
from buildrelay.pipeline.transport import ArtifactNotFoundError, ArtifactStoreError, ArtifactTransport


def _jwt(claims: dict[str, Any]) -> str:
    def enc(obj: dict[str, Any]) -> str:
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")

    return f"{enc({'alg': 'none'})}.{enc(claims)}.sig"


@dataclass
class _Resp:
    status_code: int
    payload: Any = None
    content: bytes = b""

    @property
    def text(self) -> str:
        return json.dumps(self.payload) if self.payload is not None else ""

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("no json")
        return self.payload

    def iter_content(self, chunk_size: int = 1) -> Any:
        yield self.content

    def __enter__(self) -> "_Resp":
        return self

    def __exit__(self, *exc: object) -> None:
        return None


@dataclass
class _FakeSession:
    """Tiny in-memory stand-in for the results service and blob storage."""

    artifacts: dict[str, dict[str, Any]] = field(default_factory=dict)
    blocks: dict[str, bytes] = field(default_factory=dict)
    blob: bytes = b""
    rpc_calls: list[str] = field(default_factory=list)
    fail_method: str | None = None

    def post(self, url: str, headers: dict[str, str], json: dict[str, Any], timeout: float) -> _Resp:
        method = url.rsplit("/", 1)[-1]
        self.rpc_calls.append(method)
        assert headers["Authorization"].startswith("Bearer ")
        assert json["workflow_run_backend_id"] == "run-1"
        assert json["workflow_job_run_backend_id"] == "job-1"
        if method == self.fail_method:
            return _Resp(500, {"code": "internal", "msg": "boom"})

        if method == "CreateArtifact":
            assert json["version"] == 4
            self.artifacts[json["name"]] = {"name": json["name"], "database_id": str(100 + len(self.artifacts))}
            return _Resp(200, {"ok": True, "signed_upload_url": "https://blob.example/upload?sig=1"})
        if method == "FinalizeArtifact":
            art = self.artifacts[json["name"]]
            art["size"] = json["size"]
            assert json["hash"].startswith("sha256:")
            return _Resp(200, {"ok": True, "artifact_id": art["database_id"]})
        if method == "ListArtifacts":
            arts = list(self.artifacts.values())
            if "name_filter" in json:
                arts = [a for a in arts if a["name"] == json["name_filter"]]
            if "id_filter" in json:
                arts = [a for a in arts if a["database_id"] == json["id_filter"]]
            return _Resp(200, {"artifacts": arts})
        if method == "GetSignedArtifactURL":
            return _Resp(200, {"signed_url": "https://blob.example/download?sig=2"})
        if method == "DeleteArtifact":
            if json["name"] not in self.artifacts:
                return _Resp(404, {"code": "not_found", "msg": "artifact not found"})
            art = self.artifacts.pop(json["name"])
            return _Resp(200, {"ok": True, "artifact_id": art["database_id"]})
        raise AssertionError(method)

    def put(
        self,
        url: str,
        params: dict[str, str],
        data: bytes,
        timeout: float,
        headers: dict[str, str] | None = None,
    ) -> _Resp:
        if params["comp"] == "block":
            self.blocks[params["blockid"]] = data
        else:
            ids = [part.split("</Latest>")[0] for part in data.decode().split("<Latest>")[1:]]
            self.blob = b"".join(self.blocks[i] for i in ids)
        return _Resp(201)

    def get(self, url: str, stream: bool, timeout: float) -> _Resp:
        return _Resp(200, content=self.blob)


def _store(session: _FakeSession) -> GitHubArtifactStore:
    return GitHubArtifactStore(
        token="t",
        results_url="https://results.example/",
        run_backend_id="run-1",
        job_backend_id="job-1",
        session=session,  # type: ignore[arg-type]
    )


def test_backend_ids_from_token() -> None:
    token = _jwt({"scp": "Actions.GenericRead:abc Actions.Results:run-1:job-1"})
    assert backend_ids_from_token(token) == ("run-1", "job-1")

    with pytest.raises(ArtifactStoreError):
        backend_ids_from_token(_jwt({"scp": "Actions.GenericRead:abc"}))
    with pytest.raises(ArtifactStoreError):
        backend_ids_from_token("not-a-jwt")


def test_upload_then_download_round_trip(tmp_path: Path) -> None:
    session = _FakeSession()
    store = _store(session)
    work = tmp_path / "work"
    work.mkdir()
    archive = work / "build-state.tar.gz"
    archive.write_bytes(b"checkpoint-bytes")

    info = store.upload("build-artifact", [archive], work, retention_days=1)
    assert session.rpc_calls == ["CreateArtifact", "FinalizeArtifact"]
    with zipfile.ZipFile(io.BytesIO(session.blob)) as zf:
        assert zf.namelist() == ["build-state.tar.gz"]
        assert zf.getinfo("build-state.tar.gz").compress_type == zipfile.ZIP_STORED

    found = store.get_artifact("build-artifact")
    assert found.artifact_id == info.artifact_id

    files = store.download(found.artifact_id, tmp_path / "dl")
    assert files == [tmp_path / "dl" / "build-state.tar.gz"]
    assert files[0].read_bytes() == b"checkpoint-bytes"


def test_missing_artifact_and_delete_map_to_not_found(tmp_path: Path) -> None:
    store = _store(_FakeSession())
    with pytest.raises(ArtifactNotFoundError):
        store.get_artifact("build-artifact")
    with pytest.raises(ArtifactNotFoundError):
        store.delete("build-artifact")


def test_server_errors_raise_store_error(tmp_path: Path) -> None:
    f = tmp_path / "a.bin"
    f.write_bytes(b"x")
    store = _store(_FakeSession(fail_method="CreateArtifact"))
    with pytest.raises(ArtifactStoreError) as excinfo:
        store.upload("ckpt", [f], tmp_path, retention_days=1)
    assert not isinstance(excinfo.value, ArtifactNotFoundError)


def test_from_env_requires_runtime_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ACTIONS_RUNTIME_TOKEN", raising=False)
    monkeypatch.delenv("ACTIONS_RESULTS_URL", raising=False)
    with pytest.raises(ArtifactStoreError):
        GitHubArtifactStore.from_env()

    monkeypatch.setenv("ACTIONS_RUNTIME_TOKEN", _jwt({"scp": "Actions.Results:r:j"}))
    monkeypatch.setenv("ACTIONS_RESULTS_URL", "https://results.example/")
    store = GitHubArtifactStore.from_env()
    assert (store.run_backend_id, store.job_backend_id) == ("r", "j")


@dataclass
class _HtmlSession:
    """Answers every RPC with 200 and an HTML page, as a captive proxy would."""

    posts: int = 0

    def post(self, url: str, headers: dict[str, str], json: dict[str, Any], timeout: float) -> _Resp:
        self.posts += 1
        return _Resp(200)


def test_non_json_success_body_is_store_error(tmp_path: Path) -> None:
    f = tmp_path / "build-state.tar.gz"
    f.write_bytes(b"x")
    session = _HtmlSession()
    transport = ArtifactTransport(store=_store(session), sleep=lambda s: None)  # type: ignore[arg-type]

    with pytest.raises(ArtifactStoreError):
        _store(session).delete("build-artifact")  # type: ignore[arg-type]
    assert transport.publish("build-artifact", [f], tmp_path, retention_days=1) is False
    assert session.posts == 1 + 5 * 2
