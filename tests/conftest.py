import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rhythm_pipeline.main import create_app
from rhythm_pipeline.store import PipelineStore, store

DEFAULT_ANSWERS = {
    "stress_q1": 4,
    "stress_q2": 4,
    "stress_q3": 4,
    "sleep_q1": 2,
    "sleep_q2": 2,
}


def _issue_token(*, secret: str, roles: list[str], subject: str = "user_clinician") -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str, roles: list[str]):
        self._client = client
        self._jwt_secret = jwt_secret
        self.roles = roles

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            token = _issue_token(secret=self._jwt_secret, roles=self.roles)
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RHYTHM_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("OBJECT_STORAGE_SIGNING_SECRET", "signing_test_secret")
    monkeypatch.setenv("JWT_SHARED_SECRET", "jwt_test_secret")
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    store.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret="jwt_test_secret", roles=["clinician", "admin"])


@pytest.fixture
def pipeline(tmp_path: pathlib.Path) -> PipelineStore:
    """An isolated in-memory store with seeded rules."""
    return PipelineStore(
        environ={
            "RHYTHM_OBJECT_STORAGE_BACKEND": "local",
            "OBJECT_STORAGE_ROOT": str(tmp_path / "pipeline_objects"),
            "OBJECT_STORAGE_SIGNING_SECRET": "signing_test_secret",
            "STAGE_IO_TIMEOUT_MS": "2000",
        }
    )


@pytest.fixture
def seed_assessment(pipeline: PipelineStore):
    def _seed(*, assessment_id: str = "as_1", target: PipelineStore | None = None, **overrides) -> dict:
        assessment = {
            "assessment_id": assessment_id,
            "patient_id": "patient_1",
            "answers": dict(DEFAULT_ANSWERS),
            "structured_data": {},
            "conversation_turns": [],
        }
        assessment.update(overrides)
        return (target or pipeline).upsert_assessment(assessment)

    return _seed


@pytest.fixture
def new_job(pipeline: PipelineStore, seed_assessment):
    def _new_job(*, assessment_id: str = "as_1", target: PipelineStore | None = None, **overrides) -> dict:
        owner = target or pipeline
        seed_assessment(assessment_id=assessment_id, target=owner, **overrides)
        return owner.create_job(assessment_id=assessment_id, correlation_id=f"corr_{assessment_id}")["job"]

    return _new_job


@pytest.fixture
def run_through(pipeline: PipelineStore):
    def _run(job_id: str, *stages: str, target: PipelineStore | None = None) -> None:
        owner = target or pipeline
        for stage in stages:
            result = owner.run_stage(stage, job_id)
            assert result.success, result.to_dict()

    return _run
