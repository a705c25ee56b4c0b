import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sourcesync.config import Settings
from sourcesync.extraction_client import InMemoryExtractionClient
from sourcesync.lifecycle import LifecycleController
from sourcesync.main import create_app
from sourcesync.repositories.sources import InMemorySourcesRepository

JWT_SECRET = "jwt_test_secret"


def _issue_token(*, secret: str, tenant_id: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": f"user_{tenant_id}",
        "tenant_id": tenant_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            tenant_id = headers.get("x-tenant-id") or "tenant_default"
            token = _issue_token(secret=self._jwt_secret, tenant_id=str(tenant_id))
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


class StepClock:
    """Returns strictly increasing ISO timestamps, one second apart."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> str:
        self._now = self._now + timedelta(seconds=1)
        return self._now.isoformat()


@pytest.fixture(autouse=True)
def security_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp")
    monkeypatch.delenv("EXTRACTION_API_URL", raising=False)
    monkeypatch.delenv("SOURCESYNC_REQUIRE_TRUESTACK", raising=False)
    monkeypatch.delenv("OBS_ALERT_WEBHOOK", raising=False)
    yield


@pytest.fixture
def repository() -> InMemorySourcesRepository:
    return InMemorySourcesRepository()


@pytest.fixture
def extraction() -> InMemoryExtractionClient:
    return InMemoryExtractionClient()


@pytest.fixture
def controller(repository, extraction) -> LifecycleController:
    return LifecycleController(repository=repository, client=extraction, clock=StepClock())


@pytest.fixture
def app(repository, extraction):
    return create_app(
        settings=Settings.from_env({"SOURCESYNC_STORE_BACKEND": "memory"}),
        repository=repository,
        extraction_client=extraction,
    )


@pytest.fixture
def client(app) -> AuthenticatedClient:
    return AuthenticatedClient(TestClient(app), jwt_secret=JWT_SECRET)
