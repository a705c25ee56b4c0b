from __future__ import annotations

from fastapi.testclient import TestClient

from sourcesync.errors import UpstreamError

from conftest import JWT_SECRET, AuthenticatedClient


def _website_payload(**overrides) -> dict:
    payload = {
        "sourceKind": "website",
        "locator": {"url": "https://example.com"},
        "name": "Example",
        "config": {"maxPages": 25, "maxDepth": 2, "strategy": "DFS"},
        "credentials": {"username": "bot", "password": "hunter2", "loginUrl": "https://example.com/login"},
    }
    payload.update(overrides)
    return payload


def _create(client, **overrides) -> dict:
    resp = client.post("/api/v1/sources", json=_website_payload(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_health_endpoints(client):
    assert client.get("/healthz").json()["data"] == {"status": "ok"}
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.headers["x-trace-id"]


def test_create_source_returns_envelope_without_credentials(client):
    resp = client.post("/api/v1/sources", json=_website_payload(), headers={"x-trace-id": "trace_create_1"})

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["meta"]["trace_id"] == "trace_create_1"
    assert resp.headers["x-trace-id"] == "trace_create_1"
    data = body["data"]
    assert data["status"] == "queued"
    assert data["hasAuthentication"] is True
    assert "hunter2" not in resp.text
    assert "credentials" not in data
    assert data["syncSummary"] == {
        "totalRuns": 1,
        "successRate": 0.0,
        "hasActiveRun": True,
        "lastSuccessfulRun": None,
    }


def test_create_source_validation_errors(client):
    resp = client.post("/api/v1/sources", json=_website_payload(locator={"url": "not a url"}))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"

    resp = client.post("/api/v1/sources", json=_website_payload(config={"maxPages": 0}))
    assert resp.status_code == 400
    assert resp.json()["error"]["class"] == "validation"

    resp = client.post("/api/v1/sources", json=_website_payload(sourceKind="podcast"))
    assert resp.status_code == 400


def test_create_source_submission_failure_is_502_with_source_id(client, repository, extraction):
    extraction.fail_next("submit", UpstreamError("extraction service HTTP 500"))

    resp = client.post("/api/v1/sources", json=_website_payload())

    assert resp.status_code == 502
    error = resp.json()["error"]
    assert error["code"] == "SOURCE_SUBMISSION_FAILED"
    source_id = error["details"]["sourceId"]
    assert repository.get(tenant_id="tenant_default", source_id=source_id)["status"] == "failed"


def test_get_source_merges_live_status(client, extraction):
    created = _create(client)
    extraction.set_state(created["activeJobId"], "running", progress=60, phase="crawl")

    data = client.get(f"/api/v1/sources/{created['id']}").json()["data"]

    assert data["status"] == "running"
    assert data["syncHistory"][-1]["progress"] == 60


def test_get_unknown_source_is_404(client):
    resp = client.get("/api/v1/sources/src_missing")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "SOURCE_NOT_FOUND"


def test_tenant_isolation(client):
    created = _create(client)
    resp = client.get(f"/api/v1/sources/{created['id']}", headers={"x-tenant-id": "tenant_other"})
    assert resp.status_code == 404

    listing = client.get("/api/v1/sources", headers={"x-tenant-id": "tenant_other"}).json()["data"]
    assert listing["items"] == []
    assert listing["pagination"]["total"] == 0


def test_token_tenant_mismatch_is_403(client):
    resp = client.get(
        "/api/v1/sources",
        headers={
            "x-tenant-id": "tenant_b",
            "Authorization": f"Bearer {_token_for('tenant_a')}",
        },
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "TENANT_SCOPE_VIOLATION"


def test_missing_token_is_401(app):
    raw = TestClient(app)
    resp = raw.get("/api/v1/sources")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


def test_list_sources_pagination(client):
    for i in range(3):
        _create(client, name=f"site {i}")

    body = client.get("/api/v1/sources", params={"page": 1, "limit": 2}).json()["data"]

    assert len(body["items"]) == 2
    assert body["pagination"]["total"] == 3
    assert body["pagination"]["hasNext"] is True
    assert all("credentials" not in item for item in body["items"])


def test_list_sources_rejects_unknown_status(client):
    resp = client.get("/api/v1/sources", params={"status": "bogus"})
    assert resp.status_code == 400


def test_patch_source(client):
    created = _create(client)
    resp = client.patch(f"/api/v1/sources/{created['id']}", json={"description": "team docs", "credentials": None})

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["description"] == "team docs"
    assert data["hasAuthentication"] is False


def test_resync_rules_over_http(client, extraction):
    created = _create(client)
    resp = client.post(f"/api/v1/sources/{created['id']}/resync")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "SOURCE_SYNC_ACTIVE"

    extraction.set_state(created["activeJobId"], "completed")
    client.get(f"/api/v1/sources/{created['id']}")
    resp = client.post(f"/api/v1/sources/{created['id']}/resync")
    assert resp.status_code == 200
    assert resp.json()["data"]["syncHistory"][-1]["triggerType"] == "resync"


def test_cancel_over_http(client, extraction):
    created = _create(client)

    resp = client.post(f"/api/v1/sources/{created['id']}/cancel")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["outcome"] == "cancelled"
    assert data["source"]["status"] == "cancelled"

    resp = client.post(f"/api/v1/sources/{created['id']}/cancel")
    assert resp.status_code == 400


def test_cancel_soft_failure_over_http(client, extraction):
    created = _create(client)
    extraction.evict(created["activeJobId"])

    resp = client.post(f"/api/v1/sources/{created['id']}/cancel")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["outcome"] == "marked_failed"
    assert data["error"] == "Job not found or cannot be canceled. Marked as failed."
    assert data["source"]["status"] == "failed"


def test_pause_over_http(client, extraction):
    created = _create(client)
    assert client.post(f"/api/v1/sources/{created['id']}/pause").status_code == 400

    extraction.set_state(created["activeJobId"], "running")
    client.get(f"/api/v1/sources/{created['id']}")
    resp = client.post(f"/api/v1/sources/{created['id']}/pause")

    assert resp.status_code == 200
    assert resp.json()["data"]["source"]["status"] == "running"
    assert resp.json()["data"]["outcome"] == "paused"


def test_results_and_delete_over_http(client, extraction):
    created = _create(client)
    extraction.set_results(created["activeJobId"], pages_processed=3, links_processed=8)

    results = client.get(f"/api/v1/sources/{created['id']}/results").json()["data"]
    assert results["pagesProcessed"] == 3

    resp = client.delete(f"/api/v1/sources/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["data"]["deleted"] is True
    assert client.delete(f"/api/v1/sources/{created['id']}").status_code == 404


def test_transient_upstream_error_is_503(client, extraction):
    from sourcesync.errors import UpstreamTransientError

    created = _create(client)
    extraction.fail_next("cancel", UpstreamTransientError("extraction service HTTP 503"))

    resp = client.post(f"/api/v1/sources/{created['id']}/cancel")

    assert resp.status_code == 503
    assert resp.json()["error"]["retryable"] is True


def test_unexpected_error_is_500_and_reported(repository, extraction):
    from sourcesync.config import Settings
    from sourcesync.main import create_app

    reported: list[BaseException] = []

    class Reporter:
        def report(self, exc, *, context):
            reported.append(exc)

    class BrokenRepository:
        def get(self, **kwargs):
            raise RuntimeError("disk on fire")

    app = create_app(
        settings=Settings.from_env({}),
        repository=BrokenRepository(),
        extraction_client=extraction,
        reporter=Reporter(),
    )
    client = AuthenticatedClient(TestClient(app, raise_server_exceptions=False), jwt_secret=JWT_SECRET)

    resp = client.get("/api/v1/sources/src_any")

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "INTERNAL_ERROR"
    assert len(reported) == 1


def _token_for(tenant_id: str) -> str:
    from conftest import _issue_token

    return _issue_token(secret=JWT_SECRET, tenant_id=tenant_id)


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/route-not-exists")

    assert resp.status_code == 404
    assert resp.headers.get("x-request-id")
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "REQ_NOT_FOUND"
    assert set(body["error"]) >= {"code", "message", "retryable", "class"}
    assert body["meta"]["trace_id"]


def test_create_file_source_with_file_key(client):
    resp = client.post(
        "/api/v1/sources",
        json={
            "sourceKind": "file",
            "file": {"fileName": "handbook.pdf", "fileSize": 4096, "contentType": "application/pdf"},
        },
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["data"]["locator"]["fileName"] == "handbook.pdf"

    resp = client.post("/api/v1/sources", json=_website_payload(file={"fileName": "a.pdf"}))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"
