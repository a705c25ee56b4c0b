from __future__ import annotations

import io
import json
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

import pytest

from sourcesync.config import Settings
from sourcesync.errors import (
    UpstreamError,
    UpstreamNotFoundError,
    UpstreamRejectedError,
    UpstreamTransientError,
)
from sourcesync.extraction_client import (
    HttpExtractionClient,
    InMemoryExtractionClient,
    create_extraction_client_from_env,
    progress_percent,
)


def _response(payload) -> MagicMock:
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode("utf-8")
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


def _http_error(code: int, body: dict | str = "") -> HTTPError:
    raw = body if isinstance(body, str) else json.dumps(body)
    return HTTPError("http://extract.local/x", code, "err", {}, io.BytesIO(raw.encode("utf-8")))


@pytest.fixture
def http_client() -> HttpExtractionClient:
    return HttpExtractionClient(base_url="http://extract.local/", api_key="k_test", timeout_s=2.0)


def test_submit_posts_json_and_returns_ids(http_client):
    with patch("sourcesync.extraction_client.request.urlopen") as urlopen:
        urlopen.return_value = _response({"job_id": "job_1", "workflow_id": "wf_1", "status": "queued"})
        job = http_client.submit(
            kind="website",
            locator={"url": "https://example.com"},
            config={"maxPages": 10, "strategy": "BFS"},
            credentials={"username": "u", "password": "p"},
            source_id="src_1",
            name="Example",
        )

    assert job.job_id == "job_1"
    assert job.workflow_id == "wf_1"
    req = urlopen.call_args.args[0]
    assert req.full_url == "http://extract.local/api/knowledge/ingest/start"
    assert req.get_method() == "POST"
    assert req.get_header("Authorization") == "Bearer k_test"
    body = json.loads(req.data)
    assert body["source_url"] == "https://example.com"
    assert body["options"] == {"max_pages": 10, "strategy": "BFS"}
    assert body["authentication"]["username"] == "u"
    assert urlopen.call_args.kwargs["timeout"] == 2.0


def test_submit_file_uses_upload_endpoint(http_client):
    with patch("sourcesync.extraction_client.request.urlopen") as urlopen:
        urlopen.return_value = _response({"job_id": "job_f"})
        job = http_client.submit(
            kind="file",
            locator={"fileName": "a.pdf", "fileSize": 10, "contentType": "application/pdf"},
            config={},
            credentials=None,
            source_id="src_f",
        )

    assert job.workflow_id is None
    assert urlopen.call_args.args[0].full_url.endswith("/api/knowledge/ingest/upload")


def test_submit_without_job_id_is_transient(http_client):
    with patch("sourcesync.extraction_client.request.urlopen", return_value=_response({"status": "queued"})):
        with pytest.raises(UpstreamTransientError, match="job_id"):
            http_client.submit(kind="video", locator={"url": "https://v"}, config={}, credentials=None, source_id="s")


def test_status_parses_progress_object_and_errors(http_client):
    payload = {
        "job_id": "job_1",
        "status": "running",
        "phase": "crawl",
        "progress": {"completed": 3, "queued": 5, "failed": 2},
        "errors": [{"url": "https://x/a", "error": "timeout"}, "plain"],
        "warnings": ["slow"],
    }
    with patch("sourcesync.extraction_client.request.urlopen", return_value=_response(payload)):
        status = http_client.status("job_1")

    assert status.state == "running"
    assert status.progress == 50
    assert status.phase == "crawl"
    assert status.errors == ("https://x/a: timeout", "plain")
    assert status.warnings == ("slow",)


def test_results_reads_stored_counts(http_client):
    payload = {
        "job_id": "job_1",
        "status": "completed",
        "results": {"pages_stored": 7, "links_stored": 21, "external_links_detected": 4, "errors": []},
    }
    with patch("sourcesync.extraction_client.request.urlopen", return_value=_response(payload)):
        results = http_client.results("job_1")

    assert (results.pages_processed, results.links_processed, results.external_links_detected) == (7, 21, 4)


def test_cancel_sends_graceful_flag(http_client):
    with patch("sourcesync.extraction_client.request.urlopen") as urlopen:
        urlopen.return_value = _response({"job_id": "job_1", "status": "cancelled"})
        http_client.cancel("job_1", graceful=True)

    body = json.loads(urlopen.call_args.args[0].data)
    assert body == {"job_id": "job_1", "wait_for_current_page": True}


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (404, UpstreamNotFoundError),
        (410, UpstreamNotFoundError),
        (409, UpstreamRejectedError),
        (422, UpstreamRejectedError),
        (429, UpstreamTransientError),
        (503, UpstreamTransientError),
    ],
)
def test_http_errors_are_classified(http_client, code, expected):
    with patch("sourcesync.extraction_client.request.urlopen", side_effect=_http_error(code, {"detail": "nope"})):
        with pytest.raises(expected) as excinfo:
            http_client.status("job_1")
    assert excinfo.value.upstream_status == code
    assert "nope" in excinfo.value.message


def test_unclassified_http_error_is_plain_upstream_error(http_client):
    with patch("sourcesync.extraction_client.request.urlopen", side_effect=_http_error(401, "denied")):
        with pytest.raises(UpstreamError) as excinfo:
            http_client.pause("job_1")
    assert type(excinfo.value) is UpstreamError
    assert excinfo.value.http_status == 502


def test_network_failures_and_bad_json_are_transient(http_client):
    with patch("sourcesync.extraction_client.request.urlopen", side_effect=URLError("refused")):
        with pytest.raises(UpstreamTransientError):
            http_client.status("job_1")
    with patch("sourcesync.extraction_client.request.urlopen", side_effect=TimeoutError("timed out")):
        with pytest.raises(UpstreamTransientError):
            http_client.status("job_1")

    broken = MagicMock()
    broken.read.return_value = b"<html>"
    broken.__enter__.return_value = broken
    with patch("sourcesync.extraction_client.request.urlopen", return_value=broken):
        with pytest.raises(UpstreamTransientError, match="invalid JSON"):
            http_client.status("job_1")


def test_unknown_state_is_transient(http_client):
    with patch("sourcesync.extraction_client.request.urlopen", return_value=_response({"status": "exploded"})):
        with pytest.raises(UpstreamTransientError, match="unknown job state"):
            http_client.status("job_1")


def test_progress_percent_variants():
    assert progress_percent(42.4) == 42
    assert progress_percent(140) == 100
    assert progress_percent({"completed": 0, "queued": 0}) == 0
    assert progress_percent(None) is None
    assert progress_percent(True) is None


def test_in_memory_client_state_machine():
    fake = InMemoryExtractionClient()
    job = fake.submit(kind="website", locator={"url": "https://e"}, config={}, credentials=None, source_id="s")

    with pytest.raises(UpstreamRejectedError):
        fake.pause(job.job_id)
    fake.set_state(job.job_id, "running")
    fake.pause(job.job_id)
    assert fake.status(job.job_id).state == "paused"
    fake.cancel(job.job_id, graceful=False)
    with pytest.raises(UpstreamRejectedError):
        fake.cancel(job.job_id, graceful=False)

    fake.evict(job.job_id)
    with pytest.raises(UpstreamNotFoundError):
        fake.status(job.job_id)


def test_client_factory_falls_back_to_memory_unless_true_stack():
    assert isinstance(create_extraction_client_from_env(Settings.from_env({})), InMemoryExtractionClient)
    configured = create_extraction_client_from_env(Settings.from_env({"EXTRACTION_API_URL": "http://e.local"}))
    assert isinstance(configured, HttpExtractionClient)
    with pytest.raises(RuntimeError, match="EXTRACTION_API_URL"):
        create_extraction_client_from_env(Settings.from_env({"SOURCESYNC_REQUIRE_TRUESTACK": "true"}))
