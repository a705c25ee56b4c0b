"""Client for the external extraction service.

The HTTP client speaks JSON over ``urllib``; every transport or protocol failure is
classified into one of the upstream errors so callers can decide between resolving
state locally (not found / rejected) and leaving it alone (transient).
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib import request
from urllib.error import HTTPError, URLError
from urllib.parse import quote

from sourcesync.config import Settings
from sourcesync.errors import (
    UpstreamError,
    UpstreamNotFoundError,
    UpstreamRejectedError,
    UpstreamTransientError,
)
from sourcesync.security import redact_sensitive

logger = logging.getLogger(__name__)

EXTERNAL_STATES = frozenset(
    {"idle", "pending", "queued", "running", "paused", "cancelling", "completed", "failed", "cancelled"}
)
NOT_FOUND_STATUSES = frozenset({404, 410})
REJECTED_STATUSES = frozenset({400, 409, 422})


@dataclass(frozen=True)
class SubmittedJob:
    job_id: str
    workflow_id: str | None = None


@dataclass(frozen=True)
class ExternalJobStatus:
    state: str
    progress: int | None = None
    phase: str | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class JobResults:
    pages_processed: int = 0
    links_processed: int = 0
    external_links_detected: int = 0
    errors: tuple[str, ...] = ()


class ExtractionClient(Protocol):
    def submit(
        self,
        *,
        kind: str,
        locator: Mapping[str, Any],
        config: Mapping[str, Any],
        credentials: Mapping[str, Any] | None,
        source_id: str,
        name: str | None = None,
    ) -> SubmittedJob: ...

    def status(self, job_id: str) -> ExternalJobStatus: ...

    def results(self, job_id: str) -> JobResults: ...

    def cancel(self, job_id: str, *, graceful: bool) -> dict[str, Any]: ...

    def pause(self, job_id: str) -> dict[str, Any]: ...

    def resume(self, job_id: str) -> dict[str, Any]: ...


def progress_percent(raw: Any) -> int | None:
    """Numeric progress is clamped to 0..100; ``{completed, queued, failed}`` becomes a ratio."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return max(0, min(100, int(round(raw))))
    if isinstance(raw, Mapping):
        done = _as_count(raw.get("completed")) + _as_count(raw.get("failed"))
        total = done + _as_count(raw.get("queued"))
        if total == 0:
            return 0
        return max(0, min(100, int(round(100 * done / total))))
    return None


def _as_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


def _message_list(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    out: list[str] = []
    for item in raw:
        if isinstance(item, Mapping):
            text = str(item.get("error") or item.get("message") or "").strip()
            url = str(item.get("url") or "").strip()
            if text:
                out.append(f"{url}: {text}" if url else text)
        elif item is not None and str(item).strip():
            out.append(str(item).strip())
    return tuple(out)


def parse_status_payload(payload: Mapping[str, Any]) -> ExternalJobStatus:
    state = str(payload.get("status") or "").strip().lower()
    if state not in EXTERNAL_STATES:
        raise UpstreamTransientError(f"extraction service returned unknown job state: {state or '(missing)'}")
    phase = payload.get("phase")
    return ExternalJobStatus(
        state=state,
        progress=progress_percent(payload.get("progress")),
        phase=str(phase) if phase else None,
        errors=_message_list(payload.get("errors")),
        warnings=_message_list(payload.get("warnings")),
    )


def parse_results_payload(payload: Mapping[str, Any]) -> JobResults:
    body = payload.get("results")
    if not isinstance(body, Mapping):
        body = payload
    return JobResults(
        pages_processed=_as_count(body.get("pages_stored", body.get("pages_processed"))),
        links_processed=_as_count(body.get("links_stored", body.get("links_processed"))),
        external_links_detected=_as_count(body.get("external_links_detected")),
        errors=_message_list(body.get("errors")),
    )


def _submit_payload(
    *,
    kind: str,
    locator: Mapping[str, Any],
    config: Mapping[str, Any],
    credentials: Mapping[str, Any] | None,
    source_id: str,
    name: str | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"source_type": kind, "source_id": source_id}
    if name:
        payload["source_name"] = name
    if "url" in locator:
        payload["source_url"] = locator["url"]
    else:
        payload["file_name"] = locator.get("fileName")
        payload["file_size"] = locator.get("fileSize")
        payload["content_type"] = locator.get("contentType")
        if locator.get("storageUri"):
            payload["storage_uri"] = locator["storageUri"]
    options = {
        "max_pages": config.get("maxPages"),
        "max_depth": config.get("maxDepth"),
        "strategy": config.get("strategy"),
        "include_paths": config.get("includePaths"),
        "exclude_paths": config.get("excludePaths"),
        "extract_code_blocks": config.get("extractCodeBlocks"),
        "extract_thumbnails": config.get("extractThumbnails"),
    }
    payload["options"] = {k: v for k, v in options.items() if v is not None}
    if credentials:
        payload["authentication"] = {
            "username": credentials.get("username"),
            "password": credentials.get("password"),
            "login_url": credentials.get("loginUrl"),
        }
    return payload


class HttpExtractionClient:
    """JSON-over-HTTP client for the extraction service."""

    def __init__(self, *, base_url: str, api_key: str = "", timeout_s: float = 15.0) -> None:
        if not base_url.strip():
            raise ValueError("extraction service base URL must not be empty")
        self._base_url = base_url.strip().rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s

    def _request(self, *, path: str, method: str = "GET", data: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        body = None
        if data is not None:
            headers["Content-Type"] = "application/json"
            body = json.dumps(data).encode("utf-8")
        req = request.Request(f"{self._base_url}{path}", data=body, method=method, headers=headers)

        try:
            with request.urlopen(req, timeout=self._timeout_s) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as exc:
            raise self._classify_http_error(exc, path=path) from exc
        except (URLError, TimeoutError, OSError) as exc:
            logger.warning("extraction_api_unreachable path=%s error=%s", path, exc)
            raise UpstreamTransientError(f"extraction service unavailable: {exc}") from exc

        try:
            parsed = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            logger.warning("extraction_api_invalid_json path=%s", path)
            raise UpstreamTransientError("extraction service returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            logger.warning("extraction_api_invalid_response path=%s type=%s", path, type(parsed).__name__)
            raise UpstreamTransientError("extraction service returned a non-object response")
        return parsed

    @staticmethod
    def _classify_http_error(exc: HTTPError, *, path: str) -> UpstreamError:
        try:
            raw = exc.read().decode("utf-8", errors="replace")
        except OSError:
            raw = ""
        detail = raw[:200]
        try:
            body = json.loads(raw)
        except json.JSONDecodeError:
            body = None
        if isinstance(body, dict):
            detail = str(body.get("error") or body.get("detail") or body.get("message") or detail)
        message = f"extraction service HTTP {exc.code}: {detail}" if detail else f"extraction service HTTP {exc.code}"
        logger.warning("extraction_api_http_error status=%s path=%s", exc.code, path)
        if exc.code in NOT_FOUND_STATUSES:
            return UpstreamNotFoundError(message, upstream_status=exc.code)
        if exc.code in REJECTED_STATUSES:
            return UpstreamRejectedError(message, upstream_status=exc.code)
        if exc.code == 429 or exc.code >= 500:
            return UpstreamTransientError(message, upstream_status=exc.code)
        return UpstreamError(message, upstream_status=exc.code)

    def submit(
        self,
        *,
        kind: str,
        locator: Mapping[str, Any],
        config: Mapping[str, Any],
        credentials: Mapping[str, Any] | None,
        source_id: str,
        name: str | None = None,
    ) -> SubmittedJob:
        payload = _submit_payload(
            kind=kind,
            locator=locator,
            config=config,
            credentials=credentials,
            source_id=source_id,
            name=name,
        )
        path = "/api/knowledge/ingest/start" if "url" in locator else "/api/knowledge/ingest/upload"
        logger.info("extraction_job_submit source_id=%s payload=%s", source_id, redact_sensitive(payload))
        result = self._request(path=path, method="POST", data=payload)
        job_id = str(result.get("job_id") or "").strip()
        if not job_id:
            raise UpstreamTransientError("extraction service response missing job_id")
        workflow_id = result.get("workflow_id")
        return SubmittedJob(job_id=job_id, workflow_id=str(workflow_id) if workflow_id else None)

    def status(self, job_id: str) -> ExternalJobStatus:
        result = self._request(path=f"/api/knowledge/workflows/status/{quote(job_id, safe='')}")
        return parse_status_payload(result)

    def results(self, job_id: str) -> JobResults:
        result = self._request(path=f"/api/knowledge/workflows/results/{quote(job_id, safe='')}")
        return parse_results_payload(result)

    def cancel(self, job_id: str, *, graceful: bool) -> dict[str, Any]:
        return self._request(
            path="/api/knowledge/workflows/cancel",
            method="POST",
            data={"job_id": job_id, "wait_for_current_page": graceful},
        )

    def pause(self, job_id: str) -> dict[str, Any]:
        return self._request(path="/api/knowledge/workflows/pause", method="POST", data={"job_id": job_id})

    def resume(self, job_id: str) -> dict[str, Any]:
        return self._request(path="/api/knowledge/workflows/resume", method="POST", data={"job_id": job_id})


@dataclass
class _FakeJob:
    job_id: str
    workflow_id: str
    kind: str
    source_id: str
    state: str = "queued"
    progress: int | None = 0
    phase: str | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    results: JobResults = field(default_factory=JobResults)
    submission: dict[str, Any] = field(default_factory=dict)


class InMemoryExtractionClient:
    """Deterministic in-process extraction service used for local runs and tests."""

    def __init__(self) -> None:
        self._jobs: dict[str, _FakeJob] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self.calls: list[tuple[str, str]] = []

    def fail_next(self, operation: str, exc: Exception) -> None:
        """Queue ``exc`` to be raised by the next call to ``operation`` (submit/status/results/cancel/...)."""
        with self._lock:
            self._failures.setdefault(operation, []).append(exc)

    def set_state(
        self,
        job_id: str,
        state: str,
        *,
        progress: int | None = None,
        phase: str | None = None,
        errors: tuple[str, ...] | list[str] = (),
        warnings: tuple[str, ...] | list[str] = (),
    ) -> None:
        if state not in EXTERNAL_STATES:
            raise ValueError(f"unknown job state: {state}")
        with self._lock:
            job = self._job(job_id)
            job.state = state
            if progress is not None:
                job.progress = progress
            if phase is not None:
                job.phase = phase
            job.errors = tuple(errors)
            job.warnings = tuple(warnings)

    def set_results(
        self,
        job_id: str,
        *,
        pages_processed: int = 0,
        links_processed: int = 0,
        external_links_detected: int = 0,
        errors: tuple[str, ...] | list[str] = (),
    ) -> None:
        with self._lock:
            self._job(job_id).results = JobResults(
                pages_processed=pages_processed,
                links_processed=links_processed,
                external_links_detected=external_links_detected,
                errors=tuple(errors),
            )

    def evict(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def job_state(self, job_id: str) -> str | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.state if job is not None else None

    def submission(self, job_id: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._job(job_id).submission)

    def _job(self, job_id: str) -> _FakeJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise UpstreamNotFoundError(f"extraction job not found: {job_id}")
        return job

    def _enter(self, operation: str, job_id: str) -> None:
        self.calls.append((operation, job_id))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def submit(
        self,
        *,
        kind: str,
        locator: Mapping[str, Any],
        config: Mapping[str, Any],
        credentials: Mapping[str, Any] | None,
        source_id: str,
        name: str | None = None,
    ) -> SubmittedJob:
        with self._lock:
            self._enter("submit", source_id)
            n = next(self._ids)
            job = _FakeJob(
                job_id=f"job_{n:06d}",
                workflow_id=f"wf_{n:06d}",
                kind=kind,
                source_id=source_id,
                submission=_submit_payload(
                    kind=kind,
                    locator=locator,
                    config=config,
                    credentials=credentials,
                    source_id=source_id,
                    name=name,
                ),
            )
            self._jobs[job.job_id] = job
            return SubmittedJob(job_id=job.job_id, workflow_id=job.workflow_id)

    def status(self, job_id: str) -> ExternalJobStatus:
        with self._lock:
            self._enter("status", job_id)
            job = self._job(job_id)
            return ExternalJobStatus(
                state=job.state,
                progress=job.progress,
                phase=job.phase,
                errors=job.errors,
                warnings=job.warnings,
            )

    def results(self, job_id: str) -> JobResults:
        with self._lock:
            self._enter("results", job_id)
            return self._job(job_id).results

    def cancel(self, job_id: str, *, graceful: bool) -> dict[str, Any]:
        with self._lock:
            self._enter("cancel", job_id)
            job = self._job(job_id)
            if job.state in {"completed", "failed", "cancelled"}:
                raise UpstreamRejectedError(f"job {job_id} cannot be cancelled in state {job.state}", upstream_status=409)
            job.state = "cancelling" if graceful else "cancelled"
            return {"job_id": job_id, "status": "cancelled"}

    def pause(self, job_id: str) -> dict[str, Any]:
        with self._lock:
            self._enter("pause", job_id)
            job = self._job(job_id)
            if job.state != "running":
                raise UpstreamRejectedError(f"job {job_id} cannot be paused in state {job.state}", upstream_status=409)
            job.state = "paused"
            return {"job_id": job_id, "status": "paused"}

    def resume(self, job_id: str) -> dict[str, Any]:
        with self._lock:
            self._enter("resume", job_id)
            job = self._job(job_id)
            if job.state != "paused":
                raise UpstreamRejectedError(f"job {job_id} cannot be resumed in state {job.state}", upstream_status=409)
            job.state = "running"
            return {"job_id": job_id, "status": "resumed"}


def create_extraction_client_from_env(settings: Settings | None = None) -> ExtractionClient:
    settings = settings or Settings.from_env()
    if settings.extraction_api_url:
        return HttpExtractionClient(
            base_url=settings.extraction_api_url,
            api_key=settings.extraction_api_key,
            timeout_s=settings.extraction_timeout_s,
        )
    if settings.require_true_stack:
        raise RuntimeError("EXTRACTION_API_URL must be set when SOURCESYNC_REQUIRE_TRUESTACK is enabled")
    logger.warning("extraction_client_fallback backend=memory reason=EXTRACTION_API_URL unset")
    return InMemoryExtractionClient()
