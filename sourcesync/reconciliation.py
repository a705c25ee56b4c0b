"""Reconciliation Engine.

Pulls the external job state for a source's active run and merges it into the
stored record. State only moves forward, only the active run is touched, and a
record is written back only when the merge actually changed it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sourcesync.errors import UpstreamError, UpstreamNotFoundError
from sourcesync.extraction_client import ExternalJobStatus, ExtractionClient, JobResults
from sourcesync.ledger import ACTIVE_STATUSES, RunUpdate
from sourcesync.models import ExtractionSource, utcnow_iso
from sourcesync.observability import ErrorReporter, LoggingErrorReporter
from sourcesync.repositories.sources import SourcesRepository

logger = logging.getLogger(__name__)

_RANK = {"pending": 0, "queued": 1, "running": 2}

# Job-level states that have no lifecycle counterpart map to the nearest one.
_ACTIVE_STATE_MAP = {
    "idle": "pending",
    "pending": "pending",
    "queued": "queued",
    "running": "running",
    "paused": "running",
    "cancelling": "running",
}


class _LeaveUntouched(Exception):
    pass


@dataclass
class ReconcileReport:
    checked: int = 0
    updated: int = 0
    failed: int = 0


class ReconciliationEngine:
    def __init__(
        self,
        *,
        repository: SourcesRepository,
        client: ExtractionClient,
        reporter: ErrorReporter | None = None,
        clock: Callable[[], str] = utcnow_iso,
    ) -> None:
        self._repository = repository
        self._client = client
        self._reporter = reporter or LoggingErrorReporter()
        self._clock = clock

    def reconcile(self, record: dict[str, Any]) -> dict[str, Any]:
        """Return the freshest known record. Never raises."""
        record, _ = self._reconcile_safely(record)
        return record

    def reconcile_active(self, *, tenant_id: str | None = None) -> ReconcileReport:
        report = ReconcileReport()
        for record in self._repository.list_active(tenant_id=tenant_id):
            report.checked += 1
            _, changed = self._reconcile_safely(record)
            if changed is None:
                report.failed += 1
            elif changed:
                report.updated += 1
        logger.info(
            "reconcile_sweep checked=%s updated=%s failed=%s", report.checked, report.updated, report.failed
        )
        return report

    def _reconcile_safely(self, record: dict[str, Any]) -> tuple[dict[str, Any], bool | None]:
        if record.get("status") not in ACTIVE_STATUSES or not record.get("activeJobId"):
            return record, False
        try:
            return self._reconcile(record)
        except Exception as exc:
            self._reporter.report(
                exc,
                context={
                    "operation": "reconcile",
                    "source_id": record.get("id"),
                    "tenant_id": record.get("tenantId"),
                    "job_id": record.get("activeJobId"),
                },
            )
            return record, None

    def _reconcile(self, record: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        source = ExtractionSource.from_record(record)
        baseline = source.to_record()
        job_id = str(source.active_job_id)
        run = source.history.find(job_id)
        if run is None:
            logger.warning("reconcile_skipped reason=active_run_missing source_id=%s job_id=%s", source.id, job_id)
            return record, False

        now = self._clock()
        if not run.is_active:
            # Run already settled but the source still points at it; align the source with its run.
            source.settle(run.status, run.completed_at)
        else:
            try:
                external = self._client.status(job_id)
            except UpstreamNotFoundError as exc:
                self._fail_missing_job(source, job_id, exc, at=now)
            except UpstreamError as exc:
                logger.warning(
                    "reconcile_deferred source_id=%s job_id=%s class=%s error=%s",
                    source.id,
                    job_id,
                    exc.error_class,
                    exc.message,
                )
                return record, False
            else:
                try:
                    self._merge(source, job_id, external, at=now)
                except _LeaveUntouched:
                    return record, False

        merged = source.to_record()
        if merged == baseline:
            return record, False
        return self._persist(source, merged, expected_version=int(record.get("version") or 0), at=now)

    def _merge(self, source: ExtractionSource, job_id: str, external: ExternalJobStatus, *, at: str) -> None:
        state = external.state
        if state == "completed":
            self._complete(source, job_id, external, at=at)
        elif state == "failed":
            messages = external.errors or ("extraction job failed",)
            source.history.apply_update(
                job_id,
                RunUpdate(
                    status="failed",
                    at=at,
                    error_messages=messages,
                    warnings=external.warnings or None,
                    increment_error_count=len(messages),
                ),
            )
            source.metrics.errors = list(messages)
            source.metrics.error_count += len(messages)
            source.settle("failed", at)
        elif state == "cancelled":
            source.history.apply_update(job_id, RunUpdate(status="cancelled", at=at))
            source.settle("cancelled", at)
        else:
            mapped = _ACTIVE_STATE_MAP[state]
            current = source.history.find(job_id).status
            forward = mapped if _RANK[mapped] > _RANK[current] else current
            source.history.apply_update(
                job_id,
                RunUpdate(
                    status=forward,
                    phase=external.phase,
                    progress=external.progress,
                    warnings=external.warnings or None,
                ),
            )
            source.status = forward

    def _complete(self, source: ExtractionSource, job_id: str, external: ExternalJobStatus, *, at: str) -> None:
        warnings = list(external.warnings)
        results: JobResults | None
        try:
            results = self._client.results(job_id)
        except UpstreamNotFoundError as exc:
            results = None
            warnings.append(f"results unavailable: {exc.message}")
        except UpstreamError as exc:
            logger.warning("reconcile_results_deferred source_id=%s job_id=%s error=%s", source.id, job_id, exc.message)
            raise _LeaveUntouched() from exc

        update = RunUpdate(status="completed", at=at, warnings=tuple(warnings) or None)
        if results is not None:
            update = RunUpdate(
                status="completed",
                at=at,
                warnings=tuple(warnings) or None,
                pages_processed=results.pages_processed,
                links_processed=results.links_processed,
            )
            source.metrics.pages_processed = results.pages_processed
            source.metrics.links_processed = results.links_processed
            source.metrics.external_links_detected = results.external_links_detected
            source.metrics.errors = list(results.errors)
        source.history.apply_update(job_id, update)
        source.settle("completed", at)

    def _fail_missing_job(self, source: ExtractionSource, job_id: str, exc: UpstreamNotFoundError, *, at: str) -> None:
        message = f"extraction job {job_id} no longer exists: {exc.message}"
        logger.warning("reconcile_job_missing source_id=%s job_id=%s", source.id, job_id)
        source.history.apply_update(
            job_id,
            RunUpdate(status="failed", at=at, error_messages=(message,), increment_error_count=1),
        )
        source.record_error(message)
        source.settle("failed", at)

    def _persist(
        self,
        source: ExtractionSource,
        merged: dict[str, Any],
        *,
        expected_version: int,
        at: str,
    ) -> tuple[dict[str, Any], bool]:
        merged["updatedAt"] = at
        merged["version"] = expected_version + 1
        if self._repository.replace(record=merged, expected_version=expected_version):
            logger.info(
                "source_reconciled source_id=%s status=%s version=%s", source.id, merged["status"], merged["version"]
            )
            return merged, True
        logger.info("reconcile_lost_race source_id=%s expected_version=%s", source.id, expected_version)
        fresh = self._repository.get(tenant_id=source.tenant_id, source_id=source.id)
        return (fresh if fresh is not None else merged), False
