"""Lifecycle Controller: start, resync, cancel, pause, resume, update, delete, reads.

Control operations act on the stored record. Read operations run reconciliation
first so callers see the live-merged state.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from sourcesync.errors import (
    ConflictError,
    NotFoundError,
    UpstreamError,
    UpstreamNotFoundError,
    UpstreamRejectedError,
    ValidationError,
)
from sourcesync.extraction_client import ExtractionClient
from sourcesync.kinds import SOURCE_KINDS, KindPolicy, policy_for
from sourcesync.ledger import ACTIVE_STATUSES, TERMINAL_STATUSES, RunUpdate, new_run
from sourcesync.models import (
    Credentials,
    ExtractionSource,
    SourceConfig,
    new_source_id,
    public_view,
    utcnow_iso,
)
from sourcesync.observability import ErrorReporter, LoggingErrorReporter
from sourcesync.reconciliation import ReconciliationEngine
from sourcesync.repositories.sources import SourcesRepository
from sourcesync.schemas import CreateSourceRequest, UpdateSourceRequest

logger = logging.getLogger(__name__)

ControlOutcome = Literal["cancelled", "marked_failed", "paused", "resumed"]

SOURCE_STATUSES = tuple(sorted(ACTIVE_STATUSES | TERMINAL_STATUSES))


@dataclass(frozen=True)
class ControlResult:
    outcome: ControlOutcome
    detail: str
    source: dict[str, Any]

    @property
    def soft_failure(self) -> bool:
        return self.outcome == "marked_failed"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"source": self.source, "outcome": self.outcome, "detail": self.detail}
        if self.soft_failure:
            data["error"] = self.detail
        return data


class LifecycleController:
    def __init__(
        self,
        *,
        repository: SourcesRepository,
        client: ExtractionClient,
        reporter: ErrorReporter | None = None,
        reconciler: ReconciliationEngine | None = None,
        clock: Callable[[], str] = utcnow_iso,
        list_default_limit: int = 25,
        list_max_limit: int = 100,
    ) -> None:
        self._repository = repository
        self._client = client
        self._reporter = reporter or LoggingErrorReporter()
        self._clock = clock
        self._reconciler = reconciler or ReconciliationEngine(
            repository=repository,
            client=client,
            reporter=self._reporter,
            clock=clock,
        )
        self.list_default_limit = list_default_limit
        self.list_max_limit = list_max_limit

    def _load(self, tenant_id: str, source_id: str) -> ExtractionSource:
        record = self._repository.get(tenant_id=tenant_id, source_id=source_id)
        if record is None:
            raise NotFoundError(f"source not found: {source_id}")
        return ExtractionSource.from_record(record)

    def _commit(self, source: ExtractionSource, *, expected_version: int) -> None:
        source.updated_at = self._clock()
        source.version = expected_version + 1
        if not self._repository.replace(record=source.to_record(), expected_version=expected_version):
            raise ConflictError(f"source {source.id} was modified concurrently; retry the operation")

    def _cancel_orphan(self, job_id: str) -> None:
        try:
            self._client.cancel(job_id, graceful=False)
        except UpstreamError as exc:
            logger.warning("orphan_cancel_failed job_id=%s error=%s", job_id, exc.message)

    @staticmethod
    def _check_credentials(policy: KindPolicy, credentials: Credentials | None) -> None:
        if credentials is not None and not policy.accepts_credentials:
            raise ValidationError(f"credentials are not supported for {policy.kind} sources")

    def start(self, tenant_id: str, request: CreateSourceRequest) -> dict[str, Any]:
        policy = policy_for(request.source_kind)
        locator = policy.normalize_locator(request.locator)
        config = request.config or SourceConfig()
        policy.check_config(config.dump())
        self._check_credentials(policy, request.credentials)

        now = self._clock()
        source = ExtractionSource(
            id=new_source_id(),
            tenant_id=tenant_id,
            source_kind=policy.kind,
            locator=locator,
            status="pending",
            created_at=now,
            updated_at=now,
            name=request.name,
            description=request.description,
            config=config,
            credentials=request.credentials,
            version=1,
        )
        try:
            job = self._client.submit(
                kind=source.source_kind,
                locator=source.locator,
                config=source.config.dump(),
                credentials=source.credentials.dump() if source.credentials else None,
                source_id=source.id,
                name=source.name,
            )
        except UpstreamError as exc:
            source.status = "failed"
            source.completed_at = now
            source.record_error(exc.message)
            self._repository.create(record=source.to_record())
            logger.warning("source_submit_failed source_id=%s tenant_id=%s error=%s", source.id, tenant_id, exc.message)
            raise UpstreamError(
                f"extraction job submission failed: {exc.message}",
                code="SOURCE_SUBMISSION_FAILED",
                retryable=exc.retryable,
                upstream_status=exc.upstream_status,
                details={"sourceId": source.id},
            ) from exc

        source.begin_run(
            new_run(job_id=job.job_id, workflow_id=job.workflow_id, trigger_type="initial", started_at=now)
        )
        try:
            self._repository.create(record=source.to_record())
        except Exception:
            logger.warning("source_persist_failed source_id=%s orphan_job_id=%s", source.id, job.job_id)
            self._cancel_orphan(job.job_id)
            raise
        logger.info("source_started source_id=%s tenant_id=%s job_id=%s", source.id, tenant_id, job.job_id)
        return public_view(source)

    def resync(self, tenant_id: str, source_id: str) -> dict[str, Any]:
        source = self._load(tenant_id, source_id)
        policy = policy_for(source.source_kind)
        if not policy.resyncable:
            raise ValidationError(
                f"{source.source_kind} sources cannot be resynced; upload the file again",
                code="SOURCE_RESYNC_UNSUPPORTED",
            )
        if source.is_active or source.history.has_active_run:
            raise ConflictError("source already has an active sync run", code="SOURCE_SYNC_ACTIVE")

        expected = source.version
        job = self._client.submit(
            kind=source.source_kind,
            locator=source.locator,
            config=source.config.dump(),
            credentials=source.credentials.dump() if source.credentials else None,
            source_id=source.id,
            name=source.name,
        )
        source.begin_run(
            new_run(job_id=job.job_id, workflow_id=job.workflow_id, trigger_type="resync", started_at=self._clock())
        )
        try:
            self._commit(source, expected_version=expected)
        except ConflictError:
            logger.warning("resync_lost_race source_id=%s orphan_job_id=%s", source.id, job.job_id)
            self._cancel_orphan(job.job_id)
            raise
        logger.info("source_resynced source_id=%s tenant_id=%s job_id=%s", source.id, tenant_id, job.job_id)
        return public_view(source)

    def cancel(self, tenant_id: str, source_id: str) -> ControlResult:
        source = self._load(tenant_id, source_id)
        if not source.is_active or not source.active_job_id:
            raise ConflictError("source has no active sync run to cancel", code="SOURCE_NOT_ACTIVE")
        expected = source.version
        job_id = source.active_job_id
        try:
            self._client.cancel(job_id, graceful=False)
        except (UpstreamNotFoundError, UpstreamRejectedError) as exc:
            return self._mark_failed(
                source,
                expected_version=expected,
                cause=exc.message,
                detail="Job not found or cannot be canceled. Marked as failed.",
            )

        now = self._clock()
        source.history.apply_update(job_id, RunUpdate(status="cancelled", at=now))
        source.settle("cancelled", now)
        self._commit(source, expected_version=expected)
        logger.info("source_cancelled source_id=%s job_id=%s", source.id, job_id)
        return ControlResult(outcome="cancelled", detail="Sync run cancelled.", source=public_view(source))

    def pause(self, tenant_id: str, source_id: str) -> ControlResult:
        return self._toggle(tenant_id, source_id, action="pause")

    def resume(self, tenant_id: str, source_id: str) -> ControlResult:
        return self._toggle(tenant_id, source_id, action="resume")

    def _toggle(self, tenant_id: str, source_id: str, *, action: Literal["pause", "resume"]) -> ControlResult:
        source = self._load(tenant_id, source_id)
        if source.status != "running" or not source.active_job_id:
            raise ConflictError(f"only running sources can {action}", code="SOURCE_NOT_RUNNING")
        job_id = source.active_job_id
        call = self._client.pause if action == "pause" else self._client.resume
        try:
            call(job_id)
        except (UpstreamNotFoundError, UpstreamRejectedError) as exc:
            verb = "paused" if action == "pause" else "resumed"
            return self._mark_failed(
                source,
                expected_version=source.version,
                cause=exc.message,
                detail=f"Job not found or cannot be {verb}. Marked as failed.",
            )
        logger.info("source_%s_requested source_id=%s job_id=%s", action, source.id, job_id)
        if action == "pause":
            return ControlResult(
                outcome="paused",
                detail="Pause requested. Status stays running until the job reports a change.",
                source=public_view(source),
            )
        return ControlResult(outcome="resumed", detail="Resume requested.", source=public_view(source))

    def _mark_failed(
        self,
        source: ExtractionSource,
        *,
        expected_version: int,
        cause: str,
        detail: str,
    ) -> ControlResult:
        now = self._clock()
        job_id = str(source.active_job_id)
        source.history.apply_update(
            job_id,
            RunUpdate(status="failed", at=now, error_messages=(cause,), increment_error_count=1),
        )
        source.record_error(cause)
        source.settle("failed", now)
        self._commit(source, expected_version=expected_version)
        logger.warning("source_marked_failed source_id=%s job_id=%s cause=%s", source.id, job_id, cause)
        return ControlResult(outcome="marked_failed", detail=detail, source=public_view(source))

    def delete(self, tenant_id: str, source_id: str) -> dict[str, Any]:
        source = self._load(tenant_id, source_id)
        if source.is_active and source.active_job_id:
            try:
                self._client.cancel(source.active_job_id, graceful=True)
            except UpstreamError as exc:
                logger.warning(
                    "delete_cancel_failed source_id=%s job_id=%s error=%s",
                    source.id,
                    source.active_job_id,
                    exc.message,
                )
        if not self._repository.delete(tenant_id=tenant_id, source_id=source_id):
            raise NotFoundError(f"source not found: {source_id}")
        logger.info("source_deleted source_id=%s tenant_id=%s", source_id, tenant_id)
        return {"id": source_id, "deleted": True}

    def update(self, tenant_id: str, source_id: str, patch: UpdateSourceRequest) -> dict[str, Any]:
        source = self._load(tenant_id, source_id)
        policy = policy_for(source.source_kind)
        fields = patch.model_fields_set
        expected = source.version
        if "name" in fields:
            source.name = patch.name
        if "description" in fields:
            source.description = patch.description
        if "config" in fields:
            config = patch.config or SourceConfig()
            policy.check_config(config.dump())
            source.config = config
        if "credentials" in fields:
            self._check_credentials(policy, patch.credentials)
            source.credentials = patch.credentials
        if not fields:
            return public_view(source)
        self._commit(source, expected_version=expected)
        return public_view(source)

    def get(self, tenant_id: str, source_id: str) -> dict[str, Any]:
        record = self._repository.get(tenant_id=tenant_id, source_id=source_id)
        if record is None:
            raise NotFoundError(f"source not found: {source_id}")
        return public_view(ExtractionSource.from_record(self._reconciler.reconcile(record)))

    def list(
        self,
        tenant_id: str,
        *,
        status: str | None = None,
        source_kind: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> dict[str, Any]:
        if status is not None and status not in SOURCE_STATUSES:
            raise ValidationError(f"unsupported status filter: {status}")
        if source_kind is not None and source_kind not in SOURCE_KINDS:
            raise ValidationError(f"unsupported sourceKind filter: {source_kind}")
        page = max(1, page)
        limit = min(self.list_max_limit, max(1, limit or self.list_default_limit))
        records, total = self._repository.list(
            tenant_id=tenant_id,
            status=status,
            source_kind=source_kind,
            offset=(page - 1) * limit,
            limit=limit,
        )
        items = [public_view(ExtractionSource.from_record(self._reconciler.reconcile(r))) for r in records]
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "items": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": total_pages,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        }

    def results(self, tenant_id: str, source_id: str) -> dict[str, Any]:
        source = self._load(tenant_id, source_id)
        run = source.history.active_run or source.history.latest_run
        if run is None:
            raise ConflictError("source has no sync runs", code="SOURCE_NO_RUNS")
        results = self._client.results(run.job_id)
        return {
            "sourceId": source.id,
            "jobId": run.job_id,
            "runStatus": run.status,
            "pagesProcessed": results.pages_processed,
            "linksProcessed": results.links_processed,
            "externalLinksDetected": results.external_links_detected,
            "errors": list(results.errors),
        }
