"""Sync History Ledger.

Every start or resync of an extraction source appends one Sync Run; the run is
then mutated in place as the external job progresses. Runs are a closed union
discriminated by ``status`` so that an active run carries a phase/progress and a
terminal run carries a completion timestamp, and nothing else.

The ledger performs no I/O. ``from_records``/``to_records`` are the only
serialization boundary and upgrade legacy run layouts on read.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"pending", "queued", "running"})
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
_ACTIVE_RANK = {"pending": 0, "queued": 1, "running": 2}

SyncStatus = Literal["pending", "queued", "running", "completed", "failed", "cancelled"]
TriggerType = Literal["initial", "resync"]


class LedgerError(ValueError):
    pass


class LedgerTransitionError(LedgerError):
    pass


class _SyncRunBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    job_id: str = Field(min_length=1)
    workflow_id: str | None = None
    trigger_type: TriggerType
    started_at: str
    error_messages: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error_count: int = Field(default=0, ge=0)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES  # type: ignore[attr-defined]


class ActiveSyncRun(_SyncRunBase):
    status: Literal["pending", "queued", "running"]
    phase: str | None = None
    progress: int | None = Field(default=None, ge=0, le=100)


class CompletedSyncRun(_SyncRunBase):
    status: Literal["completed"]
    completed_at: str
    pages_processed: int = Field(default=0, ge=0)
    links_processed: int = Field(default=0, ge=0)


class FailedSyncRun(_SyncRunBase):
    status: Literal["failed"]
    completed_at: str
    pages_processed: int | None = Field(default=None, ge=0)
    links_processed: int | None = Field(default=None, ge=0)


class CancelledSyncRun(_SyncRunBase):
    status: Literal["cancelled"]
    completed_at: str


SyncRun = Annotated[
    Union[ActiveSyncRun, CompletedSyncRun, FailedSyncRun, CancelledSyncRun],
    Field(discriminator="status"),
]

_RUN_ADAPTER: TypeAdapter[Any] = TypeAdapter(SyncRun)

_BASE_FIELDS = {"job_id", "workflow_id", "trigger_type", "started_at", "warnings"}


@dataclass(frozen=True)
class RunUpdate:
    """Partial update for one run.

    ``error_messages``/``warnings`` replace the stored lists when given, so that
    applying the same update twice yields the same run. ``at`` is required for
    terminal transitions.
    """

    status: SyncStatus | None = None
    at: str | None = None
    phase: str | None = None
    progress: int | None = None
    error_messages: tuple[str, ...] | None = None
    warnings: tuple[str, ...] | None = None
    increment_error_count: int = 0
    pages_processed: int | None = None
    links_processed: int | None = None


def new_run(
    *,
    job_id: str,
    workflow_id: str | None,
    trigger_type: TriggerType,
    started_at: str,
    status: Literal["pending", "queued", "running"] = "queued",
) -> ActiveSyncRun:
    return ActiveSyncRun(
        job_id=job_id,
        workflow_id=workflow_id,
        trigger_type=trigger_type,
        started_at=started_at,
        status=status,
        progress=0,
    )


def upgrade_run_record(raw: Mapping[str, Any]) -> dict[str, Any] | None:
    """Bring a stored run dict up to the current layout; ``None`` for unusable entries."""
    # Older writers stored unset optional fields as explicit nulls.
    item = {k: v for k, v in raw.items() if v is not None}
    if "errors" in item:
        legacy = item.pop("errors")
        if "errorMessages" not in item:
            item["errorMessages"] = legacy
    messages = item.get("errorMessages")
    item["errorMessages"] = [str(x) for x in messages] if isinstance(messages, list) else []
    warnings = item.get("warnings")
    item["warnings"] = [str(x) for x in warnings] if isinstance(warnings, list) else []

    if not item.get("jobId") or not item.get("startedAt") or not item.get("status"):
        return None
    item.setdefault("triggerType", "initial")
    if item["status"] in TERMINAL_STATUSES and not item.get("completedAt"):
        item["completedAt"] = item["startedAt"]
    progress = item.get("progress")
    if isinstance(progress, (int, float)) and not isinstance(progress, bool):
        item["progress"] = max(0, min(100, int(round(progress))))
    if not isinstance(item.get("errorCount"), int):
        item["errorCount"] = 0
    return item


class SyncHistoryLedger:
    """Ordered (oldest first) list of runs for one source."""

    def __init__(self, runs: Iterable[Any] = ()) -> None:
        self._runs: list[Any] = list(runs)

    @classmethod
    def from_records(cls, records: Any) -> "SyncHistoryLedger":
        if not isinstance(records, list):
            return cls()
        runs: list[Any] = []
        seen: set[str] = set()
        for raw in records:
            if not isinstance(raw, Mapping):
                continue
            item = upgrade_run_record(raw)
            if item is None or item["jobId"] in seen:
                logger.warning("sync_history_entry_dropped job_id=%s", raw.get("jobId"))
                continue
            try:
                run = _RUN_ADAPTER.validate_python(item)
            except PydanticValidationError as exc:
                logger.warning(
                    "sync_history_entry_dropped job_id=%s errors=%d", raw.get("jobId"), exc.error_count()
                )
                continue
            seen.add(item["jobId"])
            runs.append(run)
        return cls(runs)

    def to_records(self) -> list[dict[str, Any]]:
        return [_RUN_ADAPTER.dump_python(run, by_alias=True, mode="json") for run in self._runs]

    def __iter__(self) -> Iterator[Any]:
        return iter(tuple(self._runs))

    def __len__(self) -> int:
        return len(self._runs)

    def find(self, job_id: str) -> Any | None:
        for run in self._runs:
            if run.job_id == job_id:
                return run
        return None

    def append(self, run: Any) -> Any:
        if self.find(run.job_id) is not None:
            raise LedgerError(f"duplicate job id in sync history: {run.job_id}")
        if run.is_active and self.has_active_run:
            raise LedgerError("another sync run is still active")
        self._runs.append(run)
        return run

    def apply_update(self, job_id: str, update: RunUpdate) -> Any:
        for index, run in enumerate(self._runs):
            if run.job_id == job_id:
                updated = _transition(run, update)
                self._runs[index] = updated
                return updated
        raise LedgerError(f"no sync run with job id: {job_id}")

    @property
    def latest_run(self) -> Any | None:
        return self._runs[-1] if self._runs else None

    @property
    def active_run(self) -> Any | None:
        for run in reversed(self._runs):
            if run.is_active:
                return run
        return None

    @property
    def has_active_run(self) -> bool:
        return self.active_run is not None

    @property
    def last_successful_run(self) -> CompletedSyncRun | None:
        for run in reversed(self._runs):
            if isinstance(run, CompletedSyncRun):
                return run
        return None

    @property
    def success_rate(self) -> float:
        if not self._runs:
            return 0.0
        completed = sum(1 for run in self._runs if isinstance(run, CompletedSyncRun))
        return completed / len(self._runs)


def _transition(run: Any, update: RunUpdate) -> Any:
    target = update.status or run.status
    if run.status in TERMINAL_STATUSES:
        if target != run.status:
            raise LedgerTransitionError(f"sync run {run.job_id} is {run.status}; cannot move to {target}")
        return run

    base = run.model_dump(include=_BASE_FIELDS)
    base["error_messages"] = list(update.error_messages) if update.error_messages is not None else list(run.error_messages)
    if update.warnings is not None:
        base["warnings"] = list(update.warnings)
    base["error_count"] = run.error_count + max(0, update.increment_error_count)

    if target in ACTIVE_STATUSES:
        if _ACTIVE_RANK[target] < _ACTIVE_RANK[run.status]:
            raise LedgerTransitionError(f"sync run {run.job_id} cannot regress from {run.status} to {target}")
        return ActiveSyncRun(
            **base,
            status=target,
            phase=update.phase if update.phase is not None else run.phase,
            progress=update.progress if update.progress is not None else run.progress,
        )

    if not update.at:
        raise LedgerError("terminal transition requires a completion timestamp")
    if target == "completed":
        return CompletedSyncRun(
            **base,
            status="completed",
            completed_at=update.at,
            pages_processed=update.pages_processed or 0,
            links_processed=update.links_processed or 0,
        )
    if target == "failed":
        return FailedSyncRun(
            **base,
            status="failed",
            completed_at=update.at,
            pages_processed=update.pages_processed,
            links_processed=update.links_processed,
        )
    return CancelledSyncRun(**base, status="cancelled", completed_at=update.at)
