"""Extraction Source record and its embedded value objects.

Records are persisted as JSON-shaped dicts with camelCase keys. ``ExtractionSource``
is the in-process view; ``from_record``/``to_record`` convert at the store boundary.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sourcesync.ledger import ACTIVE_STATUSES, CompletedSyncRun, SyncHistoryLedger

SCHEMA_VERSION = 2


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_source_id() -> str:
    return f"src_{uuid.uuid4().hex[:12]}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class SourceConfig(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    max_pages: int | None = Field(default=None, ge=1, le=10000)
    max_depth: int | None = Field(default=None, ge=0, le=20)
    strategy: Literal["BFS", "DFS"] | None = None
    include_paths: list[str] | None = None
    exclude_paths: list[str] | None = None
    extract_code_blocks: bool | None = None
    extract_thumbnails: bool | None = None


class Credentials(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    login_url: str | None = None


class MetricsSummary(_CamelModel):
    pages_processed: int = 0
    links_processed: int = 0
    external_links_detected: int = 0
    error_count: int = 0
    errors: list[str] = Field(default_factory=list)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


@dataclass
class ExtractionSource:
    id: str
    tenant_id: str
    source_kind: str
    locator: dict[str, Any]
    status: str
    created_at: str
    updated_at: str
    name: str | None = None
    description: str | None = None
    active_job_id: str | None = None
    active_workflow_id: str | None = None
    config: SourceConfig = field(default_factory=SourceConfig)
    credentials: Credentials | None = None
    metrics: MetricsSummary = field(default_factory=MetricsSummary)
    history: SyncHistoryLedger = field(default_factory=SyncHistoryLedger)
    started_at: str | None = None
    completed_at: str | None = None
    version: int = 0
    schema_version: int = SCHEMA_VERSION

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ExtractionSource":
        credentials = record.get("credentials")
        metrics = record.get("metricsSummary")
        return cls(
            id=str(record["id"]),
            tenant_id=str(record["tenantId"]),
            source_kind=str(record["sourceKind"]),
            locator=dict(record.get("locator") or {}),
            status=str(record.get("status") or "pending"),
            created_at=str(record.get("createdAt") or ""),
            updated_at=str(record.get("updatedAt") or record.get("createdAt") or ""),
            name=record.get("name"),
            description=record.get("description"),
            active_job_id=record.get("activeJobId"),
            active_workflow_id=record.get("activeWorkflowId"),
            config=SourceConfig.model_validate(record.get("config") or {}),
            credentials=Credentials.model_validate(credentials) if isinstance(credentials, dict) else None,
            metrics=MetricsSummary.model_validate(metrics) if isinstance(metrics, dict) else MetricsSummary(),
            history=SyncHistoryLedger.from_records(record.get("syncHistory")),
            started_at=record.get("startedAt"),
            completed_at=record.get("completedAt"),
            version=int(record.get("version") or 0),
            schema_version=SCHEMA_VERSION,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "sourceKind": self.source_kind,
            "name": self.name,
            "description": self.description,
            "locator": dict(self.locator),
            "status": self.status,
            "activeJobId": self.active_job_id,
            "activeWorkflowId": self.active_workflow_id,
            "config": self.config.dump(),
            "credentials": self.credentials.dump() if self.credentials is not None else None,
            "metricsSummary": self.metrics.dump(),
            "syncHistory": self.history.to_records(),
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "updatedAt": self.updated_at,
            "version": self.version,
            "schemaVersion": self.schema_version,
        }

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def begin_run(self, run: Any) -> None:
        """Append an active run and point the source at it."""
        self.history.append(run)
        self.status = run.status
        self.active_job_id = run.job_id
        self.active_workflow_id = run.workflow_id
        self.started_at = run.started_at
        self.completed_at = None

    def settle(self, status: str, at: str) -> None:
        """Move the source to a terminal status and drop its active handles."""
        self.status = status
        self.active_job_id = None
        self.active_workflow_id = None
        self.completed_at = at

    def record_error(self, message: str) -> None:
        self.metrics.error_count += 1
        self.metrics.errors = [message]


def sync_summary(history: SyncHistoryLedger) -> dict[str, Any]:
    last_ok: CompletedSyncRun | None = history.last_successful_run
    return {
        "totalRuns": len(history),
        "successRate": round(history.success_rate, 4),
        "hasActiveRun": history.has_active_run,
        "lastSuccessfulRun": (
            {
                "jobId": last_ok.job_id,
                "completedAt": last_ok.completed_at,
                "pagesProcessed": last_ok.pages_processed,
                "linksProcessed": last_ok.links_processed,
            }
            if last_ok is not None
            else None
        ),
    }


def public_view(source: ExtractionSource) -> dict[str, Any]:
    """Read-path serialization; credentials never leave through here."""
    data = source.to_record()
    data.pop("credentials", None)
    data["hasAuthentication"] = source.credentials is not None
    data["syncSummary"] = sync_summary(source.history)
    return data
