from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from sourcesync.models import Credentials, SourceConfig


class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class CreateSourceRequest(_RequestModel):
    source_kind: Literal["documentation", "website", "video", "file"]
    locator: dict[str, Any]
    name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    config: SourceConfig | None = None
    credentials: Credentials | None = None

    @model_validator(mode="before")
    @classmethod
    def _file_body_as_locator(cls, data: Any) -> Any:
        """File sources may send their descriptor as ``file`` instead of ``locator``."""
        if not isinstance(data, dict) or "file" not in data:
            return data
        kind = data.get("sourceKind", data.get("source_kind"))
        if kind != "file":
            raise ValueError("file is only accepted for file sources; use locator")
        if "locator" in data:
            raise ValueError("send either locator or file, not both")
        data = dict(data)
        data["locator"] = data.pop("file")
        return data


class UpdateSourceRequest(_RequestModel):
    name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    config: SourceConfig | None = None
    credentials: Credentials | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
