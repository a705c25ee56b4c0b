from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from sourcesync.errors import ApiError
from sourcesync.lifecycle import LifecycleController
from sourcesync.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return tenant_id
    return "tenant_default"


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def controller_from_request(request: Request) -> LifecycleController:
    return request.app.state.controller


def error_response(request: Request, exc: ApiError) -> JSONResponse:
    response = JSONResponse(
        status_code=exc.http_status,
        content=error_envelope(
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            trace_id=trace_id_from_request(request),
            details=exc.details,
        ),
    )
    response.headers["x-trace-id"] = trace_id_from_request(request)
    response.headers["x-request-id"] = request_id_from_request(request)
    return response
