from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from sourcesync.routes._deps import controller_from_request, tenant_id_from_request, trace_id_from_request
from sourcesync.schemas import CreateSourceRequest, UpdateSourceRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["sources"])


@router.post("/sources")
def create_source(payload: CreateSourceRequest, request: Request):
    data = controller_from_request(request).start(tenant_id_from_request(request), payload)
    return JSONResponse(
        status_code=201,
        content=success_envelope(data, trace_id_from_request(request), message="extraction started"),
    )


@router.get("/sources")
def list_sources(
    request: Request,
    status: str | None = Query(default=None),
    source_kind: str | None = Query(default=None, alias="sourceKind"),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
):
    data = controller_from_request(request).list(
        tenant_id_from_request(request),
        status=status,
        source_kind=source_kind,
        page=page,
        limit=limit,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/sources/{source_id}")
def get_source(source_id: str, request: Request):
    data = controller_from_request(request).get(tenant_id_from_request(request), source_id)
    return success_envelope(data, trace_id_from_request(request))


@router.patch("/sources/{source_id}")
def update_source(source_id: str, payload: UpdateSourceRequest, request: Request):
    data = controller_from_request(request).update(tenant_id_from_request(request), source_id, payload)
    return success_envelope(data, trace_id_from_request(request), message="source updated")


@router.post("/sources/{source_id}/resync")
def resync_source(source_id: str, request: Request):
    data = controller_from_request(request).resync(tenant_id_from_request(request), source_id)
    return success_envelope(data, trace_id_from_request(request), message="resync started")


@router.post("/sources/{source_id}/cancel")
def cancel_source(source_id: str, request: Request):
    result = controller_from_request(request).cancel(tenant_id_from_request(request), source_id)
    return success_envelope(result.to_dict(), trace_id_from_request(request), message=result.detail)


@router.post("/sources/{source_id}/pause")
def pause_source(source_id: str, request: Request):
    result = controller_from_request(request).pause(tenant_id_from_request(request), source_id)
    return success_envelope(result.to_dict(), trace_id_from_request(request), message=result.detail)


@router.post("/sources/{source_id}/resume")
def resume_source(source_id: str, request: Request):
    result = controller_from_request(request).resume(tenant_id_from_request(request), source_id)
    return success_envelope(result.to_dict(), trace_id_from_request(request), message=result.detail)


@router.get("/sources/{source_id}/results")
def source_results(source_id: str, request: Request):
    data = controller_from_request(request).results(tenant_id_from_request(request), source_id)
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/sources/{source_id}")
def delete_source(source_id: str, request: Request):
    data = controller_from_request(request).delete(tenant_id_from_request(request), source_id)
    return success_envelope(data, trace_id_from_request(request), message="source deleted")
