from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from sourcesync.config import Settings
from sourcesync.errors import ApiError, ForbiddenError, ValidationError
from sourcesync.extraction_client import ExtractionClient, create_extraction_client_from_env
from sourcesync.lifecycle import LifecycleController
from sourcesync.observability import ErrorReporter, configure_logging, create_error_reporter_from_env
from sourcesync.repositories.sources import SourcesRepository
from sourcesync.routes import sources as sources_routes
from sourcesync.routes._deps import error_response, request_id_from_request, trace_id_from_request
from sourcesync.schemas import success_envelope
from sourcesync.security import JwtSecurityConfig, parse_and_validate_bearer_token
from sourcesync.store import create_sources_repository_from_env

logger = logging.getLogger(__name__)

_SECURITY_CODES = {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "TENANT_SCOPE_VIOLATION"}


def create_app(
    *,
    settings: Settings | None = None,
    repository: SourcesRepository | None = None,
    extraction_client: ExtractionClient | None = None,
    reporter: ErrorReporter | None = None,
    security_cfg: JwtSecurityConfig | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    security_cfg = security_cfg or JwtSecurityConfig.from_env()
    reporter = reporter or create_error_reporter_from_env(settings)

    app = FastAPI(title="sourcesync", version="0.1.0")
    app.state.settings = settings
    app.state.security_cfg = security_cfg
    app.state.reporter = reporter
    app.state.controller = LifecycleController(
        repository=repository or create_sources_repository_from_env(settings),
        client=extraction_client or create_extraction_client_from_env(settings),
        reporter=reporter,
        list_default_limit=settings.list_default_limit,
        list_max_limit=settings.list_max_limit,
    )

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        request.state.trace_id = request.headers.get("x-trace-id", "").strip() or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        try:
            path = request.url.path
            header_tenant_explicit = request.headers.get("x-tenant-id")
            if security_cfg.enabled and path.startswith("/api/v1/") and path != "/api/v1/health":
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth_subject = auth_ctx.subject
                request.state.tenant_id = auth_ctx.tenant_id
                if header_tenant_explicit and header_tenant_explicit != auth_ctx.tenant_id:
                    raise ForbiddenError("tenant mismatch", code="TENANT_SCOPE_VIOLATION")
            else:
                request.state.tenant_id = header_tenant_explicit or "tenant_default"
        except ApiError as exc:
            logger.warning("security_blocked code=%s path=%s", exc.code, request.url.path)
            return error_response(request, exc)
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_CODES:
            logger.warning("security_blocked code=%s path=%s", exc.code, request.url.path)
        elif exc.http_status >= 500:
            logger.warning("upstream_failure code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(x) for x in err.get("loc", ())[1:]) for err in exc.errors()} - {""})
        message = f"invalid payload: {', '.join(fields)}" if fields else "invalid payload"
        return error_response(request, ValidationError(message))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            code, message = "REQ_NOT_FOUND", "resource not found"
        else:
            code, message = "REQ_HTTP_ERROR", str(exc.detail)
        return error_response(
            request,
            ApiError(
                code=code,
                message=message,
                error_class="validation",
                retryable=False,
                http_status=exc.status_code,
            ),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        reporter.report(
            exc,
            context={
                "method": request.method,
                "path": request.url.path,
                "trace_id": trace_id_from_request(request),
            },
        )
        return error_response(
            request,
            ApiError(
                code="INTERNAL_ERROR",
                message="internal server error",
                error_class="internal",
                retryable=False,
                http_status=500,
            ),
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(sources_routes.router)
    return app


app = create_app()
