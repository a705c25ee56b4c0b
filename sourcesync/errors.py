from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class ValidationError(ApiError):
    def __init__(self, message: str, *, code: str = "REQ_VALIDATION_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class UnauthorizedError(ApiError):
    def __init__(self, message: str, *, code: str = "AUTH_UNAUTHORIZED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )


class ForbiddenError(ApiError):
    def __init__(self, message: str, *, code: str = "AUTH_FORBIDDEN") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "SOURCE_NOT_FOUND") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class ConflictError(ApiError):
    """An operation would break a lifecycle invariant (e.g. resync while a run is active)."""

    def __init__(self, message: str, *, code: str = "SOURCE_STATE_CONFLICT") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=400,
        )


class UpstreamError(ApiError):
    """The extraction service failed or refused a request."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "UPSTREAM_ERROR",
        error_class: str = "upstream",
        retryable: bool = False,
        http_status: int = 502,
        upstream_status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            http_status=http_status,
            details=details,
        )
        self.upstream_status = upstream_status


class UpstreamNotFoundError(UpstreamError):
    """The external job no longer exists. Terminal: local state must be resolved."""

    def __init__(self, message: str, *, upstream_status: int | None = 404) -> None:
        super().__init__(
            message,
            code="UPSTREAM_JOB_NOT_FOUND",
            error_class="upstream_not_found",
            upstream_status=upstream_status,
        )


class UpstreamRejectedError(UpstreamError):
    """The extraction service understood the request but refused it (e.g. job cannot be cancelled)."""

    def __init__(self, message: str, *, upstream_status: int | None = None) -> None:
        super().__init__(
            message,
            code="UPSTREAM_REQUEST_REJECTED",
            error_class="upstream_rejected",
            upstream_status=upstream_status,
        )


class UpstreamTransientError(UpstreamError):
    """Timeout, network failure, 429 or 5xx. Retryable: local state is left as-is."""

    def __init__(self, message: str, *, upstream_status: int | None = None) -> None:
        super().__init__(
            message,
            code="UPSTREAM_UNAVAILABLE",
            error_class="transient",
            retryable=True,
            http_status=503,
            upstream_status=upstream_status,
        )
