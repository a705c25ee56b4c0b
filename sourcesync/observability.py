from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib import request
from urllib.error import URLError

from sourcesync.config import Settings
from sourcesync.security import redact_sensitive

logger = logging.getLogger(__name__)


class ErrorReporter(Protocol):
    def report(self, exc: BaseException, *, context: Mapping[str, Any]) -> None: ...


class LoggingErrorReporter:
    def report(self, exc: BaseException, *, context: Mapping[str, Any]) -> None:
        logger.error(
            "unexpected_error type=%s context=%s",
            type(exc).__name__,
            redact_sensitive(dict(context)),
            exc_info=(type(exc), exc, exc.__traceback__),
        )


class WebhookErrorReporter:
    """Logs the error, then posts a JSON alert. Delivery failures are logged, never raised."""

    def __init__(self, *, webhook_url: str, timeout_s: float = 3.0, service: str = "sourcesync") -> None:
        self._webhook_url = webhook_url
        self._timeout_s = timeout_s
        self._service = service
        self._fallback = LoggingErrorReporter()

    def report(self, exc: BaseException, *, context: Mapping[str, Any]) -> None:
        self._fallback.report(exc, context=context)
        payload = {
            "service": self._service,
            "error_type": type(exc).__name__,
            "message": str(exc),
            "context": redact_sensitive(dict(context)),
            "reported_at": datetime.now(UTC).isoformat(),
        }
        req = request.Request(
            self._webhook_url,
            data=json.dumps(payload, default=str).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self._timeout_s) as resp:
                resp.read()
        except (URLError, TimeoutError, OSError) as err:
            logger.warning("alert_webhook_failed error=%s", err)


def create_error_reporter_from_env(settings: Settings | None = None) -> ErrorReporter:
    settings = settings or Settings.from_env()
    if settings.alert_webhook:
        return WebhookErrorReporter(webhook_url=settings.alert_webhook)
    return LoggingErrorReporter()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
