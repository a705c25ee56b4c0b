from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock, patch
from urllib.error import URLError

from sourcesync.config import Settings
from sourcesync.observability import (
    LoggingErrorReporter,
    WebhookErrorReporter,
    create_error_reporter_from_env,
)


def test_logging_reporter_redacts_context(caplog):
    with caplog.at_level(logging.ERROR, logger="sourcesync.observability"):
        LoggingErrorReporter().report(RuntimeError("boom"), context={"source_id": "src_1", "password": "p"})

    assert "unexpected_error type=RuntimeError" in caplog.text
    assert "src_1" in caplog.text
    assert "'p'" not in caplog.text


def test_webhook_reporter_posts_alert():
    resp = MagicMock()
    resp.__enter__.return_value = resp
    with patch("sourcesync.observability.request.urlopen", return_value=resp) as urlopen:
        WebhookErrorReporter(webhook_url="http://alerts.local/hook").report(
            ValueError("bad"), context={"token": "secret-value"}
        )

    req = urlopen.call_args.args[0]
    body = json.loads(req.data)
    assert req.full_url == "http://alerts.local/hook"
    assert body["error_type"] == "ValueError"
    assert body["context"]["token"] == "***REDACTED***"


def test_webhook_reporter_never_raises(caplog):
    with patch("sourcesync.observability.request.urlopen", side_effect=URLError("down")):
        WebhookErrorReporter(webhook_url="http://alerts.local/hook").report(RuntimeError("x"), context={})
    assert "alert_webhook_failed" in caplog.text


def test_reporter_factory():
    assert isinstance(create_error_reporter_from_env(Settings.from_env({})), LoggingErrorReporter)
    webhook = create_error_reporter_from_env(Settings.from_env({"OBS_ALERT_WEBHOOK": "http://alerts.local"}))
    assert isinstance(webhook, WebhookErrorReporter)
