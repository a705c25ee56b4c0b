from __future__ import annotations

from sourcesync.config import Settings, true_stack_required


def test_settings_defaults():
    settings = Settings.from_env({})

    assert settings.store_backend == "memory"
    assert settings.sources_table == "extraction_sources"
    assert settings.extraction_api_url == ""
    assert settings.extraction_timeout_s == 15.0
    assert settings.list_default_limit == 25
    assert settings.list_max_limit == 100
    assert settings.log_level == "INFO"
    assert settings.require_true_stack is False


def test_settings_parse_and_clamp_values():
    settings = Settings.from_env(
        {
            "SOURCESYNC_STORE_BACKEND": " SQLite ",
            "EXTRACTION_API_URL": "http://extract.local/",
            "EXTRACTION_API_TIMEOUT_S": "not-a-number",
            "SOURCESYNC_LIST_MAX_LIMIT": "10",
            "SOURCESYNC_LIST_DEFAULT_LIMIT": "50",
            "CORS_ALLOW_ORIGINS": "https://a.example, ,https://b.example",
            "SOURCESYNC_LOG_LEVEL": "debug",
        }
    )

    assert settings.store_backend == "sqlite"
    assert settings.extraction_api_url == "http://extract.local"
    assert settings.extraction_timeout_s == 15.0
    assert settings.list_max_limit == 10
    assert settings.list_default_limit == 10
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.log_level == "DEBUG"


def test_true_stack_flag():
    assert true_stack_required({"SOURCESYNC_REQUIRE_TRUESTACK": "yes"}) is True
    assert true_stack_required({"SOURCESYNC_REQUIRE_TRUESTACK": "0"}) is False
