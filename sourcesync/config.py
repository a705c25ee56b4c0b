from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return env.get(name, default).strip() or default


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("SOURCESYNC_REQUIRE_TRUESTACK", "false"))


@dataclass(frozen=True)
class Settings:
    store_backend: str
    sqlite_path: str
    postgres_dsn: str
    sources_table: str
    extraction_api_url: str
    extraction_api_key: str
    extraction_timeout_s: float
    require_true_stack: bool
    list_default_limit: int
    list_max_limit: int
    cors_allow_origins: list[str]
    alert_webhook: str
    log_level: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        max_limit = _env_int(env, "SOURCESYNC_LIST_MAX_LIMIT", default=100, minimum=1)
        return cls(
            store_backend=_env_str(env, "SOURCESYNC_STORE_BACKEND", "memory").lower(),
            sqlite_path=_env_str(env, "SOURCESYNC_STORE_SQLITE_PATH", ".local/sourcesync.sqlite3"),
            postgres_dsn=_env_str(env, "POSTGRES_DSN"),
            sources_table=_env_str(env, "SOURCESYNC_SOURCES_TABLE", "extraction_sources"),
            extraction_api_url=_env_str(env, "EXTRACTION_API_URL").rstrip("/"),
            extraction_api_key=_env_str(env, "EXTRACTION_API_KEY"),
            extraction_timeout_s=_env_float(env, "EXTRACTION_API_TIMEOUT_S", default=15.0, minimum=0.1),
            require_true_stack=true_stack_required(env),
            list_default_limit=min(
                max_limit,
                _env_int(env, "SOURCESYNC_LIST_DEFAULT_LIMIT", default=25, minimum=1),
            ),
            list_max_limit=max_limit,
            cors_allow_origins=_split_csv(
                env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
            ),
            alert_webhook=_env_str(env, "OBS_ALERT_WEBHOOK"),
            log_level=_env_str(env, "SOURCESYNC_LOG_LEVEL", "INFO").upper(),
        )
