from __future__ import annotations

import logging

from sourcesync.config import Settings
from sourcesync.db.postgres import PostgresTxRunner
from sourcesync.repositories.sources import (
    InMemorySourcesRepository,
    PostgresSourcesRepository,
    SourcesRepository,
    SqliteSourcesRepository,
)

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("memory", "sqlite", "postgres")


def create_sources_repository_from_env(settings: Settings | None = None) -> SourcesRepository:
    settings = settings or Settings.from_env()
    backend = settings.store_backend
    if backend not in STORE_BACKENDS:
        raise ValueError(f"SOURCESYNC_STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, got {backend}")
    if settings.require_true_stack and backend != "postgres":
        raise RuntimeError("SOURCESYNC_STORE_BACKEND must be postgres when SOURCESYNC_REQUIRE_TRUESTACK=true")
    if backend == "sqlite":
        return SqliteSourcesRepository(db_path=settings.sqlite_path, table_name=settings.sources_table)
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when SOURCESYNC_STORE_BACKEND=postgres")
        return PostgresSourcesRepository(
            tx_runner=PostgresTxRunner(settings.postgres_dsn),
            table_name=settings.sources_table,
        )
    logger.info("sources_store backend=memory")
    return InMemorySourcesRepository()
