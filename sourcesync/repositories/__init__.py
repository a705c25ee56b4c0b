from sourcesync.repositories.sources import (
    InMemorySourcesRepository,
    PostgresSourcesRepository,
    SourceExistsError,
    SourcesRepository,
    SqliteSourcesRepository,
)

__all__ = [
    "InMemorySourcesRepository",
    "PostgresSourcesRepository",
    "SourceExistsError",
    "SourcesRepository",
    "SqliteSourcesRepository",
]
