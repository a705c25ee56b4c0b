from __future__ import annotations

from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for the postgres sources backend; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction, optionally scoped to a tenant session."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def connect(self) -> Any:
        return _import_psycopg().connect(self._dsn)

    def run_in_tx(
        self,
        *,
        tenant_id: str | None,
        fn: Callable[[Any], Any],
    ) -> Any:
        """``tenant_id=None`` is reserved for operator tooling that scans every tenant."""
        if tenant_id is not None and not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        with self.connect() as conn:
            if tenant_id is not None:
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
            result = fn(conn)
            conn.commit()
            return result
