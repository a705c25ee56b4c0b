"""Extraction source repositories.

All backends store the whole source record as one JSON payload next to a few
indexed columns, and expose the same conditional ``replace`` so that concurrent
writers cannot both act on the same ``version``.
"""

from __future__ import annotations

import copy
import json
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol

from sourcesync.db.postgres import PostgresTxRunner
from sourcesync.ledger import ACTIVE_STATUSES


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _dumps(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, sort_keys=True)


class SourceExistsError(ValueError):
    pass


class SourcesRepository(Protocol):
    def create(self, *, record: dict[str, Any]) -> dict[str, Any]: ...

    def get(self, *, tenant_id: str, source_id: str) -> dict[str, Any] | None: ...

    def list(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        source_kind: str | None = None,
        offset: int = 0,
        limit: int = 25,
    ) -> tuple[list[dict[str, Any]], int]: ...

    def replace(self, *, record: dict[str, Any], expected_version: int) -> bool: ...

    def delete(self, *, tenant_id: str, source_id: str) -> bool: ...

    def list_active(self, *, tenant_id: str | None = None) -> list[dict[str, Any]]: ...


class InMemorySourcesRepository:
    def __init__(self, rows: dict[str, dict[str, Any]] | None = None) -> None:
        self._rows = rows if rows is not None else {}
        self._lock = threading.Lock()

    def create(self, *, record: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            if record["id"] in self._rows:
                raise SourceExistsError(f"source already exists: {record['id']}")
            self._rows[record["id"]] = copy.deepcopy(record)
        return copy.deepcopy(record)

    def get(self, *, tenant_id: str, source_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(source_id)
            if row is None or row.get("tenantId") != tenant_id:
                return None
            return copy.deepcopy(row)

    def list(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        source_kind: str | None = None,
        offset: int = 0,
        limit: int = 25,
    ) -> tuple[list[dict[str, Any]], int]:
        with self._lock:
            rows = [
                r
                for r in self._rows.values()
                if r.get("tenantId") == tenant_id
                and (status is None or r.get("status") == status)
                and (source_kind is None or r.get("sourceKind") == source_kind)
            ]
            rows.sort(key=lambda r: (str(r.get("createdAt") or ""), str(r["id"])), reverse=True)
            return [copy.deepcopy(r) for r in rows[offset : offset + limit]], len(rows)

    def replace(self, *, record: dict[str, Any], expected_version: int) -> bool:
        with self._lock:
            current = self._rows.get(record["id"])
            if current is None or current.get("tenantId") != record["tenantId"]:
                return False
            if int(current.get("version") or 0) != expected_version:
                return False
            self._rows[record["id"]] = copy.deepcopy(record)
            return True

    def delete(self, *, tenant_id: str, source_id: str) -> bool:
        with self._lock:
            row = self._rows.get(source_id)
            if row is None or row.get("tenantId") != tenant_id:
                return False
            del self._rows[source_id]
            return True

    def list_active(self, *, tenant_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._rows.values()
                if r.get("status") in ACTIVE_STATUSES and (tenant_id is None or r.get("tenantId") == tenant_id)
            ]


class SqliteSourcesRepository:
    """One row per source; ``payload`` holds the JSON record."""

    def __init__(self, *, db_path: str, table_name: str = "extraction_sources") -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table_name = _validate_identifier(table_name)
        self._lock = threading.RLock()
        self._initialize_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _initialize_database(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table_name} (
                  id TEXT PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  source_kind TEXT NOT NULL,
                  status TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  version INTEGER NOT NULL,
                  payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {self._table_name}_tenant_created "
                f"ON {self._table_name} (tenant_id, created_at)"
            )
            conn.commit()

    @staticmethod
    def _load(raw: Any) -> dict[str, Any] | None:
        if not isinstance(raw, str):
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    def create(self, *, record: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (id, tenant_id, source_kind, status, created_at, version, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    sql,
                    (
                        record["id"],
                        record["tenantId"],
                        record["sourceKind"],
                        record["status"],
                        record["createdAt"],
                        int(record.get("version") or 0),
                        _dumps(record),
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise SourceExistsError(f"source already exists: {record['id']}") from exc
        return dict(record)

    def get(self, *, tenant_id: str, source_id: str) -> dict[str, Any] | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT payload FROM {self._table_name} WHERE tenant_id = ? AND id = ? LIMIT 1",
                (tenant_id, source_id),
            ).fetchone()
        return None if row is None else self._load(row[0])

    def list(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        source_kind: str | None = None,
        offset: int = 0,
        limit: int = 25,
    ) -> tuple[list[dict[str, Any]], int]:
        where = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]
        if status is not None:
            where.append("status = ?")
            params.append(status)
        if source_kind is not None:
            where.append("source_kind = ?")
            params.append(source_kind)
        clause = " AND ".join(where)
        with self._lock, self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {self._table_name} WHERE {clause}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT payload FROM {self._table_name} WHERE {clause} "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        items = [p for p in (self._load(r[0]) for r in rows) if p is not None]
        return items, int(total)

    def replace(self, *, record: dict[str, Any], expected_version: int) -> bool:
        sql = f"""
            UPDATE {self._table_name}
            SET status = ?, version = ?, payload = ?
            WHERE id = ? AND tenant_id = ? AND version = ?
        """
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                sql,
                (
                    record["status"],
                    int(record["version"]),
                    _dumps(record),
                    record["id"],
                    record["tenantId"],
                    expected_version,
                ),
            )
            conn.commit()
            return cur.rowcount == 1

    def delete(self, *, tenant_id: str, source_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"DELETE FROM {self._table_name} WHERE tenant_id = ? AND id = ?",
                (tenant_id, source_id),
            )
            conn.commit()
            return cur.rowcount == 1

    def list_active(self, *, tenant_id: str | None = None) -> list[dict[str, Any]]:
        statuses = sorted(ACTIVE_STATUSES)
        sql = f"SELECT payload FROM {self._table_name} WHERE status IN ({', '.join('?' for _ in statuses)})"
        params: list[Any] = list(statuses)
        if tenant_id is not None:
            sql += " AND tenant_id = ?"
            params.append(tenant_id)
        with self._lock, self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [p for p in (self._load(r[0]) for r in rows) if p is not None]


class PostgresSourcesRepository:
    """Sources repository for postgres backend; keeps tenant_id in every query scope."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "extraction_sources") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def schema_sql(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
              id TEXT PRIMARY KEY,
              tenant_id TEXT NOT NULL,
              source_kind TEXT NOT NULL,
              status TEXT NOT NULL,
              created_at TIMESTAMPTZ NOT NULL,
              version INTEGER NOT NULL,
              payload JSONB NOT NULL
            )
            """,
            f"CREATE INDEX IF NOT EXISTS {self._table_name}_tenant_created "
            f"ON {self._table_name} (tenant_id, created_at DESC)",
            f"CREATE INDEX IF NOT EXISTS {self._table_name}_status ON {self._table_name} (status)",
        ]

    def rls_sql(self) -> list[str]:
        # Not FORCEd: the table owner (operator sweeps) still sees every tenant.
        table = self._table_name
        policy = f"{table}_tenant_isolation"
        return [
            f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
            f"DROP POLICY IF EXISTS {policy} ON {table}",
            f"""
            CREATE POLICY {policy} ON {table}
            USING ({table}.tenant_id = current_setting('app.current_tenant', true))
            WITH CHECK ({table}.tenant_id = current_setting('app.current_tenant', true))
            """,
        ]

    def ensure_schema(self, *, with_rls: bool = False) -> list[str]:
        statements = self.schema_sql() + (self.rls_sql() if with_rls else [])

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for stmt in statements:
                    cur.execute(stmt)

        self._tx_runner.run_in_tx(tenant_id=None, fn=_op)
        return statements

    @staticmethod
    def _payload(raw: Any) -> dict[str, Any] | None:
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return None
            return parsed if isinstance(parsed, dict) else None
        return None

    def create(self, *, record: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (id, tenant_id, source_kind, status, created_at, version, payload)
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT (id) DO NOTHING
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        record["id"],
                        record["tenantId"],
                        record["sourceKind"],
                        record["status"],
                        record["createdAt"],
                        int(record.get("version") or 0),
                        _dumps(record),
                    ),
                )
                return cur.rowcount

        inserted = self._tx_runner.run_in_tx(tenant_id=record["tenantId"], fn=_op)
        if inserted != 1:
            raise SourceExistsError(f"source already exists: {record['id']}")
        return dict(record)

    def get(self, *, tenant_id: str, source_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, source_id))
                row = cur.fetchone()
            return None if row is None else self._payload(row[0])

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        source_kind: str | None = None,
        offset: int = 0,
        limit: int = 25,
    ) -> tuple[list[dict[str, Any]], int]:
        where = ["tenant_id = %s"]
        params: list[Any] = [tenant_id]
        if status is not None:
            where.append("status = %s")
            params.append(status)
        if source_kind is not None:
            where.append("source_kind = %s")
            params.append(source_kind)
        clause = " AND ".join(where)
        count_sql = f"SELECT COUNT(*) FROM {self._table_name} WHERE {clause}"
        page_sql = (
            f"SELECT payload FROM {self._table_name} WHERE {clause} "
            "ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s"
        )

        def _op(conn: Any) -> tuple[list[dict[str, Any]], int]:
            with conn.cursor() as cur:
                cur.execute(count_sql, tuple(params))
                total = int(cur.fetchone()[0])
                cur.execute(page_sql, (*params, limit, offset))
                rows = cur.fetchall()
            return [p for p in (self._payload(r[0]) for r in rows) if p is not None], total

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def replace(self, *, record: dict[str, Any], expected_version: int) -> bool:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, version = %s, payload = %s::jsonb
            WHERE id = %s AND tenant_id = %s AND version = %s
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        record["status"],
                        int(record["version"]),
                        _dumps(record),
                        record["id"],
                        record["tenantId"],
                        expected_version,
                    ),
                )
                return cur.rowcount == 1

        return self._tx_runner.run_in_tx(tenant_id=record["tenantId"], fn=_op)

    def delete(self, *, tenant_id: str, source_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE tenant_id = %s AND id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, source_id))
                return cur.rowcount == 1

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_active(self, *, tenant_id: str | None = None) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name} WHERE status = ANY(%s)"
        params: list[Any] = [sorted(ACTIVE_STATUSES)]
        if tenant_id is not None:
            sql += " AND tenant_id = %s"
            params.append(tenant_id)

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [p for p in (self._payload(r[0]) for r in rows) if p is not None]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
