#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sourcesync.db.postgres import PostgresTxRunner
from sourcesync.repositories.sources import PostgresSourcesRepository


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the extraction sources table and, optionally, its tenant RLS policy")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--table",
        default=os.getenv("SOURCESYNC_SOURCES_TABLE", "extraction_sources"),
        help="sources table name",
    )
    parser.add_argument("--with-rls", action="store_true", help="enable row level security keyed on tenant_id")
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    repo = PostgresSourcesRepository(tx_runner=PostgresTxRunner(dsn), table_name=args.table)
    applied = repo.ensure_schema(with_rls=args.with_rls)
    print(
        json.dumps(
            {"table": args.table, "rls": args.with_rls, "statements": len(applied)},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
