#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sourcesync.config import Settings
from sourcesync.extraction_client import create_extraction_client_from_env
from sourcesync.observability import configure_logging, create_error_reporter_from_env
from sourcesync.reconciliation import ReconciliationEngine
from sourcesync.store import create_sources_repository_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile every active extraction source against the extraction service")
    parser.add_argument("--tenant-id", default="", help="limit the sweep to one tenant")
    args = parser.parse_args()

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    engine = ReconciliationEngine(
        repository=create_sources_repository_from_env(settings),
        client=create_extraction_client_from_env(settings),
        reporter=create_error_reporter_from_env(settings),
    )
    report = engine.reconcile_active(tenant_id=args.tenant_id.strip() or None)
    print(json.dumps(asdict(report), ensure_ascii=True, sort_keys=True, indent=2))
    return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
