#!/usr/bin/env python3
"""Run gate discovery for one event from the command line.

Examples:
  python backend/scripts/run_gate_discovery.py --event-id <uuid>
  python backend/scripts/run_gate_discovery.py --event-id <uuid> --dry-run --pretty
  python backend/scripts/run_gate_discovery.py --event-id <uuid> --assign-only
  python backend/scripts/run_gate_discovery.py --event-id <uuid> --quality-only

Exit code is 0 when the run succeeds and 1 otherwise (including
insufficient data and an unreachable catalog).

Mutating runs take the same Redis event lock as the API and workers.
Set EVENT_LOCK_BACKEND=local to run against a database without Redis.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import uuid
from typing import Any

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from db.session import standalone_session
from discovery.errors import CatalogUnavailableError
from discovery.pipeline import assign_orphans, quality_report, run_discovery


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    settings = get_settings()
    event_id = uuid.UUID(args.event_id)
    async with standalone_session(args.database_url or settings.database_url) as db:
        if args.quality_only:
            report = await quality_report(db, event_id, settings=settings)
            return {"success": True, "operation": "quality", **report.to_dict()}
        if args.assign_only:
            report = await assign_orphans(db, event_id, dry_run=args.dry_run, trigger="cli", settings=settings)
            return {"operation": "assign_orphans", **report.to_dict()}
        report = await run_discovery(db, event_id, dry_run=args.dry_run, trigger="cli", settings=settings)
        return {"operation": "discovery", **report.to_dict()}


def main() -> int:
    parser = argparse.ArgumentParser(description="Run automatic gate discovery for an event")
    parser.add_argument("--event-id", required=True, help="Event UUID")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without writing")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--assign-only", action="store_true", help="Only assign orphaned check-ins")
    mode.add_argument("--quality-only", action="store_true", help="Only print the data quality report")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args()

    try:
        uuid.UUID(args.event_id)
    except ValueError:
        summary = {"success": False, "error": "invalid_event_id", "message": f"Not a UUID: {args.event_id}"}
    else:
        try:
            summary = asyncio.run(_run(args))
        except CatalogUnavailableError as exc:
            summary = {"success": False, "error": "catalog_unavailable", "message": str(exc)}
        except Exception as exc:  # noqa: BLE001
            summary = {"success": False, "error": type(exc).__name__, "message": str(exc)}

    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    else:
        print(json.dumps(summary, default=str))

    return 0 if summary.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
