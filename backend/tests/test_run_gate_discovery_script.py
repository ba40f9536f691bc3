from __future__ import annotations

import asyncio
import json
import os
import subprocess
import sys
import uuid
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base

EVENT_ID = "00000000-0000-0000-0000-000000000401"


def _parse_json_output(stdout: str) -> dict:
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    return json.loads(lines[-1])


def _seed(db_path: Path, *, checkins: int) -> str:
    from db.models import CheckinLog, Event, Wristband

    db_url = f"sqlite+aiosqlite:///{db_path}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            db.add(Event(event_id=uuid.UUID(EVENT_ID), name="Lakeside Open Air", status="live"))
            start = datetime(2025, 6, 14, 10, 0, 0)
            for i in range(checkins):
                wristband = Wristband(wristband_id=uuid.uuid4(), event_id=uuid.UUID(EVENT_ID), category="General")
                db.add(wristband)
                db.add(
                    CheckinLog(
                        checkin_id=uuid.uuid4(),
                        event_id=uuid.UUID(EVENT_ID),
                        wristband_id=wristband.wristband_id,
                        timestamp=start + timedelta(minutes=5 * i),
                        app_lat=40.71280,
                        app_lon=-74.00600,
                        app_accuracy=8.0,
                        status="success",
                        checkin_metadata={},
                    )
                )
            await db.commit()
        await engine.dispose()

    asyncio.run(_run())
    return db_url


def _run_script(*args: str) -> subprocess.CompletedProcess:
    repo_root = Path(__file__).resolve().parents[2]
    script_path = repo_root / "backend" / "scripts" / "run_gate_discovery.py"
    return subprocess.run(
        [sys.executable, str(script_path), *args],
        cwd=str(repo_root),
        env={**os.environ, "EVENT_LOCK_BACKEND": "local"},
        capture_output=True,
        text=True,
        check=False,
    )


def test_quality_only_prints_report(tmp_path):
    db_url = _seed(tmp_path / "script.db", checkins=60)

    completed = _run_script("--event-id", EVENT_ID, "--quality-only", "--database-url", db_url)

    assert completed.returncode == 0, completed.stderr
    payload = _parse_json_output(completed.stdout)
    assert payload["operation"] == "quality"
    assert payload["total_checkins"] == 60
    assert payload["sufficient_data"] is True


def test_dry_run_discovery_succeeds(tmp_path):
    db_url = _seed(tmp_path / "script.db", checkins=60)

    completed = _run_script("--event-id", EVENT_ID, "--dry-run", "--database-url", db_url)

    assert completed.returncode == 0, completed.stderr
    payload = _parse_json_output(completed.stdout)
    assert payload["operation"] == "discovery"
    assert payload["trigger"] == "cli"
    assert payload["dry_run"] is True
    assert payload["preview"]["gates_to_create"] >= 1


def test_insufficient_data_exits_nonzero(tmp_path):
    db_url = _seed(tmp_path / "script.db", checkins=0)

    completed = _run_script("--event-id", EVENT_ID, "--database-url", db_url)

    assert completed.returncode == 1
    payload = _parse_json_output(completed.stdout)
    assert payload["error"] == "insufficient_data"


def test_invalid_event_id_exits_nonzero():
    completed = _run_script("--event-id", "not-a-uuid")

    assert completed.returncode == 1
    assert _parse_json_output(completed.stdout)["error"] == "invalid_event_id"
