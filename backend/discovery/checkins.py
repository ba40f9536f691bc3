"""
Check-in access for gate discovery.

Loads an event's successful check-ins into a pandas DataFrame with the
wristband category resolved, and applies guarded gate assignments.
"""

from __future__ import annotations

import uuid
from typing import Any

import pandas as pd
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import CheckinLog, Gate, Wristband

DEFAULT_CATEGORY = "General"

CHECKIN_COLUMNS = [
    "checkin_id",
    "wristband_id",
    "staff_id",
    "timestamp",
    "app_lat",
    "app_lon",
    "app_accuracy",
    "processing_time_ms",
    "gate_id",
    "category",
    "metadata",
]


def checkins_frame(records: list[dict[str, Any]]) -> pd.DataFrame:
    """Build a check-in frame from plain dicts (missing columns become None)."""
    frame = pd.DataFrame.from_records(records, columns=CHECKIN_COLUMNS)
    if frame.empty:
        return frame
    frame["timestamp"] = pd.to_datetime(frame["timestamp"])
    for column in ("app_lat", "app_lon", "app_accuracy", "processing_time_ms"):
        frame[column] = pd.to_numeric(frame[column], errors="coerce")
    frame["category"] = frame["category"].fillna(DEFAULT_CATEGORY)
    frame["metadata"] = frame["metadata"].apply(lambda value: value if isinstance(value, dict) else {})
    frame = frame.sort_values(["timestamp", "checkin_id"], kind="mergesort").reset_index(drop=True)
    return frame


async def load_checkins(
    db: AsyncSession,
    event_id: uuid.UUID,
    *,
    unassigned_only: bool = False,
    assigned_only: bool = False,
) -> pd.DataFrame:
    """Successful check-ins for an event, ordered by (timestamp, checkin_id)."""
    # Plain columns, not entities: assignments are bulk UPDATEs that bypass the identity map.
    query = (
        select(
            CheckinLog.checkin_id,
            CheckinLog.wristband_id,
            CheckinLog.staff_id,
            CheckinLog.timestamp,
            CheckinLog.app_lat,
            CheckinLog.app_lon,
            CheckinLog.app_accuracy,
            CheckinLog.processing_time_ms,
            CheckinLog.gate_id,
            CheckinLog.checkin_metadata.label("checkin_metadata"),
            Wristband.category,
        )
        .outerjoin(Wristband, CheckinLog.wristband_id == Wristband.wristband_id)
        .where(CheckinLog.event_id == event_id, CheckinLog.status == "success")
    )
    if unassigned_only:
        query = query.where(CheckinLog.gate_id.is_(None))
    if assigned_only:
        query = query.where(CheckinLog.gate_id.is_not(None))

    result = await db.execute(query)
    records = []
    for row in result.all():
        records.append(
            {
                "checkin_id": str(row.checkin_id),
                "wristband_id": str(row.wristband_id) if row.wristband_id else None,
                "staff_id": row.staff_id,
                "timestamp": row.timestamp,
                "app_lat": row.app_lat,
                "app_lon": row.app_lon,
                "app_accuracy": row.app_accuracy,
                "processing_time_ms": row.processing_time_ms,
                "gate_id": str(row.gate_id) if row.gate_id else None,
                "category": row.category or DEFAULT_CATEGORY,
                "metadata": dict(row.checkin_metadata or {}),
            }
        )
    return checkins_frame(records)


async def assign_checkin(
    db: AsyncSession,
    *,
    checkin_id: str | uuid.UUID,
    gate_id: uuid.UUID,
    metadata: dict[str, Any],
    annotation: dict[str, Any],
) -> bool:
    """Attach a gate to a check-in that has none. Returns False if it was already assigned."""
    result = await db.execute(
        update(CheckinLog)
        .where(
            CheckinLog.checkin_id == uuid.UUID(str(checkin_id)),
            CheckinLog.gate_id.is_(None),
        )
        .values({CheckinLog.gate_id: gate_id, CheckinLog.checkin_metadata: {**metadata, **annotation}})
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


async def count_successful_checkins(db: AsyncSession, event_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(CheckinLog.checkin_id)).where(
            CheckinLog.event_id == event_id,
            CheckinLog.status == "success",
        )
    )
    return int(result.scalar() or 0)


async def count_orphans(db: AsyncSession, event_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(CheckinLog.checkin_id)).where(
            CheckinLog.event_id == event_id,
            CheckinLog.status == "success",
            CheckinLog.gate_id.is_(None),
        )
    )
    return int(result.scalar() or 0)


async def count_gates(db: AsyncSession, event_id: uuid.UUID) -> int:
    result = await db.execute(select(func.count(Gate.gate_id)).where(Gate.event_id == event_id))
    return int(result.scalar() or 0)
