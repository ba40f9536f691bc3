"""
Check-in Event Intake

The ingestion service publishes one ``checkin.recorded`` event per
check-in after it is written. The gate scheduler consumes these events
to keep running counters and decide when to enqueue discovery work,
keeping pipeline execution off the write path.

Architecture:
    Scanner App → Ingestion API → checkin_logs
                                → checkin.recorded → Scheduler → Celery (discovery queue)

Event schema:
    {
        "event_type": "checkin.recorded",
        "event_id": "6f1c2f0e-...",          # the festival/event, not the message
        "checkin_id": "0b9d8a55-...",
        "wristband_id": "c2a4e1b7-...",      # optional
        "timestamp": "2025-06-14T19:02:11Z",
        "status": "success",                 # success | denied | error
        "gate_id": null                      # optional, set when already known
    }
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

import structlog

logger = structlog.get_logger()

CHECKIN_RECORDED = "checkin.recorded"

CHECKIN_RECORDED_SCHEMA = {
    "required_fields": ["event_type", "event_id", "checkin_id", "timestamp"],
    "uuid_fields": ["event_id", "checkin_id", "wristband_id", "gate_id"],
}

CHECKIN_STATUSES = ("success", "denied", "error")


class InvalidCheckinEvent(ValueError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def validate_event(event: dict[str, Any], schema: dict) -> list[str]:
    """Validate an event against its schema, returning list of errors."""
    errors = []
    for field in schema["required_fields"]:
        if event.get(field) in (None, ""):
            errors.append(f"Missing required field: {field}")
    for field in schema.get("uuid_fields", []):
        value = event.get(field)
        if value in (None, ""):
            continue
        try:
            uuid.UUID(str(value))
        except ValueError:
            errors.append(f"Invalid UUID for {field}: {value!r}")
    return errors


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _optional_uuid(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(uuid.UUID(str(value)))


def normalize_checkin_recorded(event: dict[str, Any]) -> dict[str, Any]:
    """
    Normalize a ``checkin.recorded`` event for the scheduler.

    Raises InvalidCheckinEvent when the event type is wrong, a required
    field is missing, an id is not a UUID, or the timestamp is not ISO 8601.
    """
    errors = validate_event(event, CHECKIN_RECORDED_SCHEMA)
    if event.get("event_type") not in (None, "", CHECKIN_RECORDED):
        errors.append(f"Unsupported event_type: {event.get('event_type')!r}")

    status = event.get("status") or "success"
    if status not in CHECKIN_STATUSES:
        errors.append(f"Invalid status: {status!r}")

    timestamp = None
    if event.get("timestamp"):
        try:
            timestamp = _parse_timestamp(event["timestamp"])
        except ValueError:
            errors.append(f"Invalid timestamp: {event['timestamp']!r}")

    if errors:
        raise InvalidCheckinEvent(errors)

    return {
        "event_id": str(uuid.UUID(str(event["event_id"]))),
        "checkin_id": str(uuid.UUID(str(event["checkin_id"]))),
        "wristband_id": _optional_uuid(event.get("wristband_id")),
        "gate_id": _optional_uuid(event.get("gate_id")),
        "status": status,
        "timestamp": timestamp,
    }


def decode_message(payload: bytes | str | dict[str, Any]) -> dict[str, Any] | None:
    """Decode a raw broker message. Returns None (and logs) for undecodable payloads."""
    if isinstance(payload, dict):
        return payload
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        decoded = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("checkin_events.undecodable", error=str(exc))
        return None
    if not isinstance(decoded, dict):
        logger.warning("checkin_events.not_an_object", payload_type=type(decoded).__name__)
        return None
    return decoded
