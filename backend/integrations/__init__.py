"""
Inbound event intake.

Check-in events published by the ingestion service are validated and
normalized here before the scheduler acts on them.

Usage:
    from integrations import normalize_checkin_recorded

    checkin = normalize_checkin_recorded(event)
    checkin["event_id"]
"""

from integrations.checkin_events import (
    CHECKIN_RECORDED,
    CHECKIN_RECORDED_SCHEMA,
    InvalidCheckinEvent,
    decode_message,
    normalize_checkin_recorded,
    validate_event,
)

__all__ = [
    "CHECKIN_RECORDED",
    "CHECKIN_RECORDED_SCHEMA",
    "InvalidCheckinEvent",
    "decode_message",
    "normalize_checkin_recorded",
    "validate_event",
]
