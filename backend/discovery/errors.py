"""Typed errors raised past the discovery pipeline boundary."""

from __future__ import annotations


class GateDiscoveryError(Exception):
    """Base class for gate discovery infrastructure errors."""

    def __init__(self, message: str, *, event_id: str | None = None):
        super().__init__(message)
        self.event_id = event_id


class CatalogUnavailableError(GateDiscoveryError):
    """The gate catalog store could not be reached."""


class EventBusyError(GateDiscoveryError):
    """Another mutating run holds the event lock."""


class LockUnavailableError(CatalogUnavailableError):
    """The shared event lock store (Redis) could not be reached."""
