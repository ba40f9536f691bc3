"""
Volume-based trigger policy for gate discovery.

Given running counters for an event, decide which pipeline actions to
enqueue after a check-in is recorded:

  - initial discovery when the successful count hits the start or end of
    the initial window and the event has no gates yet
  - periodic refresh every ``refresh_every_checkins`` check-ins
  - orphan assignment when the orphan count is a positive multiple of
    ``orphan_every`` (and at least ``orphan_min``), unless a discovery run
    is already scheduled, since discovery assigns orphans itself
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

RUN_DISCOVERY = "run_discovery"
ASSIGN_ORPHANS = "assign_orphans"


@dataclass(frozen=True)
class CheckinCounters:
    checkin_count: int
    gate_count: int
    orphan_count: int


def _initial_window_hit(counters: CheckinCounters, thresholds: Any) -> bool:
    if counters.gate_count > 0:
        return False
    return counters.checkin_count in (thresholds.initial_min_checkins, thresholds.initial_max_checkins)


def decide_actions(counters: CheckinCounters, thresholds: Any) -> list[str]:
    actions: list[str] = []

    refresh_every = thresholds.refresh_every_checkins
    periodic = counters.checkin_count > 0 and refresh_every > 0 and counters.checkin_count % refresh_every == 0
    if _initial_window_hit(counters, thresholds) or periodic:
        actions.append(RUN_DISCOVERY)

    orphan_every = thresholds.orphan_every
    if (
        RUN_DISCOVERY not in actions
        and counters.orphan_count > 0
        and counters.orphan_count >= thresholds.orphan_min
        and orphan_every > 0
        and counters.orphan_count % orphan_every == 0
    ):
        actions.append(ASSIGN_ORPHANS)

    return actions
