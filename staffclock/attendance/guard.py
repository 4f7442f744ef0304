"""Cooldown checks between repeated actions and the per-action submission lock."""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Set

from staffclock.attendance.log import AttendanceEvent, load_recent_events
from staffclock.clock import parse_iso
from staffclock.config import DEFAULT_COOLDOWN_SEC
from staffclock.storage.docstore import DocumentStore
from staffclock.types import AttendanceAction

LOGGER = logging.getLogger("staffclock.attendance.guard")

COOLDOWN_LOOKBACK_EVENTS = 50


@dataclass
class CooldownCheck:
    allowed: bool
    remaining_sec: int
    last_event: Optional[AttendanceEvent] = None


def check_action_cooldown(
    store: DocumentStore,
    action: AttendanceAction,
    clock,
    cooldown_sec: int = DEFAULT_COOLDOWN_SEC,
    staff_id: Optional[str] = None,
) -> CooldownCheck:
    """Block a repeat of ``action`` until ``cooldown_sec`` has elapsed since the latest one."""
    events = load_recent_events(store, COOLDOWN_LOOKBACK_EVENTS)
    latest = next(
        (
            event
            for event in events
            if event.action == action and (staff_id is None or event.staff_id == staff_id)
        ),
        None,
    )
    if latest is None:
        return CooldownCheck(allowed=True, remaining_sec=0)

    latest_ts = parse_iso(latest.client_ts)
    if latest_ts is None:
        LOGGER.warning("Event %s has unparseable clientTs %r", latest.event_id, latest.client_ts)
        return CooldownCheck(allowed=True, remaining_sec=0, last_event=latest)
    elapsed = int(math.floor((clock.now() - latest_ts).total_seconds()))
    if elapsed >= cooldown_sec:
        return CooldownCheck(allowed=True, remaining_sec=0, last_event=latest)
    remaining = cooldown_sec - max(elapsed, 0)
    LOGGER.debug("Cooldown active for %s: %ss remaining", action.value, remaining)
    return CooldownCheck(allowed=False, remaining_sec=remaining, last_event=latest)


class SubmissionLock:
    """Process-local set of busy keys, one per action."""

    def __init__(self) -> None:
        self._active: Set[str] = set()

    def acquire(self, key: str) -> bool:
        if key in self._active:
            return False
        self._active.add(key)
        return True

    def release(self, key: str) -> None:
        self._active.discard(key)

    def held(self, key: str) -> bool:
        return key in self._active

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        if not self.acquire(key):
            raise RuntimeError(f"Submission already in progress for {key}")
        try:
            yield
        finally:
            self.release(key)


verify_submission_lock = SubmissionLock()
