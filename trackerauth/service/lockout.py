"""Brute-force protection: per-account lockout transitions and per-IP attempt tracking.

Two independent mechanisms guard login:

* The account lockout lives on the credential record and is driven by the pure
  transition functions below (Active -> Locked -> Active).
* The attempt tracker counts failures per client IP inside a sliding window and
  is injected into the auth service through the ``AttemptTracker`` protocol so a
  shared cache can replace the process-local default.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Tuple

from trackerauth.storage.models import LockoutState

DEFAULT_MAX_FAILED_ATTEMPTS = 5
DEFAULT_LOCKOUT_MINUTES = 15


@dataclass(frozen=True)
class LockoutPolicy:
    max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS
    lockout_duration: timedelta = timedelta(minutes=DEFAULT_LOCKOUT_MINUTES)


def current_state(state: LockoutState, now: datetime) -> LockoutState:
    """Collapse an expired lockout back to a fresh Active state."""
    if state.lockout_end is not None and state.lockout_end <= now:
        return replace(state, failed_count=0, lockout_end=None)
    return state


def is_locked(state: LockoutState, now: datetime) -> bool:
    return state.lockout_end is not None and state.lockout_end > now


def remaining_lockout_minutes(state: LockoutState, now: datetime) -> int:
    """Whole minutes left on a lockout, rounded up; 0 when not locked."""
    if not is_locked(state, now):
        return 0
    seconds = (state.lockout_end - now).total_seconds()
    return max(1, math.ceil(seconds / 60))


def remaining_attempts(state: LockoutState, policy: LockoutPolicy) -> int:
    return max(0, policy.max_failed_attempts - state.failed_count)


def register_failure(
    state: LockoutState,
    now: datetime,
    policy: LockoutPolicy,
    *,
    attempted_at: Optional[datetime] = None,
) -> LockoutState:
    """Apply one wrong-password attempt.

    ``attempted_at`` is when the request that failed started. If a successful
    login reset the counter after that instant, the failure is stale and the
    state is returned untouched.
    """
    if (
        attempted_at is not None
        and state.last_reset_at is not None
        and attempted_at < state.last_reset_at
    ):
        return state
    state = current_state(state, now)
    if is_locked(state, now):
        return state
    failed = min(state.failed_count + 1, policy.max_failed_attempts)
    lockout_end = None
    if failed >= policy.max_failed_attempts:
        lockout_end = now + policy.lockout_duration
    return replace(state, failed_count=failed, lockout_end=lockout_end)


def register_success(state: LockoutState, now: datetime) -> LockoutState:
    return LockoutState(failed_count=0, lockout_end=None, last_reset_at=now)


LockoutTransition = Callable[[LockoutState], LockoutState]


class AttemptTracker(Protocol):
    """Counts failed logins per key (client IP) inside a sliding window."""

    async def get_attempts(self, key: str) -> int: ...

    async def track_failed_attempt(self, key: str) -> int: ...

    async def reset(self, key: str) -> None: ...


def attempt_key(ip_addr: str) -> str:
    return f"login_attempts_{ip_addr}"


class InMemoryAttemptTracker:
    """Process-local attempt counter.

    Entries are ``(count, deadline)`` where the deadline slides forward by the
    window on every tracked failure. Counts are lost on restart.

    Every tracked failure re-inserts its key at the end of ``_entries``, so the
    dict stays ordered by deadline and expired entries are swept from the front.
    """

    def __init__(
        self,
        window: timedelta = timedelta(minutes=DEFAULT_LOCKOUT_MINUTES),
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window.total_seconds()
        self._clock = clock
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _live_count(self, key: str, now: float) -> int:
        entry = self._entries.get(key)
        if entry is None:
            return 0
        count, deadline = entry
        if deadline <= now:
            del self._entries[key]
            return 0
        return count

    def _evict_expired(self, now: float) -> None:
        expired = []
        for key, (_, deadline) in self._entries.items():
            if deadline > now:
                break
            expired.append(key)
        for key in expired:
            del self._entries[key]

    def get_attempts_sync(self, key: str) -> int:
        with self._lock:
            return self._live_count(key, self._clock())

    def track_failed_attempt_sync(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            count = self._live_count(key, now) + 1
            self._entries.pop(key, None)
            self._entries[key] = (count, now + self.window_seconds)
            self._evict_expired(now)
            return count

    def reset_sync(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def get_attempts(self, key: str) -> int:
        return self.get_attempts_sync(key)

    async def track_failed_attempt(self, key: str) -> int:
        return self.track_failed_attempt_sync(key)

    async def reset(self, key: str) -> None:
        self.reset_sync(key)


__all__ = [
    "AttemptTracker",
    "InMemoryAttemptTracker",
    "LockoutPolicy",
    "LockoutTransition",
    "attempt_key",
    "current_state",
    "is_locked",
    "register_failure",
    "register_success",
    "remaining_attempts",
    "remaining_lockout_minutes",
]
