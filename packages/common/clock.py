"""Clock abstraction and UTC helpers.

Core logic reads time through a `Clock` so lifecycle and elapsed-time rules
can be exercised deterministically. Production code uses `SystemClock`.
"""
from __future__ import annotations

import datetime as _dt
from typing import Protocol

__all__ = ["Clock", "SystemClock", "utcnow", "seconds_between"]


class Clock(Protocol):
    """Wall-clock abstraction returning timezone-aware UTC datetimes."""

    def now(self) -> _dt.datetime:
        ...


def utcnow() -> _dt.datetime:
    """Return the current time as an aware UTC datetime."""
    return _dt.datetime.now(tz=_dt.timezone.utc)


class SystemClock:
    """Production clock backed by the system wall clock."""

    def now(self) -> _dt.datetime:
        return utcnow()


def seconds_between(start: _dt.datetime, end: _dt.datetime) -> float:
    """Return `end - start` in seconds, never negative."""
    return max(0.0, (end - start).total_seconds())
