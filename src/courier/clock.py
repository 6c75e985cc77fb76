"""Time source abstraction.

Components take a Clock instead of calling datetime.now() so that backoff
and auto-disable timing can be driven deterministically.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current UTC time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


system_clock = SystemClock()
