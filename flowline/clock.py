"""Time and identifier services.

All timestamps inside flowline are integer epoch milliseconds (UTC). They
are converted to ISO-8601 only at the boundary (CLI output, exports).
Both services are injected through :class:`flowline.engine.Engine` so tests
can swap in :class:`ManualClock` and :class:`SequentialIds`.
"""

from __future__ import annotations

import itertools
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Source of wall-clock and monotonic time."""

    def now_ms(self) -> int:
        """Current UTC time in epoch milliseconds."""

    def monotonic(self) -> float:
        """Monotonic seconds, for measuring durations."""


class SystemClock:
    """Clock backed by the operating system."""

    def __init__(self) -> None:
        self._last = 0

    def now_ms(self) -> int:
        # never go backwards, even if the wall clock is adjusted
        current = int(time.time() * 1000)
        if current < self._last:
            return self._last
        self._last = current
        return current

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def monotonic(self) -> float:
        return self._now / 1000.0

    def advance(self, ms: int) -> int:
        """Move time forward by ``ms`` and return the new timestamp."""
        if ms < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += ms
        return self._now

    def set(self, now_ms: int) -> None:
        if now_ms < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = now_ms


class IdGenerator:
    """Produces random UUID v4 identifiers."""

    def new_id(self) -> str:
        return str(uuid.uuid4())


class SequentialIds(IdGenerator):
    """Deterministic UUID-shaped identifiers for tests."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)

    def new_id(self) -> str:
        return str(uuid.UUID(int=next(self._counter)))


def to_iso(ms: Optional[int]) -> Optional[str]:
    """Render epoch milliseconds as an ISO-8601 UTC string."""
    if ms is None:
        return None
    return (
        datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def from_iso(value: str) -> int:
    """Parse an ISO-8601 string into epoch milliseconds (naive means UTC)."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def from_datetime(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)
