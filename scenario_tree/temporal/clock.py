"""
Logical Clock
=============

Injectable clock: every component that needs "now" asks a clock instead
of reading system time directly.

MODES:
======
1. LIVE: real UTC time
2. MANUAL: a fixed instant that only moves when advanced (tests, expiry)
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..contracts.base import utc


@dataclass
class LogicalClock:
    _manual_time: Optional[datetime] = None

    def now(self) -> datetime:
        if self._manual_time is not None:
            return self._manual_time
        return datetime.now(timezone.utc)

    def advance(self, delta: timedelta) -> datetime:
        """Move a manual clock forward."""
        if self._manual_time is None:
            raise ValueError("Only a manual clock can be advanced")
        self._manual_time = self._manual_time + delta
        return self._manual_time

    def is_live(self) -> bool:
        return self._manual_time is None

    @classmethod
    def live(cls) -> LogicalClock:
        return cls()

    @classmethod
    def manual(cls, at: datetime) -> LogicalClock:
        return cls(_manual_time=utc(at))

    def __repr__(self) -> str:
        if self._manual_time is not None:
            return f"LogicalClock(MANUAL, at={self._manual_time.isoformat()})"
        return "LogicalClock(LIVE)"
