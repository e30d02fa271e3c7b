"""Time source shared by every expiry and staleness comparison."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock returning timezone aware UTC instants."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
