"""Polling synchronisation contract.

There is no push transport: clients re-read tickets and notifications on a
fixed interval. A state change is guaranteed visible to a polling consumer
within one interval plus the server processing allowance, which is the
system's effective real-time bound.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from trustdesk.core.config import Settings

POLL_INTERVAL_HEADER = "X-Poll-Interval"


class PollChannel(str, Enum):
    NOTIFICATIONS = "notifications"
    TICKETS = "tickets"


@dataclass(frozen=True, slots=True)
class PollingContract:
    notifications_interval: timedelta = timedelta(seconds=3)
    tickets_interval: timedelta = timedelta(seconds=5)
    processing_allowance: timedelta = timedelta(seconds=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollingContract":
        return cls(
            notifications_interval=timedelta(seconds=settings.notifications_poll_interval_seconds),
            tickets_interval=timedelta(seconds=settings.tickets_poll_interval_seconds),
            processing_allowance=timedelta(seconds=settings.poll_processing_allowance_seconds),
        )

    def interval(self, channel: PollChannel) -> timedelta:
        if channel is PollChannel.NOTIFICATIONS:
            return self.notifications_interval
        return self.tickets_interval

    def staleness_bound(self, channel: PollChannel) -> timedelta:
        """Longest delay between a write and its visibility to a poller on ``channel``."""

        return self.interval(channel) + self.processing_allowance

    def response_headers(self, channel: PollChannel) -> dict[str, str]:
        return {
            POLL_INTERVAL_HEADER: f"{self.interval(channel).total_seconds():g}",
            "Cache-Control": "no-store",
        }
