from __future__ import annotations

from enum import Enum


class TicketStatus(str, Enum):
    """Supported states for a support ticket's lifecycle."""

    OPEN = "open"
    ASSIGNED = "assigned"
    ESCALATED = "escalated"
    CLOSED = "closed"


ACTIVE_STATUSES: tuple[TicketStatus, ...] = (TicketStatus.OPEN, TicketStatus.ASSIGNED, TicketStatus.ESCALATED)


class TicketStateMachine:
    """Validate ticket lifecycle transitions.

    ``escalated`` is only reachable through ``assigned``; an admin acting on an
    open ticket self-assigns first so the assignee invariant always holds.
    """

    _TRANSITIONS: dict[TicketStatus, set[TicketStatus]] = {
        TicketStatus.OPEN: {TicketStatus.ASSIGNED, TicketStatus.CLOSED},
        TicketStatus.ASSIGNED: {TicketStatus.ESCALATED, TicketStatus.CLOSED},
        TicketStatus.ESCALATED: {TicketStatus.CLOSED},
        TicketStatus.CLOSED: set(),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        return not cls._TRANSITIONS.get(status)

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        if current == new:
            return True
        return new in cls._TRANSITIONS.get(current, set())

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise ValueError(f"Invalid ticket status transition: {current.value} -> {new.value}")
