from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from trustdesk.db.models import SupportTicketTable, TicketAuditLogTable, TicketMessageTable
from trustdesk.db.session import ensure_datetime, optional_datetime
from trustdesk.notifications.models import NotificationDraft
from trustdesk.notifications.repository import delete_ticket_alerts, stage_notifications

from .models import (
    AuthorKind,
    MessageKind,
    SupportTicket,
    TicketAuditEntry,
    TicketMessage,
    TicketPriority,
)
from .state import TicketStatus


def _column_values(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in values.items()}


class TicketRepository:
    """Data access layer for support tickets, their messages and audit trail.

    Every status change is a single conditional UPDATE. The caller learns
    whether it won the race from the affected row count, and the audit entry,
    system messages and notifications are written in the same transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_ticket(
        self,
        ticket: SupportTicket,
        *,
        messages: Sequence[TicketMessage],
        audit: TicketAuditEntry,
        notifications: Sequence[NotificationDraft],
    ) -> bool:
        """Insert a new ticket; returns False if the requester already has an active one."""

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(self._ticket_to_row(ticket))
                    # The partial unique index rejects a second active ticket here.
                    await session.flush()
                    session.add_all([self._message_to_row(message) for message in messages])
                    session.add(self._audit_to_row(audit))
                    stage_notifications(session, notifications, created_at=ticket.created_at)
        except IntegrityError:
            return False
        return True

    async def get_ticket(self, ticket_id: str) -> SupportTicket | None:
        async with self._session_factory() as session:
            row = await session.get(SupportTicketTable, ticket_id)
            if row is None:
                return None
            return self._row_to_ticket(row)

    async def get_active_for_requester(self, requester_id: str) -> SupportTicket | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SupportTicketTable)
                .where(SupportTicketTable.requester_id == requester_id)
                .where(SupportTicketTable.status != TicketStatus.CLOSED.value)
                .order_by(SupportTicketTable.created_at.desc())
                .limit(1)
            )
            row = result.scalars().first()
            if row is None:
                return None
            return self._row_to_ticket(row)

    async def list_tickets(
        self,
        *,
        statuses: Sequence[TicketStatus] | None = None,
        admin_visible_only: bool = False,
        requester_id: str | None = None,
    ) -> list[SupportTicket]:
        statement = select(SupportTicketTable)
        if statuses:
            statement = statement.where(SupportTicketTable.status.in_([status.value for status in statuses]))
        if requester_id is not None:
            statement = statement.where(SupportTicketTable.requester_id == requester_id)
        if admin_visible_only:
            statement = statement.where(
                or_(
                    SupportTicketTable.status == TicketStatus.ESCALATED.value,
                    SupportTicketTable.admin_intervened.is_(True),
                )
            )
        statement = statement.order_by(SupportTicketTable.created_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._row_to_ticket(row) for row in result.scalars().all()]

    async def list_stale(self, cutoff: datetime) -> list[SupportTicket]:
        """Assigned tickets whose assignee has been silent since before ``cutoff``."""

        async with self._session_factory() as session:
            result = await session.execute(
                select(SupportTicketTable)
                .where(SupportTicketTable.status == TicketStatus.ASSIGNED.value)
                .where(SupportTicketTable.last_activity_at <= cutoff)
                .order_by(SupportTicketTable.last_activity_at.asc())
            )
            return [self._row_to_ticket(row) for row in result.scalars().all()]

    async def transition(
        self,
        ticket_id: str,
        *,
        expected_status: TicketStatus,
        values: Mapping[str, Any],
        audit: TicketAuditEntry,
        messages: Sequence[TicketMessage] = (),
        notifications: Sequence[NotificationDraft] = (),
        unassigned_only: bool = False,
        clear_alerts_except: str | None = None,
    ) -> SupportTicket | None:
        """Apply ``values`` only if the ticket is still in ``expected_status``.

        Returns the updated ticket, or ``None`` when another writer got there
        first (or the ticket does not exist).
        """

        statement = (
            update(SupportTicketTable)
            .where(SupportTicketTable.id == ticket_id)
            .where(SupportTicketTable.status == expected_status.value)
        )
        if unassigned_only:
            statement = statement.where(SupportTicketTable.assignee_id.is_(None))

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    statement.values(**_column_values(values)).execution_options(synchronize_session=False)
                )
                if not result.rowcount:
                    return None
                session.add(self._audit_to_row(audit))
                session.add_all([self._message_to_row(message) for message in messages])
                if clear_alerts_except is not None:
                    await delete_ticket_alerts(session, ticket_id, keep_recipient=clear_alerts_except)
                stage_notifications(session, notifications, created_at=audit.created_at)
                row = await session.get(SupportTicketTable, ticket_id, populate_existing=True)
                if row is None:  # pragma: no cover - row was just updated
                    return None
                return self._row_to_ticket(row)

    async def add_message(
        self,
        message: TicketMessage,
        *,
        values: Mapping[str, Any],
        notifications: Sequence[NotificationDraft] = (),
    ) -> TicketMessage | None:
        """Append ``message`` unless the ticket has been closed in the meantime."""

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SupportTicketTable)
                    .where(SupportTicketTable.id == message.ticket_id)
                    .where(SupportTicketTable.status != TicketStatus.CLOSED.value)
                    .values(**_column_values(values))
                    .execution_options(synchronize_session=False)
                )
                if not result.rowcount:
                    return None
                session.add(self._message_to_row(message))
                stage_notifications(session, notifications, created_at=message.created_at)
        return message

    async def list_messages(self, ticket_id: str) -> list[TicketMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketMessageTable)
                .where(TicketMessageTable.ticket_id == ticket_id)
                .order_by(TicketMessageTable.created_at.asc())
            )
            return [self._row_to_message(row) for row in result.scalars().all()]

    async def get_audit_log(self, ticket_id: str) -> list[TicketAuditEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketAuditLogTable)
                .where(TicketAuditLogTable.ticket_id == ticket_id)
                .order_by(TicketAuditLogTable.created_at.asc())
            )
            return [self._row_to_audit(row) for row in result.scalars().all()]

    @staticmethod
    def _ticket_to_row(ticket: SupportTicket) -> SupportTicketTable:
        return SupportTicketTable(
            id=ticket.id,
            requester_id=ticket.requester_id,
            subject=ticket.subject,
            status=ticket.status.value,
            priority=ticket.priority.value,
            assignee_id=ticket.assignee_id,
            escalation_reason=ticket.escalation_reason,
            admin_intervened=ticket.admin_intervened,
            admin_intervention_id=ticket.admin_intervention_id,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            assigned_at=ticket.assigned_at,
            escalated_at=ticket.escalated_at,
            closed_at=ticket.closed_at,
            closed_by=ticket.closed_by,
            last_activity_at=ticket.last_activity_at,
            last_message_at=ticket.last_message_at,
        )

    @staticmethod
    def _message_to_row(message: TicketMessage) -> TicketMessageTable:
        return TicketMessageTable(
            id=message.id,
            ticket_id=message.ticket_id,
            author_id=message.author_id,
            author_kind=message.author_kind.value,
            kind=message.kind.value,
            body=message.body,
            created_at=message.created_at,
        )

    @staticmethod
    def _audit_to_row(entry: TicketAuditEntry) -> TicketAuditLogTable:
        return TicketAuditLogTable(
            id=entry.id,
            ticket_id=entry.ticket_id,
            action=entry.action,
            actor=entry.actor,
            from_status=None if entry.from_status is None else entry.from_status.value,
            to_status=None if entry.to_status is None else entry.to_status.value,
            metadata_=dict(entry.metadata),
            created_at=entry.created_at,
        )

    @staticmethod
    def _row_to_ticket(row: SupportTicketTable) -> SupportTicket:
        return SupportTicket(
            id=row.id,
            requester_id=row.requester_id,
            subject=row.subject,
            status=TicketStatus(row.status),
            priority=TicketPriority(row.priority),
            assignee_id=row.assignee_id,
            escalation_reason=row.escalation_reason,
            admin_intervened=bool(row.admin_intervened),
            admin_intervention_id=row.admin_intervention_id,
            created_at=ensure_datetime(row.created_at),
            updated_at=ensure_datetime(row.updated_at),
            last_activity_at=ensure_datetime(row.last_activity_at),
            assigned_at=optional_datetime(row.assigned_at),
            escalated_at=optional_datetime(row.escalated_at),
            closed_at=optional_datetime(row.closed_at),
            closed_by=row.closed_by,
            last_message_at=optional_datetime(row.last_message_at),
        )

    @staticmethod
    def _row_to_message(row: TicketMessageTable) -> TicketMessage:
        return TicketMessage(
            id=row.id,
            ticket_id=row.ticket_id,
            author_id=row.author_id,
            author_kind=AuthorKind(row.author_kind),
            kind=MessageKind(row.kind),
            body=row.body,
            created_at=ensure_datetime(row.created_at),
        )

    @staticmethod
    def _row_to_audit(row: TicketAuditLogTable) -> TicketAuditEntry:
        return TicketAuditEntry(
            id=row.id,
            ticket_id=row.ticket_id,
            action=row.action,
            actor=row.actor,
            from_status=TicketStatus(row.from_status) if row.from_status else None,
            to_status=TicketStatus(row.to_status) if row.to_status else None,
            metadata=dict(row.metadata_ or {}),
            created_at=ensure_datetime(row.created_at),
        )
