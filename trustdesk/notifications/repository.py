from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from trustdesk.db.models import NotificationTable
from trustdesk.db.session import ensure_datetime

from .models import Notification, NotificationDraft, NotificationType


def stage_notifications(
    session: AsyncSession, drafts: Iterable[NotificationDraft], *, created_at: datetime
) -> list[NotificationTable]:
    """Add fan-out rows to ``session`` so they commit with the caller's mutation."""

    rows = [
        NotificationTable(
            id=str(uuid.uuid4()),
            recipient_id=draft.recipient_id,
            type=draft.type.value,
            title=draft.title,
            message=draft.message,
            is_read=False,
            action_url=draft.action_url,
            ticket_id=draft.ticket_id,
            metadata_=dict(draft.metadata),
            created_at=created_at,
        )
        for draft in drafts
    ]
    session.add_all(rows)
    return rows


async def delete_ticket_alerts(session: AsyncSession, ticket_id: str, *, keep_recipient: str) -> int:
    """Remove notifications about ``ticket_id`` for everyone but ``keep_recipient``."""

    result = await session.execute(
        delete(NotificationTable)
        .where(NotificationTable.ticket_id == ticket_id)
        .where(NotificationTable.recipient_id != keep_recipient)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


class NotificationRepository:
    """Persistence for the per-recipient notification store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, draft: NotificationDraft, *, created_at: datetime) -> Notification:
        async with self._session_factory() as session:
            async with session.begin():
                (row,) = stage_notifications(session, [draft], created_at=created_at)
            return self._row_to_notification(row)

    async def list_for_recipient(self, recipient_id: str, *, unread_only: bool = False) -> list[Notification]:
        statement = select(NotificationTable).where(NotificationTable.recipient_id == recipient_id)
        if unread_only:
            statement = statement.where(NotificationTable.is_read.is_(False))
        statement = statement.order_by(NotificationTable.created_at.desc(), NotificationTable.id.desc())
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._row_to_notification(row) for row in result.scalars().all()]

    async def unread_count(self, recipient_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(NotificationTable)
                .where(NotificationTable.recipient_id == recipient_id)
                .where(NotificationTable.is_read.is_(False))
            )
            return int(result.scalar_one())

    async def mark_read(self, notification_id: str, recipient_id: str) -> bool:
        """Flip ``is_read`` once; returns False when the recipient owns no such notification."""

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(NotificationTable)
                    .where(NotificationTable.id == notification_id)
                    .where(NotificationTable.recipient_id == recipient_id)
                    .where(NotificationTable.is_read.is_(False))
                    .values(is_read=True)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    return True
                row = await session.get(NotificationTable, notification_id)
                return row is not None and row.recipient_id == recipient_id

    async def mark_many_read(self, recipient_id: str, notification_ids: Sequence[str]) -> int:
        if not notification_ids:
            return 0
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(NotificationTable)
                    .where(NotificationTable.recipient_id == recipient_id)
                    .where(NotificationTable.id.in_(list(notification_ids)))
                    .where(NotificationTable.is_read.is_(False))
                    .values(is_read=True)
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

    async def mark_all_read(self, recipient_id: str) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(NotificationTable)
                    .where(NotificationTable.recipient_id == recipient_id)
                    .where(NotificationTable.is_read.is_(False))
                    .values(is_read=True)
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

    async def clear_all(self, recipient_id: str) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(NotificationTable)
                    .where(NotificationTable.recipient_id == recipient_id)
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

    @staticmethod
    def _row_to_notification(row: NotificationTable) -> Notification:
        return Notification(
            id=row.id,
            recipient_id=row.recipient_id,
            type=NotificationType(row.type),
            title=row.title,
            message=row.message,
            is_read=bool(row.is_read),
            action_url=row.action_url,
            ticket_id=row.ticket_id,
            metadata=dict(row.metadata_ or {}),
            created_at=ensure_datetime(row.created_at),
        )
