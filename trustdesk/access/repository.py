from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Mapping, Sequence

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from trustdesk.core.identity import Role
from trustdesk.db.models import ModerationActionTable, UserTable
from trustdesk.db.session import ensure_datetime, optional_datetime
from trustdesk.notifications.models import NotificationDraft
from trustdesk.notifications.repository import stage_notifications

from .models import ModerationAction, ModerationActionKind, SuspensionState, UserAccount

_STAFF_ROLES = (Role.MODERATOR.value, Role.ADMIN.value)


class UserRepository:
    """Persistence for user accounts and their suspension fields."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_user(
        self,
        *,
        display_name: str,
        role: Role,
        created_at: datetime,
        user_id: str | None = None,
    ) -> UserAccount:
        row = UserTable(
            id=user_id or str(uuid.uuid4()),
            display_name=display_name,
            role=role.value,
            is_banned=False,
            created_at=created_at,
            updated_at=created_at,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)
        return self._row_to_user(row)

    async def get_user(self, user_id: str) -> UserAccount | None:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
            if row is None:
                return None
            return self._row_to_user(row)

    async def ensure_user(
        self, user_id: str, role: Role, now: datetime, *, display_name: str | None = None
    ) -> UserAccount:
        """Provision the account for an identity asserted by the session provider.

        Idempotent. An existing account keeps its suspension record and takes
        the asserted role.
        """

        async with self._session_factory() as session:
            insert = postgresql_insert if session.bind.dialect.name == "postgresql" else sqlite_insert
            statement = insert(UserTable).values(
                id=user_id,
                display_name=display_name or user_id,
                role=role.value,
                is_banned=False,
                created_at=now,
                updated_at=now,
            )
            statement = statement.on_conflict_do_update(
                index_elements=["id"],
                set_={"role": role.value, "updated_at": now},
                where=UserTable.role != role.value,
            )
            async with session.begin():
                await session.execute(statement)
                row = await session.get(UserTable, user_id, populate_existing=True)
                if row is None:  # pragma: no cover - row was just written
                    raise LookupError(user_id)
                return self._row_to_user(row)

    async def list_by_role(self, *roles: Role) -> list[UserAccount]:
        """Accounts holding any of ``roles``; every account when none are given."""

        statement = select(UserTable).order_by(UserTable.created_at.asc())
        if roles:
            statement = statement.where(UserTable.role.in_([role.value for role in roles]))
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._row_to_user(row) for row in result.scalars().all()]

    async def update_suspension(
        self,
        user_id: str,
        *,
        values: Mapping[str, Any],
        action: ModerationActionKind,
        actor_id: str,
        reason: str | None,
        details: Mapping[str, Any],
        notifications: Sequence[NotificationDraft],
        now: datetime,
    ) -> SuspensionState | None:
        """Write suspension fields, the action log and fan-out in one transaction.

        The update is a single conditional statement that never touches staff
        accounts; ``None`` means no eligible user matched.
        """

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(UserTable)
                    .where(UserTable.id == user_id)
                    .where(UserTable.role.not_in(_STAFF_ROLES))
                    .values(**values, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if not result.rowcount:
                    return None
                session.add(self._action_row(action, actor_id, user_id, reason, details, now))
                stage_notifications(session, notifications, created_at=now)
                row = await session.get(UserTable, user_id, populate_existing=True)
                if row is None:  # pragma: no cover - row was just updated
                    return None
                return self._row_to_state(row)

    async def record_broadcast(
        self,
        *,
        actor_id: str,
        target_id: str | None,
        reason: str,
        details: Mapping[str, Any],
        notifications: Sequence[NotificationDraft],
        now: datetime,
    ) -> None:
        """Write an announcement's notifications and its action log entry together."""

        async with self._session_factory() as session:
            async with session.begin():
                stage_notifications(session, notifications, created_at=now)
                session.add(
                    self._action_row(
                        ModerationActionKind.SEND_NOTIFICATION, actor_id, target_id, reason, details, now
                    )
                )

    async def list_actions(self, target_id: str) -> list[ModerationAction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ModerationActionTable)
                .where(ModerationActionTable.target_id == target_id)
                .order_by(ModerationActionTable.created_at.desc())
            )
            return [self._row_to_action(row) for row in result.scalars().all()]

    @staticmethod
    def _row_to_state(row: UserTable) -> SuspensionState:
        return SuspensionState(
            is_banned=bool(row.is_banned),
            suspended_until=optional_datetime(row.suspended_until),
            reason=row.suspension_reason,
        )

    @classmethod
    def _row_to_user(cls, row: UserTable) -> UserAccount:
        return UserAccount(
            id=row.id,
            display_name=row.display_name,
            role=Role(row.role),
            suspension=cls._row_to_state(row),
            created_at=ensure_datetime(row.created_at),
            updated_at=ensure_datetime(row.updated_at),
        )

    @staticmethod
    def _row_to_action(row: ModerationActionTable) -> ModerationAction:
        return ModerationAction(
            id=row.id,
            actor_id=row.actor_id,
            target_id=row.target_id,
            action=ModerationActionKind(row.action),
            reason=row.reason,
            details=dict(row.details or {}),
            created_at=ensure_datetime(row.created_at),
        )

    @staticmethod
    def _action_row(
        action: ModerationActionKind,
        actor_id: str,
        target_id: str | None,
        reason: str | None,
        details: Mapping[str, Any],
        now: datetime,
    ) -> ModerationActionTable:
        return ModerationActionTable(
            id=str(uuid.uuid4()),
            actor_id=actor_id,
            target_id=target_id,
            action=action.value,
            reason=reason,
            details=dict(details),
            created_at=now,
        )
