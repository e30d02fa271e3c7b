"""Database models and utilities."""

from .models import (
    ModerationActionTable,
    NotificationTable,
    SupportTicketTable,
    TicketAuditLogTable,
    TicketMessageTable,
    UserTable,
)
from .session import ensure_datetime, ensure_schema, to_asyncpg_dsn

__all__ = [
    "ModerationActionTable",
    "NotificationTable",
    "SupportTicketTable",
    "TicketAuditLogTable",
    "TicketMessageTable",
    "UserTable",
    "ensure_datetime",
    "ensure_schema",
    "to_asyncpg_dsn",
]
