from contextlib import asynccontextmanager

from fastapi import FastAPI

from trustdesk.access.broadcast import NotificationBroadcaster
from trustdesk.access.gate import AccessGate
from trustdesk.access.ledger import SuspensionLedger
from trustdesk.access.repository import UserRepository
from trustdesk.api.routes import access, metrics, moderation, notifications, ping, tickets
from trustdesk.core.clock import SystemClock
from trustdesk.core.config import Settings, get_settings
from trustdesk.core.identity import Role
from trustdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from trustdesk.db.session import build_engine, ensure_schema
from trustdesk.dependencies.auth import resolve_identity
from trustdesk.notifications.fanout import NotificationFanOut
from trustdesk.notifications.repository import NotificationRepository
from trustdesk.notifications.service import NotificationService
from trustdesk.polling import PollingContract
from trustdesk.tickets.models import EscalationPolicy
from trustdesk.tickets.repository import TicketRepository
from trustdesk.tickets.service import TicketService


async def _provision_accounts(users: UserRepository, settings: Settings, clock: SystemClock) -> None:
    now = clock.now()
    if settings.bootstrap_admin_id:
        await users.ensure_user(
            settings.bootstrap_admin_id, Role.ADMIN, now, display_name=settings.bootstrap_admin_name
        )
    # Staff must exist before their first request to receive queue alerts.
    for token in settings.identity_tokens:
        identity = resolve_identity(token, settings)
        if identity is not None:
            await users.ensure_user(identity.user_id, identity.role, now)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    engine, session_factory = build_engine(settings.postgres_dsn)
    await ensure_schema(engine)

    clock = SystemClock()
    users = UserRepository(session_factory)
    await _provision_accounts(users, settings, clock)
    notification_repository = NotificationRepository(session_factory)
    fanout = NotificationFanOut(notification_repository, clock)
    polling = PollingContract.from_settings(settings)

    app.state.clock = clock
    app.state.polling = polling
    app.state.access_gate = AccessGate(users, clock, notice_refresh_seconds=settings.block_notice_refresh_seconds)
    app.state.suspension_ledger = SuspensionLedger(users, fanout, clock, max_days=settings.max_suspension_days)
    app.state.notification_service = NotificationService(notification_repository, clock, polling)
    app.state.notification_broadcaster = NotificationBroadcaster(users, fanout, clock)
    app.state.ticket_service = TicketService(
        TicketRepository(session_factory),
        users,
        fanout,
        clock,
        policy=EscalationPolicy(
            stale_after=settings.ticket_stale_after,
            requester_can_close_escalated=settings.requester_can_close_escalated,
            moderator_can_close_escalated=settings.moderator_can_close_escalated,
        ),
    )
    logger.info("TrustDesk services ready")
    try:
        yield
    finally:
        await engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(metrics.router)
    app.include_router(access.router)
    app.include_router(tickets.router)
    app.include_router(notifications.router)
    app.include_router(moderation.router)
    return app


app = create_app()
