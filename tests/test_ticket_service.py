from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from trustdesk.core.identity import SYSTEM_ACTOR, Identity, Role
from trustdesk.notifications.models import NotificationType
from trustdesk.tickets.models import AuthorKind, EscalationPolicy, MessageKind, TransitionOutcome
from trustdesk.tickets.repository import TicketRepository
from trustdesk.tickets.service import (
    InvalidTicketTransitionError,
    TicketClaimConflict,
    TicketClosedError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketService,
    TicketValidationError,
)
from trustdesk.tickets.state import TicketStatus


def _events(notifications, event):
    return [item for item in notifications if item.metadata.get("event") == event]


def _service_with(policy, session_factory, user_repository, fanout, clock) -> TicketService:
    return TicketService(TicketRepository(session_factory), user_repository, fanout, clock, policy=policy)


async def _assigned_ticket(service, people, clock):
    creation = await service.create_ticket(people.client, subject="Payment issue", message="I was charged twice")
    clock.advance(minutes=1)
    return await service.claim(creation.ticket.id, people.moderator)


async def _escalated_ticket(service, people, clock):
    ticket = await _assigned_ticket(service, people, clock)
    clock.advance(minutes=1)
    result = await service.escalate(ticket.id, people.moderator, reason="Refund needs approval")
    return result.ticket


@pytest.mark.asyncio
async def test_create_opens_ticket_and_alerts_moderators(ticket_service, people, notification_repository):
    creation = await ticket_service.create_ticket(people.client, subject="Login", message="Cannot sign in")

    assert creation.attached is False
    ticket = creation.ticket
    assert ticket.status is TicketStatus.OPEN
    assert ticket.assignee_id is None
    assert ticket.requester_id == people.client.user_id

    messages = await ticket_service.list_messages(ticket.id, people.client)
    assert [message.author_kind for message in messages] == [AuthorKind.SYSTEM, AuthorKind.USER]
    assert messages[1].body == "Cannot sign in"

    for moderator in (people.moderator, people.other_moderator):
        alerts = await notification_repository.list_for_recipient(moderator.user_id)
        assert len(alerts) == 1
        assert alerts[0].type is NotificationType.SYSTEM
        assert alerts[0].action_url == f"/moderator/dashboard?ticket={ticket.id}"
        assert alerts[0].ticket_id == ticket.id


@pytest.mark.asyncio
async def test_second_request_attaches_to_active_ticket(ticket_service, people, clock):
    first = await ticket_service.create_ticket(people.client, subject="Login")
    clock.advance(seconds=30)
    second = await ticket_service.create_ticket(people.client, subject="Still stuck", message="Any news?")

    assert second.attached is True
    assert second.ticket.id == first.ticket.id
    messages = await ticket_service.list_messages(first.ticket.id, people.client)
    assert messages[-1].body == "Any news?"


@pytest.mark.asyncio
async def test_concurrent_creates_yield_a_single_active_ticket(ticket_service, people):
    results = await asyncio.gather(
        ticket_service.create_ticket(people.client, subject="A"),
        ticket_service.create_ticket(people.client, subject="B"),
    )

    assert results[0].ticket.id == results[1].ticket.id
    assert sorted(result.attached for result in results) == [False, True]
    queue = await ticket_service.moderator_queue(people.moderator)
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_staff_cannot_open_support_requests(ticket_service, people):
    with pytest.raises(TicketPermissionError):
        await ticket_service.create_ticket(people.moderator, subject="Help")


@pytest.mark.asyncio
async def test_new_ticket_allowed_after_close(ticket_service, people, clock):
    first = await ticket_service.create_ticket(people.client, subject="One")
    await ticket_service.close(first.ticket.id, people.client)
    clock.advance(minutes=1)

    second = await ticket_service.create_ticket(people.client, subject="Two")

    assert second.attached is False
    assert second.ticket.id != first.ticket.id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("requester_attr", "expected_url"),
    [
        ("client", "/chat-support?ticket={id}"),
        ("professional", "/dashboard?tab=support&ticket={id}"),
    ],
)
async def test_claim_assigns_and_notifies_requester(
    ticket_service, people, clock, notification_repository, requester_attr, expected_url
):
    requester = getattr(people, requester_attr)
    creation = await ticket_service.create_ticket(requester, subject="Question")
    clock.advance(minutes=2)

    ticket = await ticket_service.claim(creation.ticket.id, people.moderator)

    assert ticket.status is TicketStatus.ASSIGNED
    assert ticket.assignee_id == people.moderator.user_id
    assert ticket.assigned_at == clock.now()
    assert ticket.last_activity_at == clock.now()
    notifications = await notification_repository.list_for_recipient(requester.user_id)
    (claimed,) = _events(notifications, "ticket_claimed")
    assert claimed.type is NotificationType.MESSAGE
    assert claimed.action_url == expected_url.format(id=ticket.id)


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(ticket_service, people):
    creation = await ticket_service.create_ticket(people.client, subject="Race")

    results = await asyncio.gather(
        ticket_service.claim(creation.ticket.id, people.moderator),
        ticket_service.claim(creation.ticket.id, people.other_moderator),
        return_exceptions=True,
    )

    winners = [result for result in results if not isinstance(result, Exception)]
    losers = [result for result in results if isinstance(result, TicketClaimConflict)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].ticket.status is TicketStatus.ASSIGNED
    assert losers[0].ticket.assignee_id == winners[0].assignee_id

    stored = await ticket_service.get_ticket(creation.ticket.id, people.admin)
    assert stored.assignee_id == winners[0].assignee_id


@pytest.mark.asyncio
async def test_reclaim_by_assignee_is_noop_and_others_conflict(ticket_service, people, clock):
    ticket = await _assigned_ticket(ticket_service, people, clock)
    clock.advance(minutes=5)

    again = await ticket_service.claim(ticket.id, people.moderator)
    assert again.assignee_id == people.moderator.user_id
    assert again.assigned_at == ticket.assigned_at

    with pytest.raises(TicketClaimConflict) as exc:
        await ticket_service.claim(ticket.id, people.other_moderator)
    assert exc.value.ticket.assignee_id == people.moderator.user_id


@pytest.mark.asyncio
async def test_clients_cannot_claim(ticket_service, people):
    creation = await ticket_service.create_ticket(people.client, subject="Mine")
    with pytest.raises(TicketPermissionError):
        await ticket_service.claim(creation.ticket.id, people.other_client)


@pytest.mark.asyncio
async def test_escalate_by_assignee_notifies_admins_and_requester(
    ticket_service, people, clock, notification_repository
):
    ticket = await _assigned_ticket(ticket_service, people, clock)
    clock.advance(minutes=1)

    result = await ticket_service.escalate(ticket.id, people.moderator, reason="Needs a refund")

    assert result.outcome is TransitionOutcome.OK
    assert result.ticket.status is TicketStatus.ESCALATED
    assert result.ticket.escalation_reason == "Needs a refund"
    assert result.ticket.assignee_id == people.moderator.user_id
    assert result.ticket.escalated_at == clock.now()

    (admin_alert,) = _events(await notification_repository.list_for_recipient(people.admin.user_id), "ticket_escalated")
    assert admin_alert.type is NotificationType.SYSTEM
    assert admin_alert.action_url == f"/admin/supervision?ticket={ticket.id}"
    requester_alerts = _events(
        await notification_repository.list_for_recipient(people.client.user_id), "ticket_escalated"
    )
    assert [alert.type for alert in requester_alerts] == [NotificationType.MESSAGE]

    messages = await ticket_service.list_messages(ticket.id, people.client)
    assert messages[-1].kind is MessageKind.SYSTEM_WARNING

    repeat = await ticket_service.escalate(ticket.id, people.moderator)
    assert repeat.outcome is TransitionOutcome.NOOP


@pytest.mark.asyncio
async def test_escalate_closed_ticket_reports_already_closed(ticket_service, people, clock):
    ticket = await _assigned_ticket(ticket_service, people, clock)
    await ticket_service.close(ticket.id, people.client)

    result = await ticket_service.escalate(ticket.id, people.admin)

    assert result.outcome is TransitionOutcome.ALREADY_CLOSED
    assert result.ticket.status is TicketStatus.CLOSED


@pytest.mark.asyncio
async def test_moderator_escalation_rules(ticket_service, people, clock):
    creation = await ticket_service.create_ticket(people.client, subject="Open")
    with pytest.raises(InvalidTicketTransitionError):
        await ticket_service.escalate(creation.ticket.id, people.moderator)

    await ticket_service.claim(creation.ticket.id, people.moderator)
    with pytest.raises(TicketPermissionError):
        await ticket_service.escalate(creation.ticket.id, people.other_moderator)
    with pytest.raises(TicketPermissionError):
        await ticket_service.escalate(creation.ticket.id, people.client)


@pytest.mark.asyncio
async def test_admin_escalating_open_ticket_self_assigns(ticket_service, people, clock):
    creation = await ticket_service.create_ticket(people.client, subject="Urgent")
    clock.advance(minutes=1)

    result = await ticket_service.escalate(creation.ticket.id, people.admin, reason="Fraud report")

    assert result.outcome is TransitionOutcome.OK
    assert result.ticket.status is TicketStatus.ESCALATED
    assert result.ticket.assignee_id == people.admin.user_id
    actions = [entry.action for entry in await ticket_service.audit_log(creation.ticket.id, people.admin)]
    assert sorted(actions) == ["claimed", "created", "escalated"]


@pytest.mark.asyncio
async def test_intervene_marks_and_escalates(ticket_service, people, clock):
    ticket = await _assigned_ticket(ticket_service, people, clock)
    clock.advance(minutes=1)

    result = await ticket_service.intervene(ticket.id, people.admin)

    assert result.outcome is TransitionOutcome.OK
    assert result.ticket.status is TicketStatus.ESCALATED
    assert result.ticket.admin_intervened is True
    assert result.ticket.admin_intervention_id == people.admin.user_id
    assert result.ticket.assignee_id == people.moderator.user_id

    repeat = await ticket_service.intervene(ticket.id, people.admin)
    assert repeat.outcome is TransitionOutcome.NOOP

    with pytest.raises(TicketPermissionError):
        await ticket_service.intervene(ticket.id, people.moderator)


@pytest.mark.asyncio
async def test_intervene_on_escalated_ticket_records_intervention(ticket_service, people, clock):
    ticket = await _escalated_ticket(ticket_service, people, clock)
    assert ticket.admin_intervened is False

    result = await ticket_service.intervene(ticket.id, people.admin)

    assert result.outcome is TransitionOutcome.OK
    assert result.ticket.admin_intervened is True
    admin_queue = await ticket_service.admin_queue(people.admin)
    assert [item.id for item in admin_queue] == [ticket.id]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("elapsed", "expected"),
    [
        (timedelta(minutes=29), TicketStatus.ASSIGNED),
        (timedelta(minutes=30), TicketStatus.ESCALATED),
        (timedelta(hours=5), TicketStatus.ESCALATED),
    ],
)
async def test_stale_assignment_escalates_on_read(ticket_service, people, clock, elapsed, expected):
    ticket = await _assigned_ticket(ticket_service, people, clock)
    clock.advance(seconds=elapsed.total_seconds())

    current = await ticket_service.get_ticket(ticket.id, people.moderator)

    assert current.status is expected
    assert current.assignee_id == people.moderator.user_id
    if expected is TicketStatus.ESCALATED:
        audit = await ticket_service.audit_log(ticket.id, people.admin)
        assert audit[-1].action == "escalated"
        assert audit[-1].actor == SYSTEM_ACTOR


@pytest.mark.asyncio
async def test_queue_reads_sweep_stale_tickets(ticket_service, people, clock):
    ticket = await _assigned_ticket(ticket_service, people, clock)
    assert await ticket_service.admin_queue(people.admin) == []

    clock.advance(minutes=31)
    queue = await ticket_service.moderator_queue(people.other_moderator)

    assert [(item.id, item.status) for item in queue] == [(ticket.id, TicketStatus.ESCALATED)]
    admin_queue = await ticket_service.admin_queue(people.admin)
    assert [item.id for item in admin_queue] == [ticket.id]


@pytest.mark.asyncio
async def test_staleness_disabled_never_escalates(session_factory, user_repository, fanout, clock, people):
    service = _service_with(EscalationPolicy(stale_after=None), session_factory, user_repository, fanout, clock)
    ticket = await _assigned_ticket(service, people, clock)
    clock.advance(days=3)

    current = await service.get_ticket(ticket.id, people.moderator)

    assert current.status is TicketStatus.ASSIGNED
    assert await service.escalate_stale() == 0


@pytest.mark.asyncio
async def test_only_staff_messages_reset_staleness_clock(ticket_service, people, clock):
    ticket = await _assigned_ticket(ticket_service, people, clock)

    clock.advance(minutes=20)
    await ticket_service.post_message(ticket.id, people.moderator, "Looking into it")
    clock.advance(minutes=20)
    assert (await ticket_service.get_ticket(ticket.id, people.client)).status is TicketStatus.ASSIGNED

    await ticket_service.post_message(ticket.id, people.client, "Thanks")
    clock.advance(minutes=11)
    current = await ticket_service.get_ticket(ticket.id, people.client)
    assert current.status is TicketStatus.ESCALATED
    assert current.last_message_at is not None


@pytest.mark.asyncio
async def test_close_is_idempotent(ticket_service, people, clock):
    creation = await ticket_service.create_ticket(people.client, subject="Done")
    clock.advance(minutes=1)

    first = await ticket_service.close(creation.ticket.id, people.client)
    closed_at = first.ticket.closed_at
    clock.advance(minutes=5)
    second = await ticket_service.close(creation.ticket.id, people.client)

    assert first.outcome is TransitionOutcome.OK
    assert first.ticket.closed_by == people.client.user_id
    assert second.outcome is TransitionOutcome.NOOP
    assert second.ticket.closed_at == closed_at


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("policy_kwargs", "stage", "actor_attr", "allowed"),
    [
        ({}, "open", "client", True),
        ({}, "open", "moderator", False),
        ({}, "open", "admin", True),
        ({}, "assigned", "moderator", True),
        ({}, "assigned", "other_moderator", False),
        ({}, "assigned", "other_client", False),
        ({}, "escalated", "client", True),
        ({"requester_can_close_escalated": False}, "escalated", "client", False),
        ({}, "escalated", "moderator", False),
        ({"moderator_can_close_escalated": True}, "escalated", "moderator", True),
        ({}, "escalated", "admin", True),
    ],
)
async def test_close_permissions_follow_policy(
    session_factory, user_repository, fanout, clock, people, policy_kwargs, stage, actor_attr, allowed
):
    service = _service_with(EscalationPolicy(**policy_kwargs), session_factory, user_repository, fanout, clock)
    if stage == "open":
        ticket = (await service.create_ticket(people.client, subject="Policy")).ticket
    elif stage == "assigned":
        ticket = await _assigned_ticket(service, people, clock)
    else:
        ticket = await _escalated_ticket(service, people, clock)
    actor = getattr(people, actor_attr)

    if allowed:
        result = await service.close(ticket.id, actor)
        assert result.outcome is TransitionOutcome.OK
        assert result.ticket.status is TicketStatus.CLOSED
    else:
        with pytest.raises(TicketPermissionError):
            await service.close(ticket.id, actor)


@pytest.mark.asyncio
async def test_close_clears_staff_alerts_and_notifies_requester(
    ticket_service, people, clock, notification_repository
):
    ticket = await _assigned_ticket(ticket_service, people, clock)
    clock.advance(minutes=1)

    await ticket_service.close(ticket.id, people.moderator)

    for moderator in (people.moderator, people.other_moderator):
        assert await notification_repository.list_for_recipient(moderator.user_id) == []
    requester_events = {
        item.metadata["event"] for item in await notification_repository.list_for_recipient(people.client.user_id)
    }
    assert requester_events == {"ticket_claimed", "ticket_closed"}


@pytest.mark.asyncio
async def test_post_message_rules(ticket_service, people, clock, notification_repository):
    ticket = await _assigned_ticket(ticket_service, people, clock)

    with pytest.raises(TicketValidationError):
        await ticket_service.post_message(ticket.id, people.client, "   ")
    with pytest.raises(TicketPermissionError):
        await ticket_service.post_message(ticket.id, people.other_client, "Hello?")
    with pytest.raises(TicketPermissionError):
        await ticket_service.post_message(ticket.id, people.other_moderator, "Hi")
    with pytest.raises(TicketPermissionError):
        await ticket_service.post_message(ticket.id, people.admin, "Admins wait for escalation")

    clock.advance(minutes=1)
    message = await ticket_service.post_message(ticket.id, people.client, "Any update?")
    assert message.author_kind is AuthorKind.USER
    (alert,) = _events(await notification_repository.list_for_recipient(people.moderator.user_id), "ticket_message")
    assert alert.action_url == f"/moderator/dashboard?ticket={ticket.id}"
    assert alert.message == 'Requester: "Any update?"'


@pytest.mark.asyncio
async def test_admin_can_post_on_escalated_ticket(ticket_service, people, clock):
    ticket = await _escalated_ticket(ticket_service, people, clock)
    clock.advance(minutes=1)

    message = await ticket_service.post_message(ticket.id, people.admin, "I'll take it from here")

    assert message.author_kind is AuthorKind.ADMIN


@pytest.mark.asyncio
async def test_closed_ticket_rejects_messages(ticket_service, people, clock):
    ticket = await _assigned_ticket(ticket_service, people, clock)
    await ticket_service.close(ticket.id, people.client)

    with pytest.raises(TicketClosedError):
        await ticket_service.post_message(ticket.id, people.moderator, "Too late")


@pytest.mark.asyncio
async def test_ticket_visibility(ticket_service, people):
    creation = await ticket_service.create_ticket(people.client, subject="Private")

    with pytest.raises(TicketPermissionError):
        await ticket_service.get_ticket(creation.ticket.id, people.other_client)
    with pytest.raises(TicketNotFoundError):
        await ticket_service.get_ticket("missing", people.admin)
    with pytest.raises(TicketPermissionError):
        await ticket_service.audit_log(creation.ticket.id, people.client)
    with pytest.raises(TicketPermissionError):
        await ticket_service.admin_queue(people.moderator)

    assert (await ticket_service.get_active(people.client)).id == creation.ticket.id
    assert await ticket_service.get_active(people.other_client) is None


@pytest.mark.asyncio
async def test_audit_log_records_lifecycle(ticket_service, people, clock):
    ticket = await _escalated_ticket(ticket_service, people, clock)
    clock.advance(minutes=1)
    await ticket_service.close(ticket.id, people.admin)

    audit = await ticket_service.audit_log(ticket.id, people.moderator)

    assert [(entry.action, entry.from_status, entry.to_status) for entry in audit] == [
        ("created", None, TicketStatus.OPEN),
        ("claimed", TicketStatus.OPEN, TicketStatus.ASSIGNED),
        ("escalated", TicketStatus.ASSIGNED, TicketStatus.ESCALATED),
        ("closed", TicketStatus.ESCALATED, TicketStatus.CLOSED),
    ]
    assert audit[2].metadata == {"reason": "Refund needs approval"}
    assert [entry.actor for entry in audit] == [
        people.client.user_id,
        people.moderator.user_id,
        people.moderator.user_id,
        people.admin.user_id,
    ]


def test_identity_role_helpers():
    identity = Identity(user_id="x", role=Role.MODERATOR)
    assert identity.is_staff
    assert identity.has_role(Role.ADMIN, Role.MODERATOR)
    assert not Identity(user_id="y", role=Role.PROFESSIONAL).is_staff
