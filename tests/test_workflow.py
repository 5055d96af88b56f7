from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from blockdesk.services.ledger import InMemoryLedger, SubmissionReceipt
from blockdesk.tickets.errors import RejectionReason
from blockdesk.tickets.models import ActorContext, TransitionOutcome
from blockdesk.tickets.state import TRANSITION_ACTIONS, TicketAction, TicketStateMachine, TicketStatus
from blockdesk.tickets.workflow import WorkflowEngine

from factories import AGENT, MANAGER, OTHER_AGENT, USER, counter_value, make_record


def _mock_ledger() -> AsyncMock:
    ledger = AsyncMock()
    ledger.submit_transition = AsyncMock(
        return_value=SubmissionReceipt(accepted=True, ticket_id="1", event_ref="0xabc:0")
    )
    return ledger


MISSING_EDGES = [
    (status, action)
    for status in TicketStatus
    for action in sorted(TRANSITION_ACTIONS, key=lambda a: a.value)
    if not TicketStateMachine.can_transition(status, action)
]


@pytest.mark.asyncio
@pytest.mark.parametrize("status, action", MISSING_EDGES)
async def test_actions_outside_the_table_are_invalid(status, action, manager, metrics):
    ledger = _mock_ledger()
    engine = WorkflowEngine(ledger, metrics=metrics)

    result = await engine.submit(make_record(status=status, assignee=AGENT), action, manager, assignee=AGENT)

    assert result.outcome is TransitionOutcome.REJECTED
    assert result.reason is RejectionReason.INVALID_TRANSITION
    assert not result.retryable
    ledger.submit_transition.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", list(TicketStatus))
@pytest.mark.parametrize("action", [TicketAction.ASSIGN, TicketAction.RESOLVE, TicketAction.CLOSE])
async def test_users_are_never_authorized_for_workflow_actions(status, action, metrics):
    ledger = _mock_ledger()
    engine = WorkflowEngine(ledger, metrics=metrics)
    creator = ActorContext(address=USER, role="user")

    result = await engine.submit(
        make_record(status=status, creator=USER, assignee=USER), action, creator, assignee=USER
    )

    assert result.reason is RejectionReason.UNAUTHORIZED
    ledger.submit_transition.assert_not_awaited()


@pytest.mark.asyncio
async def test_manager_assignment_is_conditioned_on_current_status(manager, metrics):
    ledger = _mock_ledger()
    engine = WorkflowEngine(ledger, metrics=metrics)

    result = await engine.submit(make_record(), TicketAction.ASSIGN, manager, assignee=AGENT.upper().replace("0X", "0x"))

    assert result.outcome is TransitionOutcome.ACCEPTED
    assert result.event_ref == "0xabc:0"
    ledger.submit_transition.assert_awaited_once_with(
        "1", TicketAction.ASSIGN, {"assignee": AGENT}, TicketStatus.OPEN, actor=MANAGER
    )
    assert counter_value(metrics, "ticket_transitions_total", action="assign", outcome="accepted") == 1


@pytest.mark.asyncio
async def test_assign_without_assignee_is_invalid(manager, metrics):
    engine = WorkflowEngine(_mock_ledger(), metrics=metrics)

    result = await engine.submit(make_record(), TicketAction.ASSIGN, manager)

    assert result.reason is RejectionReason.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_agent_may_only_assign_to_self(agent, metrics):
    ledger = _mock_ledger()
    engine = WorkflowEngine(ledger, metrics=metrics)

    other = await engine.submit(make_record(), TicketAction.ASSIGN, agent, assignee=OTHER_AGENT)
    implicit = await engine.submit(make_record(), TicketAction.ASSIGN, agent)

    assert other.reason is RejectionReason.UNAUTHORIZED
    assert implicit.outcome is TransitionOutcome.ACCEPTED
    assert ledger.submit_transition.await_args.args[2] == {"assignee": AGENT}


@pytest.mark.asyncio
async def test_self_assign_can_be_disabled(agent, metrics):
    engine = WorkflowEngine(_mock_ledger(), allow_self_assign=False, metrics=metrics)

    result = await engine.submit(make_record(), TicketAction.ASSIGN, agent, assignee=AGENT)

    assert result.reason is RejectionReason.UNAUTHORIZED


@pytest.mark.asyncio
async def test_only_assignee_agent_may_resolve(agent, metrics):
    engine = WorkflowEngine(_mock_ledger(), metrics=metrics)

    mine = await engine.submit(make_record(status=TicketStatus.IN_PROGRESS, assignee=AGENT), TicketAction.RESOLVE, agent)
    theirs = await engine.submit(
        make_record(status=TicketStatus.IN_PROGRESS, assignee=OTHER_AGENT), TicketAction.RESOLVE, agent
    )

    assert mine.outcome is TransitionOutcome.ACCEPTED
    assert theirs.reason is RejectionReason.UNAUTHORIZED


@pytest.mark.asyncio
async def test_agents_cannot_close_or_reopen(agent, metrics):
    engine = WorkflowEngine(_mock_ledger(), metrics=metrics)

    close = await engine.submit(make_record(status=TicketStatus.RESOLVED, assignee=AGENT), TicketAction.CLOSE, agent)
    reopen = await engine.submit(make_record(status=TicketStatus.CLOSED), TicketAction.REOPEN, agent)

    assert close.reason is RejectionReason.UNAUTHORIZED
    assert reopen.reason is RejectionReason.UNAUTHORIZED


@pytest.mark.asyncio
async def test_unknown_role_fails_closed(metrics):
    engine = WorkflowEngine(_mock_ledger(), metrics=metrics)
    stranger = ActorContext(address=OTHER_AGENT, role="auditor")

    result = await engine.submit(make_record(), TicketAction.ASSIGN, stranger, assignee=AGENT)

    assert result.reason is RejectionReason.UNAUTHORIZED


@pytest.mark.asyncio
async def test_comment_is_not_a_transition(manager, metrics):
    engine = WorkflowEngine(_mock_ledger(), metrics=metrics)

    result = await engine.submit(make_record(), TicketAction.COMMENT, manager)

    assert result.reason is RejectionReason.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_concurrent_assignments_yield_one_winner(manager, metrics):
    ledger = InMemoryLedger()
    receipt = await ledger.create_ticket(
        title="Shared drive", description_ref="read only", attachment_ref=None, creator=USER
    )
    engine = WorkflowEngine(ledger, metrics=metrics)
    record = make_record(ticket_id=receipt.ticket_id)
    second_manager = ActorContext(address=OTHER_AGENT, role="manager")

    results = await asyncio.gather(
        engine.submit(record, TicketAction.ASSIGN, manager, assignee=AGENT),
        engine.submit(record, TicketAction.ASSIGN, second_manager, assignee=OTHER_AGENT),
    )

    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes == ["accepted", "rejected"]
    rejected = next(result for result in results if not result.ok)
    assert rejected.reason is RejectionReason.STALE_STATE
    assert rejected.retryable
    assert counter_value(metrics, "ticket_transition_rejections_total", reason="stale_state") == 1


@pytest.mark.asyncio
async def test_unconfirmed_write_is_pending(manager, metrics):
    ledger = InMemoryLedger(auto_confirm=False)
    receipt = await ledger.create_ticket(title="Badge", description_ref="badge expired", attachment_ref=None, creator=USER)
    engine = WorkflowEngine(ledger, metrics=metrics)

    result = await engine.submit(make_record(ticket_id=receipt.ticket_id), TicketAction.ASSIGN, manager, assignee=AGENT)

    assert result.outcome is TransitionOutcome.PENDING
    assert result.ok


@pytest.mark.asyncio
async def test_ledger_outage_is_a_retryable_rejection(manager, metrics):
    ledger = InMemoryLedger()
    ledger.available = False
    engine = WorkflowEngine(ledger, metrics=metrics)

    result = await engine.submit(make_record(), TicketAction.ASSIGN, manager, assignee=AGENT)

    assert result.reason is RejectionReason.LEDGER_UNAVAILABLE
    assert result.retryable


@pytest.mark.asyncio
async def test_ledger_not_found_is_reported(manager, metrics):
    ledger = _mock_ledger()
    ledger.submit_transition = AsyncMock(
        return_value=SubmissionReceipt.rejected("9", RejectionReason.NOT_FOUND, "Ticket 9 not found")
    )
    engine = WorkflowEngine(ledger, metrics=metrics)

    result = await engine.submit(make_record(ticket_id="9"), TicketAction.ASSIGN, manager, assignee=AGENT)

    assert result.reason is RejectionReason.NOT_FOUND
    assert result.message == "Ticket 9 not found"
