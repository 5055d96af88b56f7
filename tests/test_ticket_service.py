from __future__ import annotations

import pytest

from blockdesk.services.content_store import compute_digest, is_digest
from blockdesk.tickets.errors import (
    IncompleteRecordError,
    LedgerUnavailableError,
    RejectionReason,
    TicketNotFoundError,
)
from blockdesk.tickets.models import CONTENT_PLACEHOLDER, ActorContext, ContentStatus, TransitionOutcome
from blockdesk.tickets.service import TicketFilter
from blockdesk.tickets.state import TicketAction, TicketStatus

from factories import AGENT, MANAGER, OTHER_USER, USER, block_time, counter_value


async def _open_ticket(service, user, title: str = "Printer jammed", description: str = "Tray 2 jams on every job"):
    result = await service.create_ticket(title=title, description=description, actor=user)
    assert result.outcome is TransitionOutcome.ACCEPTED
    return result.ticket_id


@pytest.mark.asyncio
async def test_create_ticket_builds_complete_record(service, user):
    result = await service.create_ticket(title="Printer jammed", description="Tray 2 jams on every job", actor=user)

    ticket = result.ticket
    assert result.ok
    assert ticket.record.is_complete
    assert ticket.record.status is TicketStatus.OPEN
    assert ticket.record.creator == USER
    assert ticket.record.description.status is ContentStatus.INLINE
    assert ticket.record.description.text == "Tray 2 jams on every job"
    assert service.directory.get(result.ticket_id) == ticket


@pytest.mark.asyncio
async def test_long_description_and_attachment_go_to_content_store(service, user, blob_store):
    description = "The dock loses video output. " * 20
    result = await service.create_ticket(
        title="Dock flicker", description=description, actor=user, attachment=b"\x89PNG screenshot"
    )

    record = result.ticket.record
    assert is_digest(record.description.reference)
    assert record.description.text == description
    assert record.attachment.reference == compute_digest(b"\x89PNG screenshot")
    assert blob_store.blobs[record.attachment.reference] == b"\x89PNG screenshot"


@pytest.mark.asyncio
async def test_full_lifecycle_leaves_five_entry_audit_trail(service, user, manager, agent):
    ticket_id = await _open_ticket(service, user)

    steps = [
        (TicketAction.ASSIGN, manager, AGENT),
        (TicketAction.RESOLVE, agent, None),
        (TicketAction.CLOSE, manager, None),
        (TicketAction.REOPEN, manager, None),
    ]
    for action, actor, assignee in steps:
        result = await service.request_transition(ticket_id, action, actor, assignee=assignee)
        assert result.outcome is TransitionOutcome.ACCEPTED, result.message

    ticket = await service.get_ticket(ticket_id)
    summaries = [entry.summary for entry in ticket.audit_trail]
    assert len(ticket.audit_trail) == 5
    assert summaries[0] == 'Created "Printer jammed"'
    assert summaries[1].startswith("Assigned to ")
    assert summaries[2:] == ["Resolved", "Closed", "Reopened"]
    assert ticket.record.status is TicketStatus.OPEN
    assert ticket.record.assignee is None


@pytest.mark.asyncio
async def test_stale_transition_returns_refreshed_ticket(service, user, manager, agent):
    ticket_id = await _open_ticket(service, user)
    view = await service.get_ticket(ticket_id)
    await service.request_transition(ticket_id, TicketAction.ASSIGN, manager, assignee=AGENT)

    result = await service.workflow.submit(view.record, TicketAction.ASSIGN, agent)

    assert result.reason is RejectionReason.STALE_STATE
    assert result.retryable
    refreshed = await service.get_ticket(ticket_id)
    assert refreshed.record.assignee == AGENT


@pytest.mark.asyncio
async def test_rejected_transition_carries_current_ticket(service, user):
    ticket_id = await _open_ticket(service, user)

    result = await service.request_transition(ticket_id, TicketAction.CLOSE, user)

    assert result.reason is RejectionReason.UNAUTHORIZED
    assert result.ticket.ticket_id == ticket_id
    assert result.ticket.record.status is TicketStatus.OPEN


@pytest.mark.asyncio
async def test_transition_on_unknown_ticket_is_not_found(service, manager):
    result = await service.request_transition("404", TicketAction.ASSIGN, manager, assignee=AGENT)

    assert result.reason is RejectionReason.NOT_FOUND
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket("404")


@pytest.mark.asyncio
async def test_comment_from_other_client_resolves_after_negative_ttl(service, user, ledger, blob_store, clock):
    ticket_id = await _open_ticket(service, user)
    digest = compute_digest(b"ack")
    await ledger.append_comment(ticket_id, digest, author=AGENT)

    first = await service.get_ticket(ticket_id)
    comment = first.record.comments[0]
    assert comment.content.status is ContentStatus.UNAVAILABLE
    assert comment.content.display == CONTENT_PLACEHOLDER

    blob_store.blobs[digest] = b"ack"
    cached_miss = await service.get_ticket(ticket_id)
    assert cached_miss.record.comments[0].content.display == CONTENT_PLACEHOLDER

    clock.advance(6.0)
    second = await service.get_ticket(ticket_id)
    assert second.record.comments[0].content.text == "ack"


@pytest.mark.asyncio
async def test_refresh_content_bypasses_negative_cache(service, user, ledger, blob_store):
    ticket_id = await _open_ticket(service, user)
    digest = compute_digest(b"ack")
    await ledger.append_comment(ticket_id, digest, author=AGENT)
    await service.get_ticket(ticket_id)

    blob_store.blobs[digest] = b"ack"
    refreshed = await service.refresh_content(ticket_id)

    assert refreshed.record.comments[0].content.text == "ack"
    assert service.directory.get(ticket_id).record.comments[0].content.text == "ack"


@pytest.mark.asyncio
async def test_ledger_outage_serves_cached_record_as_stale(service, user, ledger, metrics):
    ticket_id = await _open_ticket(service, user)
    ledger.available = False

    ticket = await service.get_ticket(ticket_id)

    assert ticket.stale
    assert ticket.record.title == "Printer jammed"
    assert counter_value(metrics, "ticket_reconciliations_total", outcome="stale") == 1
    with pytest.raises(LedgerUnavailableError):
        await service.get_ticket("2")


@pytest.mark.asyncio
async def test_write_during_outage_is_retryable(service, user, manager, ledger):
    ticket_id = await _open_ticket(service, user)
    ledger.available = False

    result = await service.request_transition(ticket_id, TicketAction.ASSIGN, manager, assignee=AGENT)

    assert result.reason is RejectionReason.LEDGER_UNAVAILABLE
    assert result.retryable


@pytest.mark.asyncio
async def test_incomplete_ticket_completes_after_backfill(service, ledger):
    ledger.seed_ticket("42", creator=USER, created_at=block_time(0))

    incomplete = await service.get_ticket("42")
    assert not incomplete.record.is_complete
    with pytest.raises(IncompleteRecordError):
        await service.require_ticket("42")

    ledger.inject_events(
        [
            {
                "transaction_ref": "0xbackfill",
                "log_index": 0,
                "sequence": 500,
                "ticket_id": "42",
                "kind": "Created",
                "actor": USER,
                "timestamp": block_time(0),
                "payload": {"title": "Monitor dead", "description_ref": "no power light", "attachment_ref": ""},
            }
        ]
    )

    complete = await service.require_ticket("42")
    assert complete.record.title == "Monitor dead"
    assert complete.record.description.text == "no power light"


@pytest.mark.asyncio
async def test_unconfirmed_writes_are_pending_until_events_land(service, user, manager, ledger):
    ticket_id = await _open_ticket(service, user)
    ledger.auto_confirm = False

    result = await service.request_transition(ticket_id, TicketAction.ASSIGN, manager, assignee=AGENT)
    assert result.outcome is TransitionOutcome.PENDING

    await ledger.confirm_pending()
    ticket = await service.get_ticket(ticket_id)

    assert ticket.record.status is TicketStatus.IN_PROGRESS
    assert ticket.audit_trail.entries[-1].summary.startswith("Assigned to ")


@pytest.mark.asyncio
async def test_comment_rules(service, user, agent):
    ticket_id = await _open_ticket(service, user)
    stranger = ActorContext(address=OTHER_USER, role="user")

    own = await service.add_comment(ticket_id, "Still jammed", user)
    staff = await service.add_comment(ticket_id, "Replacing the roller", agent)
    foreign = await service.add_comment(ticket_id, "Me too", stranger)

    assert own.ok and staff.ok
    assert foreign.reason is RejectionReason.UNAUTHORIZED
    ticket = await service.get_ticket(ticket_id)
    assert [comment.content.text for comment in ticket.record.comments] == ["Still jammed", "Replacing the roller"]
    assert [comment.author for comment in ticket.record.comments] == [USER, AGENT]


@pytest.mark.asyncio
async def test_unknown_role_cannot_create(service):
    guest = ActorContext(address=OTHER_USER, role="")

    result = await service.create_ticket(title="Guest wifi", description="Cannot join guest wifi", actor=guest)

    assert result.reason is RejectionReason.UNAUTHORIZED
    assert await service.list_tickets() == []


@pytest.mark.asyncio
async def test_listing_filters(service, user, manager):
    first = await _open_ticket(service, user, title="Printer jammed")
    await _open_ticket(service, user, title="VPN drops", description="VPN disconnects hourly")
    await service.request_transition(first, TicketAction.ASSIGN, manager, assignee=AGENT)

    in_progress = await service.list_tickets(TicketFilter(status=TicketStatus.IN_PROGRESS))
    mine = await service.list_tickets(TicketFilter(mine_of=AGENT))
    vpn = await service.list_tickets(TicketFilter(search="hourly"))
    nobody = await service.list_tickets(TicketFilter(mine_of=MANAGER))

    assert [ticket.ticket_id for ticket in in_progress] == [first]
    assert [ticket.ticket_id for ticket in mine] == [first]
    assert [ticket.record.title for ticket in vpn] == ["VPN drops"]
    assert nobody == []


@pytest.mark.asyncio
async def test_rebuild_reproduces_directory(service, user, manager):
    first = await _open_ticket(service, user)
    await _open_ticket(service, user, title="Badge reader", description="Badge reader at door 3 is offline")
    await service.request_transition(first, TicketAction.ASSIGN, manager, assignee=AGENT)
    before = {ticket.ticket_id: ticket.record for ticket in await service.list_tickets()}

    count = await service.rebuild()

    after = {ticket.ticket_id: ticket.record for ticket in await service.list_tickets()}
    assert count == 2
    assert after == before


def _raw_event(sequence: int, kind: str, payload: dict, *, actor: str = USER) -> dict:
    return {
        "transaction_ref": f"0xlate{sequence}",
        "log_index": 0,
        "sequence": sequence,
        "ticket_id": "7",
        "kind": kind,
        "actor": actor,
        "timestamp": block_time(sequence),
        "payload": payload,
    }


@pytest.mark.asyncio
async def test_backfilled_lower_sequence_comment_is_picked_up(service, ledger):
    ledger.seed_ticket("7", creator=USER, created_at=block_time(0))
    ledger.inject_events(
        [
            _raw_event(10, "Created", {"title": "Scanner offline", "description_ref": "scanner shows no network"}),
            _raw_event(30, "CommentAdded", {"comment_id": "7-2", "content_ref": "second"}, actor=AGENT),
        ]
    )
    first_sync = await service.require_ticket("7")
    assert [comment.content.text for comment in first_sync.record.comments] == ["second"]

    ledger.inject_events([_raw_event(20, "CommentAdded", {"comment_id": "7-1", "content_ref": "first"})])
    ticket = await service.require_ticket("7")

    assert [comment.content.text for comment in ticket.record.comments] == ["first", "second"]
    assert len(ticket.audit_trail) == 3
    await service.rebuild()
    assert service.directory.get("7").record == ticket.record
