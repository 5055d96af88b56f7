from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

import asyncpg

from blockdesk.tickets.errors import InvalidTransitionError, LedgerUnavailableError, RejectionReason
from blockdesk.tickets.events import EventKind, TicketEvent, decode_events, normalise_address
from blockdesk.tickets.models import LedgerTicket
from blockdesk.tickets.state import TicketAction, TicketStateMachine, TicketStatus

from .ledger import SubmissionReceipt, apply_transition, transaction_ref_for

logger = logging.getLogger(__name__)

# InterfaceError covers closed pools and released or broken connections.
CONNECTION_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresLedgerGateway:
    """Ledger gateway persisting ticket state and the event log in PostgreSQL.

    Conditional writes are expressed as ``UPDATE ... WHERE status = $expected``
    inside the same transaction that appends the event, so either both land or
    neither does.
    """

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS ledger_tickets (
        id BIGSERIAL PRIMARY KEY,
        status SMALLINT NOT NULL,
        creator TEXT NOT NULL,
        assignee TEXT NULL,
        comment_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _CREATE_EVENTS_SQL = """
    CREATE TABLE IF NOT EXISTS ledger_events (
        sequence BIGSERIAL PRIMARY KEY,
        transaction_ref TEXT NOT NULL,
        log_index INTEGER NOT NULL DEFAULT 0,
        ticket_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        actor TEXT NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        block_time TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (transaction_ref, log_index)
    )
    """

    _CREATE_EVENTS_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS ledger_events_ticket_idx ON ledger_events (ticket_id, sequence)
    """

    _SELECT_TICKET_SQL = """
    SELECT id, status, creator, assignee, created_at
    FROM ledger_tickets
    WHERE id = $1
    """

    _SELECT_TICKET_FOR_UPDATE_SQL = """
    SELECT id, status, creator, assignee, created_at
    FROM ledger_tickets
    WHERE id = $1
    FOR UPDATE
    """

    _LIST_TICKET_IDS_SQL = """
    SELECT id FROM ledger_tickets ORDER BY id ASC
    """

    _SELECT_EVENTS_SQL = """
    SELECT sequence, transaction_ref, log_index, ticket_id, kind, actor, payload, block_time
    FROM ledger_events
    WHERE ticket_id = $1 AND sequence > $2
    ORDER BY block_time ASC, sequence ASC
    """

    _INSERT_TICKET_SQL = """
    INSERT INTO ledger_tickets (status, creator)
    VALUES ($1, $2)
    RETURNING id
    """

    _CONDITIONAL_UPDATE_SQL = """
    UPDATE ledger_tickets
    SET status = $2, assignee = $3
    WHERE id = $1 AND status = $4
    RETURNING id
    """

    _BUMP_COMMENT_SQL = """
    UPDATE ledger_tickets
    SET comment_count = comment_count + 1
    WHERE id = $1
    RETURNING comment_count
    """

    _INSERT_EVENT_SQL = """
    INSERT INTO ledger_events (transaction_ref, log_index, ticket_id, kind, actor, payload)
    VALUES ($1, 0, $2, $3, $4, $5::jsonb)
    RETURNING sequence, transaction_ref, log_index
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_EVENTS_SQL)
            await connection.execute(self._CREATE_EVENTS_INDEX_SQL)

    async def read_ticket(self, ticket_id: str) -> LedgerTicket | None:
        key = _ticket_key(ticket_id)
        if key is None:
            return None
        try:
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._SELECT_TICKET_SQL, key)
        except CONNECTION_ERRORS as exc:
            raise LedgerUnavailableError(f"Reading ticket {ticket_id} failed: {exc}") from exc
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def read_events(self, ticket_id: str, since_sequence: int | None = None) -> list[TicketEvent]:
        try:
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(
                    self._SELECT_EVENTS_SQL,
                    str(ticket_id),
                    -1 if since_sequence is None else since_sequence,
                )
        except CONNECTION_ERRORS as exc:
            raise LedgerUnavailableError(f"Reading events of ticket {ticket_id} failed: {exc}") from exc
        return decode_events(self._row_to_raw_event(row) for row in rows)

    async def list_ticket_ids(self) -> list[str]:
        try:
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(self._LIST_TICKET_IDS_SQL)
        except CONNECTION_ERRORS as exc:
            raise LedgerUnavailableError(f"Listing tickets failed: {exc}") from exc
        return [str(row["id"]) for row in rows]

    async def submit_transition(
        self,
        ticket_id: str,
        action: TicketAction,
        params: Mapping[str, Any],
        expected_status: TicketStatus,
        *,
        actor: str,
    ) -> SubmissionReceipt:
        key = _ticket_key(ticket_id)
        if key is None:
            return SubmissionReceipt.rejected(ticket_id, RejectionReason.NOT_FOUND, f"Ticket {ticket_id} not found")
        try:
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(self._SELECT_TICKET_FOR_UPDATE_SQL, key)
                    if row is None:
                        return SubmissionReceipt.rejected(
                            ticket_id, RejectionReason.NOT_FOUND, f"Ticket {ticket_id} not found"
                        )
                    current = self._row_to_ticket(row)
                    if current.status is not expected_status:
                        return SubmissionReceipt.rejected(
                            ticket_id,
                            RejectionReason.STALE_STATE,
                            f"Ticket {ticket_id} is {current.status.label}, expected {expected_status.label}",
                        )
                    try:
                        status, assignee = apply_transition(current.status, current.assignee, action, params)
                    except (InvalidTransitionError, ValueError) as exc:
                        return SubmissionReceipt.rejected(ticket_id, RejectionReason.INVALID_TRANSITION, str(exc))

                    updated = await connection.fetchrow(
                        self._CONDITIONAL_UPDATE_SQL, key, status.index, assignee, expected_status.index
                    )
                    if updated is None:
                        return SubmissionReceipt.rejected(
                            ticket_id, RejectionReason.STALE_STATE, f"Ticket {ticket_id} changed concurrently"
                        )
                    if action.sets_assignee:
                        kind, payload = EventKind.ASSIGNED, {"assignee": assignee, "status": status.index}
                    else:
                        kind, payload = EventKind.STATUS_CHANGED, {"status": status.index}
                    event = await self._insert_event(connection, ticket_id, kind, actor, payload)
        except CONNECTION_ERRORS as exc:
            raise LedgerUnavailableError(f"Submitting {action.value} for ticket {ticket_id} failed: {exc}") from exc
        return _receipt(ticket_id, event)

    async def create_ticket(
        self,
        *,
        title: str,
        description_ref: str,
        attachment_ref: str | None,
        creator: str,
    ) -> SubmissionReceipt:
        creator_address = normalise_address(creator) or ""
        try:
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(
                        self._INSERT_TICKET_SQL, TicketStateMachine.initial_state().index, creator_address
                    )
                    if row is None:
                        raise RuntimeError("Failed to insert ticket")
                    ticket_id = str(row["id"])
                    event = await self._insert_event(
                        connection,
                        ticket_id,
                        EventKind.CREATED,
                        creator_address,
                        {"title": title, "description_ref": description_ref, "attachment_ref": attachment_ref or ""},
                    )
        except CONNECTION_ERRORS as exc:
            raise LedgerUnavailableError(f"Creating ticket failed: {exc}") from exc
        return _receipt(ticket_id, event)

    async def append_comment(self, ticket_id: str, content_ref: str, *, author: str) -> SubmissionReceipt:
        key = _ticket_key(ticket_id)
        if key is None:
            return SubmissionReceipt.rejected(ticket_id, RejectionReason.NOT_FOUND, f"Ticket {ticket_id} not found")
        try:
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(self._BUMP_COMMENT_SQL, key)
                    if row is None:
                        return SubmissionReceipt.rejected(
                            ticket_id, RejectionReason.NOT_FOUND, f"Ticket {ticket_id} not found"
                        )
                    event = await self._insert_event(
                        connection,
                        ticket_id,
                        EventKind.COMMENT_ADDED,
                        normalise_address(author) or "",
                        {"comment_id": f"{ticket_id}-{row['comment_count']}", "content_ref": content_ref},
                    )
        except CONNECTION_ERRORS as exc:
            raise LedgerUnavailableError(f"Appending comment to ticket {ticket_id} failed: {exc}") from exc
        return _receipt(ticket_id, event)

    async def close(self) -> None:
        return None

    async def _insert_event(
        self,
        connection: Any,
        ticket_id: str,
        kind: EventKind,
        actor: str,
        payload: Mapping[str, Any],
    ) -> Mapping[str, Any]:
        transaction_ref = transaction_ref_for(ticket_id, kind.value, actor, json.dumps(payload, sort_keys=True), datetime.now(timezone.utc).isoformat())
        row = await connection.fetchrow(
            self._INSERT_EVENT_SQL,
            transaction_ref,
            ticket_id,
            kind.value,
            actor,
            json.dumps(dict(payload)),
        )
        if row is None:
            raise RuntimeError("Failed to append ledger event")
        return row

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any]) -> LedgerTicket:
        created_at = row["created_at"]
        if isinstance(created_at, datetime) and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return LedgerTicket(
            ticket_id=str(row["id"]),
            status=TicketStatus.from_index(int(row["status"])),
            creator=normalise_address(row["creator"]) or "",
            assignee=normalise_address(row["assignee"]),
            created_at=created_at,
        )

    @staticmethod
    def _row_to_raw_event(row: Mapping[str, Any]) -> dict[str, Any]:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return {
            "transaction_ref": row["transaction_ref"],
            "log_index": row["log_index"],
            "sequence": row["sequence"],
            "ticket_id": row["ticket_id"],
            "kind": row["kind"],
            "actor": row["actor"],
            "timestamp": row["block_time"],
            "payload": payload or {},
        }


def _ticket_key(ticket_id: str) -> int | None:
    try:
        return int(ticket_id)
    except (TypeError, ValueError):
        return None


def _receipt(ticket_id: str, event: Mapping[str, Any]) -> SubmissionReceipt:
    return SubmissionReceipt(
        accepted=True,
        ticket_id=ticket_id,
        event_ref=f"{event['transaction_ref']}:{event['log_index']}",
        confirmed=True,
    )
