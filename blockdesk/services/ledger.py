"""Ledger gateway boundary and an in-process ledger implementation.

The ledger owns canonical ticket state and the append-only event log. Writes
are conditioned on the status the caller expects the ticket to be in; a
mismatch is reported back instead of being applied.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, MutableMapping, Protocol, Sequence

from blockdesk.tickets.errors import InvalidTransitionError, LedgerUnavailableError, RejectionReason
from blockdesk.tickets.events import EventKind, TicketEvent, decode_events, normalise_address
from blockdesk.tickets.models import LedgerTicket
from blockdesk.tickets.state import TicketAction, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubmissionReceipt:
    """Result of a write submitted to the ledger."""

    accepted: bool
    ticket_id: str | None = None
    event_ref: str | None = None
    confirmed: bool = True
    rejection: RejectionReason | None = None
    message: str = ""

    @classmethod
    def rejected(cls, ticket_id: str | None, rejection: RejectionReason, message: str) -> "SubmissionReceipt":
        return cls(accepted=False, ticket_id=ticket_id, confirmed=True, rejection=rejection, message=message)


class LedgerGateway(Protocol):
    async def read_ticket(self, ticket_id: str) -> LedgerTicket | None:
        ...

    async def read_events(self, ticket_id: str, since_sequence: int | None = None) -> list[TicketEvent]:
        ...

    async def list_ticket_ids(self) -> list[str]:
        ...

    async def submit_transition(
        self,
        ticket_id: str,
        action: TicketAction,
        params: Mapping[str, Any],
        expected_status: TicketStatus,
        *,
        actor: str,
    ) -> SubmissionReceipt:
        ...

    async def create_ticket(
        self,
        *,
        title: str,
        description_ref: str,
        attachment_ref: str | None,
        creator: str,
    ) -> SubmissionReceipt:
        ...

    async def append_comment(self, ticket_id: str, content_ref: str, *, author: str) -> SubmissionReceipt:
        ...

    async def close(self) -> None:
        ...


def transaction_ref_for(*parts: Any) -> str:
    seed = ":".join(str(part) for part in parts).encode("utf-8")
    return "0x" + hashlib.sha256(seed).hexdigest()


def apply_transition(
    current: TicketStatus,
    assignee: str | None,
    action: TicketAction,
    params: Mapping[str, Any],
) -> tuple[TicketStatus, str | None]:
    """Compute the status and assignee a ledger write produces."""

    target = TicketStateMachine.target(current, action)
    if action.sets_assignee:
        new_assignee = normalise_address(params.get("assignee"))
        if new_assignee is None:
            raise ValueError(f"{action.value} requires an assignee")
        return target, new_assignee
    if action.clears_assignee:
        return target, None
    return target, assignee


@dataclass(slots=True)
class _LedgerRow:
    ticket_id: str
    status: TicketStatus
    creator: str
    assignee: str | None
    created_at: datetime
    comment_count: int = 0


class InMemoryLedger:
    """Process-local ledger with conditional writes and optional deferred confirmation.

    With ``auto_confirm`` disabled, writes update ticket state immediately but
    their events are held back until :meth:`confirm_pending` is called, the way
    a transaction is visible to state reads before its logs are indexed.
    """

    def __init__(
        self,
        *,
        auto_confirm: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rows: MutableMapping[str, _LedgerRow] = {}
        self._log: list[dict[str, Any]] = []
        self._pending: list[dict[str, Any]] = []
        self._next_ticket = 1
        self._next_sequence = 0
        self._lock = asyncio.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.auto_confirm = auto_confirm
        self.available = True

    def _ensure_available(self) -> None:
        if not self.available:
            raise LedgerUnavailableError("Ledger is not reachable")

    async def read_ticket(self, ticket_id: str) -> LedgerTicket | None:
        self._ensure_available()
        row = self._rows.get(ticket_id)
        if row is None:
            return None
        return LedgerTicket(
            ticket_id=row.ticket_id,
            status=row.status,
            creator=row.creator,
            assignee=row.assignee,
            created_at=row.created_at,
        )

    async def read_events(self, ticket_id: str, since_sequence: int | None = None) -> list[TicketEvent]:
        self._ensure_available()
        raws = [
            raw
            for raw in self._log
            if raw["ticket_id"] == ticket_id and (since_sequence is None or raw["sequence"] > since_sequence)
        ]
        return decode_events(raws)

    async def list_ticket_ids(self) -> list[str]:
        self._ensure_available()
        return list(self._rows)

    async def submit_transition(
        self,
        ticket_id: str,
        action: TicketAction,
        params: Mapping[str, Any],
        expected_status: TicketStatus,
        *,
        actor: str,
    ) -> SubmissionReceipt:
        self._ensure_available()
        async with self._lock:
            row = self._rows.get(ticket_id)
            if row is None:
                return SubmissionReceipt.rejected(ticket_id, RejectionReason.NOT_FOUND, f"Ticket {ticket_id} not found")
            if row.status is not expected_status:
                return SubmissionReceipt.rejected(
                    ticket_id,
                    RejectionReason.STALE_STATE,
                    f"Ticket {ticket_id} is {row.status.label}, expected {expected_status.label}",
                )
            try:
                status, assignee = apply_transition(row.status, row.assignee, action, params)
            except (InvalidTransitionError, ValueError) as exc:
                return SubmissionReceipt.rejected(ticket_id, RejectionReason.INVALID_TRANSITION, str(exc))

            row.status = status
            row.assignee = assignee
            if action.sets_assignee:
                kind, payload = EventKind.ASSIGNED, {"assignee": assignee, "status": status.index}
            else:
                kind, payload = EventKind.STATUS_CHANGED, {"status": status.index}
            raw = self._append(ticket_id, kind, actor, payload)
        return self._receipt(ticket_id, raw)

    async def create_ticket(
        self,
        *,
        title: str,
        description_ref: str,
        attachment_ref: str | None,
        creator: str,
    ) -> SubmissionReceipt:
        self._ensure_available()
        async with self._lock:
            ticket_id = str(self._next_ticket)
            self._next_ticket += 1
            self._rows[ticket_id] = _LedgerRow(
                ticket_id=ticket_id,
                status=TicketStateMachine.initial_state(),
                creator=normalise_address(creator) or "",
                assignee=None,
                created_at=self._clock(),
            )
            raw = self._append(
                ticket_id,
                EventKind.CREATED,
                creator,
                {"title": title, "description_ref": description_ref, "attachment_ref": attachment_ref or ""},
            )
        return self._receipt(ticket_id, raw)

    async def append_comment(self, ticket_id: str, content_ref: str, *, author: str) -> SubmissionReceipt:
        self._ensure_available()
        async with self._lock:
            row = self._rows.get(ticket_id)
            if row is None:
                return SubmissionReceipt.rejected(ticket_id, RejectionReason.NOT_FOUND, f"Ticket {ticket_id} not found")
            row.comment_count += 1
            raw = self._append(
                ticket_id,
                EventKind.COMMENT_ADDED,
                author,
                {"comment_id": f"{ticket_id}-{row.comment_count}", "content_ref": content_ref},
            )
        return self._receipt(ticket_id, raw)

    async def confirm_pending(self) -> int:
        """Publish held-back events; returns how many were released."""

        async with self._lock:
            released = len(self._pending)
            self._log.extend(self._pending)
            self._pending.clear()
        return released

    def inject_events(self, raws: Sequence[Mapping[str, Any]]) -> None:
        """Append raw log entries as delivered by another writer (backfill, replays)."""

        for raw in raws:
            self._log.append(dict(raw))

    def seed_ticket(
        self,
        ticket_id: str,
        *,
        creator: str,
        status: TicketStatus = TicketStatus.OPEN,
        assignee: str | None = None,
        created_at: datetime | None = None,
    ) -> None:
        """Register ticket state without emitting events, as if the log lagged behind."""

        self._rows[ticket_id] = _LedgerRow(
            ticket_id=ticket_id,
            status=status,
            creator=normalise_address(creator) or "",
            assignee=normalise_address(assignee),
            created_at=created_at or self._clock(),
        )

    async def close(self) -> None:
        return None

    def _append(self, ticket_id: str, kind: EventKind, actor: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        sequence = self._next_sequence
        self._next_sequence += 1
        raw = {
            "transaction_ref": transaction_ref_for(sequence, ticket_id, kind.value),
            "log_index": 0,
            "sequence": sequence,
            "ticket_id": ticket_id,
            "kind": kind.value,
            "actor": actor,
            "timestamp": self._clock(),
            "payload": dict(payload),
        }
        if self.auto_confirm:
            self._log.append(raw)
        else:
            self._pending.append(raw)
        return raw

    def _receipt(self, ticket_id: str, raw: Mapping[str, Any]) -> SubmissionReceipt:
        event_ref = f"{raw['transaction_ref']}:{raw['log_index']}"
        logger.debug("Ledger accepted %s for ticket %s as %s", raw["kind"], ticket_id, event_ref)
        return SubmissionReceipt(
            accepted=True,
            ticket_id=ticket_id,
            event_ref=event_ref,
            confirmed=self.auto_confirm,
        )
