from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from blockdesk.metrics import MetricsRegistry, register_default_metrics
from blockdesk.services.content_store import ContentStoreClient, is_digest
from blockdesk.services.ledger import LedgerGateway, SubmissionReceipt

from .directory import TicketDirectory, TicketPredicate
from .errors import (
    LedgerUnavailableError,
    RejectionReason,
    TicketError,
    TicketNotFoundError,
    UnauthorizedError,
)
from .events import normalise_address
from .models import ActorContext, ReconciledTicket, TransitionOutcome, TransitionResult
from .policy import permitted_actions, role_capabilities
from .reconciler import EventReconciler
from .state import TicketAction, TicketStatus
from .workflow import WorkflowEngine, receipt_error

logger = logging.getLogger(__name__)

DEFAULT_INLINE_CONTENT_LIMIT = 256


@dataclass(frozen=True, slots=True)
class TicketFilter:
    """Listing filter: status, tickets involving an address, free-text search."""

    status: TicketStatus | None = None
    mine_of: str | None = None
    search: str | None = None

    def __call__(self, ticket: ReconciledTicket) -> bool:
        record = ticket.record
        if self.status is not None and record.status is not self.status:
            return False
        if self.mine_of:
            address = normalise_address(self.mine_of)
            if address not in (record.creator, record.assignee):
                return False
        if self.search:
            needle = self.search.strip().lower()
            haystack = [record.ticket_id, record.title]
            if record.description is not None and record.description.text is not None:
                haystack.append(record.description.text)
            if not any(needle in value.lower() for value in haystack):
                return False
        return True


class TicketService:
    """Caller-facing operations over the ledger, the content store and the directory."""

    def __init__(
        self,
        ledger: LedgerGateway,
        content_store: ContentStoreClient,
        *,
        directory: TicketDirectory | None = None,
        reconciler: EventReconciler | None = None,
        workflow: WorkflowEngine | None = None,
        inline_content_limit: int = DEFAULT_INLINE_CONTENT_LIMIT,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.ledger = ledger
        self.content_store = content_store
        self.directory = directory or TicketDirectory()
        self.reconciler = reconciler or EventReconciler(content_store)
        self.workflow = workflow or WorkflowEngine(ledger)
        self.inline_content_limit = inline_content_limit
        self._metrics = register_default_metrics(metrics)

    async def create_ticket(
        self,
        *,
        title: str,
        description: str,
        actor: ActorContext,
        attachment: bytes | None = None,
    ) -> TransitionResult:
        if TicketAction.CREATE not in role_capabilities(actor.role):
            error = UnauthorizedError(f"Role {actor.role!r} may not create tickets")
            logger.info("Rejected ticket creation by %s: %s", actor.address, error)
            return TransitionResult.rejected(TicketAction.CREATE, None, error)

        try:
            description_ref = await self._store_text(description)
            attachment_ref = await self.content_store.put(attachment) if attachment else None
            receipt = await self.ledger.create_ticket(
                title=title,
                description_ref=description_ref,
                attachment_ref=attachment_ref,
                creator=actor.address,
            )
        except TicketError as exc:
            logger.warning("Ticket creation by %s failed: %s", actor.address, exc)
            return TransitionResult.rejected(TicketAction.CREATE, None, exc)

        return await self._finish_write(TicketAction.CREATE, receipt)

    async def list_tickets(self, predicate: TicketPredicate | None = None) -> list[ReconciledTicket]:
        return self.directory.list(predicate)

    async def get_ticket(self, ticket_id: str) -> ReconciledTicket:
        """Return the freshest record available, syncing with the ledger first."""

        return await self.sync_ticket(ticket_id)

    async def require_ticket(self, ticket_id: str) -> ReconciledTicket:
        return (await self.get_ticket(ticket_id)).require_complete()

    async def sync_ticket(self, ticket_id: str) -> ReconciledTicket:
        cached = self.directory.get(ticket_id)
        try:
            snapshot = await self.ledger.read_ticket(ticket_id)
            if snapshot is None:
                self.directory.remove(ticket_id)
                raise TicketNotFoundError(f"Ticket {ticket_id} not found")
            # Full log on every pass: a backfilled event may carry a sequence below
            # the newest one already folded, and dedupe makes the replay a no-op.
            events = await self.ledger.read_events(ticket_id)
            previous = cached if cached is not None and cached.record.is_complete else None
        except LedgerUnavailableError as exc:
            if cached is None:
                raise
            logger.warning("Ledger unavailable, serving cached ticket %s: %s", ticket_id, exc)
            self._metrics.counter("ticket_reconciliations_total").inc(labels={"outcome": "stale"})
            return replace(cached, stale=True)

        reconciled = await self.reconciler.reconcile(snapshot, events, previous=previous)
        if not self.directory.upsert(ticket_id, reconciled):
            current = self.directory.get(ticket_id)
            if current is not None:
                return current
        return reconciled

    async def request_transition(
        self,
        ticket_id: str,
        action: TicketAction,
        actor: ActorContext,
        *,
        assignee: str | None = None,
    ) -> TransitionResult:
        try:
            ticket = await self.get_ticket(ticket_id)
        except TicketError as exc:
            return self._reject_before_write(action, ticket_id, exc)

        result = await self.workflow.submit(ticket.record, action, actor, assignee=assignee)
        if result.reason is RejectionReason.STALE_STATE:
            refreshed = await self._try_sync(ticket_id)
            return result.with_ticket(refreshed)
        if result.outcome is TransitionOutcome.REJECTED:
            return result.with_ticket(ticket)
        return result.with_ticket(await self._try_sync(ticket_id))

    async def add_comment(self, ticket_id: str, content: str, actor: ActorContext) -> TransitionResult:
        try:
            ticket = await self.get_ticket(ticket_id)
            record = ticket.record
            address = normalise_address(actor.address)
            allowed = permitted_actions(
                actor.role,
                record.status,
                is_assignee=address is not None and address == record.assignee,
                is_creator=address is not None and address == record.creator,
                allow_self_assign=self.workflow.allow_self_assign,
            )
            if TicketAction.COMMENT not in allowed:
                raise UnauthorizedError(f"{actor.role} {actor.address} may not comment on ticket {ticket_id}")
            content_ref = await self.content_store.put(content)
            receipt = await self.ledger.append_comment(ticket_id, content_ref, author=actor.address)
        except TicketError as exc:
            return self._reject_before_write(TicketAction.COMMENT, ticket_id, exc)

        return await self._finish_write(TicketAction.COMMENT, receipt)

    async def refresh_content(self, ticket_id: str) -> ReconciledTicket:
        """Retry resolution of content that was unavailable, bypassing the miss cache."""

        ticket = self.directory.get(ticket_id) or await self.sync_ticket(ticket_id)
        refreshed = await self.reconciler.refresh_content(ticket, force=True)
        if refreshed is not ticket:
            self.directory.upsert(ticket_id, refreshed)
        return refreshed

    async def rebuild(self) -> int:
        """Drop the directory and rebuild it from the ledger; returns the ticket count."""

        ticket_ids = await self.ledger.list_ticket_ids()
        self.directory.clear()
        rebuilt = 0
        for ticket_id in ticket_ids:
            try:
                await self.sync_ticket(ticket_id)
            except TicketNotFoundError:
                continue
            rebuilt += 1
        logger.info("Rebuilt ticket directory with %d tickets", rebuilt)
        return rebuilt

    async def _store_text(self, text: str) -> str:
        encoded = text.encode("utf-8")
        if len(encoded) <= self.inline_content_limit and not is_digest(text):
            return text
        return await self.content_store.put(encoded)

    async def _finish_write(self, action: TicketAction, receipt: SubmissionReceipt) -> TransitionResult:
        if not receipt.accepted:
            return self._reject_before_write(
                action, receipt.ticket_id, receipt_error(action, receipt.ticket_id, receipt)
            )

        ticket_id = receipt.ticket_id or ""
        if not receipt.confirmed:
            return TransitionResult.pending(action, ticket_id, receipt.event_ref)
        result = TransitionResult.accepted(action, ticket_id, receipt.event_ref)
        return result.with_ticket(await self._try_sync(ticket_id))

    async def _try_sync(self, ticket_id: str) -> ReconciledTicket | None:
        try:
            return await self.sync_ticket(ticket_id)
        except TicketError as exc:
            logger.warning("Could not refresh ticket %s after write: %s", ticket_id, exc)
            return self.directory.get(ticket_id)

    def _reject_before_write(
        self, action: TicketAction, ticket_id: str | None, error: TicketError
    ) -> TransitionResult:
        if isinstance(error, LedgerUnavailableError):
            logger.error("Ledger unavailable during %s of ticket %s: %s", action.value, ticket_id, error)
        else:
            logger.info("Rejected %s for ticket %s (%s): %s", action.value, ticket_id, error.reason.value, error)
        return TransitionResult.rejected(action, ticket_id, error)
