"""Fold ledger events and current ledger state into ticket records.

Events are deduplicated by ``event_id`` and folded in ``(timestamp, sequence)``
order. Title, description and attachment come from the first ``Created``
event; comments are appended in order. Status, assignee, creator and creation
time always come from the authoritative ledger read, never from replaying the
event tail.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import replace
from typing import Iterable, Mapping, MutableMapping, Protocol

from opentelemetry import trace

from blockdesk.metrics import MetricsRegistry, register_default_metrics

from .events import (
    CommentAdded,
    StatusChanged,
    TicketAssigned,
    TicketCreated,
    TicketEvent,
    event_order_key,
    normalise_address,
)
from .models import (
    AuditEntry,
    AuditTrail,
    Comment,
    LedgerTicket,
    ReconciledTicket,
    RecordState,
    ResolvedContent,
    TicketRecord,
)
from .state import TicketStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_STATUS_SUMMARIES = {
    TicketStatus.OPEN: "Reopened",
    TicketStatus.IN_PROGRESS: "Work started",
    TicketStatus.RESOLVED: "Resolved",
    TicketStatus.CLOSED: "Closed",
}


class ContentResolver(Protocol):
    async def resolve(self, reference: str) -> ResolvedContent:
        ...

    def invalidate(self, digest: str) -> None:
        ...


def shorten_address(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


class IdentityLabels:
    """Maps addresses to the human labels shown in audit trails."""

    def __init__(self, labels: Mapping[str, str] | None = None) -> None:
        self._labels: dict[str, str] = {}
        for address, label in (labels or {}).items():
            key = normalise_address(address)
            if key:
                self._labels[key] = label

    def __call__(self, address: str | None) -> str:
        key = normalise_address(address)
        if key is None:
            return "unknown"
        return self._labels.get(key) or shorten_address(key)


class EventReconciler:
    def __init__(
        self,
        content_store: ContentResolver,
        *,
        labeler: IdentityLabels | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._content = content_store
        self._label = labeler or IdentityLabels()
        self._metrics = register_default_metrics(metrics)

    async def reconcile(
        self,
        snapshot: LedgerTicket,
        events: Iterable[TicketEvent],
        *,
        previous: ReconciledTicket | None = None,
    ) -> ReconciledTicket:
        """Build the record and audit trail for one ticket.

        ``events`` may be the full log or only the tail since ``previous`` was
        built; already-seen events are ignored.
        """

        with tracer.start_as_current_span("tickets.reconcile") as span, self._metrics.time_distribution(
            "ticket_reconciliation_duration_seconds"
        ):
            span.set_attribute("ticket.id", snapshot.ticket_id)
            ordered = self._merge(snapshot.ticket_id, previous.events if previous else (), events)
            record = await self._fold(snapshot, ordered, previous)
            audit = AuditTrail(ticket_id=snapshot.ticket_id, entries=tuple(self._audit_entry(e) for e in ordered))
            span.set_attribute("ticket.events", len(ordered))
            span.set_attribute("ticket.state", record.state.value)

        self._metrics.counter("ticket_reconciliations_total").inc(labels={"outcome": record.state.value})
        if not record.is_complete:
            logger.info("Ticket %s has no creation event yet; reconciled as incomplete", snapshot.ticket_id)
        return ReconciledTicket(record=record, audit_trail=audit, events=tuple(ordered))

    async def reconcile_many(
        self,
        snapshots: Iterable[LedgerTicket],
        events: Iterable[TicketEvent],
        *,
        previous: Mapping[str, ReconciledTicket] | None = None,
    ) -> dict[str, ReconciledTicket]:
        """Reconcile several tickets from one interleaved event batch."""

        grouped: MutableMapping[str, list[TicketEvent]] = defaultdict(list)
        for event in events:
            grouped[event.ticket_id].append(event)

        snapshot_list = list(snapshots)
        previous = previous or {}
        results = await asyncio.gather(
            *(
                self.reconcile(snapshot, grouped.get(snapshot.ticket_id, ()), previous=previous.get(snapshot.ticket_id))
                for snapshot in snapshot_list
            )
        )
        return {ticket.ticket_id: ticket for ticket in results}

    async def refresh_content(self, ticket: ReconciledTicket, *, force: bool = False) -> ReconciledTicket:
        """Re-resolve content that was unavailable when the record was built."""

        record = ticket.record
        if not record.has_unresolved_content:
            return ticket

        description, attachment, *comments = await asyncio.gather(
            self._retry(record.description, force),
            self._retry(record.attachment, force),
            *(self._retry(comment.content, force) for comment in record.comments),
        )
        refreshed = replace(
            record,
            description=description,
            attachment=attachment,
            comments=tuple(
                replace(comment, content=content) for comment, content in zip(record.comments, comments)
            ),
        )
        return replace(ticket, record=refreshed)

    def _merge(
        self,
        ticket_id: str,
        known: Iterable[TicketEvent],
        incoming: Iterable[TicketEvent],
    ) -> list[TicketEvent]:
        merged: dict[str, TicketEvent] = {}
        for event in (*known, *incoming):
            if event.ticket_id != ticket_id:
                logger.warning(
                    "Ignoring event %s for ticket %s while reconciling ticket %s",
                    event.event_id,
                    event.ticket_id,
                    ticket_id,
                )
                continue
            merged.setdefault(event.event_id, event)
        return sorted(merged.values(), key=event_order_key)

    async def _fold(
        self,
        snapshot: LedgerTicket,
        ordered: list[TicketEvent],
        previous: ReconciledTicket | None,
    ) -> TicketRecord:
        created: TicketCreated | None = None
        comment_events: list[CommentAdded] = []
        for event in ordered:
            if isinstance(event, TicketCreated):
                if created is None:
                    created = event
            elif isinstance(event, CommentAdded):
                comment_events.append(event)

        references: list[str | None] = [
            created.description_ref if created else None,
            created.attachment_ref if created else None,
            *(event.content_ref for event in comment_events),
        ]
        resolved = await asyncio.gather(*(self._resolve(reference) for reference in references))
        description, attachment, *comment_contents = resolved

        comments = tuple(
            Comment(
                comment_id=event.comment_id,
                author=event.actor,
                content=content,
                created_at=event.timestamp,
            )
            for event, content in zip(comment_events, comment_contents)
        )

        if ordered:
            last_sequence = max(event.sequence for event in ordered)
            updated_at = max(snapshot.created_at, ordered[-1].timestamp)
        else:
            last_sequence = previous.last_sequence if previous else -1
            updated_at = snapshot.created_at

        return TicketRecord(
            ticket_id=snapshot.ticket_id,
            state=RecordState.COMPLETE if created is not None else RecordState.INCOMPLETE,
            title=created.title if created else "",
            description=description,
            attachment=attachment,
            status=snapshot.status,
            creator=snapshot.creator,
            assignee=snapshot.assignee,
            created_at=snapshot.created_at,
            updated_at=updated_at,
            comments=comments,
            last_sequence=last_sequence,
        )

    async def _resolve(self, reference: str | None) -> ResolvedContent | None:
        if not reference:
            return None
        return await self._content.resolve(reference)

    async def _retry(self, content: ResolvedContent | None, force: bool) -> ResolvedContent | None:
        if content is None or content.available:
            return content
        if force:
            self._content.invalidate(content.reference)
        return await self._content.resolve(content.reference)

    def _audit_entry(self, event: TicketEvent) -> AuditEntry:
        status: TicketStatus | None = None
        assignee: str | None = None
        assignee_label: str | None = None

        if isinstance(event, TicketCreated):
            summary = f'Created "{event.title}"' if event.title else "Created"
            status = TicketStatus.OPEN
        elif isinstance(event, TicketAssigned):
            assignee = event.assignee
            assignee_label = self._label(event.assignee)
            summary = f"Assigned to {assignee_label}"
            status = event.status
        elif isinstance(event, StatusChanged):
            summary = _STATUS_SUMMARIES[event.status]
            status = event.status
        else:
            summary = "Comment added"

        return AuditEntry(
            event_id=event.event_id,
            sequence=event.sequence,
            kind=event.kind,
            actor=event.actor,
            actor_label=self._label(event.actor),
            summary=summary,
            timestamp=event.timestamp,
            transaction_ref=event.event_id.rsplit(":", 1)[0],
            status=status,
            assignee=assignee,
            assignee_label=assignee_label,
        )
