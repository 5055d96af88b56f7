from __future__ import annotations

import logging
from threading import Lock
from typing import Callable, MutableMapping

from blockdesk.metrics import MetricsRegistry, register_default_metrics

from .models import ReconciledTicket

logger = logging.getLogger(__name__)

TicketPredicate = Callable[[ReconciledTicket], bool]


class TicketDirectory:
    """In-memory index of the latest reconciled record per ticket.

    The directory is a pure cache: it can be cleared and rebuilt from the
    ledger and the content store at any time. Entries are only ever replaced
    wholesale, and a reconciliation whose newest event is older than the one
    already stored is discarded.
    """

    def __init__(self, *, metrics: MetricsRegistry | None = None) -> None:
        self._entries: MutableMapping[str, ReconciledTicket] = {}
        self._lock = Lock()
        self._metrics = register_default_metrics(metrics)

    def upsert(self, ticket_id: str, ticket: ReconciledTicket) -> bool:
        if ticket.ticket_id != ticket_id:
            raise ValueError(f"Record for {ticket.ticket_id} cannot be stored under {ticket_id}")

        with self._lock:
            current = self._entries.get(ticket_id)
            if current is not None and ticket.last_sequence < current.last_sequence:
                applied = False
            else:
                self._entries[ticket_id] = ticket
                applied = True

        if not applied:
            logger.debug(
                "Discarded reconciliation of ticket %s at sequence %d (stored %d)",
                ticket_id,
                ticket.last_sequence,
                current.last_sequence if current is not None else -1,
            )
        self._metrics.counter("ticket_directory_upserts_total").inc(
            labels={"result": "applied" if applied else "discarded"}
        )
        return applied

    def get(self, ticket_id: str) -> ReconciledTicket | None:
        with self._lock:
            return self._entries.get(ticket_id)

    def list(self, predicate: TicketPredicate | None = None) -> list[ReconciledTicket]:
        with self._lock:
            entries = list(self._entries.values())
        if predicate is not None:
            entries = [entry for entry in entries if predicate(entry)]
        entries.sort(key=lambda entry: (entry.record.created_at, entry.ticket_id), reverse=True)
        return entries

    def remove(self, ticket_id: str) -> bool:
        with self._lock:
            return self._entries.pop(ticket_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, ticket_id: object) -> bool:
        with self._lock:
            return ticket_id in self._entries
