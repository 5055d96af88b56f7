from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from .errors import IncompleteRecordError, RejectionReason, TicketError
from .events import EventKind, TicketEvent
from .state import TicketAction, TicketStatus

CONTENT_PLACEHOLDER = "[content unavailable]"


@dataclass(frozen=True, slots=True)
class LedgerTicket:
    """Authoritative current values read from the ledger."""

    ticket_id: str
    status: TicketStatus
    creator: str
    assignee: str | None
    created_at: datetime


@dataclass(frozen=True, slots=True)
class ActorContext:
    """Identity and role supplied by the session layer for a single request."""

    address: str
    role: str


class ContentStatus(str, Enum):
    INLINE = "inline"
    RESOLVED = "resolved"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class ResolvedContent:
    """A content reference together with whatever bytes could be resolved."""

    reference: str
    status: ContentStatus
    data: bytes | None = None

    @property
    def available(self) -> bool:
        return self.status is not ContentStatus.UNAVAILABLE

    @property
    def text(self) -> str | None:
        if self.data is None:
            return None
        return self.data.decode("utf-8", errors="replace")

    @property
    def display(self) -> str:
        text = self.text
        return text if text is not None else CONTENT_PLACEHOLDER


@dataclass(frozen=True, slots=True)
class Comment:
    comment_id: str
    author: str
    content: ResolvedContent
    created_at: datetime


class RecordState(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True, slots=True)
class TicketRecord:
    """Materialized view of a ticket derived from ledger state and events."""

    ticket_id: str
    state: RecordState
    title: str
    description: ResolvedContent | None
    attachment: ResolvedContent | None
    status: TicketStatus
    creator: str
    assignee: str | None
    created_at: datetime
    updated_at: datetime
    comments: tuple[Comment, ...] = ()
    last_sequence: int = -1

    @property
    def is_complete(self) -> bool:
        return self.state is RecordState.COMPLETE

    @property
    def has_unresolved_content(self) -> bool:
        contents = [self.description, self.attachment, *(comment.content for comment in self.comments)]
        return any(item is not None and not item.available for item in contents)


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """Human readable history entry describing a single ledger event."""

    event_id: str
    sequence: int
    kind: EventKind
    actor: str
    actor_label: str
    summary: str
    timestamp: datetime
    transaction_ref: str
    status: TicketStatus | None = None
    assignee: str | None = None
    assignee_label: str | None = None


@dataclass(frozen=True, slots=True)
class AuditTrail:
    ticket_id: str
    entries: tuple[AuditEntry, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


@dataclass(frozen=True, slots=True)
class ReconciledTicket:
    """Directory entry bundling the record, its audit trail and the folded events."""

    record: TicketRecord
    audit_trail: AuditTrail
    events: tuple[TicketEvent, ...] = ()
    stale: bool = False

    @property
    def ticket_id(self) -> str:
        return self.record.ticket_id

    @property
    def last_sequence(self) -> int:
        return self.record.last_sequence

    def require_complete(self) -> "ReconciledTicket":
        if not self.record.is_complete:
            raise IncompleteRecordError(
                f"Ticket {self.ticket_id} is waiting for its creation event to be backfilled"
            )
        return self


class TransitionOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PENDING = "pending"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Typed outcome of a write request submitted through the core."""

    outcome: TransitionOutcome
    action: TicketAction
    ticket_id: str | None
    event_ref: str | None = None
    reason: RejectionReason | None = None
    message: str = ""
    retryable: bool = False
    ticket: ReconciledTicket | None = field(default=None, compare=False)

    @classmethod
    def accepted(cls, action: TicketAction, ticket_id: str, event_ref: str | None) -> "TransitionResult":
        return cls(outcome=TransitionOutcome.ACCEPTED, action=action, ticket_id=ticket_id, event_ref=event_ref)

    @classmethod
    def pending(cls, action: TicketAction, ticket_id: str, event_ref: str | None) -> "TransitionResult":
        return cls(outcome=TransitionOutcome.PENDING, action=action, ticket_id=ticket_id, event_ref=event_ref)

    @classmethod
    def rejected(cls, action: TicketAction, ticket_id: str | None, error: TicketError) -> "TransitionResult":
        return cls(
            outcome=TransitionOutcome.REJECTED,
            action=action,
            ticket_id=ticket_id,
            reason=error.reason,
            message=str(error),
            retryable=error.retryable,
        )

    @property
    def ok(self) -> bool:
        return self.outcome is not TransitionOutcome.REJECTED

    def with_ticket(self, ticket: ReconciledTicket | None) -> "TransitionResult":
        return replace(self, ticket=ticket)
