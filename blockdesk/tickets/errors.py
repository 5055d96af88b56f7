"""Error taxonomy shared by the ticket core."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar


class RejectionReason(str, Enum):
    """Machine readable reason attached to every rejected request."""

    INVALID_TRANSITION = "invalid_transition"
    UNAUTHORIZED = "unauthorized"
    STALE_STATE = "stale_state"
    CONTENT_UNAVAILABLE = "content_unavailable"
    INCOMPLETE = "incomplete"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    NOT_FOUND = "not_found"


class TicketError(RuntimeError):
    """Base error for ticket lifecycle issues."""

    reason: ClassVar[RejectionReason]
    retryable: ClassVar[bool] = False


class InvalidTransitionError(TicketError):
    """Raised when no edge of the state table matches the request."""

    reason = RejectionReason.INVALID_TRANSITION


class UnauthorizedError(TicketError):
    """Raised when the actor's role or assignment does not satisfy the guard."""

    reason = RejectionReason.UNAUTHORIZED


class StaleStateError(TicketError):
    """Raised when the caller's expected status no longer matches the ledger."""

    reason = RejectionReason.STALE_STATE
    retryable = True


class ContentUnavailableError(TicketError):
    """Raised when a content digest cannot be resolved or stored right now."""

    reason = RejectionReason.CONTENT_UNAVAILABLE
    retryable = True


class IncompleteRecordError(TicketError):
    """Raised when a ticket exists but its creation event has not been seen yet."""

    reason = RejectionReason.INCOMPLETE
    retryable = True


class LedgerUnavailableError(TicketError):
    """Raised when the ledger gateway cannot be reached."""

    reason = RejectionReason.LEDGER_UNAVAILABLE
    retryable = True


class TicketNotFoundError(TicketError):
    """Raised when an operation targets a non-existent ticket."""

    reason = RejectionReason.NOT_FOUND
