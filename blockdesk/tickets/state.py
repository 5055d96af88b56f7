from __future__ import annotations

from enum import Enum
from typing import Mapping

from .errors import InvalidTransitionError


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @classmethod
    def from_index(cls, index: int) -> "TicketStatus":
        """Decode the integer status used by the ledger."""

        try:
            position = int(index)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Unknown ledger status index: {index!r}") from exc
        if not 0 <= position < len(_STATUS_ORDER):
            raise ValueError(f"Unknown ledger status index: {index!r}")
        return _STATUS_ORDER[position]

    @property
    def index(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]


_STATUS_ORDER: tuple[TicketStatus, ...] = (
    TicketStatus.OPEN,
    TicketStatus.IN_PROGRESS,
    TicketStatus.RESOLVED,
    TicketStatus.CLOSED,
)

_STATUS_LABELS: Mapping[TicketStatus, str] = {
    TicketStatus.OPEN: "Open",
    TicketStatus.IN_PROGRESS: "In-Progress",
    TicketStatus.RESOLVED: "Resolved",
    TicketStatus.CLOSED: "Closed",
}


class TicketAction(str, Enum):
    """Actions an actor may request against a ticket."""

    CREATE = "create"
    COMMENT = "comment"
    ASSIGN = "assign"
    REASSIGN = "reassign"
    RESOLVE = "resolve"
    CLOSE = "close"
    REOPEN = "reopen"

    @property
    def is_transition(self) -> bool:
        return self in TRANSITION_ACTIONS

    @property
    def sets_assignee(self) -> bool:
        return self in (TicketAction.ASSIGN, TicketAction.REASSIGN)

    @property
    def clears_assignee(self) -> bool:
        return self is TicketAction.REOPEN


TRANSITION_ACTIONS: frozenset[TicketAction] = frozenset(
    {
        TicketAction.ASSIGN,
        TicketAction.REASSIGN,
        TicketAction.RESOLVE,
        TicketAction.CLOSE,
        TicketAction.REOPEN,
    }
)


class TicketStateMachine:
    """Validate ticket lifecycle transitions."""

    _TRANSITIONS: Mapping[tuple[TicketStatus, TicketAction], TicketStatus] = {
        (TicketStatus.OPEN, TicketAction.ASSIGN): TicketStatus.IN_PROGRESS,
        (TicketStatus.IN_PROGRESS, TicketAction.REASSIGN): TicketStatus.IN_PROGRESS,
        (TicketStatus.IN_PROGRESS, TicketAction.RESOLVE): TicketStatus.RESOLVED,
        (TicketStatus.RESOLVED, TicketAction.CLOSE): TicketStatus.CLOSED,
        (TicketStatus.CLOSED, TicketAction.REOPEN): TicketStatus.OPEN,
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        # Closed ends the workflow but still admits a reopen.
        return status is TicketStatus.CLOSED

    @classmethod
    def can_transition(cls, current: TicketStatus, action: TicketAction) -> bool:
        return (current, action) in cls._TRANSITIONS

    @classmethod
    def target(cls, current: TicketStatus, action: TicketAction) -> TicketStatus:
        try:
            return cls._TRANSITIONS[(current, action)]
        except KeyError as exc:
            raise InvalidTransitionError(
                f"Cannot {action.value} a ticket that is {current.label}"
            ) from exc

    @classmethod
    def assert_transition(cls, current: TicketStatus, action: TicketAction) -> None:
        cls.target(current, action)

    @classmethod
    def transitions(cls) -> Mapping[tuple[TicketStatus, TicketAction], TicketStatus]:
        return dict(cls._TRANSITIONS)
