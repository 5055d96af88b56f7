"""Role based access policy for ticket actions.

Everything here is a pure function of its inputs: no I/O, no ambient state.
Unrecognised roles fail closed and receive an empty action set.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping

from .state import TicketAction, TicketStatus


class Role(str, Enum):
    """Supported roles."""

    USER = "user"
    AGENT = "agent"
    MANAGER = "manager"

    @classmethod
    def parse(cls, value: "Role | str | None") -> "Role | None":
        if isinstance(value, Role):
            return value
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


_MANAGER_TRANSITIONS: Mapping[TicketStatus, frozenset[TicketAction]] = {
    TicketStatus.OPEN: frozenset({TicketAction.ASSIGN}),
    TicketStatus.IN_PROGRESS: frozenset({TicketAction.REASSIGN, TicketAction.RESOLVE}),
    TicketStatus.RESOLVED: frozenset({TicketAction.CLOSE}),
    TicketStatus.CLOSED: frozenset({TicketAction.REOPEN}),
}


def role_capabilities(role: Role | str | None, *, allow_self_assign: bool = True) -> frozenset[TicketAction]:
    """Return every action the role could ever request, ignoring ticket state."""

    parsed = Role.parse(role)
    if parsed is Role.MANAGER:
        return frozenset(TicketAction)
    if parsed is Role.AGENT:
        actions = {TicketAction.CREATE, TicketAction.COMMENT, TicketAction.RESOLVE}
        if allow_self_assign:
            actions.add(TicketAction.ASSIGN)
        return frozenset(actions)
    if parsed is Role.USER:
        return frozenset({TicketAction.CREATE, TicketAction.COMMENT})
    return frozenset()


def permitted_actions(
    role: Role | str | None,
    ticket_status: TicketStatus,
    is_assignee: bool,
    is_creator: bool,
    *,
    allow_self_assign: bool = True,
) -> frozenset[TicketAction]:
    """Return exactly the actions the role may request against a ticket in this state."""

    parsed = Role.parse(role)
    if parsed is None:
        return frozenset()

    allowed: set[TicketAction] = {TicketAction.CREATE}

    if parsed is Role.MANAGER:
        allowed.add(TicketAction.COMMENT)
        allowed.update(_MANAGER_TRANSITIONS.get(ticket_status, frozenset()))
    elif parsed is Role.AGENT:
        allowed.add(TicketAction.COMMENT)
        if ticket_status is TicketStatus.OPEN and allow_self_assign:
            allowed.add(TicketAction.ASSIGN)
        if ticket_status is TicketStatus.IN_PROGRESS and is_assignee:
            allowed.add(TicketAction.RESOLVE)
    elif is_creator:
        allowed.add(TicketAction.COMMENT)

    return frozenset(allowed)
