"""Ticket lifecycle domain: states, events, records and access policy."""

from .errors import RejectionReason, TicketError
from .models import ActorContext, ReconciledTicket, TicketRecord, TransitionOutcome, TransitionResult
from .policy import Role, permitted_actions
from .state import TicketAction, TicketStateMachine, TicketStatus

__all__ = [
    "ActorContext",
    "ReconciledTicket",
    "RejectionReason",
    "Role",
    "TicketAction",
    "TicketError",
    "TicketRecord",
    "TicketStateMachine",
    "TicketStatus",
    "TransitionOutcome",
    "TransitionResult",
    "permitted_actions",
]
