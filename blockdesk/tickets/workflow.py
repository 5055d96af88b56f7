from __future__ import annotations

import logging
from typing import Any, Mapping

from opentelemetry import trace

from blockdesk.metrics import MetricsRegistry, register_default_metrics
from blockdesk.services.ledger import LedgerGateway, SubmissionReceipt

from .errors import (
    InvalidTransitionError,
    LedgerUnavailableError,
    RejectionReason,
    StaleStateError,
    TicketError,
    TicketNotFoundError,
    UnauthorizedError,
)
from .events import normalise_address
from .models import ActorContext, TicketRecord, TransitionResult
from .policy import Role, permitted_actions, role_capabilities
from .state import TicketAction, TicketStateMachine

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_RECEIPT_ERRORS: Mapping[RejectionReason, type[TicketError]] = {
    RejectionReason.STALE_STATE: StaleStateError,
    RejectionReason.NOT_FOUND: TicketNotFoundError,
    RejectionReason.INVALID_TRANSITION: InvalidTransitionError,
    RejectionReason.UNAUTHORIZED: UnauthorizedError,
    RejectionReason.LEDGER_UNAVAILABLE: LedgerUnavailableError,
}


def receipt_error(action: TicketAction, ticket_id: str | None, receipt: SubmissionReceipt) -> TicketError:
    """Translate a rejected ledger receipt into the matching ticket error."""

    reason = receipt.rejection or RejectionReason.INVALID_TRANSITION
    error_type = _RECEIPT_ERRORS.get(reason, InvalidTransitionError)
    return error_type(receipt.message or f"Ledger rejected {action.value} for ticket {ticket_id}")


class WorkflowEngine:
    """Validates ticket actions and submits accepted transitions to the ledger.

    Checks run in a fixed order: first whether the role could ever perform
    the action (``Unauthorized``), then whether the state table has an edge
    for it (``InvalidTransition``), then the state-dependent guards such as
    being the assignee (``Unauthorized``). The ledger write is conditioned on
    the status the caller's record shows, so a stale view comes back as
    ``StaleState``.
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        *,
        allow_self_assign: bool = True,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._ledger = ledger
        self.allow_self_assign = allow_self_assign
        self._metrics = register_default_metrics(metrics)

    def evaluate(
        self,
        record: TicketRecord,
        action: TicketAction,
        actor: ActorContext,
        *,
        assignee: str | None = None,
    ) -> dict[str, Any]:
        """Check ``action`` against policy and the state table.

        Returns the ledger parameters for the action; raises a
        :class:`TicketError` subclass when the action must be rejected.
        """

        role = Role.parse(actor.role)
        if action not in role_capabilities(role, allow_self_assign=self.allow_self_assign):
            raise UnauthorizedError(f"Role {actor.role!r} may not {action.value} tickets")

        if action.is_transition:
            TicketStateMachine.assert_transition(record.status, action)

        address = normalise_address(actor.address)
        allowed = permitted_actions(
            role,
            record.status,
            is_assignee=address is not None and address == record.assignee,
            is_creator=address is not None and address == record.creator,
            allow_self_assign=self.allow_self_assign,
        )
        if action not in allowed:
            raise UnauthorizedError(
                f"{actor.role} {actor.address} may not {action.value} ticket {record.ticket_id}"
            )

        params: dict[str, Any] = {}
        if action.sets_assignee:
            target = normalise_address(assignee)
            if target is None and role is Role.AGENT:
                target = address
            if target is None:
                raise InvalidTransitionError(f"{action.value} requires an assignee")
            if role is Role.AGENT and target != address:
                raise UnauthorizedError("Agents may only assign tickets to themselves")
            params["assignee"] = target
        return params

    async def submit(
        self,
        record: TicketRecord,
        action: TicketAction,
        actor: ActorContext,
        *,
        assignee: str | None = None,
    ) -> TransitionResult:
        with tracer.start_as_current_span("tickets.transition") as span:
            span.set_attribute("ticket.id", record.ticket_id)
            span.set_attribute("ticket.action", action.value)
            span.set_attribute("ticket.expected_status", record.status.value)
            try:
                if not action.is_transition:
                    raise InvalidTransitionError(f"{action.value} is not a status transition")
                params = self.evaluate(record, action, actor, assignee=assignee)
                receipt = await self._ledger.submit_transition(
                    record.ticket_id,
                    action,
                    params,
                    record.status,
                    actor=normalise_address(actor.address) or "",
                )
                result = self._from_receipt(action, record.ticket_id, receipt)
            except TicketError as exc:
                result = self._reject(action, record.ticket_id, exc)
            span.set_attribute("ticket.outcome", result.outcome.value)

        self._metrics.counter("ticket_transitions_total").inc(
            labels={"action": action.value, "outcome": result.outcome.value}
        )
        return result

    def _from_receipt(self, action: TicketAction, ticket_id: str, receipt: SubmissionReceipt) -> TransitionResult:
        if not receipt.accepted:
            raise receipt_error(action, ticket_id, receipt)
        if not receipt.confirmed:
            logger.info("Transition %s of ticket %s submitted, awaiting confirmation", action.value, ticket_id)
            return TransitionResult.pending(action, ticket_id, receipt.event_ref)
        logger.info("Transition %s of ticket %s accepted as %s", action.value, ticket_id, receipt.event_ref)
        return TransitionResult.accepted(action, ticket_id, receipt.event_ref)

    def _reject(self, action: TicketAction, ticket_id: str, error: TicketError) -> TransitionResult:
        if isinstance(error, LedgerUnavailableError):
            logger.error("Ledger unavailable while submitting %s for ticket %s: %s", action.value, ticket_id, error)
        else:
            logger.info("Rejected %s for ticket %s (%s): %s", action.value, ticket_id, error.reason.value, error)
        self._metrics.counter("ticket_transition_rejections_total").inc(labels={"reason": error.reason.value})
        return TransitionResult.rejected(action, ticket_id, error)
