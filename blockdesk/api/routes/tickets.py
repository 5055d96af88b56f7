from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from blockdesk.dependencies.auth import CurrentActor
from blockdesk.dependencies.tickets import ManagerActor, get_ticket_service
from blockdesk.services.content_store import ContentTooLargeError
from blockdesk.tickets.errors import RejectionReason, TicketError
from blockdesk.tickets.events import EventKind
from blockdesk.tickets.models import (
    ActorContext,
    AuditEntry,
    ReconciledTicket,
    ResolvedContent,
    TransitionOutcome,
    TransitionResult,
)
from blockdesk.tickets.policy import permitted_actions
from blockdesk.tickets.service import TicketFilter, TicketService
from blockdesk.tickets.state import TicketAction, TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])

RETRY_AFTER_SECONDS = "2"

_REASON_STATUS = {
    RejectionReason.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    RejectionReason.STALE_STATE: status.HTTP_409_CONFLICT,
    RejectionReason.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    RejectionReason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectionReason.CONTENT_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    RejectionReason.LEDGER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    RejectionReason.INCOMPLETE: status.HTTP_202_ACCEPTED,
}


class TicketCreateRequest(BaseModel):
    title: str = Field(..., min_length=5, max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    attachment: str | None = Field(default=None, description="Inline attachment, e.g. a data URL")


class TransitionRequest(BaseModel):
    action: TicketAction
    assignee: str | None = Field(default=None)


class CommentCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=1000)


class ContentResponse(BaseModel):
    reference: str
    status: str
    text: str


class CommentResponse(BaseModel):
    comment_id: str
    author: str
    content: ContentResponse
    created_at: datetime


class TicketResponse(BaseModel):
    id: str
    state: str
    title: str
    description: ContentResponse | None
    attachment: ContentResponse | None
    status: TicketStatus
    status_label: str
    creator: str
    assignee: str | None
    created_at: datetime
    updated_at: datetime
    comments: list[CommentResponse]
    last_sequence: int
    stale: bool
    actions: list[TicketAction]


class AuditEntryResponse(BaseModel):
    event_id: str
    sequence: int
    kind: EventKind
    actor: str
    actor_label: str
    summary: str
    timestamp: datetime
    transaction_ref: str
    status: TicketStatus | None
    assignee: str | None
    assignee_label: str | None


class TransitionResponse(BaseModel):
    outcome: TransitionOutcome
    action: TicketAction
    ticket_id: str | None
    event_ref: str | None
    ticket: TicketResponse | None = None


class RebuildResponse(BaseModel):
    tickets: int


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]


def _error_detail(reason: RejectionReason, message: str, retryable: bool) -> dict[str, object]:
    return {"reason": reason.value, "message": message, "retryable": retryable}


def _http_error(reason: RejectionReason, message: str, retryable: bool) -> HTTPException:
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if reason is RejectionReason.INCOMPLETE else None
    return HTTPException(
        status_code=_REASON_STATUS.get(reason, status.HTTP_409_CONFLICT),
        detail=_error_detail(reason, message, retryable),
        headers=headers,
    )


def _content_response(content: ResolvedContent | None) -> ContentResponse | None:
    if content is None:
        return None
    return ContentResponse(reference=content.reference, status=content.status.value, text=content.display)


def _to_response(ticket: ReconciledTicket, actor: ActorContext, service: TicketService) -> TicketResponse:
    record = ticket.record
    actions = permitted_actions(
        actor.role,
        record.status,
        is_assignee=actor.address == record.assignee,
        is_creator=actor.address == record.creator,
        allow_self_assign=service.workflow.allow_self_assign,
    )
    return TicketResponse(
        id=record.ticket_id,
        state=record.state.value,
        title=record.title,
        description=_content_response(record.description),
        attachment=_content_response(record.attachment),
        status=record.status,
        status_label=record.status.label,
        creator=record.creator,
        assignee=record.assignee,
        created_at=record.created_at,
        updated_at=record.updated_at,
        comments=[
            CommentResponse(
                comment_id=comment.comment_id,
                author=comment.author,
                content=_content_response(comment.content),
                created_at=comment.created_at,
            )
            for comment in record.comments
        ],
        last_sequence=record.last_sequence,
        stale=ticket.stale,
        actions=sorted((action for action in actions if action is not TicketAction.CREATE), key=lambda a: a.value),
    )


def _to_audit_response(entry: AuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        event_id=entry.event_id,
        sequence=entry.sequence,
        kind=entry.kind,
        actor=entry.actor,
        actor_label=entry.actor_label,
        summary=entry.summary,
        timestamp=entry.timestamp,
        transaction_ref=entry.transaction_ref,
        status=entry.status,
        assignee=entry.assignee,
        assignee_label=entry.assignee_label,
    )


def _to_transition_response(
    result: TransitionResult,
    response: Response,
    actor: ActorContext,
    service: TicketService,
    *,
    success_status: int = status.HTTP_200_OK,
) -> TransitionResponse:
    if result.outcome is TransitionOutcome.REJECTED:
        raise _http_error(result.reason or RejectionReason.INVALID_TRANSITION, result.message, result.retryable)
    response.status_code = (
        status.HTTP_202_ACCEPTED if result.outcome is TransitionOutcome.PENDING else success_status
    )
    ticket = None
    if result.ticket is not None and result.ticket.record.is_complete:
        ticket = _to_response(result.ticket, actor, service)
    return TransitionResponse(
        outcome=result.outcome,
        action=result.action,
        ticket_id=result.ticket_id,
        event_ref=result.event_ref,
        ticket=ticket,
    )


async def _load_ticket(service: TicketService, ticket_id: str) -> ReconciledTicket:
    try:
        return await service.require_ticket(ticket_id)
    except TicketError as exc:
        raise _http_error(exc.reason, str(exc), exc.retryable) from exc


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    service: TicketServiceDep,
    actor: CurrentActor,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    mine: bool = Query(default=False),
    search: str | None = Query(default=None, alias="q", max_length=200),
) -> list[TicketResponse]:
    ticket_filter = TicketFilter(status=status_filter, mine_of=actor.address if mine else None, search=search)
    tickets = await service.list_tickets(ticket_filter)
    return [_to_response(ticket, actor, service) for ticket in tickets]


@router.post("", response_model=TransitionResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    response: Response,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TransitionResponse:
    try:
        result = await service.create_ticket(
            title=payload.title,
            description=payload.description,
            attachment=payload.attachment.encode("utf-8") if payload.attachment else None,
            actor=actor,
        )
    except ContentTooLargeError as exc:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)) from exc
    return _to_transition_response(result, response, actor, service, success_status=status.HTTP_201_CREATED)


@router.post("/rebuild", response_model=RebuildResponse)
async def rebuild_directory(service: TicketServiceDep, _: ManagerActor) -> RebuildResponse:
    try:
        count = await service.rebuild()
    except TicketError as exc:
        raise _http_error(exc.reason, str(exc), exc.retryable) from exc
    return RebuildResponse(tickets=count)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> TicketResponse:
    ticket = await _load_ticket(service, ticket_id)
    return _to_response(ticket, actor, service)


@router.get("/{ticket_id}/audit", response_model=list[AuditEntryResponse])
async def get_ticket_audit(ticket_id: str, service: TicketServiceDep, _: CurrentActor) -> list[AuditEntryResponse]:
    ticket = await _load_ticket(service, ticket_id)
    return [_to_audit_response(entry) for entry in ticket.audit_trail]


@router.post("/{ticket_id}/transitions", response_model=TransitionResponse)
async def request_transition(
    ticket_id: str,
    payload: TransitionRequest,
    response: Response,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TransitionResponse:
    result = await service.request_transition(ticket_id, payload.action, actor, assignee=payload.assignee)
    return _to_transition_response(result, response, actor, service)


@router.post("/{ticket_id}/comments", response_model=TransitionResponse, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    response: Response,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TransitionResponse:
    try:
        result = await service.add_comment(ticket_id, payload.content, actor)
    except ContentTooLargeError as exc:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)) from exc
    return _to_transition_response(result, response, actor, service, success_status=status.HTTP_201_CREATED)


@router.post("/{ticket_id}/content/refresh", response_model=TicketResponse)
async def refresh_ticket_content(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> TicketResponse:
    try:
        ticket = await service.refresh_content(ticket_id)
    except TicketError as exc:
        raise _http_error(exc.reason, str(exc), exc.retryable) from exc
    return _to_response(ticket, actor, service)
