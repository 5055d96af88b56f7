from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from blockdesk.dependencies.auth import role_required
from blockdesk.services.content_store import ContentStoreClient
from blockdesk.tickets.models import ActorContext
from blockdesk.tickets.policy import Role
from blockdesk.tickets.service import TicketService

require_manager = role_required(Role.MANAGER)

ManagerActor = Annotated[ActorContext, Depends(require_manager)]


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_content_store(request: Request) -> ContentStoreClient:
    store = getattr(request.app.state, "content_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Content store is not configured")
    return store
