from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel

from blockdesk.dependencies.auth import CurrentActor
from blockdesk.dependencies.tickets import get_content_store
from blockdesk.services.content_store import ContentStoreClient, ContentTooLargeError, is_digest
from blockdesk.tickets.errors import ContentUnavailableError

router = APIRouter(prefix="/content", tags=["content"])

ContentStoreDep = Annotated[ContentStoreClient, Depends(get_content_store)]


class ContentPutResponse(BaseModel):
    digest: str
    size: int


@router.post("", response_model=ContentPutResponse, status_code=status.HTTP_201_CREATED)
async def put_content(request: Request, store: ContentStoreDep, _: CurrentActor) -> ContentPutResponse:
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > store.max_content_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Content is {declared} bytes; the limit is {store.max_content_bytes} bytes",
        )
    data = await request.body()
    try:
        digest = await store.put(data)
    except ContentTooLargeError as exc:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)) from exc
    except ContentUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ContentPutResponse(digest=digest, size=len(data))


@router.get("/{digest}")
async def get_content(digest: str, store: ContentStoreDep, _: CurrentActor) -> Response:
    if not is_digest(digest):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not a content digest")
    lookup = await store.get(digest)
    if not lookup.found or lookup.data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Content {digest} not found")
    return Response(content=lookup.data, media_type="application/octet-stream")
