"""Remote blob store backends consulted by the content store client."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, MutableMapping, Protocol

import httpx


class BlobStoreError(RuntimeError):
    """Transport or protocol failure while talking to a blob store."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        prefix = f"[{self.status_code}] " if self.status_code is not None else ""
        return f"{prefix}{super().__str__()}"


class BlobStore(Protocol):
    async def upload(self, digest: str, data: bytes) -> None:
        ...

    async def download(self, digest: str) -> bytes | None:
        ...

    async def close(self) -> None:
        ...


class InMemoryBlobStore:
    """Process-local blob store used for development and tests."""

    def __init__(self, blobs: Mapping[str, bytes] | None = None) -> None:
        self.blobs: MutableMapping[str, bytes] = dict(blobs or {})
        self._lock = asyncio.Lock()

    async def upload(self, digest: str, data: bytes) -> None:
        async with self._lock:
            self.blobs.setdefault(digest, bytes(data))

    async def download(self, digest: str) -> bytes | None:
        async with self._lock:
            return self.blobs.get(digest)

    async def close(self) -> None:
        return None


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or "Unknown blob store error"
    if isinstance(data, Mapping):
        detail = data.get("detail") or data.get("error")
        if isinstance(detail, str):
            return detail
    return "Blob store request failed"


class HttpBlobStore:
    """Blob store speaking the ``POST /blobs`` / ``GET /blobs/{digest}`` protocol."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise BlobStoreError(f"Blob store request failed: {exc}") from exc

    async def upload(self, digest: str, data: bytes) -> None:
        response = await self._request(
            "POST",
            "/blobs",
            content=data,
            headers={"Content-Type": "application/octet-stream", "Accept": "application/json"},
        )
        if response.status_code >= 400:
            raise BlobStoreError(_extract_error_message(response), status_code=response.status_code)

        try:
            remote_digest = response.json().get("digest")
        except (ValueError, AttributeError) as exc:
            raise BlobStoreError("Blob store returned an unreadable upload receipt") from exc
        if remote_digest != digest:
            raise BlobStoreError(
                f"Blob store acknowledged {remote_digest!r} but the content digest is {digest!r}"
            )

    async def download(self, digest: str) -> bytes | None:
        response = await self._request("GET", f"/blobs/{digest}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise BlobStoreError(_extract_error_message(response), status_code=response.status_code)
        return response.content

    async def close(self) -> None:
        await self._client.aclose()
