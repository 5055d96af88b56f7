"""Content-addressed storage for ticket descriptions, attachments and comments.

Digests are computed locally before any network call, so the same bytes
always map to the same reference and an upload can be retried blindly.
Lookups consult a bounded local cache first, then the remote blob store.
Misses and remote failures are remembered for a short negative-cache TTL so
that a persistently missing blob does not cause a request storm.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from blockdesk.metrics import MetricsRegistry, register_default_metrics
from blockdesk.tickets.errors import ContentUnavailableError
from blockdesk.tickets.models import ContentStatus, ResolvedContent

from .blob_stores import BlobStore, BlobStoreError

logger = logging.getLogger(__name__)

DIGEST_PREFIX = "Qm"
_DIGEST_HEX_LENGTH = 44
_DIGEST_RE = re.compile(rf"^{DIGEST_PREFIX}[0-9a-f]{{{_DIGEST_HEX_LENGTH}}}$")

DEFAULT_MAX_CONTENT_BYTES = 10 * 1024 * 1024


class ContentTooLargeError(ValueError):
    """Raised when content exceeds the configured upload limit."""


def compute_digest(data: bytes) -> str:
    """Return the content reference for ``data``."""

    return DIGEST_PREFIX + hashlib.sha256(data).hexdigest()[:_DIGEST_HEX_LENGTH]


def is_digest(value: str | None) -> bool:
    """Tell a store reference apart from an inline literal without a round trip."""

    return bool(value) and _DIGEST_RE.match(value) is not None


def _as_bytes(content: bytes | str) -> bytes:
    if isinstance(content, str):
        return content.encode("utf-8")
    return bytes(content)


@dataclass(frozen=True, slots=True)
class ContentLookup:
    data: bytes | None
    found: bool


class ContentStoreClient:
    """Local-cache-first client over a remote blob store."""

    def __init__(
        self,
        remote: BlobStore,
        *,
        cache_size: int = 1024,
        negative_ttl: float = 5.0,
        put_retries: int = 3,
        retry_backoff: float = 0.2,
        max_content_bytes: int = DEFAULT_MAX_CONTENT_BYTES,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._remote = remote
        self._cache: "OrderedDict[str, bytes]" = OrderedDict()
        self._cache_size = max(1, cache_size)
        self._negative: "OrderedDict[str, float]" = OrderedDict()
        self._negative_ttl = max(0.0, negative_ttl)
        self._put_retries = max(0, put_retries)
        self._retry_backoff = max(0.0, retry_backoff)
        self._max_content_bytes = max_content_bytes
        self._clock = clock
        self._metrics = register_default_metrics(metrics)

    async def put(self, content: bytes | str) -> str:
        data = _as_bytes(content)
        if len(data) > self._max_content_bytes:
            raise ContentTooLargeError(
                f"Content is {len(data)} bytes; the limit is {self._max_content_bytes} bytes"
            )

        digest = compute_digest(data)
        self._remember(digest, data)
        self._negative.pop(digest, None)

        last_error: BlobStoreError | None = None
        for attempt in range(self._put_retries + 1):
            if attempt:
                self._metrics.counter("content_put_retries_total").inc()
                await asyncio.sleep(self._retry_backoff * (2 ** (attempt - 1)))
            try:
                await self._remote.upload(digest, data)
            except BlobStoreError as exc:
                last_error = exc
                self._metrics.counter("content_remote_failures_total").inc(labels={"operation": "put"})
                logger.warning("Upload of %s failed (attempt %d): %s", digest, attempt + 1, exc)
                continue
            logger.debug("Stored %d bytes as %s", len(data), digest)
            return digest

        raise ContentUnavailableError(f"Could not upload content {digest}: {last_error}") from last_error

    async def get(self, digest: str) -> ContentLookup:
        if not is_digest(digest):
            raise ValueError(f"Not a content digest: {digest!r}")

        cached = self._cache.get(digest)
        if cached is not None:
            self._cache.move_to_end(digest)
            self._metrics.counter("content_cache_hits_total").inc()
            return ContentLookup(data=cached, found=True)

        expires_at = self._negative.get(digest)
        if expires_at is not None:
            if self._clock() < expires_at:
                self._metrics.counter("content_cache_misses_total").inc(labels={"source": "negative_cache"})
                return ContentLookup(data=None, found=False)
            del self._negative[digest]

        try:
            data = await self._remote.download(digest)
        except BlobStoreError as exc:
            logger.warning("Fetching %s from the blob store failed: %s", digest, exc)
            self._metrics.counter("content_remote_failures_total").inc(labels={"operation": "get"})
            return self._miss(digest, source="remote_error")

        if data is None:
            return self._miss(digest, source="remote_miss")
        if compute_digest(data) != digest:
            logger.warning("Blob store returned bytes that do not match digest %s", digest)
            return self._miss(digest, source="integrity")

        self._remember(digest, data)
        return ContentLookup(data=data, found=True)

    async def require(self, digest: str) -> bytes:
        lookup = await self.get(digest)
        if not lookup.found or lookup.data is None:
            raise ContentUnavailableError(f"Content {digest} is not available yet")
        return lookup.data

    async def resolve(self, reference: str) -> ResolvedContent:
        """Resolve a ticket field that is either a digest or an inline literal."""

        if not is_digest(reference):
            return ResolvedContent(reference=reference, status=ContentStatus.INLINE, data=_as_bytes(reference))
        lookup = await self.get(reference)
        if lookup.found:
            return ResolvedContent(reference=reference, status=ContentStatus.RESOLVED, data=lookup.data)
        return ResolvedContent(reference=reference, status=ContentStatus.UNAVAILABLE)

    @property
    def max_content_bytes(self) -> int:
        return self._max_content_bytes

    def invalidate(self, digest: str) -> None:
        """Forget a negative-cache entry so the next lookup goes to the store."""

        self._negative.pop(digest, None)

    async def close(self) -> None:
        await self._remote.close()

    def _remember(self, digest: str, data: bytes) -> None:
        self._cache[digest] = data
        self._cache.move_to_end(digest)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def _miss(self, digest: str, *, source: str) -> ContentLookup:
        self._negative[digest] = self._clock() + self._negative_ttl
        self._negative.move_to_end(digest)
        while len(self._negative) > self._cache_size:
            self._negative.popitem(last=False)
        self._metrics.counter("content_cache_misses_total").inc(labels={"source": source})
        return ContentLookup(data=None, found=False)
