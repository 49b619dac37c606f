"""
Upstream metadata provider client.

Async httpx client with a shared token bucket, per-endpoint timeouts and a
typed error surface (RateLimited, UpstreamNotFound, TransientError). The
provider's listing endpoints answer in several shapes; extract_items() and
extract_total() are the one place those shapes are normalized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Any

import httpx

from label_mirror.config import UpstreamConfig
from label_mirror.errors import (
    RateLimited,
    TransientError,
    UpstreamError,
    UpstreamNotFound,
)
from label_mirror.rate_limiter import AsyncTokenBucket

log = logging.getLogger(__name__)


class EntityType(StrEnum):
    """Entity types mirrored from the provider."""

    TRACK = "track"
    ARTIST = "artist"
    ALBUM = "album"
    RELEASE = "release"

    @property
    def plural(self) -> str:
        return f"{self.value}s"


@dataclass
class Page:
    """One page of a listing endpoint."""

    items: list[dict[str, Any]] = field(default_factory=list)
    total: int | None = None


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """
    Parse a Retry-After header into seconds.

    Accepts delta-seconds or an HTTP date. Returns None when absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max(0.0, (when - now).total_seconds())


def extract_items(payload: Any, listing_kind: str) -> list[dict[str, Any]]:
    """
    Pull the item list out of a listing response.

    Known shapes: a bare list, or an object holding the list under ``data``,
    ``items``, ``results`` or the listing's own name (``artists``, ``releases``...).
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "items", listing_kind, "results"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
    raise TransientError(f"Unrecognized {listing_kind} listing response shape")


def extract_total(payload: Any) -> int | None:
    """Total item count reported alongside a listing, if any."""
    if not isinstance(payload, dict):
        return None
    candidates = [payload, payload.get("meta"), payload.get("pagination")]
    for container in candidates:
        if not isinstance(container, dict):
            continue
        for key in ("total", "total_count", "count"):
            value = container.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


def extract_entity(payload: Any, entity_type: EntityType) -> dict[str, Any]:
    """Unwrap a single-entity response (``{"data": {...}}``, ``{"artist": {...}}`` or bare)."""
    if isinstance(payload, dict):
        for key in ("data", entity_type.value):
            value = payload.get(key)
            if isinstance(value, dict):
                return value
        return payload
    raise TransientError(f"Unrecognized {entity_type} response shape")


class UpstreamClient:
    """
    Client for the upstream music-metadata provider.

    Provides:
    - fetch_entity(type, id): one track/artist/album/release
    - fetch_page(kind, filters, offset, limit): one page of a listing
    """

    USER_AGENT = "label-mirror/0.1.0"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        entity_timeout_s: float = 10.0,
        listing_timeout_s: float = 30.0,
        limiter: AsyncTokenBucket | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize upstream client.

        Args:
            base_url: Provider API root
            api_key: Optional bearer token
            entity_timeout_s: Timeout for single-entity lookups
            listing_timeout_s: Timeout for listing pages (more expensive)
            limiter: Shared token bucket; None disables client-side pacing
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.entity_timeout_s = entity_timeout_s
        self.listing_timeout_s = listing_timeout_s
        self.limiter = limiter

        headers = {"User-Agent": self.USER_AGENT, "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=listing_timeout_s,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: UpstreamConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> UpstreamClient:
        limiter = None
        if config.rate_limit_per_sec > 0:
            limiter = AsyncTokenBucket(capacity=config.burst, refill_rate=config.rate_limit_per_sec)
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            entity_timeout_s=config.entity_timeout_s,
            listing_timeout_s=config.listing_timeout_s,
            limiter=limiter,
            transport=transport,
        )

    async def _request(self, path: str, params: dict[str, Any], timeout: float) -> Any:
        """Make a rate-limited GET and map failures onto the error taxonomy."""
        if self.limiter is not None:
            await self.limiter.acquire()

        try:
            response = await self._client.get(path, params=params, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransientError(f"Upstream timed out after {timeout:g}s on {path}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Upstream unreachable on {path}: {e}") from e

        status = response.status_code
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            log.warning(f"Rate limited on {path} (retry_after={retry_after})")
            raise RateLimited(retry_after)
        if status == 404:
            raise UpstreamNotFound(f"Upstream has no resource at {path}")
        if status >= 500:
            raise TransientError(f"Upstream returned {status} for {path}")
        if status >= 400:
            raise UpstreamError(f"Upstream rejected {path} with {status}")

        try:
            return response.json()
        except ValueError as e:
            raise TransientError(f"Upstream returned invalid JSON for {path}") from e

    async def fetch_entity(self, entity_type: EntityType | str, entity_id: str) -> dict[str, Any]:
        """
        Fetch a single entity.

        Raises:
            RateLimited: Provider returned 429
            UpstreamNotFound: Provider has no such entity
            TransientError: Timeout, transport error, 5xx or bad payload
        """
        entity_type = EntityType(entity_type)
        path = f"{entity_type.plural}/{entity_id}"
        log.debug(f"Fetching {entity_type} {entity_id}")
        payload = await self._request(path, {}, self.entity_timeout_s)
        return extract_entity(payload, entity_type)

    async def fetch_page(
        self,
        listing_kind: str,
        filters: dict[str, Any] | None,
        offset: int,
        limit: int,
    ) -> Page:
        """Fetch one page of a listing endpoint (``artists``, ``releases``, ``tracks``...)."""
        params: dict[str, Any] = {k: v for k, v in (filters or {}).items() if v is not None}
        params["offset"] = offset
        params["limit"] = limit
        log.debug(f"Fetching {listing_kind} page offset={offset} limit={limit}")
        payload = await self._request(listing_kind, params, self.listing_timeout_s)
        return Page(items=extract_items(payload, listing_kind), total=extract_total(payload))

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> UpstreamClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
