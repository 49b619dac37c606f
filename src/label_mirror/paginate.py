"""Paginated listing drain.

Walks an offset/limit listing one page at a time and collects every item,
deduplicated. Pages are fetched strictly in sequence: each request depends
on the previous page having been non-terminal, and the upstream rate limit
is shared with everything else.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from label_mirror.upstream import Page, UpstreamClient

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_PAGES = 20

PageFetcher = Callable[[int, int], Awaitable[Page | Sequence[Any]]]
KeyFn = Callable[[Any], Hashable | None]


class StopReason(StrEnum):
    """Why accumulation ended."""

    EMPTY_PAGE = "empty_page"
    SHORT_PAGE = "short_page"
    TOTAL_REACHED = "total_reached"
    MAX_PAGES = "max_pages"
    ERROR = "error"


@dataclass
class PageCursor:
    """Position within one accumulation run."""

    page_size: int
    offset: int = 0
    pages_fetched: int = 0

    def advance(self) -> None:
        self.pages_fetched += 1
        self.offset = self.pages_fetched * self.page_size


@dataclass
class AccumulationResult:
    """Items collected by one run; ``complete`` is False when the run was cut short."""

    items: list[Any] = field(default_factory=list)
    complete: bool = True
    pages_fetched: int = 0
    stop_reason: StopReason = StopReason.EMPTY_PAGE
    error: Exception | None = None
    duplicates: int = 0


def id_key(item: Any) -> Hashable | None:
    """Default dedup key: the item's ``id`` field; items without one are never merged."""
    if isinstance(item, Mapping):
        return item.get("id")
    return None


async def accumulate_all(
    fetch_page: PageFetcher,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_pages: int = DEFAULT_MAX_PAGES,
    key: KeyFn = id_key,
) -> AccumulationResult:
    """
    Drain a paginated source.

    Stops on an empty page, a page shorter than ``page_size``, reaching a
    reported total, a fetch error, or ``max_pages``. The last two leave
    ``complete`` False; the partial items are still returned.

    Args:
        fetch_page: ``(offset, limit)`` -> Page or plain sequence of items
        page_size: Items requested per page
        max_pages: Hard cap on page requests
        key: Dedup key per item (None disables dedup for that item)
    """
    if page_size < 1:
        raise ValueError(f"page_size must be positive, got {page_size}")
    if max_pages < 1:
        raise ValueError(f"max_pages must be positive, got {max_pages}")

    cursor = PageCursor(page_size=page_size)
    result = AccumulationResult()
    seen: set[Hashable] = set()

    while cursor.pages_fetched < max_pages:
        try:
            page = await fetch_page(cursor.offset, page_size)
        except Exception as e:
            log.warning(f"Page {cursor.pages_fetched + 1} (offset {cursor.offset}) failed: {e}")
            result.complete = False
            result.stop_reason = StopReason.ERROR
            result.error = e
            result.pages_fetched = cursor.pages_fetched
            return result

        if isinstance(page, Page):
            page_items, total = page.items, page.total
        else:
            page_items, total = list(page), None

        for item in page_items:
            item_key = key(item)
            if item_key is None:
                result.items.append(item)
            elif item_key in seen:
                result.duplicates += 1
            else:
                seen.add(item_key)
                result.items.append(item)

        fetched_through = cursor.offset + len(page_items)
        cursor.advance()
        result.pages_fetched = cursor.pages_fetched
        log.debug(f"Page {cursor.pages_fetched}: {len(page_items)} items")

        if not page_items:
            result.stop_reason = StopReason.EMPTY_PAGE
            return result
        if len(page_items) < page_size:
            result.stop_reason = StopReason.SHORT_PAGE
            return result
        if total is not None and fetched_through >= total:
            result.stop_reason = StopReason.TOTAL_REACHED
            return result

    log.warning(f"Stopped after max_pages={max_pages}; result may be incomplete")
    result.complete = False
    result.stop_reason = StopReason.MAX_PAGES
    return result


def upstream_pages(
    client: UpstreamClient,
    listing_kind: str,
    filters: dict[str, Any] | None = None,
) -> PageFetcher:
    """Page fetcher over one upstream listing endpoint."""

    async def fetch(offset: int, limit: int) -> Page:
        return await client.fetch_page(listing_kind, filters, offset, limit)

    return fetch
