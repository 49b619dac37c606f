"""Error taxonomy for label-mirror.

Label lookups that find nothing return ``None`` rather than raising; the
exceptions here are reserved for conditions a caller has to react to.
"""

from __future__ import annotations


class LabelMirrorError(Exception):
    """Base class for all label-mirror errors."""


class NotAvailable(LabelMirrorError):
    """Entity could neither be fetched nor served from cache."""

    def __init__(self, entity_type: str, entity_id: str, cause: BaseException | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{entity_type} {entity_id} not available{detail}")


class CacheStoreError(LabelMirrorError):
    """Cache backend unreachable or failed mid-operation."""


class UpstreamError(LabelMirrorError):
    """Base class for failures reported by the upstream metadata provider."""


class RateLimited(UpstreamError):
    """Provider asked us to slow down (HTTP 429)."""

    def __init__(self, retry_after: float | None = None):
        self.retry_after = retry_after
        hint = f", retry after {retry_after:g}s" if retry_after is not None else ""
        super().__init__(f"Rate limited by upstream{hint}")


class UpstreamNotFound(UpstreamError):
    """Provider has no record for the requested entity."""


class TransientError(UpstreamError):
    """Timeout, transport failure, 5xx or unparseable response."""
