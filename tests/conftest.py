"""Pytest configuration and shared fixtures for label-mirror tests."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from label_mirror.cache_store import CacheStore, MemoryCacheStore, SqliteCacheStore
from label_mirror.config import LabelsConfig
from label_mirror.labels import LabelNormalizer, LabelTable
from label_mirror.upstream import UpstreamClient

BASE_URL = "https://upstream.test/v1"


class FakeClock:
    """Settable wall clock for staleness tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


# =============================================================================
# Label Fixtures
# =============================================================================


@pytest.fixture
def label_table() -> LabelTable:
    """Labels 1 Build It Records, 2 Build It Deep, 3 Build It Tech; default 1."""
    return LabelTable.from_config(LabelsConfig())


@pytest.fixture
def normalizer(label_table: LabelTable) -> LabelNormalizer:
    return LabelNormalizer(label_table)


# =============================================================================
# Cache Store Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryCacheStore:
    return MemoryCacheStore(clock=clock)


@pytest.fixture
def sqlite_store(tmp_path, clock: FakeClock) -> SqliteCacheStore:
    return SqliteCacheStore(tmp_path / "cache.sqlite", clock=clock)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path, clock: FakeClock) -> CacheStore:
    """Each cache store backend in turn."""
    if request.param == "memory":
        return MemoryCacheStore(clock=clock)
    return SqliteCacheStore(tmp_path / "cache.sqlite", clock=clock)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


# =============================================================================
# Upstream Fixtures
# =============================================================================


@pytest.fixture
def make_client() -> Callable[..., UpstreamClient]:
    """Build an UpstreamClient answering from an httpx.MockTransport handler."""

    def factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> UpstreamClient:
        return UpstreamClient(BASE_URL, transport=httpx.MockTransport(handler), **kwargs)

    return factory
