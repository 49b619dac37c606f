"""Tests for the Catalog facade."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from label_mirror.cache_store import MemoryCacheStore, SqliteCacheStore, TTLClass
from label_mirror.catalog import Catalog, ListingSource, open_store
from label_mirror.config import CacheConfig, Config
from label_mirror.entity_cache import Source
from label_mirror.errors import NotAvailable
from label_mirror.reconcile import Strategy
from label_mirror.upstream import UpstreamClient

BASE_URL = "https://upstream.test/v1"

RELEASES = [
    {"id": "r1", "title": "Low Light", "label_id": "2", "release_date": "2020-03-01"},
    {"id": "r2", "title": "Undertow", "label": "Build It Deep", "release_date": "2022-09-15"},
    {"id": "r3", "title": "Grid Lines", "label_id": "3", "release_date": "2023-01-01"},
    {"id": "r4", "title": "Deep Sessions Vol. 1"},
]


class ReleaseApi:
    """Mock provider serving the RELEASES listing and single releases."""

    def __init__(self) -> None:
        self.listing_calls: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/releases":
            params = dict(request.url.params)
            self.listing_calls.append(params)
            offset, limit = int(params["offset"]), int(params["limit"])
            return httpx.Response(200, json={"data": RELEASES[offset : offset + limit]})
        for release in RELEASES:
            if path == f"/v1/releases/{release['id']}":
                return httpx.Response(200, json={"data": release})
        return httpx.Response(404)


def make_catalog(handler, client: bool = True) -> Catalog:
    config = Config.model_validate({"cache": {"backend": "memory"}, "upstream": {"rate_limit_per_sec": 0}})
    upstream = UpstreamClient(BASE_URL, transport=httpx.MockTransport(handler)) if client else None
    return Catalog(config, client=upstream)


def test_list_for_label_scans_then_serves_from_index():
    api = ReleaseApi()
    catalog = make_catalog(api)

    async def run():
        first = await catalog.list_for_label("release", "Build It Deep")
        second = await catalog.list_for_label("release", "buildit-deep")
        await catalog.close()
        return first, second

    first, second = asyncio.run(run())

    assert first.source == ListingSource.UPSTREAM_SCAN
    assert first.label_id == "2"
    assert first.complete is True
    # r3 is listed but belongs to label 3; r4 has no date and sorts last
    assert [item["id"] for item in first.items] == ["r2", "r1", "r4"]
    assert api.listing_calls[0]["label"] == "2"

    assert second.source == ListingSource.INDEX
    assert [item["id"] for item in second.items] == ["r2", "r1", "r4"]
    assert len(api.listing_calls) == 1


def test_list_for_label_limit():
    catalog = make_catalog(ReleaseApi())
    listing = asyncio.run(catalog.list_for_label("release", "2", limit=1))
    assert [item["id"] for item in listing.items] == ["r2"]


def test_list_for_unknown_label_returns_none():
    catalog = make_catalog(ReleaseApi())
    assert asyncio.run(catalog.list_for_label("release", "Defunct Imprint")) is None


def test_list_for_label_incomplete_scan():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    catalog = make_catalog(handler)
    listing = asyncio.run(catalog.list_for_label("release", "3"))

    assert listing.items == []
    assert listing.complete is False


def test_get_uses_cache_after_first_fetch():
    catalog = make_catalog(ReleaseApi())

    async def run():
        return await catalog.get("release", "r1"), await catalog.get("release", "r1")

    first, second = asyncio.run(run())
    assert first.source == Source.UPSTREAM
    assert second.source == Source.CACHE
    assert second.value["title"] == "Low Light"


def test_get_many():
    catalog = make_catalog(ReleaseApi())
    results = asyncio.run(catalog.get_many("release", ["r1", "missing"]))

    assert results["r1"].value["id"] == "r1"
    assert isinstance(results["missing"].error, NotAvailable)


def test_resolve_and_reconcile_label():
    catalog = make_catalog(ReleaseApi(), client=False)

    assert catalog.resolve_label("Build It Deep") == "2"
    assert catalog.resolve_label("nothing") is None

    result = catalog.reconcile_label({"id": "a1", "name": "X", "bio": "member of Build It Deep collective"})
    assert result.resolved_label_id == "2"
    assert result.strategy_used == Strategy.TEXT_MATCH


def test_offline_catalog_serves_cache_only():
    catalog = make_catalog(ReleaseApi(), client=False)

    async def run():
        await catalog.store.put("release:r9", {"id": "r9"}, TTLClass.LONG)
        return await catalog.get("release", "r9")

    assert asyncio.run(run()).source == Source.CACHE
    with pytest.raises(NotAvailable):
        asyncio.run(catalog.get("release", "r1"))
    with pytest.raises(NotAvailable):
        asyncio.run(catalog.scan("releases"))


def test_scan_uses_configured_pagination():
    api = ReleaseApi()
    catalog = make_catalog(api)
    result = asyncio.run(catalog.scan("releases", page_size=3))

    assert len(result.items) == 4
    assert [call["offset"] for call in api.listing_calls] == ["0", "3"]


def test_open_store_backends(tmp_path):
    assert isinstance(open_store(CacheConfig(backend="memory")), MemoryCacheStore)

    store = open_store(CacheConfig(backend="sqlite", path=tmp_path / "c.sqlite", long_ttl_s=60))
    assert isinstance(store, SqliteCacheStore)
    assert store.threshold(TTLClass.LONG) == 60.0


def test_from_config_offline():
    config = Config.model_validate({"cache": {"backend": "memory"}})
    assert Catalog.from_config(config, offline=True).client is None
    assert Catalog.from_config(config).client is not None


def test_get_then_list_scans_instead_of_trusting_partial_index():
    api = ReleaseApi()
    catalog = make_catalog(api)

    async def run():
        await catalog.get("release", "r1")
        return await catalog.list_for_label("release", "2")

    listing = asyncio.run(run())

    assert listing.source == ListingSource.UPSTREAM_SCAN
    assert listing.complete is True
    assert [item["id"] for item in listing.items] == ["r2", "r1", "r4"]
    assert len(api.listing_calls) == 1


def test_incomplete_scan_does_not_mark_label_warmed():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/releases":
            calls.append(request.url.params["offset"])
            if request.url.params["offset"] != "0":
                return httpx.Response(503)
            return httpx.Response(200, json={"data": RELEASES[:2]})
        return httpx.Response(404)

    config = Config.model_validate(
        {"cache": {"backend": "memory"}, "upstream": {"rate_limit_per_sec": 0}, "pagination": {"page_size": 2}}
    )
    catalog = Catalog(config, client=UpstreamClient(BASE_URL, transport=httpx.MockTransport(handler)))

    async def run():
        first = await catalog.list_for_label("release", "2")
        second = await catalog.list_for_label("release", "2")
        return first, second, await catalog.index.is_warmed("2", "release")

    first, second, warmed = asyncio.run(run())

    assert first.complete is False
    assert second.source == ListingSource.UPSTREAM_SCAN
    assert second.complete is False
    assert warmed is False


def test_offline_partial_index_is_flagged_incomplete():
    store = MemoryCacheStore()
    online = Catalog(
        Config.model_validate({"upstream": {"rate_limit_per_sec": 0}}),
        store=store,
        client=UpstreamClient(BASE_URL, transport=httpx.MockTransport(ReleaseApi())),
    )
    offline = Catalog(Config.model_validate({}), store=store)

    async def run():
        await online.get("release", "r1")
        return await offline.list_for_label("release", "2")

    listing = asyncio.run(run())

    assert listing.source == ListingSource.INDEX
    assert [item["id"] for item in listing.items] == ["r1"]
    assert listing.complete is False


class SearchApi:
    """Mock provider answering track searches."""

    def __init__(self) -> None:
        self.calls: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        self.calls.append(params)
        return httpx.Response(200, json={"tracks": [{"id": f"t{len(self.calls)}", "title": params["q"]}]})


def test_search_cached_by_folded_query_and_label(clock):
    api = SearchApi()
    config = Config.model_validate({"upstream": {"rate_limit_per_sec": 0}})
    store = MemoryCacheStore(clock=clock)
    catalog = Catalog(config, store=store, client=UpstreamClient(BASE_URL, transport=httpx.MockTransport(api)))

    async def run():
        first = await catalog.search("Night  Drive", label_ref="Build It Deep")
        second = await catalog.search("night-drive", label_ref="2")
        return first, second, await store.get("search:night drive:2")

    first, second, entry = asyncio.run(run())

    assert first.source == Source.UPSTREAM
    assert second.source == Source.CACHE
    assert api.calls[0]["q"] == "night drive"
    assert api.calls[0]["label"] == "2"
    assert len(api.calls) == 1
    assert entry.ttl_class == TTLClass.SHORT
    assert entry.value == [{"id": "t1", "title": "night drive"}]


def test_search_goes_stale_after_one_hour(clock):
    api = SearchApi()
    config = Config.model_validate({"upstream": {"rate_limit_per_sec": 0}})
    catalog = Catalog(
        config, store=MemoryCacheStore(clock=clock), client=UpstreamClient(BASE_URL, transport=httpx.MockTransport(api))
    )

    asyncio.run(catalog.search("grid lines"))
    clock.advance(59 * 60)
    assert asyncio.run(catalog.search("grid lines")).source == Source.CACHE

    clock.advance(2 * 60)
    refreshed = asyncio.run(catalog.search("grid lines"))
    assert refreshed.source == Source.UPSTREAM
    assert refreshed.value == [{"id": "t2", "title": "grid lines"}]
    assert "label" not in api.calls[0]


def test_search_unknown_label_returns_none():
    catalog = make_catalog(SearchApi())
    assert asyncio.run(catalog.search("anything", label_ref="Defunct Imprint")) is None
