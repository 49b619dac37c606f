"""Tests for the label-mirror CLI using typer's CliRunner."""

from __future__ import annotations

import importlib
import json
import logging

import httpx
import pytest
from typer.testing import CliRunner

from label_mirror.catalog import Catalog
from label_mirror.cli import ExitCode, app
from label_mirror.safe_logging import SafeLogFormatter

# The package re-exports the cli() entry point under the same name
cli_module = importlib.import_module("label_mirror.cli")

RELEASES = [
    {"id": "r1", "title": "Low Light", "label_id": "2", "release_date": "2020-03-01"},
    {"id": "r2", "title": "Undertow", "label": "Build It Deep", "release_date": "2022-09-15"},
    {"id": "r3", "title": "Grid Lines", "label_id": "3", "release_date": "2023-01-01"},
]


def handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/v1/releases":
        offset = int(request.url.params["offset"])
        limit = int(request.url.params["limit"])
        return httpx.Response(200, json={"data": RELEASES[offset : offset + limit]})
    if path == "/v1/tracks":
        query = request.url.params["q"]
        return httpx.Response(200, json={"tracks": [{"id": "t1", "title": query}]})
    for release in RELEASES:
        if path == f"/v1/releases/{release['id']}":
            return httpx.Response(200, json={"data": release})
    return httpx.Response(404)


@pytest.fixture
def runner(tmp_path, monkeypatch) -> CliRunner:
    """CliRunner against a temporary SQLite cache and a mock upstream."""
    monkeypatch.setenv("LABEL_MIRROR_CACHE_BACKEND", "sqlite")
    monkeypatch.setenv("LABEL_MIRROR_CACHE_PATH", str(tmp_path / "cache.sqlite"))
    monkeypatch.setenv("LABEL_MIRROR_UPSTREAM_BASE_URL", "https://upstream.test/v1")
    monkeypatch.setenv("LABEL_MIRROR_UPSTREAM_RATE_LIMIT_PER_SEC", "0")
    monkeypatch.setattr(
        cli_module,
        "build_catalog",
        lambda config, offline: Catalog.from_config(
            config, offline=offline, transport=httpx.MockTransport(handler)
        ),
    )
    return CliRunner()


def test_label_resolve_text(runner):
    result = runner.invoke(app, ["label", "resolve", "Build It Deep"])
    assert result.exit_code == ExitCode.SUCCESS
    assert "-> 2" in result.output


def test_label_resolve_json(runner):
    result = runner.invoke(app, ["-o", "json", "label", "resolve", "buildit-tech"])
    assert result.exit_code == ExitCode.SUCCESS
    data = json.loads(result.stdout)
    assert data == {"ref": "buildit-tech", "label_id": "3", "matched_by": "slug"}


def test_label_resolve_unknown(runner):
    result = runner.invoke(app, ["label", "resolve", "Defunct Imprint"])
    assert result.exit_code == ExitCode.NO_RESULTS


def test_get_fetches_then_hits_cache(runner):
    first = runner.invoke(app, ["-o", "json", "get", "release", "r1"])
    assert first.exit_code == ExitCode.SUCCESS
    assert json.loads(first.stdout)["source"] == "upstream"

    second = runner.invoke(app, ["-o", "json", "get", "release", "r1"])
    assert second.exit_code == ExitCode.SUCCESS
    data = json.loads(second.stdout)
    assert data["source"] == "cache"
    assert data["value"]["title"] == "Low Light"


def test_get_unknown_entity(runner):
    result = runner.invoke(app, ["get", "release", "nope"])
    assert result.exit_code == ExitCode.NO_RESULTS


def test_get_offline_miss_is_error(runner):
    result = runner.invoke(app, ["--offline", "get", "release", "r2"])
    assert result.exit_code == ExitCode.ERROR


def test_get_rejects_unknown_entity_type(runner):
    result = runner.invoke(app, ["get", "playlist", "1"])
    assert result.exit_code != ExitCode.SUCCESS


def test_label_list_json(runner):
    result = runner.invoke(app, ["-o", "json", "label", "list", "deep", "--type", "release"])
    assert result.exit_code == ExitCode.SUCCESS
    data = json.loads(result.stdout)
    assert data["label_id"] == "2"
    assert data["complete"] is True
    assert [item["id"] for item in data["items"]] == ["r2", "r1"]


def test_label_list_unknown_label(runner):
    result = runner.invoke(app, ["label", "list", "Defunct Imprint"])
    assert result.exit_code == ExitCode.NO_RESULTS


def test_reconcile_file(runner, tmp_path):
    records = [
        {"id": "a1", "name": "Kollektiv Nord", "bio": "member of Build It Deep collective"},
        {"id": "a2", "name": "Marlow", "label_id": "2", "current_label_id": "1"},
    ]
    path = tmp_path / "artists.json"
    path.write_text(json.dumps({"entities": records}))

    result = runner.invoke(app, ["-o", "json", "reconcile", str(path)])
    assert result.exit_code == ExitCode.SUCCESS
    data = json.loads(result.stdout)

    by_id = {r["entity_id"]: r for r in data["results"]}
    assert by_id["a1"]["resolved_label_id"] == "2"
    assert by_id["a1"]["confidence"] == "HEURISTIC"
    assert by_id["a2"]["strategy_used"] == "foreign_key"
    changes = {c["entity_id"]: c for c in data["changes"]}
    assert changes["a2"]["current_label_id"] == "1"
    assert changes["a2"]["proposed_label_id"] == "2"


def test_reconcile_bad_file(runner, tmp_path):
    path = tmp_path / "broken.json"
    path.write_text('{"entities": "nope"}')

    result = runner.invoke(app, ["reconcile", str(path)])
    assert result.exit_code == ExitCode.ERROR


def test_scan_complete(runner):
    result = runner.invoke(app, ["-o", "json", "scan", "releases", "--label", "Build It Deep"])
    assert result.exit_code == ExitCode.SUCCESS
    data = json.loads(result.stdout)
    assert data["filters"] == {"label": "2"}
    assert data["complete"] is True
    assert len(data["items"]) == 3


def test_scan_cut_short_by_page_cap(runner):
    result = runner.invoke(app, ["scan", "releases", "--page-size", "1", "--max-pages", "2"])
    assert result.exit_code == ExitCode.DEGRADED
    assert "incomplete" in result.output


def test_scan_unknown_label(runner):
    result = runner.invoke(app, ["scan", "releases", "--label", "Defunct Imprint"])
    assert result.exit_code == ExitCode.NO_RESULTS


def test_cache_commands(runner):
    runner.invoke(app, ["get", "release", "r1"])

    stats = runner.invoke(app, ["-o", "json", "cache", "stats"])
    assert stats.exit_code == ExitCode.SUCCESS
    data = json.loads(stats.stdout)
    assert data["backend"] == "sqlite"
    assert data["entries"] == 1

    purge = runner.invoke(app, ["-o", "json", "cache", "purge"])
    assert json.loads(purge.stdout)["removed_entries"] == 0

    aborted = runner.invoke(app, ["cache", "clear"], input="n\n")
    assert aborted.exit_code != ExitCode.SUCCESS

    cleared = runner.invoke(app, ["cache", "clear", "--force"])
    assert cleared.exit_code == ExitCode.SUCCESS

    after = runner.invoke(app, ["-o", "json", "cache", "stats"])
    assert json.loads(after.stdout)["entries"] == 0


def test_label_list_after_get_scans_full_listing(runner):
    runner.invoke(app, ["get", "release", "r1"])

    result = runner.invoke(app, ["-o", "json", "label", "list", "2"])
    assert result.exit_code == ExitCode.SUCCESS
    data = json.loads(result.stdout)
    assert data["source"] == "upstream-scan"
    assert [item["id"] for item in data["items"]] == ["r2", "r1"]

    again = runner.invoke(app, ["-o", "json", "label", "list", "2"])
    assert json.loads(again.stdout)["source"] == "index"


def test_search_json_then_cached(runner):
    first = runner.invoke(app, ["-o", "json", "search", "Low  Light", "--label", "deep"])
    assert first.exit_code == ExitCode.SUCCESS
    data = json.loads(first.stdout)
    assert data["source"] == "upstream"
    assert data["items"] == [{"id": "t1", "title": "low light"}]

    second = runner.invoke(app, ["-o", "json", "search", "low-light", "--label", "2"])
    assert json.loads(second.stdout)["source"] == "cache"


def test_search_unknown_label(runner):
    result = runner.invoke(app, ["search", "anything", "--label", "Defunct Imprint"])
    assert result.exit_code == ExitCode.NO_RESULTS


def test_plain_logs_use_configured_format(runner, monkeypatch):
    monkeypatch.setenv("LABEL_MIRROR_LOGGING_FORMAT", "%(levelname)s|%(message)s")
    result = runner.invoke(app, ["--plain-logs", "-v", "label", "resolve", "deep"])

    assert result.exit_code == ExitCode.SUCCESS
    handler = logging.getLogger().handlers[0]
    assert isinstance(handler.formatter, SafeLogFormatter)
    assert handler.formatter._fmt == "%(levelname)s|%(message)s"
