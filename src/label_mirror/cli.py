"""CLI for label-mirror using Typer and Rich.

Operator tooling over the catalog: look up entities through the cache,
resolve and list labels, reconcile exported records, drain upstream
listings and maintain the cache store.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from contextlib import AbstractContextManager, nullcontext
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from rich.console import Console

from label_mirror.catalog import Catalog
from label_mirror.config import CacheBackend, Config
from label_mirror.console import (
    make_table,
    print_error,
    print_json,
    print_success,
    print_warning,
    set_console,
    status,
)
from label_mirror.console import print as cprint
from label_mirror.errors import LabelMirrorError, NotAvailable, UpstreamNotFound
from label_mirror.labels import LabelNormalizer, LabelTable
from label_mirror.reconcile import EntitySnapshot, LabelReconciler
from label_mirror.safe_logging import configure_rich_logging, configure_safe_logging
from label_mirror.upstream import EntityType

T = TypeVar("T")


class OutputFormat(StrEnum):
    """Output format for CLI commands."""

    TEXT = "text"
    JSON = "json"


class ExitCode:
    """Standard exit codes for CLI commands."""

    SUCCESS = 0
    ERROR = 1
    NO_RESULTS = 2
    DEGRADED = 3  # stale fallback or incomplete listing


app = typer.Typer(
    name="label-mirror",
    help="Label Mirror: cache-first catalog of a record label family",
    no_args_is_help=True,
    add_completion=False,
)

label_app = typer.Typer(help="Label resolution and listing commands")
cache_app = typer.Typer(help="Cache store maintenance commands")

app.add_typer(label_app, name="label")
app.add_typer(cache_app, name="cache")


class AppState:
    """Global application state passed between commands."""

    config: Config
    output_format: OutputFormat
    verbose: int
    offline: bool


state = AppState()


def build_catalog(config: Config, offline: bool) -> Catalog:
    """Catalog for one command invocation."""
    return Catalog.from_config(config, offline=offline)


def _with_catalog(fn: Callable[[Catalog], Awaitable[T]]) -> T:
    """Run ``fn`` against a fresh catalog on a private event loop, then close it."""

    async def run() -> T:
        catalog = build_catalog(state.config, state.offline)
        try:
            return await fn(catalog)
        finally:
            await catalog.close()

    return asyncio.run(run())


def _label_table() -> LabelTable:
    return LabelTable.from_config(state.config.labels)


def _is_json() -> bool:
    return state.output_format == OutputFormat.JSON


def _progress(message: str) -> AbstractContextManager[Any]:
    """Spinner for upstream drains; silent when stdout carries JSON."""
    return nullcontext() if _is_json() else status(message)


@app.callback()
def main(
    config_path: Annotated[
        Path | None,
        typer.Option("--config", help="Path to configuration TOML file", exists=True),
    ] = None,
    offline: Annotated[
        bool, typer.Option(help="Serve from cache only (no upstream requests)")
    ] = False,
    output: Annotated[
        OutputFormat,
        typer.Option("--output", "-o", help="Output format"),
    ] = OutputFormat.TEXT,
    verbose: Annotated[
        int,
        typer.Option("--verbose", "-v", count=True, help="Increase verbosity"),
    ] = 0,
    cache_backend: Annotated[
        CacheBackend | None,
        typer.Option(help="Cache store backend"),
    ] = None,
    cache_path: Annotated[Path | None, typer.Option(help="SQLite cache database path")] = None,
    base_url: Annotated[str | None, typer.Option(help="Upstream API base URL")] = None,
    plain_logs: Annotated[
        bool, typer.Option(help="Plain log lines (logging.format) instead of Rich")
    ] = False,
) -> None:
    """Label Mirror: cache-first catalog of a record label family."""
    logger = logging.getLogger(__name__)

    # Load config (TOML + env vars)
    cfg = Config.load(config_path)

    # CLI > Env > Config File > Defaults
    if cache_backend is not None:
        cfg.cache.backend = cache_backend
    if cache_path:
        cfg.cache.path = cache_path
    if base_url:
        cfg.upstream.base_url = base_url
    if plain_logs:
        cfg.logging.plain = True

    if verbose > 0:
        log_level = logging.DEBUG if verbose >= 2 else logging.INFO
    else:
        log_level = getattr(logging, cfg.logging.level.upper(), logging.WARNING)

    if cfg.logging.plain:
        configure_safe_logging(level=log_level, format_string=cfg.logging.format, redact=cfg.logging.redact)
    else:
        configure_rich_logging(level=log_level, redact=cfg.logging.redact, show_time=True, show_path=False)
    set_console(Console(soft_wrap=True))

    # Suppress external library logging unless very verbose (-vvv)
    if verbose < 3:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    if config_path:
        logger.info(f"Loaded config from {config_path}")
    logger.debug(f"Logging configured: level={logging.getLevelName(log_level)}")

    state.config = cfg
    state.output_format = output
    state.verbose = verbose
    state.offline = offline


# ====================================================================
# ENTITY COMMANDS
# ====================================================================


@app.command()
def get(
    entity_type: Annotated[EntityType, typer.Argument(help="Entity type")],
    entity_id: Annotated[str, typer.Argument(help="Upstream entity ID")],
) -> None:
    """Fetch one entity through the cache.

    Served fresh from cache when possible, otherwise fetched and written
    through; when upstream fails a stale copy is returned and flagged.

    Examples:
        label-mirror get track 4711
        label-mirror --offline -o json get artist 12
    """
    try:
        result = _with_catalog(lambda catalog: catalog.get(entity_type, entity_id))
    except NotAvailable as e:
        print_error(str(e))
        sys.exit(ExitCode.NO_RESULTS if isinstance(e.cause, UpstreamNotFound) else ExitCode.ERROR)
    except LabelMirrorError as e:
        print_error(str(e))
        sys.exit(ExitCode.ERROR)

    if _is_json():
        print_json(
            {
                "entity_type": str(entity_type),
                "id": entity_id,
                "source": str(result.source),
                "cached_at": result.cached_at,
                "value": result.value,
            }
        )
    else:
        cprint(f"[bold]{entity_type} {entity_id}[/bold] (source: {result.source})")
        cprint(json.dumps(result.value, indent=2, default=str), markup=False)
        if result.degraded:
            print_warning("upstream unavailable, served a stale cached copy")

    sys.exit(ExitCode.DEGRADED if result.degraded else ExitCode.SUCCESS)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search text")],
    label: Annotated[str | None, typer.Option(help="Restrict to a label reference")] = None,
    limit: Annotated[int, typer.Option(help="Maximum results", min=1)] = 20,
) -> None:
    """Search tracks; results are cached for an hour."""
    try:
        result = _with_catalog(lambda catalog: catalog.search(query, label, limit))
    except NotAvailable as e:
        print_error(str(e))
        sys.exit(ExitCode.ERROR)

    if result is None:
        print_warning(f"No label matches {label!r}")
        sys.exit(ExitCode.NO_RESULTS)

    tracks = result.value if isinstance(result.value, list) else []
    if _is_json():
        print_json({"query": query, "label": label, "source": str(result.source), "items": tracks})
    else:
        rows = [[t.get("id"), t.get("title") or t.get("name")] for t in tracks if isinstance(t, dict)]
        cprint(make_table(f"Search: {query}", ["ID", "Title"], rows))
        if result.degraded:
            print_warning("upstream unavailable, served stale search results")

    if not tracks:
        sys.exit(ExitCode.NO_RESULTS)
    sys.exit(ExitCode.DEGRADED if result.degraded else ExitCode.SUCCESS)


# ====================================================================
# LABEL COMMANDS
# ====================================================================


@label_app.command("resolve")
def label_resolve(
    ref: Annotated[str, typer.Argument(help="Label ID, slug, name or free text")],
) -> None:
    """Resolve a label reference to its canonical ID.

    Examples:
        label-mirror label resolve buildit-deep
        label-mirror label resolve "Build It Tech"
    """
    table = _label_table()
    match = LabelNormalizer(table).resolve(ref)

    if _is_json():
        print_json(
            {
                "ref": ref,
                "label_id": match.label_id if match else None,
                "matched_by": str(match.matched_by) if match else None,
            }
        )
    elif match is None:
        print_warning(f"No label matches {ref!r}")
    else:
        label = table.get(match.label_id)
        name = label.name if label else match.label_id
        cprint(f"{ref!r} -> [bold]{match.label_id}[/bold] {name} (by {match.matched_by})")

    sys.exit(ExitCode.SUCCESS if match else ExitCode.NO_RESULTS)


@label_app.command("list")
def label_list(
    ref: Annotated[str, typer.Argument(help="Label reference")],
    entity_type: Annotated[
        EntityType, typer.Option("--type", "-t", help="Entity type to list")
    ] = EntityType.RELEASE,
    limit: Annotated[int | None, typer.Option(help="Maximum number of entities", min=1)] = None,
) -> None:
    """List a label's entities, newest release first.

    Served from the label index when populated; otherwise the upstream
    listing is scanned, reconciled and cached.
    """
    try:
        with _progress(f"Listing {entity_type.plural} for {ref}..."):
            listing = _with_catalog(lambda catalog: catalog.list_for_label(entity_type, ref, limit))
    except LabelMirrorError as e:
        print_error(str(e))
        sys.exit(ExitCode.ERROR)

    if listing is None:
        print_warning(f"No label matches {ref!r}")
        sys.exit(ExitCode.NO_RESULTS)

    if _is_json():
        print_json(
            {
                "label_id": listing.label_id,
                "entity_type": str(listing.entity_type),
                "source": listing.source,
                "complete": listing.complete,
                "degraded": listing.degraded,
                "items": listing.items,
            }
        )
    else:
        rows = [
            [item.get("id"), item.get("name") or item.get("title"), item.get("release_date")]
            for item in listing.items
            if isinstance(item, dict)
        ]
        cprint(make_table(f"Label {listing.label_id} {entity_type.plural}", ["ID", "Name", "Released"], rows))
        cprint(f"{len(listing.items)} {entity_type.plural} from {listing.source}")
        if not listing.complete:
            print_warning("listing is incomplete (upstream scan was cut short)")

    if not listing.items:
        sys.exit(ExitCode.NO_RESULTS)
    sys.exit(ExitCode.SUCCESS if listing.complete and not listing.degraded else ExitCode.DEGRADED)


# ====================================================================
# RECONCILIATION
# ====================================================================


def _load_records(path: Path) -> list[dict[str, Any]]:
    """Records from a JSON array or an object with an ``entities`` array."""
    data = json.loads(path.read_text())
    if isinstance(data, dict):
        data = data.get("entities", data.get("data", []))
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of entities")
    return [record for record in data if isinstance(record, dict)]


@app.command()
def reconcile(
    input_file: Annotated[
        Path,
        typer.Argument(help="JSON file with entity records", exists=True, dir_okay=False),
    ],
    entity_type: Annotated[str, typer.Option("--type", "-t", help="Entity type of the records")] = "artist",
    changes_only: Annotated[
        bool, typer.Option(help="Only show proposed reassignments")
    ] = False,
) -> None:
    """Reconcile each record to one canonical label.

    Prints the chosen label, strategy and confidence per record, plus the
    reassignments that would bring stored labels in line. Nothing is written.
    """
    try:
        records = _load_records(input_file)
        snapshots = [EntitySnapshot.from_record(record, entity_type) for record in records]
    except (ValueError, KeyError) as e:
        print_error(f"Cannot read {input_file}: {e}")
        sys.exit(ExitCode.ERROR)

    reconciler = LabelReconciler(_label_table())
    results = reconciler.reconcile_many(snapshots)
    changes = reconciler.plan_reassignments(snapshots)

    if _is_json():
        print_json(
            {
                "results": [] if changes_only else [r.to_dict() for r in results],
                "changes": [
                    {
                        "entity_id": c.entity_id,
                        "current_label_id": c.current_label_id,
                        "proposed_label_id": c.proposed_label_id,
                        "strategy_used": str(c.strategy_used),
                        "confidence": c.confidence.name,
                    }
                    for c in changes
                ],
            }
        )
    else:
        if not changes_only:
            rows = [
                [r.entity_id, r.resolved_label_id, r.strategy_used, r.confidence.name, r.rationale]
                for r in results
            ]
            cprint(make_table("Reconciliation", ["Entity", "Label", "Strategy", "Confidence", "Why"], rows))
            defaults = sum(1 for r in results if r.is_default)
            if defaults:
                print_warning(f"{defaults} record(s) fell back to the default label")
        if changes:
            rows = [
                [c.entity_id, c.current_label_id, c.proposed_label_id, c.confidence.name]
                for c in changes
            ]
            cprint(make_table("Proposed reassignments", ["Entity", "Current", "Proposed", "Confidence"], rows))
        else:
            print_success("No reassignments needed")

    sys.exit(ExitCode.SUCCESS if records else ExitCode.NO_RESULTS)


# ====================================================================
# UPSTREAM SCAN
# ====================================================================


@app.command()
def scan(
    listing_kind: Annotated[str, typer.Argument(help="Upstream listing (tracks, artists, releases...)")],
    label: Annotated[str | None, typer.Option(help="Filter by label reference")] = None,
    page_size: Annotated[int | None, typer.Option(help="Items per page", min=1)] = None,
    max_pages: Annotated[int | None, typer.Option(help="Maximum pages to fetch", min=1)] = None,
) -> None:
    """Drain an upstream listing page by page.

    Reports how many items were collected and whether the listing was
    exhausted or cut short by an error or the page cap.
    """
    filters: dict[str, Any] = {}
    if label is not None:
        label_id = LabelNormalizer(_label_table()).resolve_id(label)
        if label_id is None:
            print_warning(f"No label matches {label!r}")
            sys.exit(ExitCode.NO_RESULTS)
        filters["label"] = label_id

    try:
        with _progress(f"Scanning {listing_kind}..."):
            result = _with_catalog(lambda catalog: catalog.scan(listing_kind, filters, page_size, max_pages))
    except LabelMirrorError as e:
        print_error(str(e))
        sys.exit(ExitCode.ERROR)

    if _is_json():
        print_json(
            {
                "listing": listing_kind,
                "filters": filters,
                "complete": result.complete,
                "pages_fetched": result.pages_fetched,
                "stop_reason": str(result.stop_reason),
                "error": str(result.error) if result.error else None,
                "duplicates": result.duplicates,
                "items": result.items,
            }
        )
    else:
        cprint(
            f"{len(result.items)} {listing_kind} in {result.pages_fetched} page(s), "
            f"stopped on {result.stop_reason}"
        )
        if result.duplicates:
            cprint(f"  {result.duplicates} duplicate(s) dropped")
        if not result.complete:
            print_warning(f"result is incomplete: {result.error or result.stop_reason}")

    sys.exit(ExitCode.SUCCESS if result.complete else ExitCode.DEGRADED)


# ====================================================================
# CACHE COMMANDS
# ====================================================================


@cache_app.command("stats")
def cache_stats() -> None:
    """Show cache store statistics."""
    stats = _with_catalog(lambda catalog: catalog.store.stats())
    result = {"backend": str(state.config.cache.backend), **stats}
    if state.config.cache.backend == CacheBackend.SQLITE:
        result["path"] = str(state.config.cache.path)

    if _is_json():
        print_json(result)
    else:
        cprint("Cache Status")
        cprint("=" * 40)
        for key, value in result.items():
            cprint(f"  {key.replace('_', ' ').capitalize()}: {value}")

    sys.exit(ExitCode.SUCCESS)


@cache_app.command("clear")
def cache_clear(
    force: Annotated[bool, typer.Option(help="Skip confirmation prompt")] = False,
) -> None:
    """Remove every cached entity and label index."""
    if not force:
        typer.confirm("Are you sure you want to clear the cache?", abort=True)

    _with_catalog(lambda catalog: catalog.store.clear_all())

    if _is_json():
        print_json({"action": "clear", "removed_entries": "all"})
    else:
        print_success("Cache cleared")
    sys.exit(ExitCode.SUCCESS)


@cache_app.command("purge")
def cache_purge(
    older_than: Annotated[
        float | None,
        typer.Option(help="Maximum age in seconds (default: the long TTL)", min=0),
    ] = None,
) -> None:
    """Delete entries older than a maximum age.

    Staleness alone never removes an entry; stale entries are kept as
    fallback until purged here.
    """
    max_age = older_than if older_than is not None else float(state.config.cache.long_ttl_s)
    removed = _with_catalog(lambda catalog: catalog.store.purge_older_than(max_age))

    if _is_json():
        print_json({"action": "purge", "max_age_s": max_age, "removed_entries": removed})
    else:
        print_success(f"Purged {removed} entries older than {max_age:g}s")
    sys.exit(ExitCode.SUCCESS)


# ====================================================================
# ENTRY POINT
# ====================================================================


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
