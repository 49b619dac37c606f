"""Shared Rich console and output helpers for the label-mirror CLI."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from rich.console import Console
from rich.status import Status
from rich.table import Table

# Global console instance (initialized in CLI)
_console: Console | None = None


def get_console() -> Console:
    """Get the global Rich console instance.

    Raises:
        RuntimeError: If console not initialized (should only happen in tests)
    """
    if _console is None:
        raise RuntimeError("Console not initialized. Call set_console() first.")
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console


@contextmanager
def status(message: str, spinner: str = "dots") -> Iterator[Status]:
    """Show a spinner while a long operation (an upstream scan) runs.

    Example:
        with status("Scanning tracks...") as st:
            st.update("Reconciling...")
    """
    with get_console().status(message, spinner=spinner) as st:
        yield st


def make_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a simple Rich table; cells are stringified."""
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*("" if cell is None else str(cell) for cell in row))
    return table


def print(*args: Any, **kwargs: Any) -> None:
    """Print to the global console."""
    get_console().print(*args, **kwargs)


def print_json(data: Any) -> None:
    """Print plain JSON to stdout, bypassing Rich markup and wrapping."""
    import json
    import sys

    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def print_error(message: str) -> None:
    get_console().print(f"[red]Error: {message}[/red]")


def print_warning(message: str) -> None:
    get_console().print(f"[yellow]Warning: {message}[/yellow]")


def print_success(message: str) -> None:
    get_console().print(f"[green]{message}[/green]")
