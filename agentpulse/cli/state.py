"""Shared CLI state: console, app, logging setup."""

from __future__ import annotations

import logging
import os
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

# Rich console for all output; logs go to stderr so --json stays parseable
console = Console()
err_console = Console(stderr=True)

DEFAULT_LOG_LEVEL = os.getenv("AGENTPULSE_LOG_LEVEL", "WARNING")

# Typer app
app = typer.Typer(
    name="agentpulse",
    help="Live activity monitor for local coding agents.",
    epilog=(
        "Examples:\n"
        "  agentpulse run\n"
        "  agentpulse run --json --snapshot-file /tmp/agents.json\n"
        "  agentpulse scan\n"
        "  echo '{...}' | agentpulse hook claude\n"
        "  agentpulse config --config ./agentpulse.yaml"
    ),
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Route stdlib logging through a Rich handler on stderr."""
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.WARNING
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(RichHandler(console=err_console, show_path=False, rich_tracebacks=True))
    root.setLevel(resolved)


@app.callback()
def main(
    log_level: Annotated[
        str,
        typer.Option("--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
    ] = DEFAULT_LOG_LEVEL,
) -> None:
    """Live activity monitor for local coding agents."""
    setup_logging(log_level)
