"""CLI package for agentpulse."""

from .errors import (
    CliUsageError,
    ConfigLoadError,
    InvalidPayloadError,
    InvalidProviderError,
)
from .formatting import render_agents_table
from .state import app

# Import subcommand modules so their @app.command() decorators register
from . import admin as _admin  # noqa: F401
from . import monitor as _monitor  # noqa: F401


def cli() -> None:
    """CLI entrypoint."""
    app(prog_name="agentpulse")


__all__ = [
    "CliUsageError",
    "ConfigLoadError",
    "InvalidPayloadError",
    "InvalidProviderError",
    "app",
    "cli",
    "render_agents_table",
]


if __name__ == "__main__":
    cli()
