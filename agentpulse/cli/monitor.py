"""Monitoring commands: run, scan."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.live import Live

from ..config import ConfigError, MonitorConfig
from ..daemon import MonitorDaemon, build_opencode_api
from ..scan.scanner import AgentScanner
from ..types import SnapshotPayload
from .errors import CliUsageError, ConfigLoadError
from .formatting import ERROR, _markup, render_agents_table
from .state import app, console

load_dotenv()

# Gap between the baseline and the measured CPU sample of a one-shot scan.
CPU_SAMPLE_SECONDS = 0.5


def load_config(config_path: str | None) -> MonitorConfig:
    """Resolve config for a command, translating failures into a usage error."""
    try:
        return MonitorConfig.load(config_path=config_path)
    except ConfigError as e:
        raise ConfigLoadError(str(e)) from e


def fail(exc: CliUsageError) -> typer.Exit:
    console.print(_markup(str(exc), ERROR))
    return typer.Exit(1)


def _emit_json(payload: SnapshotPayload) -> None:
    typer.echo(json.dumps(payload.to_dict()))


@app.command()
def run(
    config_path: Annotated[
        str | None,
        typer.Option("--config", "-c", help="Path to a YAML config file"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Emit one JSON snapshot per line instead of a table"),
    ] = False,
    snapshot_file: Annotated[
        str | None,
        typer.Option("--snapshot-file", help="Atomically rewrite this file with each snapshot"),
    ] = None,
    poll_ms: Annotated[
        float | None,
        typer.Option("--poll-ms", help="Scan interval in milliseconds (minimum 50)"),
    ] = None,
    ticks: Annotated[
        int | None,
        typer.Option("--ticks", help="Stop after this many scans"),
    ] = None,
) -> None:
    """Watch agent processes and publish live activity snapshots."""
    try:
        config = load_config(config_path)
    except CliUsageError as e:
        raise fail(e) from e
    if snapshot_file:
        config.scan.snapshot_file = snapshot_file
    if poll_ms is not None:
        config.scan.poll_ms = poll_ms

    daemon = MonitorDaemon(config)
    try:
        if json_output:
            daemon.add_listener(_emit_json)
            asyncio.run(daemon.run(max_ticks=ticks))
            return
        with Live(
            render_agents_table(SnapshotPayload(ts=0)), console=console, refresh_per_second=4
        ) as live:
            daemon.add_listener(lambda payload: live.update(render_agents_table(payload)))
            asyncio.run(daemon.run(max_ticks=ticks))
    except KeyboardInterrupt:
        console.print("[dim]Monitor stopped[/dim]")


@app.command()
def scan(
    config_path: Annotated[
        str | None,
        typer.Option("--config", "-c", help="Path to a YAML config file"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Print the snapshot as JSON"),
    ] = False,
) -> None:
    """Run a single scan and print the detected agents."""
    try:
        config = load_config(config_path)
    except CliUsageError as e:
        raise fail(e) from e

    scanner = AgentScanner(config, opencode_api=build_opencode_api(config))
    # psutil reports 0.0 for the first sample of a process; take a baseline first.
    scanner.process_source.list_processes()
    time.sleep(CPU_SAMPLE_SECONDS)
    result = scanner.scan()
    if json_output:
        _emit_json(result.payload)
        return
    console.print(render_agents_table(result.payload))
