"""Admin commands: hook, config."""

from __future__ import annotations

import json
import sys
from typing import Annotated, Any

import typer
import yaml

from ..inbox import HookInbox
from ..providers.claude import ClaudeHookEvent
from ..providers.codex import CodexNotifyEvent
from ..providers.commands import Provider
from .errors import CliUsageError, InvalidPayloadError, InvalidProviderError
from .formatting import MUTED, _markup
from .monitor import fail, load_config
from .state import app, console


def parse_hook_payload(provider: str, raw: str) -> dict[str, Any]:
    """Validate and normalize a raw hook payload for ``provider``."""
    try:
        resolved = Provider(provider.lower())
    except ValueError as e:
        allowed = "|".join(p.value for p in Provider)
        raise InvalidProviderError(provider, allowed) from e

    if not raw.strip():
        raise InvalidPayloadError("empty input")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidPayloadError(f"not JSON ({e.msg})") from e
    if not isinstance(data, dict):
        raise InvalidPayloadError("expected a JSON object")

    if resolved is Provider.CLAUDE:
        event = ClaudeHookEvent.from_payload(data)
        if event is None:
            raise InvalidPayloadError("missing hook_event_name or session_id")
        return event.to_payload()
    if resolved is Provider.CODEX:
        notify = CodexNotifyEvent.from_payload(data)
        if notify is None:
            raise InvalidPayloadError("missing event type or thread id")
        return notify.to_payload()
    return data


@app.command()
def hook(
    provider: Annotated[
        str,
        typer.Argument(help="Provider sending the hook: codex, opencode or claude"),
    ],
    payload: Annotated[
        str | None,
        typer.Argument(help="JSON payload; read from stdin when omitted"),
    ] = None,
    config_path: Annotated[
        str | None,
        typer.Option("--config", "-c", help="Path to a YAML config file"),
    ] = None,
) -> None:
    """Queue a provider hook payload for the running monitor."""
    raw = payload if payload is not None else sys.stdin.read()
    try:
        config = load_config(config_path)
        normalized = parse_hook_payload(provider, raw)
    except CliUsageError as e:
        raise fail(e) from e

    HookInbox(config.scan.inbox_file).append(provider.lower(), normalized)


@app.command(name="config")
def show_config(
    config_path: Annotated[
        str | None,
        typer.Option("--config", "-c", help="Path to a YAML config file"),
    ] = None,
) -> None:
    """Print the resolved configuration."""
    try:
        config = load_config(config_path)
    except CliUsageError as e:
        raise fail(e) from e

    console.print(_markup(f"# source: {config.source or 'defaults'}", MUTED))
    console.print(yaml.safe_dump(config.to_dict(), sort_keys=False), markup=False, highlight=False)
