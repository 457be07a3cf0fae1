"""Configuration for the monitor daemon."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .activity.machine import ActivityContext

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "agentpulse"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_INBOX_FILE = DEFAULT_CONFIG_DIR / "inbox.jsonl"

ENV_PREFIX = "AGENTPULSE_"
MIN_POLL_MS = 50

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when a configuration source cannot be used."""


def _coerce_number(value: Any, default: float | None) -> float | None:
    """Parse ``value`` as a finite number, falling back to ``default``."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(number):
        return default
    return number


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    return default


def _coerce_field(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return _coerce_bool(value, default)
    if isinstance(default, (int, float)):
        return _coerce_number(value, default)
    if value is None or isinstance(value, str):
        return value or default
    return default


def _section_from_dict(cls: type, data: Any) -> Any:
    """Build a section dataclass, keeping defaults for unknown or bad values."""
    section = cls()
    if not isinstance(data, dict):
        return section
    for f in fields(cls):
        if f.name in data:
            setattr(section, f.name, _coerce_field(data[f.name], getattr(section, f.name)))
    return section


def _apply_env(section: Any, prefix: str, environ: dict[str, str]) -> None:
    for f in fields(section):
        raw = environ.get(f"{prefix}{f.name.upper()}")
        if raw is None or raw == "":
            continue
        setattr(section, f.name, _coerce_field(raw, getattr(section, f.name)))


@dataclass
class ScanConfig:
    """Process polling."""

    poll_ms: float = 250
    stale_file_ms: float = 0  # 0 disables stale-pin dropping
    process_match: str | None = None
    snapshot_file: str | None = None
    inbox_file: str = str(DEFAULT_INBOX_FILE)

    @property
    def interval_seconds(self) -> float:
        return max(self.poll_ms, MIN_POLL_MS) / 1000


@dataclass
class ActivityConfig:
    """Runtime store timers."""

    idle_hold_ms: float = 200
    stale_span_ms: float = 15_000


@dataclass
class CodexConfig:
    """Headless CLI agent thresholds."""

    cpu_threshold: float = 1
    sustain_ms: float = 500
    event_window_ms: float = 30_000
    hold_ms: float = 3_000
    in_flight_idle_ms: float = 30_000
    spike_multiplier: float = 10
    spike_minimum: float = 25
    in_flight_grace_ms: float = 0
    strict_in_flight: bool = False
    home: str | None = None

    def context(self, **evidence: Any) -> ActivityContext:
        return ActivityContext(
            cpu_threshold=self.cpu_threshold,
            sustain_ms=self.sustain_ms,
            event_window_ms=self.event_window_ms,
            hold_ms=self.hold_ms,
            in_flight_idle_ms=self.in_flight_idle_ms if self.in_flight_idle_ms > 0 else None,
            spike_multiplier=self.spike_multiplier,
            spike_minimum=self.spike_minimum,
            in_flight_grace_ms=self.in_flight_grace_ms,
            strict_in_flight=self.strict_in_flight,
            **evidence,
        )


@dataclass
class OpenCodeConfig:
    """Server-mode agent thresholds."""

    cpu_threshold: float = 1
    sustain_ms: float = 500
    event_window_ms: float = 1_000
    hold_ms: float = 3_000
    in_flight_idle_ms: float = 15_000
    spike_multiplier: float = 10
    spike_minimum: float = 25
    in_flight_grace_ms: float = 0
    strict_in_flight: bool = True
    idle_debounce_ms: float = 200
    host: str = "127.0.0.1"
    port: float = 4096
    api_enabled: bool = True
    api_timeout_ms: float = 5_000
    activity_window_ms: float = 600_000
    events_enabled: bool = True
    reconnect_ms: float = 10_000

    def context(self, **evidence: Any) -> ActivityContext:
        return ActivityContext(
            cpu_threshold=self.cpu_threshold,
            sustain_ms=self.sustain_ms,
            event_window_ms=self.event_window_ms,
            hold_ms=self.hold_ms,
            in_flight_idle_ms=self.in_flight_idle_ms if self.in_flight_idle_ms > 0 else None,
            spike_multiplier=self.spike_multiplier,
            spike_minimum=self.spike_minimum,
            in_flight_grace_ms=self.in_flight_grace_ms,
            strict_in_flight=self.strict_in_flight,
            **evidence,
        )


@dataclass
class ClaudeConfig:
    """Interactive terminal agent thresholds."""

    cpu_threshold: float = 1
    tui_cpu_threshold: float = 10
    sustain_ms: float = 1_000
    event_window_ms: float = 0
    hold_ms: float = 0
    spike_multiplier: float = 10
    spike_minimum: float = 25
    start_grace_ms: float = 1_200
    in_flight_timeout_ms: float = 15_000
    event_ttl_ms: float = 1_800_000

    def context(self, *, tui_without_hooks: bool = False, **evidence: Any) -> ActivityContext:
        # Without hook evidence a TUI only counts sustained CPU, never a spike.
        return ActivityContext(
            cpu_threshold=self.tui_cpu_threshold if tui_without_hooks else self.cpu_threshold,
            sustain_ms=self.sustain_ms,
            event_window_ms=self.event_window_ms,
            hold_ms=self.hold_ms,
            spike_multiplier=self.spike_multiplier,
            spike_minimum=math.inf if tui_without_hooks else self.spike_minimum,
            **evidence,
        )


_SECTIONS: dict[str, type] = {
    "scan": ScanConfig,
    "activity": ActivityConfig,
    "codex": CodexConfig,
    "opencode": OpenCodeConfig,
    "claude": ClaudeConfig,
}


@dataclass
class MonitorConfig:
    """Main monitor configuration."""

    scan: ScanConfig = field(default_factory=ScanConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    codex: CodexConfig = field(default_factory=CodexConfig)
    opencode: OpenCodeConfig = field(default_factory=OpenCodeConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    source: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonitorConfig:
        """Create config from dictionary (e.g., parsed YAML)."""
        root = data.get("agentpulse", data)
        if not isinstance(root, dict):
            raise ConfigError("Config document must be a mapping")
        sections = {
            name: _section_from_dict(section_cls, root.get(name))
            for name, section_cls in _SECTIONS.items()
        }
        return cls(**sections)

    @classmethod
    def from_yaml(cls, path: str | Path) -> MonitorConfig:
        """Load config from YAML file."""
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        config = cls.from_dict(data)
        config.source = str(path)
        return config

    def apply_env(self, environ: dict[str, str] | None = None) -> MonitorConfig:
        """Overlay ``AGENTPULSE_<SECTION>_<FIELD>`` variables onto this config."""
        env = dict(os.environ if environ is None else environ)
        for name in _SECTIONS:
            _apply_env(getattr(self, name), f"{ENV_PREFIX}{name.upper()}_", env)
        return self

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        environ: dict[str, str] | None = None,
    ) -> MonitorConfig:
        """Load config with precedence: explicit path > env path > default file > defaults.

        Args:
            config_path: Explicit path to config file (highest precedence).
            environ: Environment mapping; defaults to ``os.environ``.

        Returns:
            Loaded config with ``AGENTPULSE_*`` overrides applied.
        """
        env = dict(os.environ if environ is None else environ)
        if config_path:
            config = cls.from_yaml(config_path)
        elif env.get(f"{ENV_PREFIX}CONFIG"):
            config = cls.from_yaml(env[f"{ENV_PREFIX}CONFIG"])
        elif DEFAULT_CONFIG_FILE.exists():
            config = cls.from_yaml(DEFAULT_CONFIG_FILE)
        else:
            config = cls()
        logger.debug("Loaded config from %s", config.source or "defaults")
        return config.apply_env(env)

    def to_dict(self) -> dict[str, Any]:
        return {
            name: {f.name: getattr(getattr(self, name), f.name) for f in fields(section_cls)}
            for name, section_cls in _SECTIONS.items()
        }
