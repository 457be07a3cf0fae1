"""Command-line parsing and process detection for the supported providers."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from ..types import AgentKind


class Provider(StrEnum):
    CODEX = "codex"
    OPENCODE = "opencode"
    CLAUDE = "claude"


_ARG_RE = re.compile(r"\"([^\"]*)\"|'([^']*)'|\S+")
_PATH_SPLIT_RE = re.compile(r"[\\/]")
_VENDOR_RE = re.compile(r"[\\/]+codex[\\/]+vendor[\\/]+", re.IGNORECASE)
_CODEX_TOKEN_RES = (
    re.compile(r"(?:^|\s|[\\/])codex(?:-cli)?(\.exe)?(?:\s|$)", re.IGNORECASE),
    re.compile(r"[\\/]+codex(?:-cli)?(\.exe)?", re.IGNORECASE),
)

CODEX_BINARIES = frozenset({"codex", "codex.exe", "codex-cli", "codex-cli.exe"})
OPENCODE_BINARIES = frozenset({"opencode", "opencode.exe"})
CLAUDE_BINARIES = frozenset({"claude", "claude.exe"})


def split_args(command: str | None) -> list[str]:
    """Split a command line, honouring single and double quotes."""
    if not command:
        return []
    args = []
    for match in _ARG_RE.finditer(command):
        token = match.group(1) if match.group(1) is not None else match.group(2)
        if token is None:
            token = match.group(0)
        if token:
            args.append(token)
    return args


def _basename(value: str) -> str:
    cleaned = value.strip().strip("\"'")
    return _PATH_SPLIT_RE.split(cleaned)[-1]


def _first_token(cmd: str | None) -> str:
    parts = (cmd or "").split()
    return parts[0] if parts else ""


# --- detection --------------------------------------------------------------


def is_opencode_process(cmd: str | None, name: str | None) -> bool:
    if not cmd and not name:
        return False
    if (name or "").lower() == "opencode":
        return True
    return _basename(_first_token(cmd)).lower() in OPENCODE_BINARIES


def is_claude_process(cmd: str | None, name: str | None) -> bool:
    if not cmd and not name:
        return False
    if name == "claude":
        return True
    return _basename(_first_token(cmd)) in CLAUDE_BINARIES


def has_codex_vendor_path(cmd: str) -> bool:
    return bool(_VENDOR_RE.search(cmd))


def is_codex_process(
    cmd: str | None, name: str | None, match_re: re.Pattern[str] | None = None
) -> bool:
    """Detect the headless CLI agent, skipping its vendored helper binaries."""
    if not cmd and not name:
        return False
    if match_re is not None:
        return bool(match_re.search(cmd or "") or match_re.search(name or ""))
    if is_opencode_process(cmd, name) or is_claude_process(cmd, name):
        return False
    cmd_line = cmd or ""
    if has_codex_vendor_path(cmd_line):
        return False
    if name and _basename(name).lower() in CODEX_BINARIES:
        return True
    if _basename(_first_token(cmd_line)).lower() in CODEX_BINARIES:
        return True
    return any(regex.search(cmd_line) for regex in _CODEX_TOKEN_RES)


def detect_provider(
    cmd: str | None, name: str | None, match_re: re.Pattern[str] | None = None
) -> Provider | None:
    if is_opencode_process(cmd, name):
        return Provider.OPENCODE
    if is_claude_process(cmd, name):
        return Provider.CLAUDE
    if is_codex_process(cmd, name, match_re):
        return Provider.CODEX
    return None


# --- codex ------------------------------------------------------------------


def infer_codex_kind(cmd: str) -> AgentKind:
    if " app-server" in cmd:
        return AgentKind.APP_SERVER
    if " exec" in cmd:
        return AgentKind.EXEC
    return AgentKind.TUI


def codex_session_id_from_cmd(cmd: str) -> str | None:
    """Session id named by ``resume <id>`` or ``--session-id <id>``, if any."""
    parts = split_args(cmd)
    for flag in ("--session-id", "--session"):
        value = _flag_value(parts, flag)
        if value:
            return value
    if "resume" in parts:
        token = _next(parts, parts.index("resume"))
        if token and not token.startswith("-"):
            return token
    return None


def parse_codex_doing(cmd: str) -> str | None:
    parts = cmd.split()
    if "exec" in parts:
        for i in range(parts.index("exec") + 1, len(parts)):
            part = parts[i]
            if part == "--":
                following = _next(parts, i)
                return f"exec: {following}" if following else "exec"
            if not part.startswith("-"):
                return f"exec: {part}"
        return "exec"
    if "resume" in parts:
        token = _next(parts, parts.index("resume"))
        return f"resume: {token}" if token else "resume"
    if "monitor" in parts:
        return "monitor"
    if "app-server" in cmd:
        return "app-server"
    if cmd.startswith("codex"):
        return "codex"
    return None


# --- opencode ---------------------------------------------------------------

_OPENCODE_VALUE_FLAGS = frozenset(
    {"--cwd", "--model", "--agent", "--port", "--hostname", "--config", "--log-level"}
)


@dataclass(frozen=True, slots=True)
class OpenCodeCommand:
    kind: AgentKind
    mode: str | None = None
    prompt: str | None = None

    @property
    def doing(self) -> str:
        if self.mode in ("serve", "web"):
            return f"opencode {self.mode}"
        if self.mode == "run":
            return f"opencode run: {self.prompt}" if self.prompt else "opencode run"
        return "opencode"


def parse_opencode_command(cmd: str) -> OpenCodeCommand | None:
    parts = split_args(cmd)
    index = next(
        (i for i, part in enumerate(parts) if _basename(part).lower() in OPENCODE_BINARIES),
        -1,
    )
    if index == -1:
        return None
    following = _next(parts, index)
    if following in ("serve", "web"):
        return OpenCodeCommand(AgentKind.OPENCODE_SERVER, mode=following)
    rest = parts[index + 1 :]
    if "run" in rest:
        run_index = index + 1 + rest.index("run")
        prompt = _find_prompt(parts, run_index + 1, _OPENCODE_VALUE_FLAGS)
        return OpenCodeCommand(AgentKind.OPENCODE_CLI, mode="run", prompt=prompt)
    if {"--serve", "--web", "--hostname", "--port"} & set(parts):
        return OpenCodeCommand(AgentKind.OPENCODE_SERVER)
    return OpenCodeCommand(AgentKind.OPENCODE_TUI)


# --- claude -----------------------------------------------------------------

_CLAUDE_VALUE_FLAGS = frozenset(
    {
        "--output-format",
        "--input-format",
        "--model",
        "--max-turns",
        "--max-budget-usd",
        "--tools",
        "--allowedTools",
        "--disallowedTools",
        "--resume",
        "-r",
        "--session-id",
        "--continue",
        "-c",
    }
)


@dataclass(frozen=True, slots=True)
class ClaudeCommand:
    kind: AgentKind
    prompt: str | None = None
    resume: str | None = None
    session_id: str | None = None
    continued: bool = False
    model: str | None = None
    print_mode: bool = False

    @property
    def doing(self) -> str:
        if self.prompt:
            return f"prompt: {self.prompt}"
        if self.resume:
            return f"resume: {self.resume}"
        if self.continued:
            return "continue"
        if self.print_mode:
            return "claude print"
        return "claude"


def parse_claude_command(cmd: str) -> ClaudeCommand | None:
    parts = split_args(cmd)
    index = next((i for i, part in enumerate(parts) if _basename(part) in CLAUDE_BINARIES), -1)
    if index == -1:
        return None
    print_mode = "-p" in parts or "--print" in parts
    prompt = None
    for i in range(index + 1, len(parts)):
        if parts[i] in ("-p", "--print"):
            following = _next(parts, i)
            if following and not following.startswith("-"):
                prompt = following
                break
    if prompt is None:
        prompt = _find_prompt(parts, index + 1, _CLAUDE_VALUE_FLAGS)
    return ClaudeCommand(
        kind=AgentKind.CLAUDE_CLI if print_mode else AgentKind.CLAUDE_TUI,
        prompt=prompt,
        resume=_flag_value(parts, "--resume") or _flag_value(parts, "-r"),
        session_id=_flag_value(parts, "--session-id"),
        continued="--continue" in parts or "-c" in parts,
        model=_flag_value(parts, "--model"),
        print_mode=print_mode,
    )


# --- shared helpers ---------------------------------------------------------


def _next(parts: list[str], index: int) -> str | None:
    return parts[index + 1] if index + 1 < len(parts) else None


def _flag_value(parts: list[str], flag: str) -> str | None:
    if flag not in parts:
        return None
    value = _next(parts, parts.index(flag))
    if not value or value.startswith("-"):
        return None
    return value


def _find_prompt(parts: list[str], start: int, value_flags: frozenset[str]) -> str | None:
    i = start
    while i < len(parts):
        part = parts[i]
        if part.startswith("-"):
            if part in value_flags:
                i += 1
        elif part:
            return part
        i += 1
    return None


def shorten_cmd(cmd: str, limit: int = 120) -> str:
    clean = " ".join(cmd.split())
    if len(clean) <= limit:
        return clean
    return f"{clean[: limit - 3]}..."


_TITLE_PREFIXES = (
    ("cmd:", "Run"),
    ("edit:", "Editing"),
    ("tool:", "Tool"),
    ("exec:", "Exec"),
    ("resume:", "Resume"),
    ("prompt:", "Prompt"),
)


def derive_title(doing: str | None, repo: str | None, provider: Provider, pid: int) -> str:
    if doing:
        trimmed = doing.strip()
        for prefix, verb in _TITLE_PREFIXES:
            if trimmed.startswith(prefix):
                return f"{verb} {trimmed[len(prefix):].strip()}"
    if repo:
        return os.path.basename(repo.rstrip(os.sep)) or repo
    return f"{provider}#{pid}"


class RepoRootCache:
    """Memoised ``.git`` lookup walking up from a working directory."""

    def __init__(self) -> None:
        self._cache: dict[str, str | None] = {}

    def find(self, cwd: str | None) -> str | None:
        if not cwd:
            return None
        if cwd in self._cache:
            return self._cache[cwd]
        current = Path(cwd)
        root: str | None = None
        for candidate in (current, *current.parents):
            if (candidate / ".git").exists():
                root = str(candidate)
                break
        self._cache[cwd] = root
        return root

    def clear(self) -> None:
        self._cache.clear()
