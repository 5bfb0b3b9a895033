"""Slash command parser, help table and argument validation."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from chatbridge.engine.models import (
    MESSAGE_SIZE_DEFAULT,
    MESSAGE_SIZE_MAX,
    MESSAGE_SIZE_MIN,
    MODE_SHORTCUTS,
    THINKING_TOKENS_MAX,
    THINKING_TOKENS_MIN,
    UPDATE_RATE_MAX,
    UPDATE_RATE_MIN,
    PermissionMode,
)

_MENTION_RE = re.compile(r"^\s*<@[A-Z0-9]+>\s*", re.IGNORECASE)
_SESSION_ID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


@dataclass
class ParsedCommand:
    """A parsed slash command."""

    name: str
    args: list[str]
    raw: str

    @property
    def arg_text(self) -> str:
        return " ".join(self.args)


def parse_command(text: str) -> ParsedCommand | None:
    """Parse a /command from message text.

    A leading bot mention is ignored. Returns None if the text does not
    start with '/'.
    """
    stripped = _MENTION_RE.sub("", text).strip()
    if not stripped.startswith("/"):
        return None
    parts = stripped.split()
    name = parts[0][1:].lower()
    args = parts[1:] if len(parts) > 1 else []
    return ParsedCommand(name=name, args=args, raw=stripped)


COMMAND_HELP: dict[str, str] = {
    "status": "Show session id, mode, model, tunables and last usage",
    "context": "Show token usage of the last request",
    "mode": "/mode plan|bypass|ask|edit - switch permission mode",
    "model": "/model NAME - switch model (not while a request is running)",
    "update-rate": "/update-rate [1-10] - seconds between status refreshes",
    "message-size": f"/message-size [{MESSAGE_SIZE_MIN}-{MESSAGE_SIZE_MAX}] - max characters per posted message",
    "max-thinking-tokens": f"/max-thinking-tokens [0|{THINKING_TOKENS_MIN}-{THINKING_TOKENS_MAX}] - thinking budget (0 disables)",
    "clear": "Start a fresh agent session (history stays available to forks)",
    "resume": "/resume SESSION_ID - continue an existing agent session here",
    "cwd": "Show the working directory",
    "cd": "/cd PATH - change the working directory (until it is locked)",
    "set-current-path": "Lock the working directory (one time only)",
    "fork-thread": "/fork-thread DESCRIPTION - branch this thread into a new one",
    "abort": "Stop the running request",
    "help": "Show this help message",
}

# Commands that may run while the conversation has an active request.
LIGHTWEIGHT_COMMANDS = frozenset({
    "status",
    "help",
    "update-rate",
    "message-size",
    "max-thinking-tokens",
    "mode",
    "abort",
})


def help_text() -> str:
    lines = ["*Commands*"]
    lines.extend(f"`/{name}` {desc}" for name, desc in COMMAND_HELP.items())
    return "\n".join(lines)


def parse_mode(arg: str) -> PermissionMode:
    """Accept a shortcut (plan, bypass, ask, edit) or a full mode value."""
    key = arg.strip()
    if key.lower() in MODE_SHORTCUTS:
        return MODE_SHORTCUTS[key.lower()]
    try:
        return PermissionMode(key)
    except ValueError:
        raise ValueError(
            f"Unknown mode `{arg}`. Use one of: {', '.join(MODE_SHORTCUTS)}"
        ) from None


def parse_update_rate(arg: str) -> float:
    try:
        value = float(arg)
    except ValueError:
        raise ValueError(
            f"Invalid value. Please provide a number between {UPDATE_RATE_MIN:g} "
            f"and {UPDATE_RATE_MAX:g} seconds."
        ) from None
    if value < UPDATE_RATE_MIN:
        raise ValueError(f"Invalid value. Minimum is {UPDATE_RATE_MIN:g} second.")
    if value > UPDATE_RATE_MAX:
        raise ValueError(f"Invalid value. Maximum is {UPDATE_RATE_MAX:g} seconds.")
    return value


def parse_message_size(arg: str) -> int:
    try:
        value = int(arg)
    except ValueError:
        raise ValueError(
            f"Invalid number. Usage: /message-size <{MESSAGE_SIZE_MIN}-{MESSAGE_SIZE_MAX}> "
            f"(default={MESSAGE_SIZE_DEFAULT})"
        ) from None
    if value < MESSAGE_SIZE_MIN or value > MESSAGE_SIZE_MAX:
        raise ValueError(
            f"Value must be between {MESSAGE_SIZE_MIN} and {MESSAGE_SIZE_MAX}. "
            f"Default is {MESSAGE_SIZE_DEFAULT}."
        )
    return value


def parse_thinking_tokens(arg: str) -> int:
    try:
        value = int(arg.replace(",", ""))
    except ValueError:
        raise ValueError(
            "Invalid value. Please provide a number (0 to disable, or "
            f"{THINKING_TOKENS_MIN:,}-{THINKING_TOKENS_MAX:,})."
        ) from None
    if value == 0:
        return 0
    if value < THINKING_TOKENS_MIN:
        raise ValueError(
            f"Invalid value. Minimum is {THINKING_TOKENS_MIN:,} tokens (or 0 to disable)."
        )
    if value > THINKING_TOKENS_MAX:
        raise ValueError(f"Invalid value. Maximum is {THINKING_TOKENS_MAX:,} tokens.")
    return value


def parse_session_id(arg: str) -> str:
    """Validate an agent session id (a UUID)."""
    value = arg.strip()
    if not _SESSION_ID_RE.match(value):
        raise ValueError(f"Invalid session ID format: `{arg}`")
    return value.lower()


def resolve_directory(arg: str, current: str) -> str:
    """Resolve a /cd target against the current working directory.

    Returns the real path of an existing, readable directory.
    """
    target = os.path.join(current, os.path.expanduser(arg))
    if not os.path.exists(target):
        raise ValueError(f"Directory does not exist: `{target}`")
    if not os.path.isdir(target):
        raise ValueError(f"Not a directory: `{target}`")
    if not os.access(target, os.R_OK | os.X_OK):
        raise ValueError(f"Cannot access directory: `{target}`")
    return os.path.realpath(target)
