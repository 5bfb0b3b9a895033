"""Core data models for the conversation engine.

All dataclasses, enums, and identity helpers. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum

# Prefix of the synthetic external id recorded when the chat platform
# accepted a post but did not hand back a message timestamp.
SYNTHETIC_ID_PREFIX = "delivered-no-id-"

# Prefix of the agent turn id given to user messages, which the agent
# backend never assigns an id of its own.
USER_TURN_PREFIX = "user_"

UPDATE_RATE_MIN = 1.0
UPDATE_RATE_MAX = 10.0
UPDATE_RATE_DEFAULT = 3.0

MESSAGE_SIZE_MIN = 100
MESSAGE_SIZE_MAX = 36000  # 90% of the platform's 40000 char limit
MESSAGE_SIZE_DEFAULT = 500

THINKING_TOKENS_MIN = 1024
THINKING_TOKENS_MAX = 128000
THINKING_TOKENS_DEFAULT = 31999


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


# Short names accepted by the `mode` command.
MODE_SHORTCUTS: dict[str, PermissionMode] = {
    "plan": PermissionMode.PLAN,
    "bypass": PermissionMode.BYPASS,
    "ask": PermissionMode.DEFAULT,
    "edit": PermissionMode.ACCEPT_EDITS,
}


class TurnKind(str, Enum):
    USER = "user"
    AGENT = "agent"


class QueryStatus(str, Enum):
    """Live invocation states. See lifecycle.py for transition rules."""
    STARTING = "starting"
    THINKING = "thinking"
    TOOL = "tool"
    COMPLETE = "complete"
    ERROR = "error"
    ABORTED = "aborted"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def message_ts_value(ts: str | None) -> Decimal | None:
    """Parse a platform message timestamp for ordering, or None."""
    if not ts:
        return None
    try:
        value = Decimal(ts)
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


def synthetic_message_id(turn_id: str) -> str:
    return f"{SYNTHETIC_ID_PREFIX}{turn_id}"


def is_placeholder_message_id(external_id: str) -> bool:
    """True for locally fabricated external ids (never a real timestamp)."""
    return external_id.startswith(SYNTHETIC_ID_PREFIX)


@dataclass(frozen=True)
class ConversationKey:
    """Conversation identity: a channel plus an optional thread origin."""
    channel: str
    thread_origin: str | None = None

    @property
    def is_thread(self) -> bool:
        return self.thread_origin is not None

    @property
    def root(self) -> ConversationKey:
        return ConversationKey(self.channel)

    def __str__(self) -> str:
        if self.thread_origin is None:
            return self.channel
        return f"{self.channel}_{self.thread_origin}"


@dataclass
class TurnRecord:
    """Binds one externally visible message to the agent turn it shows.

    A long agent turn split across several messages yields one primary
    record (carrying ``parent_message_id``) plus continuation records
    that share the same ``agent_turn_id``.
    """
    agent_turn_id: str
    kind: TurnKind = TurnKind.AGENT
    agent_session_id: str | None = None
    parent_message_id: str | None = None
    is_continuation: bool = False


@dataclass
class ForkPoint:
    """The prior agent turn a new thread session resumes from."""
    turn_id: str
    agent_session_id: str


@dataclass
class UsageStats:
    """Token and cost figures from the last finished invocation."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    model: str | None = None

    @property
    def context_tokens(self) -> int:
        return (
            self.input_tokens
            + self.cache_read_input_tokens
            + self.cache_creation_input_tokens
        )


@dataclass
class Session:
    """Persisted state of one conversation (channel root or thread)."""
    agent_session_id: str | None = None
    previous_agent_session_ids: list[str] = field(default_factory=list)
    # Ancestry, set once when the thread is forked.
    forked_from: str | None = None
    forked_from_thread_origin: str | None = None
    resume_at_turn_id: str | None = None
    # Mutable configuration, read live by an in-flight invocation.
    working_directory: str = "."
    # Set by /set-current-path or /resume; /cd is refused afterwards.
    path_locked: bool = False
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    model: str | None = None
    update_rate_seconds: float = UPDATE_RATE_DEFAULT
    message_size_limit: int = MESSAGE_SIZE_DEFAULT
    max_thinking_tokens: int | None = None
    last_usage: UsageStats | None = None
    turn_map: dict[str, TurnRecord] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    last_active_at: datetime = field(default_factory=_utcnow)

    def all_agent_session_ids(self) -> list[str]:
        ids = list(self.previous_agent_session_ids)
        if self.agent_session_id:
            ids.append(self.agent_session_id)
        return ids

    def delivered_turn_ids(self) -> set[str]:
        return {
            record.agent_turn_id
            for record in self.turn_map.values()
            if record.kind == TurnKind.AGENT
        }


# Fields copied from the channel root into a newly created thread session.
INHERITED_FIELDS = (
    "working_directory",
    "path_locked",
    "permission_mode",
    "model",
    "update_rate_seconds",
    "message_size_limit",
    "max_thinking_tokens",
)

# Ancestry fields may be written once and never changed afterwards.
IMMUTABLE_FIELDS = (
    "forked_from",
    "forked_from_thread_origin",
    "resume_at_turn_id",
)


@dataclass
class StatusProgress:
    """Everything the status message of one invocation shows."""
    status: QueryStatus = QueryStatus.STARTING
    model: str | None = None
    current_tool: str | None = None
    tools_used: int = 0
    thinking_blocks: int = 0
    started_monotonic: float = field(default_factory=time.monotonic)
    error_message: str | None = None
    usage: UsageStats | None = None
    rate_limit_notified: bool = False

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic


@dataclass
class PendingApproval:
    """A tool call waiting for a human allow/deny decision."""
    approval_id: str
    key: ConversationKey
    tool_name: str
    tool_input: dict
    future: asyncio.Future | None = field(default=None, repr=False)
    message_id: str | None = None
    reminders_sent: int = 0
    created_at: datetime = field(default_factory=_utcnow)
