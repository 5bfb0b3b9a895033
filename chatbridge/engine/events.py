"""Event types produced by an agent backend invocation.

Backends translate their raw stream into these typed dataclasses at the
boundary; the orchestrator never inspects raw SDK payloads.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentEvent:
    """Base event from an agent backend stream."""
    event_type: str = ""


@dataclass
class SessionInit(AgentEvent):
    """First event of every invocation: the assigned agent session id."""
    event_type: str = "session_init"
    session_id: str = ""
    model: str | None = None


@dataclass
class ThinkingStarted(AgentEvent):
    event_type: str = "thinking_started"


@dataclass
class ThinkingCompleted(AgentEvent):
    event_type: str = "thinking_completed"
    text: str = ""


@dataclass
class ToolStarted(AgentEvent):
    event_type: str = "tool_started"
    tool_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCompleted(AgentEvent):
    event_type: str = "tool_completed"
    tool_id: str = ""
    is_error: bool = False


@dataclass
class TextStarted(AgentEvent):
    """The first visible text of the response began streaming."""
    event_type: str = "text_started"


@dataclass
class AssistantTurn(AgentEvent):
    """A complete assistant message with its backend-assigned id.

    turn_id is None when the backend reported no id for the message.
    """
    event_type: str = "assistant_turn"
    turn_id: str | None = None
    text: str = ""


@dataclass
class QueryResult(AgentEvent):
    """Final event: outcome, usage and cost."""
    event_type: str = "query_result"
    session_id: str = ""
    result: str = ""
    is_error: bool = False
    duration_ms: int = 0
    num_turns: int = 0
    total_cost_usd: float = 0.0
    usage: dict[str, Any] = field(default_factory=dict)


_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "session_init": SessionInit,
    "thinking_started": ThinkingStarted,
    "thinking_completed": ThinkingCompleted,
    "tool_started": ToolStarted,
    "tool_completed": ToolCompleted,
    "text_started": TextStarted,
    "assistant_turn": AssistantTurn,
    "query_result": QueryResult,
}


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for observers."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert a plain dict back into its typed event."""
    event_type = data.get("event", data.get("event_type", ""))
    cls = _EVENT_MAP.get(event_type, AgentEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    filtered["event_type"] = event_type
    return cls(**filtered)
