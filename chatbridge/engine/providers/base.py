"""Abstract base for agent backends.

A backend turns one prompt plus session options into an AgentQuery: an
async stream of typed AgentEvents with a live control surface that stays
usable while the stream is being consumed.
"""
from __future__ import annotations

import abc
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..events import AgentEvent
from ..models import PermissionMode

logger = logging.getLogger(__name__)


@dataclass
class ApprovalDecision:
    """Answer to a tool approval request."""
    allow: bool
    message: str = ""


# Called before a tool runs when the permission mode asks for approval.
# Signature: async def callback(tool_name, tool_input) -> ApprovalDecision
ToolApprovalCallback = Callable[[str, dict[str, Any]], Awaitable[ApprovalDecision]]


@dataclass
class InvokeOptions:
    """How one invocation binds to agent session history.

    ``session_id`` resumes an existing agent session. A first message in
    a forked thread instead sets ``fork_from_session_id`` with
    ``fork_session=True`` and, for point-in-time forks,
    ``resume_at_turn_id``.
    """
    session_id: str | None = None
    fork_from_session_id: str | None = None
    fork_session: bool = False
    resume_at_turn_id: str | None = None
    working_directory: str = "."
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    model: str | None = None
    max_thinking_tokens: int | None = None
    tool_approval: ToolApprovalCallback | None = None

    @property
    def resume_target(self) -> str | None:
        return self.fork_from_session_id if self.fork_session else self.session_id


class AgentQuery(abc.ABC):
    """One in-flight invocation.

    Live control hooks return False when the backend cannot apply the
    change mid-invocation.
    """

    def __aiter__(self) -> AsyncIterator[AgentEvent]:
        return self.events()

    @abc.abstractmethod
    def events(self) -> AsyncIterator[AgentEvent]:
        """Stream of events, ending after the QueryResult."""

    @abc.abstractmethod
    async def interrupt(self) -> None:
        """Ask the backend to stop as soon as possible."""

    async def set_permission_mode(self, mode: PermissionMode) -> bool:
        return False

    async def set_model(self, model: str) -> bool:
        return False

    async def set_thinking_budget(self, tokens: int | None) -> bool:
        return False

    async def close(self) -> None:
        """Release backend resources; called once the stream is done."""


class AgentBackend(abc.ABC):
    """Abstract agent backend interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'claude')."""

    @abc.abstractmethod
    def invoke(self, prompt: str, options: InvokeOptions) -> AgentQuery:
        """Start an invocation. Events are produced lazily by the query."""
