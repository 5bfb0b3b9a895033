"""Claude Agent SDK backend.

Wraps claude_agent_sdk.ClaudeSDKClient so the live control surface
(interrupt, permission mode, model) stays usable while the response
stream is consumed. SDK messages are translated into typed AgentEvents
here and nowhere else.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import AsyncIterator
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

from ..events import (
    AgentEvent,
    AssistantTurn,
    QueryResult,
    SessionInit,
    TextStarted,
    ThinkingCompleted,
    ThinkingStarted,
    ToolCompleted,
    ToolStarted,
)
from ..models import PermissionMode
from .base import AgentBackend, AgentQuery, InvokeOptions

logger = logging.getLogger(__name__)


class ClaudeBackend(AgentBackend):
    """Backend on the Claude Agent SDK.

    Auth: whatever the bundled CLI is configured with (OAuth login or
    ANTHROPIC_API_KEY).
    """

    def __init__(self, cli_path: str | None = None) -> None:
        self._cli_path = cli_path or os.getenv("BRIDGE_CLAUDE_CLI_PATH", "").strip() or None

    @property
    def name(self) -> str:
        return "claude"

    def invoke(self, prompt: str, options: InvokeOptions) -> AgentQuery:
        return ClaudeQuery(prompt, self.build_options(options))

    def build_options(self, options: InvokeOptions) -> ClaudeAgentOptions:
        """Map InvokeOptions onto ClaudeAgentOptions."""
        kwargs: dict[str, Any] = dict(
            cwd=options.working_directory,
            permission_mode=options.permission_mode.value,
            include_partial_messages=True,
        )
        if options.model:
            kwargs["model"] = options.model
        if options.max_thinking_tokens is not None:
            kwargs["max_thinking_tokens"] = options.max_thinking_tokens
        resume = options.resume_target
        if resume:
            kwargs["resume"] = resume
        if options.fork_session:
            kwargs["fork_session"] = True
            if options.resume_at_turn_id:
                # Point-in-time fork: history is truncated after this turn
                kwargs["extra_args"] = {"resume-session-at": options.resume_at_turn_id}
        if options.tool_approval is not None:
            kwargs["can_use_tool"] = _wrap_tool_approval(options.tool_approval)
        if self._cli_path:
            resolved = shutil.which(self._cli_path)
            if resolved:
                kwargs["cli_path"] = resolved
            else:
                logger.warning(
                    "Configured Claude CLI not found: %s; falling back to SDK default",
                    self._cli_path,
                )
        logger.info(
            "Claude invocation cwd=%s mode=%s model=%s resume=%s fork=%s at=%s",
            options.working_directory,
            options.permission_mode.value,
            options.model or "<default>",
            (resume or "none")[:8],
            options.fork_session,
            options.resume_at_turn_id or "latest",
        )
        return ClaudeAgentOptions(**kwargs)


def _wrap_tool_approval(callback):
    async def can_use_tool(tool_name: str, tool_input: dict[str, Any], context: Any):
        decision = await callback(tool_name, tool_input)
        if decision.allow:
            return PermissionResultAllow()
        return PermissionResultDeny(message=decision.message or "Denied by user")

    return can_use_tool


class ClaudeQuery(AgentQuery):
    """One ClaudeSDKClient conversation turn."""

    def __init__(self, prompt: str, options: ClaudeAgentOptions) -> None:
        self._prompt = prompt
        self._options = options
        self._client: ClaudeSDKClient | None = None
        # content block index -> block type, for stream stop events
        self._open_blocks: dict[int, str] = {}

    async def events(self) -> AsyncIterator[AgentEvent]:
        self._client = ClaudeSDKClient(options=self._options)
        await self._client.connect()
        try:
            await self._client.query(self._prompt)
            async for message in self._client.receive_response():
                for event in self._translate(message):
                    yield event
        finally:
            await self.close()

    def _translate(self, message: Any) -> list[AgentEvent]:
        kind = type(message).__name__
        if kind == "SystemMessage":
            data = getattr(message, "data", {}) or {}
            if getattr(message, "subtype", "") == "init" and data.get("session_id"):
                return [SessionInit(session_id=data["session_id"], model=data.get("model"))]
            return []
        if kind == "StreamEvent":
            return self._translate_stream(getattr(message, "event", {}) or {})
        if kind == "AssistantMessage":
            text = "".join(
                block.text for block in message.content
                if type(block).__name__ == "TextBlock"
            )
            if not text:
                return []
            return [AssistantTurn(turn_id=getattr(message, "uuid", None), text=text)]
        if kind == "UserMessage":
            content = getattr(message, "content", None)
            if not isinstance(content, list):
                return []
            return [
                ToolCompleted(
                    tool_id=getattr(block, "tool_use_id", ""),
                    is_error=bool(getattr(block, "is_error", False)),
                )
                for block in content
                if hasattr(block, "tool_use_id")
            ]
        if kind == "ResultMessage":
            return [QueryResult(
                session_id=getattr(message, "session_id", ""),
                result=getattr(message, "result", None) or "",
                is_error=bool(getattr(message, "is_error", False)),
                duration_ms=int(getattr(message, "duration_ms", 0) or 0),
                num_turns=int(getattr(message, "num_turns", 0) or 0),
                total_cost_usd=float(getattr(message, "total_cost_usd", 0.0) or 0.0),
                usage=dict(getattr(message, "usage", None) or {}),
            )]
        return []

    def _translate_stream(self, event: dict[str, Any]) -> list[AgentEvent]:
        event_type = event.get("type")
        index = event.get("index", -1)
        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            block_type = block.get("type", "")
            self._open_blocks[index] = block_type
            if block_type == "thinking":
                return [ThinkingStarted()]
            if block_type == "tool_use":
                return [ToolStarted(
                    tool_id=block.get("id", ""),
                    tool_name=block.get("name", ""),
                )]
            if block_type == "text":
                return [TextStarted()]
        elif event_type == "content_block_stop":
            if self._open_blocks.pop(index, None) == "thinking":
                return [ThinkingCompleted()]
        return []

    async def interrupt(self) -> None:
        if self._client is not None:
            await self._client.interrupt()

    async def set_permission_mode(self, mode: PermissionMode) -> bool:
        if self._client is None:
            return False
        await self._client.set_permission_mode(mode.value)
        return True

    async def set_model(self, model: str) -> bool:
        if self._client is None:
            return False
        await self._client.set_model(model)
        return True

    async def set_thinking_budget(self, tokens: int | None) -> bool:
        setter = getattr(self._client, "set_max_thinking_tokens", None)
        if setter is None:
            return False
        await setter(tokens)
        return True

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.disconnect()
            except Exception:
                logger.debug("Claude client disconnect failed", exc_info=True)
