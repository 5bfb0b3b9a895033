"""Live query orchestrator.

Owns the lifecycle of one in-flight agent invocation per conversation:

1. Claims the conversation in RuntimeState (a second start is rejected
   with ConversationBusyError).
2. Posts a status message and starts a periodic refresh timer.
3. Streams backend events, persisting the agent session id the moment
   the backend reports it and republishing status on significant events.
4. Delivers the final response through the DeliveryDeduplicator.
5. On every exit path cancels the timer, denies leftover approvals and
   releases the conversation.

Status writes go through a per-conversation lock owned by the active
invocation. cancel() sets the aborted flag before taking the same lock,
and every writer checks the flag right after acquiring it, so an
"aborted" status can never be overwritten by a refresh that was already
queued.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from chatbridge.adapters.chat_client import ChatClient
from chatbridge.shared.services.session_store import SessionStore

from .approvals import ToolApprovalGate
from .config import EventCallback, fire_event
from .delivery import DeliveryDeduplicator
from .errors import (
    AgentInvocationError,
    ChatTransportError,
    ConversationBusyError,
    to_user_message,
)
from .events import (
    AssistantTurn,
    QueryResult,
    SessionInit,
    TextStarted,
    ThinkingCompleted,
    ThinkingStarted,
    ToolCompleted,
    ToolStarted,
    event_to_dict,
)
from .lifecycle import is_terminal, validate_transition
from .models import (
    ConversationKey,
    QueryStatus,
    Session,
    StatusProgress,
    UsageStats,
)
from .providers.base import AgentBackend, InvokeOptions, ToolApprovalCallback
from .retry import CHAT_MAX_DELAY, DEFAULT_ATTEMPTS, with_chat_retry
from .runtime_state import ActiveQuery, LiveSettings, RuntimeState

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_NOTICE = ":warning: Rate limited by the chat platform, retrying..."

_STATUS_LABELS: dict[QueryStatus, str] = {
    QueryStatus.STARTING: ":hourglass_flowing_sand: Starting",
    QueryStatus.THINKING: ":brain: Thinking",
    QueryStatus.TOOL: ":hammer_and_wrench: Running tool",
    QueryStatus.COMPLETE: ":white_check_mark: Complete",
    QueryStatus.ERROR: ":x: Error",
    QueryStatus.ABORTED: ":octagonal_sign: Aborted",
}


@dataclass
class QueryOutcome:
    """What one invocation ended with."""
    status: QueryStatus = QueryStatus.STARTING
    agent_session_id: str | None = None
    response_text: str = ""
    turn_id: str | None = None
    message_ids: list[str] = field(default_factory=list)
    usage: UsageStats | None = None
    error: str | None = None


def render_status(progress: StatusProgress) -> str:
    """One-line status text for the status message."""
    parts = [_STATUS_LABELS[progress.status]]
    if progress.status == QueryStatus.TOOL and progress.current_tool:
        parts[0] += f" `{progress.current_tool}`"
    if progress.model:
        parts.append(progress.model)
    if progress.tools_used:
        parts.append(f"{progress.tools_used} tool{'s' if progress.tools_used != 1 else ''}")
    if progress.thinking_blocks:
        parts.append(f"{progress.thinking_blocks} thinking")
    if progress.usage is not None:
        parts.append(
            f"{progress.usage.input_tokens:,} in / {progress.usage.output_tokens:,} out"
        )
        if progress.usage.total_cost_usd:
            parts.append(f"${progress.usage.total_cost_usd:.4f}")
    parts.append(f"{progress.elapsed_seconds:.0f}s")
    line = " | ".join(parts)
    if progress.status == QueryStatus.ERROR and progress.error_message:
        line += f"\nerror: {progress.error_message}"
    return line


def build_invoke_options(
    session: Session,
    tool_approval: ToolApprovalCallback | None = None,
) -> InvokeOptions:
    """Resume the conversation's own agent session, or fork its ancestor."""
    options = InvokeOptions(
        working_directory=session.working_directory,
        permission_mode=session.permission_mode,
        model=session.model,
        max_thinking_tokens=session.max_thinking_tokens,
        tool_approval=tool_approval,
    )
    if session.agent_session_id:
        options.session_id = session.agent_session_id
    elif session.forked_from:
        options.fork_from_session_id = session.forked_from
        options.fork_session = True
        options.resume_at_turn_id = session.resume_at_turn_id
    return options


def usage_from_result(result: QueryResult, model: str | None) -> UsageStats:
    usage = result.usage or {}
    return UsageStats(
        input_tokens=int(usage.get("input_tokens", 0) or 0),
        output_tokens=int(usage.get("output_tokens", 0) or 0),
        cache_read_input_tokens=int(usage.get("cache_read_input_tokens", 0) or 0),
        cache_creation_input_tokens=int(usage.get("cache_creation_input_tokens", 0) or 0),
        total_cost_usd=result.total_cost_usd,
        duration_ms=result.duration_ms,
        num_turns=result.num_turns,
        model=model,
    )


class LiveQueryOrchestrator:
    """Runs agent invocations, one at a time per conversation."""

    def __init__(
        self,
        *,
        store: SessionStore,
        backend: AgentBackend,
        chat: ChatClient,
        runtime: RuntimeState,
        deduplicator: DeliveryDeduplicator,
        approvals: ToolApprovalGate | None = None,
        event_callback: EventCallback | None = None,
        chat_retry_attempts: int = DEFAULT_ATTEMPTS,
        chat_retry_max_delay: float = CHAT_MAX_DELAY,
    ) -> None:
        self._store = store
        self._backend = backend
        self._chat = chat
        self._runtime = runtime
        self._dedup = deduplicator
        self._approvals = approvals
        self._event_callback = event_callback
        self._chat_retry_attempts = chat_retry_attempts
        self._chat_retry_max_delay = chat_retry_max_delay

    # ── Entry points ─────────────────────────────────────────

    async def run(
        self,
        key: ConversationKey,
        prompt: str,
        *,
        origin_message_id: str | None = None,
    ) -> QueryOutcome:
        """Run one invocation to its end.

        Raises ConversationBusyError when the conversation already has an
        active invocation. Any other failure is converted into an
        ``error`` outcome and a chat-visible error message.
        """
        session = await self._store.get_or_create(key)
        active = ActiveQuery(
            key=key,
            live=LiveSettings(
                update_rate_seconds=session.update_rate_seconds,
                message_size_limit=session.message_size_limit,
            ),
        )
        active.progress.model = session.model
        if not self._runtime.begin(active):
            raise ConversationBusyError(key)

        outcome = QueryOutcome(agent_session_id=session.agent_session_id)
        logger.info(
            "Starting invocation in %s (agent session %s)",
            key, (session.agent_session_id or "new")[:8],
        )
        try:
            await self._execute(active, session, prompt, origin_message_id, outcome)
        except Exception as exc:
            await self._fail(active, outcome, exc)
        finally:
            self._runtime.cancel_status_timer(key)
            if self._approvals is not None:
                self._approvals.deny_all(key, "The request finished before approval.")
            if active.query is not None:
                try:
                    await active.query.close()
                except Exception:
                    logger.debug("Closing query for %s failed", key, exc_info=True)
            self._runtime.end(active)
        logger.info("Invocation in %s ended: %s", key, outcome.status.value)
        return outcome

    async def cancel(self, key: ConversationKey) -> bool:
        """Abort the active invocation of a conversation.

        Returns False when nothing is running.
        """
        active = self._runtime.get_active(key)
        if active is None:
            return False
        self._runtime.mark_aborted(key)
        # Held by reference: end() may unregister it while we are suspended
        lock = self._runtime.update_lock(key)
        logger.info("Aborting invocation in %s", key)
        if active.query is not None:
            try:
                await active.query.interrupt()
            except Exception:
                logger.warning("Interrupt failed for %s", key, exc_info=True)
        if self._runtime.get_active(key) is not active:
            logger.debug("Invocation in %s ended while being aborted", key)
            return True
        if self._approvals is not None:
            self._approvals.deny_all(key, "The request was aborted.")
        await self._publish_aborted(active, lock)
        return True

    # ── Invocation ───────────────────────────────────────────

    async def _execute(
        self,
        active: ActiveQuery,
        session: Session,
        prompt: str,
        origin_message_id: str | None,
        outcome: QueryOutcome,
    ) -> None:
        key = active.key
        if origin_message_id:
            await self._dedup.record_user_message(
                key, origin_message_id, session.agent_session_id,
            )

        posted = await self._chat_call(active, lambda: self._chat.post_message(
            key.channel, render_status(active.progress), thread_ts=key.thread_origin,
        ))
        active.status_message_ts = posted.ts
        self._runtime.set_status_timer(key, asyncio.create_task(self._refresh_loop(active)))

        approval_cb = (
            self._approvals.callback_for(key) if self._approvals is not None else None
        )
        options = build_invoke_options(session, approval_cb)
        active.query = self._backend.invoke(prompt, options)

        turns: list[AssistantTurn] = []
        result: QueryResult | None = None
        text_seen = False
        async for event in active.query:
            if self._runtime.is_aborted(key):
                break
            await fire_event(
                self._event_callback,
                {**event_to_dict(event), "conversation": str(key)},
            )
            progress = active.progress
            if isinstance(event, SessionInit):
                await self._store.upsert(key, agent_session_id=event.session_id)
                outcome.agent_session_id = event.session_id
                progress.model = event.model or progress.model
                await self._publish(active)
            elif isinstance(event, ThinkingStarted):
                progress.thinking_blocks += 1
                self._set_status(active, QueryStatus.THINKING)
                await self._publish(active)
            elif isinstance(event, ThinkingCompleted):
                await self._publish(active)
            elif isinstance(event, ToolStarted):
                progress.tools_used += 1
                progress.current_tool = event.tool_name
                self._set_status(active, QueryStatus.TOOL)
                await self._publish(active)
            elif isinstance(event, ToolCompleted):
                progress.current_tool = None
                self._set_status(active, QueryStatus.THINKING)
                await self._publish(active)
            elif isinstance(event, TextStarted):
                if not text_seen:
                    text_seen = True
                    if progress.status == QueryStatus.STARTING:
                        self._set_status(active, QueryStatus.THINKING)
                    await self._publish(active)
            elif isinstance(event, AssistantTurn):
                turns.append(event)
            elif isinstance(event, QueryResult):
                result = event

        if self._runtime.is_aborted(key):
            outcome.status = QueryStatus.ABORTED
            await self._publish_aborted(active, self._runtime.update_lock(key))
            return
        if result is None:
            raise AgentInvocationError("stream ended without a result")
        if result.is_error:
            raise AgentInvocationError(result.result or "agent reported an error")

        usage = usage_from_result(result, active.progress.model)
        outcome.usage = usage
        active.progress.usage = usage
        await self._store.upsert(key, last_usage=usage)

        text = result.result or "\n\n".join(t.text for t in turns)
        # Only a backend-assigned id may be recorded; it can become a fork point
        turn_id = next((t.turn_id for t in reversed(turns) if t.turn_id), None)
        outcome.response_text = text
        outcome.turn_id = turn_id

        def post(chunk: str):
            return self._chat_call(active, lambda: self._chat.post_message(
                key.channel, chunk, thread_ts=key.thread_origin,
            ))

        if turn_id is None:
            outcome.message_ids = await self._dedup.post_untracked(
                key, text, post, message_size_limit=active.live.message_size_limit,
            )
        else:
            delivery = await self._dedup.deliver_turn(
                key,
                turn_id,
                text,
                post,
                agent_session_id=outcome.agent_session_id,
                parent_message_id=origin_message_id,
                message_size_limit=active.live.message_size_limit,
            )
            outcome.message_ids = delivery.message_ids
        outcome.status = QueryStatus.COMPLETE

        if not is_terminal(active.progress.status):
            self._set_status(active, QueryStatus.COMPLETE)
        self._runtime.cancel_status_timer(key)
        await self._publish(active)

    async def _fail(self, active: ActiveQuery, outcome: QueryOutcome, exc: Exception) -> None:
        key = active.key
        if self._runtime.is_aborted(key):
            logger.info("Invocation in %s stopped after abort: %s", key, exc)
            outcome.status = QueryStatus.ABORTED
            await self._publish_aborted(active, self._runtime.update_lock(key))
            return
        logger.error("Invocation in %s failed: %s", key, exc, exc_info=True)
        outcome.status = QueryStatus.ERROR
        outcome.error = str(exc)
        active.progress.error_message = str(exc)
        if not is_terminal(active.progress.status):
            self._set_status(active, QueryStatus.ERROR)
        self._runtime.cancel_status_timer(key)
        await self._publish(active)
        try:
            await self._chat_call(active, lambda: self._chat.post_message(
                key.channel, to_user_message(exc), thread_ts=key.thread_origin,
            ))
        except ChatTransportError:
            logger.warning("Could not report failure in %s", key, exc_info=True)

    # ── Status publishing ────────────────────────────────────

    def _set_status(self, active: ActiveQuery, target: QueryStatus) -> None:
        current = active.progress.status
        if current == target:
            return
        if current == QueryStatus.ABORTED:
            # Final; backend events still in flight leave it in place
            return
        validate_transition(current, target)
        active.progress.status = target
        logger.debug("%s: %s -> %s", active.key, current.value, target.value)

    async def _publish_aborted(self, active: ActiveQuery, lock: asyncio.Lock) -> None:
        """Show the aborted status once, whichever of cancel() or run() gets here first."""
        key = active.key
        async with lock:
            if active.abort_published:
                return
            active.abort_published = True
            if not is_terminal(active.progress.status):
                self._set_status(active, QueryStatus.ABORTED)
            if not active.status_message_ts:
                return
            try:
                await self._chat_call(active, lambda: self._chat.update_message(
                    key.channel, active.status_message_ts, render_status(active.progress),
                ))
            except ChatTransportError:
                logger.warning("Failed to show aborted status in %s", key, exc_info=True)

    async def _publish(self, active: ActiveQuery) -> None:
        """Rewrite the status message unless the invocation was aborted."""
        key = active.key
        async with self._runtime.update_lock(key):
            if self._runtime.is_aborted(key):
                return
            if not active.status_message_ts:
                return
            text = render_status(active.progress)
            try:
                await self._chat_call(active, lambda: self._chat.update_message(
                    key.channel, active.status_message_ts, text,
                ))
            except ChatTransportError:
                logger.warning("Status update failed in %s", key, exc_info=True)

    async def _refresh_loop(self, active: ActiveQuery) -> None:
        while True:
            await asyncio.sleep(active.live.update_rate_seconds)
            await self._publish(active)

    async def _chat_call(self, active: ActiveQuery, fn: Callable[[], Awaitable[T]]) -> T:
        async def _on_rate_limit() -> None:
            await self._notify_rate_limited(active)

        return await with_chat_retry(
            fn,
            attempts=self._chat_retry_attempts,
            max_delay=self._chat_retry_max_delay,
            on_rate_limit=_on_rate_limit,
        )

    async def _notify_rate_limited(self, active: ActiveQuery) -> None:
        """Tell the user once per invocation that updates are delayed."""
        if active.progress.rate_limit_notified:
            return
        active.progress.rate_limit_notified = True
        logger.warning("Rate limited while updating %s", active.key)
        try:
            await self._chat.post_message(
                active.key.channel, RATE_LIMIT_NOTICE, thread_ts=active.key.thread_origin,
            )
        except ChatTransportError:
            logger.debug("Rate limit notice itself failed in %s", active.key)
