"""Conversation entry point for inbound chat events.

Every inbound message resolves to a ConversationKey. Busy conversations
only accept lightweight commands; everything else gets one busy notice.
Thread replies lazily fork a thread session pinned at the replied-to
message, then the LiveQueryOrchestrator runs the request.
"""
from __future__ import annotations

import asyncio
import logging

from chatbridge.adapters.chat_client import ChatClient, PostedMessage
from chatbridge.adapters.mirror import MessageSync, SyncResult
from chatbridge.engine.approvals import ToolApprovalGate
from chatbridge.engine.config import BridgeConfig
from chatbridge.engine.delivery import DeliveryDeduplicator
from chatbridge.engine.errors import (
    ChatTransportError,
    CommandRejectedError,
    ConversationBusyError,
    to_user_message,
)
from chatbridge.engine.fork_resolver import ForkPointResolver
from chatbridge.engine.models import (
    MESSAGE_SIZE_DEFAULT,
    THINKING_TOKENS_DEFAULT,
    ConversationKey,
    Session,
)
from chatbridge.engine.orchestrator import LiveQueryOrchestrator, QueryOutcome
from chatbridge.engine.providers.base import AgentBackend
from chatbridge.engine.retry import with_chat_retry
from chatbridge.engine.runtime_state import RuntimeState
from chatbridge.shared.commands import (
    LIGHTWEIGHT_COMMANDS,
    ParsedCommand,
    help_text,
    parse_command,
    parse_message_size,
    parse_mode,
    parse_session_id,
    parse_thinking_tokens,
    parse_update_rate,
    resolve_directory,
)
from chatbridge.shared.services.session_files import (
    delete_session_files,
    find_session_files,
    read_session_cwd,
)
from chatbridge.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

BUSY_NOTICE = ":hourglass: I'm still working on the previous request. Use `/abort` to stop it."


class ConversationHandler:
    """Wires store, resolver, deduplicator and orchestrator together."""

    def __init__(
        self,
        *,
        chat: ChatClient,
        backend: AgentBackend,
        config: BridgeConfig | None = None,
        store: SessionStore | None = None,
        runtime: RuntimeState | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.chat = chat
        self.store = store or SessionStore(
            self.config.sessions_path,
            defaults={
                "working_directory": self.config.default_working_directory,
                "permission_mode": self.config.default_permission_mode,
                "model": self.config.default_model,
                "update_rate_seconds": self.config.default_update_rate_seconds,
                "message_size_limit": self.config.default_message_size,
                "max_thinking_tokens": self.config.default_max_thinking_tokens,
            },
        )
        self.runtime = runtime or RuntimeState()
        self.resolver = ForkPointResolver(self.store)
        self.deduplicator = DeliveryDeduplicator(self.store)
        self.approvals = ToolApprovalGate(
            self.runtime,
            chat,
            reminder_interval_seconds=self.config.approval_reminder_interval_seconds,
            expiry_seconds=self.config.approval_expiry_seconds,
        )
        self.orchestrator = LiveQueryOrchestrator(
            store=self.store,
            backend=backend,
            chat=chat,
            runtime=self.runtime,
            deduplicator=self.deduplicator,
            approvals=self.approvals,
            event_callback=self.config.event_callback,
            chat_retry_attempts=self.config.chat_retry_attempts,
            chat_retry_max_delay=self.config.chat_retry_max_delay_seconds,
        )
        self.mirror = MessageSync(
            self.store, chat, self.deduplicator,
            projects_dir=self.config.agent_projects_dir,
        )

    # ── Inbound messages ─────────────────────────────────────

    async def handle_message(
        self,
        channel: str,
        text: str,
        *,
        message_ts: str | None = None,
        thread_ts: str | None = None,
    ) -> QueryOutcome | None:
        """Handle one user message. Returns the outcome if a request ran."""
        key = ConversationKey(channel, thread_ts)
        command = parse_command(text)

        if self.runtime.is_busy(key):
            if command is not None and (
                command.name in LIGHTWEIGHT_COMMANDS or command.name == "model"
            ):
                # /model answers with its own rejection while busy
                await self.handle_command(key, command)
            else:
                logger.info("Rejecting request in busy conversation %s", key)
                await self._reply(key, BUSY_NOTICE)
            return None

        if command is not None:
            await self.handle_command(key, command)
            return None

        if key.is_thread:
            await self.ensure_thread_session(key)
        try:
            return await self.orchestrator.run(key, text, origin_message_id=message_ts)
        except ConversationBusyError:
            # Another request claimed the conversation after the busy check
            await self._reply(key, BUSY_NOTICE)
            return None

    async def ensure_thread_session(self, key: ConversationKey) -> Session:
        """Return the thread's session, forking it at the origin on first use."""
        existing = await self.store.get(key)
        if existing is not None:
            return existing
        await self.store.get_or_create(key.root)
        point = await self.resolver.resolve(key, key.thread_origin)
        session, created = await self.store.get_or_create_thread_session(
            key.channel, key.thread_origin, point,
        )
        if created and session.forked_from:
            await self._reply(
                key,
                ":twisted_rightwards_arrows: _Forked with conversation state through this message_",
            )
        return session

    # ── Commands ─────────────────────────────────────────────

    async def handle_command(self, key: ConversationKey, command: ParsedCommand) -> None:
        handler = getattr(self, f"_cmd_{command.name.replace('-', '_')}", None)
        if handler is None:
            await self._reply(key, f"Unknown command `/{command.name}`. Try `/help`.")
            return
        logger.debug("Command /%s in %s", command.name, key)
        try:
            reply = await handler(key, command)
        except CommandRejectedError as exc:
            reply = to_user_message(exc)
        except ValueError as exc:
            reply = to_user_message(CommandRejectedError(command.name, str(exc)))
        except ChatTransportError:
            logger.warning("Command /%s failed in %s", command.name, key, exc_info=True)
            return
        if reply:
            await self._reply(key, reply)

    async def _cmd_help(self, key: ConversationKey, command: ParsedCommand) -> str:
        return help_text()

    async def _cmd_status(self, key: ConversationKey, command: ParsedCommand) -> str:
        session = await self.store.get_or_create(key)
        lines = [
            f"*Session:* `{session.agent_session_id or 'none'}`",
            f"*State:* {'busy' if self.runtime.is_busy(key) else 'idle'}",
            f"*Mode:* {session.permission_mode.value}",
            f"*Model:* {session.model or 'default'}",
            f"*Directory:* `{session.working_directory}`",
            f"*Update rate:* {session.update_rate_seconds:g}s",
            f"*Message size:* {session.message_size_limit}",
            f"*Thinking tokens:* {_thinking_label(session.max_thinking_tokens)}",
        ]
        if session.forked_from:
            lines.append(f"*Forked from:* `{session.forked_from}`")
        if session.last_usage is not None:
            usage = session.last_usage
            lines.append(
                f"*Last request:* {usage.input_tokens:,} in / {usage.output_tokens:,} out, "
                f"${usage.total_cost_usd:.4f}"
            )
        return "\n".join(lines)

    async def _cmd_context(self, key: ConversationKey, command: ParsedCommand) -> str:
        session = await self.store.get(key)
        if session is None or session.last_usage is None:
            raise CommandRejectedError("context", "No context data available. Run a query first.")
        usage = session.last_usage
        return (
            f"*Context:* {usage.context_tokens:,} tokens "
            f"({usage.cache_read_input_tokens:,} cached)\n"
            f"*Output:* {usage.output_tokens:,} tokens in {usage.num_turns} turn(s)\n"
            f"*Cost:* ${usage.total_cost_usd:.4f}"
        )

    async def _cmd_mode(self, key: ConversationKey, command: ParsedCommand) -> str:
        if not command.args:
            session = await self.store.get_or_create(key)
            return f"Mode: {session.permission_mode.value}"
        mode = parse_mode(command.args[0])
        await self.store.upsert(key, permission_mode=mode)
        active = self.runtime.get_active(key)
        if active is not None and active.query is not None:
            if await active.query.set_permission_mode(mode):
                return f"Mode set to {mode.value} (applied to the running request)."
        return f"Mode set to {mode.value}."

    async def _cmd_model(self, key: ConversationKey, command: ParsedCommand) -> str:
        if self.runtime.is_busy(key):
            raise CommandRejectedError(
                "model", "Cannot change the model while a request is running.",
            )
        if not command.args:
            session = await self.store.get_or_create(key)
            return f"Model: {session.model or 'default'}"
        await self.store.upsert(key, model=command.args[0])
        return f"Model set to {command.args[0]}. Takes effect on the next request."

    async def _cmd_update_rate(self, key: ConversationKey, command: ParsedCommand) -> str:
        if not command.args:
            session = await self.store.get_or_create(key)
            return f"Update rate: {session.update_rate_seconds:g}s"
        value = parse_update_rate(command.args[0])
        await self.store.upsert(key, update_rate_seconds=value)
        active = self.runtime.get_active(key)
        if active is not None:
            active.live.update_rate_seconds = value
        return f"Update rate set to {value:g}s."

    async def _cmd_message_size(self, key: ConversationKey, command: ParsedCommand) -> str:
        if not command.args:
            session = await self.store.get_or_create(key)
            suffix = " (default)" if session.message_size_limit == MESSAGE_SIZE_DEFAULT else ""
            return f"Message size limit: {session.message_size_limit}{suffix}"
        value = parse_message_size(command.args[0])
        await self.store.upsert(key, message_size_limit=value)
        active = self.runtime.get_active(key)
        if active is not None:
            active.live.message_size_limit = value
        return f"Message size limit set to {value}."

    async def _cmd_max_thinking_tokens(self, key: ConversationKey, command: ParsedCommand) -> str:
        if not command.args:
            session = await self.store.get_or_create(key)
            return f"Thinking tokens: {_thinking_label(session.max_thinking_tokens)}"
        value = parse_thinking_tokens(command.args[0])
        await self.store.upsert(key, max_thinking_tokens=value)
        applied = False
        active = self.runtime.get_active(key)
        if active is not None and active.query is not None:
            applied = await active.query.set_thinking_budget(value)
        reply = "Extended thinking disabled." if value == 0 else f"Thinking tokens set to {value:,}."
        if applied:
            reply += " Applied to the running request."
        return reply

    async def _cmd_clear(self, key: ConversationKey, command: ParsedCommand) -> str:
        session = await self.store.get(key)
        if session is None or not session.agent_session_id:
            raise CommandRejectedError(
                "clear", "No active session to clear. Start a conversation first.",
            )
        await self.store.clear_session(key)
        return ":broom: Session cleared. The next message starts a fresh agent session."

    async def _cmd_resume(self, key: ConversationKey, command: ParsedCommand) -> str:
        if not command.args:
            raise CommandRejectedError("resume", "Usage: `/resume <session-id>`")
        agent_session_id = parse_session_id(command.args[0])
        paths = await asyncio.to_thread(
            find_session_files, agent_session_id, self.config.agent_projects_dir,
        )
        working_directory = None
        for path in paths:
            working_directory = await asyncio.to_thread(read_session_cwd, path)
            if working_directory:
                break
        if not working_directory:
            raise CommandRejectedError(
                "resume",
                f"Session file not found for `{agent_session_id}`. "
                "The session may have been created on a different machine.",
            )
        _, old_id = await self.store.resume_session(key, agent_session_id, working_directory)
        lines = []
        if old_id:
            lines.append(
                f":bookmark: Previous session: `{old_id}` (use `/resume {old_id}` to return)"
            )
        lines.append(f"Resuming session `{agent_session_id}` in `{working_directory}`.")
        lines.append("Your next message will continue this session.")
        return "\n".join(lines)

    async def _cmd_cwd(self, key: ConversationKey, command: ParsedCommand) -> str:
        session = await self.store.get_or_create(key)
        suffix = " (locked)" if session.path_locked else ""
        return f"Current directory: `{session.working_directory}`{suffix}"

    async def _cmd_cd(self, key: ConversationKey, command: ParsedCommand) -> str:
        session = await self.store.get_or_create(key)
        if session.path_locked:
            raise CommandRejectedError(
                "cd", f"The working directory is locked to `{session.working_directory}`.",
            )
        if not command.args:
            return (
                f"Current directory: `{session.working_directory}`\n"
                "Usage: `/cd <path>` (relative or absolute)"
            )
        target = resolve_directory(command.arg_text, session.working_directory)
        await self.store.upsert(key, working_directory=target)
        return f":open_file_folder: Changed to `{target}`. Use `/set-current-path` to lock it."

    async def _cmd_set_current_path(self, key: ConversationKey, command: ParsedCommand) -> str:
        session = await self.store.get_or_create(key)
        if session.path_locked:
            raise CommandRejectedError(
                "set-current-path",
                f"The working directory is already locked to `{session.working_directory}`.",
            )
        target = resolve_directory(".", session.working_directory)
        await self.store.upsert(key, working_directory=target, path_locked=True)
        return f":lock: Working directory locked to `{target}`. `/cd` is now disabled."

    async def _cmd_abort(self, key: ConversationKey, command: ParsedCommand) -> str | None:
        if not await self.orchestrator.cancel(key):
            return "Nothing is running."
        return None

    async def _cmd_fork_thread(self, key: ConversationKey, command: ParsedCommand) -> str | None:
        if not key.is_thread:
            raise CommandRejectedError("fork-thread", "Use this inside a thread.")
        source = await self.store.get(key)
        if source is None or not source.agent_session_id:
            raise CommandRejectedError("fork-thread", "This thread has no agent session to fork yet.")
        description = command.arg_text or "Forked thread"
        anchor = await self._post(
            ConversationKey(key.channel),
            f":twisted_rightwards_arrows: {description}",
        )
        if not anchor.ts:
            raise CommandRejectedError("fork-thread", "Could not create the new thread.")
        await self.store.get_or_create_thread_session(
            key.channel, anchor.ts, source_thread=key.thread_origin,
        )
        await self._post(
            ConversationKey(key.channel, anchor.ts),
            f"_Forked from thread {key.thread_origin}. Reply here to continue._",
        )
        return f"Forked into a new thread ({anchor.ts})."

    # ── Approvals, mirroring, teardown ───────────────────────

    def resolve_approval(self, approval_id: str, allow: bool) -> bool:
        """Answer a tool approval from a button click."""
        return self.approvals.resolve(
            approval_id, allow, "" if allow else "Denied by user",
        )

    async def sync_transcript(self, key: ConversationKey, offset: int = 0) -> SyncResult:
        return await self.mirror.sync(key, offset)

    async def teardown_channel(self, channel: str) -> list[str]:
        """Forget a channel and delete its agent transcripts.

        Returns the agent session ids that were collected for cleanup.
        """
        await self.orchestrator.cancel(ConversationKey(channel))
        for thread in await self.store.list_threads(channel):
            await self.orchestrator.cancel(ConversationKey(channel, thread))
        ids = await self.store.delete(channel)
        if ids:
            await asyncio.to_thread(delete_session_files, ids, self.config.agent_projects_dir)
        return ids

    # ── Chat helpers ─────────────────────────────────────────

    async def _post(self, key: ConversationKey, text: str) -> PostedMessage:
        return await with_chat_retry(
            lambda: self.chat.post_message(key.channel, text, thread_ts=key.thread_origin),
            attempts=self.config.chat_retry_attempts,
            max_delay=self.config.chat_retry_max_delay_seconds,
        )

    async def _reply(self, key: ConversationKey, text: str) -> None:
        try:
            await self._post(key, text)
        except ChatTransportError:
            logger.warning("Could not reply in %s", key, exc_info=True)


def _thinking_label(value: int | None) -> str:
    if value is None:
        return f"{THINKING_TOKENS_DEFAULT:,} (default)"
    if value == 0:
        return "disabled"
    return f"{value:,}"
