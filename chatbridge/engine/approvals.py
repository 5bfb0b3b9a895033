"""Manual tool approvals routed through the chat.

When the permission mode asks before running a tool, the agent backend
calls the gate's callback. The gate posts a prompt, parks the call on a
future and keeps a reminder timer running. A button answer resolves the
future; if nobody answers before the expiry the call is denied.
"""
from __future__ import annotations

import asyncio
import json
import logging

from chatbridge.adapters.chat_client import ChatClient

from .errors import ApprovalExpiredError, ChatTransportError
from .models import ConversationKey, PendingApproval, _make_id
from .providers.base import ApprovalDecision, ToolApprovalCallback
from .retry import with_chat_retry
from .runtime_state import RuntimeState

logger = logging.getLogger(__name__)

REMINDER_INTERVAL_SECONDS = 4 * 60 * 60
EXPIRY_SECONDS = 7 * 24 * 60 * 60


class ToolApprovalGate:
    """Turns tool permission requests into chat prompts."""

    def __init__(
        self,
        runtime: RuntimeState,
        chat: ChatClient,
        *,
        reminder_interval_seconds: float = REMINDER_INTERVAL_SECONDS,
        expiry_seconds: float = EXPIRY_SECONDS,
    ) -> None:
        self._runtime = runtime
        self._chat = chat
        self._interval = reminder_interval_seconds
        self._expiry = expiry_seconds

    @property
    def max_reminders(self) -> int:
        return max(1, int(self._expiry // self._interval))

    def callback_for(self, key: ConversationKey) -> ToolApprovalCallback:
        async def _callback(tool_name: str, tool_input: dict) -> ApprovalDecision:
            return await self.request(key, tool_name, tool_input)

        return _callback

    async def request(
        self,
        key: ConversationKey,
        tool_name: str,
        tool_input: dict,
    ) -> ApprovalDecision:
        """Post an approval prompt and wait for the answer."""
        approval = PendingApproval(
            approval_id=_make_id(),
            key=key,
            tool_name=tool_name,
            tool_input=tool_input,
            future=asyncio.get_running_loop().create_future(),
        )
        posted = await with_chat_retry(lambda: self._chat.post_message(
            key.channel,
            _prompt_text(approval),
            thread_ts=key.thread_origin,
        ))
        approval.message_id = posted.ts
        timer = asyncio.create_task(self._remind_until_expired(approval))
        self._runtime.add_approval(approval, timer)
        logger.info(
            "Waiting for approval %s of %s in %s",
            approval.approval_id[:8], tool_name, key,
        )
        try:
            return await approval.future
        finally:
            self._runtime.pop_approval(approval.approval_id)

    def resolve(self, approval_id: str, allow: bool, message: str = "") -> bool:
        """Answer a pending approval. False if it is unknown or settled."""
        approval = self._runtime.get_approval(approval_id)
        if approval is None or approval.future is None or approval.future.done():
            logger.debug("Approval %s is not pending", approval_id[:8])
            return False
        approval.future.set_result(ApprovalDecision(allow=allow, message=message))
        logger.info(
            "Approval %s %s", approval_id[:8], "allowed" if allow else "denied",
        )
        return True

    def deny_all(self, key: ConversationKey, reason: str) -> int:
        """Deny every pending approval of a conversation."""
        denied = 0
        for approval in self._runtime.approvals_for(key):
            if self.resolve(approval.approval_id, False, reason):
                denied += 1
        return denied

    async def _remind_until_expired(self, approval: PendingApproval) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if approval.future.done():
                return
            approval.reminders_sent += 1
            if approval.reminders_sent >= self.max_reminders:
                break
            try:
                await self._chat.post_message(
                    approval.key.channel,
                    f":bell: Reminder: still waiting for approval of `{approval.tool_name}`",
                    thread_ts=approval.key.thread_origin,
                )
            except ChatTransportError:
                logger.warning(
                    "Failed to post reminder for approval %s",
                    approval.approval_id[:8], exc_info=True,
                )

        error = ApprovalExpiredError(approval.approval_id, self._expiry / 86400)
        logger.warning("Approval %s expired", approval.approval_id[:8])
        if approval.message_id:
            try:
                await self._chat.update_message(
                    approval.key.channel, approval.message_id, f":hourglass: {error}",
                )
            except ChatTransportError:
                logger.warning("Failed to mark approval %s expired", approval.approval_id[:8])
        if not approval.future.done():
            approval.future.set_result(ApprovalDecision(allow=False, message=str(error)))


def _prompt_text(approval: PendingApproval) -> str:
    try:
        args = json.dumps(approval.tool_input, indent=2)[:1500]
    except (TypeError, ValueError):
        args = str(approval.tool_input)[:1500]
    return (
        f":lock: Approve `{approval.tool_name}`? (id `{approval.approval_id}`)\n"
        f"```{args}```"
    )
