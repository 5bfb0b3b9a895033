"""Exception hierarchy for the conversation engine.

Specific exceptions for each failure mode. Each carries an ErrorCode
and a ``recoverable`` flag so handlers can pick the chat-facing wording.
"""
from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    CONVERSATION_BUSY = "conversation_busy"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_FAILED = "transport_failed"
    AGENT_FAILED = "agent_failed"
    STORE_FAILED = "store_failed"
    INVALID_UPDATE = "invalid_update"
    COMMAND_REJECTED = "command_rejected"
    APPROVAL_EXPIRED = "approval_expired"


class ChatBridgeError(Exception):
    """Base exception for all bridge errors."""
    code: ErrorCode = ErrorCode.AGENT_FAILED
    recoverable: bool = False


class ConversationBusyError(ChatBridgeError):
    """A conversation already has an active agent invocation."""
    code = ErrorCode.CONVERSATION_BUSY
    recoverable = True

    def __init__(self, key: object):
        self.key = key
        super().__init__(f"Conversation {key} is busy with another request")


class ChatTransportError(ChatBridgeError):
    """A chat platform call failed."""


class RateLimitedError(ChatTransportError):
    """The chat platform rate limited a call. Retry with backoff."""
    code = ErrorCode.RATE_LIMITED
    recoverable = True

    def __init__(self, method: str, retry_after: float | None = None):
        self.method = method
        self.retry_after = retry_after
        hint = f" (retry after {retry_after}s)" if retry_after else ""
        super().__init__(f"Rate limited on {method}{hint}")


class TransportFailedError(ChatTransportError):
    """A non-recoverable failure for one chat platform call."""
    code = ErrorCode.TRANSPORT_FAILED

    def __init__(self, method: str, reason: str):
        self.method = method
        self.reason = reason
        super().__init__(f"Chat call {method} failed: {reason}")


class AgentInvocationError(ChatBridgeError):
    """The agent backend call raised or its stream ended abnormally."""
    code = ErrorCode.AGENT_FAILED

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Agent invocation failed: {reason}")


class SessionStoreError(ChatBridgeError):
    """The session store file could not be read or parsed."""
    code = ErrorCode.STORE_FAILED

    def __init__(self, path: object, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Session store {path} unusable: {reason}")


class InvalidSessionUpdateError(ChatBridgeError):
    """A partial session update named a field that does not exist."""
    code = ErrorCode.INVALID_UPDATE

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Unknown session field: {field_name}")


class CommandRejectedError(ChatBridgeError):
    """A command cannot run in the conversation's current state."""
    code = ErrorCode.COMMAND_REJECTED
    recoverable = True

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"/{command} rejected: {reason}")


class ApprovalExpiredError(ChatBridgeError):
    """A tool approval was never answered."""
    code = ErrorCode.APPROVAL_EXPIRED

    def __init__(self, approval_id: str, days: float):
        self.approval_id = approval_id
        self.days = days
        super().__init__(f"Tool approval expired after {days:g} days. Please retry.")


def to_user_message(exc: BaseException) -> str:
    """Chat-facing text for an exception."""
    if isinstance(exc, ChatBridgeError) and exc.recoverable:
        return f":warning: {exc}"
    return f"Error: {exc}"
