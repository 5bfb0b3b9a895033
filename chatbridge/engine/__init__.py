"""Conversation engine: sessions, fork points, delivery and live queries."""
from .models import (
    ConversationKey,
    ForkPoint,
    PermissionMode,
    QueryStatus,
    Session,
    TurnKind,
    TurnRecord,
    UsageStats,
)
from .config import BridgeConfig
from .errors import (
    AgentInvocationError,
    ApprovalExpiredError,
    ChatBridgeError,
    ChatTransportError,
    CommandRejectedError,
    ConversationBusyError,
    InvalidSessionUpdateError,
    RateLimitedError,
    SessionStoreError,
    TransportFailedError,
)

__all__ = [
    # Core components (lazy import to avoid circular deps)
    "LiveQueryOrchestrator",
    "ForkPointResolver",
    "DeliveryDeduplicator",
    "RuntimeState",
    "ToolApprovalGate",
    # Models
    "ConversationKey",
    "ForkPoint",
    "PermissionMode",
    "QueryStatus",
    "Session",
    "TurnKind",
    "TurnRecord",
    "UsageStats",
    # Config
    "BridgeConfig",
    "load_yaml_config",
    # Backends (lazy import)
    "AgentBackend",
    "ClaudeBackend",
    # Errors
    "AgentInvocationError",
    "ApprovalExpiredError",
    "ChatBridgeError",
    "ChatTransportError",
    "CommandRejectedError",
    "ConversationBusyError",
    "InvalidSessionUpdateError",
    "RateLimitedError",
    "SessionStoreError",
    "TransportFailedError",
]


def __getattr__(name: str):
    if name == "LiveQueryOrchestrator":
        from .orchestrator import LiveQueryOrchestrator
        return LiveQueryOrchestrator
    if name == "ForkPointResolver":
        from .fork_resolver import ForkPointResolver
        return ForkPointResolver
    if name == "DeliveryDeduplicator":
        from .delivery import DeliveryDeduplicator
        return DeliveryDeduplicator
    if name == "RuntimeState":
        from .runtime_state import RuntimeState
        return RuntimeState
    if name == "ToolApprovalGate":
        from .approvals import ToolApprovalGate
        return ToolApprovalGate
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "AgentBackend":
        from .providers.base import AgentBackend
        return AgentBackend
    if name == "ClaudeBackend":
        from .providers.claude_provider import ClaudeBackend
        return ClaudeBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
