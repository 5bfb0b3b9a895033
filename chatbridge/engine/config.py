"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BRIDGE_* env vars,
or load a YAML file with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import (
    MESSAGE_SIZE_DEFAULT,
    UPDATE_RATE_DEFAULT,
    PermissionMode,
)

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Observers must never break an invocation
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _optional_int(value: str | None) -> int | None:
    return int(value) if value else None


def _default_data_dir() -> Path:
    return Path.home() / ".chatbridge"


@dataclass
class BridgeConfig:
    """Conversation bridge configuration."""

    # Where sessions.json lives
    data_dir: Path = field(default_factory=_default_data_dir)
    # Root of the agent backend's per-project transcript folders
    agent_projects_dir: Path = field(
        default_factory=lambda: Path.home() / ".claude" / "projects"
    )

    # Defaults for newly created channel sessions
    default_working_directory: str = "."
    default_permission_mode: PermissionMode = PermissionMode.DEFAULT
    default_model: str | None = None
    default_update_rate_seconds: float = UPDATE_RATE_DEFAULT
    default_message_size: int = MESSAGE_SIZE_DEFAULT
    # None leaves the thinking budget to the backend
    default_max_thinking_tokens: int | None = None

    # Tool approvals: remind every 4 hours, deny after 7 days.
    approval_reminder_interval_seconds: float = 4 * 60 * 60
    approval_expiry_seconds: float = 7 * 24 * 60 * 60

    # Chat transport retry policy
    chat_retry_attempts: int = 3
    chat_retry_max_delay_seconds: float = 30.0

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "tool_started", "conversation": "C1", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @property
    def sessions_path(self) -> Path:
        return self.data_dir / "sessions.json"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from BRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith("BRIDGE_")
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: BRIDGE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(bridge_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no BRIDGE_* env vars set, using defaults")

        data_dir = os.getenv("BRIDGE_DATA_DIR")
        projects_dir = os.getenv("BRIDGE_AGENT_PROJECTS_DIR")
        config = cls(
            default_working_directory=os.getenv(
                "BRIDGE_DEFAULT_CWD", cls.default_working_directory
            ),
            default_permission_mode=PermissionMode(os.getenv(
                "BRIDGE_DEFAULT_MODE", cls.default_permission_mode.value
            )),
            default_model=os.getenv("BRIDGE_DEFAULT_MODEL") or None,
            default_update_rate_seconds=float(os.getenv(
                "BRIDGE_UPDATE_RATE", str(cls.default_update_rate_seconds)
            )),
            default_message_size=int(os.getenv(
                "BRIDGE_MESSAGE_SIZE", str(cls.default_message_size)
            )),
            default_max_thinking_tokens=_optional_int(os.getenv("BRIDGE_MAX_THINKING_TOKENS")),
            approval_reminder_interval_seconds=float(os.getenv(
                "BRIDGE_APPROVAL_REMINDER_INTERVAL",
                str(cls.approval_reminder_interval_seconds),
            )),
            approval_expiry_seconds=float(os.getenv(
                "BRIDGE_APPROVAL_EXPIRY", str(cls.approval_expiry_seconds)
            )),
            chat_retry_attempts=int(os.getenv(
                "BRIDGE_CHAT_RETRY_ATTEMPTS", str(cls.chat_retry_attempts)
            )),
        )
        if data_dir:
            config.data_dir = Path(data_dir).expanduser()
        if projects_dir:
            config.agent_projects_dir = Path(projects_dir).expanduser()
        logger.info(
            "BridgeConfig.from_env: data_dir=%s cwd=%s mode=%s model=%s",
            config.data_dir, config.default_working_directory,
            config.default_permission_mode.value, config.default_model,
        )
        return config
