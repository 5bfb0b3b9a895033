"""YAML configuration loader.

Loads the ``bridge`` section of a YAML file on top of the
environment-derived defaults from BridgeConfig.from_env().

Example YAML:
    bridge:
      data_dir: ~/.chatbridge
      default_working_directory: /path/to/project
      default_permission_mode: acceptEdits
      default_model: claude-sonnet-4-5
      default_update_rate_seconds: 2
      default_message_size: 1200
      default_max_thinking_tokens: 16000
      approval_reminder_interval_seconds: 14400
      approval_expiry_seconds: 604800
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig
from .models import PermissionMode

logger = logging.getLogger(__name__)

_FLOAT_KEYS = (
    "default_update_rate_seconds",
    "approval_reminder_interval_seconds",
    "approval_expiry_seconds",
    "chat_retry_max_delay_seconds",
)
_INT_KEYS = (
    "default_message_size",
    "default_max_thinking_tokens",
    "chat_retry_attempts",
)
_PATH_KEYS = ("data_dir", "agent_projects_dir")
_STR_KEYS = ("default_working_directory", "default_model")


def load_yaml_config(path: str | Path) -> BridgeConfig:
    """Load and parse a YAML config file into a BridgeConfig.

    Unknown keys are logged and ignored. Missing keys keep the
    environment/default value.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    section: dict[str, Any] = raw.get("bridge") or {}
    config = BridgeConfig.from_env()
    for key, value in section.items():
        if value is None:
            continue
        if key in _FLOAT_KEYS:
            setattr(config, key, float(value))
        elif key in _INT_KEYS:
            setattr(config, key, int(value))
        elif key in _PATH_KEYS:
            setattr(config, key, Path(str(value)).expanduser())
        elif key in _STR_KEYS:
            setattr(config, key, str(value))
        elif key == "default_permission_mode":
            config.default_permission_mode = PermissionMode(str(value))
        else:
            logger.warning("load_yaml_config: ignoring unknown key bridge.%s", key)

    logger.info(
        "Parsed YAML config %s: %d bridge setting(s)", path.name, len(section),
    )
    return config
