"""
Configuration for the Feedback Collector broker and its feedback window.

Settings live in ``~/.feedback-mcp/config.json``; environment variables
override the file.

Environment variables:
    FEEDBACK_APP_COMMAND               – command that starts the feedback window
    FEEDBACK_HOST                      – interface the window binds to (default: 127.0.0.1)
    FEEDBACK_PORT_MIN / _MAX           – port range sessions draw from
    FEEDBACK_PORT_ATTEMPTS             – draws before giving up on a free port
    FEEDBACK_READY_HANDSHAKE           – "0" to fall back to a fixed launch delay
    FEEDBACK_READY_TIMEOUT_SECONDS     – how long a window may take to start listening
    FEEDBACK_LAUNCH_GRACE_SECONDS      – fixed delay used without the handshake
    FEEDBACK_RESPONSE_TIMEOUT_SECONDS  – broker-side ceiling on the human (empty/0 = none)
    FEEDBACK_EXIT_SETTLE_SECONDS       – grace for an in-flight answer after the window exits
    FEEDBACK_TERMINATE_GRACE_SECONDS   – wait after SIGTERM before killing a window
    FEEDBACK_INACTIVITY_SECONDS        – window auto-submit timer (0 = off)
    FEEDBACK_INACTIVITY_TEXT           – text substituted for an empty auto-submit
    FEEDBACK_DEFAULT_IMAGE_TYPE        – MIME type when the window sends none
    FEEDBACK_LOG_LEVEL                 – logging level (default: INFO)
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import sys
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from feedback_bridge import DEFAULT_IMAGE_TYPE

logger = logging.getLogger(__name__)

# ── Paths ──────────────────────────────────────────────────────────────────

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".feedback-mcp")
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.json")

# ── Defaults ───────────────────────────────────────────────────────────────

DEFAULT_INACTIVITY_TEXT = "INACTIVE: No feedback was provided before the feedback window timed out."

_ENV_FIELDS = {
    "FEEDBACK_APP_COMMAND": "app_command",
    "FEEDBACK_HOST": "host",
    "FEEDBACK_PORT_MIN": "port_min",
    "FEEDBACK_PORT_MAX": "port_max",
    "FEEDBACK_PORT_ATTEMPTS": "port_attempts",
    "FEEDBACK_READY_HANDSHAKE": "ready_handshake",
    "FEEDBACK_READY_TIMEOUT_SECONDS": "ready_timeout",
    "FEEDBACK_LAUNCH_GRACE_SECONDS": "launch_grace",
    "FEEDBACK_RESPONSE_TIMEOUT_SECONDS": "response_timeout",
    "FEEDBACK_EXIT_SETTLE_SECONDS": "exit_settle",
    "FEEDBACK_TERMINATE_GRACE_SECONDS": "terminate_grace",
    "FEEDBACK_INACTIVITY_SECONDS": "inactivity_seconds",
    "FEEDBACK_INACTIVITY_TEXT": "inactivity_text",
    "FEEDBACK_DEFAULT_IMAGE_TYPE": "default_image_type",
    "FEEDBACK_LOG_LEVEL": "log_level",
}


def default_app_command() -> List[str]:
    return [sys.executable, "-m", "feedback_window"]


# ── Config ─────────────────────────────────────────────────────────────────


class BrokerConfig(BaseModel):
    """Settings shared by the broker and the feedback window it launches."""

    app_command: List[str] = Field(default_factory=default_app_command, min_length=1)
    host: str = "127.0.0.1"
    port_min: int = Field(default=49152, ge=1, le=65535)
    port_max: int = Field(default=65535, ge=1, le=65535)
    port_attempts: int = Field(default=20, ge=1)
    ready_handshake: bool = True
    ready_timeout: float = Field(default=15.0, gt=0)
    launch_grace: float = Field(default=1.0, ge=0)
    response_timeout: Optional[float] = None
    exit_settle: float = Field(default=0.5, ge=0)
    terminate_grace: float = Field(default=2.0, ge=0)
    inactivity_seconds: int = Field(default=300, ge=0)
    inactivity_text: str = DEFAULT_INACTIVITY_TEXT
    default_image_type: str = DEFAULT_IMAGE_TYPE
    log_level: str = "INFO"

    @field_validator("app_command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator("response_timeout", mode="before")
    @classmethod
    def _blank_timeout_is_none(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str) and not value.strip():
            return None
        if float(value) <= 0:
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @model_validator(mode="after")
    def _check_port_range(self) -> "BrokerConfig":
        if self.port_min > self.port_max:
            raise ValueError(f"port_min ({self.port_min}) is greater than port_max ({self.port_max})")
        return self

    # ── Loading (env vars override file) ──

    @classmethod
    def load(cls, path: str = CONFIG_FILE, environ: Optional[Mapping[str, str]] = None) -> "BrokerConfig":
        data = _read_config_file(path)
        data.update(env_overrides(os.environ if environ is None else environ))
        return cls.model_validate(data)


def _read_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return {}
    return data


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for var, field_name in _ENV_FIELDS.items():
        raw = environ.get(var)
        if raw is None:
            continue
        if not raw.strip() and field_name != "response_timeout":
            continue
        overrides[field_name] = raw
    return overrides


# ── Logging ────────────────────────────────────────────────────────────────


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr; stdout belongs to the MCP stdio transport."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
