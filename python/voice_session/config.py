"""
Runtime configuration for the call session core and console service.

Values come from the environment (optionally seeded from a ``.env`` file
next to the ``python/`` directory) and are validated strictly: a bad value
fails fast with a RuntimeError naming the variable.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


__all__ = [
    "DEFAULT_JOIN_TIMEOUT_SECONDS",
    "DEFAULT_AGENT_IDENTITY_PREFIX",
    "RuntimeConfig",
    "load_runtime_config",
]


# Load environment variables from .env file
_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(_env_path)

logger = logging.getLogger(__name__)


DEFAULT_API_BASE = "http://localhost:8787/api"
DEFAULT_JOIN_TIMEOUT_SECONDS = 15.0
DEFAULT_AGENT_IDENTITY_PREFIX = "agent-"
DEFAULT_BACKEND_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class RuntimeConfig:
    """Runtime config for the call console."""

    api_base: str
    backend_timeout_seconds: float
    join_timeout_seconds: float
    agent_identity_prefix: str
    console_host: str
    console_port: int
    mirror_dir: Path
    log_level: str


def _positive_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number. Got: {raw}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be greater than zero. Got: {value}.")
    return value


def load_runtime_config() -> RuntimeConfig:
    """Load runtime config from environment with strict validation."""
    api_base = (os.environ.get("VOICE_API_BASE", DEFAULT_API_BASE) or "").strip()
    if not api_base:
        raise RuntimeError("VOICE_API_BASE resolved to empty value.")
    if not api_base.startswith(("http://", "https://")):
        raise RuntimeError(f"VOICE_API_BASE must be an http(s) URL. Got: {api_base}")

    agent_prefix = os.environ.get("AGENT_IDENTITY_PREFIX", DEFAULT_AGENT_IDENTITY_PREFIX)
    agent_prefix = (agent_prefix or "").strip()
    if not agent_prefix:
        raise RuntimeError("AGENT_IDENTITY_PREFIX resolved to empty value.")

    console_host = (os.environ.get("CONSOLE_HOST", "127.0.0.1") or "").strip()
    if not console_host:
        raise RuntimeError("CONSOLE_HOST resolved to empty value.")

    console_port_raw = (os.environ.get("CONSOLE_PORT", "8790") or "").strip()
    try:
        console_port = int(console_port_raw)
    except ValueError as exc:
        raise RuntimeError(
            f"CONSOLE_PORT must be an integer. Got: {console_port_raw}"
        ) from exc
    if console_port < 1 or console_port > 65535:
        raise RuntimeError(f"CONSOLE_PORT must be in range 1-65535. Got: {console_port}.")

    mirror_override = os.environ.get("TRANSCRIPT_MIRROR_DIR")
    if mirror_override:
        mirror_dir = Path(mirror_override).expanduser()
    else:
        mirror_dir = Path(__file__).parent.parent / "output" / "transcripts"

    log_level = (os.environ.get("LOG_LEVEL", "INFO") or "INFO").strip().upper()
    if log_level not in logging.getLevelNamesMapping():
        raise RuntimeError(f"LOG_LEVEL is not a valid logging level. Got: {log_level}")

    return RuntimeConfig(
        api_base=api_base.rstrip("/"),
        backend_timeout_seconds=_positive_float(
            "BACKEND_TIMEOUT_SECONDS", DEFAULT_BACKEND_TIMEOUT_SECONDS
        ),
        join_timeout_seconds=_positive_float(
            "JOIN_TIMEOUT_SECONDS", DEFAULT_JOIN_TIMEOUT_SECONDS
        ),
        agent_identity_prefix=agent_prefix,
        console_host=console_host,
        console_port=console_port,
        mirror_dir=mirror_dir,
        log_level=log_level,
    )
