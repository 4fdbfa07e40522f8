"""
Runtime configuration for the execution engine.

Values come from environment variables (optionally loaded from a .env file).
Invalid values fall back to their defaults instead of failing startup.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger(__name__)

SandboxMode = Literal["process", "inprocess"]

DEFAULT_NODE_TIMEOUT_MS = 10_000
DEFAULT_PASSTHROUGH_DELAY_MS = 0


class Settings(BaseModel):
    node_timeout_ms: int = DEFAULT_NODE_TIMEOUT_MS
    passthrough_delay_ms: int = DEFAULT_PASSTHROUGH_DELAY_MS
    sandbox_mode: SandboxMode = "process"
    sandbox_start_method: str = "spawn"
    persist_executions: bool = False


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %d", name, raw, default)
        return default
    if parsed < minimum:
        logger.warning("Ignoring out-of-range %s=%r, using %d", name, raw, default)
        return default
    return parsed


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _sandbox_mode_env() -> SandboxMode:
    raw = os.getenv("AGENTFLOW_SANDBOX_MODE", "process").strip().lower()
    if raw not in ("process", "inprocess"):
        logger.warning("Unknown AGENTFLOW_SANDBOX_MODE=%r, using 'process'", raw)
        return "process"
    return raw  # type: ignore[return-value]


def load_settings() -> Settings:
    """Read settings from the environment."""
    return Settings(
        node_timeout_ms=_int_env(
            "AGENTFLOW_NODE_TIMEOUT_MS", DEFAULT_NODE_TIMEOUT_MS, minimum=1
        ),
        passthrough_delay_ms=_int_env(
            "AGENTFLOW_PASSTHROUGH_DELAY_MS", DEFAULT_PASSTHROUGH_DELAY_MS
        ),
        sandbox_mode=_sandbox_mode_env(),
        sandbox_start_method=os.getenv("AGENTFLOW_SANDBOX_START_METHOD", "spawn").strip() or "spawn",
        persist_executions=_bool_env("AGENTFLOW_PERSIST_EXECUTIONS"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached process-wide settings."""
    return load_settings()
