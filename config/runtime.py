from __future__ import annotations

# config/runtime.py
import os
from typing import Optional


def get_port(default: int = 10000) -> int:
    """
    Returns the port for the aiohttp web server.
    Render provides $PORT; locally we fall back to 10000.
    """
    try:
        return int(os.getenv("PORT", str(default)))
    except ValueError:
        return default


def get_env_name(default: str = "dev") -> str:
    return os.getenv("ENV_NAME", default)


def get_bot_name(default: str = "Shield") -> str:
    return os.getenv("BOT_NAME", default)


def get_log_level(default: str = "INFO") -> str:
    return (os.getenv("LOG_LEVEL") or default).strip().upper() or default


def _coerce_float(value: Optional[str], fallback: float) -> float:
    try:
        if value is None:
            raise TypeError
        return float(value)
    except (TypeError, ValueError):
        return fallback


def get_whitelist_batch_delay_sec(default: float = 5.0) -> float:
    """
    Quiet period (seconds) the publish coordinator waits before flushing.

    Every queued change restarts the window. Override via
    WHITELIST_BATCH_DELAY_SEC; negative values fall back to the default.
    """

    value = _coerce_float(os.getenv("WHITELIST_BATCH_DELAY_SEC"), default)
    return value if value >= 0 else default


def get_command_prefix(default: str = "!") -> str:
    return os.getenv("COMMAND_PREFIX", default)
