"""Whitelist synchronization and publishing pipeline."""

from __future__ import annotations

__all__ = [
    "cdn",
    "cog",
    "coordinator",
    "errors",
    "generation",
    "github",
    "identity",
    "manager",
    "models",
    "publisher",
    "role_ops",
    "settings",
    "store",
    "sync",
    "user_ops",
    "web",
]
