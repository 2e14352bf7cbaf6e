"""Utilities for seeding environment variables required by the test suite."""

from __future__ import annotations

import os


_REQUIRED_ENV_FOR_TESTS = {
    "DISCORD_TOKEN": "test-token",
    "ENV_NAME": "test",
    "WHITELIST_BATCH_DELAY_SEC": "0.05",
}

# Keys that must never leak from a developer shell into the suite.
_CLEARED_FOR_TESTS = (
    "GITHUB_TOKEN",
    "GITHUB_APP_ID",
    "GITHUB_APP_PRIVATE_KEY",
    "GITHUB_APP_INSTALLATION_ID",
    "CLOUDFLARE_ZONE_ID",
    "CLOUDFLARE_API_TOKEN",
    "ENCRYPTION_KEY",
    "WHITELIST_XOR_KEY",
    "WHITELIST_STORE_PATH",
)


def apply_required_test_environment() -> None:
    """Populate the minimum environment expected by the test suite."""

    for key in _CLEARED_FOR_TESTS:
        os.environ.pop(key, None)
    for key, value in _REQUIRED_ENV_FOR_TESTS.items():
        os.environ.setdefault(key, value)
