"""Runtime configuration helpers for the bot and the whitelist pipeline."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Optional

from config import runtime as _runtime
from shared.redaction import mask_secret, sanitize_text

__all__ = [
    "reload_config",
    "get_config_snapshot",
    "require_env",
    "get_env_name",
    "get_bot_name",
    "get_port",
    "get_log_level",
    "get_command_prefix",
    "get_discord_token",
    "get_whitelist_store_path",
    "get_whitelist_xor_key",
    "get_whitelist_batch_delay_sec",
    "get_whitelist_public_base_url",
    "get_whitelist_default_realm_id",
    "get_github_api_url",
    "get_github_token",
    "get_github_app_id",
    "get_github_app_private_key",
    "get_github_app_installation_id",
    "get_github_repo_owner",
    "get_github_repo_name",
    "get_github_repo_branch",
    "get_github_encoded_path",
    "get_github_decoded_path",
    "get_git_author",
    "get_git_committer",
    "get_cloudflare_zone_id",
    "get_cloudflare_api_token",
    "get_encryption_key",
    "get_vrchat_api_url",
    "get_vrchat_auth_cookie",
    "redact_token",
    "redact_value",
]

log = logging.getLogger("shield.config")

# ===== Config Schema (authoritative) =====
# Only the bot runtime needs these; importing the whitelist pipeline must not.
_REQUIRED_ENV = ("DISCORD_TOKEN",)

_MISSING_VALUE = "—"

_SECRET_KEYS = {
    "DISCORD_TOKEN",
    "GITHUB_TOKEN",
    "GITHUB_APP_PRIVATE_KEY",
    "CLOUDFLARE_API_TOKEN",
    "ENCRYPTION_KEY",
    "WHITELIST_XOR_KEY",
    "VRCHAT_AUTH_COOKIE",
}

DEFAULT_PUBLIC_BASE_URL = "https://api.vrcshield.com"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_VRCHAT_API_URL = "https://api.vrchat.cloud/api/1"

_CONFIG: Dict[str, object] = {}


def require_env(name: str) -> str:
    value = os.getenv(name)
    if value is None or str(value).strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _env_optional(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


def _redact_value(key: str, value: object) -> str:
    """Best-effort redaction for snapshot logging."""

    key_upper = str(key).upper()
    if value in (None, "", [], (), {}):
        return _MISSING_VALUE

    if (
        key_upper in _SECRET_KEYS
        or "TOKEN" in key_upper
        or "PRIVATE_KEY" in key_upper
        or "COOKIE" in key_upper
        or key_upper.endswith("_SECRET")
    ):
        text = str(value).strip()
        if not text:
            return _MISSING_VALUE
        masked = sanitize_text(text)
        if isinstance(masked, str) and masked != text:
            return masked
        return mask_secret(text)

    return str(sanitize_text(value))


# ---------------------------------------------------------------------------
# runtime
# ---------------------------------------------------------------------------


def get_env_name(default: str = "dev") -> str:
    return _runtime.get_env_name(default)


def get_bot_name(default: str = "Shield") -> str:
    return _runtime.get_bot_name(default)


def get_port(default: int = 10000) -> int:
    return _runtime.get_port(default)


def get_log_level(default: str = "INFO") -> str:
    return _runtime.get_log_level(default)


def get_command_prefix(default: str = "!") -> str:
    return _runtime.get_command_prefix(default)


def get_discord_token() -> str:
    return os.getenv("DISCORD_TOKEN", "")


# ---------------------------------------------------------------------------
# whitelist pipeline
# ---------------------------------------------------------------------------


def get_whitelist_store_path(default: str = "data/whitelist.json") -> Path:
    return Path(_env_str("WHITELIST_STORE_PATH", default))


def get_whitelist_xor_key() -> Optional[str]:
    """Return the process-wide XOR key.

    ``None`` means unset (use the built-in default); an empty string is
    returned verbatim so the encoder can refuse it.
    """

    raw = os.getenv("WHITELIST_XOR_KEY")
    if raw is None:
        return None
    return raw.strip()


def get_whitelist_batch_delay_sec(default: float = 5.0) -> float:
    return _runtime.get_whitelist_batch_delay_sec(default)


def get_whitelist_public_base_url() -> str:
    return _env_str("WHITELIST_PUBLIC_BASE_URL", DEFAULT_PUBLIC_BASE_URL).rstrip("/")


def get_whitelist_default_realm_id() -> Optional[str]:
    return _env_optional("WHITELIST_DEFAULT_REALM_ID")


def get_github_api_url() -> str:
    return _env_str("GITHUB_API_URL", DEFAULT_GITHUB_API_URL).rstrip("/")


def get_github_token() -> Optional[str]:
    return _env_optional("GITHUB_TOKEN")


def get_github_app_id() -> Optional[str]:
    return _env_optional("GITHUB_APP_ID")


def get_github_app_private_key() -> Optional[str]:
    value = _env_optional("GITHUB_APP_PRIVATE_KEY")
    if value is None:
        return None
    # Single-line env values carry the PEM with escaped newlines.
    return value.replace("\\n", "\n")


def get_github_app_installation_id() -> Optional[str]:
    return _env_optional("GITHUB_APP_INSTALLATION_ID")


def get_github_repo_owner() -> Optional[str]:
    return _env_optional("GITHUB_REPO_OWNER")


def get_github_repo_name() -> Optional[str]:
    return _env_optional("GITHUB_REPO_NAME")


def get_github_repo_branch(default: str = "main") -> str:
    return _env_str("GITHUB_REPO_BRANCH", default)


def get_github_encoded_path(default: str = "whitelist.encoded.txt") -> str:
    return _env_str("GITHUB_REPO_ENCODED_FILE_PATH", default)


def get_github_decoded_path(default: str = "whitelist.txt") -> str:
    return _env_str("GITHUB_REPO_DECODED_FILE_PATH", default)


def _identity(prefix: str) -> Optional[Dict[str, str]]:
    name = _env_optional(f"{prefix}_NAME")
    email = _env_optional(f"{prefix}_EMAIL")
    if name and email:
        return {"name": name, "email": email}
    return None


def get_git_author() -> Optional[Dict[str, str]]:
    return _identity("GIT_AUTHOR")


def get_git_committer() -> Optional[Dict[str, str]]:
    return _identity("GIT_COMMITTER") or get_git_author()


def get_cloudflare_zone_id() -> Optional[str]:
    return _env_optional("CLOUDFLARE_ZONE_ID")


def get_cloudflare_api_token() -> Optional[str]:
    return _env_optional("CLOUDFLARE_API_TOKEN")


def get_encryption_key() -> Optional[str]:
    return _env_optional("ENCRYPTION_KEY")


def get_vrchat_api_url() -> str:
    return _env_str("VRCHAT_API_URL", DEFAULT_VRCHAT_API_URL).rstrip("/")


def get_vrchat_auth_cookie() -> Optional[str]:
    return _env_optional("VRCHAT_AUTH_COOKIE")


# ---------------------------------------------------------------------------
# snapshot
# ---------------------------------------------------------------------------


def _load_config() -> Dict[str, object]:
    return {
        "ENV_NAME": get_env_name(),
        "BOT_NAME": get_bot_name(),
        "PORT": get_port(),
        "LOG_LEVEL": get_log_level(),
        "DISCORD_TOKEN": get_discord_token(),
        "WHITELIST_STORE_PATH": str(get_whitelist_store_path()),
        "WHITELIST_XOR_KEY": get_whitelist_xor_key(),
        "WHITELIST_BATCH_DELAY_SEC": get_whitelist_batch_delay_sec(),
        "WHITELIST_PUBLIC_BASE_URL": get_whitelist_public_base_url(),
        "WHITELIST_DEFAULT_REALM_ID": get_whitelist_default_realm_id(),
        "GITHUB_API_URL": get_github_api_url(),
        "GITHUB_TOKEN": get_github_token(),
        "GITHUB_APP_ID": get_github_app_id(),
        "GITHUB_APP_PRIVATE_KEY": get_github_app_private_key(),
        "GITHUB_APP_INSTALLATION_ID": get_github_app_installation_id(),
        "GITHUB_REPO_OWNER": get_github_repo_owner(),
        "GITHUB_REPO_NAME": get_github_repo_name(),
        "GITHUB_REPO_BRANCH": get_github_repo_branch(),
        "GITHUB_REPO_ENCODED_FILE_PATH": get_github_encoded_path(),
        "GITHUB_REPO_DECODED_FILE_PATH": get_github_decoded_path(),
        "CLOUDFLARE_ZONE_ID": get_cloudflare_zone_id(),
        "CLOUDFLARE_API_TOKEN": get_cloudflare_api_token(),
        "ENCRYPTION_KEY": get_encryption_key(),
        "VRCHAT_API_URL": get_vrchat_api_url(),
        "VRCHAT_AUTH_COOKIE": get_vrchat_auth_cookie(),
    }


def _log_snapshot(snapshot: Dict[str, object]) -> None:
    redacted = {key: _redact_value(key, value) for key, value in snapshot.items()}
    log.info("config loaded", extra={"config": redacted})


def reload_config(*, require: bool = True) -> Dict[str, object]:
    """Reload configuration from the environment and return a snapshot."""

    if require:
        for _name in _REQUIRED_ENV:
            require_env(_name)

    snapshot = _load_config()

    global _CONFIG
    _CONFIG = snapshot
    _log_snapshot(snapshot)
    return dict(_CONFIG)


def get_config_snapshot(*, redacted: bool = False) -> Dict[str, object]:
    """Return a shallow copy of the cached config values."""

    if not _CONFIG:
        reload_config(require=False)
    if redacted:
        return {key: redact_value(key, value) for key, value in _CONFIG.items()}
    return dict(_CONFIG)


def redact_token(token: Optional[str]) -> str:
    token = (token or "").strip()
    if not token:
        return _MISSING_VALUE
    masked = sanitize_text(token)
    if isinstance(masked, str) and masked != token:
        return masked
    return mask_secret(token)


def redact_value(key: str, value: object) -> str:
    return _redact_value(key, value)
