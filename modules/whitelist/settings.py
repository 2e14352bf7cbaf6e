"""Per-realm publishing settings with environment fallbacks.

Each :class:`RealmSettings` field overrides its environment counterpart on its
own; anything left unset falls back to the process-wide configuration in
:mod:`shared.config`. Secret fields are stored encrypted when ``ENCRYPTION_KEY``
is configured and decrypted on read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Dict, Optional

from shared import config
from shared.secrets import decrypt_or_passthrough, encrypt

from .errors import ConfigurationError, EncodingError
from .generation import DEFAULT_XOR_KEY
from .models import RealmSettings, utcnow
from .store import WhitelistStore

__all__ = ["GitHubSettings", "SettingsResolver", "SECRET_FIELDS"]

log = logging.getLogger("shield.whitelist.settings")

SECRET_FIELDS = frozenset({"xor_key", "github_token", "github_app_private_key"})
_EDITABLE_FIELDS = frozenset(f.name for f in fields(RealmSettings)) - {"realm_id", "updated_at"}


@dataclass(slots=True, frozen=True)
class GitHubSettings:
    owner: str
    repo: str
    branch: str
    encoded_path: str
    decoded_path: str
    api_url: str
    token: Optional[str] = None
    app_id: Optional[str] = None
    app_private_key: Optional[str] = None
    installation_id: Optional[str] = None
    author: Optional[Dict[str, str]] = None
    committer: Optional[Dict[str, str]] = None

    @property
    def uses_app(self) -> bool:
        return bool(self.app_id and self.app_private_key and self.installation_id)


def _pick(override: Optional[str], fallback: Optional[str]) -> Optional[str]:
    value = (override or "").strip()
    return value or fallback


class SettingsResolver:
    """Resolve realm overrides against the environment."""

    def __init__(self, store: WhitelistStore) -> None:
        self.store = store

    async def _realm(self, realm_id: Optional[str]) -> Optional[RealmSettings]:
        if not realm_id:
            return None
        return await self.store.get_realm_settings(str(realm_id))

    def _reveal(self, value: Optional[str], field_name: str) -> Optional[str]:
        return decrypt_or_passthrough(value, config.get_encryption_key(), field=field_name)

    async def xor_key(self, realm_id: Optional[str] = None) -> str:
        realm = await self._realm(realm_id)
        if realm is not None and realm.xor_key:
            return self._reveal(realm.xor_key, "xor_key") or DEFAULT_XOR_KEY
        configured = config.get_whitelist_xor_key()
        if configured is None:
            return DEFAULT_XOR_KEY
        if not configured:
            raise EncodingError("WHITELIST_XOR_KEY is set but empty")
        return configured

    async def github(self, realm_id: Optional[str] = None) -> GitHubSettings:
        """Return the repository target and credentials for ``realm_id``.

        Raises :class:`ConfigurationError` when the owner, repository or any
        usable credential is missing.
        """

        realm = await self._realm(realm_id)
        get = (lambda name: getattr(realm, name)) if realm is not None else (lambda name: None)

        owner = _pick(get("github_owner"), config.get_github_repo_owner())
        repo = _pick(get("github_repo"), config.get_github_repo_name())
        if not owner or not repo:
            raise ConfigurationError(
                "GitHub repository owner/name not configured (neither realm settings nor environment)",
                context={"realm_id": realm_id},
            )

        token = _pick(self._reveal(get("github_token"), "github_token"), config.get_github_token())
        app_id = _pick(get("github_app_id"), config.get_github_app_id())
        private_key = _pick(
            self._reveal(get("github_app_private_key"), "github_app_private_key"),
            config.get_github_app_private_key(),
        )
        installation_id = _pick(get("github_installation_id"), config.get_github_app_installation_id())

        resolved = GitHubSettings(
            owner=owner,
            repo=repo,
            branch=_pick(get("github_branch"), config.get_github_repo_branch()) or "main",
            encoded_path=_pick(get("encoded_path"), config.get_github_encoded_path()) or "whitelist.encoded.txt",
            decoded_path=_pick(get("decoded_path"), config.get_github_decoded_path()) or "whitelist.txt",
            api_url=config.get_github_api_url(),
            token=token,
            app_id=app_id,
            app_private_key=private_key,
            installation_id=installation_id,
            author=config.get_git_author(),
            committer=config.get_git_committer(),
        )
        if not resolved.uses_app and not resolved.token:
            raise ConfigurationError(
                "GitHub credentials not configured: set GITHUB_TOKEN or the GitHub App id, private key and installation id",
                context={"realm_id": realm_id},
            )
        return resolved

    async def set_realm_settings(self, realm_id: str, **values: Optional[str]) -> RealmSettings:
        """Persist overrides for ``realm_id``; omitted fields keep their value.

        Passing ``None`` (or an empty string) clears an override.
        """

        unknown = sorted(set(values) - _EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown realm setting(s): {', '.join(unknown)}")

        key = config.get_encryption_key()
        changes: Dict[str, Optional[str]] = {}
        for name, value in values.items():
            text = (str(value).strip() if value is not None else "") or None
            if text and name in SECRET_FIELDS:
                if key:
                    text = encrypt(text, key)
                else:
                    log.warning("ENCRYPTION_KEY unset; storing %s for realm %s in plaintext", name, realm_id)
            changes[name] = text

        current = await self.store.get_realm_settings(str(realm_id)) or RealmSettings(realm_id=str(realm_id))
        updated = replace(current, updated_at=utcnow(), **changes)
        saved = await self.store.save_realm_settings(updated)
        log.info("realm settings saved • realm=%s • fields=%s", realm_id, ",".join(sorted(changes)) or "-")
        return saved
