"""Whitelist content generation: permission tokens, plaintext rows, encoded form.

Plaintext format, one line per identity account::

    displayName,token1:token2:token3

The encoded form appends ``|<checksum>`` to the newline-normalised plaintext,
where the checksum is the decimal sum of its UTF-8 bytes, XORs the result with
the repeating key bytes and base64-encodes it. The XOR layer is obfuscation for
the in-world consumer, not security.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import datetime as dt
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence

from .errors import EncodingError, InvalidPermissionToken
from .identity import IdentityProvider, resolve_display_name
from .models import (
    LISTED_ACCOUNT_TYPES,
    ExternalIdentityAccount,
    PermissionRole,
    UserView,
    utcnow,
)
from .store import WhitelistStore

if TYPE_CHECKING:
    from .settings import SettingsResolver

__all__ = [
    "DEFAULT_XOR_KEY",
    "DERIVED_FEATURE_FILES",
    "PermissionToken",
    "parse_permissions",
    "format_permissions",
    "union_permissions",
    "compute_checksum",
    "normalize_content",
    "xor_encode",
    "xor_decode",
    "DecodedWhitelist",
    "decode_payload",
    "ContentGenerator",
]

log = logging.getLogger("shield.whitelist.generation")

DEFAULT_XOR_KEY = "SHIELD_WHITELIST_KEY_9302025"

# Permission token -> repository path of the derived name list.
DERIVED_FEATURE_FILES: Dict[str, str] = {
    "rooftop_announce": "rooftop/announcement.txt",
    "rooftop_bouncer": "rooftop/bouncer.txt",
    "rooftop_staff": "rooftop/staff.txt",
    "rooftop_vip": "rooftop/vip.txt",
    "rooftop_vipplus": "rooftop/vipplus.txt",
}

_REFRESH_BATCH = 10
_FORBIDDEN_TOKEN_CHARS = frozenset(",:|\r\n")


class PermissionToken(str):
    """A single permission grant such as ``station`` or ``truavatar``.

    Tokens are compared case-sensitively and may not contain any of the
    whitelist separators (comma, colon, pipe, newline).
    """

    __slots__ = ()

    def __new__(cls, value: object) -> "PermissionToken":
        text = str(value if value is not None else "").strip()
        if not text:
            raise InvalidPermissionToken("Permission token cannot be blank")
        bad = sorted(ch for ch in set(text) if ch in _FORBIDDEN_TOKEN_CHARS)
        if bad:
            raise InvalidPermissionToken(
                f"Permission token {text!r} contains reserved characters: {' '.join(map(repr, bad))}"
            )
        return super().__new__(cls, text)


def parse_permissions(raw: Optional[str], *, strict: bool = False) -> List[PermissionToken]:
    """Split a stored comma-delimited permission string into tokens.

    Blank pieces are dropped. Invalid pieces raise when ``strict`` is set,
    otherwise they are logged and skipped.
    """

    tokens: List[PermissionToken] = []
    if not raw:
        return tokens
    for piece in str(raw).split(","):
        if not piece.strip():
            continue
        try:
            token = PermissionToken(piece)
        except InvalidPermissionToken:
            if strict:
                raise
            log.warning("skipping invalid permission token • token=%r", piece.strip())
            continue
        if token not in tokens:
            tokens.append(token)
    return tokens


def format_permissions(tokens: Iterable[str]) -> str:
    """Serialise tokens the way role mappings are stored (``a, b``)."""

    return ", ".join(PermissionToken(token) for token in tokens)


def union_permissions(raw_values: Iterable[Optional[str]]) -> List[str]:
    """Union tokens across several stored permission strings, first-seen order."""

    merged: List[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        for token in parse_permissions(raw):
            if token in seen:
                continue
            seen.add(token)
            merged.append(str(token))
    return merged


def normalize_content(content: str) -> str:
    return content.replace("\r\n", "\n").strip()


def compute_checksum(content: str) -> int:
    """Decimal byte-sum of the normalised content."""

    return sum(normalize_content(content).encode("utf-8"))


def _xor_bytes(data: bytes, key: str) -> bytes:
    key_bytes = key.encode("utf-8") if key is not None else b""
    if not key_bytes:
        raise EncodingError("XOR key cannot be empty")
    size = len(key_bytes)
    return bytes(byte ^ key_bytes[index % size] for index, byte in enumerate(data))


def xor_encode(content: str, key: str) -> str:
    normalized = normalize_content(content)
    checksum = compute_checksum(normalized)
    payload = f"{normalized}|{checksum}".encode("utf-8")
    return base64.b64encode(_xor_bytes(payload, key)).decode("ascii")


@dataclass(slots=True, frozen=True)
class DecodedWhitelist:
    content: str
    checksum: int

    @property
    def valid(self) -> bool:
        return compute_checksum(self.content) == self.checksum


def decode_payload(encoded: str, key: str) -> DecodedWhitelist:
    """Reverse :func:`xor_encode` without validating the checksum."""

    try:
        raw = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EncodingError("Encoded whitelist is not valid base64") from exc
    try:
        text = _xor_bytes(raw, key).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EncodingError("Encoded whitelist did not decode to UTF-8; wrong key?") from exc
    content, sep, checksum_text = text.rpartition("|")
    if not sep or not checksum_text.isdigit():
        raise EncodingError("Encoded whitelist is missing its checksum")
    return DecodedWhitelist(content=content, checksum=int(checksum_text))


def xor_decode(encoded: str, key: str) -> str:
    decoded = decode_payload(encoded, key)
    if not decoded.valid:
        raise EncodingError(
            f"Checksum mismatch: expected {decoded.checksum}, got {compute_checksum(decoded.content)}"
        )
    return decoded.content


class ContentGenerator:
    """Render the stored whitelist into the published formats."""

    def __init__(
        self,
        store: WhitelistStore,
        identity: Optional[IdentityProvider] = None,
        *,
        settings: Optional["SettingsResolver"] = None,
        name_max_age: Optional[dt.timedelta] = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.settings = settings
        self.name_max_age = name_max_age

    def _needs_refresh(self, account: ExternalIdentityAccount, now: dt.datetime) -> bool:
        if not account.display_name or account.display_name == account.external_id:
            return True
        if self.name_max_age is None:
            return False
        updated = account.display_name_updated_at
        return updated is None or now - updated > self.name_max_age

    async def get_whitelist_users(self, realm_id: Optional[str] = None) -> List[UserView]:
        now = utcnow()
        roles: Dict[int, PermissionRole] = {role.id: role for role in await self.store.list_roles()}
        realm_role_ids: Optional[set[int]] = None
        if realm_id is not None:
            realm_role_ids = {rid for rid, role in roles.items() if role.realm_id == str(realm_id)}

        views: List[UserView] = []
        stale: List[ExternalIdentityAccount] = []
        for entry in await self.store.list_entries():
            user = await self.store.get_user_by_id(entry.user_id)
            if user is None:
                continue
            accounts = await self.store.list_accounts(user.id, LISTED_ACCOUNT_TYPES)
            if not accounts:
                continue

            assignments = await self.store.list_assignments(whitelist_id=entry.id)
            if realm_role_ids is not None:
                assignments = [a for a in assignments if a.role_id in realm_role_ids]
            active = [a for a in assignments if a.is_active(now)]
            permissions = union_permissions(
                roles[a.role_id].permissions for a in active if a.role_id in roles
            )

            for account in accounts:
                if self._needs_refresh(account, now):
                    stale.append(account)
                views.append(
                    UserView(
                        discord_id=user.discord_id,
                        display_name=account.display_name or account.external_id,
                        permissions=list(permissions),
                        account_type=account.account_type,
                        external_id=account.external_id,
                        account_id=account.id,
                        created_at=entry.created_at,
                    )
                )

        if stale and self.identity is not None:
            await self._refresh_display_names(stale, views)
        return views

    async def _refresh_display_names(
        self, accounts: Sequence[ExternalIdentityAccount], views: List[UserView]
    ) -> None:
        async def refresh(account: ExternalIdentityAccount) -> None:
            assert self.identity is not None
            info = await self.identity.get_user_by_id(account.external_id)
            name = resolve_display_name(info, fallback=account.external_id)
            if name == account.external_id or name == account.display_name:
                return
            await self.store.update_account_display_name(account.id, name)
            for view in views:
                if view.account_id == account.id:
                    view.display_name = name

        for start in range(0, len(accounts), _REFRESH_BATCH):
            batch = accounts[start : start + _REFRESH_BATCH]
            results = await asyncio.gather(
                *(refresh(account) for account in batch), return_exceptions=True
            )
            for account, result in zip(batch, results):
                if isinstance(result, BaseException):
                    log.warning(
                        "display name refresh failed • account=%s • reason=%r",
                        account.external_id,
                        result,
                    )

    async def generate_content(self, realm_id: Optional[str] = None) -> str:
        users = await self.get_whitelist_users(realm_id)
        if not users:
            return ""
        return "\n".join(f"{user.display_name},{':'.join(user.permissions)}" for user in users)

    async def resolve_xor_key(self, realm_id: Optional[str] = None) -> str:
        if self.settings is not None:
            return await self.settings.xor_key(realm_id)
        return DEFAULT_XOR_KEY

    async def generate_encoded(self, realm_id: Optional[str] = None) -> str:
        key = await self.resolve_xor_key(realm_id)
        if not key:
            raise EncodingError("XOR key cannot be empty")
        content = await self.generate_content(realm_id)
        return xor_encode(content, key)

    # ------------------------------------------------------------------
    # derived feature lists
    # ------------------------------------------------------------------
    async def users_with_permission(self, token: str) -> List[str]:
        """Display names of every user holding ``token``, one name per user."""

        wanted = PermissionToken(token)
        now = utcnow()
        roles = {role.id: role for role in await self.store.list_roles()}
        names: set[str] = set()
        for entry in await self.store.list_entries():
            active = await self.store.list_assignments(whitelist_id=entry.id, active_only=True, now=now)
            held = union_permissions(roles[a.role_id].permissions for a in active if a.role_id in roles)
            if wanted not in held:
                continue
            accounts = await self.store.list_accounts(entry.user_id, LISTED_ACCOUNT_TYPES)
            if not accounts:
                continue
            chosen = None
            for account_type in LISTED_ACCOUNT_TYPES:
                chosen = next((a for a in accounts if a.account_type is account_type), None)
                if chosen is not None:
                    break
            if chosen is not None and chosen.display_name:
                names.add(chosen.display_name)
        return sorted(names)

    async def generate_derived_files(self) -> Dict[str, str]:
        tokens = list(DERIVED_FEATURE_FILES)
        contents = await asyncio.gather(*(self.users_with_permission(t) for t in tokens))
        return {
            DERIVED_FEATURE_FILES[token]: "\n".join(names)
            for token, names in zip(tokens, contents)
        }

    async def users_hold_derived_tokens(self, discord_ids: Iterable[str]) -> bool:
        derived = set(DERIVED_FEATURE_FILES)
        roles = {role.id: role for role in await self.store.list_roles()}
        for discord_id in discord_ids:
            user = await self.store.get_user(discord_id)
            if user is None:
                continue
            entry = await self.store.get_entry(user.id)
            if entry is None:
                continue
            active = await self.store.list_assignments(whitelist_id=entry.id, active_only=True)
            held = union_permissions(roles[a.role_id].permissions for a in active if a.role_id in roles)
            if derived.intersection(held):
                return True
        return False
