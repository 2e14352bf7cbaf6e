"""JSON-backed persistence for whitelist roles, entries and assignments.

The store keeps every table in memory and, when constructed with a ``path``,
rewrites the JSON document after each mutation. Every public method is a
coroutine so callers treat it like any other I/O boundary; a single
:class:`asyncio.Lock` serialises mutations inside one process.

Deletes cascade the way the relational schema did: removing a user drops its
accounts and whitelist entry, removing an entry drops its assignments, and
removing a role drops every assignment that references it.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, TypeVar

from .models import (
    AccountType,
    ExternalIdentityAccount,
    PermissionRole,
    RealmSettings,
    RoleAssignment,
    User,
    WhitelistEntry,
    utcnow,
)

__all__ = ["WhitelistStore", "DuplicateRecordError"]

log = logging.getLogger("shield.whitelist.store")

T = TypeVar("T")

_TABLES: Dict[str, type] = {
    "users": User,
    "accounts": ExternalIdentityAccount,
    "roles": PermissionRole,
    "entries": WhitelistEntry,
    "assignments": RoleAssignment,
}
_DATETIME_FIELDS = {
    "created_at",
    "assigned_at",
    "expires_at",
    "display_name_updated_at",
    "updated_at",
}


class DuplicateRecordError(ValueError):
    """Raised when a unique key would be violated."""


def _encode_record(record: Any) -> dict:
    payload: dict[str, Any] = {}
    for item in fields(record):
        value = getattr(record, item.name)
        if isinstance(value, dt.datetime):
            value = value.isoformat()
        elif isinstance(value, AccountType):
            value = value.value
        payload[item.name] = value
    return payload


def _decode_record(cls: Type[T], raw: dict) -> T:
    known = {item.name for item in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = dt.datetime.fromisoformat(value)
        elif key == "account_type" and value is not None:
            value = AccountType(value)
        kwargs[key] = value
    return cls(**kwargs)


class WhitelistStore:
    """In-memory tables with optional JSON persistence."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else None
        self._lock = asyncio.Lock()
        self._tables: Dict[str, Dict[int, Any]] = {name: {} for name in _TABLES}
        self._realm_settings: Dict[str, RealmSettings] = {}
        self._sequences: Dict[str, int] = {name: 0 for name in _TABLES}
        if self.path is not None:
            self._load()

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _load(self) -> None:
        assert self.path is not None
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        for name, cls in _TABLES.items():
            rows = payload.get(name) or []
            table = self._tables[name]
            for raw in rows:
                record = _decode_record(cls, raw)
                table[record.id] = record
            stored_seq = int((payload.get("sequences") or {}).get(name, 0) or 0)
            self._sequences[name] = max([stored_seq, *table.keys()])
        for raw in payload.get("realm_settings") or []:
            settings = _decode_record(RealmSettings, raw)
            self._realm_settings[settings.realm_id] = settings
        log.info(
            "whitelist store loaded • path=%s • users=%d • roles=%d • entries=%d",
            self.path,
            len(self._tables["users"]),
            len(self._tables["roles"]),
            len(self._tables["entries"]),
        )

    def _save(self) -> None:
        if self.path is None:
            return
        payload: dict[str, Any] = {
            name: [_encode_record(record) for record in table.values()]
            for name, table in self._tables.items()
        }
        payload["realm_settings"] = [
            _encode_record(settings) for settings in self._realm_settings.values()
        ]
        payload["sequences"] = dict(self._sequences)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")

    def _next_id(self, table: str) -> int:
        self._sequences[table] += 1
        return self._sequences[table]

    # ------------------------------------------------------------------
    # users & identity accounts
    # ------------------------------------------------------------------
    def _user_by_discord(self, discord_id: str) -> Optional[User]:
        for user in self._tables["users"].values():
            if user.discord_id == str(discord_id):
                return user
        return None

    async def add_user(self, discord_id: str) -> User:
        async with self._lock:
            existing = self._user_by_discord(discord_id)
            if existing is not None:
                return replace(existing)
            user = User(id=self._next_id("users"), discord_id=str(discord_id))
            self._tables["users"][user.id] = user
            self._save()
            return replace(user)

    async def get_user(self, discord_id: str) -> Optional[User]:
        user = self._user_by_discord(discord_id)
        return replace(user) if user else None

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        user = self._tables["users"].get(user_id)
        return replace(user) if user else None

    async def delete_user(self, discord_id: str) -> bool:
        async with self._lock:
            user = self._user_by_discord(discord_id)
            if user is None:
                return False
            self._delete_entry_for(user.id)
            for account_id in [
                a.id for a in self._tables["accounts"].values() if a.user_id == user.id
            ]:
                del self._tables["accounts"][account_id]
            del self._tables["users"][user.id]
            self._save()
            return True

    async def add_account(
        self,
        user_id: int,
        external_id: str,
        account_type: AccountType,
        *,
        display_name: Optional[str] = None,
    ) -> ExternalIdentityAccount:
        async with self._lock:
            if user_id not in self._tables["users"]:
                raise LookupError(f"User {user_id} not found")
            for account in self._tables["accounts"].values():
                if account.external_id == external_id:
                    account.user_id = user_id
                    account.account_type = AccountType(account_type)
                    if display_name:
                        account.display_name = display_name
                        account.display_name_updated_at = utcnow()
                    self._save()
                    return replace(account)
            account = ExternalIdentityAccount(
                id=self._next_id("accounts"),
                user_id=user_id,
                external_id=external_id,
                account_type=AccountType(account_type),
                display_name=display_name,
                display_name_updated_at=utcnow() if display_name else None,
            )
            self._tables["accounts"][account.id] = account
            self._save()
            return replace(account)

    async def list_accounts(
        self,
        user_id: int,
        account_types: Optional[Iterable[AccountType]] = None,
    ) -> List[ExternalIdentityAccount]:
        wanted = set(account_types) if account_types is not None else None
        return [
            replace(account)
            for account in self._tables["accounts"].values()
            if account.user_id == user_id
            and (wanted is None or account.account_type in wanted)
        ]

    async def get_account_by_external_id(
        self, external_id: str
    ) -> Optional[ExternalIdentityAccount]:
        for account in self._tables["accounts"].values():
            if account.external_id == external_id:
                return replace(account)
        return None

    async def set_account_type(self, account_id: int, account_type: AccountType) -> None:
        async with self._lock:
            account = self._tables["accounts"].get(account_id)
            if account is None:
                raise LookupError(f"Account {account_id} not found")
            account.account_type = AccountType(account_type)
            self._save()

    async def update_account_display_name(
        self,
        account_id: int,
        display_name: str,
        *,
        updated_at: Optional[dt.datetime] = None,
    ) -> None:
        async with self._lock:
            account = self._tables["accounts"].get(account_id)
            if account is None:
                return
            account.display_name = display_name
            account.display_name_updated_at = updated_at or utcnow()
            self._save()

    async def delete_account(self, account_id: int) -> bool:
        async with self._lock:
            removed = self._tables["accounts"].pop(account_id, None)
            if removed is not None:
                self._save()
            return removed is not None

    # ------------------------------------------------------------------
    # permission roles
    # ------------------------------------------------------------------
    def _role_by_key(self, realm_id: str, external_role_id: str) -> Optional[PermissionRole]:
        for role in self._tables["roles"].values():
            if role.realm_id == realm_id and role.external_role_id == external_role_id:
                return role
        return None

    async def create_role(
        self,
        realm_id: str,
        *,
        external_role_id: Optional[str] = None,
        permissions: Optional[str] = None,
    ) -> PermissionRole:
        async with self._lock:
            if external_role_id is not None and self._role_by_key(
                str(realm_id), str(external_role_id)
            ):
                raise DuplicateRecordError(
                    f"Role {external_role_id} is already mapped in realm {realm_id}"
                )
            role = PermissionRole(
                id=self._next_id("roles"),
                realm_id=str(realm_id),
                external_role_id=str(external_role_id) if external_role_id is not None else None,
                permissions=permissions,
            )
            self._tables["roles"][role.id] = role
            self._save()
            return replace(role)

    async def get_role(self, role_id: int) -> Optional[PermissionRole]:
        role = self._tables["roles"].get(role_id)
        return replace(role) if role else None

    async def find_role(self, realm_id: str, external_role_id: str) -> Optional[PermissionRole]:
        role = self._role_by_key(str(realm_id), str(external_role_id))
        return replace(role) if role else None

    async def update_role_permissions(self, role_id: int, permissions: Optional[str]) -> PermissionRole:
        async with self._lock:
            role = self._tables["roles"].get(role_id)
            if role is None:
                raise LookupError(f"Role with ID {role_id} not found")
            role.permissions = permissions
            self._save()
            return replace(role)

    async def delete_role(self, role_id: int) -> bool:
        async with self._lock:
            role = self._tables["roles"].pop(role_id, None)
            if role is None:
                return False
            doomed = [
                a.id for a in self._tables["assignments"].values() if a.role_id == role_id
            ]
            for assignment_id in doomed:
                del self._tables["assignments"][assignment_id]
            self._save()
            return True

    async def list_roles(
        self,
        *,
        realm_id: Optional[str] = None,
        external_role_ids: Optional[Iterable[str]] = None,
        mapped_only: bool = False,
    ) -> List[PermissionRole]:
        wanted = {str(r) for r in external_role_ids} if external_role_ids is not None else None
        rows: List[PermissionRole] = []
        for role in self._tables["roles"].values():
            if realm_id is not None and role.realm_id != str(realm_id):
                continue
            if mapped_only and role.external_role_id is None:
                continue
            if wanted is not None and role.external_role_id not in wanted:
                continue
            rows.append(replace(role))
        return rows

    async def realms_with_roles(self, realm_ids: Optional[Sequence[str]] = None) -> List[str]:
        """Distinct realm ids owning at least one role, optionally restricted."""

        present: list[str] = []
        for role in self._tables["roles"].values():
            if role.realm_id not in present:
                present.append(role.realm_id)
        if realm_ids is None:
            return present
        allowed = set(present)
        ordered: list[str] = []
        for realm in realm_ids:
            if realm in allowed and realm not in ordered:
                ordered.append(realm)
        return ordered

    # ------------------------------------------------------------------
    # whitelist entries
    # ------------------------------------------------------------------
    def _entry_for(self, user_id: int) -> Optional[WhitelistEntry]:
        for entry in self._tables["entries"].values():
            if entry.user_id == user_id:
                return entry
        return None

    def _delete_entry_for(self, user_id: int) -> bool:
        entry = self._entry_for(user_id)
        if entry is None:
            return False
        doomed = [
            a.id for a in self._tables["assignments"].values() if a.whitelist_id == entry.id
        ]
        for assignment_id in doomed:
            del self._tables["assignments"][assignment_id]
        del self._tables["entries"][entry.id]
        return True

    async def upsert_entry(self, user_id: int) -> WhitelistEntry:
        async with self._lock:
            entry = self._entry_for(user_id)
            if entry is None:
                entry = WhitelistEntry(id=self._next_id("entries"), user_id=user_id)
                self._tables["entries"][entry.id] = entry
                self._save()
            return replace(entry)

    async def get_entry(self, user_id: int) -> Optional[WhitelistEntry]:
        entry = self._entry_for(user_id)
        return replace(entry) if entry else None

    async def delete_entry(self, user_id: int) -> bool:
        async with self._lock:
            removed = self._delete_entry_for(user_id)
            if removed:
                self._save()
            return removed

    async def list_entries(self, user_ids: Optional[Iterable[int]] = None) -> List[WhitelistEntry]:
        wanted = set(user_ids) if user_ids is not None else None
        return [
            replace(entry)
            for entry in self._tables["entries"].values()
            if wanted is None or entry.user_id in wanted
        ]

    # ------------------------------------------------------------------
    # role assignments
    # ------------------------------------------------------------------
    async def list_assignments(
        self,
        *,
        whitelist_id: Optional[int] = None,
        role_id: Optional[int] = None,
        active_only: bool = False,
        now: Optional[dt.datetime] = None,
    ) -> List[RoleAssignment]:
        moment = now or utcnow()
        rows: List[RoleAssignment] = []
        for assignment in self._tables["assignments"].values():
            if whitelist_id is not None and assignment.whitelist_id != whitelist_id:
                continue
            if role_id is not None and assignment.role_id != role_id:
                continue
            if active_only and not assignment.is_active(moment):
                continue
            rows.append(replace(assignment))
        return rows

    async def create_assignment(
        self,
        whitelist_id: int,
        role_id: int,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[dt.datetime] = None,
    ) -> RoleAssignment:
        async with self._lock:
            if whitelist_id not in self._tables["entries"]:
                raise LookupError(f"Whitelist entry {whitelist_id} not found")
            if role_id not in self._tables["roles"]:
                raise LookupError(f"Role with ID {role_id} not found")
            assignment = RoleAssignment(
                id=self._next_id("assignments"),
                whitelist_id=whitelist_id,
                role_id=role_id,
                assigned_by=assigned_by,
                expires_at=expires_at,
            )
            self._tables["assignments"][assignment.id] = assignment
            self._save()
            return replace(assignment)

    async def update_assignment(
        self,
        assignment_id: int,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[dt.datetime] = None,
    ) -> RoleAssignment:
        async with self._lock:
            assignment = self._tables["assignments"].get(assignment_id)
            if assignment is None:
                raise LookupError(f"Assignment {assignment_id} not found")
            assignment.assigned_by = assigned_by
            assignment.expires_at = expires_at
            self._save()
            return replace(assignment)

    async def delete_assignment(self, assignment_id: int) -> bool:
        async with self._lock:
            removed = self._tables["assignments"].pop(assignment_id, None)
            if removed is not None:
                self._save()
            return removed is not None

    async def delete_expired_assignments(self, now: Optional[dt.datetime] = None) -> int:
        moment = now or utcnow()
        async with self._lock:
            doomed = [
                a.id
                for a in self._tables["assignments"].values()
                if a.expires_at is not None and a.expires_at <= moment
            ]
            for assignment_id in doomed:
                del self._tables["assignments"][assignment_id]
            if doomed:
                self._save()
            return len(doomed)

    # ------------------------------------------------------------------
    # counts
    # ------------------------------------------------------------------
    async def count_entries(self) -> int:
        return len(self._tables["entries"])

    async def count_roles(self) -> int:
        return len(self._tables["roles"])

    async def count_assignments(
        self, *, expired: Optional[bool] = None, now: Optional[dt.datetime] = None
    ) -> int:
        moment = now or utcnow()
        rows = self._tables["assignments"].values()
        if expired is None:
            return len(rows)
        if expired:
            return sum(1 for a in rows if a.expires_at is not None and a.expires_at <= moment)
        return sum(1 for a in rows if a.expires_at is None or a.expires_at > moment)

    # ------------------------------------------------------------------
    # realm settings
    # ------------------------------------------------------------------
    async def get_realm_settings(self, realm_id: str) -> Optional[RealmSettings]:
        settings = self._realm_settings.get(str(realm_id))
        return replace(settings) if settings else None

    async def save_realm_settings(self, settings: RealmSettings) -> RealmSettings:
        async with self._lock:
            stored = replace(settings, realm_id=str(settings.realm_id), updated_at=utcnow())
            self._realm_settings[stored.realm_id] = stored
            self._save()
            return replace(stored)
