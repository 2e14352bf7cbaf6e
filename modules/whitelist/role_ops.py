"""Administrative operations on permission roles and manual assignments."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, List, Optional

from .generation import PermissionToken, format_permissions
from .models import PermissionRole, RoleAssignment
from .store import WhitelistStore

__all__ = ["RoleOperations"]

log = logging.getLogger("shield.whitelist.roles")


def _validated(tokens: Iterable[str]) -> List[PermissionToken]:
    ordered: List[PermissionToken] = []
    for raw in tokens:
        token = PermissionToken(raw)
        if token not in ordered:
            ordered.append(token)
    return ordered


class RoleOperations:
    def __init__(self, store: WhitelistStore) -> None:
        self.store = store

    async def create_role(
        self,
        realm_id: str,
        permissions: Optional[Iterable[str]] = None,
        external_role_id: Optional[str] = None,
    ) -> PermissionRole:
        stored = format_permissions(_validated(permissions)) if permissions is not None else None
        role = await self.store.create_role(
            str(realm_id), external_role_id=external_role_id, permissions=stored
        )
        log.info("role created • realm=%s • role=%s • ext=%s", realm_id, role.id, external_role_id or "-")
        return role

    async def map_role(
        self, external_role_id: str, realm_id: str, permissions: Iterable[str]
    ) -> PermissionRole:
        """Create or update the mapping for ``external_role_id`` in ``realm_id``."""

        tokens = _validated(permissions)
        stored = format_permissions(tokens)
        existing = await self.store.find_role(str(realm_id), str(external_role_id))
        if existing is not None:
            role = await self.store.update_role_permissions(existing.id, stored)
            log.info("role mapping updated • realm=%s • ext=%s • permissions=%s", realm_id, external_role_id, stored)
            return role
        role = await self.store.create_role(
            str(realm_id), external_role_id=str(external_role_id), permissions=stored
        )
        log.info("role mapping created • realm=%s • ext=%s • permissions=%s", realm_id, external_role_id, stored)
        return role

    async def delete_role(self, realm_id: str, external_role_id: str) -> bool:
        role = await self.store.find_role(str(realm_id), str(external_role_id))
        if role is None:
            return False
        removed = await self.store.delete_role(role.id)
        if removed:
            log.info("role mapping deleted • realm=%s • ext=%s", realm_id, external_role_id)
        return removed

    async def get_role_mappings(self, realm_id: Optional[str] = None) -> List[PermissionRole]:
        return await self.store.list_roles(realm_id=realm_id, mapped_only=True)

    async def get_all_roles(self) -> List[PermissionRole]:
        return await self.store.list_roles()

    async def should_user_be_whitelisted(
        self, external_role_ids: Iterable[str], realm_id: Optional[str] = None
    ) -> bool:
        roles = await self.store.list_roles(realm_id=realm_id, external_role_ids=list(external_role_ids))
        return bool(roles)

    async def assign_role(
        self,
        discord_id: str,
        role_id: int,
        assigned_by: Optional[str] = None,
        expires_at: Optional[dt.datetime] = None,
    ) -> RoleAssignment:
        """Grant ``role_id`` to a user, refreshing an existing grant in place.

        Raises :class:`LookupError` when the user or the role does not exist.
        """

        user = await self.store.get_user(discord_id)
        if user is None:
            raise LookupError("User not found")
        role = await self.store.get_role(role_id)
        if role is None:
            raise LookupError(f'Role with ID "{role_id}" not found')

        entry = await self.store.upsert_entry(user.id)
        existing = await self.store.list_assignments(whitelist_id=entry.id, role_id=role.id)
        if existing:
            return await self.store.update_assignment(
                existing[0].id, assigned_by=assigned_by, expires_at=expires_at
            )
        assignment = await self.store.create_assignment(
            entry.id, role.id, assigned_by=assigned_by, expires_at=expires_at
        )
        log.info(
            "role assigned • user=%s • role=%s • by=%s • expires=%s",
            discord_id,
            role.id,
            assigned_by or "-",
            expires_at.isoformat() if expires_at else "never",
        )
        return assignment

    async def assign_role_by_external_id(
        self,
        external_id: str,
        role_id: int,
        assigned_by: Optional[str] = None,
        expires_at: Optional[dt.datetime] = None,
    ) -> RoleAssignment:
        account = await self.store.get_account_by_external_id(external_id)
        user = await self.store.get_user_by_id(account.user_id) if account else None
        if user is None:
            raise LookupError("User not found in database")
        return await self.assign_role(user.discord_id, role_id, assigned_by, expires_at)

    async def remove_role(self, discord_id: str, role_id: int) -> bool:
        user = await self.store.get_user(discord_id)
        if user is None:
            return False
        entry = await self.store.get_entry(user.id)
        if entry is None:
            return False
        removed = 0
        for assignment in await self.store.list_assignments(whitelist_id=entry.id, role_id=role_id):
            if await self.store.delete_assignment(assignment.id):
                removed += 1
        return removed > 0

    async def cleanup_expired_roles(self) -> int:
        count = await self.store.delete_expired_assignments()
        if count:
            log.info("expired role assignments removed • count=%s", count)
        return count
