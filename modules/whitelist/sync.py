"""Reconcile a member's live external roles into whitelist assignments.

``sync_user_roles`` is pure reconciliation: it never queues a publish. After a
call, the user's assignments equal exactly the mapped roles of the given realm
that the member currently holds, so re-running it is harmless.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .generation import union_permissions
from .models import AccountType
from .store import WhitelistStore

__all__ = ["RoleSyncEngine", "SYNC_ACTOR"]

log = logging.getLogger("shield.whitelist.sync")

SYNC_ACTOR = "Discord Role Sync"


class RoleSyncEngine:
    def __init__(self, store: WhitelistStore) -> None:
        self.store = store

    async def sync_user_roles(
        self, discord_id: str, external_role_ids: Iterable[str], realm_id: str
    ) -> None:
        user = await self.store.get_user(discord_id)
        if user is None:
            log.debug("sync skipped • user=%s • reason=unknown_user", discord_id)
            return

        accounts = await self.store.list_accounts(user.id)
        if not any(account.verified for account in accounts):
            if await self.store.delete_entry(user.id):
                log.info("whitelist revoked • user=%s • reason=no_verified_account", discord_id)
            return

        held = [str(role_id) for role_id in external_role_ids]
        mapped = await self.store.list_roles(external_role_ids=held)
        eligible = [role for role in mapped if role.realm_id == str(realm_id)]
        if len(eligible) < len(mapped):
            log.debug(
                "sync ignoring foreign realm roles • user=%s • realm=%s • ignored=%s",
                discord_id,
                realm_id,
                len(mapped) - len(eligible),
            )
        if not eligible:
            if await self.store.delete_entry(user.id):
                log.info("whitelist revoked • user=%s • realm=%s • reason=no_mapped_roles", discord_id, realm_id)
            return

        entry = await self.store.upsert_entry(user.id)
        existing = await self.store.list_assignments(whitelist_id=entry.id)
        wanted = {role.id for role in eligible}
        current = {assignment.role_id for assignment in existing}

        for assignment in existing:
            if assignment.role_id not in wanted:
                await self.store.delete_assignment(assignment.id)
        for role in eligible:
            if role.id not in current:
                await self.store.create_assignment(entry.id, role.id, assigned_by=SYNC_ACTOR)

        permissions = union_permissions(role.permissions for role in eligible)
        log.info(
            "user synced • user=%s • realm=%s • roles=%s • permissions=[%s]",
            discord_id,
            realm_id,
            len(eligible),
            ", ".join(permissions),
        )

    async def ensure_unverified_access(self, discord_id: str) -> bool:
        """Give a user whose only accounts are unverified a bare whitelist entry.

        Returns ``True`` when an entry exists for the user afterwards because of
        this rule; users with a verified account are left to role sync.
        """

        user = await self.store.get_user(discord_id)
        if user is None:
            return False
        accounts = await self.store.list_accounts(user.id)
        if not accounts or any(account.verified for account in accounts):
            return False
        if not any(account.account_type is AccountType.UNVERIFIED for account in accounts):
            return False
        await self.store.upsert_entry(user.id)
        log.info("baseline access granted • user=%s • reason=unverified_account", discord_id)
        return True
