"""User-facing lookups and removals."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .generation import union_permissions
from .models import ExternalIdentityAccount, User, WhitelistEntry
from .store import WhitelistStore

__all__ = ["UserOperations", "UserRecord"]

log = logging.getLogger("shield.whitelist.users")


@dataclass(slots=True)
class UserRecord:
    user: User
    accounts: List[ExternalIdentityAccount] = field(default_factory=list)
    entry: Optional[WhitelistEntry] = None

    @property
    def discord_id(self) -> str:
        return self.user.discord_id

    @property
    def whitelisted(self) -> bool:
        return self.entry is not None


class UserOperations:
    def __init__(self, store: WhitelistStore) -> None:
        self.store = store

    async def _record(self, user: Optional[User]) -> Optional[UserRecord]:
        if user is None:
            return None
        accounts = await self.store.list_accounts(user.id)
        entry = await self.store.get_entry(user.id)
        return UserRecord(user=user, accounts=accounts, entry=entry)

    async def get_user(self, discord_id: str) -> Optional[UserRecord]:
        return await self._record(await self.store.get_user(discord_id))

    async def get_user_by_external_id(self, external_id: str) -> Optional[UserRecord]:
        account = await self.store.get_account_by_external_id(external_id)
        if account is None:
            return None
        return await self._record(await self.store.get_user_by_id(account.user_id))

    async def remove_user_from_whitelist(self, discord_id: str) -> bool:
        """Drop the user's whitelist entry and every assignment under it."""

        user = await self.store.get_user(discord_id)
        if user is None:
            return False
        removed = await self.store.delete_entry(user.id)
        if removed:
            log.info("user removed from whitelist • user=%s", discord_id)
        return removed

    async def get_user_whitelist_permissions(self, discord_id: str) -> List[str]:
        """Sorted permission tokens from the user's active assignments."""

        user = await self.store.get_user(discord_id)
        if user is None:
            return []
        entry = await self.store.get_entry(user.id)
        if entry is None:
            return []
        raw: List[Optional[str]] = []
        for assignment in await self.store.list_assignments(whitelist_id=entry.id, active_only=True):
            role = await self.store.get_role(assignment.role_id)
            if role is not None:
                raw.append(role.permissions)
        return sorted(union_permissions(raw))
