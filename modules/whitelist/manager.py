"""Whitelist facade wiring the store, generator, publisher and coordinator."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, List, Optional, Sequence

import aiohttp

from shared import config

from .cdn import CLOUDFLARE_API_URL
from .coordinator import PublishCoordinator, RetryPolicy
from .generation import ContentGenerator
from .identity import IdentityProvider, VRChatIdentityClient
from .models import PermissionRole, PublishResult, RealmSettings, UserView, WhitelistStatistics, utcnow
from .publisher import ClientFactory, WhitelistPublisher
from .role_ops import RoleOperations
from .settings import SettingsResolver
from .store import WhitelistStore
from .sync import RoleSyncEngine
from .user_ops import UserOperations

__all__ = ["WhitelistManager"]

log = logging.getLogger("shield.whitelist.manager")


class WhitelistManager:
    """Single entry point used by the cog and the web routes."""

    def __init__(
        self,
        store: WhitelistStore,
        *,
        identity: Optional[IdentityProvider] = None,
        session: Optional[aiohttp.ClientSession] = None,
        delay: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
        client_factory: Optional[ClientFactory] = None,
        cdn_api_url: str = CLOUDFLARE_API_URL,
        name_max_age: Optional[dt.timedelta] = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.settings = SettingsResolver(store)
        self.generator = ContentGenerator(store, identity, settings=self.settings, name_max_age=name_max_age)
        self.roles = RoleOperations(store)
        self.users = UserOperations(store)
        self.sync = RoleSyncEngine(store)
        self.publisher = WhitelistPublisher(
            store,
            self.generator,
            self.settings,
            session=session,
            client_factory=client_factory,
            cdn_api_url=cdn_api_url,
        )
        self.coordinator = PublishCoordinator(self.publisher, store, delay=delay, retry=retry)

    @classmethod
    def from_config(cls, **kwargs) -> "WhitelistManager":
        store = WhitelistStore(config.get_whitelist_store_path())
        identity = VRChatIdentityClient(
            base_url=config.get_vrchat_api_url(),
            auth_cookie=config.get_vrchat_auth_cookie(),
        )
        kwargs.setdefault("identity", identity)
        return cls(store, **kwargs)

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------
    async def sync_user_roles(self, discord_id: str, external_role_ids: Iterable[str], realm_id: str) -> None:
        await self.sync.sync_user_roles(discord_id, external_role_ids, realm_id)

    async def ensure_unverified_access(self, discord_id: str) -> bool:
        return await self.sync.ensure_unverified_access(discord_id)

    # ------------------------------------------------------------------
    # roles and users
    # ------------------------------------------------------------------
    async def map_role(self, external_role_id: str, realm_id: str, permissions: Iterable[str]) -> PermissionRole:
        return await self.roles.map_role(external_role_id, realm_id, permissions)

    async def unmap_role(self, realm_id: str, external_role_id: str) -> bool:
        return await self.roles.delete_role(realm_id, external_role_id)

    async def get_role_mappings(self, realm_id: Optional[str] = None) -> List[PermissionRole]:
        return await self.roles.get_role_mappings(realm_id)

    async def cleanup_expired_roles(self) -> int:
        return await self.roles.cleanup_expired_roles()

    async def get_user_whitelist_permissions(self, discord_id: str) -> List[str]:
        return await self.users.get_user_whitelist_permissions(discord_id)

    async def remove_user_from_whitelist(self, discord_id: str) -> bool:
        return await self.users.remove_user_from_whitelist(discord_id)

    async def set_realm_settings(self, realm_id: str, **values: Optional[str]) -> RealmSettings:
        return await self.settings.set_realm_settings(realm_id, **values)

    # ------------------------------------------------------------------
    # generation
    # ------------------------------------------------------------------
    async def get_whitelist_users(self, realm_id: Optional[str] = None) -> List[UserView]:
        return await self.generator.get_whitelist_users(realm_id)

    async def generate_content(self, realm_id: Optional[str] = None) -> str:
        return await self.generator.generate_content(realm_id)

    async def generate_encoded(self, realm_id: Optional[str] = None) -> str:
        return await self.generator.generate_encoded(realm_id)

    # ------------------------------------------------------------------
    # publishing
    # ------------------------------------------------------------------
    async def publish(
        self,
        commit_message: Optional[str] = None,
        force: bool = False,
        realm_id: Optional[str] = None,
        affected_realm_ids: Optional[Sequence[str]] = None,
    ) -> PublishResult:
        return await self.publisher.publish(commit_message, force, realm_id, affected_realm_ids)

    def queue_update(
        self, discord_id: str, commit_message: Optional[str] = None, realm_id: Optional[str] = None
    ) -> None:
        self.coordinator.queue(discord_id, commit_message, realm_id)

    @property
    def last_update_timestamp(self) -> Optional[dt.datetime]:
        return self.coordinator.last_update_timestamp

    # ------------------------------------------------------------------
    # statistics
    # ------------------------------------------------------------------
    async def get_statistics(self) -> WhitelistStatistics:
        now = utcnow()
        return WhitelistStatistics(
            total_users=await self.store.count_entries(),
            total_roles=await self.store.count_roles(),
            total_active_assignments=await self.store.count_assignments(expired=False, now=now),
            total_expired_assignments=await self.store.count_assignments(expired=True, now=now),
        )

    async def close(self) -> None:
        """Drain pending publishes, then release the identity client."""

        await self.coordinator.cleanup()
        closer = getattr(self.identity, "close", None)
        if closer is not None:
            await closer()
        log.info("whitelist manager closed")
