"""Publish the generated whitelist to GitHub and invalidate the CDN.

A publish is skipped when the plaintext matches the last successful publish
(unless forced). On success the snapshot and timestamp move forward, the CDN
entries of the affected realms are purged and, when the updated users hold a
derived-feature token, the per-feature name lists go out in a second commit.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Callable, Iterable, List, Optional, Sequence

import aiohttp

from .cdn import CLOUDFLARE_API_URL, purge_realms
from .generation import DERIVED_FEATURE_FILES, ContentGenerator
from .github import GitHubClient
from .models import PublishResult, utcnow
from .settings import GitHubSettings, SettingsResolver
from .store import WhitelistStore

__all__ = ["WhitelistPublisher", "UNCHANGED_REASON"]

log = logging.getLogger("shield.whitelist.publisher")

UNCHANGED_REASON = "Content unchanged"

ClientFactory = Callable[[GitHubSettings], GitHubClient]


def _iso_now() -> str:
    return utcnow().strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class WhitelistPublisher:
    """Single-flight publisher owning the last-published snapshot."""

    def __init__(
        self,
        store: WhitelistStore,
        generator: ContentGenerator,
        settings: SettingsResolver,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        client_factory: Optional[ClientFactory] = None,
        cdn_api_url: str = CLOUDFLARE_API_URL,
    ) -> None:
        self.store = store
        self.generator = generator
        self.settings = settings
        self._session = session
        self._client_factory = client_factory or (lambda resolved: GitHubClient(resolved, session=self._session))
        self._cdn_api_url = cdn_api_url
        self._lock = asyncio.Lock()
        self._last_content: Optional[str] = None
        self.last_update_timestamp: Optional[dt.datetime] = None

    @property
    def last_published_content(self) -> Optional[str]:
        return self._last_content

    async def _resolve_realm(
        self, realm_id: Optional[str], affected_realm_ids: Optional[Sequence[str]]
    ) -> Optional[str]:
        if realm_id:
            return str(realm_id)
        if affected_realm_ids:
            valid = await self.store.realms_with_roles(list(affected_realm_ids))
            if valid:
                return valid[0]
        return None

    async def _commit(self, resolved: GitHubSettings, files: dict[str, str], message: str) -> str:
        client = self._client_factory(resolved)
        async with client:
            return await client.commit_files(files, message)

    async def publish(
        self,
        commit_message: Optional[str] = None,
        force: bool = False,
        realm_id: Optional[str] = None,
        affected_realm_ids: Optional[Sequence[str]] = None,
        *,
        updated_user_ids: Optional[Iterable[str]] = None,
    ) -> PublishResult:
        """Commit the encoded and plaintext whitelist in one commit.

        Raises :class:`ConfigurationError` or :class:`RemoteAPIError`; CDN and
        derived-file failures are logged only.
        """

        async with self._lock:
            current = await self.generator.generate_content()
            if not force and self._last_content is not None and current == self._last_content:
                log.debug("publish skipped • reason=unchanged")
                return PublishResult(updated=False, reason=UNCHANGED_REASON)

            settings_realm = await self._resolve_realm(realm_id, affected_realm_ids)
            resolved = await self.settings.github(settings_realm)
            encoded, decoded = await asyncio.gather(
                self.generator.generate_encoded(settings_realm),
                self.generator.generate_content(settings_realm),
            )
            message = (commit_message or "").strip() or (
                f"chore(whitelist): update encoded ({resolved.encoded_path}) and decoded "
                f"({resolved.decoded_path}) at {_iso_now()}"
            )
            sha = await self._commit(
                resolved,
                {resolved.encoded_path: encoded, resolved.decoded_path: decoded},
                message,
            )

            self._last_content = current
            self.last_update_timestamp = utcnow()
            result = PublishResult(
                updated=True,
                commit_sha=sha,
                paths=[resolved.encoded_path, resolved.decoded_path],
                branch=resolved.branch,
            )
            log.info(
                "whitelist published • realm=%s • sha=%s • branch=%s",
                settings_realm or "-",
                sha,
                resolved.branch,
            )

            await self._purge(realm_id, affected_realm_ids)

            user_ids = list(updated_user_ids or [])
            if user_ids:
                await self._publish_derived_if_needed(user_ids, settings_realm)
            return result

    async def purge_targets(
        self, realm_id: Optional[str], affected_realm_ids: Optional[Sequence[str]]
    ) -> List[str]:
        """Realms whose cached endpoints need invalidating after a publish."""

        if realm_id:
            configured = await self.store.realms_with_roles([str(realm_id)])
            if not configured:
                log.debug("cdn purge skipped • realm=%s • reason=no_roles", realm_id)
            return configured
        if affected_realm_ids:
            targets = await self.store.realms_with_roles(list(affected_realm_ids))
            if not targets:
                log.debug("cdn purge skipped • reason=no_affected_realm_with_roles")
            return targets
        targets = await self.store.realms_with_roles()
        if not targets:
            log.warning("cdn purge skipped • reason=no_realm_with_roles")
        return targets

    async def _purge(self, realm_id: Optional[str], affected_realm_ids: Optional[Sequence[str]]) -> None:
        targets = await self.purge_targets(realm_id, affected_realm_ids)
        if targets:
            await purge_realms(targets, session=self._session, api_url=self._cdn_api_url)

    async def _publish_derived_if_needed(self, user_ids: List[str], realm_id: Optional[str]) -> None:
        try:
            if not await self.generator.users_hold_derived_tokens(user_ids):
                return
            log.info("derived feature tokens changed • users=%s", len(user_ids))
            await self.publish_derived_files(
                "chore(rooftop): update rooftop files after whitelist change", realm_id
            )
        except Exception:
            log.exception("derived file publish failed • realm=%s", realm_id or "-")

    async def publish_derived_files(
        self, commit_message: Optional[str] = None, realm_id: Optional[str] = None
    ) -> PublishResult:
        resolved = await self.settings.github(realm_id)
        files = await self.generator.generate_derived_files()
        message = (commit_message or "").strip() or f"chore(rooftop): update rooftop files at {_iso_now()}"
        sha = await self._commit(resolved, files, message)
        log.info("derived files published • sha=%s • files=%s", sha, len(files))
        return PublishResult(
            updated=True,
            commit_sha=sha,
            paths=[DERIVED_FEATURE_FILES[token] for token in DERIVED_FEATURE_FILES],
            branch=resolved.branch,
        )
