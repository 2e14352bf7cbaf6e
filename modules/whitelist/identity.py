"""External identity provider adapter (display-name lookups)."""

from __future__ import annotations

import logging
import urllib.parse
from typing import Any, Mapping, Optional, Protocol

import aiohttp

__all__ = ["IdentityProvider", "VRChatIdentityClient", "resolve_display_name"]

log = logging.getLogger("shield.whitelist.identity")

_DEFAULT_API_URL = "https://api.vrchat.cloud/api/1"
_USER_AGENT = "shield-bot/whitelist (+https://api.vrcshield.com)"


class IdentityProvider(Protocol):
    async def get_user_by_id(self, external_id: str) -> Optional[Mapping[str, Any]]:
        """Return the provider's user payload or ``None`` when not found."""


def resolve_display_name(info: Optional[Mapping[str, Any]], *, fallback: str) -> str:
    if not info:
        return fallback
    for key in ("displayName", "display_name", "username"):
        value = str(info.get(key) or "").strip()
        if value:
            return value
    return fallback


class VRChatIdentityClient:
    """Read-only user lookups against the VRChat REST API."""

    def __init__(
        self,
        *,
        base_url: str = _DEFAULT_API_URL,
        auth_cookie: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_cookie = auth_cookie
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": _USER_AGENT, "Accept": "application/json"}
        if self.auth_cookie:
            headers["Cookie"] = f"auth={self.auth_cookie}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def get_user_by_id(self, external_id: str) -> Optional[Mapping[str, Any]]:
        session = await self._get_session()
        url = f"{self.base_url}/users/{urllib.parse.quote(external_id, safe='')}"
        async with session.get(url, headers=self._headers()) as resp:
            if resp.status == 404:
                log.debug("identity lookup miss • id=%s", external_id)
                return None
            resp.raise_for_status()
            payload = await resp.json()
        if not isinstance(payload, Mapping):
            return None
        return payload

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
