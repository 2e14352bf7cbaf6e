"""Cloudflare cache invalidation for the public whitelist endpoints."""

from __future__ import annotations

import logging
import urllib.parse
from typing import Iterable, List, Optional

import aiohttp

from shared import config

from .errors import WhitelistError

__all__ = ["CDNPurgeError", "build_purge_urls", "purge_cloudflare_cache", "purge_realms"]

log = logging.getLogger("shield.whitelist.cdn")

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"


class CDNPurgeError(WhitelistError):
    code = "CDN_PURGE_ERROR"


def build_purge_urls(realm_ids: Iterable[str], *, base_url: Optional[str] = None) -> List[str]:
    """Absolute URLs served from the whitelist for every realm, plus the legacy route."""

    base = (base_url or config.get_whitelist_public_base_url()).rstrip("/")
    urls: List[str] = []
    for realm_id in realm_ids:
        realm = urllib.parse.quote(str(realm_id), safe="")
        urls.append(f"{base}/api/vrchat/{realm}/whitelist/encoded")
        urls.append(f"{base}/api/vrchat/{realm}/whitelist/raw")
    urls.append(f"{base}/api/vrchat/whitelist/encoded")
    return urls


async def purge_cloudflare_cache(
    zone_id: str,
    api_token: str,
    urls: List[str],
    *,
    session: Optional[aiohttp.ClientSession] = None,
    api_url: str = CLOUDFLARE_API_URL,
) -> None:
    """POST one purge request; a non-2xx answer raises :class:`CDNPurgeError`.

    The response body is only read for the error message.
    """

    endpoint = f"{api_url.rstrip('/')}/zones/{urllib.parse.quote(zone_id, safe='')}/purge_cache"
    headers = {"Authorization": f"Bearer {api_token}"}
    owned = session is None
    http = session or aiohttp.ClientSession()
    try:
        async with http.post(endpoint, headers=headers, json={"files": urls}) as resp:
            if not 200 <= resp.status < 300:
                text = await resp.text()
                raise CDNPurgeError(
                    f"Cloudflare purge failed: {resp.status} {text}",
                    context={"status": resp.status, "zone": zone_id},
                )
    finally:
        if owned:
            await http.close()


async def purge_realms(
    realm_ids: List[str],
    *,
    session: Optional[aiohttp.ClientSession] = None,
    api_url: str = CLOUDFLARE_API_URL,
) -> List[str]:
    """Purge the cached endpoints of each realm in ``realm_ids``.

    One request per realm. Returns the realms whose purge succeeded. Missing
    Cloudflare credentials skip the purge. Failures are logged and never
    raised.
    """

    zone_id = config.get_cloudflare_zone_id()
    api_token = config.get_cloudflare_api_token()
    if not zone_id or not api_token:
        log.debug("cdn purge skipped • reason=credentials_missing")
        return []
    if not realm_ids:
        log.debug("cdn purge skipped • reason=no_realms")
        return []

    owned = session is None
    http = session or aiohttp.ClientSession()
    purged: List[str] = []
    try:
        for realm_id in realm_ids:
            urls = build_purge_urls([realm_id])
            try:
                await purge_cloudflare_cache(zone_id, api_token, urls, session=http, api_url=api_url)
            except Exception as exc:
                log.warning("cdn purge failed • realm=%s • reason=%r", realm_id, exc)
                continue
            purged.append(realm_id)
            log.info("cdn purge ok • realm=%s • urls=%s", realm_id, len(urls))
    finally:
        if owned:
            await http.close()
    return purged
