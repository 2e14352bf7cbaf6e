"""Read-only aiohttp routes serving the generated whitelist."""

from __future__ import annotations

import hashlib
import logging
from email.utils import format_datetime
from typing import Awaitable, Callable, Optional

from aiohttp import web

from shared import config
from shared.redaction import sanitize_text

from .errors import human_error
from .manager import WhitelistManager

__all__ = ["mount_whitelist_routes", "MANAGER_KEY"]

log = logging.getLogger("shield.whitelist.web")

MANAGER_KEY = web.AppKey("whitelist_manager", WhitelistManager)
_CACHE_CONTROL = "public, max-age=3600"


def _error_response(exc: Exception) -> web.Response:
    return web.json_response(
        {"success": False, "error": str(sanitize_text(human_error(exc)))},
        status=500,
    )


def _last_modified(manager: WhitelistManager) -> Optional[str]:
    stamp = manager.last_update_timestamp
    if stamp is None:
        return None
    return format_datetime(stamp, usegmt=True)


def _conditional(
    request: web.Request, manager: WhitelistManager, body: str
) -> web.Response:
    etag = hashlib.sha256(body.encode("utf-8")).hexdigest()
    last_modified = _last_modified(manager)
    if request.headers.get("If-None-Match") == etag or (
        last_modified is not None and request.headers.get("If-Modified-Since") == last_modified
    ):
        return web.Response(status=304)
    headers = {"Cache-Control": _CACHE_CONTROL, "ETag": etag}
    if last_modified is not None:
        headers["Last-Modified"] = last_modified
    return web.json_response({"success": True, "data": body}, headers=headers)


def mount_whitelist_routes(app: web.Application, manager: WhitelistManager) -> None:
    """Register the realm-scoped and legacy whitelist routes on ``app``."""

    if MANAGER_KEY in app:
        return
    app[MANAGER_KEY] = manager

    def realm_of(request: web.Request) -> Optional[str]:
        return request.match_info.get("realm") or config.get_whitelist_default_realm_id()

    def body_route(
        render: Callable[[Optional[str]], Awaitable[str]], *, conditional: bool
    ) -> Callable[[web.Request], Awaitable[web.Response]]:
        async def handle(request: web.Request) -> web.Response:
            realm = realm_of(request)
            try:
                body = await render(realm)
            except Exception as exc:
                log.exception("whitelist route failed • path=%s • realm=%s", request.path, realm or "-")
                return _error_response(exc)
            if conditional:
                return _conditional(request, manager, body)
            return web.json_response({"success": True, "data": body})

        return handle

    async def stats(request: web.Request) -> web.Response:
        realm = realm_of(request)
        try:
            snapshot = await manager.get_statistics()
        except Exception as exc:
            log.exception("whitelist stats failed • realm=%s", realm or "-")
            return _error_response(exc)
        data = snapshot.as_dict()
        data["realmId"] = realm
        return web.json_response({"success": True, "data": data})

    app.router.add_get(
        "/api/vrchat/{realm}/whitelist/encoded", body_route(manager.generate_encoded, conditional=True)
    )
    app.router.add_get(
        "/api/vrchat/{realm}/whitelist/raw", body_route(manager.generate_content, conditional=True)
    )
    app.router.add_get("/api/vrchat/{realm}/whitelist/stats", stats)
    app.router.add_get(
        "/api/vrchat/whitelist/encoded", body_route(manager.generate_encoded, conditional=False)
    )
    app.router.add_get(
        "/api/vrchat/whitelist/raw", body_route(manager.generate_content, conditional=False)
    )
    app.router.add_get("/api/vrchat/whitelist/stats", stats)
    log.info("web: whitelist routes mounted")
