"""Application runtime scaffolding for the bot process and its web server."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web
from discord.ext import commands

from shared.config import get_bot_name, get_env_name, get_log_level, get_port
from shared.logging import get_trace_id, set_trace_id, setup_logging
from modules.whitelist.manager import WhitelistManager
from modules.whitelist.web import mount_whitelist_routes

log = logging.getLogger("shield.runtime")

SWEEP_INTERVAL_SEC = 3600.0


async def create_app(
    *, runtime: "Runtime | None" = None, manager: Optional[WhitelistManager] = None
) -> web.Application:
    """Create the aiohttp application: health routes plus the whitelist API."""

    static_fields = {"env": get_env_name(), "bot": get_bot_name()}
    access_logger = setup_logging(
        level=get_log_level(),
        static_fields=static_fields,
        access_logger_name="aiohttp.access",
    )

    @web.middleware
    async def tracing_middleware(
        request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
    ) -> web.StreamResponse:
        trace = set_trace_id()
        started = time.perf_counter()
        status = 500
        try:
            response = await handler(request)
            status = getattr(response, "status", status)
            response.headers["X-Trace-Id"] = trace
            return response
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            access_logger.info(
                "http_request",
                extra={
                    "trace": trace,
                    "path": request.path,
                    "method": request.method,
                    "status": status,
                    "ms": duration_ms,
                },
            )

    app = web.Application(middlewares=[tracing_middleware])

    async def root(_: web.Request) -> web.Response:
        payload = {
            "ok": True,
            "bot": get_bot_name(),
            "env": get_env_name(),
            "version": os.getenv("BOT_VERSION", "dev"),
            "trace": get_trace_id(),
        }
        return web.json_response(payload)

    async def health(_: web.Request) -> web.Response:
        if runtime is None:
            payload: dict[str, Any] = {"ok": True, "bot": get_bot_name(), "env": get_env_name()}
        else:
            payload = runtime.health_payload()
        payload["endpoint"] = "health"
        return web.json_response(payload, status=200 if payload["ok"] else 503)

    app.router.add_get("/", root)
    app.router.add_get("/health", health)
    app.router.add_get("/healthz", health)

    if manager is None and runtime is not None:
        manager = runtime.manager
    if manager is not None:
        mount_whitelist_routes(app, manager)

    return app


class Scheduler:
    """Very small asyncio task supervisor for background jobs."""

    def __init__(self) -> None:
        self._tasks: list[asyncio.Task] = []

    def spawn(self, coro: Awaitable, *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    def every(
        self, seconds: float, job: Callable[[], Awaitable[Any]], *, name: Optional[str] = None
    ) -> asyncio.Task:
        interval = seconds if seconds > 0 else 60.0

        async def runner() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    log.exception("scheduled job failed • job=%s", name or "-")

        return self.spawn(runner(), name=name)

    async def shutdown(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # pragma: no cover - best-effort cleanup
                log.exception("scheduler task error during shutdown")
        self._tasks.clear()


class Runtime:
    """Container object that wires the bot, web server, and whitelist manager."""

    def __init__(self, bot: commands.Bot, manager: Optional[WhitelistManager] = None) -> None:
        self.bot = bot
        self.manager = manager
        self.scheduler = Scheduler()
        self._web_runner: Optional[web.AppRunner] = None
        self._web_site: Optional[web.TCPSite] = None
        self._started_mono = time.monotonic()

    def health_payload(self) -> dict[str, Any]:
        ready = self.bot.is_ready()
        return {
            "ok": not self.bot.is_closed(),
            "bot": get_bot_name(),
            "env": get_env_name(),
            "version": os.getenv("BOT_VERSION", "dev"),
            "discord_ready": ready,
            "uptime_seconds": round(time.monotonic() - self._started_mono, 3),
            "whitelist_last_publish": (
                self.manager.last_update_timestamp.isoformat()
                if self.manager is not None and self.manager.last_update_timestamp
                else None
            ),
        }

    async def start_webserver(self, *, port: Optional[int] = None) -> None:
        if self._web_site is not None:
            return
        port = port or get_port()
        app = await create_app(runtime=self)
        self._web_runner = web.AppRunner(app)
        await self._web_runner.setup()
        self._web_site = web.TCPSite(self._web_runner, host="0.0.0.0", port=port)
        await self._web_site.start()
        log.info("web server listening • port=%s", port)

    async def shutdown_webserver(self) -> None:
        site, runner = self._web_site, self._web_runner
        self._web_site = None
        self._web_runner = None
        if site is not None:
            await site.stop()
        if runner is not None:
            await runner.cleanup()

    async def load_extensions(self) -> None:
        from modules.whitelist import cog as whitelist_cog

        if self.manager is not None:
            self.bot.whitelist_manager = self.manager
        await whitelist_cog.setup(self.bot)
        self.manager = self.bot.whitelist_manager

    def schedule_sweep(self, interval: float = SWEEP_INTERVAL_SEC) -> None:
        manager = self.manager
        if manager is None:
            return
        self.scheduler.every(interval, manager.cleanup_expired_roles, name="whitelist_sweep")

    async def start(self, token: str) -> None:
        await self.load_extensions()
        await self.start_webserver()
        self.schedule_sweep()
        await self.bot.start(token)

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.shutdown_webserver()
        if self.manager is not None:
            await self.manager.close()
        if not self.bot.is_closed():
            await self.bot.close()
