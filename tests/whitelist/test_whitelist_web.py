import asyncio
import datetime as dt
import hashlib

from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from modules.whitelist.generation import DEFAULT_XOR_KEY, xor_decode
from modules.whitelist.manager import WhitelistManager
from modules.whitelist.store import WhitelistStore
from modules.whitelist.web import MANAGER_KEY, mount_whitelist_routes


async def _manager(seed) -> WhitelistManager:
    store = WhitelistStore()
    alice, _ = await seed(store, "1", "usr_a", display_name="Alice")
    bob, _ = await seed(store, "2", "usr_b", display_name="Bob")
    manager = WhitelistManager(store, delay=0)
    role_g = await manager.map_role("r", "G", ["station"])
    role_h = await manager.map_role("r", "H", ["vip"])
    await manager.roles.assign_role("1", role_g.id)
    await manager.roles.assign_role("2", role_h.id)
    return manager


def _run(seed, scenario):
    async def runner():
        manager = await _manager(seed)
        app = web.Application()
        mount_whitelist_routes(app, manager)
        mount_whitelist_routes(app, manager)
        assert app[MANAGER_KEY] is manager
        async with TestServer(app) as server:
            async with TestClient(server) as client:
                return await scenario(client, manager)

    return asyncio.run(runner())


def test_realm_routes_serve_scoped_content_with_etag(seed):
    async def scenario(client, manager):
        resp = await client.get("/api/vrchat/G/whitelist/raw")
        assert resp.status == 200
        payload = await resp.json()
        assert payload["success"] is True
        assert sorted(payload["data"].split("\n")) == ["Alice,station", "Bob,"]
        etag = resp.headers["ETag"]
        assert etag == hashlib.sha256(payload["data"].encode("utf-8")).hexdigest()
        assert resp.headers["Cache-Control"] == "public, max-age=3600"
        assert "Last-Modified" not in resp.headers

        cached = await client.get("/api/vrchat/G/whitelist/raw", headers={"If-None-Match": etag})
        assert cached.status == 304

        encoded = await client.get("/api/vrchat/H/whitelist/encoded")
        body = await encoded.json()
        assert sorted(xor_decode(body["data"], DEFAULT_XOR_KEY).split("\n")) == ["Alice,", "Bob,vip"]

    _run(seed, scenario)


def test_last_modified_round_trip(seed):
    async def scenario(client, manager):
        manager.publisher.last_update_timestamp = dt.datetime(2024, 5, 1, 12, 30, tzinfo=dt.timezone.utc)
        resp = await client.get("/api/vrchat/G/whitelist/encoded")
        stamp = resp.headers["Last-Modified"]
        assert stamp == "Wed, 01 May 2024 12:30:00 GMT"
        again = await client.get("/api/vrchat/G/whitelist/encoded", headers={"If-Modified-Since": stamp})
        assert again.status == 304

    _run(seed, scenario)


def test_legacy_routes_use_default_realm_without_conditionals(seed, monkeypatch):
    monkeypatch.setenv("WHITELIST_DEFAULT_REALM_ID", "H")

    async def scenario(client, manager):
        resp = await client.get("/api/vrchat/whitelist/raw", headers={"If-None-Match": "anything"})
        assert resp.status == 200
        assert sorted((await resp.json())["data"].split("\n")) == ["Alice,", "Bob,vip"]
        assert "ETag" not in resp.headers

        stats = await client.get("/api/vrchat/whitelist/stats")
        data = (await stats.json())["data"]
        assert data["realmId"] == "H"

    _run(seed, scenario)


def test_stats_route_reports_counts(seed):
    async def scenario(client, manager):
        resp = await client.get("/api/vrchat/G/whitelist/stats")
        assert resp.status == 200
        payload = await resp.json()
        assert payload == {
            "success": True,
            "data": {
                "totalUsers": 2,
                "totalRoles": 2,
                "totalActiveAssignments": 2,
                "totalExpiredAssignments": 0,
                "realmId": "G",
            },
        }

    _run(seed, scenario)


def test_generation_errors_become_500(seed, monkeypatch):
    monkeypatch.setenv("WHITELIST_XOR_KEY", "")

    async def scenario(client, manager):
        resp = await client.get("/api/vrchat/G/whitelist/encoded")
        assert resp.status == 500
        payload = await resp.json()
        assert payload["success"] is False
        assert "WHITELIST_XOR_KEY" in payload["error"]

    _run(seed, scenario)
