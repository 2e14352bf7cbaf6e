"""Fixtures for the whitelist pipeline: seeded stores and a fake GitHub API."""

from __future__ import annotations

import itertools
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from modules.whitelist.models import AccountType
from modules.whitelist.store import WhitelistStore


class FakeGitHub:
    """Records every request and answers like the git-data and purge APIs."""

    def __init__(self, *, head: str = "head-sha") -> None:
        self.head = head
        self.calls: List[Dict[str, Any]] = []
        self.failures: Dict[tuple[str, str], int] = {}
        self.token_requests = 0
        # CDN knobs: plain-text purge body, realms whose purge is rejected
        self.purge_text: Optional[str] = None
        self.purge_reject: set[str] = set()
        self._ids = itertools.count(1)

    def fail(self, method: str, suffix: str, status: int = 422) -> None:
        self.failures[(method, suffix)] = status

    def calls_for(self, method: str, suffix: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method and c["path"].endswith(suffix)]

    def git_calls(self) -> List[tuple[str, str]]:
        return [(c["method"], c["path"]) for c in self.calls if "/git/" in c["path"]]

    async def _handle(self, request: web.Request) -> web.Response:
        body: Optional[Any] = None
        if request.can_read_body:
            body = await request.json()
        call = {
            "method": request.method,
            "path": request.path,
            "json": body,
            "headers": dict(request.headers),
        }
        self.calls.append(call)

        for (method, suffix), status in self.failures.items():
            if request.method == method and request.path.endswith(suffix):
                return web.json_response({"message": "Update is not a fast forward"}, status=status)

        path = request.path
        if path.startswith("/app/installations/"):
            self.token_requests += 1
            return web.json_response(
                {"token": f"ghs_installation{self.token_requests}", "expires_at": "2099-01-01T00:00:00Z"},
                status=201,
            )
        if path.startswith("/zones/"):
            files = (body or {}).get("files") or []
            if any(f"/api/vrchat/{realm}/" in url for realm in self.purge_reject for url in files):
                return web.json_response({"success": False, "errors": [{"code": 1012}]}, status=400)
            if self.purge_text is not None:
                return web.Response(text=self.purge_text)
            return web.json_response({"success": True, "result": {"id": "purge"}})
        if "/git/refs/heads/" in path and request.method == "GET":
            return web.json_response({"object": {"sha": self.head}})
        if "/git/refs/heads/" in path and request.method == "PATCH":
            return web.json_response({"object": {"sha": body["sha"]}})
        if "/git/commits/" in path and request.method == "GET":
            return web.json_response({"sha": path.rsplit("/", 1)[-1], "tree": {"sha": "base-tree"}})
        if path.endswith("/git/blobs"):
            return web.json_response({"sha": f"blob-{next(self._ids)}"}, status=201)
        if path.endswith("/git/trees"):
            return web.json_response({"sha": f"tree-{next(self._ids)}"}, status=201)
        if path.endswith("/git/commits"):
            return web.json_response({"sha": f"commit-{next(self._ids)}"}, status=201)
        return web.json_response({"message": "Not Found"}, status=404)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handle)
        return app

    @asynccontextmanager
    async def serve(self):
        server = TestServer(self.app())
        await server.start_server()
        try:
            yield str(server.make_url("")).rstrip("/")
        finally:
            await server.close()


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def github_env(monkeypatch):
    monkeypatch.setenv("GITHUB_REPO_OWNER", "shield")
    monkeypatch.setenv("GITHUB_REPO_NAME", "whitelist")
    monkeypatch.setenv("GITHUB_REPO_BRANCH", "main")
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_testtoken")
    monkeypatch.delenv("GITHUB_REPO_ENCODED_FILE_PATH", raising=False)
    monkeypatch.delenv("GITHUB_REPO_DECODED_FILE_PATH", raising=False)
    for name in ("GIT_AUTHOR_NAME", "GIT_AUTHOR_EMAIL", "GIT_COMMITTER_NAME", "GIT_COMMITTER_EMAIL"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def seed():
    """Return ``seed(store, discord_id, external_id, ...)`` creating a linked user."""

    async def _seed(
        store: WhitelistStore,
        discord_id: str,
        external_id: str,
        account_type: AccountType = AccountType.MAIN,
        *,
        display_name: Optional[str] = None,
    ):
        user = await store.add_user(discord_id)
        account = await store.add_account(
            user.id, external_id, account_type, display_name=display_name
        )
        return user, account

    return _seed
