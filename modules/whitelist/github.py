"""GitHub git-data client: atomic multi-file commits over the REST API.

Files are committed with the low-level object protocol rather than the
contents endpoint so several paths change in a single commit::

    GET   /repos/{o}/{r}/git/refs/heads/{branch}   -> tip commit sha
    GET   /repos/{o}/{r}/git/commits/{sha}         -> base tree sha
    POST  /repos/{o}/{r}/git/blobs                 -> one blob per file
    POST  /repos/{o}/{r}/git/trees                 -> tree layered on base_tree
    POST  /repos/{o}/{r}/git/commits               -> commit parented on tip
    PATCH /repos/{o}/{r}/git/refs/heads/{branch}   -> fast-forward, force=false

The final ref update is never forced: if the branch moved in the meantime
GitHub answers 422 and the caller sees :class:`RemoteAPIError`.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
import urllib.parse
from typing import Any, Dict, Mapping, Optional

import aiohttp
import jwt

from .errors import ConfigurationError, RemoteAPIError, WhitelistError
from .settings import GitHubSettings

__all__ = ["GitHubClient", "GitHubAppAuth", "clear_token_cache"]

log = logging.getLogger("shield.whitelist.github")

API_VERSION = "2022-11-28"
_ACCEPT = "application/vnd.github+json"
_JWT_TTL_SEC = 600
_JWT_REUSE_SEC = 540
_TOKEN_REFRESH_MARGIN_SEC = 60

# app_id -> (jwt, reuse-until epoch); installation_id -> (token, refresh-at epoch)
_JWT_CACHE: Dict[str, tuple[str, float]] = {}
_TOKEN_CACHE: Dict[str, tuple[str, float]] = {}


def clear_token_cache() -> None:
    _JWT_CACHE.clear()
    _TOKEN_CACHE.clear()


def _parse_expiry(raw: Optional[str], now: float) -> float:
    if not raw:
        return now + 3600
    try:
        parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return now + 3600
    return parsed.timestamp()


class GitHubAppAuth:
    """Exchange a GitHub App identity for installation access tokens."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        installation_id: str,
        *,
        api_url: str = "https://api.github.com",
        clock=time.time,
    ) -> None:
        self.app_id = str(app_id)
        self.private_key = private_key
        self.installation_id = str(installation_id)
        self.api_url = api_url.rstrip("/")
        self._clock = clock

    def app_jwt(self) -> str:
        now = self._clock()
        cached = _JWT_CACHE.get(self.app_id)
        if cached and cached[1] > now:
            return cached[0]
        issued = int(now)
        payload = {"iat": issued - 60, "exp": issued + _JWT_TTL_SEC, "iss": self.app_id}
        try:
            token = jwt.encode(payload, self.private_key, algorithm="RS256")
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            raise ConfigurationError("GitHub App private key is not a valid RSA PEM") from exc
        _JWT_CACHE[self.app_id] = (token, now + _JWT_REUSE_SEC)
        return token

    async def installation_token(self, session: aiohttp.ClientSession) -> str:
        now = self._clock()
        cached = _TOKEN_CACHE.get(self.installation_id)
        if cached and cached[1] > now:
            return cached[0]

        path = f"/app/installations/{urllib.parse.quote(self.installation_id, safe='')}/access_tokens"
        headers = {
            "Accept": _ACCEPT,
            "Authorization": f"Bearer {self.app_jwt()}",
            "X-GitHub-Api-Version": API_VERSION,
        }
        async with session.post(f"{self.api_url}{path}", headers=headers) as resp:
            if not 200 <= resp.status < 300:
                body = await resp.text()
                raise RemoteAPIError(resp.status, body, method="POST", path=path, reason=resp.reason or "")
            data = await resp.json(content_type=None)

        token = (data or {}).get("token") if isinstance(data, Mapping) else None
        if not token:
            raise WhitelistError("GitHub returned no installation token", context={"path": path})
        expires = _parse_expiry(data.get("expires_at"), now)
        _TOKEN_CACHE[self.installation_id] = (token, expires - _TOKEN_REFRESH_MARGIN_SEC)
        log.info("github app token refreshed • installation=%s", self.installation_id)
        return token


class GitHubClient:
    """Minimal git-data API client bound to one repository and branch."""

    def __init__(
        self,
        settings: GitHubSettings,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.settings = settings
        self._session = session
        self._owns_session = session is None
        self._app: Optional[GitHubAppAuth] = None
        if settings.uses_app:
            self._app = GitHubAppAuth(
                settings.app_id or "",
                settings.app_private_key or "",
                settings.installation_id or "",
                api_url=settings.api_url,
            )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    @property
    def _repo_path(self) -> str:
        owner = urllib.parse.quote(self.settings.owner, safe="")
        repo = urllib.parse.quote(self.settings.repo, safe="")
        return f"/repos/{owner}/{repo}"

    @property
    def _ref_path(self) -> str:
        return f"{self._repo_path}/git/refs/heads/{urllib.parse.quote(self.settings.branch, safe='/')}"

    async def _token(self, session: aiohttp.ClientSession) -> str:
        if self._app is not None:
            return await self._app.installation_token(session)
        if self.settings.token:
            return self.settings.token
        raise ConfigurationError("GitHub token not configured")

    async def request(self, method: str, path: str, payload: Optional[Mapping[str, Any]] = None) -> Any:
        session = await self._get_session()
        headers = {
            "Accept": _ACCEPT,
            "Authorization": f"Bearer {await self._token(session)}",
            "X-GitHub-Api-Version": API_VERSION,
        }
        url = f"{self.settings.api_url}{path}"
        async with session.request(method, url, headers=headers, json=payload) as resp:
            if not 200 <= resp.status < 300:
                body = await resp.text()
                log.warning(
                    "github request failed • method=%s • path=%s • status=%s",
                    method,
                    path,
                    resp.status,
                )
                raise RemoteAPIError(resp.status, body, method=method, path=path, reason=resp.reason or "")
            return await resp.json(content_type=None)

    async def get_branch_head(self) -> str:
        data = await self.request("GET", self._ref_path)
        sha = ((data or {}).get("object") or {}).get("sha")
        if not sha:
            raise WhitelistError("Failed to resolve latest commit sha", context={"branch": self.settings.branch})
        return sha

    async def get_commit_tree(self, commit_sha: str) -> str:
        data = await self.request("GET", f"{self._repo_path}/git/commits/{commit_sha}")
        sha = ((data or {}).get("tree") or {}).get("sha")
        if not sha:
            raise WhitelistError("Failed to resolve base tree sha", context={"commit": commit_sha})
        return sha

    async def create_blob(self, content: str) -> str:
        data = await self.request("POST", f"{self._repo_path}/git/blobs", {"content": content, "encoding": "utf-8"})
        return data["sha"]

    async def create_tree(self, base_tree: str, blobs: Mapping[str, str]) -> str:
        entries = [
            {"path": path, "mode": "100644", "type": "blob", "sha": sha}
            for path, sha in blobs.items()
        ]
        data = await self.request("POST", f"{self._repo_path}/git/trees", {"base_tree": base_tree, "tree": entries})
        return data["sha"]

    async def create_commit(self, message: str, tree: str, parents: list[str]) -> str:
        body: Dict[str, Any] = {"message": message, "tree": tree, "parents": parents}
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        if self.settings.author:
            body["author"] = {**self.settings.author, "date": stamp}
        if self.settings.committer:
            body["committer"] = {**self.settings.committer, "date": stamp}
        data = await self.request("POST", f"{self._repo_path}/git/commits", body)
        return data["sha"]

    async def update_ref(self, commit_sha: str) -> None:
        await self.request("PATCH", self._ref_path, {"sha": commit_sha, "force": False})

    async def commit_files(self, files: Mapping[str, str], message: str) -> str:
        """Commit ``files`` (path -> text) on the branch and return the new sha."""

        if not files:
            raise ValueError("commit_files requires at least one file")
        head = await self.get_branch_head()
        base_tree = await self.get_commit_tree(head)
        paths = list(files)
        shas = await asyncio.gather(*(self.create_blob(files[path]) for path in paths))
        tree = await self.create_tree(base_tree, dict(zip(paths, shas)))
        commit = await self.create_commit(message, tree, [head])
        await self.update_ref(commit)
        log.info(
            "github commit pushed • repo=%s/%s • branch=%s • sha=%s • files=%s",
            self.settings.owner,
            self.settings.repo,
            self.settings.branch,
            commit,
            len(paths),
        )
        return commit
