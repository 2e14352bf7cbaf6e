"""Debounced publish coordinator.

Role changes arrive in bursts (a member gains three roles, an admin edits a
mapping used by forty members). :class:`PublishCoordinator` collects the
affected users and realms, restarts a quiet-period timer on every
:meth:`~PublishCoordinator.queue` call and hands the whole batch to the
publisher once the timer fires.

The batch is cleared before publishing. A failed publish on the timer path is
logged and dropped unless the injected retry policy recovers it; callers that
await :meth:`~PublishCoordinator.flush` see the error instead.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Type, TypeVar

import aiohttp

from shared import config

from .errors import RemoteAPIError
from .models import LISTED_ACCOUNT_TYPES, PublishResult
from .publisher import WhitelistPublisher
from .store import WhitelistStore

__all__ = ["RetryPolicy", "NoRetry", "BackoffRetry", "PublishBatch", "PublishCoordinator"]

log = logging.getLogger("shield.whitelist.coordinator")

T = TypeVar("T")


class RetryPolicy(Protocol):
    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        ...


class NoRetry:
    """Run the publish once; failures propagate to the coordinator."""

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await operation()


class BackoffRetry:
    """Retry transient publish failures with exponential backoff."""

    def __init__(
        self,
        attempts: int = 3,
        base_delay: float = 2.0,
        *,
        retry_on: Tuple[Type[BaseException], ...] = (
            RemoteAPIError,
            aiohttp.ClientError,
            asyncio.TimeoutError,
        ),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.attempts = attempts
        self.base_delay = max(0.0, base_delay)
        self.retry_on = retry_on
        self._sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except self.retry_on as exc:
                if attempt >= self.attempts:
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                log.warning(
                    "publish attempt failed; retrying • attempt=%s/%s • delay=%.1fs • reason=%s",
                    attempt,
                    self.attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1


@dataclass(slots=True)
class PublishBatch:
    user_ids: List[str] = field(default_factory=list)
    realm_ids: List[str] = field(default_factory=list)
    commit_message: Optional[str] = None

    def __bool__(self) -> bool:
        return bool(self.user_ids)


class PublishCoordinator:
    def __init__(
        self,
        publisher: WhitelistPublisher,
        store: WhitelistStore,
        *,
        delay: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.publisher = publisher
        self.store = store
        self.delay = config.get_whitelist_batch_delay_sec() if delay is None else max(0.0, delay)
        self.retry: RetryPolicy = retry or NoRetry()
        self._users: Dict[str, None] = {}
        self._realms: Dict[str, None] = {}
        self._message: Optional[str] = None
        self._timer: Optional[asyncio.Task[None]] = None
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._users)

    @property
    def last_update_timestamp(self) -> Optional[dt.datetime]:
        return self.publisher.last_update_timestamp

    def queue(
        self,
        user_id: str,
        commit_message: Optional[str] = None,
        realm_id: Optional[str] = None,
    ) -> None:
        """Add ``user_id`` to the pending batch and restart the quiet period.

        Each call replaces the pending commit message with its own.
        """

        self._users[str(user_id)] = None
        if realm_id:
            self._realms[str(realm_id)] = None
        self._message = commit_message

        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        task = asyncio.get_running_loop().create_task(self._run_timer())
        self._timer = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        log.debug("whitelist update queued • user=%s • pending=%s", user_id, len(self._users))

    def _take_batch(self) -> PublishBatch:
        batch = PublishBatch(list(self._users), list(self._realms), self._message)
        self._users.clear()
        self._realms.clear()
        self._message = None
        return batch

    async def _run_timer(self) -> None:
        await asyncio.sleep(self.delay)
        # Detach first: a queue() call from here on starts a new batch and
        # must not cancel the publish below.
        self._timer = None
        batch = self._take_batch()
        if not batch:
            return
        try:
            await self._process(batch)
        except Exception:
            log.exception("batched whitelist publish failed; batch dropped • users=%s", len(batch.user_ids))

    async def flush(self) -> Optional[PublishResult]:
        """Publish the pending batch now; errors propagate to the caller."""

        self._cancel_timer()
        batch = self._take_batch()
        if not batch:
            return None
        return await self._process(batch)

    async def cleanup(self) -> None:
        """Cancel the timer, flush a non-empty batch and wait for in-flight publishes."""

        self._cancel_timer()
        if self._users:
            log.info("draining pending whitelist batch on shutdown • users=%s", len(self._users))
            try:
                await self.flush()
            except Exception:
                log.exception("whitelist flush on shutdown failed")
        pending = [task for task in self._inflight if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _process(self, batch: PublishBatch) -> PublishResult:
        log.info("processing batched whitelist update • users=%s", len(batch.user_ids))
        message = batch.commit_message
        if not message or not message.strip():
            message = await self._summary_message(batch.user_ids)

        realms = await self._affected_realms(batch)
        result = await self.retry.run(
            lambda: self.publisher.publish(
                message,
                False,
                None,
                realms or None,
                updated_user_ids=batch.user_ids,
            )
        )
        log.info(
            "batched whitelist update done • users=%s • updated=%s • reason=%s",
            len(batch.user_ids),
            result.updated,
            result.reason or "-",
        )
        return result

    async def _summary_message(self, user_ids: List[str]) -> str:
        if len(user_ids) != 1:
            return f"Updated whitelist for {len(user_ids)} users"
        return f"Updated whitelist for {await self._display_name(user_ids[0])}"

    async def _display_name(self, discord_id: str) -> str:
        user = await self.store.get_user(discord_id)
        if user is None:
            return discord_id
        accounts = await self.store.list_accounts(user.id)
        for account_type in LISTED_ACCOUNT_TYPES:
            for account in accounts:
                if account.account_type is account_type and account.display_name:
                    return account.display_name
        for account in accounts:
            if account.display_name:
                return account.display_name
        return discord_id

    async def _affected_realms(self, batch: PublishBatch) -> List[str]:
        # Queued realms pass through as-is; the publisher filters them.
        if batch.realm_ids:
            return list(batch.realm_ids)

        derived: List[str] = []
        for discord_id in batch.user_ids:
            user = await self.store.get_user(discord_id)
            if user is None:
                continue
            entry = await self.store.get_entry(user.id)
            if entry is None:
                continue
            for assignment in await self.store.list_assignments(whitelist_id=entry.id):
                role = await self.store.get_role(assignment.role_id)
                if role is not None and role.realm_id not in derived:
                    derived.append(role.realm_id)
        return derived
