import asyncio
import logging

import pytest

from modules.whitelist.coordinator import BackoffRetry, PublishCoordinator
from modules.whitelist.errors import RemoteAPIError
from modules.whitelist.models import AccountType, PublishResult
from modules.whitelist.store import WhitelistStore


class FakePublisher:
    def __init__(self, *, errors=None, gate: asyncio.Event | None = None) -> None:
        self.calls = []
        self.errors = list(errors or [])
        self.gate = gate
        self.last_update_timestamp = None

    async def publish(self, commit_message=None, force=False, realm_id=None, affected_realm_ids=None, *, updated_user_ids=None):
        self.calls.append(
            {
                "message": commit_message,
                "force": force,
                "realm_id": realm_id,
                "affected": affected_realm_ids,
                "users": list(updated_user_ids or []),
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        return PublishResult(updated=True, commit_sha="abc123")


def _coordinator(publisher, store=None, **kwargs):
    return PublishCoordinator(publisher, store or WhitelistStore(), delay=kwargs.pop("delay", 0.02), **kwargs)


def test_burst_of_five_users_publishes_once():
    async def runner() -> FakePublisher:
        publisher = FakePublisher()
        coordinator = _coordinator(publisher)
        for user_id in ("1", "2", "3", "4", "5"):
            coordinator.queue(user_id)
        assert coordinator.pending_count == 5
        await asyncio.sleep(0.15)
        assert coordinator.pending_count == 0
        return publisher

    publisher = asyncio.run(runner())
    assert len(publisher.calls) == 1
    call = publisher.calls[0]
    assert call["message"] == "Updated whitelist for 5 users"
    assert sorted(call["users"]) == ["1", "2", "3", "4", "5"]
    assert call["force"] is False
    assert call["realm_id"] is None


def test_single_user_message_uses_display_name(seed):
    async def runner() -> FakePublisher:
        store = WhitelistStore()
        user, _ = await seed(store, "100", "usr_alt", AccountType.ALT, display_name="AltName")
        await store.add_account(user.id, "usr_main", AccountType.MAIN, display_name="MainName")
        publisher = FakePublisher()
        coordinator = _coordinator(publisher, store)
        coordinator.queue("100")
        coordinator.queue("100")
        await asyncio.sleep(0.15)

        coordinator.queue("unknown-user")
        await asyncio.sleep(0.15)
        return publisher

    publisher = asyncio.run(runner())
    assert [c["message"] for c in publisher.calls] == [
        "Updated whitelist for MainName",
        "Updated whitelist for unknown-user",
    ]


def test_only_latest_commit_message_survives():
    async def runner() -> FakePublisher:
        publisher = FakePublisher()
        coordinator = _coordinator(publisher)
        coordinator.queue("1", "first message")
        coordinator.queue("2", "second message")
        await asyncio.sleep(0.15)

        coordinator.queue("1", "explicit")
        coordinator.queue("2")
        await asyncio.sleep(0.15)
        return publisher

    publisher = asyncio.run(runner())
    assert [c["message"] for c in publisher.calls] == [
        "second message",
        "Updated whitelist for 2 users",
    ]


def test_queued_realms_pass_through_and_derive_when_absent(seed):
    async def runner() -> FakePublisher:
        store = WhitelistStore()
        user, _ = await seed(store, "1", "usr_a")
        role = await store.create_role("G", external_role_id="r", permissions="station")
        entry = await store.upsert_entry(user.id)
        await store.create_assignment(entry.id, role.id)
        publisher = FakePublisher()
        coordinator = _coordinator(publisher, store)

        coordinator.queue("1", None, "G")
        coordinator.queue("2", None, "X")
        await asyncio.sleep(0.15)

        # no explicit realm: derived from the user's assignments
        coordinator.queue("1")
        await asyncio.sleep(0.15)

        coordinator.queue("nobody", None, "X")
        await asyncio.sleep(0.15)
        return publisher

    publisher = asyncio.run(runner())
    assert [c["affected"] for c in publisher.calls] == [["G", "X"], ["G"], ["X"]]


def test_timer_failure_is_logged_and_batch_dropped(caplog):
    async def runner() -> tuple[FakePublisher, PublishCoordinator]:
        publisher = FakePublisher(errors=[RemoteAPIError(500, "boom", method="POST", path="/git/blobs")])
        coordinator = _coordinator(publisher)
        coordinator.queue("1")
        await asyncio.sleep(0.15)
        return publisher, coordinator

    with caplog.at_level(logging.ERROR, logger="shield.whitelist.coordinator"):
        publisher, coordinator = asyncio.run(runner())
    assert len(publisher.calls) == 1
    assert coordinator.pending_count == 0
    assert any("batch dropped" in r.getMessage() for r in caplog.records)


def test_flush_propagates_errors():
    async def runner() -> None:
        publisher = FakePublisher(errors=[RemoteAPIError(422, "not a fast forward")])
        coordinator = _coordinator(publisher, delay=10)
        coordinator.queue("1", "manual")
        with pytest.raises(RemoteAPIError):
            await coordinator.flush()
        assert coordinator.pending_count == 0
        assert await coordinator.flush() is None

    asyncio.run(runner())


def test_cleanup_flushes_pending_batch():
    async def runner() -> FakePublisher:
        publisher = FakePublisher()
        coordinator = _coordinator(publisher, delay=30)
        coordinator.queue("1", "shutdown flush")
        await coordinator.cleanup()
        assert coordinator.pending_count == 0
        await coordinator.cleanup()
        return publisher

    publisher = asyncio.run(runner())
    assert [c["message"] for c in publisher.calls] == ["shutdown flush"]


def test_queue_during_publish_starts_new_batch():
    async def runner() -> FakePublisher:
        gate = asyncio.Event()
        publisher = FakePublisher(gate=gate)
        coordinator = _coordinator(publisher)
        coordinator.queue("1", "first")
        await asyncio.sleep(0.1)
        assert len(publisher.calls) == 1

        coordinator.queue("2", "second")
        assert coordinator.pending_count == 1
        gate.set()
        await asyncio.sleep(0.15)
        await coordinator.cleanup()
        return publisher

    publisher = asyncio.run(runner())
    assert [(c["message"], c["users"]) for c in publisher.calls] == [
        ("first", ["1"]),
        ("second", ["2"]),
    ]


def test_backoff_retry_recovers_transient_failures():
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    async def runner() -> FakePublisher:
        publisher = FakePublisher(errors=[RemoteAPIError(502, "bad gateway"), RemoteAPIError(502, "bad gateway")])
        coordinator = _coordinator(publisher, retry=BackoffRetry(3, 1.5, sleep=fake_sleep))
        coordinator.queue("1", "retry me")
        result = await coordinator.flush()
        assert result.updated is True
        return publisher

    publisher = asyncio.run(runner())
    assert len(publisher.calls) == 3
    assert sleeps == [1.5, 3.0]


def test_backoff_retry_gives_up_and_skips_unrelated_errors():
    async def no_sleep(_delay):
        return None

    async def runner() -> None:
        retry = BackoffRetry(2, 0, sleep=no_sleep)
        attempts = []

        async def always_fails():
            attempts.append(1)
            raise RemoteAPIError(500, "down")

        with pytest.raises(RemoteAPIError):
            await retry.run(always_fails)
        assert len(attempts) == 2

        async def config_error():
            attempts.append(2)
            raise ValueError("not transient")

        with pytest.raises(ValueError):
            await retry.run(config_error)
        assert attempts.count(2) == 1

    asyncio.run(runner())
    with pytest.raises(ValueError):
        BackoffRetry(0)
