import asyncio
import logging

import pytest

from modules.common import runtime


def test_scheduler_job_exception_does_not_cancel(caplog: pytest.LogCaptureFixture) -> None:
    async def runner() -> dict:
        scheduler = runtime.Scheduler()

        attempt = {"count": 0}

        async def maybe_fail() -> None:
            attempt["count"] += 1
            if attempt["count"] == 1:
                raise RuntimeError("boom")

        caplog.set_level(logging.ERROR, logger="shield.runtime")

        scheduler.every(0.01, maybe_fail, name="test_job")

        await asyncio.sleep(0.08)
        await scheduler.shutdown()
        return attempt

    attempt = asyncio.run(runner())
    assert attempt["count"] >= 2
    assert any("scheduled job failed" in record.message for record in caplog.records)


def test_sweep_job_removes_expired_assignments(seed_expired_manager) -> None:
    async def runner() -> int:
        manager = await seed_expired_manager()

        class _Bot:
            def is_closed(self) -> bool:
                return True

        rt = runtime.Runtime(_Bot(), manager=manager)
        rt.schedule_sweep(0.01)
        await asyncio.sleep(0.05)
        await rt.scheduler.shutdown()
        return await manager.store.count_assignments()

    assert asyncio.run(runner()) == 0


@pytest.fixture
def seed_expired_manager():
    import datetime as dt

    from modules.whitelist.manager import WhitelistManager
    from modules.whitelist.models import AccountType, utcnow
    from modules.whitelist.store import WhitelistStore

    async def _build() -> WhitelistManager:
        store = WhitelistStore()
        user = await store.add_user("1")
        await store.add_account(user.id, "usr_a", AccountType.MAIN)
        manager = WhitelistManager(store, delay=0)
        role = await manager.map_role("r", "G", ["station"])
        await manager.roles.assign_role("1", role.id, expires_at=utcnow() - dt.timedelta(seconds=1))
        return manager

    return _build
