import asyncio
import datetime as dt

import pytest

from modules.whitelist.errors import InvalidPermissionToken
from modules.whitelist.manager import WhitelistManager
from modules.whitelist.models import utcnow
from modules.whitelist.role_ops import RoleOperations
from modules.whitelist.store import WhitelistStore
from modules.whitelist.user_ops import UserOperations


def test_map_role_creates_then_updates():
    async def runner() -> None:
        store = WhitelistStore()
        roles = RoleOperations(store)

        created = await roles.map_role("ext1", "G", ["station", "truavatar", "station"])
        assert created.permissions == "station, truavatar"
        updated = await roles.map_role("ext1", "G", ["vip"])
        assert updated.id == created.id
        assert updated.permissions == "vip"
        assert [r.id for r in await roles.get_role_mappings("G")] == [created.id]

        with pytest.raises(InvalidPermissionToken):
            await roles.map_role("ext2", "G", ["bad:token"])
        assert await store.find_role("G", "ext2") is None

    asyncio.run(runner())


def test_unmapped_roles_are_hidden_from_mappings():
    async def runner() -> None:
        store = WhitelistStore()
        roles = RoleOperations(store)
        await roles.create_role("G", ["station"])
        mapped = await roles.map_role("ext1", "G", ["vip"])

        assert [r.id for r in await roles.get_role_mappings()] == [mapped.id]
        assert len(await roles.get_all_roles()) == 2
        assert await roles.should_user_be_whitelisted(["ext1"], "G") is True
        assert await roles.should_user_be_whitelisted(["ext1"], "other") is False
        assert await roles.delete_role("G", "ext1") is True
        assert await roles.delete_role("G", "ext1") is False

    asyncio.run(runner())


def test_assign_role_refreshes_existing_grant(seed):
    async def runner() -> None:
        store = WhitelistStore()
        await seed(store, "100", "usr_a")
        roles = RoleOperations(store)
        role = await roles.map_role("ext1", "G", ["station"])
        later = utcnow() + dt.timedelta(days=7)

        first = await roles.assign_role("100", role.id, "admin")
        second = await roles.assign_role("100", role.id, "other-admin", later)
        assert second.id == first.id
        assert second.assigned_by == "other-admin"
        assert second.expires_at == later

        by_external = await roles.assign_role_by_external_id("usr_a", role.id, "bot")
        assert by_external.id == first.id

        assert await roles.remove_role("100", role.id) is True
        assert await roles.remove_role("100", role.id) is False

    asyncio.run(runner())


def test_assign_role_lookup_errors(seed):
    async def runner() -> None:
        store = WhitelistStore()
        await seed(store, "100", "usr_a")
        roles = RoleOperations(store)
        role = await roles.map_role("ext1", "G", ["station"])

        with pytest.raises(LookupError, match="User not found"):
            await roles.assign_role("missing", role.id)
        with pytest.raises(LookupError, match='Role with ID "999" not found'):
            await roles.assign_role("100", 999)
        with pytest.raises(LookupError):
            await roles.assign_role_by_external_id("usr_missing", role.id)

    asyncio.run(runner())


def test_cleanup_expired_roles_and_user_permissions(seed):
    async def runner() -> None:
        store = WhitelistStore()
        await seed(store, "100", "usr_a")
        roles = RoleOperations(store)
        users = UserOperations(store)
        live = await roles.map_role("live", "G", ["vip", "station"])
        stale = await roles.map_role("stale", "G", ["old"])
        await roles.assign_role("100", live.id)
        await roles.assign_role("100", stale.id, expires_at=utcnow() - dt.timedelta(seconds=5))

        assert await users.get_user_whitelist_permissions("100") == ["station", "vip"]
        assert await roles.cleanup_expired_roles() == 1
        assert await roles.cleanup_expired_roles() == 0

        record = await users.get_user_by_external_id("usr_a")
        assert record is not None and record.whitelisted and record.discord_id == "100"
        assert await users.remove_user_from_whitelist("100") is True
        assert await users.get_user_whitelist_permissions("100") == []
        assert (await users.get_user("100")).whitelisted is False

    asyncio.run(runner())


def test_statistics_count_active_and_expired(seed):
    async def runner() -> None:
        store = WhitelistStore()
        manager = WhitelistManager(store, delay=0)
        await seed(store, "1", "usr_a")
        await seed(store, "2", "usr_b")
        live = await manager.map_role("live", "G", ["station"])
        old = await manager.map_role("old", "G", ["vip"])
        await manager.roles.assign_role("1", live.id)
        await manager.roles.assign_role("2", live.id)
        await manager.roles.assign_role("2", old.id, expires_at=utcnow() - dt.timedelta(minutes=1))

        stats = await manager.get_statistics()
        assert stats.as_dict() == {
            "totalUsers": 2,
            "totalRoles": 2,
            "totalActiveAssignments": 2,
            "totalExpiredAssignments": 1,
        }
        await manager.close()

    asyncio.run(runner())
