"""Discord wiring: member role listener and ``!whitelist`` admin commands."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import discord
from discord.ext import commands

from shared.redaction import sanitize_text

from .errors import human_error
from .manager import WhitelistManager

__all__ = ["WhitelistCog", "sync_member", "split_tokens", "setup"]

log = logging.getLogger("shield.whitelist.cog")


def _member_name(member: discord.abc.User) -> str:
    return (
        getattr(member, "display_name", None)
        or getattr(member, "name", None)
        or str(getattr(member, "id", "unknown"))
    )


def split_tokens(raw: Iterable[str]) -> List[str]:
    """Accept ``a b``, ``a,b`` and ``a, b`` alike."""

    tokens: List[str] = []
    for chunk in raw:
        for piece in str(chunk).split(","):
            piece = piece.strip()
            if piece and piece not in tokens:
                tokens.append(piece)
    return tokens


async def sync_member(manager: WhitelistManager, member: discord.Member) -> bool:
    """Reconcile ``member``'s roles and queue a publish when access changed.

    Returns ``True`` when a publish was queued.
    """

    discord_id = str(member.id)
    realm_id = str(member.guild.id)
    user = await manager.store.get_user(discord_id)
    if user is None:
        log.debug("member sync skipped • user=%s • reason=no_linked_account", discord_id)
        return False

    before = await manager.get_user_whitelist_permissions(discord_id)
    listed_before = await manager.store.get_entry(user.id) is not None

    role_ids = [str(role.id) for role in getattr(member, "roles", [])]
    await manager.sync_user_roles(discord_id, role_ids, realm_id)
    await manager.ensure_unverified_access(discord_id)

    after = await manager.get_user_whitelist_permissions(discord_id)
    listed_after = await manager.store.get_entry(user.id) is not None
    if before == after and listed_before == listed_after:
        log.debug("member sync no-op • user=%s • realm=%s", discord_id, realm_id)
        return False

    name = _member_name(member)
    if listed_after:
        message = f"{name} was added with the roles {', '.join(after) if after else 'none'}"
    else:
        message = f"{name} was removed from the whitelist"
    manager.queue_update(discord_id, message, realm_id)
    log.info("whitelist update queued • user=%s • realm=%s", discord_id, realm_id)
    return True


class WhitelistCog(commands.Cog):
    """Keep the whitelist in step with member roles and expose admin tools."""

    def __init__(self, bot: commands.Bot, manager: WhitelistManager) -> None:
        self.bot = bot
        self.manager = manager

    @commands.Cog.listener()
    async def on_member_update(self, before: discord.Member, after: discord.Member) -> None:
        if {role.id for role in before.roles} == {role.id for role in after.roles}:
            return
        try:
            await sync_member(self.manager, after)
        except Exception:
            log.exception("member role sync failed • user=%s", getattr(after, "id", "?"))

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member) -> None:
        discord_id = str(member.id)
        try:
            removed = await self.manager.remove_user_from_whitelist(discord_id)
        except Exception:
            log.exception("whitelist removal failed • user=%s", discord_id)
            return
        if removed:
            self.manager.queue_update(
                discord_id, f"{_member_name(member)} left the server", str(member.guild.id)
            )

    async def _fail(self, ctx: commands.Context, action: str, exc: Exception) -> None:
        log.exception("whitelist command failed • action=%s", action)
        text = str(sanitize_text(human_error(exc)))
        await ctx.reply(f"Whitelist {action} failed: {text}", mention_author=False)

    @commands.group(
        name="whitelist",
        invoke_without_command=True,
        help="Whitelist publishing and role mapping tools.",
    )
    @commands.guild_only()
    @commands.has_guild_permissions(manage_roles=True)
    async def whitelist(self, ctx: commands.Context) -> None:
        if ctx.invoked_subcommand is not None:
            return
        await ctx.reply(
            "Usage: !whitelist publish [force] | stats | map <role> <tokens> | unmap <role> | sweep",
            mention_author=False,
        )

    @whitelist.command(name="publish", help="Publish the whitelist now (add 'force' to skip change detection).")
    async def whitelist_publish(self, ctx: commands.Context, mode: Optional[str] = None) -> None:
        force = (mode or "").strip().lower() == "force"
        actor = _member_name(ctx.author)
        try:
            result = await self.manager.publish(
                f"Manual whitelist publish by {actor}", force, str(ctx.guild.id)
            )
        except Exception as exc:
            await self._fail(ctx, "publish", exc)
            return
        if result.updated:
            await ctx.reply(
                f"Whitelist published • commit={(result.commit_sha or '')[:7]} • branch={result.branch}",
                mention_author=False,
            )
        else:
            await ctx.reply(f"Nothing to publish: {result.reason}.", mention_author=False)

    @whitelist.command(name="stats", help="Show whitelist counters.")
    async def whitelist_stats(self, ctx: commands.Context) -> None:
        try:
            stats = await self.manager.get_statistics()
        except Exception as exc:
            await self._fail(ctx, "stats", exc)
            return
        stamp = self.manager.last_update_timestamp
        await ctx.reply(
            f"users={stats.total_users} • roles={stats.total_roles} • "
            f"active={stats.total_active_assignments} • expired={stats.total_expired_assignments} • "
            f"last_publish={stamp.isoformat(timespec='seconds') if stamp else 'never'}",
            mention_author=False,
        )

    @whitelist.command(name="map", help="Map a Discord role to permission tokens.")
    async def whitelist_map(self, ctx: commands.Context, role: discord.Role, *tokens: str) -> None:
        parsed = split_tokens(tokens)
        if not parsed:
            await ctx.reply("Give at least one permission token.", mention_author=False)
            return
        try:
            mapping = await self.manager.map_role(str(role.id), str(ctx.guild.id), parsed)
        except Exception as exc:
            await self._fail(ctx, "map", exc)
            return
        await ctx.reply(f"{role.name} → {mapping.permissions}", mention_author=False)

    @whitelist.command(name="unmap", help="Remove a Discord role mapping.")
    async def whitelist_unmap(self, ctx: commands.Context, role: discord.Role) -> None:
        try:
            removed = await self.manager.unmap_role(str(ctx.guild.id), str(role.id))
        except Exception as exc:
            await self._fail(ctx, "unmap", exc)
            return
        if removed:
            self.manager.queue_update(str(ctx.author.id), f"Removed mapping for {role.name}", str(ctx.guild.id))
            await ctx.reply(f"Mapping for {role.name} removed.", mention_author=False)
        else:
            await ctx.reply(f"{role.name} was not mapped.", mention_author=False)

    @whitelist.command(name="sweep", help="Delete expired role assignments.")
    async def whitelist_sweep(self, ctx: commands.Context) -> None:
        try:
            count = await self.manager.cleanup_expired_roles()
        except Exception as exc:
            await self._fail(ctx, "sweep", exc)
            return
        await ctx.reply(f"Removed {count} expired assignment(s).", mention_author=False)


async def setup(bot: commands.Bot) -> None:
    manager = getattr(bot, "whitelist_manager", None)
    if manager is None:
        manager = WhitelistManager.from_config()
        bot.whitelist_manager = manager
    await bot.add_cog(WhitelistCog(bot, manager))
