from __future__ import annotations

import asyncio
import logging

import discord
from discord.ext import commands

from shared.config import (
    get_bot_name,
    get_command_prefix,
    get_discord_token,
    get_env_name,
    get_log_level,
    reload_config,
)
from shared.logging import setup_logging
from shared.redaction import sanitize_text
from modules.common.runtime import Runtime

log = logging.getLogger("shield.app")

INTENTS = discord.Intents.default()
INTENTS.message_content = True
INTENTS.members = True

bot = commands.Bot(
    command_prefix=commands.when_mentioned_or(get_command_prefix()),
    intents=INTENTS,
)

runtime = Runtime(bot)


@bot.event
async def on_ready():
    log.info(
        'Bot ready as %s | env=%s | prefixes=["%s", "@mention"]',
        bot.user,
        get_env_name(),
        get_command_prefix(),
    )


@bot.event
async def on_command_error(ctx: commands.Context, error: Exception):
    log.warning(
        "cmd error: cmd=%s user=%s err=%s",
        getattr(ctx.command, "qualified_name", None),
        getattr(ctx.author, "id", None),
        sanitize_text(repr(error)),
    )
    if isinstance(error, (commands.MissingPermissions, commands.NoPrivateMessage)):
        await ctx.reply("You can't use that command here.", mention_author=False)
    elif isinstance(error, (commands.BadArgument, commands.MissingRequiredArgument)):
        await ctx.reply(str(sanitize_text(str(error))), mention_author=False)


async def main() -> None:
    setup_logging(level=get_log_level(), static_fields={"env": get_env_name(), "bot": get_bot_name()})
    reload_config(require=True)
    token = get_discord_token()
    try:
        await runtime.start(token)
    finally:
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
