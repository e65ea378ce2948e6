# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Encore Music Bot
========================================================
VERSION: 1.0.0
========================================================

A Discord music bot that streams YouTube audio into voice channels,
built on discord.py. yt-dlp and ffmpeg do the extraction and transcoding.
"""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import discord
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

# Load environment variables
load_dotenv()

from core.player import PlaybackEngine
from systems.extractor import ToolCommands, TrackLookup
from systems.metadata_cache import MetadataCache
from systems.notifier import DiscordNotifier
from systems.process_supervisor import ProcessSupervisor
from systems.stream_resolver import StreamResolver
from systems.voice import DiscordVoiceTransport
from utils.config import ConfigManager, parse_id_list, validate_configuration
from utils.permissions import PermissionManager
from web.dashboard import Dashboard
from web.dashboard import Dashboard

CONFIG_PATH = Path(os.getenv("CONFIG_PATH") or Path(__file__).parent / "config")

COGS = ("cogs.music", "cogs.queue")

# =============================================================================
# LOGGING SETUP
# =============================================================================

# settings.yaml logging.level -> loguru level
LOG_LEVEL_MAP = {
    "minimal": "WARNING",
    "verbose": "INFO",
    "debug": "DEBUG",
}

LOG_FORMAT = (
    "<green>[{time:YYYY-MM-DD HH:mm:ss}]</green> "
    "<level>[{level: <5}]</level> "
    "<cyan>{name}</cyan>: <level>{message}</level>"
)

# Lifecycle milestones (tool readiness, dashboard URL); shown even at "minimal"
logger.level("NOTICE", no=25, color="<blue><bold>")


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (discord.py, aiohttp) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside the logging module so {name} is meaningful
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level_name: str) -> None:
    """(Re)configure the stderr sink. Unknown names fall back to verbose."""
    level = LOG_LEVEL_MAP.get(str(level_name).lower(), "INFO")
    # Minimal still shows NOTICE milestones
    if level == "WARNING":
        level = "NOTICE"

    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level, colorize=None)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # discord.py is chatty at DEBUG; keep it at INFO unless we are debugging
    logging.getLogger("discord").setLevel(logging.DEBUG if level == "DEBUG" else logging.INFO)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


setup_logging(os.getenv("LOG_LEVEL", "verbose"))

# =============================================================================
# ASYNCIO EXCEPTION HANDLER
# =============================================================================

def custom_exception_handler(loop, context):
    """
    Custom asyncio exception handler to suppress cosmetic aiohttp warnings.

    Suppresses only "Unclosed client session" and "Unclosed connector", which
    aiohttp emits during shutdown. Everything else goes to the default handler.
    """
    message = context.get("message", "")

    if message in ["Unclosed client session", "Unclosed connector"]:
        return

    loop.default_exception_handler(context)

# =============================================================================
# BOT SETUP
# =============================================================================

intents = discord.Intents.default()
intents.voice_states = True

bot = commands.Bot(
    command_prefix=commands.when_mentioned,
    intents=intents,
    help_command=None,
)

# Dashboard instance (set in setup_hook when enabled)
_dashboard = None

# Shutdown flag so a second signal doesn't start a second shutdown
_is_shutting_down = False


def build_engine(bot: commands.Bot) -> PlaybackEngine:
    """Wire the playback core from the loaded configuration."""
    config = bot.config_manager
    tools = config.get("tools", {})

    supervisor = ProcessSupervisor()
    tool_commands = ToolCommands(
        tools.get("ytdlp_path", "yt-dlp"),
        tools.get("ffmpeg_path", "ffmpeg"),
        cookie=os.getenv("YT_COOKIE"),
    )
    cache = MetadataCache(ttl=config.get("metadata_cache_ttl", 60))
    resolver = StreamResolver(
        supervisor,
        tool_commands,
        probe_timeout=config.get("probe_timeout", 5),
        probe_bytes=config.get("probe_bytes", 65536),
    )

    bot.supervisor = supervisor
    bot.tool_commands = tool_commands
    return PlaybackEngine(
        DiscordVoiceTransport(bot),
        resolver,
        supervisor,
        TrackLookup(tool_commands, cache),
        notifier=DiscordNotifier(bot),
        queue_display_size=config.get("queue_display_size", 10),
    )


async def warm_tools(bot: commands.Bot) -> None:
    """Run yt-dlp and ffmpeg once so the first track doesn't pay the cold start."""
    await asyncio.gather(
        bot.supervisor.warm(bot.tool_commands.ytdlp_version()),
        bot.supervisor.warm(bot.tool_commands.ffmpeg_version()),
    )


async def sync_commands(bot: commands.Bot) -> None:
    """Sync slash commands to GUILD_IDS (instant) or globally (slow to propagate)."""
    guild_ids = parse_id_list(os.getenv("GUILD_IDS"))
    try:
        if guild_ids:
            for guild_id in guild_ids:
                guild = discord.Object(id=guild_id)
                bot.tree.copy_global_to(guild=guild)
                synced = await bot.tree.sync(guild=guild)
                logger.info(f"synced {len(synced)} commands to guild {guild_id}")
        else:
            synced = await bot.tree.sync()
            logger.info(f"synced {len(synced)} commands globally")
    except discord.HTTPException:
        logger.opt(exception=True).error("command sync failed")

# =============================================================================
# BOT EVENTS
# =============================================================================

@bot.event
async def setup_hook():
    """Load config, build the playback core, load cogs, start the dashboard."""
    global _dashboard

    asyncio.get_running_loop().set_exception_handler(custom_exception_handler)

    bot.config_manager = ConfigManager(CONFIG_PATH)
    await bot.config_manager.load()
    setup_logging(bot.config_manager.get("logging", {}).get("level", "verbose"))

    bot.permission_manager = PermissionManager(CONFIG_PATH)
    await bot.permission_manager.load()

    bot.engine = build_engine(bot)

    for cog in COGS:
        await bot.load_extension(cog)
    logger.debug(f"loaded {len(COGS)} cogs")

    if bot.config_manager.get("tools", {}).get("warm_on_startup", True):
        bot.warm_task = asyncio.create_task(warm_tools(bot))

    if bot.config_manager.get("dashboard", {}).get("enabled", True):
        _dashboard = Dashboard(bot.engine, bot.config_manager)
        try:
            await _dashboard.start()
        except OSError:
            logger.opt(exception=True).error("dashboard failed to start")
            _dashboard = None

    await sync_commands(bot)


@bot.event
async def on_ready():
    logger.info("Encore v1.0.0 - Copyright (C) 2026 grodz")
    logger.info("Licensed under GPL 3.0 - See LICENSE.md for details")
    logger.info(f"connected as {bot.user}")
    logger.info("Press Ctrl+C or send SIGTERM to shutdown")


@bot.event
async def on_guild_remove(guild):
    """Bot removed from guild - drop its playback state."""
    logger.info(f"removed from guild {guild.id}")
    await bot.engine.leave(guild.id)

# =============================================================================
# GRACEFUL SHUTDOWN
# =============================================================================

async def shutdown_bot():
    """
    Gracefully shut down playback, the dashboard and the gateway connection.

    Every guild is torn down (voice disconnected, sessions cancelled) and any
    straggling yt-dlp / ffmpeg process is killed before the bot closes.
    """
    global _is_shutting_down
    if _is_shutting_down:
        return
    _is_shutting_down = True
    logger.info("Initiating graceful shutdown...")

    engine = getattr(bot, "engine", None)
    if engine is not None:
        logger.info(f"Shutting down {len(engine.rooms)} room(s)...")
        await engine.shutdown()

    if _dashboard is not None:
        await _dashboard.stop()

    supervisor = getattr(bot, "supervisor", None)
    if supervisor is not None:
        supervisor.kill_all()

    logger.info("Closing bot connection...")
    await bot.close()
    logger.info("Shutdown complete")


def handle_shutdown_signal(signum):
    """Schedule the async shutdown for SIGINT (Ctrl+C) / SIGTERM (systemd, docker stop)."""
    logger.info(f"Received {signal.Signals(signum).name} signal, shutting down...")
    asyncio.get_running_loop().create_task(shutdown_bot())

# =============================================================================
# MAIN
# =============================================================================

async def main() -> None:
    validate_configuration(CONFIG_PATH)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle_shutdown_signal, signum)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    logger.info("Starting bot...")
    async with bot:
        await bot.start(os.environ["DISCORD_TOKEN"].strip())


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot stopped by user (Ctrl+C)")
    except discord.LoginFailure:
        logger.critical("Login failed - check DISCORD_TOKEN")
        sys.exit(1)
