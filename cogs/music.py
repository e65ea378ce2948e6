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

"""Music playback commands for Encore."""

from typing import Awaitable, Callable

import discord
from discord import app_commands
from discord.ext import commands
from loguru import logger

from core.errors import UserStateError
from utils.permissions import require_permission
from utils.response import (
    ResponseMixin,
    escape_markdown,
    truncate_for_display,
    EMBED_TITLE_MAX,
)


class Music(ResponseMixin, commands.Cog):
    """Playback commands.

    Provides slash commands that drive the PlaybackEngine:
    - /play, /playnext: Look up a URL or search and queue it (joining voice)
    - /skip, /pause, /resume, /stop, /leave: Control the current guild's playback

    All responses are ephemeral; public announcements (now playing, queued)
    come from the notifier. Control commands sit in the "dj" permission tier.
    """

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    @property
    def engine(self):
        return self.bot.engine

    async def _enqueue(self, interaction: discord.Interaction, query: str, at_front: bool) -> None:
        """Shared body of /play and /playnext."""
        try:
            channel = self._user_voice_channel(interaction)
        except UserStateError as e:
            await self.respond_error(interaction, e)
            return

        # Lookups can take a few seconds
        await interaction.response.defer(ephemeral=True, thinking=True)

        guild_id = interaction.guild_id
        try:
            await self.engine.connect(guild_id, channel.id, interaction.channel_id)
            result = await self.engine.enqueue(
                guild_id,
                query,
                interaction.user.display_name,
                at_front=at_front,
                text_channel_id=interaction.channel_id,
            )
        except Exception as e:
            await self.respond_error(interaction, e)
            return

        title = escape_markdown(truncate_for_display(result.track.title, EMBED_TITLE_MAX))
        logger.info(f"{interaction.user.display_name} queued {result.track.title}")
        if result.started:
            await self.respond(interaction, "now_starting", title=title)
        elif at_front:
            await self.respond(interaction, "queued_next", title=title)
        else:
            await self.respond(interaction, "queued", title=title, position=result.position)

    async def _control(
        self,
        interaction: discord.Interaction,
        action: Callable[[int], Awaitable],
        success_key: str,
    ) -> None:
        """Run an engine control command and answer with its outcome."""
        try:
            result = await action(interaction.guild_id)
        except Exception as e:
            await self.respond_error(interaction, e)
            return

        logger.info(f"/{success_key} by {interaction.user.display_name}")
        title = ""
        if result is not None and hasattr(result, "title"):
            title = escape_markdown(truncate_for_display(result.title, EMBED_TITLE_MAX))
        await self.respond(interaction, success_key, title=title)

    @app_commands.command(name="play", description="play a YouTube link or search result")
    @app_commands.guild_only()
    @app_commands.describe(query="YouTube URL or search terms")
    @require_permission("play")
    async def play(self, interaction: discord.Interaction, query: str) -> None:
        """Queue a track at the end, starting playback if idle."""
        await self._enqueue(interaction, query, at_front=False)

    @app_commands.command(name="playnext", description="queue a track to play next")
    @app_commands.guild_only()
    @app_commands.describe(query="YouTube URL or search terms")
    @require_permission("playnext")
    async def playnext(self, interaction: discord.Interaction, query: str) -> None:
        """Queue a track at the front of the queue."""
        await self._enqueue(interaction, query, at_front=True)

    @app_commands.command(name="skip", description="skip the current track")
    @app_commands.guild_only()
    @require_permission("skip")
    async def skip(self, interaction: discord.Interaction) -> None:
        await self._control(interaction, self.engine.skip, "skipped")

    @app_commands.command(name="pause", description="pause playback")
    @app_commands.guild_only()
    @require_permission("pause")
    async def pause(self, interaction: discord.Interaction) -> None:
        await self._control(interaction, self.engine.pause, "paused")

    @app_commands.command(name="resume", description="resume playback")
    @app_commands.guild_only()
    @require_permission("resume")
    async def resume(self, interaction: discord.Interaction) -> None:
        await self._control(interaction, self.engine.resume, "resumed")

    @app_commands.command(name="stop", description="stop playback and clear the queue")
    @app_commands.guild_only()
    @require_permission("stop")
    async def stop(self, interaction: discord.Interaction) -> None:
        await self._control(interaction, self.engine.stop, "stopped")

    @app_commands.command(name="leave", description="leave the voice channel")
    @app_commands.guild_only()
    @require_permission("leave")
    async def leave(self, interaction: discord.Interaction) -> None:
        """Disconnect and forget this guild's queue."""
        await self._control(interaction, self.engine.leave, "left")


async def setup(bot: commands.Bot) -> None:
    """Load the Music cog."""
    await bot.add_cog(Music(bot))
