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

"""Queue commands for Encore."""

import discord
from discord import app_commands
from discord.ext import commands

from core.playback import PlaybackState, Snapshot
from utils.permissions import require_permission
from utils.response import (
    ResponseMixin,
    escape_markdown,
    truncate_for_display,
    QUEUE_TITLE_MAX,
)


def format_queue_embed(snapshot: Snapshot, color: int) -> discord.Embed:
    """Build the /queue embed: now playing line, then numbered upcoming tracks."""
    if snapshot.now_playing:
        title = escape_markdown(truncate_for_display(snapshot.now_playing.title, QUEUE_TITLE_MAX))
        marker = "⏸️ " if snapshot.state is PlaybackState.PAUSED else ""
        now = f"{marker}**Now:** {title} [{snapshot.now_playing.duration}]"
    else:
        now = "*Nothing playing*"

    lines = [
        f"{i}. {escape_markdown(truncate_for_display(track.title, QUEUE_TITLE_MAX))}"
        for i, track in enumerate(snapshot.upcoming, start=1)
    ]
    rest = "\n".join(lines) or "*No upcoming tracks*"

    embed = discord.Embed(
        title="🎶 Queue",
        description=f"{now}\n\n**Up Next:**\n{rest}",
        color=color,
    )
    hidden = snapshot.queue_length - len(snapshot.upcoming)
    if hidden > 0:
        embed.set_footer(text=f"and {hidden} more")
    return embed


class Queue(ResponseMixin, commands.Cog):
    """Queue inspection.

    - /queue: Show the now-playing track and the next queue_display_size tracks
    """

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    @property
    def display_size(self) -> int:
        """Get queue display size from config."""
        return self.bot.config_manager.get("queue_display_size", 10)

    @app_commands.command(name="queue", description="show the current queue")
    @app_commands.guild_only()
    @require_permission("queue")
    async def queue(self, interaction: discord.Interaction) -> None:
        snapshot = self.bot.engine.query_snapshot(interaction.guild_id, self.display_size)
        if snapshot.now_playing is None and not snapshot.queue_length:
            await self.respond(interaction, "queue_empty")
            return

        embed = format_queue_embed(snapshot, self.bot.config_manager.get("embed_color", 0x5865F2))
        ui_config = self.bot.config_manager.get("ui", {})
        timeout = ui_config.get("brief_auto_delete", 10)
        await interaction.response.send_message(
            embed=embed, ephemeral=True, delete_after=timeout if timeout > 0 else None
        )


async def setup(bot: commands.Bot) -> None:
    """Load the Queue cog."""
    await bot.add_cog(Queue(bot))
