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

"""Now-playing / queued / failed announcements."""

from typing import Optional, Protocol

import discord
from loguru import logger

from core.track import Track
from utils.response import EMBED_FIELD_MAX, EMBED_TITLE_MAX, escape_markdown, truncate_for_display


class Notifier(Protocol):
    """Announcement sink. Calls are fire-and-forget; errors never reach playback."""

    async def on_track_started(self, guild_id: int, track: Track, text_channel_id: Optional[int]) -> None: ...

    async def on_track_queued(
        self, guild_id: int, track: Track, as_next: bool, text_channel_id: Optional[int]
    ) -> None: ...

    async def on_track_failed(
        self, guild_id: int, track: Track, error: BaseException, text_channel_id: Optional[int]
    ) -> None: ...


def now_playing_embed(track: Track, color: int) -> discord.Embed:
    embed = discord.Embed(
        title="🎵 Now Playing",
        url=track.url if track.url.startswith("http") else None,
        description=escape_markdown(truncate_for_display(track.title, EMBED_TITLE_MAX)),
        color=color,
    )
    image = track.thumb_max or track.thumb
    if image:
        embed.set_image(url=image)
    embed.add_field(
        name="Requested by",
        value=escape_markdown(truncate_for_display(track.requested_by or "Unknown", EMBED_FIELD_MAX)),
        inline=True,
    )
    embed.add_field(name="Duration", value=track.duration, inline=True)
    return embed


def queued_embed(track: Track, as_next: bool, color: int) -> discord.Embed:
    title = truncate_for_display(track.title, EMBED_TITLE_MAX)
    embed = discord.Embed(
        title="⏭️ Queued to Play Next" if as_next else "➕ Queued",
        description=f"[{escape_markdown(title)}]({track.url})",
        color=color,
    )
    if track.thumb:
        embed.set_thumbnail(url=track.thumb)
    return embed


class DiscordNotifier:
    """Sends announcement embeds to the guild's text channel.

    The channel is whichever text channel the last command came from, falling
    back to defaults.text_channel_id from settings.yaml.
    """

    def __init__(self, bot: discord.Client) -> None:
        self.bot = bot

    @property
    def _config(self):
        return self.bot.config_manager

    def _enabled(self, key: str) -> bool:
        return self._config.get("announcements", {}).get(key, True)

    async def _channel(self, text_channel_id: Optional[int]):
        channel_id = text_channel_id or self._config.get("defaults", {}).get("text_channel_id")
        if not channel_id:
            return None
        channel = self.bot.get_channel(int(channel_id))
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(int(channel_id))
            except (discord.NotFound, discord.Forbidden, discord.HTTPException) as e:
                logger.debug(f"announcement channel {channel_id} unavailable: {e}")
                return None
        if not isinstance(channel, discord.abc.Messageable):
            return None
        return channel

    async def on_track_started(self, guild_id: int, track: Track, text_channel_id: Optional[int]) -> None:
        if not self._enabled("now_playing"):
            return
        channel = await self._channel(text_channel_id)
        if channel is None:
            return
        await channel.send(embed=now_playing_embed(track, self._config.get("embed_color", 0x5865F2)))

    async def on_track_queued(
        self, guild_id: int, track: Track, as_next: bool, text_channel_id: Optional[int]
    ) -> None:
        if not self._enabled("queued"):
            return
        channel = await self._channel(text_channel_id)
        if channel is None:
            return
        await channel.send(embed=queued_embed(track, as_next, self._config.get("queued_color", 0x2F3136)))

    async def on_track_failed(
        self, guild_id: int, track: Track, error: BaseException, text_channel_id: Optional[int]
    ) -> None:
        if not self._config.is_enabled("track_play_error"):
            return
        channel = await self._channel(text_channel_id)
        if channel is None:
            return
        title = escape_markdown(truncate_for_display(track.title, EMBED_TITLE_MAX))
        await channel.send(self._config.msg("track_play_error", title=title))
