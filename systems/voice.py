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
Voice Transport

Connects guilds to voice channels and feeds resolved Opus streams to
discord.py's voice player. The playback core only talks to the VoiceTransport
protocol, so tests can swap in a fake.
"""

import asyncio
from typing import Callable, Optional, Protocol

import discord
from discord.oggparse import OggStream
from loguru import logger

from core.errors import ChannelNotFound, VoiceConnectFailed

# Seconds allowed for the voice handshake
VOICE_CONNECT_TIMEOUT = 30.0


class VoiceTransport(Protocol):
    """What the playback core needs from a voice backend.

    on_finish is invoked exactly once per play() call, from the audio thread,
    with the player's error or None.
    """

    async def connect(self, guild_id: int, channel_id: int): ...

    def is_connected(self, handle) -> bool: ...

    def play(self, handle, resolved, on_finish: Callable[[Optional[Exception]], None]) -> None: ...

    def pause(self, handle) -> None: ...

    def unpause(self, handle) -> None: ...

    def stop(self, handle) -> None: ...

    async def disconnect(self, handle) -> None: ...


class OggOpusSource(discord.AudioSource):
    """Opus packets straight out of an Ogg stream (no ffmpeg involved)."""

    def __init__(self, stream) -> None:
        self._stream = stream
        self._packets = OggStream(stream).iter_packets()

    def read(self) -> bytes:
        return next(self._packets, b"")

    def is_opus(self) -> bool:
        return True

    def cleanup(self) -> None:
        try:
            self._stream.close()
        except (OSError, ValueError):
            pass


def make_audio_source(resolved) -> discord.AudioSource:
    """
    Create audio source for a resolved stream (container-aware).

    For Ogg/Opus: packets are read directly (zero CPU overhead)
    For WebM/Opus: FFmpegOpusAudio remuxes with codec copy (no re-encode)

    Audio sources are single-use; build a fresh one for every play().
    """
    if resolved.container == "ogg":
        logger.debug(f"ogg passthrough source for attempt {resolved.attempt_id}")
        return OggOpusSource(resolved.stream)
    logger.debug(f"webm remux source for attempt {resolved.attempt_id}")
    return discord.FFmpegOpusAudio(resolved.stream, pipe=True, codec="copy")


class DiscordVoiceTransport:
    """VoiceTransport backed by discord.py VoiceClients.

    The VoiceClient is both the connection and the player, so a connected
    handle is ready to play with no separate subscribe step.
    """

    def __init__(self, bot: discord.Client) -> None:
        self.bot = bot

    async def _resolve_channel(self, guild_id: int, channel_id: int):
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except (discord.NotFound, discord.Forbidden, discord.HTTPException) as e:
                logger.debug(f"guild {guild_id}: could not fetch channel {channel_id}: {e}")
                raise ChannelNotFound(channel_id=channel_id) from e
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise ChannelNotFound(channel_id=channel_id)
        if channel.guild.id != guild_id:
            raise ChannelNotFound(channel_id=channel_id)
        return channel

    async def connect(self, guild_id: int, channel_id: int) -> discord.VoiceClient:
        """
        Join a voice channel (self-deafened).

        Reuses a leftover VoiceClient for the guild if one exists.

        Raises:
            ChannelNotFound: Channel missing, in another guild, or not voice
            VoiceConnectFailed: Handshake timed out or was refused
        """
        channel = await self._resolve_channel(guild_id, channel_id)

        existing = channel.guild.voice_client
        if existing is not None and existing.is_connected():
            if existing.channel.id != channel.id:
                await existing.move_to(channel)
            return existing

        try:
            return await channel.connect(timeout=VOICE_CONNECT_TIMEOUT, self_deaf=True)
        except (asyncio.TimeoutError, discord.ClientException) as e:
            logger.warning(f"guild {guild_id}: voice connect to {channel.name} failed: {e}")
            raise VoiceConnectFailed(channel_id=channel_id) from e

    def is_connected(self, handle: discord.VoiceClient) -> bool:
        return handle.is_connected()

    def play(self, handle: discord.VoiceClient, resolved, on_finish) -> None:
        handle.play(make_audio_source(resolved), after=on_finish)

    def pause(self, handle: discord.VoiceClient) -> None:
        handle.pause()

    def unpause(self, handle: discord.VoiceClient) -> None:
        handle.resume()

    def stop(self, handle: discord.VoiceClient) -> None:
        if handle.is_playing() or handle.is_paused():
            handle.stop()

    async def disconnect(self, handle: discord.VoiceClient) -> None:
        try:
            await handle.disconnect(force=True)
        except (discord.ClientException, discord.HTTPException) as e:
            logger.debug(f"voice disconnect failed: {e}")
