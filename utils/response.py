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

"""Response utilities for Discord interactions.

Provides ResponseMixin for consistent message handling across cogs.
All cogs inherit from this mixin to get respond() and msg() helpers.
"""

import asyncio

import discord
from loguru import logger

from core.errors import NotInChannel, ResolutionFailure, UserStateError

# Track fire-and-forget cleanup tasks to prevent GC warnings
_cleanup_tasks: set[asyncio.Task] = set()


def escape_markdown(text: str) -> str:
    """Escape underscores for Discord embed/message display.

    Discord interprets _text_ as italics when underscores are at word
    boundaries. Escaping with backslash preserves literal underscores.

    Use for: embed descriptions, embed field values, message content.
    Do NOT use for: autocomplete choices (plain text).
    """
    return text.replace("_", "\\_")


# =============================================================================
# DISPLAY TRUNCATION
# =============================================================================
# Discord limits and safe truncation thresholds.
# Always truncate BEFORE escape_markdown (escaping can add characters).

QUEUE_TITLE_MAX = 60       # 50 items × ~66 chars/line = ~3300 (under 4096)
EMBED_FIELD_MAX = 1000     # embed field value (limit 1024) - room for "..." + escapes
EMBED_TITLE_MAX = 240      # embed title (limit 256) - room for prefixes


def truncate_for_display(text: str, max_length: int) -> str:
    """Truncate text with ellipsis for Discord display.

    Args:
        text: Text to truncate (must not be None)
        max_length: Maximum length including "..." suffix

    Returns:
        Original text if within limit, else truncated with "..."
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


class ResponseMixin:
    """Mixin providing standardized interaction responses for cogs.

    Provides respond() which handles:
    - Per-message enable/disable from messages.yaml
    - Auto-deletion after configurable timeout
    - Both response and followup paths (commands that defer use followups)

    Requirements:
        self.bot must have a config_manager with:
        - msg(key, **kwargs) -> str
        - is_enabled(key) -> bool
        - get(key, default) -> value

    Usage:
        class MyCog(ResponseMixin, commands.Cog):
            async def my_command(self, interaction):
                await self.respond(interaction, "skipped", title=track.title)
    """

    def msg(self, key: str, **kwargs) -> str:
        """Get formatted message text from config."""
        return self.bot.config_manager.msg(key, **kwargs)

    async def _delete_response(self, interaction: discord.Interaction, delay: float) -> None:
        """Delete interaction response after delay (for followup path)."""
        try:
            await asyncio.sleep(delay)
            await interaction.delete_original_response()
        except asyncio.CancelledError:
            pass  # Shutdown during wait - acceptable
        except discord.NotFound:
            pass
        except discord.HTTPException:
            pass

    async def respond(self, interaction: discord.Interaction, key: str, **kwargs) -> None:
        """Send ephemeral message if enabled, otherwise acknowledge silently.

        Args:
            interaction: Discord interaction to respond to
            key: Message key from messages.yaml
            **kwargs: Format variables for the message template

        Config:
            messages.yaml - Per-message `enabled` flag
            settings.yaml - `ui.brief_auto_delete` (default 10s, 0 to disable)
        """
        if not self.bot.config_manager.is_enabled(key):
            # Silent acknowledgment - defer then delete
            if not interaction.response.is_done():
                await interaction.response.defer(ephemeral=True)
            try:
                await interaction.delete_original_response()
            except discord.NotFound:
                pass  # Already deleted or never created
            return

        text = self.msg(key, **kwargs)

        ui_config = self.bot.config_manager.get("ui", {})
        timeout = ui_config.get("brief_auto_delete", 10)
        delete_after = timeout if timeout > 0 else None

        if not interaction.response.is_done():
            # Response path - use native delete_after
            await interaction.response.send_message(text, ephemeral=True, delete_after=delete_after)
        else:
            # Followup path - manual deletion via task
            await interaction.followup.send(text, ephemeral=True)
            if delete_after:
                task = asyncio.create_task(self._delete_response(interaction, delete_after))
                _cleanup_tasks.add(task)
                task.add_done_callback(_cleanup_tasks.discard)

    async def respond_error(self, interaction: discord.Interaction, error: Exception) -> None:
        """Answer a failed command with the message that matches the error.

        UserStateError subclasses carry their own messages.yaml key and format
        fields. Resolution failures become track_load_failed. Anything else is
        logged with its traceback and answered with error_generic.
        """
        if isinstance(error, UserStateError):
            await self.respond(interaction, error.message_key, **error.message_fields())
        elif isinstance(error, ResolutionFailure):
            logger.warning(f"/{interaction.command.name if interaction.command else '?'} failed: {error}")
            await self.respond(interaction, "track_load_failed")
        else:
            logger.opt(exception=error).error(
                f"/{interaction.command.name if interaction.command else '?'} failed"
            )
            await self.respond(interaction, "error_generic")

    def _user_voice_channel(self, interaction: discord.Interaction) -> discord.abc.Connectable:
        """The voice channel the invoking member sits in.

        Raises:
            NotInChannel: Member is not in a voice channel
        """
        voice = getattr(interaction.user, "voice", None)
        if voice is None or voice.channel is None:
            raise NotInChannel()
        return voice.channel
