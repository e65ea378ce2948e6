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

"""Permission system for Encore."""

import asyncio
import functools
import os
from pathlib import Path
from typing import Any, Callable

import discord
import yaml
from loguru import logger


# =============================================================================
# DEFAULT PERMISSIONS SCHEMA
# =============================================================================
# Role-based permission system with two tiers:
#
#   listener - Available to everyone (no role required)
#   dj       - Requires the DJ role (matched by name) OR manage_guild/administrator
#
# Fields:
#   enabled      - If False, all permissions bypass (everyone can use everything)
#   dj_role_name - Discord role name for the DJ tier (DJ_ROLE_NAME env var)
#   tiers        - Maps tier name to list of command names
#
# Setting DJ_ROLE_NAME enables the system. Commands not listed in any tier
# default to "listener" (most permissive). Admins always pass.
# =============================================================================

DEFAULT_PERMISSIONS = {
    "enabled": False,
    "dj_role_name": None,
    "tiers": {
        "listener": ["play", "playnext", "queue"],
        "dj": ["skip", "stop", "pause", "resume", "leave"],
    }
}


def is_admin(member: Any) -> bool:
    perms = getattr(member, "guild_permissions", None)
    return bool(perms and (perms.manage_guild or perms.administrator))


class PermissionManager:
    """Manages role-based permission checks for commands.

    The permission system is optional - when disabled, all commands are available
    to everyone. When enabled, dj-tier commands need the DJ role or admin rights.

    Configuration loaded from permissions.yaml, with env var overrides:
    - DJ_ROLE_NAME=DJ sets the role and enables the system
    - ENABLE_PERMISSIONS=true enables the system

    Usage:
        if perm_manager.check_permission(interaction.user, "skip"):
            # User allowed to skip

    Attributes:
        config_path: Path to permissions.yaml
        enabled: Whether permission checking is active
        dj_role_name: Role name granting the dj tier (None if not set)
        tiers: Dict mapping tier names to command lists
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path / "permissions.yaml"
        self.enabled = False
        self.dj_role_name: str | None = None
        self.tiers: dict[str, list[str]] = dict(DEFAULT_PERMISSIONS["tiers"])

    async def load(self) -> None:
        """Load permissions from permissions.yaml.

        Creates default file if missing. Applies environment variable overrides
        after loading YAML.
        """
        if not self.config_path.exists():
            await self._create_default()

        try:
            content = await asyncio.to_thread(self.config_path.read_text, encoding='utf-8')
            config = yaml.safe_load(content) or {}

            self.enabled = bool(config.get("enabled", False))
            self.dj_role_name = config.get("dj_role_name") or None
            self.tiers = config.get("tiers") or dict(DEFAULT_PERMISSIONS["tiers"])
        except (OSError, yaml.YAMLError, AttributeError):
            logger.opt(exception=True).error("failed to load permissions")
            self.enabled = False
            self.tiers = dict(DEFAULT_PERMISSIONS["tiers"])

        # Environment variables override YAML
        if os.getenv("ENABLE_PERMISSIONS", "").lower() == "true":
            self.enabled = True
        if role_name := os.getenv("DJ_ROLE_NAME", "").strip():
            self.dj_role_name = role_name
            self.enabled = True

        if self.enabled:
            logger.info(f"permissions enabled (dj role: {self.dj_role_name or 'admins only'})")
        else:
            logger.info("permissions not enabled")

    async def _create_default(self) -> None:
        """Create default permissions file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        content = """# Encore Permission System
# Set enabled: true (or DJ_ROLE_NAME in .env) to restrict playback control

enabled: false

# Name of the role that counts as DJ (case-sensitive)
dj_role_name: null

# Command tier assignments (only these 2 tiers are supported)
# listener: Available to everyone
# dj: Requires the DJ role or Manage Server permission
tiers:
  listener:
    - play
    - playnext
    - queue
  dj:
    - skip
    - stop
    - pause
    - resume
    - leave
"""
        await asyncio.to_thread(self.config_path.write_text, content, encoding='utf-8')
        logger.debug(f"generated {self.config_path.name}")

    def get_tier(self, command_name: str) -> str:
        """Tier for a command; "listener" if it isn't listed anywhere."""
        for tier, commands in self.tiers.items():
            if command_name in (commands or []):
                return tier
        return "listener"

    def check_permission(self, member: Any, command_name: str) -> bool:
        """Check if member may use a command.

        Always True when permissions are disabled. Members without guild
        permissions (e.g. the dashboard, which passes None) are treated as
        trusted callers.
        """
        if not self.enabled or member is None:
            return True

        tier = self.get_tier(command_name)
        name = getattr(member, "display_name", member)

        if tier == "listener":
            return True

        if tier == "dj":
            if is_admin(member):
                logger.debug(f"{command_name} allowed for {name} (admin)")
                return True
            if not self.dj_role_name:
                logger.debug(f"{command_name} denied for {name} (dj role not set)")
                return False
            if any(role.name == self.dj_role_name for role in getattr(member, "roles", [])):
                logger.debug(f"{command_name} allowed for {name} (dj)")
                return True
            logger.debug(f"{command_name} denied for {name} (missing dj role)")
            return False

        # Unknown tier - allow
        return True


def require_permission(command_name: str) -> Callable:
    """Decorator to check permissions before command execution.

    Apply to slash command methods to enforce tier-based access.
    If denied, sends "no_permission" message and returns early.

    Usage:
        @require_permission("skip")
        async def skip(self, interaction):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self, interaction: discord.Interaction, *args, **kwargs) -> Any:
            perm_manager = getattr(self.bot, 'permission_manager', None)

            if perm_manager and not perm_manager.check_permission(interaction.user, command_name):
                config = getattr(self.bot, 'config_manager', None)
                message = config.msg("no_permission") if config else "Only DJs can do that."
                delete_after = None
                if config:
                    ui_config = config.get("ui", {})
                    timeout = ui_config.get("brief_auto_delete", 10)
                    delete_after = timeout if timeout > 0 else None
                await interaction.response.send_message(message, ephemeral=True, delete_after=delete_after)
                return

            return await func(self, interaction, *args, **kwargs)
        return wrapper
    return decorator
