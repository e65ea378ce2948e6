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
HTTP Dashboard - JSON status/control API for the default room.

Mirrors the slash commands for one configured guild and voice channel
(defaults.guild_id / defaults.voice_channel_id) so playback can be driven
without Discord:

    GET  /api/status                              -> now playing, queue, player status
    POST /api/play, /api/playnext                 -> {"query": ...} or {"url": ...}
    POST /api/skip|stop|pause|resume|leave        -> {"ok": true} or {"ok": false, "error": ...}

Requests from the dashboard are trusted (no member, no permission tier).
"""

from typing import Optional

from aiohttp import web
from loguru import logger

from core.errors import UserStateError
from core.playback import Snapshot

CONTROL_ACTIONS = ("skip", "stop", "pause", "resume", "leave")

# Actions that succeed trivially when the guild has no playback state
IDLE_OK_ACTIONS = ("stop", "leave")


@web.middleware
async def json_error_middleware(request: web.Request, handler):
    """Turn unexpected handler errors into JSON 500s."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.opt(exception=True).error(f"dashboard {request.method} {request.path} failed")
        return web.json_response({"ok": False, "error": str(e)}, status=500)


class Dashboard:
    """
    aiohttp application serving the dashboard API.

    Args:
        engine: PlaybackEngine the endpoints drive
        config_manager: ConfigManager for the default room, listen address and messages
    """

    def __init__(self, engine, config_manager) -> None:
        self.engine = engine
        self.config_manager = config_manager
        self.app = self.build_app()
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[json_error_middleware])
        app.router.add_get("/api/status", self.handle_status)
        app.router.add_post("/api/play", self._enqueue_handler(at_front=False, tag="dashboard"))
        app.router.add_post("/api/playnext", self._enqueue_handler(at_front=True, tag="dashboard-next"))
        for action in CONTROL_ACTIONS:
            app.router.add_post(f"/api/{action}", self._control_handler(action))
        return app

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        config = self.config_manager.get("dashboard", {})
        host = config.get("host", "0.0.0.0")
        port = config.get("port", 3000)

        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.log("NOTICE", f"dashboard: http://{'localhost' if host == '0.0.0.0' else host}:{port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.debug("dashboard stopped")

    # =========================================================================
    # Handlers
    # =========================================================================

    async def handle_status(self, request: web.Request) -> web.Response:
        guild_id, _ = self.config_manager.default_room
        room = self.engine.peek(guild_id) if guild_id else None
        snapshot = room.snapshot(limit=None) if room else Snapshot.empty()

        return web.json_response({
            "ok": True,
            "guildId": guild_id,
            "voiceChannelId": snapshot.voice_channel_id,
            "nowPlaying": snapshot.now_playing.to_dict() if snapshot.now_playing else None,
            "queue": [track.to_dict() for track in snapshot.upcoming],
            "playerStatus": snapshot.status if room else "idle",
        })

    def _enqueue_handler(self, at_front: bool, tag: str):
        async def handler(request: web.Request) -> web.Response:
            guild_id, voice_channel_id = self.config_manager.default_room
            if not guild_id or not voice_channel_id:
                return web.json_response(
                    {"ok": False, "error": "Set DEFAULT_GUILD_ID and DEFAULT_VOICE_CHANNEL_ID"},
                    status=400,
                )

            body = await _read_json(request)
            query = str(body.get("query") or body.get("url") or "").strip()
            if not query:
                return web.json_response({"ok": False, "error": "Missing query/url"}, status=400)

            text_channel_id = self.config_manager.get("defaults", {}).get("text_channel_id")
            try:
                await self.engine.connect(guild_id, voice_channel_id, text_channel_id)
                result = await self.engine.enqueue(
                    guild_id, query, tag, at_front=at_front, text_channel_id=text_channel_id
                )
            except UserStateError as e:
                return web.json_response({"ok": False, "error": self._error_text(e)}, status=400)
            except Exception as e:
                logger.warning(f"dashboard {request.path} failed: {e}")
                return web.json_response({"ok": False, "error": str(e)}, status=500)

            logger.info(f"dashboard queued {result.track.title}")
            return web.json_response({
                "ok": True,
                "queued": [{"title": result.track.title, "url": result.track.url}],
            })

        return handler

    def _control_handler(self, action: str):
        async def handler(request: web.Request) -> web.Response:
            guild_id, _ = self.config_manager.default_room
            if not guild_id:
                return web.json_response({"ok": action in IDLE_OK_ACTIONS})

            try:
                await getattr(self.engine, action)(guild_id)
            except UserStateError as e:
                return web.json_response({"ok": False, "error": self._error_text(e)})

            logger.info(f"dashboard {action}")
            return web.json_response({"ok": True})

        return handler

    def _error_text(self, error: UserStateError) -> str:
        return self.config_manager.msg(error.message_key, **error.message_fields())


async def _read_json(request: web.Request) -> dict:
    """Request body as a dict; empty or malformed bodies read as {}."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
