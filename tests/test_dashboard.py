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

"""HTTP dashboard endpoints against a fake-backed engine."""

import pytest
from aiohttp import test_utils

from core.track import watch_url
from tests.conftest import settle
from utils.config import ConfigManager
from web.dashboard import Dashboard

GUILD = 1
VOICE = 100


@pytest.fixture
def config_manager(tmp_path):
    manager = ConfigManager(tmp_path)
    manager.settings["defaults"].update(guild_id=GUILD, voice_channel_id=VOICE)
    return manager


@pytest.fixture
async def client(engine, config_manager):
    dashboard = Dashboard(engine, config_manager)
    async with test_utils.TestClient(test_utils.TestServer(dashboard.app)) as client:
        yield client


async def test_status_when_idle(client):
    resp = await client.get("/api/status")
    data = await resp.json()

    assert resp.status == 200
    assert data == {
        "ok": True,
        "guildId": GUILD,
        "voiceChannelId": None,
        "nowPlaying": None,
        "queue": [],
        "playerStatus": "idle",
    }


async def test_play_joins_and_queues(client, engine, transport):
    resp = await client.post("/api/play", json={"query": "a"})
    data = await resp.json()

    assert resp.status == 200
    assert data == {"ok": True, "queued": [{"title": "Song a", "url": watch_url("a")}]}
    assert ("connect", VOICE) in transport.calls

    await settle(engine.peek(GUILD))
    await client.post("/api/play", json={"url": "b"})
    await client.post("/api/playnext", json={"query": "c"})

    status = await (await client.get("/api/status")).json()
    assert status["voiceChannelId"] == VOICE
    assert status["nowPlaying"]["id"] == "a"
    assert status["nowPlaying"]["requestedBy"] == "dashboard"
    assert [t["id"] for t in status["queue"]] == ["c", "b"]
    assert status["queue"][0]["requestedBy"] == "dashboard-next"
    assert status["playerStatus"] == "playing"


async def test_play_requires_query(client):
    resp = await client.post("/api/play", json={"query": "   "})
    assert resp.status == 400
    assert (await resp.json())["error"] == "Missing query/url"


async def test_play_requires_default_room(client, config_manager):
    config_manager.settings["defaults"]["voice_channel_id"] = None

    resp = await client.post("/api/play", json={"query": "a"})

    assert resp.status == 400
    assert "DEFAULT_VOICE_CHANNEL_ID" in (await resp.json())["error"]


async def test_play_lookup_failure_is_500(client):
    resp = await client.post("/api/play", json={"query": "missing"})
    data = await resp.json()

    assert resp.status == 500
    assert data["ok"] is False


async def test_controls_without_room(client):
    for action, ok in (("stop", True), ("leave", True), ("skip", False), ("pause", False), ("resume", False)):
        data = await (await client.post(f"/api/{action}")).json()
        assert data["ok"] is ok, action
        if not ok:
            assert data["error"]


async def test_controls_drive_playback(client, engine, transport):
    await client.post("/api/play", json={"query": "a"})
    await client.post("/api/play", json={"query": "b"})
    room = engine.peek(GUILD)
    await settle(room)

    assert (await (await client.post("/api/pause")).json()) == {"ok": True}
    assert (await (await client.get("/api/status")).json())["playerStatus"] == "paused"

    data = await (await client.post("/api/pause")).json()
    assert data == {"ok": False, "error": "Nothing is playing."}

    assert (await (await client.post("/api/resume")).json()) == {"ok": True}
    assert (await (await client.post("/api/skip")).json()) == {"ok": True}
    await settle(room)
    assert (await (await client.get("/api/status")).json())["nowPlaying"]["id"] == "b"

    assert (await (await client.post("/api/leave")).json()) == {"ok": True}
    assert ("disconnect", VOICE) in transport.calls
    status = await (await client.get("/api/status")).json()
    assert status["nowPlaying"] is None
    assert status["playerStatus"] == "idle"
