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

"""StreamResolver: zero-transcode fast path, ffmpeg fallback, no leaked processes."""

import asyncio
import io

import pytest

from core.errors import ResolutionFailure, StreamProbeFailure
from core.track import watch_url
from systems.extractor import ToolCommands
from systems.process_supervisor import ProcessSupervisor
from systems.stream_resolver import (
    EBML_MAGIC,
    OGG_MAGIC,
    OPUS_HEAD,
    StreamResolver,
    identify_container,
    probe_stream,
    replay,
)
from tests.conftest import FakePopen
from utils.context_managers import releasing_attempt

WEBM_OPUS = EBML_MAGIC + b"\x00" * 32 + b"A_OPUS" + b"\x01" * 64
WEBM_AAC = EBML_MAGIC + b"\x00" * 32 + b"A_AAC" + b"\x01" * 64
OGG_OPUS = OGG_MAGIC + b"\x00" * 24 + OPUS_HEAD + b"\x02" * 64
M4A = b"\x00\x00\x00\x20ftypM4A " + b"\x00" * 64

URL = watch_url("abc")


def make_resolver(popen: FakePopen, **kwargs) -> tuple[StreamResolver, ProcessSupervisor]:
    supervisor = ProcessSupervisor(popen=popen)
    commands = ToolCommands("fake-ytdlp", "fake-ffmpeg")
    kwargs.setdefault("probe_timeout", 2)
    kwargs.setdefault("transcode_timeout", 2)
    return StreamResolver(supervisor, commands, **kwargs), supervisor


# =============================================================================
# Probing
# =============================================================================

def test_identify_container():
    assert identify_container(WEBM_OPUS) == "webm"
    assert identify_container(OGG_OPUS) == "ogg"
    assert identify_container(WEBM_AAC) is None
    assert identify_container(M4A) is None


def test_probe_returns_consumed_bytes_for_replay():
    stream = io.BytesIO(WEBM_OPUS + b"tail")
    container, prefix = probe_stream(stream, budget=4096)

    assert container == "webm"
    assert replay(prefix, stream).read() == WEBM_OPUS + b"tail"


def test_probe_fails_fast_on_foreign_container():
    with pytest.raises(StreamProbeFailure):
        probe_stream(io.BytesIO(M4A), budget=4096)


def test_probe_fails_on_non_opus_webm_within_budget():
    with pytest.raises(StreamProbeFailure):
        probe_stream(io.BytesIO(WEBM_AAC + b"\x00" * 8192), budget=1024)


def test_probe_fails_on_empty_output():
    with pytest.raises(StreamProbeFailure):
        probe_stream(io.BytesIO(b""), budget=4096)


# =============================================================================
# Resolution
# =============================================================================

async def test_fast_path_success_never_spawns_fallback():
    popen = FakePopen({"opus": WEBM_OPUS})
    resolver, supervisor = make_resolver(popen)
    attempt = supervisor.new_attempt()

    resolved = await resolver.resolve(URL, attempt)

    assert resolved.stage == 1
    assert resolved.container == "webm"
    assert resolved.codec == "opus"
    assert resolved.attempt_id == attempt
    assert [entry for entry in popen.log if entry[0] == "spawn"] == [("spawn", "opus")]
    assert resolved.stream.read() == WEBM_OPUS
    # Stream is live: the attempt still owns the process
    assert len(supervisor.handles(attempt)) == 1


async def test_fast_path_ogg_is_accepted():
    popen = FakePopen({"opus": OGG_OPUS})
    resolver, supervisor = make_resolver(popen)

    resolved = await resolver.resolve(URL, supervisor.new_attempt())

    assert (resolved.stage, resolved.container) == (1, "ogg")


async def test_fallback_waits_for_fast_path_to_die():
    popen = FakePopen({"opus": M4A, "raw": M4A, "ffmpeg": OGG_OPUS})
    resolver, supervisor = make_resolver(popen)
    attempt = supervisor.new_attempt()

    resolved = await resolver.resolve(URL, attempt)

    assert resolved.stage == 2
    assert resolved.container == "ogg"
    assert popen.log == [
        ("spawn", "opus"),
        ("kill", "opus"),
        ("reaped", "opus"),
        ("spawn", "raw"),
        ("spawn", "ffmpeg"),
    ]
    # ffmpeg reads yt-dlp's stdout; our copy of that pipe end is closed
    source, transcoder = popen.procs[1], popen.procs[2]
    assert transcoder.stdin is source.stdout
    assert source.stdout.closed


async def test_silent_fast_path_falls_back_after_probe_timeout():
    popen = FakePopen({"raw": M4A, "ffmpeg": OGG_OPUS}, stalled=("opus",))
    resolver, supervisor = make_resolver(popen, probe_timeout=0.2)
    attempt = supervisor.new_attempt()

    loop = asyncio.get_running_loop()
    started = loop.time()
    resolved = await resolver.resolve(URL, attempt)
    elapsed = loop.time() - started

    assert resolved.stage == 2
    assert 0.19 <= elapsed < 1.5
    assert popen.log == [
        ("spawn", "opus"),
        ("kill", "opus"),
        ("reaped", "opus"),
        ("spawn", "raw"),
        ("spawn", "ffmpeg"),
    ]
    assert popen.procs[0].killed
    assert sorted(h.spec.name for h in supervisor.handles(attempt)) == ["ffmpeg", "yt-dlp"]


async def test_fallback_when_fast_path_binary_missing():
    popen = FakePopen({"ffmpeg": OGG_OPUS}, missing=("opus",))
    resolver, supervisor = make_resolver(popen)

    resolved = await resolver.resolve(URL, supervisor.new_attempt())

    assert resolved.stage == 2


async def test_both_stages_failing_kills_everything():
    popen = FakePopen({"opus": WEBM_AAC, "raw": M4A, "ffmpeg": b""})
    resolver, supervisor = make_resolver(popen, probe_bytes=4096)
    attempt = supervisor.new_attempt()

    with pytest.raises(ResolutionFailure):
        await resolver.resolve(URL, attempt)

    assert all(p.killed for p in popen.procs)
    assert supervisor.handles(attempt) == []
    assert supervisor.active_attempts() == []


async def test_transcoder_must_produce_ogg():
    popen = FakePopen({"opus": M4A, "ffmpeg": WEBM_OPUS})
    resolver, supervisor = make_resolver(popen)

    with pytest.raises(ResolutionFailure):
        await resolver.resolve(URL, supervisor.new_attempt())

    assert all(p.killed for p in popen.procs)


async def test_credentials_override_cookie():
    popen = FakePopen({"opus": WEBM_OPUS})
    argvs = []

    def recording_popen(argv, **kwargs):
        argvs.append(argv)
        return popen(argv, **kwargs)

    supervisor = ProcessSupervisor(popen=recording_popen)
    resolver = StreamResolver(supervisor, ToolCommands("fake-ytdlp", "fake-ffmpeg"))

    await resolver.resolve(URL, supervisor.new_attempt(), credentials="SID=2")

    assert argvs[0][1:3] == ["--add-header", "Cookie: SID=2"]


# =============================================================================
# Attempt release
# =============================================================================

class RecordingSupervisor:
    def __init__(self) -> None:
        self.killed = []

    def kill_attempt(self, attempt_id) -> int:
        self.killed.append(attempt_id)
        return 0


def test_releasing_attempt_kills_on_error():
    supervisor = RecordingSupervisor()
    with pytest.raises(RuntimeError):
        with releasing_attempt(supervisor, 7):
            raise RuntimeError("boom")
    assert supervisor.killed == [7]


def test_releasing_attempt_kills_on_cancel():
    supervisor = RecordingSupervisor()
    with pytest.raises(asyncio.CancelledError):
        with releasing_attempt(supervisor, 8):
            raise asyncio.CancelledError()
    assert supervisor.killed == [8]


def test_releasing_attempt_keeps_processes_on_success():
    supervisor = RecordingSupervisor()
    with releasing_attempt(supervisor, 9):
        pass
    assert supervisor.killed == []
