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

"""Shared fakes for the playback core.

Nothing here touches Discord, yt-dlp or ffmpeg: voice, resolution, process
spawning and metadata lookups are all replaced with in-memory doubles.
"""

import asyncio
import io
import threading
from itertools import count

import pytest
from loguru import logger

from core.errors import ResolutionFailure
from core.player import PlaybackEngine
from core.track import Track, watch_url

# bot.py registers this at startup; library code logs lifecycle milestones with it
try:
    logger.level("NOTICE")
except ValueError:
    logger.level("NOTICE", no=25)


def make_track(video_id: str, requested_by: str = "tester") -> Track:
    return Track(title=f"Song {video_id}", url=watch_url(video_id), id=video_id, requested_by=requested_by)


async def settle(room, rounds: int = 5) -> None:
    """Let resolver tasks run and the room drain its inbox."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        await room.join()


# =============================================================================
# Voice
# =============================================================================

class FakeVoice:
    def __init__(self, guild_id: int, channel_id: int) -> None:
        self.guild_id = guild_id
        self.channel_id = channel_id
        self.connected = True
        self.on_finish = None
        self.source = None


class FakeTransport:
    """Records every call; on_finish is kept so tests can end tracks by hand."""

    def __init__(self) -> None:
        self.calls: list = []
        self.voices: list[FakeVoice] = []
        self.connect_error: Exception | None = None
        self.play_error: Exception | None = None

    async def connect(self, guild_id: int, channel_id: int) -> FakeVoice:
        if self.connect_error:
            raise self.connect_error
        self.calls.append(("connect", channel_id))
        voice = FakeVoice(guild_id, channel_id)
        self.voices.append(voice)
        return voice

    def is_connected(self, handle: FakeVoice) -> bool:
        return handle.connected

    def play(self, handle: FakeVoice, resolved, on_finish) -> None:
        if self.play_error:
            raise self.play_error
        self.calls.append(("play", resolved.reference))
        handle.source = resolved
        handle.on_finish = on_finish

    def pause(self, handle: FakeVoice) -> None:
        self.calls.append(("pause",))

    def unpause(self, handle: FakeVoice) -> None:
        self.calls.append(("unpause",))

    def stop(self, handle: FakeVoice) -> None:
        self.calls.append(("stop",))

    async def disconnect(self, handle: FakeVoice) -> None:
        self.calls.append(("disconnect", handle.channel_id))
        handle.connected = False

    def finish(self, error: Exception | None = None) -> None:
        """Simulate the audio thread reporting the current track ended."""
        self.voices[-1].on_finish(error)

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


# =============================================================================
# Resolution
# =============================================================================

class FakeResolved:
    def __init__(self, reference: str, attempt_id: int) -> None:
        self.reference = reference
        self.attempt_id = attempt_id
        self.container = "ogg"
        self.stage = 1


class FakeResolver:
    """Resolves instantly unless a gate is set for the reference."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.failures: dict[str, Exception] = {}

    def hold(self, reference: str) -> asyncio.Event:
        gate = self.gates[reference] = asyncio.Event()
        return gate

    async def resolve(self, reference: str, attempt_id: int, credentials=None) -> FakeResolved:
        self.calls.append((reference, attempt_id))
        gate = self.gates.get(reference)
        if gate is not None:
            await gate.wait()
        if reference in self.failures:
            raise self.failures[reference]
        return FakeResolved(reference, attempt_id)


class FakeSupervisor:
    def __init__(self) -> None:
        self._ids = count(1)
        self.killed: list[int] = []
        self.killed_all = False

    def new_attempt(self) -> int:
        return next(self._ids)

    def kill_attempt(self, attempt_id) -> int:
        if attempt_id is not None:
            self.killed.append(attempt_id)
        return 1

    def kill_all(self) -> None:
        self.killed_all = True


class FakeLookup:
    """Turns "abc" into a Track for video abc; "missing" finds nothing."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def resolve(self, reference: str, requested_by: str) -> Track:
        self.calls.append(reference)
        if reference == "missing":
            raise ResolutionFailure("no results")
        return make_track(reference, requested_by)


class FakeNotifier:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def on_track_started(self, guild_id, track, text_channel_id) -> None:
        self.events.append(("started", track.id))

    async def on_track_queued(self, guild_id, track, as_next, text_channel_id) -> None:
        self.events.append(("queued", track.id, as_next))

    async def on_track_failed(self, guild_id, track, error, text_channel_id) -> None:
        self.events.append(("failed", track.id))


# =============================================================================
# Processes
# =============================================================================

class StalledPipe(io.RawIOBase):
    """stdout of a process that never writes: reads block until the process is killed."""

    def __init__(self) -> None:
        super().__init__()
        self.released = threading.Event()

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        self.released.wait(timeout=10)
        return 0


class FakeProcess:
    """Popen stand-in. stderr=None keeps the supervisor from starting a drain thread."""

    def __init__(
        self,
        label: str,
        stdout: bytes = b"",
        stderr: bytes | None = None,
        log: list | None = None,
        stalled: bool = False,
    ) -> None:
        self.label = label
        self.stdout = StalledPipe() if stalled else io.BytesIO(stdout)
        self.stderr = io.BytesIO(stderr) if stderr is not None else None
        self.pid = 1000 + id(self) % 1000
        self.returncode = None
        self.killed = False
        self.log = log if log is not None else []
        self.stdin = None

    def poll(self):
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9
        self.log.append(("kill", self.label))
        if isinstance(self.stdout, StalledPipe):
            self.stdout.released.set()

    def wait(self, timeout=None):
        if self.killed:
            self.log.append(("reaped", self.label))
        return self.returncode


class FakePopen:
    """Hands out FakeProcesses by command: outputs maps label -> stdout bytes.

    Labels in stalled get a process that never writes and never exits on its own.
    """

    def __init__(
        self,
        outputs: dict[str, bytes],
        missing: tuple[str, ...] = (),
        stalled: tuple[str, ...] = (),
    ) -> None:
        self.outputs = outputs
        self.missing = missing
        self.stalled = stalled
        self.log: list = []
        self.procs: list[FakeProcess] = []

    @staticmethod
    def label_for(argv: list[str]) -> str:
        if "ffmpeg" in argv[0]:
            return "ffmpeg"
        if "-f" in argv:
            fmt = argv[argv.index("-f") + 1]
            return "opus" if "opus" in fmt else "raw"
        return "other"

    def __call__(self, argv, stdin=None, stdout=None, stderr=None):
        label = self.label_for(argv)
        if label in self.missing:
            raise FileNotFoundError(2, "No such file or directory", argv[0])
        proc = FakeProcess(label, self.outputs.get(label, b""), log=self.log, stalled=label in self.stalled)
        proc.stdin = stdin
        self.log.append(("spawn", label))
        self.procs.append(proc)
        return proc


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def lookup() -> FakeLookup:
    return FakeLookup()


@pytest.fixture
async def engine(transport, resolver, supervisor, lookup, notifier):
    engine = PlaybackEngine(transport, resolver, supervisor, lookup, notifier=notifier)
    yield engine
    await engine.shutdown()
