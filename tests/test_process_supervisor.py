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

"""ProcessSupervisor: attempt ownership, kills, stderr draining, warm-up."""

import io

import pytest

from core.errors import ResolutionFailure
from systems.process_supervisor import CommandSpec, ProcessSupervisor
from tests.conftest import FakePopen, FakeProcess

OPUS_SPEC = CommandSpec("fake-ytdlp", ("-f", "bestaudio[acodec^=opus]", "-o", "-"), "yt-dlp")
RAW_SPEC = CommandSpec("fake-ytdlp", ("-f", "bestaudio/best", "-o", "-"), "yt-dlp")


def test_attempt_ids_increase():
    supervisor = ProcessSupervisor(popen=FakePopen({}))
    first, second = supervisor.new_attempt(), supervisor.new_attempt()
    assert second > first


def test_kill_attempt_kills_only_that_attempt():
    popen = FakePopen({})
    supervisor = ProcessSupervisor(popen=popen)
    a, b = supervisor.new_attempt(), supervisor.new_attempt()
    supervisor.spawn(OPUS_SPEC, a)
    supervisor.spawn(RAW_SPEC, a)
    other = supervisor.spawn(RAW_SPEC, b)

    assert supervisor.kill_attempt(a) == 2
    assert [p.killed for p in popen.procs] == [True, True, False]
    assert supervisor.handles(a) == []
    assert supervisor.handles(b) == [other]
    assert supervisor.active_attempts() == [b]

    # Second kill is a no-op
    assert supervisor.kill_attempt(a) == 0
    assert supervisor.kill_attempt(None) == 0


def test_kill_all():
    popen = FakePopen({})
    supervisor = ProcessSupervisor(popen=popen)
    for _ in range(3):
        supervisor.spawn(OPUS_SPEC, supervisor.new_attempt())

    supervisor.kill_all()

    assert all(p.killed for p in popen.procs)
    assert supervisor.active_attempts() == []


def test_missing_binary_raises_resolution_failure():
    supervisor = ProcessSupervisor(popen=FakePopen({}, missing=("opus",)))
    with pytest.raises(ResolutionFailure):
        supervisor.spawn(OPUS_SPEC, supervisor.new_attempt())


def test_kill_skips_exited_process():
    popen = FakePopen({})
    supervisor = ProcessSupervisor(popen=popen)
    handle = supervisor.spawn(OPUS_SPEC, supervisor.new_attempt())
    popen.procs[0].returncode = 0

    handle.kill()

    assert not popen.procs[0].killed
    assert not handle.is_alive()


def test_terminate_kills_then_reaps():
    popen = FakePopen({})
    supervisor = ProcessSupervisor(popen=popen)
    handle = supervisor.spawn(OPUS_SPEC, supervisor.new_attempt())

    assert handle.terminate() is True
    assert popen.log[-2:] == [("kill", "opus"), ("reaped", "opus")]


def test_forget_drops_handle():
    supervisor = ProcessSupervisor(popen=FakePopen({}))
    attempt = supervisor.new_attempt()
    handle = supervisor.spawn(OPUS_SPEC, attempt)

    supervisor.forget(handle)

    assert supervisor.handles(attempt) == []
    assert supervisor.kill_attempt(attempt) == 0


def test_stderr_is_drained_into_tail():
    proc = FakeProcess("opus", stderr=b"WARNING: one\n\nERROR: two\n")
    supervisor = ProcessSupervisor(popen=lambda *a, **kw: proc)
    handle = supervisor.spawn(OPUS_SPEC, supervisor.new_attempt())

    handle._drain_thread.join(timeout=5)

    assert handle.stderr_tail() == "WARNING: one\nERROR: two"


async def test_warm_runs_tool_once():
    calls = []

    class Quick:
        def wait(self, timeout=None):
            return 0

    def popen(argv, **kwargs):
        calls.append(argv)
        return Quick()

    supervisor = ProcessSupervisor(popen=popen)
    assert await supervisor.warm(CommandSpec("fake-ffmpeg", ("-version",), "ffmpeg")) is True
    assert calls == [["fake-ffmpeg", "-version"]]


async def test_warm_reports_missing_tool():
    def popen(argv, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    supervisor = ProcessSupervisor(popen=popen)
    assert await supervisor.warm(CommandSpec("fake-ffmpeg", ("-version",), "ffmpeg")) is False


def test_spawn_pipes_stdin_through():
    popen = FakePopen({})
    supervisor = ProcessSupervisor(popen=popen)
    pipe = io.BytesIO(b"audio")
    supervisor.spawn(CommandSpec("fake-ffmpeg", ("-i", "pipe:0"), "ffmpeg"), supervisor.new_attempt(), stdin=pipe)

    assert popen.procs[0].stdin is pipe
