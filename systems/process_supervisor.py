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
Process Supervisor

Spawns and tracks the external yt-dlp / ffmpeg processes used for streaming.
Every process belongs to a resolution attempt; killing the attempt kills all
of its processes. Nothing spawned here outlives the attempt that owns it.
"""

import asyncio
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from itertools import count
from typing import Callable, Dict, List, Optional

from loguru import logger

from core.errors import ResolutionFailure

# Lines of stderr kept per process for diagnostics
STDERR_TAIL_LINES = 40

# Seconds to wait for a killed process to be reaped
KILL_WAIT_TIMEOUT = 3.0


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """A fully-built external command.

    Attributes:
        program: Resolved binary path or name
        args: Arguments after the program
        label: Short name used in logs ("yt-dlp", "ffmpeg")
    """

    program: str
    args: tuple = field(default_factory=tuple)
    label: str = ""

    def argv(self) -> List[str]:
        return [self.program, *self.args]

    @property
    def name(self) -> str:
        return self.label or self.program


class ProcessHandle:
    """
    One supervised external process.

    stderr is drained by a daemon thread into a bounded buffer so a chatty tool
    can never fill its pipe and stall the audio data path. The same thread
    reaps the process once stderr closes.

    Attributes:
        proc: Underlying Popen object
        spec: Command that was spawned
        attempt_id: Resolution attempt that owns this process
    """

    def __init__(self, proc, spec: CommandSpec, attempt_id: int) -> None:
        self.proc = proc
        self.spec = spec
        self.attempt_id = attempt_id
        self._stderr: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._drain_thread: Optional[threading.Thread] = None

    def start_drain(self) -> None:
        if self.proc.stderr is None or self._drain_thread is not None:
            return
        self._drain_thread = threading.Thread(
            target=self._drain_stderr,
            name=f"{self.spec.name}-stderr-{self.attempt_id}",
            daemon=True,
        )
        self._drain_thread.start()

    def _drain_stderr(self) -> None:
        stream = self.proc.stderr
        try:
            for raw in iter(stream.readline, b""):
                if not raw:
                    break
                line = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else str(raw)
                line = line.rstrip()
                if line:
                    self._stderr.append(line)
        except (OSError, ValueError) as e:
            # Pipe closed underneath us after a kill
            logger.debug(f"{self.spec.name} stderr closed: {e}")
        finally:
            try:
                self.proc.wait()
            except OSError:
                pass

    @property
    def stdout(self):
        return self.proc.stdout

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.proc, "pid", None)

    def is_alive(self) -> bool:
        return self.proc.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.poll()

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr)

    def kill(self) -> None:
        """Force-kill without waiting. Safe to call on an exited process."""
        if self.proc.poll() is not None:
            return
        try:
            self.proc.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"kill {self.spec.name} (pid {self.pid}) failed: {e}")

    def wait(self, timeout: Optional[float] = KILL_WAIT_TIMEOUT) -> bool:
        """Block until the process exits. Returns False on timeout."""
        try:
            self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    def terminate(self, timeout: float = KILL_WAIT_TIMEOUT) -> bool:
        """Kill and wait for exit. Returns True once the process is gone."""
        self.kill()
        exited = self.wait(timeout)
        if not exited:
            logger.warning(f"{self.spec.name} (pid {self.pid}) did not exit within {timeout}s of kill")
        return exited

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.spec.name} pid={self.pid} attempt={self.attempt_id}>"


class ProcessSupervisor:
    """
    Owns every external process spawned for streaming.

    Processes are grouped by attempt id. A new attempt id is handed out for
    each "resolve and play" step; when that step is superseded (skip, stop,
    leave, next track) the whole group is killed via kill_attempt().

    Thread-safe: spawn/kill may be called from the event loop and from worker
    threads running blocking probes.

    Args:
        popen: Process factory (subprocess.Popen signature), injectable for tests
    """

    def __init__(self, popen: Callable = subprocess.Popen) -> None:
        self._popen = popen
        self._attempt_ids = count(1)
        self._attempts: Dict[int, List[ProcessHandle]] = {}
        self._lock = threading.Lock()

    def new_attempt(self) -> int:
        """Allocate a fresh, monotonically increasing attempt id."""
        return next(self._attempt_ids)

    def spawn(self, spec: CommandSpec, attempt_id: int, stdin=None) -> ProcessHandle:
        """
        Start a process under attempt_id.

        Args:
            spec: Command to run
            attempt_id: Owning attempt
            stdin: Readable pipe to connect as stdin (None = no stdin)

        Returns:
            Handle with stdout piped and stderr being drained

        Raises:
            ResolutionFailure: Binary missing or not executable
        """
        try:
            proc = self._popen(
                spec.argv(),
                stdin=stdin if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ResolutionFailure(f"{spec.name} unavailable: {e}") from e

        handle = ProcessHandle(proc, spec, attempt_id)
        handle.start_drain()
        with self._lock:
            self._attempts.setdefault(attempt_id, []).append(handle)
        logger.debug(f"spawned {spec.name} (pid {handle.pid}) for attempt {attempt_id}")
        return handle

    def handles(self, attempt_id: int) -> List[ProcessHandle]:
        with self._lock:
            return list(self._attempts.get(attempt_id, ()))

    def forget(self, handle: ProcessHandle) -> None:
        """Stop tracking a handle that has already been terminated."""
        with self._lock:
            group = self._attempts.get(handle.attempt_id)
            if group and handle in group:
                group.remove(handle)
                if not group:
                    del self._attempts[handle.attempt_id]

    def kill_attempt(self, attempt_id: Optional[int]) -> int:
        """
        Force-kill every process of an attempt and forget the attempt.

        Returns immediately; the drain threads reap the processes.

        Returns:
            Number of processes that were signalled
        """
        if attempt_id is None:
            return 0
        with self._lock:
            group = self._attempts.pop(attempt_id, [])
        for handle in group:
            handle.kill()
        if group:
            logger.debug(f"killed {len(group)} process(es) for attempt {attempt_id}")
        return len(group)

    def terminate_attempt(self, attempt_id: int, timeout: float = KILL_WAIT_TIMEOUT) -> bool:
        """Kill every process of an attempt and block until they have exited."""
        with self._lock:
            group = self._attempts.pop(attempt_id, [])
        return all([handle.terminate(timeout) for handle in group])

    def active_attempts(self) -> List[int]:
        with self._lock:
            return [aid for aid, group in self._attempts.items() if any(h.is_alive() for h in group)]

    def kill_all(self) -> None:
        """Kill everything still running (shutdown path)."""
        with self._lock:
            attempt_ids = list(self._attempts)
        for attempt_id in attempt_ids:
            self.kill_attempt(attempt_id)

    async def warm(self, spec: CommandSpec, timeout: float = 30.0) -> bool:
        """
        Run a cheap invocation once so the first real spawn isn't cold.

        The result is discarded. Missing binaries are logged, not raised.

        Returns:
            True if the tool ran and exited cleanly
        """
        try:
            proc = self._popen(
                spec.argv(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"{spec.name} not available: {e}")
            return False

        try:
            code = await asyncio.to_thread(proc.wait, timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            await asyncio.to_thread(proc.wait)
            logger.warning(f"{spec.name} warm-up timed out")
            return False

        if code != 0:
            logger.warning(f"{spec.name} warm-up exited with code {code}")
            return False
        logger.log("NOTICE", f"{spec.name} ready")
        return True
