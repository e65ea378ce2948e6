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
Stream Resolver

Two-stage resolution of a track reference into a live Opus byte stream:

1. Fast path: yt-dlp asked for native Opus, written straight to stdout. The
   first bytes are probed to confirm WebM/Opus or Ogg/Opus; on success the
   stream is handed to the voice layer without any transcoding.
2. Fallback: yt-dlp (best audio, any codec) piped into a low-latency ffmpeg
   that produces Ogg/Opus.

The fast-path process is confirmed dead before the fallback spawns anything,
and any failure or cancellation kills every process of the attempt.
"""

import asyncio
import io
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple

from loguru import logger

from core.errors import ResolutionFailure, StreamProbeFailure
from systems.extractor import ToolCommands
from systems.process_supervisor import ProcessHandle, ProcessSupervisor
from utils.context_managers import releasing_attempt

# Container signatures
EBML_MAGIC = b"\x1a\x45\xdf\xa3"
WEBM_OPUS_CODEC = b"A_OPUS"
OGG_MAGIC = b"OggS"
OPUS_HEAD = b"OpusHead"

DEFAULT_PROBE_BYTES = 64 * 1024
DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_TRANSCODE_TIMEOUT = 15.0


def identify_container(data: bytes) -> Optional[str]:
    """Return "webm" or "ogg" if data starts an Opus stream, else None."""
    if data.startswith(EBML_MAGIC) and WEBM_OPUS_CODEC in data:
        return "webm"
    if data.startswith(OGG_MAGIC) and OPUS_HEAD in data:
        return "ogg"
    return None


def probe_stream(stream: BinaryIO, budget: int = DEFAULT_PROBE_BYTES) -> Tuple[str, bytes]:
    """
    Read just enough of stream to identify an Opus container.

    Blocking; run it in a worker thread.

    Args:
        stream: Readable byte stream (a process stdout)
        budget: Maximum bytes to consume before giving up

    Returns:
        (container, consumed_bytes). The consumed bytes must be replayed ahead
        of the rest of the stream.

    Raises:
        StreamProbeFailure: EOF or budget exhausted without finding Opus
    """
    read = getattr(stream, "read1", stream.read)
    buf = bytearray()
    while len(buf) < budget:
        chunk = read(min(8192, budget - len(buf)))
        if not chunk:
            break
        buf += chunk
        # Wrong container is decidable from the first bytes
        if len(buf) >= 4 and not (buf.startswith(EBML_MAGIC) or buf.startswith(OGG_MAGIC)):
            raise StreamProbeFailure(f"unexpected container header {bytes(buf[:4])!r}")
        container = identify_container(bytes(buf))
        if container:
            return container, bytes(buf)

    if not buf:
        raise StreamProbeFailure("empty output")
    raise StreamProbeFailure(f"no opus codec in first {len(buf)} bytes")


class PrefixedReader(io.RawIOBase):
    """Replays probed bytes, then continues with the live stream."""

    def __init__(self, prefix: bytes, stream: BinaryIO) -> None:
        super().__init__()
        self._prefix = memoryview(prefix)
        self._stream = stream
        self._read = getattr(stream, "read1", stream.read)

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self._prefix:
            n = min(len(buffer), len(self._prefix))
            buffer[:n] = self._prefix[:n]
            self._prefix = self._prefix[n:]
            return n
        data = self._read(len(buffer))
        n = len(data)
        buffer[:n] = data
        return n

    def close(self) -> None:
        try:
            self._stream.close()
        finally:
            super().close()


def replay(prefix: bytes, stream: BinaryIO) -> io.BufferedReader:
    """Buffered view of prefix + stream (full reads, as the Ogg parser expects)."""
    return io.BufferedReader(PrefixedReader(prefix, stream))


@dataclass
class ResolvedStream:
    """A live Opus stream ready for the voice layer.

    Attributes:
        stream: Readable byte stream
        container: "webm" or "ogg"
        stage: 1 for the zero-transcode path, 2 for the ffmpeg fallback
        attempt_id: Attempt that owns the producing processes
    """

    stream: BinaryIO
    container: str
    stage: int
    attempt_id: int
    codec: str = "opus"


class StreamResolver:
    """
    Resolves references into ResolvedStreams using supervised processes.

    Args:
        supervisor: Process supervisor that owns every spawned process
        commands: Command builder for yt-dlp and ffmpeg
        probe_timeout: Seconds to wait for the fast path to prove it is Opus
        probe_bytes: Byte budget for each probe
        transcode_timeout: Seconds to wait for ffmpeg's first Ogg page
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        commands: ToolCommands,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        probe_bytes: int = DEFAULT_PROBE_BYTES,
        transcode_timeout: float = DEFAULT_TRANSCODE_TIMEOUT,
    ) -> None:
        self.supervisor = supervisor
        self.commands = commands
        self.probe_timeout = probe_timeout
        self.probe_bytes = probe_bytes
        self.transcode_timeout = transcode_timeout

    async def resolve(self, reference: str, attempt_id: int, credentials: Optional[str] = None) -> ResolvedStream:
        """
        Produce a live Opus stream for reference.

        Args:
            reference: Canonical URL or search target
            attempt_id: Attempt that will own the spawned processes
            credentials: Cookie header value overriding the configured one

        Raises:
            ResolutionFailure: Both stages failed (all processes killed)
        """
        commands = self.commands
        if credentials is not None:
            commands = ToolCommands(commands.ytdlp, commands.ffmpeg, cookie=credentials)

        with releasing_attempt(self.supervisor, attempt_id):
            try:
                resolved = await self._fast_path(commands, reference, attempt_id)
            except StreamProbeFailure as e:
                logger.debug(f"attempt {attempt_id}: fast path unavailable ({e}), transcoding")
            else:
                logger.debug(f"attempt {attempt_id}: direct {resolved.container}/opus")
                return resolved

            resolved = await self._transcode_path(commands, reference, attempt_id)
            logger.debug(f"attempt {attempt_id}: transcoding via ffmpeg")
            return resolved

    async def _probe(self, handle: ProcessHandle, timeout: float) -> Tuple[str, bytes]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(probe_stream, handle.stdout, self.probe_bytes),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise StreamProbeFailure(f"{handle.spec.name} produced nothing in {timeout}s") from e
        except (OSError, ValueError) as e:
            raise StreamProbeFailure(f"{handle.spec.name} output unreadable: {e}") from e

    async def _fast_path(self, commands: ToolCommands, reference: str, attempt_id: int) -> ResolvedStream:
        try:
            handle = self.supervisor.spawn(commands.ytdlp_opus(reference), attempt_id)
        except ResolutionFailure as e:
            raise StreamProbeFailure(str(e)) from e

        try:
            container, prefix = await self._probe(handle, self.probe_timeout)
        except StreamProbeFailure:
            # Stage 2 must not start while stage 1 is still alive
            await asyncio.to_thread(handle.terminate)
            self.supervisor.forget(handle)
            if handle.stderr_tail():
                logger.debug(f"attempt {attempt_id}: yt-dlp stderr:\n{handle.stderr_tail()}")
            raise

        return ResolvedStream(replay(prefix, handle.stdout), container, 1, attempt_id)

    async def _transcode_path(self, commands: ToolCommands, reference: str, attempt_id: int) -> ResolvedStream:
        source = self.supervisor.spawn(commands.ytdlp_raw(reference), attempt_id)
        transcoder = self.supervisor.spawn(commands.ffmpeg_opus(), attempt_id, stdin=source.stdout)
        # ffmpeg holds the read end now; yt-dlp gets SIGPIPE if ffmpeg dies
        source.stdout.close()

        try:
            container, prefix = await self._probe(transcoder, self.transcode_timeout)
        except StreamProbeFailure as e:
            tail = transcoder.stderr_tail() or source.stderr_tail()
            raise ResolutionFailure(f"transcode failed: {e}", stderr_tail=tail) from e

        if container != "ogg":
            raise ResolutionFailure(f"transcoder produced {container}, expected ogg")
        return ResolvedStream(replay(prefix, transcoder.stdout), container, 2, attempt_id)
