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

"""yt-dlp / ffmpeg command construction and track metadata lookup."""

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from loguru import logger

from core.errors import ResolutionFailure
from core.track import SEARCH_PREFIX, Track, canonical_url, extract_video_id, watch_url
from systems.metadata_cache import MetadataCache
from systems.process_supervisor import CommandSpec

PROJECT_DIR = Path(__file__).parent.parent

# Skip playlist expansion and slow IPv6 routes
YTDLP_BASE_ARGS = ("--no-playlist", "--force-ipv4")

# Opus at 48kHz needs no transcode; otherwise take the best audio there is
OPUS_FORMAT = "bestaudio[acodec^=opus][asr=48000]/bestaudio"
RAW_FORMAT = "bestaudio/best"

INFO_TEMPLATE = "%(id)s\t%(duration_string)s\t%(title)s"

FFMPEG_LOW_LATENCY_ARGS = (
    "-hide_banner", "-loglevel", "error",
    "-fflags", "+nobuffer", "-flags", "low_delay",
    "-probesize", "32k", "-analyzeduration", "0",
    "-i", "pipe:0",
    "-vn",
    "-acodec", "libopus", "-ar", "48000", "-ac", "2", "-b:a", "128k",
    "-f", "ogg", "pipe:1",
)

# Seconds allowed for a metadata lookup before giving up
INFO_TIMEOUT = 30.0


def resolve_binary(name_or_path: str, base_dir: Path = PROJECT_DIR) -> str:
    """Locate a tool binary.

    A path that exists (as given, or relative to the project directory) wins.
    Otherwise the name is looked up on PATH, falling back to the bare name so
    the spawn error names the missing tool.
    """
    candidate = Path(name_or_path)
    if not candidate.is_absolute() and (base_dir / candidate).is_file():
        return str(base_dir / candidate)
    if candidate.is_file():
        return str(candidate)
    return shutil.which(name_or_path) or name_or_path


class ToolCommands:
    """
    Builds every external command line Encore runs.

    Args:
        ytdlp_path: yt-dlp binary name or path
        ffmpeg_path: ffmpeg binary name or path
        cookie: Optional Cookie header value for age/region-gated videos
    """

    def __init__(self, ytdlp_path: str = "yt-dlp", ffmpeg_path: str = "ffmpeg", cookie: str | None = None) -> None:
        self.ytdlp = resolve_binary(ytdlp_path)
        self.ffmpeg = resolve_binary(ffmpeg_path)
        self.cookie = cookie or None

    def _ytdlp(self, *args: str) -> CommandSpec:
        if self.cookie:
            args = ("--add-header", f"Cookie: {self.cookie}", *args)
        return CommandSpec(self.ytdlp, tuple(args), "yt-dlp")

    def ytdlp_opus(self, target: str) -> CommandSpec:
        """Stage 1: native Opus straight to stdout."""
        return self._ytdlp(*YTDLP_BASE_ARGS, "-f", OPUS_FORMAT, "-o", "-", target)

    def ytdlp_raw(self, target: str) -> CommandSpec:
        """Stage 2 source: best audio in whatever container, for ffmpeg."""
        return self._ytdlp(*YTDLP_BASE_ARGS, "-f", RAW_FORMAT, "-o", "-", target)

    def ytdlp_info(self, target: str) -> CommandSpec:
        return self._ytdlp("--print", INFO_TEMPLATE, "--skip-download", target, *YTDLP_BASE_ARGS)

    def ffmpeg_opus(self) -> CommandSpec:
        """Stage 2 transcoder: stdin in, Ogg/Opus out."""
        return CommandSpec(self.ffmpeg, FFMPEG_LOW_LATENCY_ARGS, "ffmpeg")

    def ytdlp_version(self) -> CommandSpec:
        return CommandSpec(self.ytdlp, ("--version",), "yt-dlp")

    def ffmpeg_version(self) -> CommandSpec:
        return CommandSpec(self.ffmpeg, ("-version",), "ffmpeg")


@dataclass(frozen=True, slots=True)
class TrackInfo:
    """Metadata returned by a yt-dlp lookup."""

    id: str
    title: str
    duration: str = "stream"

    @property
    def url(self) -> str:
        return watch_url(self.id)


def parse_info_output(output: str) -> TrackInfo:
    """Parse the first line of ``--print INFO_TEMPLATE`` output.

    Raises:
        ResolutionFailure: Output is empty or has no ID
    """
    line = output.strip().splitlines()[0] if output.strip() else ""
    video_id, _, rest = line.partition("\t")
    duration, _, title = rest.partition("\t")
    video_id = video_id.strip()
    if not video_id or video_id == "NA":
        raise ResolutionFailure("no results")
    duration = duration.strip()
    if not duration or duration == "NA":
        duration = "stream"
    return TrackInfo(id=video_id, title=title.strip() or "YouTube Video", duration=duration)


class TrackLookup:
    """
    Turns user references into Tracks, with cached and deduplicated lookups.

    Concurrent lookups of the same target share a single yt-dlp run: the first
    caller registers a pending future in the MetadataCache and everyone else
    awaits it. Successful results are cached for the cache TTL; failures are
    dropped so the next call retries.

    Args:
        commands: Command builder
        cache: Shared metadata cache
        runner: Coroutine that performs one uncached lookup (injectable for tests)
    """

    def __init__(
        self,
        commands: ToolCommands,
        cache: MetadataCache,
        runner: Callable[[str], Awaitable[TrackInfo]] | None = None,
    ) -> None:
        self.commands = commands
        self.cache = cache
        self._run = runner or self._run_ytdlp

    async def _run_ytdlp(self, target: str) -> TrackInfo:
        spec = self.commands.ytdlp_info(target)
        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.argv(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ResolutionFailure(f"yt-dlp unavailable: {e}") from e

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=INFO_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ResolutionFailure(f"lookup timed out: {target}")
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        stderr = err.decode("utf-8", "replace").strip()
        if proc.returncode != 0 or not out.strip():
            raise ResolutionFailure(f"lookup failed for {target}", stderr_tail=stderr[-2000:])
        return parse_info_output(out.decode("utf-8", "replace"))

    async def fetch_info(self, target: str) -> TrackInfo:
        """
        Look up metadata for a URL or search target.

        Raises:
            ResolutionFailure: Lookup failed (shared by every concurrent waiter)
        """
        cached = self.cache.get(target)
        if isinstance(cached, asyncio.Future):
            logger.debug(f"joining in-flight lookup: {target}")
            return await asyncio.shield(cached)
        if cached is not None:
            return cached

        future = asyncio.get_running_loop().create_future()
        # Mark the exception retrieved even when nobody else was waiting
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self.cache.set_pending(target, future)

        try:
            info = await self._run(target)
        except asyncio.CancelledError:
            # Waiters were not cancelled themselves; they see a failed lookup
            self.cache.mark_failed(target)
            future.set_exception(ResolutionFailure(f"lookup cancelled: {target}"))
            raise
        except Exception as e:
            self.cache.mark_failed(target)
            future.set_exception(e)
            raise

        self.cache.set_resolved(target, info)
        future.set_result(info)
        return info

    async def resolve(self, reference: str, requested_by: str) -> Track:
        """
        Build a Track for a URL or free-text search.

        Direct URLs always produce a Track: if the lookup fails, the ID is taken
        from the URL and a placeholder title is used. Searches must succeed.

        Raises:
            ResolutionFailure: Empty reference, or a search found nothing
        """
        reference = reference.strip()
        if not reference:
            raise ResolutionFailure("empty query")

        direct = canonical_url(reference)
        if direct:
            info = None
            try:
                info = await self.fetch_info(direct)
            except ResolutionFailure as e:
                logger.warning(f"metadata lookup failed for {direct}: {e}")
                if e.stderr_tail:
                    logger.debug(e.stderr_tail)
            video_id = (info.id if info else None) or extract_video_id(direct)
            title = info.title if info else f"YouTube Video {video_id or ''}".strip()
            duration = info.duration if info else "stream"
            return Track(title=title, url=direct, id=video_id, duration=duration, requested_by=requested_by)

        info = await self.fetch_info(f"{SEARCH_PREFIX}{reference}")
        return Track(title=info.title, url=info.url, id=info.id, duration=info.duration, requested_by=requested_by)
