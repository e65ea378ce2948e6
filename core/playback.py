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
Playback Messages

Commands and events consumed by a guild's playback loop, plus the session
token that ties asynchronous completions to the play attempt that caused them.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from time import monotonic as _now
from typing import List, Optional

from core.track import Track


class PlaybackState(Enum):
    """
    Current state of a guild's playback.

    IDLE: Nothing is playing (may or may not be connected to voice)
    PLAYING: A track is now-playing (possibly still loading its stream)
    PAUSED: A track is loaded but paused
    """
    IDLE = 0
    PLAYING = 1
    PAUSED = 2


_SESSION_IDS = count(1)


@dataclass(slots=True)
class PlaybackSession:
    """Token that scopes callbacks to a specific play attempt.

    Each session gets a unique ``id``. Resolver results and player completion
    callbacks carry the session they belong to; the playback loop drops any
    that no longer match the current session. ``attempt_id`` names the group
    of external processes feeding this session. ``attached`` flips once the
    stream is handed to the voice player.
    """

    attempt_id: int
    track: Track
    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    started_at: float = field(default_factory=_now)
    cancelled: bool = False
    attached: bool = False
    resolve_task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        """Mark the session as cancelled so callbacks know to exit early."""
        self.cancelled = True
        if self.resolve_task and not self.resolve_task.done():
            self.resolve_task.cancel()

    @property
    def loading(self) -> bool:
        return not self.attached and not self.cancelled


# =============================================================================
# Commands (from the command layer)
# =============================================================================

@dataclass(slots=True)
class Connect:
    channel_id: int
    text_channel_id: Optional[int] = None


@dataclass(slots=True)
class Enqueue:
    track: Track
    at_front: bool = False
    text_channel_id: Optional[int] = None


@dataclass(slots=True)
class Skip:
    pass


@dataclass(slots=True)
class Stop:
    pass


@dataclass(slots=True)
class Pause:
    pass


@dataclass(slots=True)
class Resume:
    pass


@dataclass(slots=True)
class Leave:
    pass


# =============================================================================
# Events (from the resolver and the voice player)
# =============================================================================

@dataclass(slots=True)
class StreamReady:
    session: PlaybackSession
    resolved: object


@dataclass(slots=True)
class StreamFailed:
    session: PlaybackSession
    error: BaseException


@dataclass(slots=True)
class TrackEnded:
    session: PlaybackSession
    error: Optional[BaseException] = None


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True, slots=True)
class EnqueueResult:
    """Outcome of an enqueue: the track and whether it started immediately."""

    track: Track
    started: bool
    position: int = 0


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Read-only view of a guild's playback."""

    now_playing: Optional[Track]
    upcoming: List[Track]
    state: PlaybackState
    voice_channel_id: Optional[int]
    queue_length: int = 0
    loading: bool = False

    @property
    def status(self) -> str:
        """Player status string for the dashboard."""
        if self.state is PlaybackState.PLAYING and self.loading:
            return "buffering"
        return self.state.name.lower()

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls(None, [], PlaybackState.IDLE, None)
