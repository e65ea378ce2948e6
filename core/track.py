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
Track Class and Queue

Represents individual remote tracks and the per-guild queue of upcoming tracks.
Also handles YouTube reference normalization (canonical watch URLs, video IDs,
thumbnails).
"""

import re
from collections import deque
from dataclasses import dataclass
from typing import Iterator, List, Optional
from urllib.parse import parse_qs, urlsplit

SEARCH_PREFIX = "ytsearch1:"
THUMBNAIL_BASE = "https://i.ytimg.com/vi"

# Bare YouTube hosts that users paste without a scheme
_YT_HOST_PATTERN = re.compile(r'^(?:www\.|m\.|music\.)?youtube\.com|youtu\.be', re.IGNORECASE)
_SCHEME_PATTERN = re.compile(r'^https?://', re.IGNORECASE)


# =============================================================================
# Reference normalization
# =============================================================================

def watch_url(video_id: str) -> str:
    """Build the canonical watch URL for a video ID."""
    return f"https://www.youtube.com/watch?v={video_id}"


def add_scheme_if_missing(reference: str) -> str:
    """Prefix https:// to bare YouTube or www. hosts. Anything else is returned as-is."""
    if not _SCHEME_PATTERN.match(reference) and (
        _YT_HOST_PATTERN.match(reference) or reference.lower().startswith("www.")
    ):
        return "https://" + reference
    return reference


def canonical_url(reference: str) -> Optional[str]:
    """
    Normalize a user-supplied URL to a canonical form.

    Args:
        reference: Raw text from the user (URL or search terms)

    Returns:
        Canonical URL, or None when the reference is not an http(s) URL
        (meaning it should be treated as a search query)

    Rules:
        - m.youtube.com / music.youtube.com collapse to www.youtube.com
        - youtu.be/<id> and /shorts/<id> become watch?v=<id>
        - URLs carrying a playlist (list=) are kept intact
        - watch?v=<id>&... is reduced to watch?v=<id>
        - other URLs pass through unchanged
    """
    text = add_scheme_if_missing(reference.strip())
    try:
        parts = urlsplit(text)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return None

    host = parts.hostname.lower()
    if host in ("m.youtube.com", "music.youtube.com"):
        netloc = "www.youtube.com" if parts.port is None else f"www.youtube.com:{parts.port}"
        parts = parts._replace(netloc=netloc)
        host = "www.youtube.com"

    if "youtu.be" in host:
        video_id = parts.path.lstrip("/")
        if video_id:
            return watch_url(video_id)

    if "youtube.com" in host:
        if parts.path.startswith("/shorts/"):
            segments = parts.path.split("/")
            if len(segments) > 2 and segments[2]:
                return watch_url(segments[2])
        query = parse_qs(parts.query)
        if "list" in query:
            return parts.geturl()
        if "v" in query:
            return watch_url(query["v"][0])

    return parts.geturl()


def extract_video_id(url: Optional[str]) -> Optional[str]:
    """Pull the video ID out of a YouTube URL, or None if there isn't one."""
    if not url:
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    if "youtu.be" in host:
        return parts.path[1:] or None
    query = parse_qs(parts.query)
    if "v" in query:
        return query["v"][0]
    if parts.path.startswith("/shorts/"):
        segments = parts.path.split("/")
        return segments[2] if len(segments) > 2 and segments[2] else None
    return None


def lookup_target(reference: str) -> str:
    """Turn user text into something yt-dlp can fetch: a canonical URL or a search."""
    return canonical_url(reference) or f"{SEARCH_PREFIX}{reference.strip()}"


# =============================================================================
# Track
# =============================================================================

@dataclass(frozen=True)
class Track:
    """
    A single playable remote track.

    Created once at enqueue time from resolved metadata and never mutated.

    Attributes:
        title: Display title
        url: Canonical URL (or search reference when nothing better is known)
        id: Video identifier, None when it could not be determined
        duration: Human-readable length ("3:45"), "stream" when unknown
        requested_by: Display name of whoever queued it
    """

    title: str
    url: str
    id: Optional[str] = None
    duration: str = "stream"
    requested_by: str = "Unknown"

    @property
    def thumb(self) -> Optional[str]:
        """Medium-size thumbnail URL."""
        return f"{THUMBNAIL_BASE}/{self.id}/hqdefault.jpg" if self.id else None

    @property
    def thumb_max(self) -> Optional[str]:
        """Full-size thumbnail URL (may 404 for older uploads)."""
        return f"{THUMBNAIL_BASE}/{self.id}/maxresdefault.jpg" if self.id else None

    @property
    def source(self) -> str:
        """Reference handed to the stream resolver."""
        return lookup_target(self.url or self.id or self.title)

    def to_dict(self) -> dict:
        """Serializable view for the dashboard API."""
        return {
            "title": self.title,
            "url": self.url,
            "id": self.id,
            "duration": self.duration,
            "requestedBy": self.requested_by,
            "thumb": self.thumb,
            "thumbMax": self.thumb_max,
        }

    def __str__(self) -> str:
        return self.title


# =============================================================================
# Queue
# =============================================================================

class TrackQueue:
    """
    Ordered queue of upcoming tracks for one guild.

    FIFO, except push_front() which places a track immediately before the
    current head ("play next"). Never contains the now-playing track.
    """

    def __init__(self) -> None:
        self._tracks: deque[Track] = deque()

    def push_back(self, track: Track) -> None:
        self._tracks.append(track)

    def push_front(self, track: Track) -> None:
        self._tracks.appendleft(track)

    def pop_front(self) -> Optional[Track]:
        """Remove and return the head, or None if empty."""
        if not self._tracks:
            return None
        return self._tracks.popleft()

    def snapshot(self, limit: Optional[int] = None) -> List[Track]:
        """
        Copy of the upcoming tracks for display.

        Args:
            limit: Maximum number of tracks to include (None = all)
        """
        if limit is None:
            return list(self._tracks)
        return list(self._tracks)[:max(0, limit)]

    def clear(self) -> None:
        self._tracks.clear()

    def __len__(self) -> int:
        return len(self._tracks)

    def __bool__(self) -> bool:
        return bool(self._tracks)

    def __iter__(self) -> Iterator[Track]:
        return iter(list(self._tracks))
