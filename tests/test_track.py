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

"""Track value type, reference normalization and queue ordering."""

import pytest

from core.track import (
    SEARCH_PREFIX,
    Track,
    TrackQueue,
    canonical_url,
    extract_video_id,
    lookup_target,
    watch_url,
)
from tests.conftest import make_track


# =============================================================================
# TrackQueue
# =============================================================================

def test_queue_is_fifo():
    queue = TrackQueue()
    for vid in ("a", "b", "c"):
        queue.push_back(make_track(vid))

    assert [queue.pop_front().id for _ in range(3)] == ["a", "b", "c"]
    assert queue.pop_front() is None


def test_push_front_goes_before_prior_head():
    queue = TrackQueue()
    queue.push_back(make_track("a"))
    queue.push_back(make_track("b"))
    queue.push_front(make_track("c"))

    assert [t.id for t in queue.snapshot()] == ["c", "a", "b"]

    queue.push_front(make_track("d"))
    assert [t.id for t in queue] == ["d", "c", "a", "b"]


def test_snapshot_limit_and_copy():
    queue = TrackQueue()
    for vid in "abcde":
        queue.push_back(make_track(vid))

    view = queue.snapshot(2)
    assert [t.id for t in view] == ["a", "b"]
    view.clear()
    assert len(queue) == 5
    assert queue.snapshot(0) == []


def test_clear_empties_queue():
    queue = TrackQueue()
    queue.push_back(make_track("a"))
    assert queue
    queue.clear()
    assert not queue
    assert len(queue) == 0


# =============================================================================
# Reference normalization
# =============================================================================

@pytest.mark.parametrize("reference, expected", [
    ("https://youtu.be/abc123", watch_url("abc123")),
    ("youtu.be/abc123", watch_url("abc123")),
    ("https://m.youtube.com/watch?v=abc123&t=42", watch_url("abc123")),
    ("https://music.youtube.com/watch?v=abc123", watch_url("abc123")),
    ("https://www.youtube.com/shorts/abc123", watch_url("abc123")),
    ("www.youtube.com/watch?v=abc123&feature=share", watch_url("abc123")),
])
def test_canonical_url_collapses_youtube_variants(reference, expected):
    assert canonical_url(reference) == expected


def test_canonical_url_keeps_playlists():
    url = "https://www.youtube.com/watch?v=abc123&list=PL42"
    assert canonical_url(url) == url


def test_canonical_url_passes_other_sites_through():
    assert canonical_url("https://soundcloud.com/artist/song") == "https://soundcloud.com/artist/song"


@pytest.mark.parametrize("reference", ["never gonna give you up", "ftp://example.com/a.mp3", ""])
def test_canonical_url_rejects_non_http(reference):
    assert canonical_url(reference) is None


def test_lookup_target_searches_free_text():
    assert lookup_target("  lofi beats ") == f"{SEARCH_PREFIX}lofi beats"
    assert lookup_target("youtu.be/xyz") == watch_url("xyz")


@pytest.mark.parametrize("url, expected", [
    (watch_url("abc"), "abc"),
    ("https://youtu.be/abc", "abc"),
    ("https://www.youtube.com/shorts/abc", "abc"),
    ("https://soundcloud.com/x", None),
    (None, None),
])
def test_extract_video_id(url, expected):
    assert extract_video_id(url) == expected


# =============================================================================
# Track
# =============================================================================

def test_track_thumbnails_follow_id():
    track = Track(title="x", url=watch_url("abc"), id="abc")
    assert track.thumb == "https://i.ytimg.com/vi/abc/hqdefault.jpg"
    assert track.thumb_max == "https://i.ytimg.com/vi/abc/maxresdefault.jpg"

    anonymous = Track(title="x", url="https://example.com/a")
    assert anonymous.thumb is None
    assert anonymous.thumb_max is None


def test_track_is_immutable():
    track = make_track("abc")
    with pytest.raises(AttributeError):
        track.title = "other"


def test_track_to_dict():
    track = make_track("abc", requested_by="dashboard")
    data = track.to_dict()
    assert data["title"] == "Song abc"
    assert data["url"] == watch_url("abc")
    assert data["requestedBy"] == "dashboard"
    assert data["duration"] == "stream"
    assert data["thumbMax"].endswith("/abc/maxresdefault.jpg")
