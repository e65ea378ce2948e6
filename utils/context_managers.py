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
Context Managers for Safe Process Cleanup

Provides context managers that guarantee external processes are released even
when resolution fails or is cancelled part-way through.
"""

from contextlib import contextmanager
from typing import Any


@contextmanager
def releasing_attempt(supervisor: Any, attempt_id: int):
    """
    Kill every process of an attempt if the body does not complete.

    Usage:
        with releasing_attempt(supervisor, attempt_id):
            handle = supervisor.spawn(spec, attempt_id)
            ...  # any exception or cancellation here kills the attempt

    On normal exit the processes are left running; the caller now owns them
    through the attempt id.

    Args:
        supervisor: ProcessSupervisor that spawned the processes
        attempt_id: Attempt whose processes are released on failure
    """
    try:
        yield
    except BaseException:
        supervisor.kill_attempt(attempt_id)
        raise


@contextmanager
def cancelling_session(state: Any):
    """
    Invalidate the room's current playback session for the duration of a
    manual stop.

    Usage:
        with cancelling_session(room):
            transport.stop(room.voice)  # finish callback sees a stale session

    The session token is cancelled and its processes killed before the body
    runs, so the player's completion callback for the old stream is ignored
    instead of advancing the queue a second time.

    Args:
        state: GuildPlaybackState with a cancel_active_session() method
    """
    state.cancel_active_session()
    yield
