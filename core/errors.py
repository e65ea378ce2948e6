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

"""Exceptions raised by the playback core.

Two families:
- Operational failures (ResolutionFailure, StreamProbeFailure, PlaybackFailure)
  come from external tools or the voice transport. They are logged and the room
  moves on to the next track.
- UserStateError subclasses reject a command because the room is not in a state
  where it makes sense. Each carries a messages.yaml key so the command layer can
  answer the user without knowing the details.
"""


class EncoreError(Exception):
    """Base class for all Encore errors."""


class ResolutionFailure(EncoreError):
    """Extraction or transcoding could not produce a stream or metadata.

    Attributes:
        stderr_tail: Last lines written to stderr by the failing tool, if any
    """

    def __init__(self, message: str, stderr_tail: str = "") -> None:
        super().__init__(message)
        self.stderr_tail = stderr_tail


class StreamProbeFailure(EncoreError):
    """Fast-path stream was not Opus, was empty, or did not answer in time."""


class PlaybackFailure(EncoreError):
    """Voice transport reported an error for the active stream."""


class UserStateError(EncoreError):
    """Command rejected because of the room's current state.

    Raised before any state is mutated.
    """

    message_key = "error_generic"

    def __init__(self, message: str | None = None, **fields) -> None:
        super().__init__(message or self.message_key)
        self.fields = fields

    def message_fields(self) -> dict:
        """Format variables for the messages.yaml template (channel ids become mentions)."""
        fields = dict(self.fields)
        if fields.get("channel_id"):
            fields.setdefault("channel", f"<#{fields['channel_id']}>")
        return fields


class NotInChannel(UserStateError):
    message_key = "not_in_vc"


class AlreadyConnectedElsewhere(UserStateError):
    message_key = "wrong_vc"


class ChannelNotFound(UserStateError):
    message_key = "channel_not_found"


class NothingPlaying(UserStateError):
    message_key = "nothing_playing"


class NotPaused(UserStateError):
    message_key = "not_paused"


class AlreadyPaused(UserStateError):
    message_key = "already_paused"


class StillLoading(UserStateError):
    message_key = "still_loading"


class Unauthorized(UserStateError):
    message_key = "no_permission"


class VoiceConnectFailed(UserStateError):
    message_key = "failed_join_vc"


class RoomClosed(EncoreError):
    """The guild's playback state was discarded (leave) before the command ran."""
