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
Music Player - Per-Guild State Management

Each guild gets a GuildPlaybackState: a small actor that owns the queue, the
now-playing track, the voice connection and the current playback session.
Commands from users and events from the resolver / voice thread all go through
one inbox and are handled ONE at a time, so playback state never sees two
mutations interleave.

PlaybackEngine is the registry of guild states and the facade the command
layer and dashboard talk to.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from core.errors import (
    AlreadyConnectedElsewhere,
    AlreadyPaused,
    NotInChannel,
    NothingPlaying,
    NotPaused,
    PlaybackFailure,
    ResolutionFailure,
    RoomClosed,
    StillLoading,
    UserStateError,
)
from core.playback import (
    Connect,
    Enqueue,
    EnqueueResult,
    Leave,
    Pause,
    PlaybackSession,
    PlaybackState,
    Resume,
    Skip,
    Snapshot,
    Stop,
    StreamFailed,
    StreamReady,
    TrackEnded,
)
from core.track import Track, TrackQueue
from utils.context_managers import cancelling_session

DEFAULT_QUEUE_DISPLAY_SIZE = 10


class GuildPlaybackState:
    """
    Per-guild playback state machine.

    States: IDLE -> PLAYING <-> PAUSED, back to IDLE when the queue drains or
    on stop. Leave tears the state down entirely; the engine then creates a
    fresh one on next use.

    Stream resolution runs as a separate task and reports back through the
    inbox (StreamReady / StreamFailed). The voice player's completion callback
    arrives from the audio thread and is marshalled onto the loop as a
    TrackEnded event. Every event carries the PlaybackSession that produced it;
    events for anything but the current session are dropped.

    Args:
        guild_id: Discord guild ID
        transport: Voice transport (connect / play / pause / stop / disconnect)
        resolver: StreamResolver producing ResolvedStreams
        supervisor: ProcessSupervisor owning the resolver's processes
        notifier: Optional announcer for started / queued / failed tracks
    """

    def __init__(self, guild_id: int, transport, resolver, supervisor, notifier=None) -> None:
        self.guild_id = guild_id
        self.transport = transport
        self.resolver = resolver
        self.supervisor = supervisor
        self.notifier = notifier

        self.queue = TrackQueue()
        self.now_playing: Optional[Track] = None
        self.state = PlaybackState.IDLE

        self.voice: Any = None
        self.voice_channel_id: Optional[int] = None
        self.text_channel_id: Optional[int] = None

        self._session: Optional[PlaybackSession] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._processor_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._closed = False

        self._handlers: Dict[type, Callable[[Any], Awaitable[Any]]] = {
            Connect: self._on_connect,
            Enqueue: self._on_enqueue,
            Skip: self._on_skip,
            Stop: self._on_stop,
            Pause: self._on_pause,
            Resume: self._on_resume,
            Leave: self._on_leave,
            StreamReady: self._on_stream_ready,
            StreamFailed: self._on_stream_failed,
            TrackEnded: self._on_track_ended,
        }

    # =========================================================================
    # Inbox
    # =========================================================================

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the inbox processor."""
        if not self._processor_task:
            self._processor_task = asyncio.create_task(
                self._process(), name=f"playback-{self.guild_id}"
            )
            logger.debug(f"guild {self.guild_id}: playback processor started")

    async def submit(self, message) -> Any:
        """
        Queue a command and wait for its result.

        Raises:
            UserStateError: Command not valid in the current state
            RoomClosed: State was discarded before the command ran
        """
        if self._closed:
            raise RoomClosed()
        future = asyncio.get_running_loop().create_future()
        await self._inbox.put((message, future))
        return await future

    def post(self, event) -> None:
        """Queue an event without waiting (resolver tasks, voice callbacks)."""
        if self._closed:
            self._discard(event)
            return
        self._inbox.put_nowait((event, None))

    async def join(self) -> None:
        """Wait until every queued command and event has been handled."""
        await self._inbox.join()

    async def _process(self) -> None:
        """
        Handle inbox messages serially.

        A failing handler never kills the loop: user errors go back to the
        caller, anything unexpected is logged and the guild is put back into a
        consistent state.
        """
        while True:
            try:
                message, future = await self._inbox.get()
            except asyncio.CancelledError:
                logger.debug(f"guild {self.guild_id}: playback processor cancelled")
                break

            try:
                result = await self._handlers[type(message)](message)
            except asyncio.CancelledError:
                if future and not future.done():
                    future.cancel()
                self._inbox.task_done()
                logger.debug(f"guild {self.guild_id}: playback processor cancelled")
                break
            except UserStateError as e:
                if future and not future.done():
                    future.set_exception(e)
            except Exception as e:
                logger.opt(exception=True).error(
                    f"guild {self.guild_id}: {type(message).__name__} failed"
                )
                self._recover()
                if future and not future.done():
                    future.set_exception(e)
            else:
                if future and not future.done():
                    future.set_result(result)
            self._inbox.task_done()

            if self._closed:
                self._fail_pending()
                break

    def _recover(self) -> None:
        """Fall back to a state the machine can continue from."""
        session = self._session
        if session and not session.cancelled and self.now_playing is not None:
            return
        self.cancel_active_session()
        self.now_playing = None
        self.state = PlaybackState.IDLE

    def _fail_pending(self) -> None:
        while not self._inbox.empty():
            message, future = self._inbox.get_nowait()
            self._discard(message)
            if future and not future.done():
                future.set_exception(RoomClosed())
            self._inbox.task_done()

    def _discard(self, event) -> None:
        if isinstance(event, StreamReady):
            self.supervisor.kill_attempt(event.session.attempt_id)

    # =========================================================================
    # Session management
    # =========================================================================

    def cancel_active_session(self) -> None:
        """Invalidate the current playback session and kill its processes.

        Any resolver result or completion callback that belongs to the old
        session is ignored when it arrives.
        """
        session = self._session
        if session is not None:
            session.cancel()
            self.supervisor.kill_attempt(session.attempt_id)
        self._session = None

    def _advance(self) -> Optional[Track]:
        """
        Pop the next track and start resolving it, or go idle.

        Returns:
            Track that became now-playing, or None if the queue was empty
        """
        self.cancel_active_session()
        track = self.queue.pop_front()
        if track is None:
            self.now_playing = None
            self.state = PlaybackState.IDLE
            logger.debug(f"guild {self.guild_id}: queue drained")
            return None

        self.now_playing = track
        self.state = PlaybackState.PLAYING
        session = PlaybackSession(attempt_id=self.supervisor.new_attempt(), track=track)
        session.resolve_task = asyncio.create_task(
            self._resolve(session), name=f"resolve-{self.guild_id}-{session.attempt_id}"
        )
        self._session = session
        logger.info(f"guild {self.guild_id}: loading {track.title}")
        return track

    async def _resolve(self, session: PlaybackSession) -> None:
        """Resolve the session's stream and report back through the inbox."""
        try:
            resolved = await self.resolver.resolve(session.track.source, session.attempt_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.post(StreamFailed(session, e))
        else:
            self.post(StreamReady(session, resolved))

    def _finish_callback(self, session: PlaybackSession) -> Callable[[Optional[Exception]], None]:
        """Build the voice player's after-callback for session.

        Called from the audio thread, so it only hands the event to the loop.
        """
        loop = asyncio.get_running_loop()

        def after(error: Optional[Exception] = None) -> None:
            try:
                loop.call_soon_threadsafe(self.post, TrackEnded(session, error))
            except RuntimeError:
                # Loop already closed (shutdown)
                pass

        return after

    def _is_current(self, session: PlaybackSession) -> bool:
        return session is self._session and not session.cancelled

    # =========================================================================
    # Announcements
    # =========================================================================

    def _announce(self, event: str, *args) -> None:
        """Fire-and-forget notifier call. Failures are logged, never raised."""
        if self.notifier is None:
            return
        handler = getattr(self.notifier, event, None)
        if handler is None:
            return
        task = asyncio.create_task(self._guarded(event, handler(self.guild_id, *args, self.text_channel_id)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guarded(self, event: str, coro) -> None:
        try:
            await coro
        except Exception:
            logger.opt(exception=True).warning(f"guild {self.guild_id}: {event} announcement failed")

    # =========================================================================
    # Command handlers
    # =========================================================================

    def _voice_connected(self) -> bool:
        if self.voice is None:
            return False
        return self.transport.is_connected(self.voice)

    async def _on_connect(self, cmd: Connect) -> int:
        if self._voice_connected():
            if self.voice_channel_id != cmd.channel_id:
                raise AlreadyConnectedElsewhere(channel_id=self.voice_channel_id)
        else:
            self.voice = await self.transport.connect(self.guild_id, cmd.channel_id)
            self.voice_channel_id = cmd.channel_id
            logger.info(f"guild {self.guild_id}: connected to voice channel {cmd.channel_id}")
        if cmd.text_channel_id:
            self.text_channel_id = cmd.text_channel_id
        return self.voice_channel_id

    async def _on_enqueue(self, cmd: Enqueue) -> EnqueueResult:
        if self.voice is None:
            raise NotInChannel()
        if cmd.text_channel_id:
            self.text_channel_id = cmd.text_channel_id

        if cmd.at_front:
            self.queue.push_front(cmd.track)
        else:
            self.queue.push_back(cmd.track)

        if self.state is PlaybackState.IDLE:
            started = self._advance()
            return EnqueueResult(cmd.track, started=started is cmd.track)

        position = 1 if cmd.at_front else len(self.queue)
        logger.info(f"guild {self.guild_id}: queued {cmd.track.title} at position {position}")
        self._announce("on_track_queued", cmd.track, cmd.at_front)
        return EnqueueResult(cmd.track, started=False, position=position)

    async def _on_skip(self, cmd: Skip) -> Track:
        skipped = self.now_playing
        if skipped is None:
            raise NothingPlaying()

        session = self._session
        with cancelling_session(self):
            if session and session.attached:
                self.transport.stop(self.voice)
        logger.info(f"guild {self.guild_id}: skipped {skipped.title}")
        self._advance()
        return skipped

    async def _on_stop(self, cmd: Stop) -> None:
        self.queue.clear()
        with cancelling_session(self):
            if self.voice is not None:
                self.transport.stop(self.voice)
        self.now_playing = None
        self.state = PlaybackState.IDLE
        logger.info(f"guild {self.guild_id}: stopped")

    async def _on_pause(self, cmd: Pause) -> None:
        if self.state is PlaybackState.PAUSED:
            raise AlreadyPaused()
        if self.state is not PlaybackState.PLAYING or self.now_playing is None:
            raise NothingPlaying()
        if self._session is None or not self._session.attached:
            raise StillLoading()
        self.transport.pause(self.voice)
        self.state = PlaybackState.PAUSED

    async def _on_resume(self, cmd: Resume) -> None:
        if self.state is not PlaybackState.PAUSED:
            raise NotPaused()
        self.transport.unpause(self.voice)
        self.state = PlaybackState.PLAYING

    async def _on_leave(self, cmd: Leave) -> None:
        self.queue.clear()
        with cancelling_session(self):
            if self.voice is not None:
                self.transport.stop(self.voice)
        voice, self.voice = self.voice, None
        self.voice_channel_id = None
        self.now_playing = None
        self.state = PlaybackState.IDLE
        self._closed = True
        if voice is not None:
            await self.transport.disconnect(voice)
        logger.info(f"guild {self.guild_id}: left voice")

    # =========================================================================
    # Event handlers
    # =========================================================================

    async def _on_stream_ready(self, event: StreamReady) -> None:
        session = event.session
        if not self._is_current(session):
            logger.debug(f"guild {self.guild_id}: dropping stale stream for attempt {session.attempt_id}")
            self.supervisor.kill_attempt(session.attempt_id)
            return

        try:
            self.transport.play(self.voice, event.resolved, self._finish_callback(session))
        except Exception as e:
            logger.opt(exception=True).warning(
                f"guild {self.guild_id}: could not start {session.track.title}"
            )
            self._announce("on_track_failed", session.track, PlaybackFailure(str(e)))
            self._advance()
            return

        session.attached = True
        logger.info(
            f"guild {self.guild_id}: now playing {session.track.title} "
            f"(stage {getattr(event.resolved, 'stage', '?')})"
        )
        self._announce("on_track_started", session.track)

    async def _on_stream_failed(self, event: StreamFailed) -> None:
        session = event.session
        if not self._is_current(session):
            return

        error = event.error
        logger.warning(f"guild {self.guild_id}: could not resolve {session.track.title}: {error}")
        if isinstance(error, ResolutionFailure) and error.stderr_tail:
            logger.debug(f"guild {self.guild_id}: tool output:\n{error.stderr_tail}")
        self._announce("on_track_failed", session.track, error)
        self._advance()

    async def _on_track_ended(self, event: TrackEnded) -> None:
        session = event.session
        if not self._is_current(session):
            return

        if event.error is not None:
            failure = PlaybackFailure(str(event.error))
            logger.warning(f"guild {self.guild_id}: playback error on {session.track.title}: {failure}")
        else:
            logger.debug(f"guild {self.guild_id}: finished {session.track.title}")
        self._advance()

    # =========================================================================
    # Queries / lifecycle
    # =========================================================================

    def snapshot(self, limit: Optional[int] = DEFAULT_QUEUE_DISPLAY_SIZE) -> Snapshot:
        """Read-only view of the guild's playback. Never mutates state."""
        session = self._session
        return Snapshot(
            now_playing=self.now_playing,
            upcoming=self.queue.snapshot(limit),
            state=self.state,
            voice_channel_id=self.voice_channel_id,
            queue_length=len(self.queue),
            loading=bool(session and session.loading),
        )

    async def shutdown(self) -> None:
        """Cancel the processor, kill processes, disconnect voice."""
        self._closed = True
        if self._processor_task and not self._processor_task.done():
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
        self._fail_pending()
        self.cancel_active_session()
        self.queue.clear()
        self.now_playing = None
        self.state = PlaybackState.IDLE
        voice, self.voice = self.voice, None
        if voice is not None:
            await self.transport.disconnect(voice)
        for task in list(self._background):
            task.cancel()


# =============================================================================
# Engine (Global)
# =============================================================================

class PlaybackEngine:
    """
    Registry of per-guild playback states and the entry point for commands.

    Guild states are created lazily on first use and discarded on leave.
    Metadata lookups happen here, before the command reaches the guild's
    inbox, so a slow lookup never blocks skip / stop for that guild.

    Args:
        transport: Voice transport shared by all guilds
        resolver: StreamResolver shared by all guilds
        supervisor: ProcessSupervisor shared by all guilds
        lookup: TrackLookup turning references into Tracks
        notifier: Optional announcer
        queue_display_size: Default number of upcoming tracks in snapshots
    """

    def __init__(
        self,
        transport,
        resolver,
        supervisor,
        lookup,
        notifier=None,
        queue_display_size: int = DEFAULT_QUEUE_DISPLAY_SIZE,
    ) -> None:
        self.transport = transport
        self.resolver = resolver
        self.supervisor = supervisor
        self.lookup = lookup
        self.notifier = notifier
        self.queue_display_size = queue_display_size

        self.rooms: Dict[int, GuildPlaybackState] = {}
        self._rooms_lock = asyncio.Lock()

    async def get_room(self, guild_id: int) -> GuildPlaybackState:
        """Get or create the playback state for a guild (thread-safe)."""
        # Fast path - no lock
        room = self.rooms.get(guild_id)
        if room is not None and not room.closed:
            return room

        # Slow path - need lock for creation
        async with self._rooms_lock:
            # Double-check
            room = self.rooms.get(guild_id)
            if room is not None and not room.closed:
                return room

            room = GuildPlaybackState(
                guild_id, self.transport, self.resolver, self.supervisor, self.notifier
            )
            room.start()
            self.rooms[guild_id] = room
            logger.debug(f"guild {guild_id}: playback state created")

        return room

    def peek(self, guild_id: int) -> Optional[GuildPlaybackState]:
        """Existing live state for a guild, without creating one."""
        room = self.rooms.get(guild_id)
        if room is None or room.closed:
            return None
        return room

    def _forget(self, guild_id: int, room: GuildPlaybackState) -> None:
        if self.rooms.get(guild_id) is room:
            del self.rooms[guild_id]

    async def _submit(self, guild_id: int, message, create: bool = True) -> Any:
        # A leave can close the state between lookup and submit; retry once on a fresh one
        for _ in range(2):
            room = await self.get_room(guild_id) if create else self.peek(guild_id)
            if room is None:
                return None
            try:
                return await room.submit(message)
            except RoomClosed:
                self._forget(guild_id, room)
                if not create:
                    return None
        raise RoomClosed()

    async def connect(self, guild_id: int, channel_id: int, text_channel_id: Optional[int] = None) -> int:
        """
        Join channel_id, or confirm the existing connection is already there.

        Raises:
            AlreadyConnectedElsewhere: Connected to a different channel
            ChannelNotFound: Channel missing or not a voice channel
        """
        return await self._submit(guild_id, Connect(channel_id, text_channel_id))

    async def enqueue(
        self,
        guild_id: int,
        reference: str,
        requested_by: str,
        at_front: bool = False,
        text_channel_id: Optional[int] = None,
    ) -> EnqueueResult:
        """
        Resolve reference to a Track and queue it (front for "play next").

        Raises:
            ResolutionFailure: Search found nothing / empty reference
            NotInChannel: Guild has no voice connection
        """
        track = await self.lookup.resolve(reference, requested_by)
        return await self._submit(guild_id, Enqueue(track, at_front, text_channel_id))

    async def skip(self, guild_id: int) -> Track:
        """Raises NothingPlaying when nothing is playing."""
        if self.peek(guild_id) is None:
            raise NothingPlaying()
        result = await self._submit(guild_id, Skip(), create=False)
        if result is None:
            raise NothingPlaying()
        return result

    async def stop(self, guild_id: int) -> None:
        """Clear the queue and go idle. No-op for unknown guilds."""
        await self._submit(guild_id, Stop(), create=False)

    async def pause(self, guild_id: int) -> None:
        if self.peek(guild_id) is None:
            raise NothingPlaying()
        await self._submit(guild_id, Pause(), create=False)

    async def resume(self, guild_id: int) -> None:
        if self.peek(guild_id) is None:
            raise NotPaused()
        await self._submit(guild_id, Resume(), create=False)

    async def leave(self, guild_id: int) -> None:
        """Disconnect and discard the guild's state. No-op for unknown guilds."""
        room = self.peek(guild_id)
        if room is None:
            return
        try:
            await room.submit(Leave())
        except RoomClosed:
            pass
        self._forget(guild_id, room)

    def query_snapshot(self, guild_id: int, limit: Optional[int] = None) -> Snapshot:
        room = self.peek(guild_id)
        if room is None:
            return Snapshot.empty()
        return room.snapshot(limit if limit is not None else self.queue_display_size)

    async def shutdown(self) -> None:
        """Tear down every guild and kill any straggling processes."""
        rooms = list(self.rooms.values())
        self.rooms.clear()
        for room in rooms:
            try:
                await room.shutdown()
            except Exception:
                logger.opt(exception=True).warning(f"guild {room.guild_id}: shutdown failed")
        self.supervisor.kill_all()
