"""Keeps one viewer's Mancala game consistent with a shared key-value channel.

Every viewer owns a :class:`SyncCoordinator`. Local moves are validated by the
engine, then the whole snapshot is published under the instance key; snapshots
arriving from the channel replace the local state wholesale. A boolean lock
keeps a viewer from submitting a second move while a publish or an apply is in
flight. It is not a distributed lock: two viewers that move before seeing each
other's publish end up with whichever snapshot the channel stored last.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from mancala_channel import ChannelUnavailable, SharedChannel, SpaceStateStore, Unsubscribe, ViewerHost
from mancala_codec import DecodeFailure, decode_state, encode_state, state_key
from mancala_config import SyncConfig
from mancala_engine import GameState, InvalidMove, MancalaGame
from mancala_relay import RelayChannel
from mancala_telemetry import (
    ChannelErrorEvent,
    DecodeFailedEvent,
    InputDroppedEvent,
    MoveAppliedEvent,
    MoveRejectedEvent,
    RemoteAppliedEvent,
    ResetEvent,
    SnapshotPublishedEvent,
    TelemetrySink,
    emit_dataclass_event,
)

LOGGER = logging.getLogger(__name__)

RESYNC_LOADED = "loaded"
RESYNC_EMPTY = "empty"
RESYNC_INVALID = "invalid"
RESYNC_UNAVAILABLE = "unavailable"


class Presentation(Protocol):
    def render_state(self, state: GameState) -> None:
        ...


@dataclass
class SyncSession:
    instance: str
    game: MancalaGame = field(default_factory=MancalaGame)
    syncing: bool = False
    stuck: bool = False

    @property
    def key(self) -> str:
        return state_key(self.instance)


class SyncCoordinator:
    def __init__(
        self,
        channel: SharedChannel,
        host: ViewerHost,
        instance: str,
        presentation: Optional[Presentation] = None,
        game: Optional[MancalaGame] = None,
        telemetry_sink: Optional[TelemetrySink] = None,
        poll_interval_s: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.host = host
        self.presentation = presentation
        self.session = SyncSession(instance, game if game is not None else MancalaGame())
        self.telemetry_sink = telemetry_sink
        self.poll_interval_s = poll_interval_s
        self._sleep = sleep
        self._clock = clock
        self._unsubscribe: Optional[Unsubscribe] = None

    @property
    def state(self) -> GameState:
        return self.session.game.get_state()

    @property
    def locked(self) -> bool:
        return self.session.syncing

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.channel.subscribe(self.handle_remote_notification)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def wait_for_viewer(self, timeout_s: Optional[float] = None) -> str:
        started = self._clock()
        while True:
            viewer_id = self.host.local_viewer_id()
            if viewer_id is not None:
                return viewer_id
            if timeout_s is not None and self._clock() - started >= timeout_s:
                raise ChannelUnavailable(f"no viewer identity after {timeout_s:.1f}s")
            self._sleep(self.poll_interval_s)

    def bootstrap(self, timeout_s: Optional[float] = None) -> bool:
        """Attach, wait for the local identity, then adopt the stored snapshot if any.

        Returns True when an existing snapshot was loaded. Raises
        ChannelUnavailable if the identity never arrives within ``timeout_s``
        or the channel cannot be read.
        """
        self.attach()
        viewer_id = self.wait_for_viewer(timeout_s)
        LOGGER.debug("viewer %s attached to %s", viewer_id, self.session.key)

        loaded = False
        raw = self.channel.read_current(self.session.key)
        if raw is not None:
            try:
                state = decode_state(raw)
            except DecodeFailure as exc:
                LOGGER.error("ignoring stored state for %s: %s", self.session.key, exc)
                self._emit("decode_failed", DecodeFailedEvent(self.session.instance, self.session.key, str(exc)))
            else:
                self.session.game.load_state(state)
                loaded = True
                LOGGER.info("loaded existing state for %s", self.session.key)
        self._refresh()
        return loaded

    def handle_local_input(self, pit_index: int) -> bool:
        session = self.session
        if session.syncing:
            LOGGER.debug("input locked, dropping pit %d", pit_index)
            self._emit("input_dropped", InputDroppedEvent(session.instance, pit_index))
            return False

        session.syncing = True
        player = session.game.get_state().current_player
        try:
            info = session.game.play(pit_index)
        except InvalidMove as exc:
            session.syncing = False
            LOGGER.debug("rejected pit %d for player %d: %s", pit_index, player, exc)
            self._emit(
                "move_rejected",
                MoveRejectedEvent(session.instance, player, pit_index, type(exc).__name__),
            )
            on_rejected = getattr(self.presentation, "on_move_rejected", None)
            if on_rejected is not None:
                on_rejected(pit_index, exc)
            return False

        self._emit(
            "move_applied",
            MoveAppliedEvent(
                instance=session.instance,
                player=player,
                pit_index=pit_index,
                landing_index=info.trace.landing_index,
                capture=info.capture,
                extra_turn=info.extra_turn,
                game_over=info.state.game_over,
                pits=list(info.state.pits),
            ),
        )
        return self._publish_and_release("publish")

    def handle_reset(self) -> bool:
        session = self.session
        session.syncing = True
        session.game.reset()
        LOGGER.info("resetting %s", session.key)
        self._emit("reset", ResetEvent(session.instance))
        return self._publish_and_release("reset")

    def handle_remote_notification(self, key: str, payload: Optional[str]) -> bool:
        session = self.session
        if key != session.key:
            return False

        session.syncing = True
        try:
            if payload is None:
                return False
            try:
                state = decode_state(payload)
            except DecodeFailure as exc:
                LOGGER.error("discarding remote state for %s: %s", key, exc)
                self._emit("decode_failed", DecodeFailedEvent(session.instance, key, str(exc)))
                return False
            session.game.load_state(state)
            session.stuck = False
            self._refresh()
            self._emit(
                "remote_applied",
                RemoteAppliedEvent(session.instance, key, state.current_player, state.game_over),
            )
            return True
        finally:
            # A stuck viewer stays locked until a snapshot actually applies.
            session.syncing = session.stuck

    def resync(self) -> str:
        """Re-read the channel and adopt its snapshot.

        Returns one of the ``RESYNC_*`` outcomes. Any outcome other than
        ``RESYNC_UNAVAILABLE`` means the channel answered, so a stuck lock is
        cleared.
        """
        session = self.session
        session.syncing = True
        try:
            raw = self.channel.read_current(session.key)
        except ChannelUnavailable as exc:
            self._channel_failed("read", exc)
            return RESYNC_UNAVAILABLE

        try:
            if raw is None:
                return RESYNC_EMPTY
            try:
                state = decode_state(raw)
            except DecodeFailure as exc:
                LOGGER.error("discarding stored state for %s: %s", session.key, exc)
                self._emit("decode_failed", DecodeFailedEvent(session.instance, session.key, str(exc)))
                return RESYNC_INVALID
            session.game.load_state(state)
            return RESYNC_LOADED
        finally:
            session.stuck = False
            session.syncing = False
            self._refresh()

    def _publish_and_release(self, operation: str) -> bool:
        session = self.session
        record = encode_state(session.game.get_state())
        try:
            self.channel.publish(session.key, record)
        except ChannelUnavailable as exc:
            self._channel_failed(operation, exc)
            return False

        self._emit(
            "snapshot_published",
            SnapshotPublishedEvent(session.instance, session.key, len(record.encode("utf-8"))),
        )
        session.stuck = False
        try:
            self._refresh()
        finally:
            session.syncing = False
        return True

    def _channel_failed(self, operation: str, exc: ChannelUnavailable) -> None:
        # The lock stays held until resync() or handle_reset() succeeds.
        self.session.stuck = True
        LOGGER.error("channel %s failed for %s: %s", operation, self.session.key, exc)
        self._emit("channel_error", ChannelErrorEvent(self.session.instance, operation, str(exc)))
        self._refresh()
        on_error = getattr(self.presentation, "on_sync_error", None)
        if on_error is not None:
            on_error(exc)

    def _refresh(self) -> None:
        if self.presentation is not None:
            self.presentation.render_state(self.session.game.get_state())

    def _emit(self, event: str, payload: object) -> None:
        emit_dataclass_event(self.telemetry_sink, event, payload)


def open_channel(config: SyncConfig, viewer_id: str = "local", store: Optional[SpaceStateStore] = None):
    """Channel for ``config``: a connected relay client, or a view on an in-process store."""
    if config.relay is not None:
        host, port = config.relay
        return RelayChannel(host, port).connect()
    return (store if store is not None else SpaceStateStore()).channel(viewer_id)


def build_coordinator(
    config: SyncConfig,
    channel,
    presentation: Optional[Presentation] = None,
    telemetry_sink: Optional[TelemetrySink] = None,
) -> SyncCoordinator:
    return SyncCoordinator(
        channel=channel,
        host=channel,
        instance=config.instance,
        presentation=presentation,
        telemetry_sink=telemetry_sink,
        poll_interval_s=config.poll_interval_s,
    )
