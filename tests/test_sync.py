import json
import unittest
from unittest.mock import patch

from mancala_channel import ChannelUnavailable, SpaceStateStore, StaticViewerHost
from mancala_codec import encode_state, state_key
from mancala_config import SyncConfig
from mancala_engine import PLAYER_ONE, PLAYER_TWO, GameState, NotOwnPit, apply_move, initial_state
from mancala_sync import (
    RESYNC_EMPTY,
    RESYNC_INVALID,
    RESYNC_LOADED,
    RESYNC_UNAVAILABLE,
    SyncCoordinator,
    build_coordinator,
    open_channel,
)


class _RecordingView:
    def __init__(self) -> None:
        self.rendered = []
        self.errors = []
        self.coordinator = None
        self.locked_during_render = []

    def render_state(self, state: GameState) -> None:
        self.rendered.append(state)
        if self.coordinator is not None:
            self.locked_during_render.append(self.coordinator.locked)

    def on_sync_error(self, exc: Exception) -> None:
        self.errors.append(exc)


class _CollectSink:
    def __init__(self) -> None:
        self.events = []

    def emit(self, envelope) -> None:
        self.events.append(envelope)

    def close(self) -> None:
        return

    def names(self):
        return [event.event for event in self.events]


def make_viewer(store, instance="table-1", viewer_id="viewer", sink=None):
    channel = store.channel(viewer_id)
    view = _RecordingView()
    coordinator = SyncCoordinator(channel, channel, instance, presentation=view, telemetry_sink=sink)
    view.coordinator = coordinator
    return coordinator, view


class TestLocalInput(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SpaceStateStore()
        self.sink = _CollectSink()
        self.alice, self.alice_view = make_viewer(self.store, viewer_id="alice", sink=self.sink)
        self.bob, self.bob_view = make_viewer(self.store, viewer_id="bob")
        self.alice.bootstrap()
        self.bob.bootstrap()

    def test_move_is_published_and_peer_converges(self):
        self.assertTrue(self.alice.handle_local_input(1))
        stored = json.loads(self.store.get(state_key("table-1")))
        self.assertEqual(stored["pits"], [4, 0, 5, 5, 5, 5, 0, 4, 4, 4, 4, 4, 4, 0])
        self.assertEqual(stored["currentPlayer"], 2)

        self.assertEqual(self.bob.state, initial_state())
        self.store.pump()
        self.assertEqual(self.bob.state, self.alice.state)
        self.assertEqual(self.bob_view.rendered[-1], self.alice.state)
        self.assertFalse(self.alice.locked)
        self.assertFalse(self.bob.locked)

    def test_lock_is_held_while_rendering(self):
        self.alice.handle_local_input(1)
        self.assertTrue(self.alice_view.locked_during_render[-1])
        self.assertFalse(self.alice.locked)

    def test_invalid_move_is_not_published(self):
        before = self.alice.state
        self.assertFalse(self.alice.handle_local_input(8))
        self.assertFalse(self.alice.handle_local_input(6))
        self.assertIsNone(self.store.get(state_key("table-1")))
        self.assertEqual(self.alice.state, before)
        self.assertFalse(self.alice.locked)
        self.assertIn("move_rejected", self.sink.names())

    def test_rejection_reason_reaches_presentation(self):
        reasons = []
        self.alice_view.on_move_rejected = lambda pit_index, exc: reasons.append((pit_index, exc))
        self.assertFalse(self.alice.handle_local_input(9))
        self.assertEqual(len(reasons), 1)
        self.assertEqual(reasons[0][0], 9)
        self.assertIsInstance(reasons[0][1], NotOwnPit)

    def test_input_dropped_while_locked(self):
        self.alice.session.syncing = True
        self.assertFalse(self.alice.handle_local_input(1))
        self.assertEqual(self.alice.state, initial_state())
        self.assertIsNone(self.store.get(state_key("table-1")))
        self.assertTrue(self.alice.locked)
        self.assertIn("input_dropped", self.sink.names())

    def test_turns_alternate_across_viewers(self):
        self.alice.handle_local_input(0)
        self.store.pump()
        self.assertEqual(self.bob.state.current_player, PLAYER_TWO)
        self.assertTrue(self.bob.handle_local_input(7))
        self.store.pump()
        self.assertEqual(self.alice.state, self.bob.state)
        self.assertEqual(self.alice.state.current_player, PLAYER_ONE)

    def test_telemetry_for_applied_move(self):
        self.alice.handle_local_input(2)
        names = self.sink.names()
        self.assertIn("move_applied", names)
        self.assertIn("snapshot_published", names)
        applied = [e for e in self.sink.events if e.event == "move_applied"][-1]
        self.assertEqual(applied.data["pit_index"], 2)
        self.assertTrue(applied.data["extra_turn"])

    def test_own_echo_is_harmless(self):
        self.alice.handle_local_input(1)
        state = self.alice.state
        self.store.pump()
        self.assertEqual(self.alice.state, state)
        self.assertFalse(self.alice.locked)


class TestRemoteNotification(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SpaceStateStore()
        self.sink = _CollectSink()
        self.viewer, self.view = make_viewer(self.store, sink=self.sink)
        self.key = state_key("table-1")

    def test_applies_snapshot(self):
        remote = apply_move(initial_state(), 3)
        self.assertTrue(self.viewer.handle_remote_notification(self.key, encode_state(remote)))
        self.assertEqual(self.viewer.state, remote)
        self.assertEqual(self.view.rendered[-1], remote)
        self.assertFalse(self.viewer.locked)
        self.assertIn("remote_applied", self.sink.names())

    def test_decode_failure_keeps_state_and_releases_lock(self):
        self.viewer.handle_local_input(0)
        before = self.viewer.state
        renders = len(self.view.rendered)
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.assertFalse(self.viewer.handle_remote_notification(self.key, '{"pits": [1, 2]}'))
        self.assertEqual(self.viewer.state, before)
        self.assertEqual(len(self.view.rendered), renders)
        self.assertFalse(self.viewer.locked)
        self.assertIn("decode_failed", self.sink.names())

    def test_deeply_nested_payload_is_rejected(self):
        payload = "[" * 200000 + "]" * 200000
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.assertFalse(self.viewer.handle_remote_notification(self.key, payload))
        self.assertEqual(self.viewer.state, initial_state())
        self.assertFalse(self.viewer.locked)
        self.assertIn("decode_failed", self.sink.names())

    def test_deeply_nested_payload_through_pump(self):
        self.viewer.bootstrap()
        self.store.channel("peer").publish(self.key, "[" * 200000)
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.assertEqual(self.store.pump(), 1)
        self.assertEqual(self.viewer.state, initial_state())

    def test_other_keys_are_ignored(self):
        remote = apply_move(initial_state(), 3)
        self.assertFalse(self.viewer.handle_remote_notification(state_key("other"), encode_state(remote)))
        self.assertEqual(self.viewer.state, initial_state())

    def test_absent_payload_releases_lock(self):
        self.assertFalse(self.viewer.handle_remote_notification(self.key, None))
        self.assertFalse(self.viewer.locked)
        self.assertEqual(self.viewer.state, initial_state())

    def test_remote_apply_clears_local_lock(self):
        self.viewer.session.syncing = True
        self.viewer.handle_remote_notification(self.key, encode_state(apply_move(initial_state(), 0)))
        self.assertFalse(self.viewer.locked)

    def test_loaded_state_is_not_validated(self):
        odd = GameState((1,) * 14, PLAYER_TWO, None, False)
        self.assertTrue(self.viewer.handle_remote_notification(self.key, encode_state(odd)))
        self.assertEqual(self.viewer.state, odd)


class TestBootstrap(unittest.TestCase):
    def test_loads_existing_state(self):
        store = SpaceStateStore()
        existing = apply_move(initial_state(), 4)
        store.set(state_key("table-1"), encode_state(existing))
        viewer, view = make_viewer(store)
        self.assertTrue(viewer.bootstrap())
        self.assertEqual(viewer.state, existing)
        self.assertEqual(view.rendered[-1], existing)
        self.assertTrue(viewer.attached)

    def test_keeps_default_when_nothing_stored(self):
        viewer, view = make_viewer(SpaceStateStore())
        self.assertFalse(viewer.bootstrap())
        self.assertEqual(viewer.state, initial_state())
        self.assertEqual(view.rendered[-1], initial_state())

    def test_malformed_stored_state_is_ignored(self):
        store = SpaceStateStore()
        store.set(state_key("table-1"), "not json")
        viewer, _ = make_viewer(store)
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.assertFalse(viewer.bootstrap())
        self.assertEqual(viewer.state, initial_state())

    def test_polls_until_identity_is_known(self):
        store = SpaceStateStore()
        channel = store.channel(None)
        sleeps = []

        def fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 3:
                channel.viewer_id = "late-viewer"

        viewer = SyncCoordinator(channel, channel, "table-1", poll_interval_s=0.2, sleep=fake_sleep)
        viewer.bootstrap()
        self.assertEqual(sleeps, [0.2, 0.2, 0.2])

    def test_identity_timeout(self):
        ticks = iter([0.0, 0.5, 1.0, 1.5])
        host = StaticViewerHost(None)
        store = SpaceStateStore()
        viewer = SyncCoordinator(
            store.channel("x"),
            host,
            "table-1",
            sleep=lambda _s: None,
            clock=lambda: next(ticks),
        )
        with self.assertRaises(ChannelUnavailable):
            viewer.bootstrap(timeout_s=1.0)


class TestReset(unittest.TestCase):
    def test_reset_publishes_start_state(self):
        store = SpaceStateStore()
        alice, _ = make_viewer(store, viewer_id="alice")
        bob, _ = make_viewer(store, viewer_id="bob")
        alice.bootstrap()
        bob.bootstrap()
        alice.handle_local_input(0)
        store.pump()

        self.assertTrue(bob.handle_reset())
        store.pump()
        self.assertEqual(alice.state, initial_state())
        self.assertEqual(bob.state, initial_state())
        self.assertEqual(store.get(state_key("table-1")), encode_state(initial_state()))

    def test_reset_ignores_lock(self):
        store = SpaceStateStore()
        viewer, _ = make_viewer(store)
        viewer.session.syncing = True
        self.assertTrue(viewer.handle_reset())
        self.assertFalse(viewer.locked)


class TestLastWriteWins(unittest.TestCase):
    def test_concurrent_moves_drop_one(self):
        store = SpaceStateStore()
        alice, _ = make_viewer(store, viewer_id="alice")
        bob, _ = make_viewer(store, viewer_id="bob")
        alice.bootstrap()
        bob.bootstrap()

        # Both think it is Player 1's turn and move before seeing each other.
        self.assertTrue(alice.handle_local_input(0))
        self.assertTrue(bob.handle_local_input(1))
        store.pump()

        bob_move = apply_move(initial_state(), 1)
        self.assertEqual(alice.state, bob_move)
        self.assertEqual(bob.state, bob_move)
        self.assertEqual(store.get(state_key("table-1")), encode_state(bob_move))


class TestDetach(unittest.TestCase):
    def test_detach_stops_notifications(self):
        store = SpaceStateStore()
        alice, _ = make_viewer(store, viewer_id="alice")
        bob, _ = make_viewer(store, viewer_id="bob")
        alice.bootstrap()
        bob.bootstrap()
        bob.detach()
        self.assertFalse(bob.attached)

        alice.handle_local_input(0)
        store.pump()
        self.assertEqual(bob.state, initial_state())

    def test_detach_drops_queued_notifications(self):
        store = SpaceStateStore()
        alice, _ = make_viewer(store, viewer_id="alice")
        bob, _ = make_viewer(store, viewer_id="bob")
        alice.bootstrap()
        bob.bootstrap()
        alice.handle_local_input(0)
        bob.detach()
        store.pump()
        self.assertEqual(bob.state, initial_state())


class TestChannelFailure(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SpaceStateStore()
        self.sink = _CollectSink()
        self.viewer, self.view = make_viewer(self.store, sink=self.sink)
        self.viewer.bootstrap()

    def test_failed_publish_leaves_lock_held(self):
        self.store.available = False
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.assertFalse(self.viewer.handle_local_input(0))
        self.assertTrue(self.viewer.locked)
        self.assertTrue(self.viewer.session.stuck)
        self.assertEqual(len(self.view.errors), 1)
        self.assertIsInstance(self.view.errors[0], ChannelUnavailable)
        self.assertIn("channel_error", self.sink.names())

        self.assertFalse(self.viewer.handle_local_input(1))
        self.assertIn("input_dropped", self.sink.names())

    def test_resync_recovers(self):
        self.store.available = False
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.viewer.handle_local_input(0)
        self.store.available = True
        self.store.set(state_key("table-1"), encode_state(initial_state()))

        self.assertEqual(self.viewer.resync(), RESYNC_LOADED)
        self.assertFalse(self.viewer.locked)
        self.assertFalse(self.viewer.session.stuck)
        self.assertEqual(self.viewer.state, initial_state())

    def test_resync_failure_keeps_lock(self):
        self.store.available = False
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.assertEqual(self.viewer.resync(), RESYNC_UNAVAILABLE)
        self.assertTrue(self.viewer.locked)

    def test_resync_outcomes_without_failure(self):
        self.assertEqual(self.viewer.resync(), RESYNC_EMPTY)
        self.assertFalse(self.viewer.locked)

        self.store.set(state_key("table-1"), "garbage")
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.assertEqual(self.viewer.resync(), RESYNC_INVALID)
        self.assertFalse(self.viewer.locked)
        self.assertEqual(self.viewer.state, initial_state())

    def test_bad_remote_snapshot_keeps_stuck_viewer_locked(self):
        self.store.available = False
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.viewer.handle_local_input(0)
        key = state_key("table-1")

        with self.assertLogs("mancala_sync", level="ERROR"):
            self.assertFalse(self.viewer.handle_remote_notification(key, "garbage"))
        self.assertTrue(self.viewer.locked)
        self.assertTrue(self.viewer.session.stuck)

        self.assertFalse(self.viewer.handle_remote_notification(key, None))
        self.assertTrue(self.viewer.locked)
        self.assertTrue(self.viewer.session.stuck)
        self.assertFalse(self.viewer.handle_local_input(1))

        self.assertTrue(self.viewer.handle_remote_notification(key, encode_state(initial_state())))
        self.assertFalse(self.viewer.locked)
        self.assertFalse(self.viewer.session.stuck)

    def test_reset_recovers(self):
        self.store.available = False
        with self.assertLogs("mancala_sync", level="ERROR"):
            self.viewer.handle_local_input(0)
        self.store.available = True
        self.assertTrue(self.viewer.handle_reset())
        self.assertFalse(self.viewer.locked)
        self.assertFalse(self.viewer.session.stuck)

    def test_sink_errors_do_not_propagate(self):
        class _BrokenSink:
            def emit(self, envelope):
                raise RuntimeError("boom")

            def close(self):
                return

        self.viewer.telemetry_sink = _BrokenSink()
        self.assertTrue(self.viewer.handle_local_input(0))


class TestFactories(unittest.TestCase):
    def test_open_channel_defaults_to_local_store(self):
        store = SpaceStateStore()
        channel = open_channel(SyncConfig(instance="t"), viewer_id="me", store=store)
        self.assertIs(channel.store, store)
        self.assertEqual(channel.local_viewer_id(), "me")

    def test_open_channel_uses_relay(self):
        config = SyncConfig(instance="t", relay=("127.0.0.1", 9))
        with patch("mancala_sync.RelayChannel") as relay_cls:
            open_channel(config)
        relay_cls.assert_called_once_with("127.0.0.1", 9)
        relay_cls.return_value.connect.assert_called_once_with()

    def test_build_coordinator(self):
        channel = SpaceStateStore().channel("me")
        view = _RecordingView()
        coordinator = build_coordinator(SyncConfig(instance="t"), channel, view)
        self.assertEqual(coordinator.session.key, "mancala_game_t")
        self.assertIs(coordinator.presentation, view)
        self.assertIs(coordinator.host, channel)


if __name__ == "__main__":
    unittest.main()
