"""Terminal viewer for synced Mancala."""

from __future__ import annotations

import argparse
from typing import List, Optional

from mancala_channel import ChannelUnavailable
from mancala_config import SyncConfig, add_sync_arguments, config_from_args
from mancala_engine import HIGHLIGHT_VALID, GameState, InvalidMove, pit_highlights, pretty_print
from mancala_logging import configure_logging
from mancala_sync import RESYNC_EMPTY, RESYNC_INVALID, build_coordinator, open_channel
from mancala_telemetry import NullTelemetrySink, TelemetrySink, ThreadedTCPSink


class TerminalView:
    def __init__(self) -> None:
        self.renders = 0

    def render_state(self, state: GameState) -> None:
        self.renders += 1
        print()
        print(pretty_print(state))
        if not state.game_over:
            valid = [i for i, h in enumerate(pit_highlights(state)) if h == HIGHLIGHT_VALID]
            print(f"Playable pits: {', '.join(str(i) for i in valid)}")

    def on_sync_error(self, exc: Exception) -> None:
        print(f"Sync failed: {exc}")
        print("Input is locked. Enter 's' to re-read the shared state or 'r' to reset.")

    def on_move_rejected(self, pit_index: int, exc: InvalidMove) -> None:
        print(str(exc))


def print_help() -> None:
    print("Controls: 0-5 / 7-12 = play pit, Enter = refresh, s = resync, r = reset, q = quit, h = help.")
    print("Player 1 owns pits 0-5 (store 6), Player 2 owns pits 7-12 (store 13).")


def read_command(prompt: str) -> str:
    try:
        return input(prompt).strip().lower()
    except EOFError:
        print()
        return "q"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Synced Mancala terminal viewer")
    add_sync_arguments(parser)
    parser.add_argument("--log-level", default=None, help="logging level (default: $LOG_LEVEL or INFO)")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    try:
        config = config_from_args(args, SyncConfig.from_env())
    except ValueError as exc:
        print(str(exc))
        return 2

    try:
        channel = open_channel(config)
    except ChannelUnavailable as exc:
        print(str(exc))
        return 1

    sink: TelemetrySink = NullTelemetrySink()
    if config.telemetry is not None:
        sink = ThreadedTCPSink(*config.telemetry)

    view = TerminalView()
    coordinator = build_coordinator(config, channel, view, sink)
    try:
        try:
            coordinator.bootstrap(config.bootstrap_timeout_s)
        except ChannelUnavailable as exc:
            print(f"Could not join instance {config.instance!r}: {exc}")
            return 1

        print(f"Joined instance {config.instance!r}. Enter h for help.")
        while True:
            channel.pump()
            state = coordinator.state
            raw = read_command(f"Player {state.current_player} move (h=help): ")
            channel.pump()

            if raw in {"q", "quit"}:
                return 0
            if raw in {"h", "help"}:
                print_help()
                continue
            if raw == "":
                view.render_state(coordinator.state)
                continue
            if raw in {"r", "reset"}:
                coordinator.handle_reset()
                continue
            if raw in {"s", "sync"}:
                outcome = coordinator.resync()
                if outcome == RESYNC_EMPTY:
                    print("Nothing stored for this instance yet.")
                elif outcome == RESYNC_INVALID:
                    print("The stored state for this instance is invalid; keeping the local board.")
                continue

            if not raw.isdigit():
                print("Please enter a pit number, or a command.")
                continue
            was_locked = coordinator.locked
            if not coordinator.handle_local_input(int(raw)) and was_locked:
                print("Input locked while syncing.")
    finally:
        coordinator.detach()
        close = getattr(channel, "close", None)
        if close is not None:
            close()
        sink.close()


if __name__ == "__main__":
    raise SystemExit(main())
