"""PySide6 viewer for synced Mancala."""

from __future__ import annotations

import argparse
import sys
from typing import Dict, List, Optional

from PySide6.QtCore import Qt, QSettings, QTimer, Slot
from PySide6.QtGui import QFont
from PySide6.QtWidgets import (
    QApplication,
    QButtonGroup,
    QFrame,
    QGridLayout,
    QHBoxLayout,
    QLabel,
    QMainWindow,
    QPushButton,
    QVBoxLayout,
    QWidget,
)

from mancala_channel import ChannelUnavailable
from mancala_config import DEFAULT_INSTANCE, SyncConfig, add_sync_arguments, config_from_args
from mancala_engine import (
    DRAW,
    HIGHLIGHT_NEUTRAL,
    PITS_ONE,
    PITS_TWO,
    STORE_ONE,
    STORE_TWO,
    GameState,
    pit_highlights,
)
from mancala_logging import configure_logging
from mancala_sync import SyncCoordinator, build_coordinator, open_channel
from mancala_telemetry import NullTelemetrySink, TelemetrySink, ThreadedTCPSink

PUMP_INTERVAL_MS = 50
SETTINGS_ORG = "mancala_sync"
SETTINGS_APP = "viewer"


class PitButton(QPushButton):
    def __init__(self, index: int, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self.index = index
        self.setProperty("highlight", HIGHLIGHT_NEUTRAL)
        self.setCursor(Qt.PointingHandCursor)
        self.setMinimumSize(64, 64)

    def set_highlight(self, highlight: str) -> None:
        if self.property("highlight") == highlight:
            return
        self.setProperty("highlight", highlight)
        self.style().unpolish(self)
        self.style().polish(self)


class StoreWidget(QFrame):
    def __init__(self, title: str, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self.setObjectName("Store")
        layout = QVBoxLayout(self)
        layout.setContentsMargins(12, 12, 12, 12)
        layout.setSpacing(6)

        self.title_label = QLabel(title)
        self.title_label.setObjectName("StoreLabel")
        self.title_label.setAlignment(Qt.AlignCenter)

        self.count_label = QLabel("00")
        self.count_label.setObjectName("StoreCount")
        self.count_label.setAlignment(Qt.AlignCenter)

        layout.addWidget(self.title_label)
        layout.addWidget(self.count_label)

    def set_count(self, value: int) -> None:
        self.count_label.setText(f"{value:02d}")


class MancalaWindow(QMainWindow):
    def __init__(self, settings: Optional[QSettings] = None) -> None:
        super().__init__()
        self.setWindowTitle("Mancala")
        self.setMinimumSize(820, 360)

        self.settings = settings if settings is not None else QSettings(SETTINGS_ORG, SETTINGS_APP)
        self.coordinator: Optional[SyncCoordinator] = None
        self.channel = None
        self.pit_buttons: Dict[int, PitButton] = {}
        self.last_error: Optional[str] = None
        self.render_count = 0

        self._build_ui()
        self._apply_style()
        self._load_persistent_settings()

        self.pump_timer = QTimer(self)
        self.pump_timer.setInterval(PUMP_INTERVAL_MS)
        self.pump_timer.timeout.connect(self._pump_channel)

    def _build_ui(self) -> None:
        root = QWidget(self)
        self.setCentralWidget(root)
        main_layout = QHBoxLayout(root)
        main_layout.setContentsMargins(18, 18, 18, 18)
        main_layout.setSpacing(16)

        board_frame = QFrame()
        board_frame.setObjectName("Board")
        grid_layout = QGridLayout(board_frame)
        grid_layout.setContentsMargins(12, 12, 12, 12)
        grid_layout.setSpacing(12)

        self.store_two = StoreWidget("P2 STORE")
        grid_layout.addWidget(self.store_two, 0, 0, 2, 1)
        self.store_one = StoreWidget("P1 STORE")
        grid_layout.addWidget(self.store_one, 0, 7, 2, 1)

        # One dispatch point for every pit, keyed by board index.
        self.pit_group = QButtonGroup(self)
        for col, index in enumerate(reversed(PITS_TWO), start=1):
            button = PitButton(index)
            grid_layout.addWidget(button, 0, col)
            self.pit_group.addButton(button, index)
            self.pit_buttons[index] = button
        for col, index in enumerate(PITS_ONE, start=1):
            button = PitButton(index)
            grid_layout.addWidget(button, 1, col)
            self.pit_group.addButton(button, index)
            self.pit_buttons[index] = button
        self.pit_group.idClicked.connect(self.on_pit_activated)

        side_widget = QFrame()
        side_widget.setObjectName("SidePanel")
        side_panel = QVBoxLayout(side_widget)
        side_panel.setContentsMargins(12, 12, 12, 12)
        side_panel.setSpacing(12)

        instance_header = QLabel("Instance")
        instance_header.setObjectName("SideHeader")
        side_panel.addWidget(instance_header)

        self.instance_label = QLabel("-")
        self.instance_label.setWordWrap(True)
        side_panel.addWidget(self.instance_label)

        self.status_label = QLabel("Waiting for state...")
        self.status_label.setObjectName("Status")
        self.status_label.setWordWrap(True)
        side_panel.addWidget(self.status_label)

        self.reset_button = QPushButton("Reset")
        self.reset_button.setObjectName("Reset")
        self.reset_button.clicked.connect(self.on_reset_activated)
        side_panel.addWidget(self.reset_button)

        self.resync_button = QPushButton("Resync")
        self.resync_button.clicked.connect(self.on_resync_activated)
        side_panel.addWidget(self.resync_button)

        self.error_label = QLabel("")
        self.error_label.setObjectName("SyncError")
        self.error_label.setWordWrap(True)
        self.error_label.hide()
        side_panel.addWidget(self.error_label)

        side_panel.addStretch(1)

        main_layout.addWidget(board_frame, 3)
        main_layout.addWidget(side_widget, 1)

    def _apply_style(self) -> None:
        app = QApplication.instance()
        if app is not None:
            app.setStyle("Fusion")
            app.setFont(QFont("Avenir", 11))

        self.setStyleSheet(
            """
            QMainWindow {
                background: qlineargradient(x1:0, y1:0, x2:0, y2:1,
                    stop:0 #2f5d43, stop:1 #3f7356);
            }
            QLabel { color: #f7f3ea; }
            QLabel#SideHeader { font-weight: 600; margin-top: 8px; }
            QLabel#Status { color: #f2e8d7; font-weight: 600; }
            QLabel#SyncError { color: #ffb4a2; font-weight: 600; }
            QFrame#Board {
                background: #8b4513;
                border-radius: 18px;
            }
            QFrame#SidePanel {
                background: rgba(15, 28, 20, 0.35);
                border: 1px solid rgba(255, 255, 255, 0.08);
                border-radius: 14px;
            }
            QFrame#Store {
                background: #4a3520;
                border-radius: 28px;
                border: 2px solid #2f2114;
            }
            QLabel#StoreLabel { font-size: 12px; letter-spacing: 1px; }
            QLabel#StoreCount { font-size: 28px; font-weight: 700; color: #fff7e6; }
            QPushButton {
                background: #654321;
                border: 2px solid #4a3520;
                border-radius: 28px;
                min-height: 56px;
                min-width: 56px;
                color: #f7f3ea;
                font-weight: 600;
            }
            QPushButton[highlight="valid"] {
                background: #76f250;
                border: 3px solid #2f7a45;
                color: #1d2a14;
            }
            QPushButton[highlight="inactive"] {
                background: #888888;
                border-color: #6b6b6b;
            }
            QPushButton#Reset {
                background: #cc3333;
                border-color: #8f2020;
                border-radius: 10px;
                min-height: 36px;
            }
            """
        )

    def bind(self, coordinator: SyncCoordinator, channel) -> None:
        self.coordinator = coordinator
        self.channel = channel
        self.instance_label.setText(coordinator.session.instance)
        self.pump_timer.start()
        self.render_state(coordinator.state)

    @Slot(int)
    def on_pit_activated(self, index: int) -> None:
        if self.coordinator is None:
            return
        self.coordinator.handle_local_input(index)

    @Slot()
    def on_reset_activated(self) -> None:
        if self.coordinator is None:
            return
        self.coordinator.handle_reset()

    @Slot()
    def on_resync_activated(self) -> None:
        if self.coordinator is None:
            return
        self.coordinator.resync()

    def render_state(self, state: GameState) -> None:
        self.render_count += 1
        self.store_one.set_count(state.pits[STORE_ONE])
        self.store_two.set_count(state.pits[STORE_TWO])

        highlights = pit_highlights(state)
        for index, button in self.pit_buttons.items():
            button.setText(f"{state.pits[index]:02d}")
            button.set_highlight(highlights[index])

        if state.game_over:
            if state.winner == DRAW:
                self.status_label.setText("Game over: draw")
            else:
                self.status_label.setText(f"Game over: player {state.winner} wins")
        else:
            self.status_label.setText(f"Player {state.current_player} to move")

        if self.coordinator is None or not self.coordinator.session.stuck:
            self.last_error = None
            self.error_label.hide()

    def on_sync_error(self, exc: Exception) -> None:
        self.last_error = str(exc)
        self.error_label.setText(f"Sync failed: {exc}\nResync or reset to continue.")
        self.error_label.show()

    def _pump_channel(self) -> None:
        if self.channel is not None:
            self.channel.pump()

    def stored_instance(self) -> Optional[str]:
        value = self.settings.value("sync/instance")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def _load_persistent_settings(self) -> None:
        geometry = self.settings.value("window/geometry")
        if geometry is not None:
            self.restoreGeometry(geometry)

    def _save_persistent_settings(self) -> None:
        self.settings.setValue("window/geometry", self.saveGeometry())
        if self.coordinator is not None:
            self.settings.setValue("sync/instance", self.coordinator.session.instance)
        self.settings.sync()

    def closeEvent(self, event) -> None:
        self.pump_timer.stop()
        self._save_persistent_settings()
        if self.coordinator is not None:
            self.coordinator.detach()
        super().closeEvent(event)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Synced Mancala desktop viewer")
    add_sync_arguments(parser)
    parser.add_argument("--log-level", default=None, help="logging level (default: $LOG_LEVEL or INFO)")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    app = QApplication(sys.argv[:1])
    window = MancalaWindow()

    try:
        base = SyncConfig.from_env()
    except ValueError as exc:
        print(str(exc))
        return 2
    stored = window.stored_instance()
    if base.instance == DEFAULT_INSTANCE and stored is not None:
        base = base.replace(instance=stored)
    config = config_from_args(args, base)

    try:
        channel = open_channel(config)
    except ChannelUnavailable as exc:
        print(str(exc))
        return 1

    sink: TelemetrySink = NullTelemetrySink()
    if config.telemetry is not None:
        sink = ThreadedTCPSink(*config.telemetry)

    coordinator = build_coordinator(config, channel, window, sink)
    try:
        try:
            coordinator.bootstrap(config.bootstrap_timeout_s)
        except ChannelUnavailable as exc:
            print(f"Could not join instance {config.instance!r}: {exc}")
            return 1
        window.bind(coordinator, channel)
        window.show()
        return app.exec()
    finally:
        close = getattr(channel, "close", None)
        if close is not None:
            close()
        sink.close()


if __name__ == "__main__":
    raise SystemExit(main())
