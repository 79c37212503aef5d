"""Telemetry schema and sinks for Mancala sync instrumentation."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple
import json
import socket
import threading
import time

SINK_QUEUE_SIZE = 1024
SINK_RECONNECT_DELAY_S = 0.25


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TelemetryEnvelope:
    event: str
    ts_ms: int
    data: Dict[str, Any]


@dataclass(frozen=True)
class MoveAppliedEvent:
    instance: str
    player: int
    pit_index: int
    landing_index: int
    capture: bool
    extra_turn: bool
    game_over: bool
    pits: List[int]


@dataclass(frozen=True)
class MoveRejectedEvent:
    instance: str
    player: int
    pit_index: int
    reason: str


@dataclass(frozen=True)
class InputDroppedEvent:
    instance: str
    pit_index: Optional[int]


@dataclass(frozen=True)
class SnapshotPublishedEvent:
    instance: str
    key: str
    size_bytes: int


@dataclass(frozen=True)
class RemoteAppliedEvent:
    instance: str
    key: str
    current_player: int
    game_over: bool


@dataclass(frozen=True)
class DecodeFailedEvent:
    instance: str
    key: str
    error: str


@dataclass(frozen=True)
class ChannelErrorEvent:
    instance: str
    operation: str
    error: str


@dataclass(frozen=True)
class ResetEvent:
    instance: str


class TelemetrySink(Protocol):
    def emit(self, envelope: TelemetryEnvelope) -> None:
        ...

    def close(self) -> None:
        ...


class NullTelemetrySink:
    def emit(self, envelope: TelemetryEnvelope) -> None:
        _ = envelope

    def close(self) -> None:
        return


class CallbackTelemetrySink:
    def __init__(self, callback: Callable[[TelemetryEnvelope], None]) -> None:
        self._callback = callback

    def emit(self, envelope: TelemetryEnvelope) -> None:
        self._callback(envelope)

    def close(self) -> None:
        return


class QueueTelemetrySink:
    def __init__(self, queue: "Queue[TelemetryEnvelope]") -> None:
        self._queue = queue

    def emit(self, envelope: TelemetryEnvelope) -> None:
        self._queue.put(envelope)

    def close(self) -> None:
        return


class ThreadedTCPSink:
    """Non-blocking JSONL sink that writes in a background thread."""

    def __init__(self, host: str, port: int) -> None:
        self._host = host
        self._port = port
        self._queue: Queue[TelemetryEnvelope] = Queue(maxsize=SINK_QUEUE_SIZE)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="mancala-telemetry-sender", daemon=True)
        self._thread.start()

    def emit(self, envelope: TelemetryEnvelope) -> None:
        if self._stop.is_set():
            return
        try:
            self._queue.put_nowait(envelope)
            return
        except Full:
            pass

        # Drop oldest when saturated to keep recent telemetry flowing.
        try:
            _ = self._queue.get_nowait()
        except Empty:
            pass
        try:
            self._queue.put_nowait(envelope)
        except Full:
            return

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=0.5)

    def _run(self) -> None:
        conn: Optional[socket.socket] = None
        while not self._stop.is_set():
            if conn is None:
                conn = self._try_connect()
                if conn is None:
                    time.sleep(SINK_RECONNECT_DELAY_S)
                    continue
            try:
                envelope = self._queue.get(timeout=0.1)
            except Empty:
                continue
            payload = {
                "event": envelope.event,
                "ts_ms": envelope.ts_ms,
                "data": envelope.data,
            }
            try:
                line = json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"
                conn.sendall(line)
            except OSError:
                try:
                    conn.close()
                except OSError:
                    pass
                conn = None
        if conn is not None:
            try:
                conn.close()
            except OSError:
                pass

    def _try_connect(self) -> Optional[socket.socket]:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(0.3)
        try:
            sock.connect((self._host, self._port))
        except OSError:
            sock.close()
            return None
        sock.settimeout(None)
        return sock


def emit_event(sink: Optional[TelemetrySink], event: str, payload: Mapping[str, Any]) -> None:
    if sink is None:
        return
    envelope = TelemetryEnvelope(event=event, ts_ms=now_ms(), data=dict(payload))
    try:
        sink.emit(envelope)
    except Exception:
        return


def emit_dataclass_event(sink: Optional[TelemetrySink], event: str, payload_obj: object) -> None:
    emit_event(sink, event, asdict(payload_obj))


def parse_host_port(value: str) -> Optional[Tuple[str, int]]:
    raw = value.strip()
    if not raw:
        return None
    if ":" not in raw:
        return None
    host, port_raw = raw.rsplit(":", 1)
    host = host.strip()
    if not host:
        return None
    try:
        port = int(port_raw)
    except ValueError:
        return None
    if port <= 0 or port > 65535:
        return None
    return host, port
