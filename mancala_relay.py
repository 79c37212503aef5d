"""JSON-lines TCP relay acting as the shared key-value store between viewers.

Wire format, one JSON object per line:

  client -> relay   {"op": "hello"}
                    {"op": "set", "key": str, "value": str}
                    {"op": "get", "id": int, "key": str}
  relay -> client   {"op": "welcome", "viewer": str}
                    {"op": "value", "id": int, "key": str, "value": str | null}
                    {"op": "changed", "key": str, "value": str}

Every ``set`` is broadcast as ``changed`` to all connected clients, the
writer included, in the order the relay applied the writes.
"""

from __future__ import annotations

import argparse
import json
import logging
import socket
import socketserver
import threading
import time
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Tuple

from mancala_channel import ChangeCallback, ChannelUnavailable, Unsubscribe
from mancala_logging import configure_logging
from mancala_telemetry import parse_host_port

LOGGER = logging.getLogger(__name__)

DEFAULT_BIND = "127.0.0.1:8765"
WRITER_JOIN_TIMEOUT_S = 1.0


def _encode_line(message: Dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"


def _decode_line(raw: bytes) -> Optional[Dict[str, Any]]:
    try:
        message = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(message, dict):
        return None
    return message


class _RelayHandler(socketserver.StreamRequestHandler):
    server: "RelayServer"

    def setup(self) -> None:
        super().setup()
        self.viewer_id: Optional[str] = None
        self.outbox: "Queue[Optional[bytes]]" = Queue()
        self.writer = threading.Thread(target=self._drain_outbox, name="mancala-relay-writer", daemon=True)
        self.writer.start()
        self.server.register(self)

    def handle(self) -> None:
        try:
            self._serve_lines()
        except OSError as exc:
            LOGGER.info("relay: connection from %s dropped: %s", self.client_address, exc)

    def _serve_lines(self) -> None:
        for raw in self.rfile:
            if not raw.strip():
                continue
            message = _decode_line(raw)
            if message is None:
                LOGGER.warning("relay: dropping malformed line from %s", self.client_address)
                continue
            op = message.get("op")
            if op == "hello":
                self.viewer_id = self.server.assign_viewer_id()
                self.send({"op": "welcome", "viewer": self.viewer_id})
            elif op == "set":
                key = message.get("key")
                value = message.get("value")
                if not isinstance(key, str) or not isinstance(value, str):
                    LOGGER.warning("relay: invalid set from %s", self.client_address)
                    continue
                self.server.store(key, value)
            elif op == "get":
                key = message.get("key")
                if not isinstance(key, str):
                    LOGGER.warning("relay: invalid get from %s", self.client_address)
                    continue
                self.send({"op": "value", "id": message.get("id"), "key": key, "value": self.server.lookup(key)})
            else:
                LOGGER.warning("relay: unknown op %r from %s", op, self.client_address)

    def finish(self) -> None:
        self.server.unregister(self)
        self.outbox.put(None)
        self.writer.join(timeout=WRITER_JOIN_TIMEOUT_S)
        super().finish()

    def send(self, message: Dict[str, Any]) -> None:
        """Queue ``message`` for this client; never blocks on the socket."""
        self.outbox.put(_encode_line(message))

    def _drain_outbox(self) -> None:
        while True:
            line = self.outbox.get()
            if line is None:
                return
            try:
                self.request.sendall(line)
            except OSError as exc:
                LOGGER.warning("relay: failed to notify %s: %s", self.viewer_id or self.client_address, exc)
                return


class RelayServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address: Tuple[str, int]) -> None:
        super().__init__(address, _RelayHandler)
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}
        self._clients: List[_RelayHandler] = []
        self._viewer_counter = 0

    @property
    def address(self) -> Tuple[str, int]:
        host, port = self.server_address[:2]
        return str(host), int(port)

    def register(self, handler: _RelayHandler) -> None:
        with self._lock:
            self._clients.append(handler)
        LOGGER.info("relay: client connected from %s", handler.client_address)

    def unregister(self, handler: _RelayHandler) -> None:
        with self._lock:
            if handler in self._clients:
                self._clients.remove(handler)
        LOGGER.info("relay: client %s disconnected", handler.viewer_id or handler.client_address)

    def assign_viewer_id(self) -> str:
        with self._lock:
            self._viewer_counter += 1
            return f"viewer-{self._viewer_counter}"

    def store(self, key: str, value: str) -> None:
        # Writes and their enqueueing are serialized so every client sees the same order.
        with self._lock:
            self._values[key] = value
            message = {"op": "changed", "key": key, "value": value}
            for client in self._clients:
                client.send(message)

    def lookup(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def serve_in_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.serve_forever, name="mancala-relay", daemon=True)
        thread.start()
        return thread


class RelayChannel:
    """Client side of the relay; notifications are queued until :meth:`pump`."""

    def __init__(
        self,
        host: str,
        port: int,
        connect_timeout_s: float = 3.0,
        read_timeout_s: float = 5.0,
    ) -> None:
        self._host = host
        self._port = port
        self._connect_timeout_s = connect_timeout_s
        self._read_timeout_s = read_timeout_s
        self._sock: Optional[socket.socket] = None
        self._reader: Optional[threading.Thread] = None
        self._send_lock = threading.Lock()
        self._notifications: "Queue[Tuple[str, Optional[str]]]" = Queue()
        self._replies: "Queue[Optional[Dict[str, Any]]]" = Queue()
        self._callbacks: Dict[int, ChangeCallback] = {}
        self._next_token = 1
        self._next_request = 1
        self._viewer_id: Optional[str] = None
        self._connected = False
        self._closing = threading.Event()

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> "RelayChannel":
        try:
            sock = socket.create_connection((self._host, self._port), timeout=self._connect_timeout_s)
        except OSError as exc:
            raise ChannelUnavailable(f"cannot reach relay at {self._host}:{self._port}: {exc}") from exc
        sock.settimeout(None)
        self._sock = sock
        self._connected = True
        self._closing.clear()
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(sock,),
            name="mancala-relay-reader",
            daemon=True,
        )
        self._reader.start()
        self._send({"op": "hello"})
        return self

    def local_viewer_id(self) -> Optional[str]:
        return self._viewer_id

    def publish(self, key: str, record: str) -> None:
        self._send({"op": "set", "key": key, "value": record})

    def read_current(self, key: str) -> Optional[str]:
        request_id = self._next_request
        self._next_request += 1
        self._send({"op": "get", "id": request_id, "key": key})

        deadline = time.monotonic() + self._read_timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ChannelUnavailable(f"timed out reading {key}")
            try:
                reply = self._replies.get(timeout=remaining)
            except Empty:
                raise ChannelUnavailable(f"timed out reading {key}") from None
            if reply is None:
                raise ChannelUnavailable("relay connection closed")
            if reply.get("id") == request_id:
                value = reply.get("value")
                return value if isinstance(value, str) else None

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe:
        token = self._next_token
        self._next_token += 1
        self._callbacks[token] = callback

        def _unsubscribe() -> None:
            self._callbacks.pop(token, None)

        return _unsubscribe

    def pump(self, max_events: Optional[int] = None) -> int:
        delivered = 0
        while max_events is None or delivered < max_events:
            try:
                key, value = self._notifications.get_nowait()
            except Empty:
                break
            for callback in list(self._callbacks.values()):
                callback(key, value)
            delivered += 1
        return delivered

    def close(self) -> None:
        self._closing.set()
        sock = self._sock
        self._sock = None
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                sock.close()
            except OSError:
                pass
        if self._reader is not None:
            self._reader.join(timeout=0.5)
            self._reader = None

    def _send(self, message: Dict[str, Any]) -> None:
        sock = self._sock
        if sock is None or not self._connected:
            raise ChannelUnavailable("relay channel is not connected")
        line = _encode_line(message)
        with self._send_lock:
            try:
                sock.sendall(line)
            except OSError as exc:
                self._connected = False
                raise ChannelUnavailable(f"relay write failed: {exc}") from exc

    def _read_loop(self, sock: socket.socket) -> None:
        try:
            with sock.makefile("rb") as stream:
                for raw in stream:
                    if not raw.strip():
                        continue
                    message = _decode_line(raw)
                    if message is None:
                        LOGGER.warning("relay channel: dropping malformed line")
                        continue
                    op = message.get("op")
                    if op == "welcome":
                        self._viewer_id = str(message.get("viewer"))
                    elif op == "changed":
                        key = message.get("key")
                        value = message.get("value")
                        if isinstance(key, str):
                            self._notifications.put((key, value if isinstance(value, str) else None))
                    elif op == "value":
                        self._replies.put(message)
        except OSError as exc:
            if not self._closing.is_set():
                LOGGER.warning("relay channel: connection lost: %s", exc)
        finally:
            self._connected = False
            self._replies.put(None)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Shared-state relay for synced Mancala viewers")
    parser.add_argument("--bind", default=DEFAULT_BIND, help=f"HOST:PORT to listen on (default: {DEFAULT_BIND})")
    parser.add_argument("--log-level", default=None, help="logging level (default: $LOG_LEVEL or INFO)")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    address = parse_host_port(args.bind)
    if address is None:
        print(f"--bind must be HOST:PORT, got {args.bind!r}")
        return 2

    try:
        server = RelayServer(address)
    except OSError as exc:
        print(f"cannot listen on {args.bind}: {exc}")
        return 1

    LOGGER.info("relay: listening on %s:%d", *server.address)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
