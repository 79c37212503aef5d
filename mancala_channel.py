"""Shared key-value channel contract and an in-process implementation."""

from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Dict, Optional, Protocol, Tuple

ChangeCallback = Callable[[str, Optional[str]], None]
Unsubscribe = Callable[[], None]


class ChannelUnavailable(RuntimeError):
    """The shared channel could not be read or written."""


class SharedChannel(Protocol):
    def publish(self, key: str, record: str) -> None:
        ...

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe:
        ...

    def read_current(self, key: str) -> Optional[str]:
        ...

    def pump(self, max_events: Optional[int] = None) -> int:
        ...


class ViewerHost(Protocol):
    def local_viewer_id(self) -> Optional[str]:
        ...


class StaticViewerHost:
    def __init__(self, viewer_id: Optional[str]) -> None:
        self.viewer_id = viewer_id

    def local_viewer_id(self) -> Optional[str]:
        return self.viewer_id


class SpaceStateStore:
    """Process-local stand-in for a platform's shared space-state properties.

    Writes land immediately, but change notifications are queued and only
    delivered by :meth:`pump`, in the order the writes happened. Several
    viewers publishing before anyone pumps therefore resolve to whichever
    write came last.
    """

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}
        self._subscribers: Dict[int, ChangeCallback] = {}
        self._pending: Deque[Tuple[int, str, Optional[str]]] = deque()
        self._next_token = 1
        self.available = True

    def set(self, key: str, value: str) -> None:
        if not self.available:
            raise ChannelUnavailable(f"cannot publish {key}: store unavailable")
        self._values[key] = value
        for token in list(self._subscribers):
            self._pending.append((token, key, value))

    def get(self, key: str) -> Optional[str]:
        if not self.available:
            raise ChannelUnavailable(f"cannot read {key}: store unavailable")
        return self._values.get(key)

    def add_subscriber(self, callback: ChangeCallback) -> int:
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = callback
        return token

    def remove_subscriber(self, token: int) -> None:
        self._subscribers.pop(token, None)
        self._pending = deque(item for item in self._pending if item[0] != token)

    def pending_count(self) -> int:
        return len(self._pending)

    def pump(self, max_events: Optional[int] = None) -> int:
        delivered = 0
        while self._pending:
            if max_events is not None and delivered >= max_events:
                break
            token, key, value = self._pending.popleft()
            callback = self._subscribers.get(token)
            if callback is None:
                continue
            callback(key, value)
            delivered += 1
        return delivered

    def channel(self, viewer_id: Optional[str] = "local") -> "LocalChannel":
        return LocalChannel(self, viewer_id)


class LocalChannel:
    """One viewer's handle on a :class:`SpaceStateStore`.

    Also acts as the viewer's host: ``viewer_id`` stays None until the
    identity is known, which is what bootstrap waits on.
    """

    def __init__(self, store: SpaceStateStore, viewer_id: Optional[str] = "local") -> None:
        self.store = store
        self.viewer_id = viewer_id

    def publish(self, key: str, record: str) -> None:
        self.store.set(key, record)

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe:
        token = self.store.add_subscriber(callback)

        def _unsubscribe() -> None:
            self.store.remove_subscriber(token)

        return _unsubscribe

    def read_current(self, key: str) -> Optional[str]:
        return self.store.get(key)

    def pump(self, max_events: Optional[int] = None) -> int:
        return self.store.pump(max_events)

    def local_viewer_id(self) -> Optional[str]:
        return self.viewer_id

    def close(self) -> None:
        return
