"""
Realtime hub: in-process push channel for row changes and presence.

Architecture:
    - publish(ChangeEvent) enqueues; delivery happens in emission order
    - delivery "thread":   a daemon worker drains the queue continuously
    - delivery "deferred": events wait until drain() (end of each request, tests)
    - subscribers are keyed by table name; "*" receives every table
    - a failing subscriber is logged and skipped, never blocks the others
    - PresenceChannel keeps a keyed member map with join/leave/sync listeners
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
EVENT_TYPES = (INSERT, UPDATE, DELETE)

DELIVERY_MODES = ("thread", "deferred")

_STOP = object()


@dataclass(frozen=True)
class ChangeEvent:
    """A committed row change. `new` is absent for DELETE, `old` for INSERT."""

    table: str
    type: str
    new: dict | None = None
    old: dict | None = None

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown change type: {self.type}")


class Subscription:
    """Handle returned by RealtimeHub.subscribe()."""

    def __init__(self, hub: "RealtimeHub", table: str, callback: Callable[[ChangeEvent], None]):
        self._hub = hub
        self.table = table
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._hub._remove(self)
            self.active = False

    def __repr__(self):
        return f"<Subscription {self.table} active={self.active}>"


# ═══════════════════════════════════════════════════════════════════════════
#  Presence
# ═══════════════════════════════════════════════════════════════════════════


class PresenceChannel:
    """Shared presence state keyed by member key (user id)."""

    def __init__(self, name: str):
        self.name = name
        self._members: dict[str, dict] = {}
        self._listeners: dict[str, list] = {"join": [], "leave": [], "sync": []}
        self._lock = threading.RLock()

    def on(self, event: str, callback: Callable) -> Callable[[], None]:
        """Register a listener; returns a function that removes it.

        join/leave listeners receive (key, meta); sync listeners the full
        member map.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown presence event: {event}")
        with self._lock:
            self._listeners[event].append(callback)

        def _off():
            with self._lock:
                if callback in self._listeners[event]:
                    self._listeners[event].remove(callback)

        return _off

    def track(self, key: str, meta: dict | None = None) -> None:
        with self._lock:
            self._members[key] = dict(meta or {})
        self._emit("join", key, meta or {})
        self._emit("sync", self.state())

    def untrack(self, key: str) -> None:
        with self._lock:
            meta = self._members.pop(key, None)
        if meta is None:
            return
        self._emit("leave", key, meta)
        self._emit("sync", self.state())

    def state(self) -> dict:
        with self._lock:
            return {k: dict(v) for k, v in self._members.items()}

    def _emit(self, event, *args):
        with self._lock:
            listeners = list(self._listeners[event])
        for cb in listeners:
            try:
                cb(*args)
            except Exception:
                logger.exception("Presence listener failed on %s/%s", self.name, event)


# ═══════════════════════════════════════════════════════════════════════════
#  Hub
# ═══════════════════════════════════════════════════════════════════════════


class RealtimeHub:
    """Fan-out of committed row changes to in-process subscribers."""

    def __init__(self, delivery: str = "thread"):
        if delivery not in DELIVERY_MODES:
            raise ValueError(f"Unknown delivery mode: {delivery}")
        self.delivery = delivery
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._presence: dict[str, PresenceChannel] = {}
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None]) -> Subscription:
        sub = Subscription(self, table, callback)
        with self._lock:
            self._subscriptions[table].append(sub)
        logger.debug("Subscribed to %s (%d listeners)", table, len(self._subscriptions[table]))
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.table, [])
            if sub in subs:
                subs.remove(sub)

    def subscriber_count(self, table: str | None = None) -> int:
        with self._lock:
            if table is not None:
                return len(self._subscriptions.get(table, []))
            return sum(len(v) for v in self._subscriptions.values())

    # ── Presence ─────────────────────────────────────────────────────────

    def presence(self, name: str) -> PresenceChannel:
        with self._lock:
            channel = self._presence.get(name)
            if channel is None:
                channel = self._presence[name] = PresenceChannel(name)
            return channel

    # ── Publishing / delivery ────────────────────────────────────────────

    def publish(self, event: ChangeEvent) -> None:
        self._queue.put(event)

    def pending(self) -> int:
        return self._queue.qsize()

    def clear(self) -> int:
        """Drop queued events without delivering them."""
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return dropped
            dropped += 1

    def drain(self) -> int:
        """Deliver every queued event on the calling thread; returns how many.

        Events published by subscribers while draining are delivered in the
        same call.
        """
        delivered = 0
        with self._drain_lock:
            while True:
                try:
                    event = self._queue.get_nowait()
                except queue.Empty:
                    return delivered
                if event is _STOP:
                    continue
                self._deliver(event)
                delivered += 1

    def _deliver(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = list(self._subscriptions.get(event.table, [])) + list(self._subscriptions.get("*", []))
        for sub in targets:
            if not sub.active:
                continue
            try:
                sub.callback(event)
            except Exception:
                logger.exception("Realtime subscriber failed for %s %s", event.table, event.type)

    # ── Worker lifecycle ─────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.delivery != "thread" or self.running:
            return
        self._thread = threading.Thread(target=self._run, name="realtime-hub", daemon=True)
        self._thread.start()
        logger.info("Realtime hub worker started")

    def stop(self, timeout: float = 5.0) -> None:
        if not self.running:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info("Realtime hub worker stopped")

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            with self._drain_lock:
                self._deliver(event)
