from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from deathcounter.notify import NotificationSink
from deathcounter.resilience import ResilientExecutor

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SupervisedConnection(Protocol):
    @property
    def destination(self) -> str:
        ...

    @property
    def is_connected(self) -> bool:
        ...

    def connect(self) -> bool:
        ...


def connect_till_made_it(
    connection: SupervisedConnection,
    *,
    interval_seconds: float,
    cancel: threading.Event,
    executor: Optional[ResilientExecutor] = None,
) -> bool:
    """
    Keep calling connection.connect() at a fixed interval until it reports connected.

    No backoff growth and no attempt limit; only ``cancel`` ends it early.
    """
    executor = executor or ResilientExecutor()
    wait_s = max(0.0, float(interval_seconds))
    while not cancel.is_set():
        if connection.is_connected:
            return True
        outcome = executor.execute(connection.connect)
        if (outcome.ok and outcome.value is not False) or connection.is_connected:
            return True
        if cancel.wait(wait_s):
            break
    return bool(connection.is_connected)


class WatchedConnection:
    def __init__(self, connection: SupervisedConnection, *, time_fn: Callable[[], float]) -> None:
        self.connection = connection
        self._time_fn = time_fn
        self._lock = threading.Lock()
        self._state = ConnectionState.CONNECTED if connection.is_connected else ConnectionState.DISCONNECTED
        self._reconnect_worker: Optional[threading.Thread] = None
        self._last_changed = time_fn()

    @property
    def destination(self) -> str:
        return str(getattr(self.connection, "destination", "") or "Unknown")

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def last_changed(self) -> float:
        with self._lock:
            return self._last_changed

    @property
    def reconnect_worker(self) -> Optional[threading.Thread]:
        with self._lock:
            return self._reconnect_worker

    def has_reconnect_in_flight(self) -> bool:
        with self._lock:
            worker = self._reconnect_worker
        return worker is not None and worker.is_alive()

    def set_state(self, state: ConnectionState) -> None:
        with self._lock:
            if self._state != state:
                self._state = state
                self._last_changed = self._time_fn()

    def set_reconnect_worker(self, worker: Optional[threading.Thread]) -> None:
        with self._lock:
            self._reconnect_worker = worker

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "destination": self.destination,
                "state": self._state.value,
                "reconnect_in_flight": self._reconnect_worker is not None and self._reconnect_worker.is_alive(),
                "last_changed": self._last_changed,
            }


class ConnectionSupervisor:
    """
    Keeps registered connections alive.

    tick() is driven by the replay scheduler loop. A dropped connection gets exactly
    one background reconnect worker; the marker for it is cleared on the first tick
    that sees the connection back up.
    """

    def __init__(
        self,
        *,
        notifier: Optional[NotificationSink] = None,
        interval_seconds: float = 1.0,
        cancel: Optional[threading.Event] = None,
        executor: Optional[ResilientExecutor] = None,
        on_reconnect_initiated: Optional[Callable[[str], None]] = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._notifier = notifier or NotificationSink()
        self._interval_seconds = max(0.0, float(interval_seconds))
        self._cancel = cancel or threading.Event()
        self._executor = executor or ResilientExecutor()
        self._on_reconnect_initiated = on_reconnect_initiated
        self._time_fn = time_fn
        self._watched: List[WatchedConnection] = []
        self._watched_lock = threading.Lock()

    def add(self, connection: Optional[SupervisedConnection]) -> None:
        if connection is None:
            return
        watched = WatchedConnection(connection, time_fn=self._time_fn)
        with self._watched_lock:
            self._watched.append(watched)

    def _entries(self) -> List[WatchedConnection]:
        with self._watched_lock:
            return list(self._watched)

    def _find(self, destination: str) -> Optional[WatchedConnection]:
        for watched in self._entries():
            if watched.destination == destination:
                return watched
        return None

    def destinations(self) -> List[str]:
        return [watched.destination for watched in self._entries()]

    def state_of(self, destination: str) -> ConnectionState:
        watched = self._find(destination)
        if watched is None:
            return ConnectionState.DISCONNECTED
        return watched.state

    def is_connected(self, destination: str) -> bool:
        return self.state_of(destination) == ConnectionState.CONNECTED

    def snapshot(self) -> List[Dict[str, Any]]:
        return [watched.to_dict() for watched in self._entries()]

    def tick(self) -> None:
        for watched in self._entries():
            if watched.connection.is_connected:
                watched.set_state(ConnectionState.CONNECTED)
                watched.set_reconnect_worker(None)
                continue

            # A worker only exits early on cancel; treat a dead one as no marker.
            if watched.has_reconnect_in_flight():
                watched.set_state(ConnectionState.CONNECTING)
                continue

            if self._cancel.is_set():
                watched.set_state(ConnectionState.DISCONNECTED)
                continue

            watched.set_state(ConnectionState.CONNECTING)
            worker = threading.Thread(
                target=self._reconnect,
                args=(watched,),
                name=f"deathcounter-reconnect-{watched.destination}",
                daemon=True,
            )
            watched.set_reconnect_worker(worker)
            worker.start()
            self._reconnect_initiated(watched.destination)

    def _reconnect(self, watched: WatchedConnection) -> None:
        connected = connect_till_made_it(
            watched.connection,
            interval_seconds=self._interval_seconds,
            cancel=self._cancel,
            executor=self._executor,
        )
        if not connected:
            watched.set_state(ConnectionState.DISCONNECTED)
            logger.info("reconnect to %s abandoned (cancelled)", watched.destination)

    def _reconnect_initiated(self, destination: str) -> None:
        self._notifier.info(f"[ConnectionSupervisor] trying to reconnect to {destination}...")
        if callable(self._on_reconnect_initiated):
            try:
                self._on_reconnect_initiated(destination)
            except Exception:
                logger.exception("reconnect-initiated callback failed for %s", destination)

    def join(self, timeout: Optional[float] = None) -> None:
        for watched in self._entries():
            worker = watched.reconnect_worker
            if worker is not None and worker is not threading.current_thread():
                worker.join(timeout=timeout)
