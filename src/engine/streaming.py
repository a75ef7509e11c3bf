# src/engine/streaming.py
"""
Progress streaming: a publish/subscribe hub that fans scan events out to
connected clients, and a reconnecting client that restores its
subscriptions after a dropped connection.

Topics are "scan:<id>", "container:<id>" and "notifications:<user_id>".
Delivery is best effort and at most once: a subscriber that is not connected
when an event is published never sees it and must read the scan log history.
Each connection has a single ordered queue, so events published on one topic
reach every subscriber in publish order.
"""
import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Set

from engine.config import settings
from engine.errors import AuthorizationError, TransportError

EVENT_SCAN_PROGRESS = "scan_progress"
EVENT_CONTAINER_STATUS = "container_status"
EVENT_NOTIFICATION = "notification"
EVENT_SCAN_COMPLETE = "scan_complete"
EVENT_SCAN_ERROR = "scan_error"

EVENT_TYPES = (
    EVENT_SCAN_PROGRESS,
    EVENT_CONTAINER_STATUS,
    EVENT_NOTIFICATION,
    EVENT_SCAN_COMPLETE,
    EVENT_SCAN_ERROR,
)

TOPIC_KINDS = ("scan", "container", "notifications")


def scan_topic(scan_id: str) -> str:
    return f"scan:{scan_id}"


def container_topic(container_id: str) -> str:
    return f"container:{container_id}"


def notifications_topic(user_id: str) -> str:
    return f"notifications:{user_id}"


def parse_topic(topic: str):
    kind, sep, ident = (topic or "").partition(":")
    if not sep or kind not in TOPIC_KINDS or not ident:
        raise ValueError(f"Invalid topic: {topic!r}")
    return kind, ident


@dataclass(frozen=True)
class StreamEvent:
    type: str
    topic: str
    data: Any
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.type}")

    def to_dict(self) -> dict:
        return {"type": self.type, "topic": self.topic, "data": self.data, "timestamp": self.timestamp}


class Connection:
    """One subscriber connection with its own ordered delivery queue."""

    def __init__(self, hub: "ConnectionHub", user_id: str, connection_id: str, queue_size: int):
        self.hub = hub
        self.user_id = user_id
        self.id = connection_id
        self.topics: Set[str] = set()
        self._queue = queue.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        self._close_callbacks: List[Callable[["Connection"], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def subscribe(self, topic: str):
        self.hub.subscribe(self.id, topic)

    def unsubscribe(self, topic: str):
        self.hub.unsubscribe(self.id, topic)

    def on_close(self, callback: Callable[["Connection"], None]):
        self._close_callbacks.append(callback)

    def close(self):
        self.hub.disconnect(self.id)

    def offer(self, item) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(item)
            return True
        except queue.Full:
            return False

    def reply(self, message: dict) -> bool:
        """Queue a control message (ack, error) behind any pending events."""
        return self.offer(message)

    def next_event(self, timeout: float = None):
        """
        Next queued item, or None on timeout or once the connection is closed.
        """
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return item

    def drain(self) -> list:
        items = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return items
            if item is not None:
                items.append(item)

    def _close(self):
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        for callback in self._close_callbacks:
            try:
                callback(self)
            except Exception as e:
                logging.error(f"[connection_id={self.id}] close callback failed: {e}")


class ConnectionHub:
    """
    Owns every live connection and its subscriptions. Created once per
    process and closed on shutdown.
    """

    def __init__(self, queue_size: int = None):
        self.queue_size = queue_size or settings.HUB_QUEUE_SIZE
        self._connections: Dict[str, Connection] = {}
        self._user_connections: Dict[str, Set[str]] = {}
        self._topics: Dict[str, Set[str]] = {}
        self._owners: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._closed = False

    def connect(self, user_id: str, connection_id: str = None) -> Connection:
        with self._lock:
            if self._closed:
                raise TransportError("Connection hub is closed")
            connection_id = connection_id or uuid.uuid4().hex
            connection = Connection(self, user_id, connection_id, self.queue_size)
            self._connections[connection_id] = connection
            self._user_connections.setdefault(user_id, set()).add(connection_id)
        logging.info(f"[connection_id={connection_id}] Connected user_id={user_id}")
        return connection

    def disconnect(self, connection_id: str) -> bool:
        with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return False
            for topic in connection.topics:
                subscribers = self._topics.get(topic)
                if subscribers is not None:
                    subscribers.discard(connection_id)
                    if not subscribers:
                        del self._topics[topic]
            user_conns = self._user_connections.get(connection.user_id)
            if user_conns is not None:
                user_conns.discard(connection_id)
                if not user_conns:
                    del self._user_connections[connection.user_id]
        connection._close()
        logging.info(f"[connection_id={connection_id}] Disconnected user_id={connection.user_id}")
        return True

    def register_owner(self, topic: str, user_id: str):
        parse_topic(topic)
        with self._lock:
            self._owners[topic] = user_id

    def release_topic(self, topic: str):
        with self._lock:
            self._owners.pop(topic, None)

    def can_subscribe(self, user_id: str, topic: str) -> bool:
        kind, ident = parse_topic(topic)
        if kind == "notifications":
            return ident == user_id
        with self._lock:
            return self._owners.get(topic) == user_id

    def subscribe(self, connection_id: str, topic: str):
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                raise TransportError(f"Unknown connection {connection_id}")
            if not self.can_subscribe(connection.user_id, topic):
                raise AuthorizationError(f"Not allowed to subscribe to {topic}", {"topic": topic})
            connection.topics.add(topic)
            self._topics.setdefault(topic, set()).add(connection_id)
        logging.debug(f"[connection_id={connection_id}] Subscribed to {topic}")

    def unsubscribe(self, connection_id: str, topic: str):
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return
            connection.topics.discard(topic)
            subscribers = self._topics.get(topic)
            if subscribers is not None:
                subscribers.discard(connection_id)
                if not subscribers:
                    del self._topics[topic]

    def publish(self, topic: str, event_type: str, data: Any) -> int:
        """
        Enqueue an event for every connection subscribed to `topic` right now.
        Returns how many connections accepted it.
        """
        event = StreamEvent(type=event_type, topic=topic, data=data)
        delivered = 0
        # The lock is held across the fan-out so two publishes on one topic
        # land in every subscriber queue in the same order.
        with self._lock:
            for connection_id in list(self._topics.get(topic, ())):
                connection = self._connections.get(connection_id)
                if connection is None:
                    continue
                if connection.offer(event):
                    delivered += 1
                else:
                    error = TransportError(f"Dropped {event_type} for connection {connection_id}: queue full")
                    logging.warning(f"[connection_id={connection_id}] {error.message}")
        return delivered

    def notify_user(self, user_id: str, data: Any) -> int:
        return self.publish(notifications_topic(user_id), EVENT_NOTIFICATION, data)

    def subscriptions(self, connection_id: str) -> List[str]:
        with self._lock:
            connection = self._connections.get(connection_id)
            return sorted(connection.topics) if connection else []

    def connections_for_user(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._user_connections.get(user_id, ()))

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topics.get(topic, ()))

    def stats(self) -> dict:
        with self._lock:
            return {
                "connections": len(self._connections),
                "users": len(self._user_connections),
                "topics": len(self._topics),
            }

    def close(self):
        with self._lock:
            self._closed = True
            connection_ids = list(self._connections)
        for connection_id in connection_ids:
            self.disconnect(connection_id)
        with self._lock:
            self._owners.clear()
        logging.info(f"Connection hub closed. connections={len(connection_ids)}")


# --- client side reconnection ---------------------------------------------

STATE_DISCONNECTED = "disconnected"
STATE_BACKING_OFF = "backing_off"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_FAILED = "failed"


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    return min(base * (2 ** attempt), cap)


class TimerScheduler:
    """Default scheduler: runs callbacks on threading timers."""

    def call_later(self, delay: float, callback: Callable[[], None]):
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class ReconnectingClient:
    """
    Keeps a subscriber connected.

        disconnected -> connecting -> connected
              ^              |            |
              |              v            v (connection lost)
              '------- backing_off(attempt) ----> failed (max attempts)

    `connect` returns an object with subscribe()/unsubscribe() and an
    on_close(callback) hook. The scheduler only needs call_later(delay, fn)
    returning something with cancel(), which makes the backoff testable
    without sleeping.
    """

    def __init__(self, connect: Callable[[], Any], scheduler=None, base_delay: float = 1.0,
                 max_delay: float = 30.0, max_attempts: int = 5):
        self._connect_fn = connect
        self.scheduler = scheduler or TimerScheduler()
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.state = STATE_DISCONNECTED
        self.attempt = 0
        self.connection = None
        self.topics: Set[str] = set()
        self.history: List[str] = [STATE_DISCONNECTED]
        self._pending = None
        self._stopped = False
        self._lock = threading.RLock()

    def _set_state(self, state: str):
        self.state = state
        self.history.append(state)
        logging.debug(f"Stream client state -> {state} (attempt={self.attempt})")

    def start(self):
        with self._lock:
            self._stopped = False
            if self.state in (STATE_DISCONNECTED, STATE_FAILED):
                self.attempt = 0
                self._connect()

    def stop(self):
        with self._lock:
            self._stopped = True
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
            connection, self.connection = self.connection, None
            self._set_state(STATE_DISCONNECTED)
        if connection is not None and hasattr(connection, "close"):
            connection.close()

    def subscribe(self, topic: str):
        with self._lock:
            self.topics.add(topic)
            if self.state == STATE_CONNECTED:
                self.connection.subscribe(topic)

    def unsubscribe(self, topic: str):
        with self._lock:
            self.topics.discard(topic)
            if self.state == STATE_CONNECTED:
                self.connection.unsubscribe(topic)

    def _connect(self):
        with self._lock:
            if self._stopped:
                return
            self._pending = None
            self._set_state(STATE_CONNECTING)
            try:
                connection = self._connect_fn()
            except Exception as e:
                logging.warning(f"Stream connect failed (attempt={self.attempt}): {e}")
                self._schedule_retry()
                return
            self.connection = connection
            self.attempt = 0
            self._set_state(STATE_CONNECTED)
            for topic in sorted(self.topics):
                try:
                    connection.subscribe(topic)
                except AuthorizationError as e:
                    logging.warning(f"Dropping subscription {topic}: {e.message}")
                    self.topics.discard(topic)
            if hasattr(connection, "on_close"):
                connection.on_close(lambda _conn: self.connection_lost(connection))

    def connection_lost(self, connection=None):
        with self._lock:
            if self._stopped or (connection is not None and connection is not self.connection):
                return
            self.connection = None
            self._schedule_retry()

    def _schedule_retry(self):
        if self.attempt >= self.max_attempts:
            self._set_state(STATE_FAILED)
            logging.error(f"Stream reconnect gave up after {self.attempt} attempts")
            return
        delay = backoff_delay(self.attempt, self.base_delay, self.max_delay)
        self.attempt += 1
        self._set_state(STATE_BACKING_OFF)
        self._pending = self.scheduler.call_later(delay, self._connect)
