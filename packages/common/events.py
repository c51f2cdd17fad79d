"""Fire-and-forget event bus for attempt lifecycle events.

`EventBus.publish` only enqueues; a daemon dispatcher thread serializes each
payload to JSON and hands it to a publisher. Publisher failures are logged and
never reach the code that emitted the event, so a slow or broken downstream
consumer cannot block or fail an attempt transition.

Publishers:
- `LogPublisher` writes events to the log (dev/test default).
- `KafkaPublisher` produces to Kafka through `confluent_kafka.Producer`.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Any, Optional, Protocol

from confluent_kafka import Producer

from .config import Settings, get_settings

log = logging.getLogger(__name__)

_STOP = object()


class Publisher(Protocol):
    """Delivers one serialized event; may block or raise."""

    def send(self, topic: str, key: str, payload: bytes) -> None:
        ...

    def flush(self) -> None:
        ...


class LogPublisher:
    """Publisher that only logs events."""

    def send(self, topic: str, key: str, payload: bytes) -> None:
        log.info("PUBLISH topic=%s key=%s value=%s", topic, key, payload.decode("utf-8"))

    def flush(self) -> None:
        return None


class KafkaPublisher:
    """Thin Kafka publisher with idempotent producer defaults."""

    def __init__(self, bootstrap_servers: str, client_id: str = "attempt-engine") -> None:
        """Create the underlying Confluent producer.

        Args:
            bootstrap_servers: Kafka bootstrap servers string.
            client_id: Kafka client.id.
        """
        self._producer = Producer({
            "bootstrap.servers": bootstrap_servers,
            "client.id": client_id,
            "enable.idempotence": True,
            "acks": "all",
            "linger.ms": 5,
        })

    def _on_delivery(self, err: Any, msg: Any) -> None:
        if err is not None:
            log.error("Delivery failed: %s", err)

    def send(self, topic: str, key: str, payload: bytes) -> None:
        self._producer.produce(topic, key=key, value=payload, on_delivery=self._on_delivery)
        self._producer.poll(0)

    def flush(self) -> None:
        self._producer.flush(5.0)


class EventBus:
    """Bounded queue plus a background dispatcher thread."""

    def __init__(self, publisher: Publisher, topic_prefix: str = "attempt", max_queue: int = 10_000) -> None:
        self.topic_prefix = topic_prefix
        self._publisher = publisher
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def topic(self, name: str) -> str:
        """Return the fully-qualified topic for an event name, e.g. 'attempt.completed'."""
        return f"{self.topic_prefix}.{name}"

    def _ensure_started(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._dispatch_loop, name="EventDispatch", daemon=True)
                self._thread.start()

    def publish(self, topic: str, key: str, value: dict[str, Any]) -> bool:
        """Enqueue an event without blocking.

        Args:
            topic: Topic name.
            key: Message key (used for partitioning).
            value: JSON-serializable payload dictionary.

        Returns:
            True if the event was queued, False if it was dropped (bus closed or queue full).
        """
        if self._closed:
            log.warning("Event bus closed; dropping topic=%s key=%s", topic, key)
            return False
        self._ensure_started()
        try:
            self._queue.put_nowait((topic, key, value))
        except queue.Full:
            log.warning("Event queue full; dropping topic=%s key=%s", topic, key)
            return False
        return True

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                topic, key, value = item
                payload = json.dumps(value, default=str).encode("utf-8")
                self._publisher.send(topic, key, payload)
            except Exception:
                log.exception("Event delivery failed")
            finally:
                self._queue.task_done()

    def drain(self) -> None:
        """Block until every queued event has been handed to the publisher."""
        if self._thread is not None and self._thread.is_alive():
            self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, stop the dispatcher and flush the publisher."""
        self._closed = True
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(_STOP)
            self._thread.join(timeout=timeout)
        try:
            self._publisher.flush()
        except Exception:
            log.exception("Publisher flush failed")


def build_event_bus(settings: Settings | None = None) -> EventBus:
    """Create the event bus configured by `settings` (defaults to the cached settings)."""
    s = settings or get_settings()
    publisher: Publisher
    if s.EVENT_SINK == "kafka":
        publisher = KafkaPublisher(s.KAFKA_BOOTSTRAP or "", client_id=s.SERVICE_NAME)
    else:
        publisher = LogPublisher()
    return EventBus(publisher, topic_prefix=s.EVENT_TOPIC_PREFIX, max_queue=s.EVENT_QUEUE_SIZE)
