from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass, field


@dataclass
class Subscription:
    id: int
    topic: str
    recipient_id: str | None = None
    queue: "queue.Queue[dict]" = field(default_factory=lambda: queue.Queue(maxsize=200))

    def get(self, timeout: float | None = None) -> dict | None:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class ConnectionRegistry:
    """Live fan-out to connected admin/ops clients.

    Owned by the transport layer (the SSE alert stream subscribes here).
    Domain code never talks to it directly; it goes through ``log_event``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subs: dict[int, Subscription] = {}

    def subscribe(self, topic: str, recipient_id: str | None = None) -> Subscription:
        sub = Subscription(
            id=next(self._ids),
            topic=(topic or "").strip(),
            recipient_id=(str(recipient_id).strip() or None) if recipient_id is not None else None,
        )
        with self._lock:
            self._subs[sub.id] = sub
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subs.pop(sub.id, None)

    def _deliver(self, targets: list[Subscription], payload: dict) -> int:
        delivered = 0
        for sub in targets:
            try:
                sub.queue.put_nowait(dict(payload))
                delivered += 1
            except queue.Full:
                # Slow consumer: drop the oldest message to keep the feed live.
                try:
                    sub.queue.get_nowait()
                    sub.queue.put_nowait(dict(payload))
                    delivered += 1
                except (queue.Empty, queue.Full):
                    pass
        return delivered

    def broadcast(self, topic: str, payload: dict) -> int:
        with self._lock:
            targets = [s for s in self._subs.values() if s.topic == topic]
        return self._deliver(targets, payload)

    def send_to(self, recipient_id: str, payload: dict) -> int:
        rid = str(recipient_id or "").strip()
        if not rid:
            return 0
        with self._lock:
            targets = [s for s in self._subs.values() if s.recipient_id == rid]
        return self._deliver(targets, payload)

    def connection_count(self, topic: str | None = None) -> int:
        with self._lock:
            if topic is None:
                return len(self._subs)
            return sum(1 for s in self._subs.values() if s.topic == topic)


registry = ConnectionRegistry()

ALERTS_TOPIC = "alerts"
