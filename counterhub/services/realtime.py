from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Optional
from uuid import uuid4

from counterhub.models import RealtimeEvent
from counterhub.observability import MetricsRegistry

logger = logging.getLogger("counterhub.realtime")


class RealtimeBroadcaster:
    """Per-tenant subscriber groups backed by bounded queues.

    ``publish`` never awaits a subscriber: a full queue loses the event for
    that subscriber only.
    """

    def __init__(self, queue_size: int = 100, metrics: Optional[MetricsRegistry] = None) -> None:
        self.queue_size = queue_size
        self.metrics = metrics
        self._lock = Lock()
        self._groups: dict[str, dict[str, asyncio.Queue]] = {}

    def subscribe(self, tenant_id: str, connection_id: Optional[str] = None) -> tuple[str, asyncio.Queue]:
        connection_id = connection_id or uuid4().hex
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        with self._lock:
            self._groups.setdefault(tenant_id, {})[connection_id] = queue
        logger.info("realtime_subscribed tenant=%s connection=%s", tenant_id, connection_id)
        return connection_id, queue

    def unsubscribe(self, tenant_id: str, connection_id: str) -> None:
        with self._lock:
            group = self._groups.get(tenant_id)
            if not group:
                return
            group.pop(connection_id, None)
            if not group:
                del self._groups[tenant_id]
        logger.info("realtime_unsubscribed tenant=%s connection=%s", tenant_id, connection_id)

    def publish(self, tenant_id: str, event: RealtimeEvent) -> int:
        with self._lock:
            queues = list(self._groups.get(tenant_id, {}).items())
        message = event.to_message()
        delivered = 0
        for connection_id, queue in queues:
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "realtime_dropped tenant=%s connection=%s type=%s",
                    tenant_id,
                    connection_id,
                    event.type,
                )
                if self.metrics:
                    self.metrics.record_event("realtime_dropped")
        return delivered

    def subscriber_count(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._groups.get(tenant_id, {}))
