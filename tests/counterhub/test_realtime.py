from __future__ import annotations

from counterhub.models import RealtimeEvent
from counterhub.observability import MetricsRegistry
from counterhub.services.realtime import RealtimeBroadcaster
from support import drain_queue


def _update(tenant_id: str, value: int) -> RealtimeEvent:
    return RealtimeEvent(type="counterUpdate", tenant_id=tenant_id, counter="deaths", value=value, change=1)


def test_events_stay_within_their_tenant() -> None:
    broadcaster = RealtimeBroadcaster(queue_size=10)
    _, queue_a = broadcaster.subscribe("tenant-a")
    _, queue_b = broadcaster.subscribe("tenant-b")

    assert broadcaster.publish("tenant-a", _update("tenant-a", 1)) == 1

    assert drain_queue(queue_a) == [
        {"type": "counterUpdate", "tenantId": "tenant-a", "counter": "deaths", "value": 1, "change": 1}
    ]
    assert drain_queue(queue_b) == []


def test_slow_subscriber_only_loses_its_own_events() -> None:
    metrics = MetricsRegistry()
    broadcaster = RealtimeBroadcaster(queue_size=1, metrics=metrics)
    _, slow = broadcaster.subscribe("tenant-a", "slow")
    _, fast = broadcaster.subscribe("tenant-a", "fast")

    received = []
    delivered = []
    for value in (1, 2, 3):
        delivered.append(broadcaster.publish("tenant-a", _update("tenant-a", value)))
        received.extend(drain_queue(fast))

    assert delivered == [2, 1, 1]
    assert [message["value"] for message in received] == [1, 2, 3]
    assert [message["value"] for message in drain_queue(slow)] == [1]
    assert metrics.event_count("realtime_dropped") == 2


def test_unsubscribe_removes_the_connection() -> None:
    broadcaster = RealtimeBroadcaster()
    connection_id, queue = broadcaster.subscribe("tenant-a")
    assert broadcaster.subscriber_count("tenant-a") == 1

    broadcaster.unsubscribe("tenant-a", connection_id)
    broadcaster.unsubscribe("tenant-a", connection_id)

    assert broadcaster.subscriber_count("tenant-a") == 0
    assert broadcaster.publish("tenant-a", _update("tenant-a", 1)) == 0
    assert drain_queue(queue) == []
