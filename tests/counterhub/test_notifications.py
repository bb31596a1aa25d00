from __future__ import annotations

import asyncio
import json

import httpx

from counterhub.models import (
    ChannelName,
    EnabledNotifications,
    MutationApplied,
    MutationKind,
    NotificationPreference,
    StreamState,
    StreamStateChanged,
    TenantSettings,
)
from counterhub.services.realtime import RealtimeBroadcaster
from counterhub.store import InMemoryCounterStore
from support import WEBHOOK_URL, build_services, drain_queue


class RecordingAnnouncer:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    async def announce(self, tenant_id: str, text: str) -> bool:
        self.messages.append((tenant_id, text))
        return True


class ExplodingBroadcaster(RealtimeBroadcaster):
    def publish(self, tenant_id, event):
        raise RuntimeError("socket layer down")


async def _configure(services, **preference) -> None:
    await services.config.update_notifications(
        "tenant-a", NotificationPreference(webhook_url=WEBHOOK_URL, **preference)
    )
    await services.config.update_milestones("tenant-a", {"deaths": [10]})
    await services.store.set_counter("tenant-a", "deaths", 9)


def test_milestone_reaches_realtime_and_webhook() -> None:
    services = build_services()
    _, queue = services.broadcaster.subscribe("tenant-a")

    async def scenario():
        await _configure(services)
        result = await services.counters.increment("tenant-a", "deaths")
        await services.webhooks.drain()
        return result

    result = asyncio.run(scenario())
    assert result.crossed == (10,)

    messages = drain_queue(queue)
    assert [message["type"] for message in messages] == ["counterUpdate", "milestoneReached"]
    assert messages[0] == {
        "type": "counterUpdate",
        "tenantId": "tenant-a",
        "counter": "deaths",
        "value": 10,
        "change": 1,
        "icon": "💀",
        "name": "Deaths",
    }
    assert messages[1]["threshold"] == 10

    assert len(services.requests) == 1
    body = json.loads(services.requests[0].content)
    assert body["username"] == "CounterHub"
    assert body["embeds"][0]["title"] == "💀 Death Milestone: 10"


def test_disabled_category_skips_webhook_but_not_realtime() -> None:
    services = build_services()
    _, queue = services.broadcaster.subscribe("tenant-a")

    async def scenario():
        await _configure(services, enabled=EnabledNotifications(death_milestone=False))
        await services.counters.increment("tenant-a", "deaths")
        await services.webhooks.drain()

    asyncio.run(scenario())
    assert [message["type"] for message in drain_queue(queue)] == [
        "counterUpdate",
        "milestoneReached",
    ]
    assert services.requests == []


def test_missing_webhook_url_skips_webhook() -> None:
    services = build_services()

    async def scenario():
        await services.config.update_milestones("tenant-a", {"deaths": [1]})
        await services.counters.increment("tenant-a", "deaths")
        await services.webhooks.drain()

    asyncio.run(scenario())
    assert services.requests == []


def test_webhook_failure_does_not_fail_the_mutation() -> None:
    services = build_services(responder=lambda request: httpx.Response(400, text="bad embed"))
    _, queue = services.broadcaster.subscribe("tenant-a")

    async def scenario():
        await _configure(services)
        result = await services.counters.increment("tenant-a", "deaths")
        await services.webhooks.drain()
        return result

    result = asyncio.run(scenario())
    assert result.value == 10
    assert len(drain_queue(queue)) == 2
    assert services.metrics.event_count("webhook_deliveries", status="failed") == 1


def test_channel_announcement_goes_to_chat() -> None:
    services = build_services()
    announcer = RecordingAnnouncer()
    services.router.attach_chat(announcer)

    async def scenario():
        await _configure(services, enable_channel_notifications=True)
        await services.counters.increment("tenant-a", "deaths")
        await services.webhooks.drain()

    asyncio.run(scenario())
    assert announcer.messages == [
        ("tenant-a", "💀 MILESTONE REACHED! 10 DEATHS! Current count: 10 💀")
    ]


def test_one_channel_failing_leaves_the_others() -> None:
    services = build_services()
    services.router.broadcaster = ExplodingBroadcaster()

    async def scenario():
        await _configure(services)
        result = await services.counters.increment("tenant-a", "deaths")
        await services.webhooks.drain()
        return result

    result = asyncio.run(scenario())
    assert result.value == 10
    assert len(services.requests) == 1
    assert services.metrics.event_count("fan_out_failures", channel="realtime") == 2


def test_plain_mutation_only_goes_to_realtime() -> None:
    services = build_services()
    settings = TenantSettings(notifications=NotificationPreference(webhook_url=WEBHOOK_URL))
    event = MutationApplied(
        tenant_id="tenant-a",
        counter="deaths",
        operation=MutationKind.increment,
        previous_value=0,
        value=1,
        change=1,
    )
    plan = services.router.plan(settings, event)
    assert plan.channels == (ChannelName.realtime,)


def test_stream_events_follow_their_categories() -> None:
    services = build_services()
    settings = TenantSettings(notifications=NotificationPreference(webhook_url=WEBHOOK_URL))

    online = services.router.plan(
        settings, StreamStateChanged(tenant_id="tenant-a", state=StreamState.online)
    )
    offline = services.router.plan(
        settings, StreamStateChanged(tenant_id="tenant-a", state=StreamState.offline)
    )
    assert online.includes(ChannelName.webhook)
    assert not offline.includes(ChannelName.webhook)
    assert not online.includes(ChannelName.chat)


def test_discord_feature_flag_blocks_webhooks() -> None:
    services = build_services()
    settings = TenantSettings.model_validate(
        {
            "features": {"discord_notifications": False},
            "notifications": {"webhook_url": WEBHOOK_URL},
        }
    )
    plan = services.router.plan(
        settings, StreamStateChanged(tenant_id="tenant-a", state=StreamState.online)
    )
    assert plan.channels == (ChannelName.realtime,)


class JitterStore(InMemoryCounterStore):
    """Stalls the second settings read the way a slow database round trip would."""

    def __init__(self) -> None:
        super().__init__()
        self.document_reads = 0

    async def get_document(self, tenant_id, kind):
        self.document_reads += 1
        if self.document_reads == 2:
            await asyncio.sleep(0.05)
        return await super().get_document(tenant_id, kind)


def test_overlay_updates_follow_commit_order() -> None:
    services = build_services(store=JitterStore())
    _, queue = services.broadcaster.subscribe("tenant-a")

    async def scenario():
        await asyncio.gather(
            services.counters.increment("tenant-a", "deaths"),
            services.counters.increment("tenant-a", "deaths"),
        )

    asyncio.run(scenario())
    updates = [message["value"] for message in drain_queue(queue) if message["type"] == "counterUpdate"]
    assert updates == [1, 2]
    assert services.store.counters["tenant-a"]["deaths"] == 2
