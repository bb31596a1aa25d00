from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from counterhub.models import (
    ChannelName,
    MilestoneCrossed,
    MutationApplied,
    NotificationCategory,
    NotificationEvent,
    NotificationPayload,
    RealtimeEvent,
    StreamState,
    StreamStateChanged,
    TenantSettings,
)
from counterhub.observability import MetricsRegistry
from counterhub.services.catalog import CounterDisplay, resolve_counter
from counterhub.services.discord import WebhookDispatcher
from counterhub.services.milestones import previous_milestone
from counterhub.services.mutation import MutationResult
from counterhub.services.realtime import RealtimeBroadcaster
from counterhub.services.tenant_config import TenantConfigService

logger = logging.getLogger("counterhub.notifications")


class ChatAnnouncer(Protocol):
    async def announce(self, tenant_id: str, text: str) -> bool:
        ...


@dataclass(frozen=True)
class DispatchPlan:
    event: NotificationEvent
    payload: NotificationPayload
    channels: tuple[ChannelName, ...]

    def includes(self, channel: ChannelName) -> bool:
        return channel in self.channels


def _category(event: NotificationEvent, display: Optional[CounterDisplay]) -> Optional[NotificationCategory]:
    if isinstance(event, MilestoneCrossed) and display is not None:
        return display.category
    if isinstance(event, StreamStateChanged):
        if event.state is StreamState.online:
            return NotificationCategory.stream_start
        return NotificationCategory.stream_end
    return None


def build_payload(
    settings: TenantSettings,
    event: NotificationEvent,
    display: Optional[CounterDisplay] = None,
) -> NotificationPayload:
    profile = settings.profile
    payload = NotificationPayload(
        event_kind=event.kind,
        tenant_id=event.tenant_id,
        category=_category(event, display),
        streamer_username=profile.username,
        streamer_display_name=profile.display_name or profile.username,
        avatar_url=profile.profile_image_url,
        occurred_at=event.occurred_at,
    )
    update: dict = {}
    if display is not None:
        update.update(counter=display.key, counter_name=display.name, icon=display.icon or None)
    if isinstance(event, MutationApplied):
        update.update(
            previous_value=event.previous_value, value=event.value, change=event.change
        )
    elif isinstance(event, MilestoneCrossed):
        update.update(
            previous_value=event.previous_value,
            value=event.value,
            change=event.value - event.previous_value,
            threshold=event.threshold,
            previous_milestone=event.previous_milestone,
        )
    elif isinstance(event, StreamStateChanged):
        update.update(
            stream_state=event.state,
            stream_title=event.title,
            stream_game=event.game,
            thumbnail_url=event.thumbnail_url,
            duration_seconds=event.duration_seconds,
        )
    return payload.model_copy(update=update)


def realtime_event(payload: NotificationPayload) -> RealtimeEvent:
    if payload.event_kind == "milestone_crossed":
        event_type = "milestoneReached"
    elif payload.event_kind == "stream_state_changed":
        event_type = "streamStatus"
    else:
        event_type = "counterUpdate"
    return RealtimeEvent(
        type=event_type,
        tenant_id=payload.tenant_id,
        counter=payload.counter,
        value=payload.value,
        change=payload.change if event_type == "counterUpdate" else None,
        threshold=payload.threshold,
        icon=payload.icon,
        name=payload.counter_name,
        state=payload.stream_state,
    )


def chat_announcement(payload: NotificationPayload) -> str:
    emoji = payload.icon or "🎉"
    counter = (payload.counter_name or payload.counter or "").upper()
    return (
        f"{emoji} MILESTONE REACHED! {payload.threshold} {counter}! "
        f"Current count: {payload.value} {emoji}"
    )


class NotificationRouter:
    def __init__(
        self,
        config: TenantConfigService,
        broadcaster: RealtimeBroadcaster,
        webhooks: WebhookDispatcher,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.config = config
        self.broadcaster = broadcaster
        self.webhooks = webhooks
        self.metrics = metrics
        self.chat: Optional[ChatAnnouncer] = None

    def attach_chat(self, announcer: ChatAnnouncer) -> None:
        self.chat = announcer

    def plan(
        self,
        settings: TenantSettings,
        event: NotificationEvent,
        display: Optional[CounterDisplay] = None,
    ) -> DispatchPlan:
        payload = build_payload(settings, event, display)
        channels = [ChannelName.realtime]
        preference = settings.notifications
        if isinstance(event, (MilestoneCrossed, StreamStateChanged)):
            if (
                settings.features.discord_notifications
                and preference.webhook_active
                and payload.category is not None
                and preference.enabled.is_enabled(payload.category)
            ):
                channels.append(ChannelName.webhook)
        if isinstance(event, MilestoneCrossed) and preference.enable_channel_notifications:
            channels.append(ChannelName.chat)
        return DispatchPlan(event=event, payload=payload, channels=tuple(channels))

    async def route(self, tenant_id: str, event: NotificationEvent) -> DispatchPlan:
        settings = await self.config.get(tenant_id)
        display = None
        counter = getattr(event, "counter", None)
        if counter:
            display = resolve_counter(settings, counter)
        plan = self.plan(settings, event, display)
        await self.fan_out(plan, settings)
        return plan

    def mutation_plans(self, result: MutationResult, settings: TenantSettings) -> list[DispatchPlan]:
        """Plan the applied mutation and each crossed milestone, in that order."""
        events: list[NotificationEvent] = [
            MutationApplied(
                tenant_id=result.tenant_id,
                counter=result.counter.key,
                operation=result.operation,
                previous_value=result.previous_value,
                value=result.value,
                change=result.change,
            )
        ]
        for threshold in result.crossed:
            events.append(
                MilestoneCrossed(
                    tenant_id=result.tenant_id,
                    counter=result.counter.key,
                    previous_value=result.previous_value,
                    value=result.value,
                    threshold=threshold,
                    previous_milestone=previous_milestone(threshold, result.counter.thresholds),
                )
            )
        return [self.plan(settings, event, result.counter) for event in events]

    def publish_mutation(self, result: MutationResult) -> list[DispatchPlan]:
        """Push the realtime events of a committed mutation.

        Registered as a commit listener on the mutation engine, so it runs
        while the counter's lock is held.
        """
        plans = self.mutation_plans(result, result.settings or TenantSettings())
        for plan in plans:
            self._publish_realtime(plan)
        return plans

    async def notify_mutation(
        self, result: MutationResult, realtime_published: bool = False
    ) -> list[DispatchPlan]:
        settings = result.settings
        if settings is None:
            try:
                settings = await self.config.get(result.tenant_id)
            except Exception:
                logger.exception("notification_settings_failed tenant=%s", result.tenant_id)
                settings = TenantSettings()
        skip = (ChannelName.realtime,) if realtime_published else ()
        plans = self.mutation_plans(result, settings)
        for plan in plans:
            await self.fan_out(plan, settings, skip=skip)
        return plans

    async def fan_out(
        self,
        plan: DispatchPlan,
        settings: TenantSettings,
        skip: tuple[ChannelName, ...] = (),
    ) -> dict[ChannelName, bool]:
        channels = [channel for channel in plan.channels if channel not in skip]
        outcomes = await asyncio.gather(
            *(self._guarded(channel, plan, settings) for channel in channels)
        )
        return dict(zip(channels, outcomes))

    def _publish_realtime(self, plan: DispatchPlan) -> bool:
        try:
            self.broadcaster.publish(plan.payload.tenant_id, realtime_event(plan.payload))
        except Exception:
            self._channel_failed(ChannelName.realtime, plan)
            return False
        return True

    async def _guarded(self, channel: ChannelName, plan: DispatchPlan, settings: TenantSettings) -> bool:
        tenant_id = plan.payload.tenant_id
        if channel is ChannelName.realtime:
            return self._publish_realtime(plan)
        try:
            if channel is ChannelName.webhook:
                self.webhooks.schedule(tenant_id, plan.payload, settings.notifications)
                return True
            if channel is ChannelName.chat:
                if self.chat is None:
                    return False
                return await self.chat.announce(tenant_id, chat_announcement(plan.payload))
        except Exception:
            self._channel_failed(channel, plan)
        return False

    def _channel_failed(self, channel: ChannelName, plan: DispatchPlan) -> None:
        logger.exception(
            "fan_out_failed tenant=%s channel=%s event=%s",
            plan.payload.tenant_id,
            channel.value,
            plan.payload.event_kind,
        )
        if self.metrics:
            self.metrics.record_event("fan_out_failures", channel=channel.value)
