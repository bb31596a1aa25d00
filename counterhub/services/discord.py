from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import httpx

from counterhub.models import (
    DISCORD_WEBHOOK_PREFIX,
    DeliveryStatus,
    NotificationCategory,
    NotificationPayload,
    NotificationPreference,
    StreamState,
    TemplateStyle,
    WebhookDeliveryRecord,
    WebhookDeliveryStatus,
    utc_now,
)
from counterhub.observability import MetricsRegistry

logger = logging.getLogger("counterhub.webhooks")

BOT_NAME = "CounterHub"
DEFAULT_COLOR = 0x5865F2
STREAM_START_COLOR = 0x00FF00
STREAM_END_COLOR = 0xFF4444
_MAX_BODY_CHARS = 500

CATEGORY_COLORS: dict[NotificationCategory, int] = {
    NotificationCategory.death_milestone: 0xFF4444,
    NotificationCategory.swear_milestone: 0xFF8800,
    NotificationCategory.scream_milestone: 0xFFFF00,
    NotificationCategory.bits_milestone: 0x9146FF,
    NotificationCategory.custom_milestone: DEFAULT_COLOR,
}


@dataclass(frozen=True)
class StylePalette:
    primary: int
    footer: str
    milestone_title: str
    category_colors: bool


STYLES: dict[TemplateStyle, StylePalette] = {
    TemplateStyle.asylum_themed: StylePalette(
        primary=0x8B0000,
        footer="CounterHub Stream Tools",
        milestone_title="{icon} {singular} Milestone: {threshold}",
        category_colors=True,
    ),
    TemplateStyle.modern_minimal: StylePalette(
        primary=0x6366F1,
        footer="CounterHub",
        milestone_title="{name} milestone: {threshold}",
        category_colors=False,
    ),
    TemplateStyle.streamer_pro: StylePalette(
        primary=0x9146FF,
        footer="CounterHub Pro Alerts",
        milestone_title="🏆 {icon} {threshold} {name}!",
        category_colors=False,
    ),
}


def format_duration(seconds: Optional[int]) -> str:
    if seconds is None or seconds < 0:
        return "Unknown"
    hours, remainder = divmod(int(seconds), 3600)
    minutes = remainder // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _field(name: str, value: str, inline: bool = True) -> dict:
    return {"name": name, "value": value, "inline": inline}


def render_message(payload: NotificationPayload, style: object) -> dict:
    """Discord webhook body for a notification payload.

    ``style`` may be anything; unrecognised styles render as asylum_themed.
    """
    palette = STYLES[TemplateStyle.resolve(style)]
    display_name = payload.streamer_display_name or payload.streamer_username or "Streamer"
    channel_url = (
        f"https://twitch.tv/{payload.streamer_username}" if payload.streamer_username else None
    )
    fields: list[dict] = []
    image_url: Optional[str] = None
    buttons: list[dict] = []
    url: Optional[str] = None

    if payload.event_kind == "milestone_crossed":
        name = payload.counter_name or (payload.counter or "counter").title()
        threshold = payload.threshold or 0
        progress = f"{payload.previous_milestone or 0} → {threshold}"
        title = palette.milestone_title.format(
            icon=payload.icon or "🎉",
            singular=name[:-1] if name.endswith("s") else name,
            name=name,
            threshold=threshold,
        ).strip()
        description = (
            f"**{display_name}** has reached {threshold} {name.lower()}!"
            f"\n\n📊 **Progress:** {progress}"
        )
        color = (
            CATEGORY_COLORS.get(payload.category, palette.primary)
            if palette.category_colors
            else palette.primary
        )
        fields = [
            _field("🎯 Milestone", str(threshold)),
            _field("📊 Current Count", str(payload.value if payload.value is not None else threshold)),
            _field("📈 Progress", progress),
        ]
    elif payload.event_kind == "stream_state_changed" and payload.stream_state is StreamState.online:
        title = f"🔴 {display_name} is now live on Twitch!"
        description = None
        color = STREAM_START_COLOR if palette.category_colors else palette.primary
        fields = [
            _field("📺 Title", payload.stream_title or "Stream Title Not Set", inline=False),
            _field("🎮 Streaming", payload.stream_game or "Unknown Category"),
        ]
        image_url = payload.thumbnail_url
        if not image_url and payload.streamer_username:
            image_url = (
                "https://static-cdn.jtvnw.net/previews-ttv/"
                f"live_user_{payload.streamer_username.lower()}-640x360.jpg"
                f"?t={int(payload.occurred_at.timestamp())}"
            )
        url = channel_url
        if channel_url:
            buttons = [
                {"type": 2, "style": 5, "label": "🎮 Watch the stream", "url": channel_url}
            ]
    elif payload.event_kind == "stream_state_changed":
        title = "🔴 Stream Ended"
        description = (
            f"**{display_name}** has ended the stream."
            f"\n\n⏱️ **Duration:** {format_duration(payload.duration_seconds)}"
            "\n💙 **Thanks for watching!**"
        )
        color = STREAM_END_COLOR if palette.category_colors else palette.primary
    else:
        title = f"📢 {BOT_NAME} Notification"
        description = f"Event: {payload.event_kind}"
        color = DEFAULT_COLOR

    embed: dict = {
        "title": title,
        "description": description,
        "color": color,
        "url": url,
        "footer": {"text": palette.footer},
        "timestamp": payload.occurred_at.isoformat(),
        "fields": fields,
    }
    if payload.avatar_url:
        embed["thumbnail"] = {"url": payload.avatar_url}
    if image_url:
        embed["image"] = {"url": image_url}

    body: dict = {
        "username": BOT_NAME,
        "avatar_url": payload.avatar_url,
        "embeds": [embed],
    }
    if buttons:
        body["components"] = [{"type": 1, "components": buttons}]
    return body


def webhook_request_url(webhook_url: str, body: dict) -> str:
    if body.get("components"):
        separator = "&" if "?" in webhook_url else "?"
        return f"{webhook_url}{separator}with_components=true"
    return webhook_url


@dataclass(frozen=True)
class DeliveryOutcome:
    status: DeliveryStatus
    status_code: Optional[int] = None
    body: Optional[str] = None
    error: Optional[str] = None
    transient: bool = False

    @property
    def delivered(self) -> bool:
        return self.status is DeliveryStatus.delivered


def next_delivery_record(
    record: WebhookDeliveryRecord,
    outcome: DeliveryOutcome,
    *,
    max_retries: int,
    backoff_seconds: float,
) -> WebhookDeliveryRecord:
    attempts = record.attempts + 1
    if outcome.delivered:
        status = WebhookDeliveryStatus.delivered
        next_retry = None
        last_error = None
    else:
        last_error = outcome.error or outcome.body or "unknown webhook delivery error"
        if outcome.transient and attempts < max_retries:
            status = WebhookDeliveryStatus.retry_pending
            next_retry = utc_now() + timedelta(seconds=backoff_seconds * attempts)
        else:
            status = WebhookDeliveryStatus.failed
            next_retry = None
    return record.model_copy(
        update={
            "attempts": attempts,
            "status": status,
            "last_status_code": outcome.status_code,
            "last_error": last_error,
            "next_retry_utc": next_retry,
            "updated_at_utc": utc_now(),
        }
    )


def _event_key(payload: NotificationPayload) -> str:
    if payload.event_kind == "milestone_crossed":
        return f"milestone:{payload.counter}:{payload.threshold}"
    if payload.stream_state is not None:
        return f"stream:{payload.stream_state.value}"
    return payload.event_kind


class WebhookDispatcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        max_concurrency: int = 8,
        metrics: Optional[MetricsRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_concurrency = max_concurrency
        self.metrics = metrics
        self._sleep = sleep
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._generations: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._semaphore

    async def dispatch(
        self,
        tenant_id: str,
        payload: NotificationPayload,
        preference: NotificationPreference,
    ) -> DeliveryOutcome:
        """One POST to the tenant's webhook. Never raises for delivery problems."""
        webhook_url = preference.webhook_url
        if not webhook_url or not webhook_url.startswith(DISCORD_WEBHOOK_PREFIX):
            outcome = DeliveryOutcome(
                status=DeliveryStatus.rejected,
                error="webhook url missing or not a discord webhook",
            )
            self._record(tenant_id, outcome)
            return outcome

        body = render_message(payload, preference.template_style)
        try:
            response = await self.client.post(
                webhook_request_url(webhook_url, body),
                json=body,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException:
            outcome = DeliveryOutcome(
                status=DeliveryStatus.failed, error="webhook request timed out", transient=True
            )
        except httpx.HTTPError as exc:
            outcome = DeliveryOutcome(
                status=DeliveryStatus.failed, error=f"transport error: {exc}", transient=True
            )
        else:
            if 200 <= response.status_code < 300:
                outcome = DeliveryOutcome(
                    status=DeliveryStatus.delivered, status_code=response.status_code
                )
            else:
                outcome = DeliveryOutcome(
                    status=DeliveryStatus.failed,
                    status_code=response.status_code,
                    body=response.text[:_MAX_BODY_CHARS],
                    error=f"http {response.status_code}",
                    transient=response.status_code == 429 or response.status_code >= 500,
                )
        self._record(tenant_id, outcome)
        return outcome

    async def deliver(
        self,
        tenant_id: str,
        payload: NotificationPayload,
        preference: NotificationPreference,
    ) -> WebhookDeliveryRecord:
        """Dispatch with bounded re-invocation of transient failures.

        Attempts still queued behind the concurrency limit when
        ``cancel_pending`` runs for the tenant end as ``dropped``.
        """
        generation = self._generations.get(tenant_id, 0)
        now = utc_now()
        record = WebhookDeliveryRecord(
            tenant_id=tenant_id,
            event_key=_event_key(payload),
            status=WebhookDeliveryStatus.pending,
            attempts=0,
            created_at_utc=now,
            updated_at_utc=now,
        )
        while True:
            async with self.semaphore:
                if self._generations.get(tenant_id, 0) != generation:
                    return self._dropped(record)
                outcome = await self.dispatch(tenant_id, payload, preference)
            record = next_delivery_record(
                record,
                outcome,
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
            )
            if record.status is not WebhookDeliveryStatus.retry_pending:
                return record
            await self._sleep(self.backoff_seconds * record.attempts)

    def schedule(
        self,
        tenant_id: str,
        payload: NotificationPayload,
        preference: NotificationPreference,
    ) -> asyncio.Task:
        task = asyncio.create_task(self.deliver(tenant_id, payload, preference))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel_pending(self, tenant_id: str) -> None:
        self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
        logger.info("webhook_pending_dropped tenant=%s", tenant_id)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
        await self.client.aclose()

    def _dropped(self, record: WebhookDeliveryRecord) -> WebhookDeliveryRecord:
        self._record(record.tenant_id, DeliveryOutcome(status=DeliveryStatus.dropped))
        return record.model_copy(
            update={"status": WebhookDeliveryStatus.dropped, "updated_at_utc": utc_now()}
        )

    def _record(self, tenant_id: str, outcome: DeliveryOutcome) -> None:
        if self.metrics:
            self.metrics.record_event("webhook_deliveries", status=outcome.status.value)
        if outcome.delivered:
            logger.info("webhook_delivered tenant=%s status_code=%s", tenant_id, outcome.status_code)
        elif outcome.status is DeliveryStatus.dropped:
            logger.info("webhook_dropped tenant=%s", tenant_id)
        else:
            logger.warning(
                "webhook_failed tenant=%s status=%s status_code=%s error=%s body=%s",
                tenant_id,
                outcome.status.value,
                outcome.status_code,
                outcome.error,
                outcome.body,
            )
