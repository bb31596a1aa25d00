from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from starlette.datastructures import Headers

from counterhub.models import PlatformEventResponse, StreamState, StreamStateChanged, utc_now
from counterhub.observability import MetricsRegistry
from counterhub.services.catalog import InvalidCounterError
from counterhub.services.counters import CounterService
from counterhub.services.mutation import PersistenceFailureError
from counterhub.services.notifications import NotificationRouter
from counterhub.services.tenant_config import TenantConfigService
from counterhub.store import CounterStore, CounterStoreError

logger = logging.getLogger("counterhub.platform")

MESSAGE_ID_HEADER = "twitch-eventsub-message-id"
TIMESTAMP_HEADER = "twitch-eventsub-message-timestamp"
SIGNATURE_HEADER = "twitch-eventsub-message-signature"
MESSAGE_TYPE_HEADER = "twitch-eventsub-message-type"

STREAM_KIND = "stream"


class SignatureVerificationError(Exception):
    pass


def _header_value(headers: Headers, name: str) -> Optional[str]:
    value = headers.get(name)
    if value:
        return value.strip()
    return None


def verify_eventsub_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    """HMAC-SHA256 over message id + timestamp + body. No secret disables the check."""
    if not secret:
        return
    message_id = _header_value(headers, MESSAGE_ID_HEADER)
    timestamp = _header_value(headers, TIMESTAMP_HEADER)
    signature = _header_value(headers, SIGNATURE_HEADER)
    if not message_id or not timestamp or not signature:
        raise SignatureVerificationError("missing eventsub signature headers")
    provided = signature
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    message = message_id.encode("utf-8") + timestamp.encode("utf-8") + raw_body
    expected = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided):
        raise SignatureVerificationError("invalid eventsub signature")


def _parse_time(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


class PlatformEventProcessor:
    def __init__(
        self,
        store: CounterStore,
        config: TenantConfigService,
        counters: CounterService,
        router: NotificationRouter,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.counters = counters
        self.router = router
        self.metrics = metrics

    async def handle(self, message_type: str, message_id: str, payload: dict) -> PlatformEventResponse:
        if message_type == "webhook_callback_verification":
            return PlatformEventResponse(status="challenge", detail=str(payload.get("challenge", "")))
        subscription = payload.get("subscription") or {}
        event_type = str(subscription.get("type", "unknown"))
        if message_type == "revocation":
            logger.warning(
                "eventsub_revoked type=%s status=%s", event_type, subscription.get("status")
            )
            self._count(event_type, "revoked")
            return PlatformEventResponse(status="revoked", detail=event_type)
        if message_type != "notification":
            return PlatformEventResponse(status="ignored", detail=message_type)

        if not await self.store.register_event(f"eventsub:{message_id}"):
            self._count(event_type, "duplicate")
            return PlatformEventResponse(status="duplicate")

        event = payload.get("event") or {}
        tenant_id = str(event.get("broadcaster_user_id") or "").strip()
        if not tenant_id:
            self._count(event_type, "ignored")
            return PlatformEventResponse(status="ignored", detail="missing broadcaster_user_id")

        try:
            detail = await self._dispatch(tenant_id, event_type, event)
        except (InvalidCounterError, PersistenceFailureError, CounterStoreError) as exc:
            logger.error(
                "eventsub_failed tenant=%s type=%s message_id=%s error=%s",
                tenant_id,
                event_type,
                message_id,
                exc,
            )
            self._count(event_type, "failed")
            return PlatformEventResponse(status="failed", detail=str(exc))
        self._count(event_type, "processed")
        return PlatformEventResponse(status="processed", detail=detail)

    async def _dispatch(self, tenant_id: str, event_type: str, event: dict) -> str:
        if event_type == "stream.online":
            return await self._stream_online(tenant_id, event)
        if event_type == "stream.offline":
            return await self._stream_offline(tenant_id)
        if event_type == "channel.cheer":
            return await self._cheer(tenant_id, event)
        logger.info("eventsub_unhandled tenant=%s type=%s", tenant_id, event_type)
        return "unhandled event type"

    async def _stream_online(self, tenant_id: str, event: dict) -> str:
        started_at = _parse_time(event.get("started_at")) or utc_now()
        await self.store.put_document(
            tenant_id, STREAM_KIND, {"state": "online", "started_at": started_at.isoformat()}
        )
        await self.router.route(
            tenant_id,
            StreamStateChanged(
                tenant_id=tenant_id,
                state=StreamState.online,
                title=event.get("title"),
                game=event.get("category_name"),
                started_at=started_at,
            ),
        )
        return "stream online"

    async def _stream_offline(self, tenant_id: str) -> str:
        previous = await self.store.get_document(tenant_id, STREAM_KIND) or {}
        started_at = _parse_time(previous.get("started_at"))
        ended_at = utc_now()
        duration = int((ended_at - started_at).total_seconds()) if started_at else None
        await self.store.put_document(
            tenant_id, STREAM_KIND, {"state": "offline", "ended_at": ended_at.isoformat()}
        )
        await self.router.route(
            tenant_id,
            StreamStateChanged(
                tenant_id=tenant_id,
                state=StreamState.offline,
                started_at=started_at,
                duration_seconds=duration,
            ),
        )
        return "stream offline"

    async def _cheer(self, tenant_id: str, event: dict) -> str:
        settings = await self.config.get(tenant_id)
        bits = event.get("bits")
        if not settings.features.bits_integration:
            return "bits integration disabled"
        if not isinstance(bits, int) or bits <= 0:
            return "no bits in event"
        result = await self.counters.increment(tenant_id, "bits", bits)
        return f"bits={result.value}"

    def _count(self, event_type: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_event("platform_events", type=event_type, outcome=outcome)
