from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DISCORD_WEBHOOK_PREFIX = "https://discord.com/api/webhooks/"
SETTINGS_SCHEMA_VERSION = 1

DEFAULT_MILESTONES: dict[str, list[int]] = {
    "deaths": [10, 25, 50, 100, 250, 500],
    "swears": [25, 50, 100, 200, 500],
}

BUILTIN_COUNTER_KEYS = ("deaths", "swears", "screams", "bits")

_COUNTER_KEY = re.compile(r"^[a-z][a-z0-9_]{0,39}$")

logger = logging.getLogger("counterhub.settings")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TemplateStyle(str, Enum):
    asylum_themed = "asylum_themed"
    modern_minimal = "modern_minimal"
    streamer_pro = "streamer_pro"

    @classmethod
    def resolve(cls, value: object) -> "TemplateStyle":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.asylum_themed


class NotificationCategory(str, Enum):
    death_milestone = "death_milestone"
    swear_milestone = "swear_milestone"
    scream_milestone = "scream_milestone"
    bits_milestone = "bits_milestone"
    custom_milestone = "custom_milestone"
    stream_start = "stream_start"
    stream_end = "stream_end"


class MutationKind(str, Enum):
    increment = "increment"
    decrement = "decrement"
    reset = "reset"


class StreamState(str, Enum):
    online = "online"
    offline = "offline"


class BotState(str, Enum):
    disabled = "disabled"
    connecting = "connecting"
    connected = "connected"
    backoff = "backoff"
    error = "error"


class ChatPermission(str, Enum):
    everyone = "everyone"
    subscriber = "subscriber"
    moderator = "moderator"
    broadcaster = "broadcaster"


class ChannelName(str, Enum):
    realtime = "realtime"
    webhook = "webhook"
    chat = "chat"


class DeliveryStatus(str, Enum):
    delivered = "delivered"
    failed = "failed"
    rejected = "rejected"
    dropped = "dropped"


class WebhookDeliveryStatus(str, Enum):
    pending = "pending"
    delivered = "delivered"
    retry_pending = "retry_pending"
    failed = "failed"
    dropped = "dropped"


def normalize_counter_key(value: str) -> str:
    return value.strip().lower()


def normalize_thresholds(values: list[int]) -> list[int]:
    cleaned = sorted({int(value) for value in values})
    if cleaned and cleaned[0] <= 0:
        raise ValueError("milestone thresholds must be positive integers")
    return cleaned


def validate_webhook_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        return None
    if not stripped.startswith(DISCORD_WEBHOOK_PREFIX) or stripped == DISCORD_WEBHOOK_PREFIX:
        raise ValueError(f"webhook url must start with {DISCORD_WEBHOOK_PREFIX}")
    return stripped


class MilestoneConfiguration(BaseModel):
    thresholds: dict[str, list[int]] = Field(
        default_factory=lambda: {key: list(values) for key, values in DEFAULT_MILESTONES.items()}
    )

    @field_validator("thresholds")
    @classmethod
    def normalize(cls, value: dict[str, list[int]]) -> dict[str, list[int]]:
        return {
            normalize_counter_key(counter): normalize_thresholds(values)
            for counter, values in value.items()
        }

    def for_counter(self, counter: str) -> list[int]:
        return list(self.thresholds.get(counter, []))


class EnabledNotifications(BaseModel):
    death_milestone: bool = True
    swear_milestone: bool = True
    scream_milestone: bool = True
    bits_milestone: bool = False
    custom_milestone: bool = True
    stream_start: bool = True
    stream_end: bool = False

    def is_enabled(self, category: NotificationCategory) -> bool:
        return bool(getattr(self, category.value, False))


class NotificationPreference(BaseModel):
    webhook_url: Optional[str] = None
    template_style: TemplateStyle = TemplateStyle.asylum_themed
    enabled: EnabledNotifications = Field(default_factory=EnabledNotifications)
    enable_channel_notifications: bool = False

    @field_validator("webhook_url")
    @classmethod
    def check_webhook_url(cls, value: Optional[str]) -> Optional[str]:
        return validate_webhook_url(value)

    @field_validator("template_style", mode="before")
    @classmethod
    def fallback_template_style(cls, value: object) -> TemplateStyle:
        return TemplateStyle.resolve(value)

    @property
    def webhook_active(self) -> bool:
        return self.webhook_url is not None


class CustomCounterDefinition(BaseModel):
    name: str = Field(min_length=1, max_length=60)
    icon: str = Field(default="", max_length=16)
    increment_by: int = Field(default=1, ge=1, le=100)
    decrement_by: int = Field(default=1, ge=1, le=100)
    milestones: list[int] = Field(default_factory=list)

    @field_validator("milestones")
    @classmethod
    def normalize_milestones(cls, value: list[int]) -> list[int]:
        return normalize_thresholds(value)


class ChatCommandDefinition(BaseModel):
    response: str = Field(default="", max_length=500)
    permission: ChatPermission = ChatPermission.everyone
    cooldown_seconds: int = Field(default=5, ge=0, le=3600)
    enabled: bool = True
    action: Optional[MutationKind] = None
    counters: list[str] = Field(default_factory=list)

    @field_validator("counters")
    @classmethod
    def normalize_counters(cls, value: list[str]) -> list[str]:
        return [normalize_counter_key(item) for item in value if item.strip()]


class ChatCommandConfiguration(BaseModel):
    max_increment_amount: int = Field(default=1, ge=1, le=10)
    commands: dict[str, ChatCommandDefinition] = Field(default_factory=dict)

    @field_validator("commands")
    @classmethod
    def normalize_names(
        cls, value: dict[str, ChatCommandDefinition]
    ) -> dict[str, ChatCommandDefinition]:
        normalized: dict[str, ChatCommandDefinition] = {}
        for name, definition in value.items():
            key = name.strip().lower()
            if not key:
                continue
            if not key.startswith("!"):
                key = f"!{key}"
            normalized[key] = definition
        return normalized


class FeatureFlags(BaseModel):
    chat_commands: bool = True
    discord_notifications: bool = True
    bits_integration: bool = False
    stream_overlay: bool = True


class TenantProfile(BaseModel):
    username: str = ""
    display_name: str = ""
    profile_image_url: Optional[str] = None


class TenantSettings(BaseModel):
    schema_version: int = SETTINGS_SCHEMA_VERSION
    profile: TenantProfile = Field(default_factory=TenantProfile)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    milestones: MilestoneConfiguration = Field(default_factory=MilestoneConfiguration)
    notifications: NotificationPreference = Field(default_factory=NotificationPreference)
    custom_counters: dict[str, CustomCounterDefinition] = Field(default_factory=dict)
    chat_commands: ChatCommandConfiguration = Field(default_factory=ChatCommandConfiguration)

    @field_validator("custom_counters")
    @classmethod
    def check_custom_keys(
        cls, value: dict[str, CustomCounterDefinition]
    ) -> dict[str, CustomCounterDefinition]:
        normalized: dict[str, CustomCounterDefinition] = {}
        for key, definition in value.items():
            counter = normalize_counter_key(key)
            if not _COUNTER_KEY.match(counter):
                raise ValueError(f"invalid custom counter key: {key}")
            if counter in BUILTIN_COUNTER_KEYS:
                raise ValueError(f"custom counter key shadows built-in counter: {key}")
            normalized[counter] = definition
        return normalized

    @classmethod
    def from_document(cls, document: Optional[dict]) -> "TenantSettings":
        """Build settings from a stored document, upgrading older layouts.

        Documents without ``schema_version`` are the flat camelCase layout and
        go through ``_migrate_v0`` first. Missing sections take defaults.
        """
        if not document:
            return cls()
        if "schema_version" not in document:
            document = _migrate_v0(document)
        return cls.model_validate(document)

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def _mapping(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _positive_int(value: object) -> Optional[int]:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return value


def _parse_threshold_list(raw: object) -> Optional[list[int]]:
    if isinstance(raw, str):
        parts: list = raw.split(",")
    elif isinstance(raw, list):
        parts = raw
    else:
        return None
    values = (_positive_int(part) for part in parts)
    return [value for value in values if value is not None]


def _step(value: object) -> int:
    return min(_positive_int(value) or 1, 100)


def _first_present(document: dict, *keys: str) -> object:
    for key in keys:
        if document.get(key) is not None:
            return document[key]
    return None


def _legacy_counter_key(raw: object) -> str:
    return re.sub(r"[^a-z0-9_]+", "_", str(raw).strip().lower()).strip("_")[:40]


def _migrate_custom_counters(raw: object) -> dict[str, dict]:
    """Carry legacy custom counters over, renaming keys to the current key rules.

    Entries whose key cannot be made valid, or that collide with a built-in or
    an earlier entry, are dropped.
    """
    migrated: dict[str, dict] = {}
    for raw_key, value in _mapping(raw).items():
        key = _legacy_counter_key(raw_key)
        if (
            not isinstance(value, dict)
            or not _COUNTER_KEY.match(key)
            or key in BUILTIN_COUNTER_KEYS
            or key in migrated
        ):
            logger.warning("legacy_custom_counter_dropped key=%r", raw_key)
            continue
        if key != raw_key:
            logger.info("legacy_custom_counter_renamed from=%r to=%s", raw_key, key)
        name = _text(value.get("name")) or str(raw_key).strip() or key
        migrated[key] = {
            "name": name[:60],
            "icon": _text(value.get("icon"))[:16],
            "increment_by": _step(_first_present(value, "incrementBy", "increment_by")),
            "decrement_by": _step(_first_present(value, "decrementBy", "decrement_by")),
            "milestones": _parse_threshold_list(value.get("milestones")) or [],
        }
    return migrated


def _migrate_v0(document: dict) -> dict:
    enabled_legacy = _mapping(document.get("enabledNotifications"))
    enabled: dict[str, bool] = {
        category.value: bool(enabled_legacy[category.value])
        for category in NotificationCategory
        if isinstance(enabled_legacy.get(category.value), bool)
    }
    for flat_key, category in (
        ("deathMilestoneEnabled", NotificationCategory.death_milestone),
        ("swearMilestoneEnabled", NotificationCategory.swear_milestone),
        ("screamMilestoneEnabled", NotificationCategory.scream_milestone),
    ):
        if isinstance(document.get(flat_key), bool):
            enabled[category.value] = document[flat_key]

    thresholds = {key: list(values) for key, values in DEFAULT_MILESTONES.items()}
    structured = _mapping(document.get("milestoneThresholds"))
    for counter in ("deaths", "swears", "screams", "bits"):
        parsed = _parse_threshold_list(structured.get(counter))
        if parsed is None:
            parsed = _parse_threshold_list(
                _first_present(document, f"{counter[:-1]}Thresholds", f"{counter}Thresholds")
            )
        if parsed:
            thresholds[counter] = parsed

    webhook_url = _first_present(document, "discordWebhookUrl", "webhookUrl", "webhook_url")
    try:
        webhook_url = validate_webhook_url(webhook_url) if isinstance(webhook_url, str) else None
    except ValueError:
        logger.warning("legacy_webhook_url_dropped reason=invalid_prefix")
        webhook_url = None

    features = _mapping(document.get("features"))
    discord_flag = _first_present(features, "discordNotifications", "discordWebhook")
    custom_counters = _first_present(document, "customCounters", "custom_counters")
    return {
        "schema_version": SETTINGS_SCHEMA_VERSION,
        "profile": {
            "username": _text(document.get("username")),
            "display_name": _text(_first_present(document, "displayName", "display_name")),
            "profile_image_url": _text(_first_present(document, "profileImageUrl", "profile_image_url"))
            or None,
        },
        "features": {
            "chat_commands": bool(features.get("chatCommands", True)),
            "discord_notifications": True if discord_flag is None else bool(discord_flag),
            "bits_integration": bool(features.get("bitsIntegration", False)),
            "stream_overlay": bool(features.get("streamOverlay", True)),
        },
        "milestones": {"thresholds": thresholds},
        "notifications": {
            "webhook_url": webhook_url,
            "template_style": document.get("templateStyle"),
            "enabled": enabled,
            "enable_channel_notifications": bool(document.get("enableChannelNotifications", False)),
        },
        "custom_counters": _migrate_custom_counters(custom_counters),
    }


class CounterSnapshot(BaseModel):
    tenant_id: str
    counters: dict[str, int] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None

    @field_validator("counters")
    @classmethod
    def non_negative(cls, value: dict[str, int]) -> dict[str, int]:
        for counter, count in value.items():
            if count < 0:
                raise ValueError(f"counter {counter} cannot be negative")
        return value


class BotCredentials(BaseModel):
    bot_username: str = Field(min_length=2, max_length=40)
    access_token: str = Field(min_length=4, repr=False)
    channel: str = Field(min_length=2, max_length=40)

    @field_validator("bot_username", "channel")
    @classmethod
    def lower_login(cls, value: str) -> str:
        return value.strip().lstrip("#").lower()


class MutationApplied(BaseModel):
    kind: Literal["mutation_applied"] = "mutation_applied"
    tenant_id: str
    counter: str
    operation: MutationKind
    previous_value: int
    value: int
    change: int
    occurred_at: datetime = Field(default_factory=utc_now)


class MilestoneCrossed(BaseModel):
    kind: Literal["milestone_crossed"] = "milestone_crossed"
    tenant_id: str
    counter: str
    previous_value: int
    value: int
    threshold: int
    previous_milestone: int = 0
    occurred_at: datetime = Field(default_factory=utc_now)


class StreamStateChanged(BaseModel):
    kind: Literal["stream_state_changed"] = "stream_state_changed"
    tenant_id: str
    state: StreamState
    title: Optional[str] = None
    game: Optional[str] = None
    thumbnail_url: Optional[str] = None
    started_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    occurred_at: datetime = Field(default_factory=utc_now)


NotificationEvent = Union[MutationApplied, MilestoneCrossed, StreamStateChanged]


class NotificationPayload(BaseModel):
    event_kind: str
    tenant_id: str
    category: Optional[NotificationCategory] = None
    counter: Optional[str] = None
    counter_name: Optional[str] = None
    icon: Optional[str] = None
    previous_value: Optional[int] = None
    value: Optional[int] = None
    change: Optional[int] = None
    threshold: Optional[int] = None
    previous_milestone: Optional[int] = None
    streamer_username: str = ""
    streamer_display_name: str = ""
    avatar_url: Optional[str] = None
    stream_state: Optional[StreamState] = None
    stream_title: Optional[str] = None
    stream_game: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    occurred_at: datetime = Field(default_factory=utc_now)


class RealtimeEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    tenant_id: str = Field(alias="tenantId")
    counter: Optional[str] = None
    value: Optional[int] = None
    change: Optional[int] = None
    threshold: Optional[int] = None
    icon: Optional[str] = None
    name: Optional[str] = None
    state: Optional[StreamState] = None

    def to_message(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WebhookDeliveryRecord(BaseModel):
    tenant_id: str
    event_key: str
    status: WebhookDeliveryStatus
    attempts: int
    last_status_code: Optional[int] = None
    last_error: Optional[str] = None
    next_retry_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class MutationResponse(BaseModel):
    counter: str
    value: int
    change: int
    crossed: list[int] = Field(default_factory=list)


class ResetAllResponse(BaseModel):
    counters: dict[str, MutationResponse]


class MilestoneUpdateRequest(BaseModel):
    thresholds: dict[str, list[int]]


class BotEnableRequest(BaseModel):
    bot_username: str = Field(min_length=2, max_length=40)
    access_token: str = Field(min_length=4)
    channel: Optional[str] = None


class BotStatusResponse(BaseModel):
    tenant_id: str
    state: BotState
    consecutive_failures: int = 0
    last_error: Optional[str] = None


class PlatformEventResponse(BaseModel):
    status: str
    detail: Optional[str] = None
