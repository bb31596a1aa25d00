from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from counterhub.models import (
    ChatCommandDefinition,
    ChatPermission,
    MutationKind,
    TenantSettings,
    normalize_counter_key,
)
from counterhub.observability import MetricsRegistry
from counterhub.services.catalog import InvalidCounterError, known_counters, resolve_counter
from counterhub.services.counters import CounterService
from counterhub.services.milestones import next_milestone
from counterhub.services.mutation import MutationResult, PersistenceFailureError
from counterhub.services.tenant_config import TenantConfigService

logger = logging.getLogger("counterhub.chat")

_ALIASES: dict[str, tuple[str, MutationKind]] = {
    "!death+": ("deaths", MutationKind.increment),
    "!d+": ("deaths", MutationKind.increment),
    "!death-": ("deaths", MutationKind.decrement),
    "!d-": ("deaths", MutationKind.decrement),
    "!swear+": ("swears", MutationKind.increment),
    "!sw+": ("swears", MutationKind.increment),
    "!s+": ("swears", MutationKind.increment),
    "!swear-": ("swears", MutationKind.decrement),
    "!sw-": ("swears", MutationKind.decrement),
    "!s-": ("swears", MutationKind.decrement),
    "!scream+": ("screams", MutationKind.increment),
    "!sc+": ("screams", MutationKind.increment),
    "!scream-": ("screams", MutationKind.decrement),
    "!sc-": ("screams", MutationKind.decrement),
}

_STATS_COUNTERS = ("deaths", "swears", "screams", "bits")


@dataclass(frozen=True)
class ChatMessage:
    user_id: str
    username: str
    text: str
    badges: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_broadcaster(self) -> bool:
        return "broadcaster" in self.badges

    @property
    def is_moderator(self) -> bool:
        return "moderator" in self.badges

    @property
    def is_subscriber(self) -> bool:
        return "subscriber" in self.badges or "founder" in self.badges

    @property
    def can_moderate(self) -> bool:
        return self.is_broadcaster or self.is_moderator


@dataclass(frozen=True)
class ChatCommand:
    name: str
    kind: str
    counter: Optional[str] = None
    operation: Optional[MutationKind] = None
    amount: Optional[int] = None
    definition: Optional[ChatCommandDefinition] = None

    @property
    def mutating(self) -> bool:
        return self.kind in {"mutate", "reset_all"} or (
            self.definition is not None and self.definition.action is not None
        )


def _requested_amount(parts: list[str], cap: int) -> Optional[int]:
    if len(parts) < 2 or not parts[1].isdigit():
        return None
    requested = int(parts[1])
    if requested <= 0:
        return None
    return min(requested, cap)


def parse_command(text: str, settings: TenantSettings) -> Optional[ChatCommand]:
    """Map a chat line to a command, or None when it is not one we know."""
    parts = text.strip().split()
    if not parts or not parts[0].startswith("!"):
        return None
    name = parts[0].lower()
    amount = _requested_amount(parts, settings.chat_commands.max_increment_amount)
    counters = known_counters(settings)

    if name == "!stats":
        return ChatCommand(name=name, kind="stats")
    if name == "!resetcounters":
        return ChatCommand(name=name, kind="reset_all", operation=MutationKind.reset)
    if name in _ALIASES:
        counter, operation = _ALIASES[name]
        return ChatCommand(name=name, kind="mutate", counter=counter, operation=operation, amount=amount)
    if name.startswith("!reset") and name[len("!reset"):] in counters:
        return ChatCommand(
            name=name, kind="mutate", counter=name[len("!reset"):], operation=MutationKind.reset
        )
    if name[-1] in "+-" and name[1:-1] in counters:
        operation = MutationKind.increment if name.endswith("+") else MutationKind.decrement
        return ChatCommand(name=name, kind="mutate", counter=name[1:-1], operation=operation, amount=amount)
    if name[1:] in counters:
        return ChatCommand(name=name, kind="query", counter=name[1:])

    definition = settings.chat_commands.commands.get(name)
    if definition is not None and definition.enabled:
        return ChatCommand(
            name=name,
            kind="custom",
            operation=definition.action,
            amount=amount,
            definition=definition,
        )
    return None


def is_permitted(command: ChatCommand, message: ChatMessage) -> bool:
    if command.definition is not None:
        permission = command.definition.permission
        if permission is ChatPermission.broadcaster:
            return message.is_broadcaster
        if permission is ChatPermission.moderator:
            return message.can_moderate
        if permission is ChatPermission.subscriber:
            return message.is_subscriber or message.can_moderate
        return True
    if command.mutating:
        return message.can_moderate
    return True


def _describe(result: MutationResult) -> str:
    return f"{result.counter.icon} {result.counter.name}: {result.value}".strip()


class ChatCommandHandler:
    def __init__(
        self,
        counters: CounterService,
        config: TenantConfigService,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.counters = counters
        self.config = config
        self.metrics = metrics
        self._clock = clock
        # (tenant, user, command) -> monotonic time the cooldown ends
        self._cooldowns: dict[tuple[str, str, str], float] = {}

    async def handle(self, tenant_id: str, message: ChatMessage) -> Optional[str]:
        """Run one chat line for a tenant and return the reply, if any.

        Commands the sender may not use are dropped without a reply.
        """
        settings = await self.config.get(tenant_id)
        if not settings.features.chat_commands:
            return None
        command = parse_command(message.text, settings)
        if command is None:
            return None
        if not is_permitted(command, message):
            logger.info(
                "chat_command_ignored tenant=%s user=%s command=%s reason=permission",
                tenant_id,
                message.username,
                command.name,
            )
            self._count(command, "ignored")
            return None

        try:
            reply = await self._execute(tenant_id, settings, command, message)
        except (InvalidCounterError, PersistenceFailureError) as exc:
            logger.warning(
                "chat_command_failed tenant=%s command=%s error=%s", tenant_id, command.name, exc
            )
            self._count(command, "failed")
            return None
        self._count(command, "handled")
        return reply

    async def _execute(
        self,
        tenant_id: str,
        settings: TenantSettings,
        command: ChatCommand,
        message: ChatMessage,
    ) -> Optional[str]:
        if command.kind == "stats":
            snapshot = await self.counters.snapshot(tenant_id)
            parts = []
            for key in _STATS_COUNTERS:
                display = resolve_counter(settings, key)
                parts.append(f"{display.icon} {display.name}: {snapshot.counters.get(key, 0)}")
            return "📊 " + " | ".join(parts)
        if command.kind == "query":
            display = resolve_counter(settings, command.counter)
            snapshot = await self.counters.snapshot(tenant_id)
            value = snapshot.counters.get(display.key, 0)
            reply = f"{display.icon} {display.name}: {value}".strip()
            upcoming = next_milestone(value, display.thresholds)
            if upcoming is not None:
                reply += f" (next milestone: {upcoming})"
            return reply
        if command.kind == "reset_all":
            await self.counters.reset_all(tenant_id)
            return "🔄 Deaths, swears and screams reset to 0"
        if command.kind == "mutate":
            result = await self._mutate(tenant_id, command.counter, command.operation, command.amount)
            return _describe(result)
        return await self._custom(tenant_id, command, message)

    async def _custom(self, tenant_id: str, command: ChatCommand, message: ChatMessage) -> Optional[str]:
        definition = command.definition
        key = (tenant_id, message.user_id, command.name)
        now = self._clock()
        ready_at = self._cooldowns.get(key)
        if ready_at is not None and now < ready_at:
            logger.info(
                "chat_command_ignored tenant=%s user=%s command=%s reason=cooldown",
                tenant_id,
                message.username,
                command.name,
            )
            return None
        self._start_cooldown(key, now, definition.cooldown_seconds)

        if definition.action is None:
            return definition.response or None
        if definition.action is MutationKind.reset and not definition.counters:
            await self.counters.reset_all(tenant_id)
            return definition.response or "🔄 Counters reset"

        results = []
        for target in definition.counters:
            try:
                results.append(await self._mutate(tenant_id, target, definition.action, command.amount))
            except InvalidCounterError:
                logger.warning(
                    "chat_command_unknown_target tenant=%s command=%s target=%s",
                    tenant_id,
                    command.name,
                    target,
                )
        if not results:
            return None
        return definition.response or " | ".join(_describe(result) for result in results)

    async def _mutate(
        self, tenant_id: str, counter: str, operation: MutationKind, amount: Optional[int]
    ) -> MutationResult:
        counter = normalize_counter_key(counter)
        if operation is MutationKind.increment:
            return await self.counters.increment(tenant_id, counter, amount)
        if operation is MutationKind.decrement:
            return await self.counters.decrement(tenant_id, counter, amount)
        return await self.counters.reset(tenant_id, counter)

    def _count(self, command: ChatCommand, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_event("chat_commands", kind=command.kind, outcome=outcome)

    def _start_cooldown(self, key: tuple[str, str, str], now: float, seconds: int) -> None:
        expired = [entry for entry, ready_at in self._cooldowns.items() if ready_at <= now]
        for entry in expired:
            del self._cooldowns[entry]
        if seconds > 0:
            self._cooldowns[key] = now + seconds
