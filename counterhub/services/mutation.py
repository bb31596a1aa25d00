from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from counterhub.models import MutationKind, TenantSettings, normalize_counter_key
from counterhub.observability import MetricsRegistry
from counterhub.services.catalog import CounterDisplay, resolve_counter
from counterhub.services.milestones import detect_crossed
from counterhub.services.tenant_config import TenantConfigService
from counterhub.store import CounterStore, CounterStoreError, KeyedLocks

logger = logging.getLogger("counterhub.mutation")


class PersistenceFailureError(Exception):
    pass


@dataclass(frozen=True)
class MutationResult:
    tenant_id: str
    counter: CounterDisplay
    operation: MutationKind
    previous_value: int
    value: int
    change: int
    crossed: tuple[int, ...] = field(default_factory=tuple)
    # The settings the mutation was applied under.
    settings: Optional[TenantSettings] = field(default=None, compare=False, repr=False)


CommitListener = Callable[[MutationResult], object]


class MutationEngine:
    def __init__(
        self,
        store: CounterStore,
        config: TenantConfigService,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.metrics = metrics
        self._locks = KeyedLocks()
        self._listeners: list[CommitListener] = []

    def add_commit_listener(self, listener: CommitListener) -> None:
        """Register a synchronous callback run for each committed mutation.

        Listeners run before the counter's lock is released, so for one
        (tenant, counter) they observe mutations in commit order. They must not
        block.
        """
        self._listeners.append(listener)

    async def mutate(self, tenant_id: str, counter: str, delta: int) -> MutationResult:
        operation = MutationKind.increment if delta >= 0 else MutationKind.decrement
        return await self._apply(tenant_id, counter, operation, delta)

    async def increment(
        self, tenant_id: str, counter: str, amount: Optional[int] = None
    ) -> MutationResult:
        return await self._apply(tenant_id, counter, MutationKind.increment, amount)

    async def decrement(
        self, tenant_id: str, counter: str, amount: Optional[int] = None
    ) -> MutationResult:
        return await self._apply(
            tenant_id, counter, MutationKind.decrement, -amount if amount is not None else None
        )

    async def reset(self, tenant_id: str, counter: str) -> MutationResult:
        return await self._apply(tenant_id, counter, MutationKind.reset, None)

    async def _apply(
        self,
        tenant_id: str,
        counter: str,
        operation: MutationKind,
        delta: Optional[int],
    ) -> MutationResult:
        key = normalize_counter_key(counter)
        async with self._locks.hold((tenant_id, key)):
            try:
                settings = await self.config.get(tenant_id)
            except CounterStoreError as exc:
                self._record_failure(tenant_id, key, "settings_read")
                raise PersistenceFailureError(str(exc)) from exc
            display = resolve_counter(settings, key)

            if delta is None and operation is MutationKind.increment:
                delta = display.increment_by
            elif delta is None and operation is MutationKind.decrement:
                delta = -display.decrement_by

            try:
                previous = await self.store.get_counter(tenant_id, key)
                if operation is MutationKind.reset:
                    value = 0
                else:
                    value = max(0, previous + delta)
                await self.store.set_counter(tenant_id, key, value)
            except CounterStoreError as exc:
                self._record_failure(tenant_id, key, "store_write")
                raise PersistenceFailureError(str(exc)) from exc

            crossed: list[int] = []
            if operation is MutationKind.increment:
                crossed = detect_crossed(previous, value, display.thresholds)

            result = MutationResult(
                tenant_id=tenant_id,
                counter=display,
                operation=operation,
                previous_value=previous,
                value=value,
                change=value - previous,
                crossed=tuple(crossed),
                settings=settings,
            )
            for listener in self._listeners:
                try:
                    listener(result)
                except Exception:
                    logger.exception("commit_listener_failed tenant=%s counter=%s", tenant_id, key)

        logger.info(
            "mutation_applied tenant=%s counter=%s operation=%s value=%s change=%s crossed=%s",
            tenant_id,
            key,
            operation.value,
            value,
            result.change,
            list(result.crossed),
        )
        if self.metrics:
            self.metrics.record_event("mutations_applied", counter=key, operation=operation.value)
            for _ in result.crossed:
                self.metrics.record_event("milestones_crossed", counter=key)
        return result

    def _record_failure(self, tenant_id: str, counter: str, reason: str) -> None:
        logger.error("mutation_failed tenant=%s counter=%s reason=%s", tenant_id, counter, reason)
        if self.metrics:
            self.metrics.record_event("mutation_failures", reason=reason)
