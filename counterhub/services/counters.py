from __future__ import annotations

import logging
from typing import Optional

from counterhub.models import CounterSnapshot
from counterhub.services.catalog import RESETTABLE_BUILTINS, known_counters
from counterhub.services.mutation import MutationEngine, MutationResult
from counterhub.services.notifications import NotificationRouter

logger = logging.getLogger("counterhub.counters")


class CounterService:
    """Mutation entry point shared by the HTTP routes, chat bot and platform events.

    Realtime events are published from inside the engine's per-counter lock.
    The slower channels are routed after the mutation returns; routing never
    turns a committed mutation into a failure.
    """

    def __init__(self, engine: MutationEngine, router: NotificationRouter) -> None:
        self.engine = engine
        self.router = router
        engine.add_commit_listener(router.publish_mutation)

    async def increment(self, tenant_id: str, counter: str, amount: Optional[int] = None) -> MutationResult:
        result = await self.engine.increment(tenant_id, counter, amount)
        await self._notify(result)
        return result

    async def decrement(self, tenant_id: str, counter: str, amount: Optional[int] = None) -> MutationResult:
        result = await self.engine.decrement(tenant_id, counter, amount)
        await self._notify(result)
        return result

    async def reset(self, tenant_id: str, counter: str) -> MutationResult:
        result = await self.engine.reset(tenant_id, counter)
        await self._notify(result)
        return result

    async def reset_all(self, tenant_id: str) -> dict[str, MutationResult]:
        results = {}
        for counter in RESETTABLE_BUILTINS:
            results[counter] = await self.reset(tenant_id, counter)
        return results

    async def snapshot(self, tenant_id: str) -> CounterSnapshot:
        settings = await self.engine.config.get(tenant_id)
        stored = await self.engine.store.get_snapshot(tenant_id)
        counters = {name: stored.counters.get(name, 0) for name in known_counters(settings)}
        return stored.model_copy(update={"counters": counters})

    async def _notify(self, result: MutationResult) -> None:
        try:
            await self.router.notify_mutation(result, realtime_published=True)
        except Exception:
            logger.exception(
                "notify_failed tenant=%s counter=%s", result.tenant_id, result.counter.key
            )
