from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from threading import RLock
from typing import AsyncIterator, Hashable, Optional, Protocol, runtime_checkable

from counterhub.models import CounterSnapshot, utc_now


class CounterStoreError(Exception):
    pass


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it.

    asyncio.Lock wakes waiters in arrival order, which gives per-key FIFO.
    """

    def __init__(self) -> None:
        self._entries: dict[Hashable, list] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._entries[key] = entry
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


@runtime_checkable
class CounterStore(Protocol):
    """Tenant-keyed storage for counter values and JSON documents.

    Writes are last-writer-wins upserts. Callers serialize read-modify-write
    sequences per (tenant, counter) themselves.
    """

    async def get_counter(self, tenant_id: str, counter: str) -> int:
        ...

    async def set_counter(self, tenant_id: str, counter: str, value: int) -> datetime:
        ...

    async def get_snapshot(self, tenant_id: str) -> CounterSnapshot:
        ...

    async def get_document(self, tenant_id: str, kind: str) -> Optional[dict]:
        ...

    async def put_document(self, tenant_id: str, kind: str, document: dict) -> None:
        ...

    async def register_event(self, event_id: str) -> bool:
        ...

    async def ping(self) -> bool:
        ...


class InMemoryCounterStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self.counters: dict[str, dict[str, int]] = {}
        self.updated_at: dict[str, datetime] = {}
        self.documents: dict[tuple[str, str], dict] = {}
        self.processed_events: set[str] = set()

    async def get_counter(self, tenant_id: str, counter: str) -> int:
        with self._lock:
            return self.counters.get(tenant_id, {}).get(counter, 0)

    async def set_counter(self, tenant_id: str, counter: str, value: int) -> datetime:
        if value < 0:
            raise CounterStoreError(f"refusing negative value for {counter}")
        with self._lock:
            now = utc_now()
            self.counters.setdefault(tenant_id, {})[counter] = value
            self.updated_at[tenant_id] = now
            return now

    async def get_snapshot(self, tenant_id: str) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(
                tenant_id=tenant_id,
                counters=dict(self.counters.get(tenant_id, {})),
                last_updated=self.updated_at.get(tenant_id),
            )

    async def get_document(self, tenant_id: str, kind: str) -> Optional[dict]:
        with self._lock:
            document = self.documents.get((tenant_id, kind))
            return copy.deepcopy(document) if document is not None else None

    async def put_document(self, tenant_id: str, kind: str, document: dict) -> None:
        with self._lock:
            self.documents[(tenant_id, kind)] = copy.deepcopy(document)

    async def register_event(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self.processed_events:
                return False
            self.processed_events.add(event_id)
            return True

    async def ping(self) -> bool:
        return True
