from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from counterhub.models import CounterSnapshot, utc_now
from counterhub.store import CounterStoreError


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlCounterStore:
    """
    SQLAlchemy-backed counter store. Works with SQLite and PostgreSQL URLs.

    Each counter is its own row keyed by (tenant_id, counter), so a caller that
    serializes per key never races another key's write. Blocking database calls
    run in a worker thread.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.counter_values = Table(
            "counter_values",
            self.metadata,
            Column("tenant_id", String(120), primary_key=True),
            Column("counter", String(60), primary_key=True),
            Column("value", Integer, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.tenant_documents = Table(
            "tenant_documents",
            self.metadata,
            Column("tenant_id", String(120), primary_key=True),
            Column("kind", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.processed_events = Table(
            "processed_events",
            self.metadata,
            Column("event_id", String(255), primary_key=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def _ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def _get_counter(self, tenant_id: str, counter: str) -> int:
        table = self.counter_values
        with self.engine.connect() as conn:
            row = conn.execute(
                select(table.c.value).where(
                    table.c.tenant_id == tenant_id, table.c.counter == counter
                )
            ).first()
        return int(row[0]) if row else 0

    def _set_counter(self, tenant_id: str, counter: str, value: int) -> datetime:
        if value < 0:
            raise CounterStoreError(f"refusing negative value for {counter}")
        table = self.counter_values
        now = utc_now()
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(table.c.counter).where(
                        table.c.tenant_id == tenant_id, table.c.counter == counter
                    )
                ).first()
                if existing:
                    conn.execute(
                        table.update()
                        .where(table.c.tenant_id == tenant_id, table.c.counter == counter)
                        .values(value=value, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        table.insert().values(
                            tenant_id=tenant_id,
                            counter=counter,
                            value=value,
                            updated_at_utc=now,
                        )
                    )
        return now

    def _get_snapshot(self, tenant_id: str) -> CounterSnapshot:
        table = self.counter_values
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(table.c.counter, table.c.value, table.c.updated_at_utc).where(
                    table.c.tenant_id == tenant_id
                )
            ).all()
        counters = {row.counter: int(row.value) for row in rows}
        updated = [_as_utc(row.updated_at_utc) for row in rows if row.updated_at_utc]
        return CounterSnapshot(
            tenant_id=tenant_id,
            counters=counters,
            last_updated=max(updated) if updated else None,
        )

    def _get_document(self, tenant_id: str, kind: str) -> Optional[dict]:
        table = self.tenant_documents
        with self.engine.connect() as conn:
            row = conn.execute(
                select(table.c.payload_json).where(
                    table.c.tenant_id == tenant_id, table.c.kind == kind
                )
            ).first()
        if not row:
            return None
        return json.loads(row[0])

    def _put_document(self, tenant_id: str, kind: str, document: dict) -> None:
        table = self.tenant_documents
        serialized = json.dumps(document)
        now = utc_now()
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(table.c.kind).where(
                        table.c.tenant_id == tenant_id, table.c.kind == kind
                    )
                ).first()
                if existing:
                    conn.execute(
                        table.update()
                        .where(table.c.tenant_id == tenant_id, table.c.kind == kind)
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        table.insert().values(
                            tenant_id=tenant_id,
                            kind=kind,
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def _register_event(self, event_id: str) -> bool:
        table = self.processed_events
        with self._lock:
            try:
                with self.engine.begin() as conn:
                    conn.execute(table.insert().values(event_id=event_id, created_at_utc=utc_now()))
            except IntegrityError:
                return False
        return True

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as exc:
            raise CounterStoreError(str(exc)) from exc

    async def get_counter(self, tenant_id: str, counter: str) -> int:
        return await self._run(self._get_counter, tenant_id, counter)

    async def set_counter(self, tenant_id: str, counter: str, value: int) -> datetime:
        return await self._run(self._set_counter, tenant_id, counter, value)

    async def get_snapshot(self, tenant_id: str) -> CounterSnapshot:
        return await self._run(self._get_snapshot, tenant_id)

    async def get_document(self, tenant_id: str, kind: str) -> Optional[dict]:
        return await self._run(self._get_document, tenant_id, kind)

    async def put_document(self, tenant_id: str, kind: str, document: dict) -> None:
        await self._run(self._put_document, tenant_id, kind, document)

    async def register_event(self, event_id: str) -> bool:
        return await self._run(self._register_event, event_id)

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._ping)

    def close(self) -> None:
        self.engine.dispose()
