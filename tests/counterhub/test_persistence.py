from __future__ import annotations

import asyncio
from pathlib import Path

from fastapi.testclient import TestClient

from counterhub.main import create_app
from counterhub.persistence import SqlCounterStore
from support import WEBHOOK_URL


def _new_client(monkeypatch, db_path: Path) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    return TestClient(create_app())


def test_counters_and_settings_persist_across_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "counterhub.sqlite3"

    with _new_client(monkeypatch, db_path) as first_client:
        assert first_client.post("/counters/deaths/increment", params={"amount": 7}).status_code == 200
        saved = first_client.put("/settings/notifications", json={"webhook_url": WEBHOOK_URL})
        assert saved.status_code == 200

    with _new_client(monkeypatch, db_path) as restarted_client:
        counters = restarted_client.get("/counters").json()
        assert counters["counters"]["deaths"] == 7
        assert counters["last_updated"] is not None
        settings = restarted_client.get("/settings").json()
        assert settings["notifications"]["webhook_url"] == WEBHOOK_URL
        assert restarted_client.post("/counters/deaths/decrement").json()["value"] == 6


def test_store_operations(tmp_path) -> None:
    store = SqlCounterStore(f"sqlite:///{(tmp_path / 'store.sqlite3').as_posix()}")

    async def scenario():
        await store.set_counter("tenant-a", "deaths", 3)
        await store.set_counter("tenant-a", "deaths", 4)
        await store.set_counter("tenant-b", "deaths", 9)
        await store.put_document("tenant-a", "settings", {"schema_version": 1})
        await store.put_document("tenant-a", "settings", {"schema_version": 1, "profile": {"username": "x"}})
        return (
            await store.get_counter("tenant-a", "deaths"),
            await store.get_counter("tenant-a", "swears"),
            await store.get_snapshot("tenant-a"),
            await store.get_document("tenant-a", "settings"),
            await store.get_document("tenant-b", "settings"),
            [await store.register_event("evt-1"), await store.register_event("evt-1")],
            await store.ping(),
        )

    deaths, swears, snapshot, document, missing, registered, ready = asyncio.run(scenario())
    store.close()

    assert (deaths, swears) == (4, 0)
    assert snapshot.counters == {"deaths": 4}
    assert snapshot.last_updated.tzinfo is not None
    assert document == {"schema_version": 1, "profile": {"username": "x"}}
    assert missing is None
    assert registered == [True, False]
    assert ready is True


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "counterhub.sqlite3"
    store = SqlCounterStore(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert asyncio.run(store.ping())
    store.close()
