from __future__ import annotations

from typing import Iterator

import httpx
import pytest
from fastapi.testclient import TestClient

from counterhub.main import create_app
from support import FakeTransportFactory, Services, build_services


@pytest.fixture()
def services() -> Services:
    return build_services()


@pytest.fixture()
def sent_webhooks() -> list[httpx.Request]:
    return []


@pytest.fixture()
def chat_transports() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture()
def client(
    monkeypatch: pytest.MonkeyPatch,
    sent_webhooks: list[httpx.Request],
    chat_transports: FakeTransportFactory,
) -> Iterator[TestClient]:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("EVENTSUB_SECRET", "")

    def discord(request: httpx.Request) -> httpx.Response:
        sent_webhooks.append(request)
        return httpx.Response(204)

    app = create_app(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(discord)),
        transport_factory=chat_transports,
    )
    with TestClient(app) as test_client:
        yield test_client
