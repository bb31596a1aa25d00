from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from counterhub.models import BotCredentials
from counterhub.observability import MetricsRegistry
from counterhub.services.bot_sessions import ChatTransportError
from counterhub.services.chat_commands import ChatCommandHandler, ChatMessage
from counterhub.services.counters import CounterService
from counterhub.services.discord import WebhookDispatcher
from counterhub.services.mutation import MutationEngine
from counterhub.services.notifications import NotificationRouter
from counterhub.services.realtime import RealtimeBroadcaster
from counterhub.services.tenant_config import TenantConfigService
from counterhub.store import InMemoryCounterStore

WEBHOOK_URL = "https://discord.com/api/webhooks/123/abc"


async def no_sleep(_: float) -> None:
    await asyncio.sleep(0)


class FakeChatTransport:
    def __init__(self, fail_connect: bool = False, hang_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.hang_connect = hang_connect
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    async def connect(self) -> None:
        if self.hang_connect:
            await asyncio.Event().wait()
        if self.fail_connect:
            raise ChatTransportError("connection refused")

    async def read_message(self) -> Optional[ChatMessage]:
        return await self.incoming.get()

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True

    def say(self, text: str, *badges: str, user: str = "viewer") -> None:
        self.incoming.put_nowait(
            ChatMessage(user_id=f"id-{user}", username=user, text=text, badges=frozenset(badges))
        )

    def drop(self) -> None:
        self.incoming.put_nowait(None)


class FakeTransportFactory:
    def __init__(self, fail_connect: bool = False, hang_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.hang_connect = hang_connect
        self.transports: list[FakeChatTransport] = []

    def __call__(self, credentials: BotCredentials) -> FakeChatTransport:
        transport = FakeChatTransport(self.fail_connect, self.hang_connect)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeChatTransport:
        return self.transports[-1]


@dataclass
class Services:
    store: InMemoryCounterStore
    config: TenantConfigService
    metrics: MetricsRegistry
    broadcaster: RealtimeBroadcaster
    webhooks: WebhookDispatcher
    router: NotificationRouter
    engine: MutationEngine
    counters: CounterService
    chat: ChatCommandHandler
    requests: list[httpx.Request] = field(default_factory=list)


def build_services(
    store: Optional[InMemoryCounterStore] = None,
    responder: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    **dispatcher_options,
) -> Services:
    store = store or InMemoryCounterStore()
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request):
        requests.append(request)
        if responder is not None:
            return responder(request)
        return httpx.Response(204)

    metrics = MetricsRegistry()
    config = TenantConfigService(store)
    broadcaster = RealtimeBroadcaster(queue_size=50, metrics=metrics)
    dispatcher_options.setdefault("sleep", no_sleep)
    webhooks = WebhookDispatcher(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        metrics=metrics,
        **dispatcher_options,
    )
    router = NotificationRouter(config, broadcaster, webhooks, metrics)
    engine = MutationEngine(store, config, metrics)
    counters = CounterService(engine, router)
    chat = ChatCommandHandler(counters, config, metrics)
    return Services(
        store=store,
        config=config,
        metrics=metrics,
        broadcaster=broadcaster,
        webhooks=webhooks,
        router=router,
        engine=engine,
        counters=counters,
        chat=chat,
        requests=requests,
    )


def drain_queue(queue: asyncio.Queue) -> list[dict]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def drain_webhooks(client) -> None:
    client.portal.call(client.app.state.webhooks.drain)
