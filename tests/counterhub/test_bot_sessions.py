from __future__ import annotations

import asyncio

from counterhub.models import BotCredentials, BotState
from counterhub.services.bot_sessions import BotSession, BotSessionManager
from support import FakeTransportFactory, build_services

CREDENTIALS = BotCredentials(bot_username="CounterBot", access_token="oauth:secret", channel="#GhostRunner")


async def _eventually(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


def _manager(factory: FakeTransportFactory, sleeps: list[float], **options) -> tuple:
    services = build_services()

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    options.setdefault("backoff_base", 0.5)
    options.setdefault("backoff_max", 4.0)
    manager = BotSessionManager(services.chat, factory, sleep=record_sleep, metrics=services.metrics, **options)
    return services, manager


def test_credentials_are_normalized() -> None:
    assert CREDENTIALS.bot_username == "counterbot"
    assert CREDENTIALS.channel == "ghostrunner"
    assert "secret" not in repr(CREDENTIALS)


def test_session_answers_moderator_commands() -> None:
    factory = FakeTransportFactory()
    services, manager = _manager(factory, [])

    async def scenario():
        session = await manager.enable("tenant-a", CREDENTIALS)
        await asyncio.wait_for(session.connected.wait(), timeout=2)
        transport = factory.latest
        transport.say("!d+")
        transport.say("!d+", "moderator", user="mod")
        transport.say("!deaths")
        await _eventually(lambda: len(transport.sent) == 2)
        status = manager.status("tenant-a")
        await manager.shutdown()
        return transport, status

    transport, status = asyncio.run(scenario())
    assert transport.sent == ["💀 Deaths: 1", "💀 Deaths: 1 (next milestone: 10)"]
    assert transport.closed
    assert status.state is BotState.connected
    assert services.store.counters["tenant-a"]["deaths"] == 1


def test_connection_failures_back_off_then_stop() -> None:
    factory = FakeTransportFactory(fail_connect=True)
    sleeps: list[float] = []
    _, manager = _manager(factory, sleeps, max_failures=4)

    async def scenario():
        session = await manager.enable("tenant-a", CREDENTIALS)
        await session.wait_finished()
        return session

    session = asyncio.run(scenario())
    assert session.state is BotState.error
    assert session.consecutive_failures == 4
    assert session.last_error == "connection refused"
    assert sleeps == [0.5, 1.0, 2.0]
    assert len(factory.transports) == 4
    assert all(transport.closed for transport in factory.transports)


def test_backoff_is_capped() -> None:
    session = BotSession(
        "tenant-a", CREDENTIALS, FakeTransportFactory(), handler=None, backoff_base=1.0, backoff_max=5.0
    )
    delays = []
    for failures in range(1, 6):
        session.consecutive_failures = failures
        delays.append(session.backoff_delay())
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_connect_timeout_counts_as_failure() -> None:
    factory = FakeTransportFactory(hang_connect=True)
    _, manager = _manager(factory, [], max_failures=1, connect_timeout=0.05)

    async def scenario():
        session = await manager.enable("tenant-a", CREDENTIALS)
        await session.wait_finished()
        return session

    session = asyncio.run(scenario())
    assert session.state is BotState.error
    assert session.last_error == "TimeoutError"


def test_dropped_connection_reconnects() -> None:
    factory = FakeTransportFactory()
    sleeps: list[float] = []
    services, manager = _manager(factory, sleeps)

    async def scenario():
        session = await manager.enable("tenant-a", CREDENTIALS)
        await asyncio.wait_for(session.connected.wait(), timeout=2)
        factory.latest.drop()
        await _eventually(lambda: len(factory.transports) == 2 and session.state is BotState.connected)
        factory.latest.say("!stats")
        await _eventually(lambda: len(factory.latest.sent) == 1)
        failures = session.consecutive_failures
        await manager.shutdown()
        return failures

    assert asyncio.run(scenario()) == 0
    assert sleeps == [0.5]
    assert factory.transports[0].closed
    assert services.metrics.event_count("bot_state_transitions", state="backoff") == 1


def test_disable_and_announce() -> None:
    factory = FakeTransportFactory()
    _, manager = _manager(factory, [])

    async def scenario():
        before = await manager.announce("tenant-a", "hello")
        session = await manager.enable("tenant-a", CREDENTIALS)
        await asyncio.wait_for(session.connected.wait(), timeout=2)
        during = await manager.announce("tenant-a", "🎉 milestone")
        await _eventually(lambda: factory.latest.sent == ["🎉 milestone"])
        disabled = await manager.disable("tenant-a")
        again = await manager.disable("tenant-a")
        after = await manager.announce("tenant-a", "late")
        return before, during, disabled, again, after, session

    before, during, disabled, again, after, session = asyncio.run(scenario())
    assert (before, during, disabled, again, after) == (False, True, True, False, False)
    assert session.state is BotState.disabled
    assert factory.latest.closed
    assert manager.status("tenant-a").state is BotState.disabled
