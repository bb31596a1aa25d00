from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from counterhub.models import BotCredentials, BotState, BotStatusResponse
from counterhub.observability import MetricsRegistry
from counterhub.services.chat_commands import ChatCommandHandler, ChatMessage

logger = logging.getLogger("counterhub.bot")


class ChatTransportError(Exception):
    pass


class ChatTransport(Protocol):
    async def connect(self) -> None:
        ...

    async def read_message(self) -> Optional[ChatMessage]:
        """Next chat message, or None once the connection is closed."""
        ...

    async def send(self, text: str) -> None:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[BotCredentials], ChatTransport]


class BotSession:
    """Chat connection lifecycle for one tenant.

    The transport is created, used and closed only inside the session task.
    Other code talks to the session through ``enqueue``.
    """

    def __init__(
        self,
        tenant_id: str,
        credentials: BotCredentials,
        transport_factory: TransportFactory,
        handler: ChatCommandHandler,
        *,
        connect_timeout: float = 10.0,
        max_failures: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        queue_size: int = 100,
        metrics: Optional[MetricsRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.tenant_id = tenant_id
        self.credentials = credentials
        self.transport_factory = transport_factory
        self.handler = handler
        self.connect_timeout = connect_timeout
        self.max_failures = max_failures
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.metrics = metrics
        self._sleep = sleep
        self.state = BotState.disabled
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.connected = asyncio.Event()
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(BotState.disabled)

    async def wait_finished(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    def enqueue(self, text: str) -> bool:
        if self.state is not BotState.connected:
            return False
        try:
            self._outbox.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("bot_outbox_full tenant=%s", self.tenant_id)
            return False
        return True

    def backoff_delay(self) -> float:
        exponent = max(0, self.consecutive_failures - 1)
        return min(self.backoff_base * (2 ** exponent), self.backoff_max)

    def status(self) -> BotStatusResponse:
        return BotStatusResponse(
            tenant_id=self.tenant_id,
            state=self.state,
            consecutive_failures=self.consecutive_failures,
            last_error=self.last_error,
        )

    async def _run(self) -> None:
        while True:
            self._set_state(BotState.connecting)
            transport = self.transport_factory(self.credentials)
            try:
                await asyncio.wait_for(transport.connect(), timeout=self.connect_timeout)
                self.consecutive_failures = 0
                self.last_error = None
                self._set_state(BotState.connected)
                await self._pump(transport)
            except (ChatTransportError, OSError, asyncio.TimeoutError) as exc:
                self.consecutive_failures += 1
                self.last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "bot_transport_failed tenant=%s failures=%s error=%s",
                    self.tenant_id,
                    self.consecutive_failures,
                    self.last_error,
                )
            except Exception as exc:
                self.consecutive_failures += 1
                self.last_error = f"unexpected error: {exc}"
                logger.exception("bot_session_crashed tenant=%s", self.tenant_id)
            finally:
                self.connected.clear()
                await self._close_transport(transport)

            if self.consecutive_failures >= self.max_failures:
                self._set_state(BotState.error)
                return
            self._set_state(BotState.backoff)
            await self._sleep(self.backoff_delay())

    async def _pump(self, transport: ChatTransport) -> None:
        tasks = [
            asyncio.create_task(self._read_loop(transport)),
            asyncio.create_task(self._work_loop()),
            asyncio.create_task(self._write_loop(transport)),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        raise ChatTransportError("chat connection closed")

    async def _read_loop(self, transport: ChatTransport) -> None:
        while True:
            message = await transport.read_message()
            if message is None:
                return
            try:
                self._inbox.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("bot_inbox_full tenant=%s", self.tenant_id)

    async def _work_loop(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                reply = await self.handler.handle(self.tenant_id, message)
            except Exception:
                logger.exception("bot_command_failed tenant=%s", self.tenant_id)
                continue
            if reply:
                self.enqueue(reply)

    async def _write_loop(self, transport: ChatTransport) -> None:
        while True:
            text = await self._outbox.get()
            await transport.send(text)

    async def _close_transport(self, transport: ChatTransport) -> None:
        try:
            await transport.close()
        except (ChatTransportError, OSError):
            logger.debug("bot_transport_close_failed tenant=%s", self.tenant_id)

    def _set_state(self, state: BotState) -> None:
        if state is self.state:
            return
        logger.info(
            "bot_state tenant=%s from=%s to=%s", self.tenant_id, self.state.value, state.value
        )
        self.state = state
        if state is BotState.connected:
            self.connected.set()
        if self.metrics:
            self.metrics.record_event("bot_state_transitions", state=state.value)


class BotSessionManager:
    """Supervising map of tenant id to its chat bot session."""

    def __init__(
        self,
        handler: ChatCommandHandler,
        transport_factory: TransportFactory,
        *,
        connect_timeout: float = 10.0,
        max_failures: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        metrics: Optional[MetricsRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.handler = handler
        self.transport_factory = transport_factory
        self.connect_timeout = connect_timeout
        self.max_failures = max_failures
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.metrics = metrics
        self._sleep = sleep
        self._sessions: dict[str, BotSession] = {}

    async def enable(self, tenant_id: str, credentials: BotCredentials) -> BotSession:
        existing = self._sessions.pop(tenant_id, None)
        if existing is not None:
            await existing.stop()
        session = BotSession(
            tenant_id,
            credentials,
            self.transport_factory,
            self.handler,
            connect_timeout=self.connect_timeout,
            max_failures=self.max_failures,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            metrics=self.metrics,
            sleep=self._sleep,
        )
        self._sessions[tenant_id] = session
        session.start()
        logger.info("bot_enabled tenant=%s channel=%s", tenant_id, credentials.channel)
        return session

    async def disable(self, tenant_id: str) -> bool:
        session = self._sessions.pop(tenant_id, None)
        if session is None:
            return False
        await session.stop()
        logger.info("bot_disabled tenant=%s", tenant_id)
        return True

    def get(self, tenant_id: str) -> Optional[BotSession]:
        return self._sessions.get(tenant_id)

    def status(self, tenant_id: str) -> BotStatusResponse:
        session = self._sessions.get(tenant_id)
        if session is None:
            return BotStatusResponse(tenant_id=tenant_id, state=BotState.disabled)
        return session.status()

    async def announce(self, tenant_id: str, text: str) -> bool:
        session = self._sessions.get(tenant_id)
        if session is None:
            return False
        return session.enqueue(text)

    async def shutdown(self) -> None:
        for tenant_id in list(self._sessions):
            await self.disable(tenant_id)
