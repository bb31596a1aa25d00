from __future__ import annotations

import asyncio
import json
from typing import Optional

import httpx
from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from counterhub.auth import STREAMER_ROLES, AuthContext, require_roles, websocket_tenant_allowed
from counterhub.models import (
    BotCredentials,
    BotEnableRequest,
    BotStatusResponse,
    CounterSnapshot,
    CustomCounterDefinition,
    MilestoneUpdateRequest,
    MutationResponse,
    NotificationPreference,
    PlatformEventResponse,
    ResetAllResponse,
    TenantSettings,
)
from counterhub.observability import MetricsRegistry, configure_logging, logger, observe_request
from counterhub.persistence import SqlCounterStore
from counterhub.services.bot_sessions import BotSessionManager, TransportFactory
from counterhub.services.catalog import InvalidCounterError
from counterhub.services.chat_commands import ChatCommandHandler
from counterhub.services.counters import CounterService
from counterhub.services.discord import WebhookDispatcher
from counterhub.services.irc import twitch_transport_factory
from counterhub.services.mutation import MutationEngine, MutationResult, PersistenceFailureError
from counterhub.services.notifications import NotificationRouter
from counterhub.services.platform_events import (
    MESSAGE_ID_HEADER,
    MESSAGE_TYPE_HEADER,
    PlatformEventProcessor,
    SignatureVerificationError,
    verify_eventsub_signature,
)
from counterhub.services.realtime import RealtimeBroadcaster
from counterhub.services.tenant_config import TenantConfigService
from counterhub.settings import Settings, load_settings
from counterhub.store import CounterStore, CounterStoreError, InMemoryCounterStore


def create_app(
    *,
    store: Optional[CounterStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> FastAPI:
    app = FastAPI(title="CounterHub API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    if store is None:
        store = (
            SqlCounterStore(settings.database_url)
            if settings.persistence_enabled
            else InMemoryCounterStore()
        )
    metrics = MetricsRegistry()
    config = TenantConfigService(store)
    broadcaster = RealtimeBroadcaster(settings.realtime_queue_size, metrics)
    webhooks = WebhookDispatcher(
        http_client or httpx.AsyncClient(),
        timeout_seconds=settings.webhook_timeout_seconds,
        max_retries=settings.webhook_max_retries,
        backoff_seconds=settings.webhook_retry_backoff_seconds,
        max_concurrency=settings.webhook_max_concurrency,
        metrics=metrics,
    )
    notification_router = NotificationRouter(config, broadcaster, webhooks, metrics)
    counters = CounterService(MutationEngine(store, config, metrics), notification_router)
    bots = BotSessionManager(
        ChatCommandHandler(counters, config, metrics),
        transport_factory or twitch_transport_factory(settings.chat_host, settings.chat_port),
        connect_timeout=settings.bot_connect_timeout_seconds,
        max_failures=settings.bot_max_consecutive_failures,
        backoff_base=settings.bot_backoff_base_seconds,
        backoff_max=settings.bot_backoff_max_seconds,
        metrics=metrics,
    )
    notification_router.attach_chat(bots)

    app.state.settings = settings
    app.state.store = store
    app.state.metrics = metrics
    app.state.config = config
    app.state.broadcaster = broadcaster
    app.state.webhooks = webhooks
    app.state.counters = counters
    app.state.bots = bots
    app.state.platform = PlatformEventProcessor(
        store, config, counters, notification_router, metrics
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await bots.shutdown()
        await webhooks.aclose()
        if isinstance(store, SqlCounterStore):
            store.close()

    app.include_router(build_router())
    return app


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_counters(request: Request) -> CounterService:
    return request.app.state.counters


def get_config(request: Request) -> TenantConfigService:
    return request.app.state.config


def get_bots(request: Request) -> BotSessionManager:
    return request.app.state.bots


def _mutation_response(result: MutationResult) -> MutationResponse:
    return MutationResponse(
        counter=result.counter.key,
        value=result.value,
        change=result.change,
        crossed=list(result.crossed),
    )


def _sync_webhook_channel(request: Request, tenant_id: str, settings: TenantSettings) -> None:
    if not (settings.features.discord_notifications and settings.notifications.webhook_active):
        request.app.state.webhooks.cancel_pending(tenant_id)


async def _run_mutation(coro) -> MutationResult:
    try:
        return await coro
    except InvalidCounterError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PersistenceFailureError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="counter store unavailable",
        ) from exc


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _drain_client(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    async def readiness(request: Request) -> dict[str, str]:
        if not await request.app.state.store.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.get("/counters", response_model=CounterSnapshot)
    async def list_counters(
        request: Request,
        context: AuthContext = Depends(require_roles(*STREAMER_ROLES)),
    ) -> CounterSnapshot:
        try:
            return await get_counters(request).snapshot(context.tenant_id)
        except CounterStoreError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="counter store unavailable",
            ) from exc

    @router.post("/counters/reset", response_model=ResetAllResponse)
    async def reset_all_counters(
        request: Request,
        context: AuthContext = Depends(require_roles(*STREAMER_ROLES)),
    ) -> ResetAllResponse:
        results = await _run_mutation(get_counters(request).reset_all(context.tenant_id))
        return ResetAllResponse(
            counters={name: _mutation_response(result) for name, result in results.items()}
        )

    @router.post("/counters/{counter}/increment", response_model=MutationResponse)
    async def increment_counter(
        counter: str,
        request: Request,
        amount: Optional[int] = Query(default=None, ge=1, le=1000),
        context: AuthContext = Depends(require_roles(*STREAMER_ROLES)),
    ) -> MutationResponse:
        result = await _run_mutation(
            get_counters(request).increment(context.tenant_id, counter, amount)
        )
        return _mutation_response(result)

    @router.post("/counters/{counter}/decrement", response_model=MutationResponse)
    async def decrement_counter(
        counter: str,
        request: Request,
        amount: Optional[int] = Query(default=None, ge=1, le=1000),
        context: AuthContext = Depends(require_roles(*STREAMER_ROLES)),
    ) -> MutationResponse:
        result = await _run_mutation(
            get_counters(request).decrement(context.tenant_id, counter, amount)
        )
        return _mutation_response(result)

    @router.post("/counters/{counter}/reset", response_model=MutationResponse)
    async def reset_counter(
        counter: str,
        request: Request,
        context: AuthContext = Depends(require_roles(*STREAMER_ROLES)),
    ) -> MutationResponse:
        result = await _run_mutation(get_counters(request).reset(context.tenant_id, counter))
        return _mutation_response(result)

    @router.get("/settings", response_model=TenantSettings)
    async def read_settings(
        request: Request,
        context: AuthContext = Depends(require_roles("streamer", "admin")),
    ) -> TenantSettings:
        return await get_config(request).get(context.tenant_id)

    @router.put("/settings", response_model=TenantSettings)
    async def replace_settings(
        payload: TenantSettings,
        request: Request,
        context: AuthContext = Depends(require_roles("streamer", "admin")),
    ) -> TenantSettings:
        saved = await get_config(request).save(context.tenant_id, payload)
        _sync_webhook_channel(request, context.tenant_id, saved)
        return saved

    @router.put("/settings/notifications", response_model=TenantSettings)
    async def update_notifications(
        payload: NotificationPreference,
        request: Request,
        context: AuthContext = Depends(require_roles("streamer", "admin")),
    ) -> TenantSettings:
        saved = await get_config(request).update_notifications(context.tenant_id, payload)
        _sync_webhook_channel(request, context.tenant_id, saved)
        return saved

    @router.put("/settings/milestones", response_model=TenantSettings)
    async def update_milestones(
        payload: MilestoneUpdateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("streamer", "admin")),
    ) -> TenantSettings:
        try:
            return await get_config(request).update_milestones(context.tenant_id, payload.thresholds)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=exc.errors(include_url=False, include_context=False),
            ) from exc

    @router.put("/settings/custom-counters/{key}", response_model=TenantSettings)
    async def put_custom_counter(
        key: str,
        payload: CustomCounterDefinition,
        request: Request,
        context: AuthContext = Depends(require_roles("streamer", "admin")),
    ) -> TenantSettings:
        try:
            return await get_config(request).put_custom_counter(context.tenant_id, key, payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=exc.errors(include_url=False, include_context=False),
            ) from exc

    @router.post("/bot/enable", response_model=BotStatusResponse)
    async def enable_bot(
        payload: BotEnableRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("streamer", "admin")),
    ) -> BotStatusResponse:
        tenant_settings = await get_config(request).get(context.tenant_id)
        channel = payload.channel or tenant_settings.profile.username
        if not channel:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="channel is required when the profile has no username",
            )
        try:
            credentials = BotCredentials(
                bot_username=payload.bot_username,
                access_token=payload.access_token,
                channel=channel,
            )
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=exc.errors(include_url=False, include_context=False),
            ) from exc
        session = await get_bots(request).enable(context.tenant_id, credentials)
        return session.status()

    @router.post("/bot/disable", response_model=BotStatusResponse)
    async def disable_bot(
        request: Request,
        context: AuthContext = Depends(require_roles("streamer", "admin")),
    ) -> BotStatusResponse:
        bots = get_bots(request)
        await bots.disable(context.tenant_id)
        request.app.state.webhooks.cancel_pending(context.tenant_id)
        return bots.status(context.tenant_id)

    @router.get("/bot/status", response_model=BotStatusResponse)
    def bot_status(
        request: Request,
        context: AuthContext = Depends(require_roles(*STREAMER_ROLES)),
    ) -> BotStatusResponse:
        return get_bots(request).status(context.tenant_id)

    @router.post("/webhooks/twitch", response_model=PlatformEventResponse)
    async def twitch_eventsub(request: Request) -> Response:
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_eventsub_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.eventsub_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc
        if not isinstance(payload, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            )

        message_type = request.headers.get(MESSAGE_TYPE_HEADER, "notification")
        message_id = request.headers.get(MESSAGE_ID_HEADER) or str(
            (payload.get("event") or {}).get("id") or ""
        )
        if not message_id and message_type == "notification":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="missing message id",
            )
        result = await request.app.state.platform.handle(message_type, message_id, payload)
        if result.status == "challenge":
            return PlainTextResponse(result.detail or "")
        return Response(content=result.model_dump_json(), media_type="application/json")

    @router.websocket("/ws/overlay/{tenant_id}")
    async def overlay_socket(websocket: WebSocket, tenant_id: str, token: Optional[str] = None) -> None:
        app_state = websocket.app.state
        if not websocket_tenant_allowed(app_state.settings, tenant_id, token):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        broadcaster: RealtimeBroadcaster = app_state.broadcaster
        connection_id, queue = broadcaster.subscribe(tenant_id)
        try:
            await websocket.accept()
            snapshot = await app_state.counters.snapshot(tenant_id)
            await websocket.send_json(
                {"type": "counterSnapshot", "tenantId": tenant_id, "counters": snapshot.counters}
            )
            tasks = {
                asyncio.create_task(_forward_events(websocket, queue)),
                asyncio.create_task(_drain_client(websocket)),
            }
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        except WebSocketDisconnect:
            logger.info("overlay_disconnected tenant=%s connection=%s", tenant_id, connection_id)
        finally:
            broadcaster.unsubscribe(tenant_id, connection_id)

    return router


app = create_app()
