from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from backend.app.auth import AuthContext, require_roles
from backend.app.models import (
    HistoryFeedResponse,
    IngestionStatus,
    OrphanMessageItem,
    PurgeResponse,
    SmsWebhookResponse,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlPersistence
from backend.app.services.dedupe import DedupGate
from backend.app.services.ingestion import IngestionPipeline, PersistenceFailure
from backend.app.services.notifications import EventBus, NotificationPublisher
from backend.app.services.payloads import InboundValidationError, decode_body
from backend.app.services.resolver import OwnerResolver
from backend.app.services.webhooks import SignatureVerificationError, verify_sms_signature
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreNotFoundError, StorePersistenceError

logger = logging.getLogger("sms_inbox.api")

RETRY_AFTER_SECONDS = "30"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    app.state.gate.close()


def create_app() -> FastAPI:
    app = FastAPI(title="CRM SMS Inbox API", version="0.1.0", lifespan=lifespan)
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = (
        SqlPersistence(settings.database_url, timeout_seconds=settings.store_timeout_seconds)
        if settings.persistence_enabled
        else None
    )
    store = InMemoryStore(persistence=persistence)
    metrics = MetricsRegistry()
    gate = DedupGate(
        store=store,
        ttl=timedelta(seconds=settings.dedup_cache_ttl_seconds),
        store_window=timedelta(seconds=settings.store_dedup_window_seconds),
        identity_lookback=timedelta(hours=settings.identity_lookback_hours),
        recovery_path=Path(settings.dedup_recovery_file) if settings.dedup_recovery_file else None,
        recovery_max_entries=settings.dedup_recovery_max_entries,
        lock_timeout_seconds=settings.dedup_lock_timeout_seconds,
    )
    bus = EventBus()
    app.state.settings = settings
    app.state.store = store
    app.state.metrics = metrics
    app.state.gate = gate
    app.state.bus = bus
    app.state.pipeline = IngestionPipeline(
        store=store,
        gate=gate,
        notifier=NotificationPublisher(bus, enabled=settings.sms_events_enabled),
        resolver=OwnerResolver(
            store,
            country_code=settings.default_country_code,
            candidate_limit=settings.fuzzy_candidate_limit,
        ),
        country_code=settings.default_country_code,
        history_window=timedelta(seconds=settings.history_dedup_window_seconds),
        on_result=metrics.record_ingestion,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = get_store(request).persistence
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/sms/webhook", response_model=SmsWebhookResponse)
    async def sms_webhook(request: Request):
        settings = get_settings(request)
        pipeline = get_pipeline(request)
        raw_body = await request.body()
        try:
            verify_sms_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.sms_webhook_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            data = decode_body(raw_body, request.headers.get("content-type"))
        except InboundValidationError as exc:
            result = pipeline.reject(str(exc))
            return SmsWebhookResponse(status=result.status, detail=result.detail)

        try:
            result = await run_in_threadpool(pipeline.handle_payload, data)
        except PersistenceFailure as exc:
            logger.error("sms_webhook_transient_failure error=%s", exc)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=SmsWebhookResponse(
                    status=IngestionStatus.error,
                    detail="temporarily unable to store message; retry delivery",
                ).model_dump(mode="json"),
                headers={"Retry-After": RETRY_AFTER_SECONDS},
            )
        return SmsWebhookResponse(
            status=result.status,
            detail=result.detail,
            message_id=result.message.id if result.message else None,
        )

    @router.get("/sms/orphans", response_model=list[OrphanMessageItem])
    def list_orphans(
        request: Request,
        limit: int = 100,
        _: AuthContext = Depends(require_roles("admin", "agent")),
    ) -> list[OrphanMessageItem]:
        store = get_store(request)
        return [
            OrphanMessageItem(
                message_id=message.id,
                sender_phone=message.sender_phone,
                body=message.body,
                note=message.note,
                received_at_utc=message.received_at_utc,
                created_at_utc=message.created_at_utc,
            )
            for message in store.list_messages(orphans_only=True, limit=limit)
        ]

    @router.get("/owners/{owner_id}/history", response_model=HistoryFeedResponse)
    def owner_history(
        owner_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles("admin", "agent")),
    ) -> HistoryFeedResponse:
        store = get_store(request)
        try:
            owner = store.get_owner(owner_id)
            entries = store.list_history(owner_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return HistoryFeedResponse(owner_id=owner.id, owner_name=owner.name, entries=entries)

    @router.post("/sms/purge-all", response_model=PurgeResponse)
    def purge_all(
        request: Request,
        context: AuthContext = Depends(require_roles("admin")),
    ) -> PurgeResponse:
        store = get_store(request)
        try:
            deleted, owners_updated = store.purge_channel()
        except StorePersistenceError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="failed to purge sms data",
            ) from exc
        request.app.state.gate.clear()
        logger.info(
            "sms_purged by=%s deleted_messages=%d owners_updated=%d",
            context.user_id,
            deleted,
            owners_updated,
        )
        return PurgeResponse(success=True, deleted_messages=deleted, owners_updated=owners_updated)

    return router
