"""
FastAPI Application — Cron trigger, webhooks and public capacity query.

Provides:
- Cron trigger that runs one dispatch worker tick (shared secret)
- Evolution API webhook for inbound WhatsApp replies (shared secret)
- Public per-city slot counts
- Registration submission (rate limited per client IP)
- Queue depth and health endpoints

Run:
    uvicorn api.main:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from campaign.capacity import CapacityTracker
from campaign.cities import CityCatalog
from campaign.inbound import handle_webhook_event
from campaign.registration import RegistrationService
from channels.gateway import GatewayRegistry, create_gateway_registry
from config.logging import configure_logging
from config.settings import Settings, load_settings
from core.errors import CampaignError, RateLimitedError
from database.session import Database
from guards.rate_limit import RateLimitGuard, create_rate_limiter
from guards.webhook_auth import cron_secret, require_secret, webhook_key
from job_queue.consumer import DispatchWorker
from job_queue.message_queue import BaseQueueStore, create_queue_store

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    """Everything a request handler needs; built once per app in lifespan."""
    settings: Settings
    db: Database
    queue: BaseQueueStore
    gateways: GatewayRegistry
    worker: DispatchWorker
    guard: RateLimitGuard
    catalog: CityCatalog
    capacity: CapacityTracker
    registrations: RegistrationService


def build_services(settings: Settings, db: Database,
                   gateways: Optional[GatewayRegistry] = None) -> Services:
    queue = create_queue_store(settings.queue_backend, settings.dispatch, db=db)
    gateways = gateways or create_gateway_registry(settings)
    catalog = CityCatalog.from_config(settings.campaign)
    capacity = CapacityTracker(db, catalog)
    limiter = create_rate_limiter(settings.rate_limits, db=db)
    return Services(
        settings=settings,
        db=db,
        queue=queue,
        gateways=gateways,
        worker=DispatchWorker(queue, gateways, settings.dispatch),
        guard=RateLimitGuard(limiter, settings.rate_limits),
        catalog=catalog,
        capacity=capacity,
        registrations=RegistrationService(db, capacity, queue, settings.campaign),
    )


def _services(request: Request) -> Services:
    return request.app.state.services


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip", "")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class RegistrationRequest(BaseModel):
    owner_id: str
    pet_name: str


class DispatchResponse(BaseModel):
    processed: int
    removed: int
    sent: int
    failed: int


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None,
               gateways: Optional[GatewayRegistry] = None) -> FastAPI:
    """Build the application. Settings default to config/settings.yaml."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal settings
        if settings is None:
            load_dotenv()
            settings = load_settings()
        configure_logging(settings.environment, settings.debug)

        db = Database(settings.database)
        await db.connect()
        if settings.database.create_tables:
            await db.create_all()

        services = build_services(settings, db, gateways)
        app.state.services = services
        logger.info("campaign_dispatch_started",
                    environment=settings.environment,
                    queue_backend=settings.queue_backend,
                    gateway=settings.gateway.provider,
                    cities=len(services.catalog))
        yield

        await services.gateways.close()
        await db.close()
        logger.info("campaign_dispatch_stopped")

    app = FastAPI(
        title="Campaign Dispatch API",
        description="Notification queue, rate limiting and slot accounting",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════
    #  ERRORS
    # ══════════════════════════════════════════════════════════

    @app.exception_handler(CampaignError)
    async def campaign_error_handler(request: Request, exc: CampaignError):
        headers = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(exc.retry_after)
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        else:
            logger.info("request_rejected", path=request.url.path,
                        status=exc.status_code, error=str(exc))
        return JSONResponse({"error": exc.public_message},
                            status_code=exc.status_code, headers=headers)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("request_crashed", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse({"error": "internal error"}, status_code=500)

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        services = _services(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "queue_backend": services.settings.queue_backend,
            "gateway": services.settings.gateway.provider,
        }

    @app.get("/api/queue/stats")
    async def queue_stats(request: Request):
        services = _services(request)
        require_secret(cron_secret(request.headers, request.query_params),
                       services.settings.security.cron_secret)
        return {"queue": await services.queue.stats()}

    # ══════════════════════════════════════════════════════════
    #  CRON TRIGGER
    # ══════════════════════════════════════════════════════════

    @app.api_route("/api/cron/process-queue", methods=["GET", "POST"],
                   response_model=DispatchResponse)
    async def process_queue(request: Request):
        services = _services(request)
        require_secret(cron_secret(request.headers, request.query_params),
                       services.settings.security.cron_secret)
        result = await services.worker.run_once()
        return DispatchResponse(**result.model_dump())

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS
    # ══════════════════════════════════════════════════════════

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        services = _services(request)
        require_secret(webhook_key(request.headers), services.settings.security.webhook_secret)

        try:
            payload: Any = await request.json()
        except ValueError:
            logger.info("webhook_payload_unreadable")
            return {"success": True}
        if not isinstance(payload, dict):
            logger.info("webhook_payload_unreadable")
            return {"success": True}

        try:
            reply = await handle_webhook_event(services.db, payload)
        except SQLAlchemyError as e:
            # 200 anyway: a provider retry storm would not fix the store
            logger.error("webhook_processing_failed", error=str(e))
            return {"success": True}
        return {"success": True, "matched": bool(reply and reply.owner_id)}

    # ══════════════════════════════════════════════════════════
    #  CAPACITY & REGISTRATIONS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/slots")
    async def slots(request: Request):
        services = _services(request)
        counts = await services.capacity.count_all()
        return {
            "slots": [c.model_dump() for c in counts],
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/api/registrations", status_code=201)
    async def create_registration(req: RegistrationRequest, request: Request):
        services = _services(request)
        await services.guard.enforce("registration_per_ip", _client_ip(request))
        outcome = await services.registrations.register(req.owner_id, req.pet_name)
        return outcome.model_dump(mode="json")

    return app


app = create_app()
