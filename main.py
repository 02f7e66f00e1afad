"""Order Portal: FastAPI Backend

Order tracking API over the local orders table, kept up to date by a
one-way sync from Salesforce.
"""

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.api import orders, sync
from app.core.config import settings
from app.database.engine import SessionLocal
from app.database.session import init_db
from app.observability import setup_structured_logging
from app.services.order_source import InMemoryOrderSource, OrderSource
from app.services.order_store import OrderStore
from app.services.salesforce import SalesforceOrderSource
from app.services.scheduler import SyncScheduler
from app.services.sync_service import SyncService

setup_structured_logging()
logger = logging.getLogger(__name__)


def build_order_source() -> OrderSource:
    if settings.SALESFORCE_MODE == "mock":
        logger.warning("SALESFORCE_MODE=mock, syncing from seeded demo orders")
        return InMemoryOrderSource.with_demo_orders()
    return SalesforceOrderSource.from_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Order portal starting up")
    if settings.AUTO_CREATE_TABLES:
        init_db()

    source = build_order_source()
    sync_service = SyncService(source, OrderStore.factory(SessionLocal))
    app.state.sync_service = sync_service

    scheduler = None
    if settings.SYNC_SCHEDULE_ENABLED:
        scheduler = SyncScheduler(sync_service, settings.SYNC_INTERVAL_MINUTES)
        scheduler.start()
    app.state.sync_scheduler = scheduler

    yield

    if scheduler:
        scheduler.shutdown()
    await source.close()
    logger.info("Order portal shutting down")


app = FastAPI(
    title="Order Portal API",
    description="Order tracking backend: order CRUD and Salesforce order sync.",
    version="0.1.0",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error("Internal error", exc_info=exc, extra={"request_id": request_id})
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "request_id": request_id},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", "unknown")
    return JSONResponse(
        status_code=422,
        content={
            "detail": exc.errors(),
            "request_id": request_id,
        },
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(orders.router, prefix=settings.API_V1_PREFIX)
app.include_router(sync.router, prefix=settings.API_V1_PREFIX)

# ---------------------------------------------------------------------------
# Prometheus
# ---------------------------------------------------------------------------

Instrumentator().instrument(app).expose(app, include_in_schema=False)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["system"])
def health(request: Request):
    sync_service = getattr(request.app.state, "sync_service", None)
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT,
        "sync_running": bool(sync_service and sync_service.is_running),
    }
