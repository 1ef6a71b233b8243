"""Stage Pass webhook service"""
import logging
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api import webhooks
from app.core.config import settings
from app.core.logging import setup_logging
from app.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy, setup_otel_logging
from app.db.session import engine, init_db
from app.models import Base  # noqa: F401  registers every table on Base.metadata
from app.services.notification_service import NotificationDispatcher
from app.services.stripe_service import build_payment_provider
from app.services.webhook_service import process_webhook_event
from app.tasks.webhook_worker import WebhookWorkerPool

setup_logging()
logger = logging.getLogger(__name__)


def _start_telemetry():
    if not initialize_otel():
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set; traces and metrics stay local")
        return
    if setup_otel_logging():
        logger.info(f"Exporting traces, metrics and logs to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.warning("Exporting traces and metrics, but log export could not be set up")


def _build_webhook_pool(app: FastAPI) -> WebhookWorkerPool:
    provider = build_payment_provider()
    app.state.payment_provider = provider
    handler = partial(process_webhook_event, provider=provider, notifier=NotificationDispatcher())
    return WebhookWorkerPool(handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _start_telemetry()

    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    instrument_sqlalchemy(engine)

    app.state.webhook_pool = _build_webhook_pool(app)
    await app.state.webhook_pool.start()
    logger.info(f"Stage Pass webhook service ready ({settings.ENVIRONMENT})")

    yield

    # Let queued deliveries finish before the process exits
    await app.state.webhook_pool.stop()


app = FastAPI(
    title="Stage Pass Backend",
    description="Payment-event reconciliation for ticket orders and subscriptions",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
app.include_router(webhooks.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/metrics")
def metrics_endpoint():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check(request: Request):
    pool = getattr(request.app.state, "webhook_pool", None)
    return {
        "status": "healthy",
        "webhook_queue_depth": pool.depth if pool is not None else 0,
    }
