"""
ChatRelay - outbound event delivery for a multi-tenant messaging CRM

FastAPI application entry point.
"""
import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import observability modules
from chatrelay.config import settings
from chatrelay.logging_config import configure_logging
from chatrelay.sentry_config import configure_sentry
from chatrelay.middleware.logging import LoggingMiddleware
from chatrelay.routes.metrics import router as metrics_router

# Import route modules
from chatrelay.routes.delivery import router as delivery_router
from chatrelay.routes.messages import router as messages_router
from chatrelay.routes.webhooks import router as webhooks_router

# Delivery services
from chatrelay.services.delivery_status import DeliveryStatusTracker
from chatrelay.services.job_queue import ArqJobQueue
from chatrelay.services.message_sender import HttpMessagingProvider, MessageSender
from chatrelay.services.rate_limiter import rate_limiter, run_periodic_cleanup
from chatrelay.services.webhook_router import WebhookRouter

# Initialize logging first
logger = configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the delivery services and run the rate-limit sweep."""
    queue = ArqJobQueue()
    webhook_router = WebhookRouter(queue)
    tracker = DeliveryStatusTracker(webhook_router, queue)

    app.state.job_queue = queue
    app.state.rate_limiter = rate_limiter
    app.state.webhook_router = webhook_router
    app.state.status_tracker = tracker
    app.state.message_sender = MessageSender(rate_limiter, HttpMessagingProvider(), tracker)

    cleanup_task = asyncio.create_task(
        run_periodic_cleanup(rate_limiter, settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS)
    )
    logger.info("app_started", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)

    yield

    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    await queue.close()
    logger.info("app_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Rate-limited message sending, delivery tracking and signed webhook fan-out",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

app.include_router(messages_router)
app.include_router(delivery_router)
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "rate_limit_windows": len(rate_limiter),
    }
