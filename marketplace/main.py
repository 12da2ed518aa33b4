"""
Integration Marketplace runtime

FastAPI application entry point. Webhook delivery and health checks run in
the ARQ worker (marketplace.worker); this process only enqueues work.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import observability modules
from marketplace.config import settings
from marketplace.container import Services, build_services
from marketplace.logging_config import configure_logging, get_logger
from marketplace.sentry_config import configure_sentry
from marketplace.middleware.errors import register_exception_handlers
from marketplace.middleware.logging import LoggingMiddleware
from marketplace.routes.metrics import router as metrics_router
from marketplace.queue import JobQueue
from marketplace.store import RedisStore

# Import route modules
from marketplace.routes.installations import router as installations_router
from marketplace.routes.integrations import router as integrations_router
from marketplace.routes.webhooks import router as webhooks_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

log = get_logger(component="api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is not None:
        # Injected by the caller (tests); the caller owns it
        yield
        return

    store = RedisStore.from_url(settings.REDIS_URL)
    queue = await JobQueue.connect(settings.REDIS_URL)
    app.state.services = build_services(store, queue)
    log.info("api_started", environment=settings.ENVIRONMENT)

    try:
        yield
    finally:
        await app.state.services.aclose()
        await queue.close()
        await store.close()
        log.info("api_stopped")


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Installation lifecycle, outbound API gateway and webhook delivery for marketplace integrations",
        lifespan=lifespan,
    )
    app.state.services = services

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)
    app.include_router(installations_router)
    app.include_router(webhooks_router)
    app.include_router(integrations_router)

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Detailed health check."""
        services = app.state.services
        try:
            await services.store.ping()
            redis_status = "connected"
        except Exception as e:
            log.error("health_redis_unreachable", error=str(e))
            redis_status = "unreachable"
        return {
            "status": "healthy" if redis_status == "connected" else "degraded",
            "redis": redis_status,
        }

    return app


app = create_app()
