"""
FastAPI application main file.
"""
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from faultline.config import settings
from faultline.database import init_db
from faultline.queue import InlineDispatchQueue
from faultline.routers import alerts, ingest, issues, metrics
from faultline.services import Services, create_services

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log every request except health checks."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path == "/health":
            return await call_next(request)

        client_host = request.client.host if request.client else 'unknown'
        logger.info(f"🔔 INCOMING REQUEST: {request.method} {path} from {client_host}")
        response = await call_next(request)
        logger.info(f"✅ RESPONSE: {response.status_code} for {request.method} {path}")
        return response


def create_app(services_factory: Optional[Callable[[], Awaitable[Services]]] = None) -> FastAPI:
    """
    Build the application. With `services_factory`, services come from the
    factory instead of settings, and no workers or scheduler are started.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup and shutdown events.
        """
        if services_factory is not None:
            app.state.services = await services_factory()
            yield
            await app.state.services.close()
            return

        # Startup
        logger.info("=" * 60)
        logger.info("Starting Faultline...")
        logger.info("=" * 60)
        try:
            await init_db()
            logger.info("✅ Database initialized successfully")
        except Exception as e:
            logger.error(f"❌ Failed to initialize database: {str(e)}", exc_info=True)
            raise

        app.state.services = await create_services()
        queue = app.state.services.queue
        if isinstance(queue, InlineDispatchQueue):
            logger.info("📦 Dispatch queue: inline (no broker)")
        elif settings.RUN_WORKERS:
            app.state.services.start_workers()
        else:
            logger.info("📦 Dispatch queue: Redis broker, consumed by faultline.worker")
        if settings.SCHEDULER_ENABLED:
            app.state.services.scheduler.start()
        logger.info("=" * 60)

        yield

        # Shutdown
        logger.info("Shutting down application...")
        await app.state.services.close()

    app = FastAPI(
        title="Faultline",
        description="Error monitoring: ingestion, issue grouping, alerting and metrics",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # SDKs report from browser origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ingest.router)
    app.include_router(issues.router)
    app.include_router(alerts.router)
    app.include_router(metrics.router)

    @app.get("/")
    async def root():
        """
        Root endpoint.
        """
        return {
            "message": "Faultline API",
            "version": "1.0.0",
            "endpoints": {
                "ingest_events": "/api/{project_id}/events",
                "ingest_logs": "/api/{project_id}/logs",
                "ingest_traces": "/api/{project_id}/traces",
                "heartbeat": "/api/{project_id}/sessions/heartbeat",
                "active_users": "/api/{project_id}/active-users",
                "issues": "/issues",
                "issue_by_short_id": "/issues/short/{project_id}/{short_id}",
                "alert_rules": "/alert-rules",
                "alerts": "/alerts",
                "metrics": "/metrics/{project_id}",
                "queue_stats": "/queue/stats",
                "config": "/config"
            }
        }

    @app.get("/config")
    async def get_config():
        """
        Get configuration (without sensitive data).
        """
        return {
            "database": {
                "url": settings.DATABASE_URL.split("://")[0] + "://***"  # Hide actual path
            },
            "redis": {
                "enabled": settings.REDIS_ENABLED,
                "async_ingestion": settings.ASYNC_INGESTION,
                "run_workers": settings.RUN_WORKERS,
            },
            "ingest": {
                "api_keys_configured": bool(settings.INGEST_API_KEYS),
                "rate_limit_events": settings.RATE_LIMIT_EVENTS,
                "rate_limit_window": settings.RATE_LIMIT_WINDOW,
            },
            "email": {
                "relay_configured": bool(settings.EMAIL_API_URL)
            }
        }

    @app.get("/health")
    async def health(request: Request):
        """
        Health check endpoint.
        """
        services = request.app.state.services
        return {
            "status": "healthy",
            "redis": await services.cache.ping(),
            "queue": "inline" if isinstance(services.queue, InlineDispatchQueue) else "redis",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("faultline.main:app", host=settings.API_HOST, port=settings.API_PORT)
