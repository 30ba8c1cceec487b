from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from birthday_notifier.config.settings import Settings, settings
from birthday_notifier.db.db import create_tables
from birthday_notifier.db.session import engine
from birthday_notifier.utils.logging import get_logger
from birthday_notifier.routers import main_router
from birthday_notifier.utils.errors import ConfigurationError, setup_error_handlers
from birthday_notifier.utils.rate_limiter import RateLimiter
from birthday_notifier.services.delivery_gateway import build_delivery_gateway
from birthday_notifier.services.scheduler_service import build_scheduler_service
from birthday_notifier.middlewares import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    RateLimitMiddleware,
)

# Initialize the logger
logger = get_logger()


def build_lifespan(app_settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{app_settings.NAME} is starting up...")

        if not app_settings.WEBHOOK_URL:
            raise ConfigurationError(
                "WEBHOOK_URL environment variable is required",
                error_code="WEBHOOK_URL_MISSING",
            )
        gateway = build_delivery_gateway(app_settings)

        await create_tables()

        if await gateway.probe():
            logger.info("Webhook endpoint is reachable")
        else:
            logger.warning(
                "Webhook test failed, but service will continue. "
                "Please check your webhook URL."
            )

        scheduler = build_scheduler_service(app_settings, gateway=gateway)
        app.state.scheduler = scheduler
        if app_settings.SCHEDULER_MODE == "in_process":
            scheduler.start()
        else:
            logger.info("Scheduler ticks are driven by Celery beat")

        yield

        logger.info(f"{app_settings.NAME} is shutting down...")
        await scheduler.stop()
        await engine.dispose()

    return lifespan


def create_application(app_settings: Settings = settings) -> FastAPI:
    """Initialize the FastAPI application with settings and lifespan events."""
    application = FastAPI(
        title=app_settings.NAME,
        version=app_settings.VERSION,
        lifespan=build_lifespan(app_settings),
    )

    # Setup error handlers
    setup_error_handlers(application)

    # Add CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    # Add custom middlewares
    application.add_middleware(
        SecurityHeadersMiddleware,
        enforce_https=app_settings.ENVIRONMENT == "production",
    )
    application.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(
            max_requests=app_settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=app_settings.RATE_LIMIT_WINDOW_SECONDS,
            storage_uri=app_settings.RATE_LIMIT_STORAGE_URI,
        ),
    )
    application.add_middleware(RequestIDMiddleware)

    # Routers
    application.include_router(main_router, prefix=app_settings.API_PREFIX)

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "birthday_notifier.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_config=None,
        log_level=None,
    )
