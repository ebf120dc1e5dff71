"""
Application Factory Pattern

Creates FastAPI app instances with configurable settings for different environments.
Enables better testing, dependency injection, and configuration management.
"""
import sys
import logging
from typing import Optional, List

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.core.config import get_settings
from backend.core.logging import setup_logging

logger = logging.getLogger(__name__)


class AppConfig:
    """Configuration for FastAPI application."""

    def __init__(
        self,
        environment: str = None,
        title: str = "Lead Ingestion Service",
        description: str = "Meta lead ads intake, routing and processing for the CRM",
        version: str = "1.0.0",
        enable_docs: bool = None,
        cors_origins: List[str] = None,
    ):
        settings = get_settings()

        self.environment = (environment or settings.environment).lower()
        self.title = title
        self.description = description
        self.version = version

        # API documentation
        self.enable_docs = enable_docs if enable_docs is not None else (self.environment != "production")
        self.docs_url = "/docs" if self.enable_docs else None
        self.redoc_url = "/redoc" if self.enable_docs else None

        # Webhooks and schedulers call server-to-server; browsers only in development
        self.cors_origins = cors_origins if cors_origins is not None else (
            ["*"] if self.environment == "development" else []
        )


def setup_middleware(app: FastAPI, config: AppConfig) -> None:
    """Setup application middleware."""
    if not config.cors_origins:
        return

    from fastapi.middleware.cors import CORSMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Cron-Secret"],
    )
    logger.info("CORS allowed origins: {}".format(config.cors_origins))


def setup_routers(app: FastAPI) -> tuple:
    """Setup API routers."""
    loaded_routers = []
    failed_routers = []

    from backend.api._registry import ROUTERS
    logger.info("Loading {} routers from registry".format(len(ROUTERS)))

    for router in ROUTERS:
        router_name = getattr(router, 'prefix', 'unknown').replace('/api/', '') or 'root'
        try:
            app.include_router(router)
            loaded_routers.append(router_name)
            logger.info("Router '{}' loaded successfully".format(router_name))
        except Exception as e:
            failed_routers.append((router_name, str(e)))
            logger.error("Router '{}' failed: {} - {}".format(router_name, type(e).__name__, e))

    return loaded_routers, failed_routers


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup custom exception handlers."""

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on {} {}: {}".format(request.method, request.url.path, exc), exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"}
        )


def setup_health_endpoints(app: FastAPI, config: AppConfig, loaded_routers: List[str], failed_routers: List[tuple]) -> None:
    """Setup health check endpoints."""

    @app.get("/health")
    async def health_check():
        """Service health check."""
        return {
            "status": "healthy" if not failed_routers else "degraded",
            "version": config.version,
            "environment": config.environment,
            "python_version": "{}.{}.{}".format(
                sys.version_info.major, sys.version_info.minor, sys.version_info.micro
            ),
            "routers": loaded_routers,
            "failed_routers": ["{}: {}".format(name, error) for name, error in failed_routers],
        }


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """
    Create FastAPI application with factory pattern.

    Args:
        config: Optional configuration object

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = AppConfig()

    settings = get_settings()
    setup_logging(
        level=settings.log_level.upper(),
        format_type='json' if settings.use_json_logging else 'standard',
        service_name='lead-ingestion',
    )

    logger.info("Creating FastAPI application")
    logger.info("Environment: {}".format(config.environment))

    app = FastAPI(
        title=config.title,
        description=config.description,
        version=config.version,
        docs_url=config.docs_url,
        redoc_url=config.redoc_url,
    )

    setup_middleware(app, config)
    loaded_routers, failed_routers = setup_routers(app)
    setup_exception_handlers(app)
    setup_health_endpoints(app, config, loaded_routers, failed_routers)

    logger.info("Loaded {} routers, {} failed, {} routes total".format(
        len(loaded_routers), len(failed_routers), len(app.routes)
    ))
    return app
