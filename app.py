#!/usr/bin/env python3
"""
Lead ingestion service entry point
"""
import logging
import os

from backend.core.app_factory import AppConfig, create_app
from backend.core.config import get_settings

settings = get_settings()

app = create_app(AppConfig(environment=settings.environment))
logger = logging.getLogger(__name__)

if settings.environment.lower() == "development":
    # Deployed schemas are managed outside the service
    from backend.db.database import init_db
    init_db()

logger.info("=== Lead Ingestion Service Startup Complete ===")
logger.info("Environment: {}".format(settings.environment))
logger.info("Total routes: {}".format(len(app.routes)))

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
