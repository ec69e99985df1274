"""FastAPI application entry point for the role lifecycle admin API."""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from role_lifecycle.shared.auth.dependencies import get_engine
from role_lifecycle.shared.rbac import RoleLifecycleEngine

from .admin.routes import router as admin_router

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """Configure root logging from LOG_LEVEL (default INFO)."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(engine: Optional[RoleLifecycleEngine] = None) -> FastAPI:
    """
    Return a configured FastAPI application.

    Args:
        engine: Engine to serve; defaults to the process-wide instance
    """
    load_dotenv()
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            # Let in-flight notifications finish before shutdown
            await (engine or get_engine()).drain_notifications()

    app = FastAPI(title="Role Lifecycle API", version="0.1.0", lifespan=lifespan)

    if engine is not None:
        app.dependency_overrides[get_engine] = lambda: engine

    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    logger.info("Role lifecycle API initialized")
    return app
