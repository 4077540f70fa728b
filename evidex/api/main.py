"""
Evidex API Application

FastAPI application factory and lifespan.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..config import Settings, get_settings
from ..services import create_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Evidex...")

    app.state.services = await create_services(app.state.settings)
    app.state.tasks = set()

    logger.info("Evidex started successfully")

    yield

    logger.info("Shutting down Evidex...")
    for task in list(app.state.tasks):
        task.cancel()
    if app.state.tasks:
        await asyncio.gather(*app.state.tasks, return_exceptions=True)
    await app.state.services.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the API application.

    Args:
        settings: Settings to use; the cached settings if None
    """
    app = FastAPI(
        title="Evidex",
        description="Evidence log analysis: rule matching, threat scoring, MITRE ATT&CK mapping and timelines",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or get_settings()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from .routes import analyses, rules

    app.include_router(analyses.router, prefix="/api/analyses", tags=["Analyses"])
    app.include_router(rules.router, prefix="/api/rules", tags=["Rules"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "evidex"}

    return app


app = create_app()
