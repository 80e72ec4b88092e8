"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from crosswire import __version__
from crosswire.config import load_config
from crosswire.observability import setup_logging


def create_app() -> FastAPI:
    """Build the FastAPI application with the API router under /api."""
    config = load_config()
    setup_logging(config.logging.level, json=True)

    app = FastAPI(title="crosswire", version=__version__)

    from crosswire.web.api import router as api_router
    app.include_router(api_router, prefix="/api")

    @app.get("/health")
    async def _health():
        return {"status": "ok"}

    return app
