"""
Application lifecycle event handlers.

Builds the gate stores and decision engine on startup, starts the audit
writer, and drains and closes everything on shutdown.
"""

from typing import Callable

import structlog
from azure.core.exceptions import AzureError
from fastapi import FastAPI

from core.config import settings
from core.exceptions import InfrastructureError
from repositories.provider import build_gate_stores, build_memory_stores, close_gate_stores
from services.vote_gate import build_decision_engine

logger = structlog.get_logger(__name__)


def create_start_app_handler(app: FastAPI) -> Callable:
    """Create startup event handler."""

    async def start_app() -> None:
        logger.info("app_starting", app_name=settings.APP_NAME, backend=settings.GATE_STORE_BACKEND)

        try:
            stores = await build_gate_stores(settings)
        except (InfrastructureError, AzureError, ValueError) as e:
            logger.warning("gate_store_initialization_failed", error=str(e), fallback="memory")
            stores = build_memory_stores(settings.attempt_history_retention_seconds)

        engine = build_decision_engine(settings, stores)
        await engine.audit.start()

        app.state.gate_stores = stores
        app.state.vote_gate = engine

        logger.info("app_started", backend=stores.backend)

    return start_app


def create_stop_app_handler(app: FastAPI) -> Callable:
    """Create shutdown event handler."""

    async def stop_app() -> None:
        logger.info("app_stopping")

        engine = getattr(app.state, "vote_gate", None)
        if engine is not None:
            await engine.audit.stop()

        stores = getattr(app.state, "gate_stores", None)
        if stores is not None:
            try:
                await close_gate_stores(stores)
            except (InfrastructureError, AzureError) as e:
                logger.warning("gate_store_close_failed", error=str(e))

        logger.info("app_stopped")

    return stop_app
