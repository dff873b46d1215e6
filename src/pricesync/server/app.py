"""FastAPI application for the pricesync server.

This module creates and configures the FastAPI application with:
- REST API for sync jobs, ERP webhooks, conflicts, pricing rules,
  price history and tenant policies
- The sync scheduler (realtime/incremental/bulk ticks, conflict sweep,
  daily retention)

Usage:
    uvicorn pricesync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from pricesync.core.config import ConfigStore, EngineConfig, ErpConfig
from pricesync.engine.erp import HttpErpClient
from pricesync.engine.service import PriceSyncEngine
from pricesync.server.api.router import router as api_router
from pricesync.server.database import Database
from pricesync.server.scheduler import SyncScheduler

# Configuration from environment variables with defaults
DB_PATH = Path(os.environ.get("PRICESYNC_DB_PATH", "pricesync.db"))
LOG_PATH = Path(os.environ.get("PRICESYNC_LOG_PATH", "pricesync-server.log"))

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for pricesync
    root_logger = logging.getLogger("pricesync")
    root_logger.setLevel(logging.INFO)
    if root_logger.handlers:
        return  # Already configured

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(
    engine: PriceSyncEngine,
    scheduler: SyncScheduler | None = None,
    erp_client: HttpErpClient | None = None,
) -> FastAPI:
    """Create FastAPI application around an engine.

    Tests pass an engine built on an isolated database and no scheduler.

    Args:
        engine: Engine serving the API.
        scheduler: Optional scheduler started with the application.
        erp_client: Optional HTTP client closed on shutdown.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        config = engine.config.current()
        logger.info("=" * 60)
        logger.info("Pricesync Server Starting")
        logger.info("=" * 60)
        logger.info("  Database:  %s", engine.db.path)
        logger.info(
            "  Batches:   %d records, %d concurrent",
            config.batch_size,
            config.max_concurrent_batches,
        )
        logger.info("  Scheduler: %s", "enabled" if scheduler else "disabled")
        logger.info("=" * 60)

        await engine.start()
        if scheduler is not None:
            scheduler.start()

        yield

        # Shutdown
        logger.info("Pricesync Server shutting down")
        if scheduler is not None:
            scheduler.stop()
        await engine.stop()
        if erp_client is not None:
            await erp_client.aclose()

    application = FastAPI(
        title="Pricesync Server",
        description="ERP price synchronization and conflict resolution",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.engine = engine
    application.state.db = engine.db
    application.state.scheduler = scheduler

    application.include_router(api_router)

    return application


def build_engine(db_path: Path) -> tuple[PriceSyncEngine, HttpErpClient]:
    """Build an engine from PRICESYNC_* environment variables."""
    erp_client = HttpErpClient(ErpConfig.from_env())
    engine = PriceSyncEngine(
        db=Database(db_path),
        erp=erp_client,
        config=ConfigStore(EngineConfig.from_env()),
    )
    return engine, erp_client


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    setup_logging(LOG_PATH)
    engine, erp_client = build_engine(DB_PATH)
    return create_app(engine, scheduler=SyncScheduler(engine), erp_client=erp_client)
