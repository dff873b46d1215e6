"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Header, Request

from pricesync.engine.service import PriceSyncEngine
from pricesync.server.database import Database

DEFAULT_OPERATOR = "api"


def get_engine(request: Request) -> PriceSyncEngine:
    """Get engine from app state."""
    engine: PriceSyncEngine = request.app.state.engine
    return engine


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_operator(x_operator_id: str | None = Header(default=None)) -> str:
    """Operator recorded on manual actions (X-Operator-Id header)."""
    return x_operator_id or DEFAULT_OPERATOR
