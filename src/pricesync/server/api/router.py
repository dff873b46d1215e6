"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from pricesync.server.api import config, conflicts, health, history, metrics, rules, sync, webhooks

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(sync.router)
router.include_router(webhooks.router)
router.include_router(conflicts.router)
router.include_router(rules.router)
router.include_router(history.router)
router.include_router(config.router)
router.include_router(metrics.router)
