"""API routes for app reachability checks.

Endpoints:
  GET /api/apps/health/check   probe every registered app now
  GET /api/apps/health/latest  last report from the background poller
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from src.health.engine import HealthChecker
from src.health.scheduler import HealthScheduler

logger = logging.getLogger(__name__)

health_router = APIRouter(prefix="/apps/health", tags=["health"])


@health_router.get("/check")
async def check_app_health(request: Request) -> dict[str, Any]:
    """Probe all apps concurrently; unreachable apps are reported as down."""
    checker: HealthChecker = request.app.state.health_checker
    registry = request.app.state.app_store

    try:
        report = await checker.check_registry(registry)
    except Exception:
        logger.exception("Error checking app health")
        raise HTTPException(status_code=500, detail="Failed to check app health")
    return report.to_dict()


@health_router.get("/latest")
def latest_app_health(request: Request) -> dict[str, Any]:
    scheduler: HealthScheduler | None = getattr(request.app.state, "health_scheduler", None)
    if scheduler is None or scheduler.latest is None:
        return {"checkedAt": None, "apps": []}
    return scheduler.latest.to_dict()
