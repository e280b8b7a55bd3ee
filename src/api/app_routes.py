"""App registry API routes: CRUD, pinning and bulk import.

No authentication: every route is public on the local network.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from src.apps.store import AppStore, validate_app

logger = logging.getLogger(__name__)

app_router = APIRouter(prefix="/apps", tags=["apps"])


# ── Helpers ──────────────────────────────────────────────────────────────

def _get_store(request: Request) -> AppStore:
    return request.app.state.app_store  # type: ignore[no-any-return]


def _require_valid(data: Any) -> None:
    errors = validate_app(data)
    if errors:
        raise HTTPException(status_code=400, detail=", ".join(errors))


# ── Endpoints ────────────────────────────────────────────────────────────

@app_router.get("")
def list_apps(request: Request) -> list[dict[str, Any]]:
    """All apps, pinned first."""
    try:
        apps = _get_store(request).list_all()
    except sqlite3.Error:
        logger.exception("Error fetching apps")
        raise HTTPException(status_code=500, detail="Failed to fetch apps")
    return [a.to_dict() for a in apps]


@app_router.post("", status_code=201)
def create_app_entry(request: Request, data: Any = Body(...)) -> dict[str, Any]:
    _require_valid(data)
    try:
        app = _get_store(request).create(data)
    except sqlite3.Error:
        logger.exception("Error creating app")
        raise HTTPException(status_code=500, detail="Failed to create app")
    return app.to_dict()


@app_router.post("/bulk", status_code=201)
def bulk_create_apps(request: Request, items: Any = Body(...)) -> dict[str, Any]:
    """Create many apps from a JSON array; bad items are reported, not fatal."""
    if not isinstance(items, list):
        raise HTTPException(status_code=400, detail="Request body must be an array of apps")
    results = _get_store(request).bulk_create(items)
    logger.info(
        "Bulk import: %d created, %d rejected",
        len(results["created"]), len(results["errors"]),
    )
    return results


@app_router.get("/{app_id}")
def get_app(app_id: int, request: Request) -> dict[str, Any]:
    try:
        app = _get_store(request).get(app_id)
    except sqlite3.Error:
        logger.exception("Error fetching app %s", app_id)
        raise HTTPException(status_code=500, detail="Failed to fetch app")
    if not app:
        raise HTTPException(status_code=404, detail="App not found")
    return app.to_dict()


@app_router.put("/{app_id}")
def update_app(app_id: int, request: Request, data: Any = Body(...)) -> dict[str, Any]:
    _require_valid(data)
    try:
        app = _get_store(request).update(app_id, data)
    except sqlite3.Error:
        logger.exception("Error updating app %s", app_id)
        raise HTTPException(status_code=500, detail="Failed to update app")
    if not app:
        raise HTTPException(status_code=404, detail="App not found")
    return app.to_dict()


@app_router.delete("/{app_id}")
def delete_app(app_id: int, request: Request) -> dict[str, Any]:
    try:
        deleted = _get_store(request).delete(app_id)
    except sqlite3.Error:
        logger.exception("Error deleting app %s", app_id)
        raise HTTPException(status_code=500, detail="Failed to delete app")
    if not deleted:
        raise HTTPException(status_code=404, detail="App not found")
    return {"success": True, "message": "App deleted successfully"}


@app_router.patch("/{app_id}/pin")
def toggle_pin(app_id: int, request: Request) -> dict[str, Any]:
    try:
        app = _get_store(request).toggle_pin(app_id)
    except sqlite3.Error:
        logger.exception("Error toggling pin for app %s", app_id)
        raise HTTPException(status_code=500, detail="Failed to toggle pin")
    if not app:
        raise HTTPException(status_code=404, detail="App not found")
    return app.to_dict()
