"""Dashboard settings API routes."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from src.settings.store import SettingsStore

logger = logging.getLogger(__name__)

settings_router = APIRouter(prefix="/settings", tags=["settings"])


def _get_store(request: Request) -> SettingsStore:
    return request.app.state.settings_store  # type: ignore[no-any-return]


@settings_router.get("")
def get_settings(request: Request) -> dict[str, Any]:
    try:
        return _get_store(request).all()
    except sqlite3.Error:
        logger.exception("Error fetching settings")
        raise HTTPException(status_code=500, detail="Failed to fetch settings")


@settings_router.put("")
def update_settings(request: Request, values: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Upsert every key in the body."""
    try:
        _get_store(request).update(values)
    except sqlite3.Error:
        logger.exception("Error updating settings")
        raise HTTPException(status_code=500, detail="Failed to update settings")
    return {"success": True, "message": "Settings updated successfully"}


@settings_router.get("/{key}")
def get_setting(key: str, request: Request) -> dict[str, Any]:
    try:
        value = _get_store(request).get(key)
    except KeyError:
        raise HTTPException(status_code=404, detail="Setting not found")
    except sqlite3.Error:
        logger.exception("Error fetching setting %s", key)
        raise HTTPException(status_code=500, detail="Failed to fetch setting")
    return {key: value}
