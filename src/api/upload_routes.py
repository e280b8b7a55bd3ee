"""Upload API routes: icon/image files for app tiles.

No authentication: every route is public on the local network.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, File, HTTPException, Request, UploadFile

from src.uploads.store import UploadError, UploadStore

logger = logging.getLogger(__name__)

upload_router = APIRouter(prefix="/uploads", tags=["uploads"])


def _get_store(request: Request) -> UploadStore:
    return request.app.state.upload_store  # type: ignore[no-any-return]


async def _read_checked(store: UploadStore, file: UploadFile) -> bytes:
    """Read at most one byte past the limit so oversize files are rejected cheaply."""
    content = await file.read(store.max_bytes + 1)
    try:
        store.validate(file.content_type, len(content))
    except UploadError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return content


@upload_router.post("", status_code=201)
async def upload_file(request: Request, file: UploadFile | None = File(None)) -> dict[str, Any]:
    """Store a single file sent as the ``file`` form field."""
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")

    store = _get_store(request)
    content = await _read_checked(store, file)
    try:
        upload = store.save(file.filename, content, file.content_type)
    except (OSError, sqlite3.Error):
        logger.exception("Error uploading file %s", file.filename)
        raise HTTPException(status_code=500, detail="Failed to upload file")
    return upload.to_dict()


@upload_router.post("/multiple", status_code=201)
async def upload_files(
    request: Request, files: list[UploadFile] | None = File(None),
) -> list[dict[str, Any]]:
    """Store up to ``max_upload_files`` files sent as the ``files`` form field.

    Every file is checked before any is written.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")

    limit = request.app.state.config.max_upload_files
    if len(files) > limit:
        raise HTTPException(status_code=400, detail=f"Too many files. Maximum is {limit}.")

    store = _get_store(request)
    contents = [await _read_checked(store, f) for f in files]
    try:
        uploads = [
            store.save(f.filename, content, f.content_type)
            for f, content in zip(files, contents)
        ]
    except (OSError, sqlite3.Error):
        logger.exception("Error uploading %d files", len(files))
        raise HTTPException(status_code=500, detail="Failed to upload files")
    return [u.to_dict() for u in uploads]


@upload_router.get("")
def list_uploads(request: Request, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
    """Most recent uploads first."""
    try:
        uploads = _get_store(request).list_recent(limit=limit, offset=offset)
    except sqlite3.Error:
        logger.exception("Error fetching uploads")
        raise HTTPException(status_code=500, detail="Failed to fetch uploads")
    return [u.to_dict() for u in uploads]


@upload_router.get("/{upload_id}")
def get_upload(upload_id: int, request: Request) -> dict[str, Any]:
    try:
        upload = _get_store(request).get(upload_id)
    except sqlite3.Error:
        logger.exception("Error fetching upload %s", upload_id)
        raise HTTPException(status_code=500, detail="Failed to fetch upload")
    if not upload:
        raise HTTPException(status_code=404, detail="Upload not found")
    return upload.to_dict()
