"""Icon uploads: files on disk, metadata in SQLite.

Files are renamed to ``<epoch-ms>-<random hex><ext>`` so user-supplied names
never touch the filesystem. They are served from ``/uploads/<filename>``.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePath
from typing import Any

from src.config import settings
from src.db import connect

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/webp",
    "image/svg+xml",
})

PUBLIC_PREFIX = "/uploads"


class UploadError(ValueError):
    """Raised when an uploaded file is rejected."""


@dataclass
class Upload:
    id: int
    filename: str
    original_name: str | None
    size: int
    mime: str
    created_at: str

    @property
    def url(self) -> str:
        return f"{PUBLIC_PREFIX}/{self.filename}"

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["url"] = self.url
        d["path"] = self.url
        return d


def safe_filename(original_name: str | None) -> str:
    ext = PurePath(original_name or "").suffix.lower()
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}{ext}"


class UploadStore:
    """Writes accepted images to ``uploads_dir`` and records them."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        uploads_dir: Path | str | None = None,
        max_bytes: int | None = None,
    ) -> None:
        self._db_path = Path(db_path or settings.db_path)
        self.uploads_dir = Path(uploads_dir or settings.uploads_dir)
        self.max_bytes = max_bytes or settings.max_upload_bytes
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with connect(self._db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS uploads (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    filename      TEXT NOT NULL,
                    original_name TEXT,
                    size          INTEGER,
                    mime          TEXT,
                    created_at    TEXT NOT NULL
                )
            """)

    @property
    def max_megabytes(self) -> int:
        return self.max_bytes // (1024 * 1024)

    def validate(self, mime: str | None, size: int) -> None:
        if mime not in ALLOWED_MIME_TYPES:
            raise UploadError(
                "Invalid file type. Only PNG, JPEG, WebP, and SVG images are allowed."
            )
        if size > self.max_bytes:
            raise UploadError(f"File too large. Maximum size is {self.max_megabytes} MB.")

    def save(self, original_name: str | None, content: bytes, mime: str | None) -> Upload:
        """Validate, write to disk and record one file."""
        self.validate(mime, len(content))
        filename = safe_filename(original_name)
        (self.uploads_dir / filename).write_bytes(content)

        with connect(self._db_path) as conn:
            cursor = conn.execute(
                "INSERT INTO uploads (filename, original_name, size, mime, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (filename, original_name, len(content), mime,
                 datetime.now(timezone.utc).isoformat()),
            )
            upload_id = cursor.lastrowid

        logger.info("Stored upload %s (%s, %d bytes)", filename, mime, len(content))
        upload = self.get(upload_id)
        if upload is None:
            raise RuntimeError(f"Upload {upload_id} vanished after insert")
        return upload

    def get(self, upload_id: int) -> Upload | None:
        with connect(self._db_path) as conn:
            row = conn.execute("SELECT * FROM uploads WHERE id = ?", (upload_id,)).fetchone()
        return Upload(**dict(row)) if row else None

    def list_recent(self, limit: int = 50, offset: int = 0) -> list[Upload]:
        """Most recent uploads first."""
        with connect(self._db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM uploads ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [Upload(**dict(r)) for r in rows]

    def close(self) -> None:
        """No-op; connections are created per-call."""
        pass
