"""Dashboard settings: key/value pairs persisted in SQLite.

Values are stored as text. Reads decode JSON where possible so the UI gets
booleans and numbers back; anything that is not valid JSON comes back as the
raw string.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.config import settings
from src.db import connect

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: tuple[tuple[str, str], ...] = (
    ("timeWidgetEnabled", "false"),
    ("weatherWidgetEnabled", "false"),
    ("weatherLocation", ""),
    ("weatherLat", ""),
    ("weatherLon", ""),
    ("weatherTempUnit", "fahrenheit"),
    ("appHealthWidgetEnabled", "false"),
    ("appHealthCheckInterval", "60000"),
)

_MISSING = object()


def decode_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def encode_value(value: Any) -> str:
    """Serialize a value the way the dashboard UI sends it."""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


class SettingsStore:
    """SQLite-backed settings table."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path or settings.db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with connect(self._db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key         TEXT PRIMARY KEY,
                    value       TEXT NOT NULL,
                    created_at  TEXT NOT NULL,
                    updated_at  TEXT NOT NULL
                )
            """)

    def ensure_defaults(self) -> int:
        """Insert any default key that is missing. Returns how many were added."""
        now = datetime.now(timezone.utc).isoformat()
        added = 0
        with connect(self._db_path) as conn:
            for key, value in DEFAULT_SETTINGS:
                cursor = conn.execute(
                    "INSERT INTO settings (key, value, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?) ON CONFLICT(key) DO NOTHING",
                    (key, value, now, now),
                )
                added += cursor.rowcount
        if added:
            logger.info("Initialised %d default settings", added)
        return added

    def all(self) -> dict[str, Any]:
        with connect(self._db_path) as conn:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
        return {r["key"]: decode_value(r["value"]) for r in rows}

    def get(self, key: str, default: Any = _MISSING) -> Any:
        """Decoded value for ``key``; raises ``KeyError`` unless a default is given."""
        with connect(self._db_path) as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            if default is _MISSING:
                raise KeyError(key)
            return default
        return decode_value(row["value"])

    def update(self, values: dict[str, Any]) -> None:
        """Upsert every key in one transaction."""
        now = datetime.now(timezone.utc).isoformat()
        with connect(self._db_path) as conn:
            for key, value in values.items():
                conn.execute(
                    "INSERT INTO settings (key, value, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                    "updated_at = excluded.updated_at",
                    (key, encode_value(value), now, now),
                )

    def close(self) -> None:
        """No-op; connections are created per-call."""
        pass
