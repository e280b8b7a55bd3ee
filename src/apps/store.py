"""App registry storage: SQLite-backed catalog of home-lab services.

Free-text fields are HTML-escaped on the way in; URLs, IPs and icon paths are
stored verbatim. The health checker reads this table through
:meth:`AppStore.list_for_health`.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from src.config import settings
from src.db import connect
from src.health.engine import AppRef

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "url", "ip", "description", "tag", "icon", "section", "is_pinned")

_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#x27;"),
    ("/", "&#x2F;"),
)

EXAMPLE_APPS = (
    {
        "name": "AdGuard Home",
        "url": "http://192.168.1.2:3000",
        "ip": "192.168.1.2",
        "description": "Network-wide ad and tracker blocking",
        "tag": "DNS",
        "icon": "/uploads/adguard.svg",
        "section": "Network",
        "is_pinned": True,
    },
    {
        "name": "Pi-hole",
        "url": "http://192.168.1.3/admin",
        "ip": "192.168.1.3",
        "description": "DNS sinkhole for blocking ads",
        "tag": "DNS",
        "icon": "/uploads/pihole.svg",
        "section": "Network",
        "is_pinned": False,
    },
    {
        "name": "Immich",
        "url": "http://192.168.1.4:2283",
        "ip": "192.168.1.4",
        "description": "Self-hosted photo and video backup",
        "tag": "Media",
        "icon": "/uploads/immich.svg",
        "section": "Media",
        "is_pinned": True,
    },
)


def sanitize(value: Any) -> Any:
    """HTML-escape a free-text value; falsy values pass through."""
    if not value:
        return value
    text = str(value)
    for raw, escaped in _ESCAPES:
        text = text.replace(raw, escaped)
    return text


def validate_app(data: Any) -> list[str]:
    """Return a list of validation messages (empty when the payload is valid)."""
    if not isinstance(data, dict):
        return ["App must be an object"]

    errors = []
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("Name is required and must be a non-empty string")

    url = data.get("url")
    if not url or not isinstance(url, str):
        errors.append("URL is required")
    else:
        try:
            parts = urlsplit(url)
            parts.port  # raises ValueError when out of range
        except ValueError:
            parts = None
        if parts is None or not parts.scheme:
            errors.append("Invalid URL format")
        elif parts.scheme not in ("http", "https"):
            errors.append("URL must use http or https protocol")
        elif not parts.hostname:
            errors.append("Invalid URL format")

    return errors


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class App:
    """A registered home-lab application."""

    id: int
    name: str
    url: str
    ip: str | None = None
    description: str | None = None
    tag: str | None = None
    icon: str | None = None
    section: str | None = None
    is_pinned: int = 0
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row | dict[str, Any]) -> "App":
        r = dict(row)
        return cls(
            id=r["id"],
            name=r["name"],
            url=r["url"],
            ip=r.get("ip"),
            description=r.get("description"),
            tag=r.get("tag"),
            icon=r.get("icon"),
            section=r.get("section"),
            is_pinned=int(r.get("is_pinned") or 0),
            created_at=r.get("created_at") or "",
            updated_at=r.get("updated_at") or "",
        )


def _clean(data: dict[str, Any]) -> dict[str, Any]:
    """Map a validated payload onto column values."""
    return {
        "name": sanitize(data["name"]),
        "url": data["url"],
        "ip": data.get("ip") or None,
        "description": sanitize(data.get("description")) or None,
        "tag": sanitize(data.get("tag")) or None,
        "icon": data.get("icon") or None,
        "section": sanitize(data.get("section")) or None,
        "is_pinned": 1 if data.get("is_pinned") else 0,
    }


class AppStore:
    """SQLite-backed app registry."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path or settings.db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _conn(self):
        return connect(self._db_path)

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS apps (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    name        TEXT NOT NULL,
                    url         TEXT NOT NULL,
                    ip          TEXT,
                    description TEXT,
                    tag         TEXT,
                    icon        TEXT,
                    section     TEXT,
                    created_at  TEXT NOT NULL,
                    updated_at  TEXT NOT NULL,
                    is_pinned   INTEGER NOT NULL DEFAULT 0
                )
            """)
            # Databases created before sections existed
            columns = {r["name"] for r in conn.execute("PRAGMA table_info(apps)")}
            if "section" not in columns:
                logger.info("Adding section column to apps table")
                conn.execute("ALTER TABLE apps ADD COLUMN section TEXT")

    # ── Queries ───────────────────────────────────────────────────────────

    def get(self, app_id: int) -> App | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM apps WHERE id = ?", (app_id,)).fetchone()
        return App.from_row(row) if row else None

    def list_all(self) -> list[App]:
        """Pinned apps first, newest first within each group."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM apps ORDER BY is_pinned DESC, created_at DESC, id DESC"
            ).fetchall()
        return [App.from_row(r) for r in rows]

    def list_for_health(self) -> list[AppRef]:
        """Snapshot of every app for the health checker, by name."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT id, name, url, tag, section FROM apps ORDER BY name ASC"
            ).fetchall()
        return [
            AppRef(id=r["id"], name=r["name"], url=r["url"], tag=r["tag"], section=r["section"])
            for r in rows
        ]

    def count(self) -> int:
        with self._conn() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM apps").fetchone()
        return n

    # ── CRUD ──────────────────────────────────────────────────────────────

    def create(self, data: dict[str, Any]) -> App:
        """Insert a validated payload and return the stored app."""
        values = _clean(data)
        values["created_at"] = values["updated_at"] = _now()
        with self._conn() as conn:
            cursor = conn.execute("""
                INSERT INTO apps (name, url, ip, description, tag, icon, section,
                                  is_pinned, created_at, updated_at)
                VALUES (:name, :url, :ip, :description, :tag, :icon, :section,
                        :is_pinned, :created_at, :updated_at)
            """, values)
            app_id = cursor.lastrowid
        created = self.get(app_id)
        if created is None:
            raise RuntimeError(f"App {app_id} vanished after insert")
        return created

    def update(self, app_id: int, data: dict[str, Any]) -> App | None:
        """Replace every editable field of an app."""
        if not self.get(app_id):
            return None

        values = _clean(data)
        values["updated_at"] = _now()
        values["id"] = app_id
        set_clause = ", ".join(f"{k} = :{k}" for k in (*EDITABLE_FIELDS, "updated_at"))
        with self._conn() as conn:
            conn.execute(f"UPDATE apps SET {set_clause} WHERE id = :id", values)
        return self.get(app_id)

    def delete(self, app_id: int) -> bool:
        """Delete an app. Its icon file, if any, is left on disk."""
        with self._conn() as conn:
            cursor = conn.execute("DELETE FROM apps WHERE id = ?", (app_id,))
        return cursor.rowcount > 0

    def toggle_pin(self, app_id: int) -> App | None:
        app = self.get(app_id)
        if not app:
            return None
        with self._conn() as conn:
            conn.execute(
                "UPDATE apps SET is_pinned = ?, updated_at = ? WHERE id = ?",
                (0 if app.is_pinned else 1, _now(), app_id),
            )
        return self.get(app_id)

    def bulk_create(self, items: list[Any]) -> dict[str, list[Any]]:
        """Create each valid item; collect per-index failures instead of aborting."""
        results: dict[str, list[Any]] = {"created": [], "errors": []}
        for index, item in enumerate(items):
            errors = validate_app(item)
            if errors:
                results["errors"].append({"index": index, "errors": errors})
                continue
            try:
                results["created"].append(self.create(item).to_dict())
            except sqlite3.Error as e:
                logger.warning("Bulk insert of item %d failed: %s", index, e)
                results["errors"].append({"index": index, "error": str(e)})
        return results

    def seed_examples(self) -> int:
        """Add a few example apps to an empty registry. Returns how many."""
        if self.count():
            return 0
        for example in EXAMPLE_APPS:
            self.create(dict(example))
        logger.info("Added %d example apps", len(EXAMPLE_APPS))
        return len(EXAMPLE_APPS)

    def close(self) -> None:
        """No-op; connections are created per-call."""
        pass
