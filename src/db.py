"""Shared SQLite connection helper for the stores.

All stores live in one database file (``settings.db_path``) and open a
short-lived connection per call.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


@contextmanager
def connect(db_path: Path | str) -> Iterator[sqlite3.Connection]:
    """Yield a connection inside a transaction; commit on success, then close."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        with conn:
            yield conn
    finally:
        conn.close()
