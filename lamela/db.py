"""Database initialisation for Lamela Gateway.

Creates the SQLite database that mirrors browser online/offline state.  The
database path is taken from the ``LAMELA_DATA_DIR`` environment variable
(default: ``./data``).

There is a single ``browsers`` table keyed by access code.  The gateway only
writes to it from :class:`lamela.browsers.store.BrowserStore`, whose writes
run on worker threads, hence one connection per thread.  Rows are never
deleted: a browser seen once stays known, and startup flips every row to
offline because no session survives a restart.

Usage::

    from lamela.db import get_db, init_db
    init_db()                  # idempotent, safe to call multiple times
    conn = get_db()            # returns a per-thread connection
"""

from __future__ import annotations

import os
import sqlite3
import threading
from pathlib import Path

_DB_PATH: Path | None = None
_LOCAL = threading.local()


def _db_path() -> Path:
    global _DB_PATH
    if _DB_PATH is None:
        data_dir = Path(os.environ.get("LAMELA_DATA_DIR", "./data"))
        data_dir.mkdir(parents=True, exist_ok=True)
        _DB_PATH = data_dir / "lamela.db"
    return _DB_PATH


def set_db_path(path: str | Path) -> None:
    """Override the database path (useful for tests)."""
    global _DB_PATH, _LOCAL
    _DB_PATH = Path(path)
    _LOCAL = threading.local()


def get_db() -> sqlite3.Connection:
    """Return a per-thread SQLite connection (WAL mode)."""
    conn = getattr(_LOCAL, "conn", None)
    if conn is None:
        conn = sqlite3.connect(str(_db_path()), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        _LOCAL.conn = conn
    return conn


def init_db(path: str | Path | None = None) -> None:
    """Create all tables (idempotent, safe to run multiple times)."""
    if path:
        set_db_path(path)
    conn = get_db()
    conn.executescript(_SCHEMA_SQL)
    conn.commit()


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS browsers (
    access_code  TEXT PRIMARY KEY,
    user_agent   TEXT NOT NULL DEFAULT '',
    is_online    INTEGER NOT NULL DEFAULT 0,
    last_online  TIMESTAMP,
    created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_browsers_online ON browsers(is_online);
"""
