"""Best-effort persistence of browser online state.

In-memory sessions are the source of truth for liveness; this store only
mirrors them into SQLite so other tools can see which browsers exist and when
they were last online.  Writes triggered from the message path are detached
background tasks so storage latency never delays a reply.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from lamela.db import get_db

logger = logging.getLogger(__name__)


class BrowserStore:
    """SQLite-backed ``browsers`` table with fire-and-forget writers."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._last: asyncio.Task | None = None

    # ── Fire-and-forget API (used by sessions/protocol) ───────────

    def upsert_online(self, access_code: str, user_agent: str) -> None:
        """Mark a browser online, creating its record on first sight."""
        self._submit(self.write_online, access_code, user_agent)

    def mark_offline(self, access_code: str) -> None:
        """Mark a browser offline; unknown codes get a fresh offline record."""
        self._submit(self.write_offline, access_code)

    async def flush(self) -> None:
        """Wait for all outstanding background writes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_writes(self) -> int:
        return len(self._tasks)

    def _submit(self, fn, *args) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop (scripts, sync tests): write inline.
            fn(*args)
            return
        task = asyncio.create_task(self._write_after(self._last, fn, *args))
        self._last = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _write_after(previous: asyncio.Task | None, fn, *args) -> None:
        # Writes land in submission order, so online-then-offline ends offline.
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        await asyncio.to_thread(fn, *args)

    # ── Synchronous writers ───────────────────────────────────────

    def write_online(self, access_code: str, user_agent: str) -> None:
        try:
            db = get_db()
            now = datetime.now(timezone.utc).isoformat()
            db.execute(
                """INSERT INTO browsers (access_code, user_agent, is_online, last_online)
                   VALUES (?, ?, 1, ?)
                   ON CONFLICT(access_code) DO UPDATE SET
                       user_agent = ?,
                       is_online = 1,
                       last_online = ?""",
                (access_code, user_agent, now, user_agent, now),
            )
            db.commit()
            logger.debug("Browser %s marked online", access_code)
        except Exception:
            logger.exception("Failed to mark browser %s online", access_code)

    def write_offline(self, access_code: str) -> None:
        try:
            db = get_db()
            now = datetime.now(timezone.utc).isoformat()
            db.execute(
                """INSERT INTO browsers (access_code, is_online, last_online)
                   VALUES (?, 0, ?)
                   ON CONFLICT(access_code) DO UPDATE SET
                       is_online = 0,
                       last_online = ?""",
                (access_code, now, now),
            )
            db.commit()
            logger.debug("Browser %s marked offline", access_code)
        except Exception:
            logger.exception("Failed to mark browser %s offline", access_code)

    def mark_all_offline(self) -> int:
        """Reset every record to offline (sessions never survive a restart)."""
        try:
            db = get_db()
            cur = db.execute("UPDATE browsers SET is_online = 0 WHERE is_online = 1")
            db.commit()
            return cur.rowcount
        except Exception:
            logger.exception("Failed to reset browser online flags")
            return 0

    # ── Queries ───────────────────────────────────────────────────

    def list_browsers(self, online: bool | None = None) -> list[dict]:
        db = get_db()
        query = "SELECT * FROM browsers"
        params: list = []
        if online is not None:
            query += " WHERE is_online = ?"
            params.append(1 if online else 0)
        query += " ORDER BY last_online DESC"
        cur = db.execute(query, params)
        return [_to_dict(row) for row in cur.fetchall()]

    def get_browser(self, access_code: str) -> dict | None:
        db = get_db()
        row = db.execute(
            "SELECT * FROM browsers WHERE access_code = ?", (access_code,)
        ).fetchone()
        return _to_dict(row) if row else None


def _to_dict(row) -> dict:
    data = dict(row)
    data["is_online"] = bool(data["is_online"])
    return data
