"""Registry of connected browser sessions with liveness eviction.

Two independent mechanisms reap browsers that stop talking to us:

  * a one-shot deadline per session, re-armed on every liveness signal, which
    evicts the session ``session_timeout`` seconds after it last spoke;
  * a periodic sweep (every ``session_timeout``) that evicts any session whose
    last liveness is older than the timeout, and probes the rest.

The sweep catches sessions whose deadline callback was lost or delayed.
Whichever runs first wins; the other finds the session gone and does nothing.

All registry operations are synchronous and never yield, so under asyncio no
locking is needed between a read and the write that depends on it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Protocol

if TYPE_CHECKING:
    from lamela.browsers.store import BrowserStore

logger = logging.getLogger(__name__)


class Channel(Protocol):
    """What a session needs from its transport."""

    access_code: str | None

    @property
    def closed(self) -> bool: ...

    async def send(self, text: str) -> None: ...

    async def send_json(self, message: dict) -> None: ...

    async def ping(self) -> None: ...


@dataclass
class BrowserSession:
    """One connected browser extension."""

    access_code: str
    user_agent: str
    channel: Channel
    last_liveness: float
    registered_at: float
    deadline: asyncio.TimerHandle | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "accessCode": self.access_code,
            "userAgent": self.user_agent,
            "lastPing": int(self.last_liveness * 1000),
            "registeredAt": int(self.registered_at * 1000),
        }


class SessionRegistry:
    """Table of live browser sessions keyed by access code.

    Parameters
    ----------
    session_timeout:
        Seconds without a liveness signal before a session is evicted. Also
        the interval of the background sweep.
    store:
        Persistence collaborator notified (fire-and-forget) when a session is
        evicted. ``None`` disables persistence.
    clock:
        Time source for ``last_liveness``; injectable for tests.
    """

    def __init__(
        self,
        session_timeout: float = 30.0,
        store: BrowserStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_timeout = session_timeout
        self._store = store
        self._clock = clock
        self._sessions: dict[str, BrowserSession] = {}
        self._running = False
        self._task: asyncio.Task | None = None
        self._probes: set[asyncio.Task] = set()

    # ── Public API ─────────────────────────────────────────────────

    def register(self, access_code: str, user_agent: str, channel: Channel) -> BrowserSession:
        """Insert a session, replacing any previous one for the same code."""
        previous = self._sessions.get(access_code)
        if previous is not None:
            self._cancel_deadline(previous)
            logger.info("Browser %s reconnected, replacing previous session", access_code)

        now = self._clock()
        session = BrowserSession(
            access_code=access_code,
            user_agent=user_agent,
            channel=channel,
            last_liveness=now,
            registered_at=now,
        )
        self._sessions[access_code] = session
        session.deadline = self._arm_deadline(session)
        logger.info("Browser registered: %s (%s)", access_code, user_agent or "no user agent")
        return session

    def touch(self, access_code: str) -> bool:
        """Refresh liveness for a session. Returns False for unknown codes."""
        session = self._sessions.get(access_code)
        if session is None:
            return False
        session.last_liveness = self._clock()
        self._cancel_deadline(session)
        session.deadline = self._arm_deadline(session)
        return True

    def get(self, access_code: str) -> BrowserSession | None:
        return self._sessions.get(access_code)

    def list(self) -> list[BrowserSession]:
        """Point-in-time copy of all sessions."""
        return list(self._sessions.values())

    def evict(
        self,
        access_code: str,
        channel: Channel | None = None,
        reason: str = "teardown",
    ) -> bool:
        """Remove a session and mark the browser offline.

        Idempotent: evicting an absent code returns False. When *channel* is
        given the session is only removed if it still owns that channel, so a
        superseded connection closing late cannot evict its replacement.
        """
        session = self._sessions.get(access_code)
        if session is None:
            return False
        if channel is not None and session.channel is not channel:
            logger.debug("Not evicting %s: channel was superseded", access_code)
            return False

        self._cancel_deadline(session)
        del self._sessions[access_code]
        logger.info("Browser %s removed (%s)", access_code, reason)

        if self._store is not None:
            self._store.mark_offline(access_code)
        return True

    def sweep(self) -> list[str]:
        """Evict stale sessions and probe the others. Returns evicted codes."""
        now = self._clock()
        evicted: list[str] = []
        for session in self.list():
            if now - session.last_liveness > self.session_timeout:
                if self.evict(session.access_code, session.channel, reason="missed liveness sweep"):
                    evicted.append(session.access_code)
            elif not session.channel.closed:
                self._probe(session)
        return evicted

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, access_code: object) -> bool:
        return access_code in self._sessions

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic sweep."""
        if self._running:
            logger.warning("Session sweep is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Session sweep started (timeout=%.1fs)", self.session_timeout)

    async def stop(self) -> None:
        """Stop the sweep and disarm every deadline."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in list(self._probes):
            task.cancel()
        for session in self._sessions.values():
            self._cancel_deadline(session)
        logger.info("Session sweep stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ── Internal ───────────────────────────────────────────────────

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.session_timeout)
            try:
                evicted = self.sweep()
                if evicted:
                    logger.info("Sweep evicted %d stale session(s): %s", len(evicted), ", ".join(evicted))
            except Exception:
                logger.exception("Session sweep failed")

    def _arm_deadline(self, session: BrowserSession) -> asyncio.TimerHandle | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside an event loop only the sweep can evict.
            return None
        return loop.call_later(self.session_timeout, self._on_deadline, session)

    def _on_deadline(self, session: BrowserSession) -> None:
        session.deadline = None
        if self._sessions.get(session.access_code) is not session:
            return
        logger.info("Browser %s missed its liveness deadline", session.access_code)
        self.evict(session.access_code, session.channel, reason="liveness timeout")

    @staticmethod
    def _cancel_deadline(session: BrowserSession) -> None:
        if session.deadline is not None:
            session.deadline.cancel()
            session.deadline = None

    def _probe(self, session: BrowserSession) -> None:
        task = asyncio.create_task(self._send_probe(session))
        self._probes.add(task)
        task.add_done_callback(self._probes.discard)

    async def _send_probe(self, session: BrowserSession) -> None:
        try:
            await session.channel.ping()
        except Exception:
            logger.warning("Liveness probe to %s failed", session.access_code, exc_info=True)
            self.evict(session.access_code, session.channel, reason="probe failed")
