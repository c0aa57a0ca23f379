# sessions.py
"""
Crash session holder.

Keeps each open crash bet's hidden crash point between the start and the
cashout request. A session is consumed exactly once: by the cashout that
claims it or by expiry. Claimed ids are remembered so a replayed cashout
is reported as already closed instead of unknown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from casino_engine.errors import SessionAlreadyClosed, SessionNotFound

logger = logging.getLogger("casino.sessions")

# How many closed ids to remember for already-closed detection
CLOSED_HISTORY = 10_000


@dataclass
class CrashSession:
    session_id: str
    player_id: int
    stake: Decimal
    crash_point: Decimal
    server_seed: str
    commitment: str
    config_version: int
    ttl_seconds: float
    auto_cashout: Optional[Decimal] = None
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at >= self.ttl_seconds


class CrashSessionStore:
    def __init__(self, closed_history: int = CLOSED_HISTORY) -> None:
        self._lock = asyncio.Lock()
        self._open: Dict[str, CrashSession] = {}
        self._closed: "OrderedDict[str, None]" = OrderedDict()
        self._closed_history = closed_history

    def __len__(self) -> int:
        return len(self._open)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._open

    async def open(self, session: CrashSession) -> None:
        async with self._lock:
            if session.session_id in self._open or session.session_id in self._closed:
                raise SessionAlreadyClosed("Duplicate session id")
            self._open[session.session_id] = session
        logger.debug(f"Crash session {session.session_id} opened for player {session.player_id}")

    async def claim(self, session_id: str, player_id: int) -> CrashSession:
        """
        Atomically remove and return the open session.
        Another player's session looks exactly like an unknown one.
        """
        async with self._lock:
            session = self._open.get(session_id)
            if session is None or session.player_id != player_id:
                if session is None and session_id in self._closed:
                    raise SessionAlreadyClosed("Crash session already resolved")
                raise SessionNotFound("Crash session not found")
            del self._open[session_id]
            self._mark_closed(session_id)
            return session

    async def restore(self, session: CrashSession) -> None:
        """Undo a claim whose settlement failed."""
        async with self._lock:
            self._closed.pop(session.session_id, None)
            self._open[session.session_id] = session
        logger.warning(f"Crash session {session.session_id} restored after failed settlement")

    async def discard(self, session_id: str) -> None:
        """Drop a session that never became live (its stake was not debited)."""
        async with self._lock:
            self._open.pop(session_id, None)
        logger.debug(f"Crash session {session_id} discarded")

    async def pop_expired(self, now: Optional[float] = None) -> List[CrashSession]:
        now = time.time() if now is None else now
        async with self._lock:
            expired = [s for s in self._open.values() if s.is_expired(now)]
            for s in expired:
                del self._open[s.session_id]
                self._mark_closed(s.session_id)
        return expired

    def _mark_closed(self, session_id: str) -> None:
        self._closed[session_id] = None
        while len(self._closed) > self._closed_history:
            self._closed.popitem(last=False)
