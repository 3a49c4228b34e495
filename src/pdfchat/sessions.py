"""Web chat sessions kept in a bounded TTL cache.

Sessions are ephemeral: they live in process memory, expire after a fixed
time-to-live and the least recently used one is evicted when the cache is
full. All access goes through one lock because ``TTLCache`` is not
thread-safe.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from time import monotonic

from cachetools import TTLCache
import structlog

from pdfchat.config import Settings

logger = structlog.get_logger(__name__)

SESSION_EXPIRED_MESSAGE = "Session expired or not found"


@dataclass(frozen=True)
class WebSession:
    session_id: str
    url: str
    document_id: str
    job_id: str
    created_at: datetime


class SessionCache:
    def __init__(
        self,
        *,
        max_sessions: int = 1024,
        ttl_seconds: float = 30 * 60,
        timer: Callable[[], float] = monotonic,
    ) -> None:
        self._sessions: TTLCache[str, WebSession] = TTLCache(
            maxsize=max_sessions, ttl=ttl_seconds, timer=timer
        )
        self._lock = Lock()

    def put(self, session: WebSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session
        logger.debug("web_session_stored", session_id=session.session_id, url=session.url)

    def get(self, session_id: str) -> WebSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def expire(self) -> int:
        """Drop expired sessions now; returns how many were removed."""
        with self._lock:
            removed = len(self._sessions.expire())
        if removed:
            logger.info("web_sessions_expired", removed=removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def build_session_cache(settings: Settings) -> SessionCache:
    return SessionCache(
        max_sessions=settings.web_session_max,
        ttl_seconds=settings.web_session_ttl_seconds,
    )
