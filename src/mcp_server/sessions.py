"""Session Transport Manager for the Resource Gateway.

Maps server-issued session identifiers to their Protocol Engines.
The session map is only ever touched through SessionManager, under a
single asyncio.Lock that never covers handler execution.
"""

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from shared.logging import get_logger
from shared.models import utcnow
from mcp_server.engine import ProtocolEngine
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
_SESSION_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def new_session_id() -> str:
    """Opaque, unguessable identifier: 32 lowercase hex characters."""
    return uuid.uuid4().hex


def validate_session_id(raw: Optional[str]) -> bool:
    """Whether ``raw`` is shaped like an identifier this server issues."""
    return bool(raw) and _SESSION_ID_RE.fullmatch(raw) is not None


@dataclass
class Session:
    """A live logical conversation with one client."""
    session_id: str
    engine: ProtocolEngine
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)

    def touch(self) -> None:
        self.last_activity_at = utcnow()


class SessionManager:
    """
    Owns the session map.

    Responsibilities:
    - Issue session identifiers and their engines
    - Look up live sessions
    - Close sessions explicitly, on idle expiry, and on shutdown
    """

    def __init__(self, registry: ToolRegistry, idle_minutes: int = 60) -> None:
        self.registry = registry
        self.idle_timeout = timedelta(minutes=idle_minutes)
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    @property
    def count(self) -> int:
        return len(self._sessions)

    async def create(self) -> Session:
        """
        Create a session and its engine.

        The mapping is recorded before the caller processes any message
        on it.
        """
        async with self._lock:
            session_id = new_session_id()
            while session_id in self._sessions:
                session_id = new_session_id()

            session = Session(
                session_id=session_id,
                engine=ProtocolEngine(self.registry, session_id),
            )
            self._sessions[session_id] = session

        logger.info("Session created", session_id=session_id, active=self.count)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        """
        Get a live session by ID.

        Returns:
            Session if found, None otherwise
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.touch()
            return session

    async def close(self, session_id: str) -> bool:
        """
        Close a session.

        Closing an unknown or already-closed session is a no-op.

        Returns:
            True if closed, False if not found
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)

        if session is None:
            return False

        session.engine.close()
        logger.info("Session closed", session_id=session_id, active=self.count)
        return True

    async def close_all(self) -> int:
        """Close every session. Used on shutdown."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            session.engine.close()

        if sessions:
            logger.info("All sessions closed", count=len(sessions))
        return len(sessions)

    async def cleanup_expired(self) -> int:
        """
        Close sessions idle for longer than the idle timeout.

        Returns:
            Number of sessions removed
        """
        now = utcnow()

        async with self._lock:
            expired = [
                sid for sid, session in self._sessions.items()
                if now - session.last_activity_at > self.idle_timeout
            ]
            removed = [self._sessions.pop(sid) for sid in expired]

        for session in removed:
            session.engine.close()

        if removed:
            logger.info("Cleaned up expired sessions", count=len(removed))

        return len(removed)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Periodically close idle sessions until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            await self.cleanup_expired()
