"""In-memory per-requester session store."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Optional

from .errors import SessionNotFound
from .models import RenditionDescriptor, Session, SourceMetadata, SourceReference

logger = logging.getLogger("media_courier.sessions")


class SessionStore:
    """Requester id -> ``Session``, last write wins.

    Sessions expire ``ttl`` seconds after their last update. Mutation is
    only safe under ``lock(requester_id)``, which serialises events for one
    requester in arrival order; distinct requesters never contend.
    """

    def __init__(self, ttl: float = 900):
        self.ttl = ttl
        self._sessions: Dict[Hashable, Session] = {}
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def lock(self, requester_id: Hashable):
        """Hold the requester's lock. asyncio.Lock wakes waiters FIFO."""
        lock = self._locks.get(requester_id)
        if lock is None:
            lock = self._locks[requester_id] = asyncio.Lock()
        self._waiters[requester_id] = self._waiters.get(requester_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[requester_id] -= 1
            if not self._waiters[requester_id]:
                del self._waiters[requester_id]
                self._locks.pop(requester_id, None)

    def _expired(self, session: Session, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - session.updated_at > self.ttl

    def put(
        self,
        requester_id: Hashable,
        reference: SourceReference,
        metadata: SourceMetadata,
    ) -> Session:
        """Start a new session, replacing any pending one."""
        self.purge_expired()
        if requester_id in self._sessions:
            logger.debug("Replacing pending session for %s", requester_id)
        session = Session(reference=reference, metadata=metadata)
        self._sessions[requester_id] = session
        return session

    def get(self, requester_id: Hashable) -> Session:
        """Return the live session.

        Raises:
            SessionNotFound: If absent or expired
        """
        session = self._sessions.get(requester_id)
        if session is None:
            raise SessionNotFound(f"no session for {requester_id}")
        if self._expired(session):
            del self._sessions[requester_id]
            raise SessionNotFound(f"session for {requester_id} expired")
        return session

    def update(self, requester_id: Hashable, **fields) -> Session:
        """Set fields on the live session and refresh its expiry."""
        session = self.get(requester_id)
        for name, value in fields.items():
            if not hasattr(session, name):
                raise AttributeError(f"Session has no field {name!r}")
            setattr(session, name, value)
        session.touch()
        return session

    def set_rendition(self, requester_id: Hashable, rendition: RenditionDescriptor) -> Session:
        return self.update(requester_id, rendition=rendition)

    def remove(self, requester_id: Hashable):
        self._sessions.pop(requester_id, None)

    def purge_expired(self) -> int:
        """Drop expired sessions. Returns how many were dropped."""
        now = time.monotonic()
        expired = [rid for rid, s in self._sessions.items() if self._expired(s, now)]
        for requester_id in expired:
            del self._sessions[requester_id]
        if expired:
            logger.debug("Purged %d expired sessions", len(expired))
        return len(expired)

    def __contains__(self, requester_id: Hashable) -> bool:
        try:
            self.get(requester_id)
        except SessionNotFound:
            return False
        return True

    def __len__(self) -> int:
        return len(self._sessions)
