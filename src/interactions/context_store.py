# =============================================================================
# Context Store - Multi-step Interaction Sessions
# =============================================================================
# Holds transient session data that a chain of interactions shares, e.g. a
# command that opens a form whose submission needs the command's context.
#
# Sessions expire after a TTL: lazily on access and by a periodic sweep.
# Interaction ids are linked to sessions so follow-up interactions find
# their session through parent_interaction_id.
# =============================================================================

import asyncio
import copy
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional

from src.interactions.errors import ContextStoreError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 900.0


@dataclass(frozen=True)
class ContextSession:
    """Snapshot of a session; mutate through ContextStore.merge."""
    correlation_id: str
    origin_user: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


# =============================================================================
# BACKENDS
# =============================================================================
class MemorySessionBackend:
    """
    In-process session storage.

    Session data is replaced, never edited in place, so a reader holding
    the previous dict never observes a half-applied merge.
    """

    def __init__(self):
        self._sessions: Dict[str, ContextSession] = {}
        self._links: Dict[str, tuple] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _session_lock(self, correlation_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(correlation_id)
            if lock is None:
                lock = self._locks[correlation_id] = threading.Lock()
            return lock

    def put_session(self, session: ContextSession) -> None:
        with self._session_lock(session.correlation_id):
            self._sessions[session.correlation_id] = session

    def load_session(self, correlation_id: str) -> Optional[ContextSession]:
        return self._sessions.get(correlation_id)

    def delete_session(self, correlation_id: str) -> bool:
        with self._session_lock(correlation_id):
            removed = self._sessions.pop(correlation_id, None) is not None
        with self._guard:
            self._locks.pop(correlation_id, None)
        return removed

    def merge_data(self, correlation_id: str, partial: Dict[str, Any]) -> Optional[ContextSession]:
        with self._session_lock(correlation_id):
            session = self._sessions.get(correlation_id)
            if session is None:
                return None
            merged = replace(session, data={**session.data, **partial})
            self._sessions[correlation_id] = merged
            return merged

    def put_link(self, interaction_id: str, correlation_id: str, expires_at: float) -> None:
        self._links[interaction_id] = (correlation_id, expires_at)

    def load_link(self, interaction_id: str) -> Optional[tuple]:
        return self._links.get(interaction_id)

    def delete_link(self, interaction_id: str) -> None:
        self._links.pop(interaction_id, None)

    def expired(self, now: float) -> tuple:
        """Ids of expired sessions and links."""
        sessions = [cid for cid, s in list(self._sessions.items()) if s.is_expired(now)]
        links = [iid for iid, (_, exp) in list(self._links.items()) if now >= exp]
        return sessions, links

    def count(self) -> int:
        return len(self._sessions)


class ContextStore:
    """
    Session store shared by every in-flight dispatch.

    Args:
        backend: Storage backend (in-memory by default)
        default_ttl: Session lifetime in seconds when none is given
        clock: Time source returning epoch seconds
    """

    def __init__(self, backend=None, default_ttl: float = DEFAULT_SESSION_TTL,
                 clock: Callable[[], float] = time.time):
        self.backend = backend or MemorySessionBackend()
        self.default_ttl = default_ttl
        self._clock = clock
        self._counter = itertools.count(1)

    def _new_correlation_id(self, origin_user: str) -> str:
        return f"{origin_user or 'anonymous'}-{int(self._clock() * 1000)}-{next(self._counter)}"

    # =========================================================================
    # SESSIONS
    # =========================================================================
    def create_session(self, origin_user: str, ttl: float = None,
                       data: Dict[str, Any] = None) -> str:
        """Allocate a fresh session and return its correlation id."""
        now = self._clock()
        session = ContextSession(
            correlation_id=self._new_correlation_id(origin_user),
            origin_user=origin_user,
            data=copy.copy(data) if data else {},
            created_at=now,
            expires_at=now + (self.default_ttl if ttl is None else ttl),
        )
        try:
            self.backend.put_session(session)
        except Exception as e:
            raise ContextStoreError(f"Failed to create session for {origin_user}: {e}") from e
        logger.debug(f"Created session {session.correlation_id} ttl={session.expires_at - now:.0f}s")
        return session.correlation_id

    def get(self, correlation_id: str) -> Optional[ContextSession]:
        """Get a live session; an expired one is evicted and None returned."""
        if not correlation_id:
            return None
        session = self.backend.load_session(correlation_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            self.backend.delete_session(correlation_id)
            logger.info(f"Evicted expired session {correlation_id}")
            return None
        return session

    def merge(self, correlation_id: str, partial_data: Dict[str, Any]) -> Optional[ContextSession]:
        """
        Shallow-merge keys into a session (last writer wins).

        Returns the merged session, or None if it is absent or expired.
        """
        if self.get(correlation_id) is None:
            return None
        return self.backend.merge_data(correlation_id, dict(partial_data))

    def clear(self, correlation_id: str) -> bool:
        """Destroy a session explicitly."""
        return self.backend.delete_session(correlation_id)

    # =========================================================================
    # INTERACTION LINKS
    # =========================================================================
    def link_child(self, parent_interaction_id: str, correlation_id: str) -> None:
        """Record that an interaction id resolves to a session."""
        session = self.get(correlation_id)
        expires_at = session.expires_at if session else self._clock() + self.default_ttl
        self.backend.put_link(parent_interaction_id, correlation_id, expires_at)

    def resolve_interaction(self, interaction_id: str) -> Optional[ContextSession]:
        """Session an interaction id was linked to, if still alive."""
        if not interaction_id:
            return None
        link = self.backend.load_link(interaction_id)
        if link is None:
            return None
        correlation_id, expires_at = link
        if self._clock() >= expires_at:
            self.backend.delete_link(interaction_id)
            return None
        return self.get(correlation_id)

    # =========================================================================
    # EXPIRY
    # =========================================================================
    def sweep(self) -> int:
        """Remove every expired session and link; returns sessions removed."""
        sessions, links = self.backend.expired(self._clock())
        for correlation_id in sessions:
            self.backend.delete_session(correlation_id)
        for interaction_id in links:
            self.backend.delete_link(interaction_id)
        if sessions:
            logger.info(f"Swept {len(sessions)} expired sessions")
        return len(sessions)

    def start_sweeper(self, interval: float, lifecycle=None) -> asyncio.Task:
        """Run sweep() every ``interval`` seconds on the running loop."""
        async def _sweep_forever():
            while True:
                await asyncio.sleep(interval)
                try:
                    self.sweep()
                except Exception as e:
                    logger.exception(f"Session sweep failed: {e}")

        task = asyncio.get_running_loop().create_task(_sweep_forever())
        if lifecycle is not None:
            lifecycle.track_task(self, task)
        return task
