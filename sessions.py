"""
sessions.py — SessionRegistry: conversation sessions for one designer instance.

A registry belongs to exactly one DesignerOrchestrator (one per credential, see
designer_cache.py). A session created through a registry is only visible
through that registry; lookups for any other id raise SessionNotFound, never a
freshly substituted session.

Storage is pluggable:
  InMemorySessionStore — default; process-local, lost on restart
  RedisSessionStore    — shared across workers; keys are namespaced by the
                         credential fingerprint so per-credential visibility
                         is preserved, and carry the idle timeout as their TTL

Idle sessions are removed by evict_idle(), driven by the background sweep in
app.py. Eviction is a hard delete; there is no separate "expired" state.
"""

import asyncio
import json
import logging
import threading
import uuid
import weakref
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Literal

from errors import SessionNotFound

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChatTurn:
    role:      Literal['user', 'assistant']
    content:   str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            'role':      self.role,
            'content':   self.content,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'ChatTurn':
        return cls(role=d['role'], content=d['content'],
                   timestamp=datetime.fromisoformat(d['timestamp']))


@dataclass(frozen=True)
class Session:
    id:               str
    itinerary_ref:    str
    history:          tuple[ChatTurn, ...]
    created_at:       datetime
    last_activity_at: datetime

    def to_dict(self) -> dict:
        return {
            'id':             self.id,
            'itineraryId':    self.itinerary_ref,
            'messages':       [t.to_dict() for t in self.history],
            'messageCount':   len(self.history),
            'createdAt':      self.created_at.isoformat(),
            'lastActiveAt':   self.last_activity_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'Session':
        return cls(
            id               = d['id'],
            itinerary_ref    = d['itineraryId'],
            history          = tuple(ChatTurn.from_dict(t) for t in d['messages']),
            created_at       = datetime.fromisoformat(d['createdAt']),
            last_activity_at = datetime.fromisoformat(d['lastActiveAt']),
        )


# ---------------------------------------------------------------------------
# Session storage backends
# ---------------------------------------------------------------------------

class SessionStore(ABC):
    @abstractmethod
    def save(self, session: Session) -> None: ...

    @abstractmethod
    def load(self, session_id: str) -> Session | None: ...

    @abstractmethod
    def delete(self, session_id: str) -> bool: ...

    @abstractmethod
    def sessions(self) -> Iterator[Session]: ...

    @abstractmethod
    def count(self) -> int: ...


class InMemorySessionStore(SessionStore):
    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def save(self, session: Session) -> None:
        self._sessions[session.id] = session

    def load(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def sessions(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def count(self) -> int:
        return len(self._sessions)


class RedisSessionStore(SessionStore):
    """
    Redis-backed sessions for multi-worker deployments.

    Key layout: designer:{namespace}:session:{session_id} → JSON, TTL = idle timeout.
    Every save refreshes the TTL, so Redis expiry doubles as idle eviction.
    """

    def __init__(self, client, namespace: str, ttl_seconds: int):
        self._r      = client
        self._prefix = f'designer:{namespace}:session:'
        self._ttl    = int(ttl_seconds)

    def save(self, session: Session) -> None:
        self._r.setex(self._prefix + session.id, self._ttl, json.dumps(session.to_dict()))

    def load(self, session_id: str) -> Session | None:
        raw = self._r.get(self._prefix + session_id)
        if raw is None:
            return None
        return Session.from_dict(json.loads(raw))

    def delete(self, session_id: str) -> bool:
        return bool(self._r.delete(self._prefix + session_id))

    def sessions(self) -> Iterator[Session]:
        for key in self._r.scan_iter(match=self._prefix + '*'):
            raw = self._r.get(key)
            if raw is not None:
                yield Session.from_dict(json.loads(raw))

    def count(self) -> int:
        return sum(1 for _ in self._r.scan_iter(match=self._prefix + '*'))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SessionRegistry:
    def __init__(self, store: SessionStore | None = None,
                 clock: Callable[[], datetime] | None = None):
        self._store = store if store is not None else InMemorySessionStore()
        self._clock = clock or _utcnow
        self._mutex = threading.Lock()
        self._turn_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self.evicted_total = 0

    def now(self) -> datetime:
        return self._clock()

    def __len__(self) -> int:
        return self._store.count()

    def create(self, itinerary_ref: str) -> str:
        now = self._clock()
        session = Session(
            id               = str(uuid.uuid4()),
            itinerary_ref    = str(itinerary_ref),
            history          = (),
            created_at       = now,
            last_activity_at = now,
        )
        with self._mutex:
            self._store.save(session)
        logger.info("Session created: %s for itinerary %s", session.id, session.itinerary_ref)
        return session.id

    def get(self, session_id: str) -> Session:
        session = self._store.load(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def append(self, session_id: str, turn: ChatTurn) -> Session:
        return self.extend(session_id, (turn,))

    def extend(self, session_id: str, turns: Iterable[ChatTurn]) -> Session:
        """Append several turns as one update; either all land or none do."""
        turns = tuple(turns)
        with self._mutex:
            session = self._store.load(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            updated = replace(
                session,
                history          = session.history + turns,
                last_activity_at = self._clock(),
            )
            self._store.save(updated)
        return updated

    def touch(self, session_id: str) -> Session:
        """Mark the session active now; called when a chat turn starts."""
        with self._mutex:
            session = self._store.load(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            updated = replace(session, last_activity_at=self._clock())
            self._store.save(updated)
        return updated

    def delete(self, session_id: str) -> None:
        with self._mutex:
            if not self._store.delete(session_id):
                raise SessionNotFound(session_id)
        logger.info("Session deleted: %s", session_id)

    def _turn_in_progress(self, session_id: str) -> bool:
        lock = self._turn_locks.get(session_id)
        return lock is not None and lock.locked()

    def evict_idle(self, max_idle_seconds: float) -> int:
        """
        Remove sessions idle longer than max_idle_seconds. Returns the count removed.

        A session whose turn lock is held is mid-turn and is never evicted,
        however long the upstream call takes.
        """
        now = self._clock()
        with self._mutex:
            expired = [
                s.id for s in self._store.sessions()
                if (now - s.last_activity_at).total_seconds() > max_idle_seconds
                and not self._turn_in_progress(s.id)
            ]
            for session_id in expired:
                self._store.delete(session_id)
            self.evicted_total += len(expired)
        if expired:
            logger.info("Evicted %d idle designer session(s)", len(expired))
        return len(expired)

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Per-session lock; hold it for a whole chat turn so turns never interleave."""
        with self._mutex:
            lock = self._turn_locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._turn_locks[session_id] = lock
            return lock
