"""
designer_cache.py — CredentialServiceCache: one DesignerOrchestrator per credential.

Chat sessions live inside an orchestrator's SessionRegistry, so every request
carrying the same credential must reach the same orchestrator, or a session
created on one request is "not found" on the next. get_or_create() therefore
does check-then-insert under a single lock: concurrent first-time callers for
a credential all receive the one instance that was stored.

Entries are bounded two ways:
  - capacity: inserting past max_entries evicts the least recently used entry
  - idle TTL: evict_expired() drops entries not used for ttl_seconds; the
    background sweep in app.py calls it periodically
Evictions are counted and logged by credential fingerprint. The raw
credential is never logged. Evicted services are held until the owner collects
them with take_evicted() and closes them; the cache itself never awaits.
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def credential_fingerprint(credential: str) -> str:
    """Stable, non-reversible id for a credential; safe for logs and Redis keys."""
    return hashlib.sha256(credential.encode('utf-8')).hexdigest()[:12]


@dataclass
class _Entry:
    service:   object
    last_used: float


class CredentialServiceCache:
    def __init__(self, factory: Callable[[str], object], *, max_entries: int | None = None,
                 ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self._factory     = factory
        self._max_entries = max_entries
        self._ttl         = ttl_seconds
        self._clock       = clock
        self._lock        = threading.Lock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._evicted: list = []
        self.evictions    = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_create(self, credential: str):
        if not credential:
            raise ValueError('credential must be a non-empty string')

        with self._lock:
            now   = self._clock()
            entry = self._entries.get(credential)
            if entry is not None:
                entry.last_used = now
                self._entries.move_to_end(credential)
                return entry.service

            service = self._factory(credential)
            self._entries[credential] = _Entry(service=service, last_used=now)
            logger.info('Designer service created for credential %s (%d cached)',
                        credential_fingerprint(credential), len(self._entries))

            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    old_key, old = self._entries.popitem(last=False)
                    self._evicted.append(old.service)
                    self.evictions += 1
                    logger.info('Designer service evicted (capacity): credential %s',
                                credential_fingerprint(old_key))
            return service

    def peek(self, credential: str):
        """Return the cached service without creating or touching it."""
        with self._lock:
            entry = self._entries.get(credential)
            return entry.service if entry else None

    def services(self) -> list:
        with self._lock:
            return [e.service for e in self._entries.values()]

    def evict_expired(self) -> int:
        if self._ttl is None:
            return 0
        with self._lock:
            cutoff  = self._clock() - self._ttl
            expired = [k for k, e in self._entries.items() if e.last_used < cutoff]
            for key in expired:
                self._evicted.append(self._entries.pop(key).service)
                logger.info('Designer service evicted (idle): credential %s',
                            credential_fingerprint(key))
            self.evictions += len(expired)
        return len(expired)

    def take_evicted(self) -> list:
        """Hand over services evicted since the last call; the caller closes them."""
        with self._lock:
            evicted, self._evicted = self._evicted, []
        return evicted
