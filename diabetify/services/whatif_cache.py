import threading
import time
from typing import Callable, Dict, Optional, Tuple


class WhatIfCache:
    """
    In-memory what-if results keyed by job id, each expiring `ttl` seconds
    after it was stored. Nothing here survives a restart.

    Expired entries are evicted on every put() and by purge_expired(), so
    results nobody fetches do not accumulate.
    """

    def __init__(self, ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._items: Dict[str, Tuple[float, dict]] = {}
        self._lock = threading.Lock()

    def put(self, job_id: str, payload: dict):
        now = self.clock()
        with self._lock:
            self._evict(now)
            self._items[job_id] = (now + self.ttl, payload)

    def get(self, job_id: str) -> Tuple[Optional[dict], bool]:
        with self._lock:
            item = self._items.get(job_id)
            if item is None:
                return None, False
            expires_at, payload = item
            if self.clock() >= expires_at:
                del self._items[job_id]
                return None, False
            return payload, True

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            return self._evict(now)

    def _evict(self, now: float) -> int:
        # Caller holds the lock
        expired = [k for k, (expires_at, _) in self._items.items() if now >= expires_at]
        for key in expired:
            del self._items[key]
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._items)
