"""
Transient in-memory byte storage.

Image and mask buffers live here only while a request is being processed.
Nothing is written to disk; entries expire after a TTL and can also be
evicted immediately.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TransientStore:
    """
    Process-wide key -> bytes map with per-entry expiry.

    Expired entries are purged on every access. schedule_eviction() also
    arms a fire-and-forget timer on the running event loop so memory is
    released even when nobody touches the store again.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[bytes, Optional[float]]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._purge_expired()
            self._entries[key] = (value, expires_at)

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            self._purge_expired()
            entry = self._entries.get(key)
        return entry[0] if entry else None

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def keys(self) -> List[str]:
        with self._lock:
            self._purge_expired()
            return list(self._entries)

    def evict(self, keys: Iterable[str]) -> int:
        """Remove entries right now. Returns how many existed."""
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def schedule_eviction(self, keys: Iterable[str], delay: float) -> None:
        """
        Expire entries after `delay` seconds.

        The deadline is recorded on the entries themselves; when an event
        loop is running a timer also evicts them at the deadline.
        """
        keys = list(keys)
        if not keys:
            return

        expires_at = self._clock() + delay
        with self._lock:
            for key in keys:
                if key in self._entries:
                    value, _ = self._entries[key]
                    self._entries[key] = (value, expires_at)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(delay, self.evict, keys)
        logger.debug("Scheduled eviction of %d entries in %.1fs", len(keys), delay)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [
            key for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
