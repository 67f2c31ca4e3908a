"""Time-bounded cache of directory listings."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from .browse import DirectoryBrowser, DirectoryContents


LOGGER = logging.getLogger(__name__)

SWEEP_PROBABILITY = 0.01


class DirectoryListingCache:
    """Listings keyed by virtual path, valid for ``ttl`` seconds.

    Expired entries are ignored on read and removed by an occasional sweep
    triggered from ``put``. A ``ttl`` of ``0`` disables caching entirely.
    """

    def __init__(
        self,
        ttl: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_probability: float = SWEEP_PROBABILITY,
        random_source: Callable[[], float] = random.random,
    ) -> None:
        self._ttl = float(ttl)
        self._clock = clock
        self._sweep_probability = sweep_probability
        self._random = random_source
        self._entries: Dict[str, Tuple[float, DirectoryContents]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, path: str) -> Optional[DirectoryContents]:
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(path)
            if entry is None:
                return None
            stored_at, contents = entry
            if now - stored_at >= self._ttl:
                return None
            return contents

    def put(self, path: str, contents: DirectoryContents) -> None:
        if not self.enabled:
            return
        now = self._clock()
        with self._lock:
            self._entries[path] = (now, contents)
            if self._random() < self._sweep_probability:
                self._sweep_locked(now)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, (stored_at, _) in self._entries.items() if now - stored_at >= self._ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            LOGGER.debug("Evicted %d expired directory listing(s)", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CachedBrowseService:
    """Wrap a :class:`DirectoryBrowser` so repeated listings hit the cache."""

    def __init__(self, browser: DirectoryBrowser, cache: DirectoryListingCache) -> None:
        self._browser = browser
        self._cache = cache

    @property
    def cache(self) -> DirectoryListingCache:
        return self._cache

    def browse_directory(self, path: str) -> DirectoryContents:
        key = path.strip("/")
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        contents = self._browser.browse_directory(key)
        self._cache.put(key, contents)
        return contents

    def invalidate(self, *_: object) -> None:
        """Drop every cached listing; usable as a reindex completion listener."""

        self._cache.clear()


__all__ = ["CachedBrowseService", "DirectoryListingCache", "SWEEP_PROBABILITY"]
