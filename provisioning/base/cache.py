import time
import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

T = TypeVar("T")

logger = logging.getLogger("infrastructure.cache")


class TtlCache:
    """
    Thread-safe cache with a per-entry time to live.

    Concurrent `get_or_load` calls for one key run the loader once; the
    others wait on the key's lock and read the stored value. Failed loads
    and None results are not stored, so the next caller loads again.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def _fresh(self, key: str) -> Optional[Tuple[float, Any]]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > self._clock():
                return entry
            return None

    def get(self, key: str) -> Optional[Any]:
        entry = self._fresh(key)
        return entry[1] if entry is not None else None

    def get_or_load(self, key: str, ttl: float, loader: Callable[[], T]) -> T:
        entry = self._fresh(key)
        if entry is not None:
            return entry[1]
        with self._lock_for(key):
            entry = self._fresh(key)
            if entry is not None:
                return entry[1]
            value = loader()
            if value is not None:
                with self._guard:
                    self._entries[key] = (self._clock() + ttl, value)
                logger.debug(f"Cached '{key}' for {ttl:.0f}s")
            return value

    def invalidate(self, key: str):
        with self._guard:
            self._entries.pop(key, None)
