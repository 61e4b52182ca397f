"""In-process TTL maps backing the reentrancy locks and the credential cache.

Both are injected into the engine rather than held as module globals, so a
test (or a second engine instance) gets its own isolated state. A process
restart clears them, which is safe: the next trigger re-acquires locks and
re-validates credentials.
"""
import time
import logging
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@runtime_checkable
class LockStore(Protocol):
    def try_acquire(self, key: str, ttl: float, value: Any = True) -> bool:
        """Set key if absent (or expired). Returns False if it is held."""
        ...

    def release(self, key: str) -> None:
        ...

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: float) -> None:
        ...


@runtime_checkable
class CredentialCache(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: float) -> None:
        ...

    def invalidate(self, key: str) -> None:
        ...


class TTLMap:
    """
    Dict of key -> (value, expires_at). Expired entries are dropped lazily on
    access, so an entry left behind by a crashed pass cannot wedge a record
    for longer than its TTL.
    """

    def __init__(self, clock: Clock = None):
        self.clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def _live(self, key: str) -> Optional[Tuple[Any, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self.clock():
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        entry = self._live(key)
        return entry[0] if entry else None

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (value, self.clock() + ttl)

    def try_acquire(self, key: str, ttl: float, value: Any = True) -> bool:
        if self._live(key) is not None:
            return False
        self.set(key, value, ttl)
        return True

    def release(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return self._live(key) is not None

    def __len__(self) -> int:
        return sum(1 for key in list(self._entries) if self._live(key) is not None)

    def reset(self) -> None:
        """Clear all entries (useful for testing)"""
        self._entries.clear()


class InMemoryLockStore(TTLMap):
    """LockStore backed by a process-local TTL map"""


class InMemoryCredentialCache(TTLMap):
    """CredentialCache backed by a process-local TTL map"""
