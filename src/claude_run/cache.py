"""In-memory caches with swappable validity rules, and request coalescing.

All mutation happens on the event loop thread, so no locking is needed. A
read-then-populate sequence that awaits in between may run twice for
concurrent misses; :class:`RequestCoalescer` is the tool for preventing that.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")
T = TypeVar("T")

# (stored stamp, current stamp) -> still valid?
Validator = Callable[[Any, Any], bool]


def ttl_validator(ttl_seconds: float) -> Validator:
    """Valid while fewer than ``ttl_seconds`` have passed since the entry was stored.

    Stamps are clock readings (``time.monotonic`` by default).
    """

    def is_valid(stored: float, now: float) -> bool:
        return now - stored < ttl_seconds

    return is_valid


def stat_validator(stored: Any, current: Any) -> bool:
    """Valid while the file's ``(size, mtime)`` stamp is unchanged."""
    return stored == current


class ValidatedCache(Generic[K, V]):
    """Key/value cache where each entry carries a stamp checked on read.

    The caller supplies the current stamp on every ``get``; the validator
    decides whether the stored entry still holds. Stale entries are dropped.
    """

    def __init__(self, validator: Validator):
        self._validator = validator
        self._entries: dict[K, tuple[Any, V]] = {}

    def get(self, key: K, current_stamp: Any) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stamp, value = entry
        if self._validator(stamp, current_stamp):
            return value
        del self._entries[key]
        return None

    def put(self, key: K, value: V, stamp: Any) -> None:
        self._entries[key] = (stamp, value)

    def invalidate(self, key: K | None = None) -> None:
        """Drop one entry, or everything when ``key`` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class TTLCache(Generic[K, V]):
    """A :class:`ValidatedCache` stamped with clock readings."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._cache: ValidatedCache[K, V] = ValidatedCache(ttl_validator(ttl_seconds))
        self._clock = clock

    def get(self, key: K) -> V | None:
        return self._cache.get(key, self._clock())

    def put(self, key: K, value: V) -> None:
        self._cache.put(key, value, self._clock())

    def invalidate(self, key: K | None = None) -> None:
        self._cache.invalidate(key)


class RequestCoalescer:
    """Share one in-flight operation between concurrent callers of the same key.

    The first caller for a key starts the operation; callers arriving while it
    runs await the same task. The key is released when the task finishes,
    whether it succeeded or raised, so the next call starts fresh.
    """

    def __init__(self):
        self._pending: dict[str, asyncio.Task] = {}

    async def coalesce(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        # A cancelled waiter must not cancel the shared task.
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Coalesced request %s failed: %s", key, task.exception())

    def in_flight(self, key: str) -> bool:
        return key in self._pending
