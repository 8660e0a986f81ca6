from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable, Generic, Hashable, TypeVar


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """Process-local key/value cache with a fixed time-to-live.

    Best-effort accelerator only: there is no cross-process or cross-request
    consistency, so callers must tolerate a stale hit for up to ``ttl_s``.
    """

    def __init__(self, ttl_s: float, *, time_source: Callable[[], float] | None = None) -> None:
        self._ttl_s = max(0.0, float(ttl_s))
        self._time = time_source or time.monotonic
        self._entries: dict[K, _Entry[V]] = {}

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._time():
            self._entries.pop(key, None)
            return None
        return entry.value

    def put(self, key: K, value: V) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._time() + self._ttl_s)

    def invalidate(self, key: K | None = None) -> None:
        if key is None:
            self._entries.clear()
            return
        self._entries.pop(key, None)


class SingleSlotCache(Generic[K, V]):
    """One-entry cache guarded by a generation counter.

    ``invalidate`` bumps the generation. A loader that read ``generation`` before
    going to storage passes it back to ``put``; if an invalidation happened in
    between, the put is dropped so a value loaded before a rotation cannot
    repopulate the slot after it.
    """

    def __init__(self) -> None:
        self._key: K | None = None
        self._value: V | None = None
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, key: K) -> V | None:
        if self._key is None or self._key != key:
            return None
        return self._value

    def put(self, key: K, value: V, *, generation: int | None = None) -> bool:
        if generation is not None and generation != self._generation:
            return False
        # Overwrite the slot; the previous key is evicted.
        self._key = key
        self._value = value
        return True

    def invalidate(self) -> None:
        self._generation += 1
        self._key = None
        self._value = None
