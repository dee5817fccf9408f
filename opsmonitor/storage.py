"""In-memory expiring stores for recovery waits and current events."""

from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Callable, Generic, TypeVar

from opsmonitor.models import AlertCurEvent

DEFAULT_EXPIRATION = 24 * 3600.0

V = TypeVar("V")


class AlertNotFoundError(LookupError):
    """Raised when no alert is stored under a fingerprint."""


class _ExpiringMap(Generic[V]):
    def __init__(self, default_expiration: float, clock: Callable[[], float]) -> None:
        self._default = default_expiration
        self._clock = clock
        self._items: dict[str, tuple[V, float | None]] = {}
        self._lock = threading.Lock()

    def _deadline(self, expiration: float | timedelta | None) -> float | None:
        if isinstance(expiration, timedelta):
            expiration = expiration.total_seconds()
        if expiration is None or expiration == 0:
            expiration = self._default
        if expiration < 0:
            return None
        return self._clock() + expiration

    def _alive(self, deadline: float | None, now: float) -> bool:
        return deadline is None or deadline > now

    def put(self, key: str, value: V, expiration: float | timedelta | None = None) -> None:
        with self._lock:
            self._items[key] = (value, self._deadline(expiration))

    def fetch(self, key: str) -> tuple[bool, V | None]:
        with self._lock:
            entry = self._items.get(key)
            if entry is None or not self._alive(entry[1], self._clock()):
                return False, None
            return True, entry[0]

    def discard(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def snapshot(self) -> dict[str, V]:
        with self._lock:
            now = self._clock()
            return {k: v for k, (v, d) in self._items.items() if self._alive(d, now)}

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def purge(self) -> int:
        with self._lock:
            now = self._clock()
            dead = [k for k, (_, d) in self._items.items() if not self._alive(d, now)]
            for key in dead:
                del self._items[key]
            return len(dead)


class AlarmRecoverWaitStore:
    """Holds the time at which each firing key started waiting to recover."""

    def __init__(
        self,
        default_expiration: float = DEFAULT_EXPIRATION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._map: _ExpiringMap[int] = _ExpiringMap(default_expiration, clock)

    def set(self, key: str, value: int) -> None:
        self._map.put(key, value)

    def set_with_expiration(self, key: str, value: int, expiration: float | timedelta) -> None:
        """Store with an explicit lifetime; zero means the default, negative never expires."""
        self._map.put(key, value, expiration)

    def get(self, key: str) -> int | None:
        found, value = self._map.fetch(key)
        return value if found else None

    def remove(self, key: str) -> None:
        self._map.discard(key)

    def search(self, key_prefix: str) -> list[str]:
        return [k for k in self._map.snapshot() if k.startswith(key_prefix)]

    def get_all(self) -> dict[str, int]:
        return self._map.snapshot()

    def flush(self) -> None:
        self._map.clear()


class AlertsCurEventCache:
    """Current alert events keyed by fingerprint."""

    def __init__(
        self,
        default_expiration: float = DEFAULT_EXPIRATION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._map: _ExpiringMap[AlertCurEvent] = _ExpiringMap(default_expiration, clock)

    def get(self, fingerprint: str) -> AlertCurEvent:
        found, value = self._map.fetch(fingerprint)
        if not found:
            raise AlertNotFoundError(fingerprint)
        return value

    def set(self, fingerprint: str, alert: AlertCurEvent) -> None:
        self._map.put(fingerprint, alert)

    def delete(self, fingerprint: str) -> None:
        self._map.discard(fingerprint)

    def list(self) -> dict[str, AlertCurEvent]:
        return self._map.snapshot()

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        return self._map.purge()