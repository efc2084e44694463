#!/usr/bin/env python3
import time
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar('V')


class TTLCache(Generic[V]):
    """Small keyed cache whose entries expire after `ttl` seconds.

    Expired values are kept so callers can fall back to them when a refresh
    fails.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[V, float]] = {}

    def get(self, key: str) -> Optional[V]:
        cached = self._entries.get(key)
        if cached and self._clock() - cached[1] < self.ttl:
            return cached[0]
        return None

    def get_stale(self, key: str) -> Optional[V]:
        cached = self._entries.get(key)
        return cached[0] if cached else None

    def set(self, key: str, value: V) -> None:
        self._entries[key] = (value, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return key in self._entries
