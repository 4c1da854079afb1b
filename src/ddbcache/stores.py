"""
Cache stores
Thread-safe TTL maps for items, queries and scans

Implements:
- ItemStore: get(key) → (value, found), set, delete, clear, expire
- GroupedStore: get(group, key), set, delete_group, delete_where, clear, expire
- Absent: explicit "confirmed not to exist" sentinel for the item store

Every stored value is deep-copied on the way in and out, so callers can
mutate what they get back without touching the cached entry.
"""

import copy
import enum
import threading
import time
from typing import Any, Callable, Dict, Hashable, List, NamedTuple, Optional, Tuple

from cachetools import TTLCache

DEFAULT_ITEM_TTL = 15 * 60
DEFAULT_QUERY_TTL = 5 * 60
DEFAULT_SCAN_TTL = 5 * 60

ANY = object()


class Absent(enum.Enum):
    """Cached marker for a key the store confirmed does not exist."""

    ABSENT = "absent"

    def __repr__(self) -> str:
        return "<ABSENT>"


ABSENT = Absent.ABSENT


class GroupKey(NamedTuple):
    """Invalidation unit of the query and scan caches."""

    table: str
    index: Optional[str] = None
    hash_value: Optional[str] = None

    def __str__(self) -> str:
        key = self.table
        if self.hash_value is not None:
            key += "&" + self.hash_value
        if self.index is not None:
            key += "#" + self.index
        return key


def _copy(value: Any) -> Any:
    if value is ABSENT:
        return value
    return copy.deepcopy(value)


class ItemStore:
    """Point-lookup cache keyed by ItemKey; values are item dicts or ABSENT."""

    def __init__(
        self,
        ttl: int = DEFAULT_ITEM_TTL,
        maxsize: int = 100_000,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.RLock()

    def get(self, key: str) -> Tuple[Any, bool]:
        with self._lock:
            try:
                value = self._cache[key]
            except KeyError:
                return None, False
        return _copy(value), True

    def set(self, key: str, value: Any) -> None:
        value = _copy(value)
        with self._lock:
            self._cache[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def expire(self) -> int:
        with self._lock:
            return len(self._cache.expire())

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class GroupedStore:
    """
    Two-level cache: group key → (request key → result).

    Groups are the unit of invalidation. Each group is its own TTLCache so
    entries expire individually; emptied groups are dropped by expire().
    """

    def __init__(
        self,
        ttl: int = DEFAULT_QUERY_TTL,
        max_groups: int = 10_000,
        max_entries: int = 1_000,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_groups = max_groups
        self.max_entries = max_entries
        self._timer = timer
        self._groups: Dict[GroupKey, TTLCache] = {}
        self._lock = threading.RLock()

    def get(self, group: GroupKey, key: Hashable) -> Tuple[Any, bool]:
        with self._lock:
            entries = self._groups.get(group)
            if entries is None:
                return None, False
            try:
                value = entries[key]
            except KeyError:
                return None, False
        return _copy(value), True

    def set(self, group: GroupKey, key: Hashable, value: Any) -> None:
        value = _copy(value)
        with self._lock:
            entries = self._groups.get(group)
            if entries is None:
                if len(self._groups) >= self.max_groups:
                    self._expire_locked()
                if len(self._groups) >= self.max_groups:
                    # oldest group goes first; dicts keep insertion order
                    self._groups.pop(next(iter(self._groups)))
                entries = TTLCache(maxsize=self.max_entries, ttl=self.ttl, timer=self._timer)
                self._groups[group] = entries
            entries[key] = value

    def delete_group(self, group: GroupKey) -> int:
        """Drop one group; returns how many entries it held."""
        with self._lock:
            entries = self._groups.pop(group, None)
            return len(entries) if entries is not None else 0

    def delete_where(self, table: str, index: Any = ANY) -> List[GroupKey]:
        """Drop every group of a table, or of one index (None = base table) of it."""
        with self._lock:
            doomed = [
                g for g in self._groups
                if g.table == table and (index is ANY or g.index == index)
            ]
            for group in doomed:
                del self._groups[group]
            return doomed

    def groups(self) -> List[GroupKey]:
        with self._lock:
            return list(self._groups)

    def clear(self) -> None:
        with self._lock:
            self._groups.clear()

    def expire(self) -> int:
        with self._lock:
            return self._expire_locked()

    def _expire_locked(self) -> int:
        removed = 0
        for group in list(self._groups):
            entries = self._groups[group]
            removed += len(entries.expire())
            if not entries:
                del self._groups[group]
        return removed

    def __len__(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._groups.values())
