"""
Prefetcher
Read the pre-mutation image of items before writing them

Deletes and updates that will not hand back the old item can't say which
index groups the item sat in. The prefetcher collects their keys, reads them
with one strongly-consistent batch read (chunked at the service limit), and
invalidates with whatever it found. Keys that don't exist are skipped.

UnprocessedKeys are re-requested with exponential backoff. Keys still unread
after the last round never block the write; they are invalidated by key
alone, as partial snapshots.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import PrefetchIncompleteError
from .invalidation import Invalidator
from .values import key_eq, key_eq_loose

logger = logging.getLogger(__name__)

MAX_BATCH_KEYS = 100

DEFAULT_MAX_ROUNDS = 10
DEFAULT_BACKOFF = 0.05
MAX_BACKOFF = 2.0


class Prefetcher:
    """
    Collects keys for one mutating call.

    fetch() runs before the mutation and only reads; invalidate() runs once
    the mutation succeeded, so a failed write leaves the caches untouched.
    """

    def __init__(
        self,
        client: Any,
        invalidator: Invalidator,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        backoff: float = DEFAULT_BACKOFF,
    ):
        self._client = client
        self._invalidator = invalidator
        self._max_rounds = max_rounds
        self._backoff = backoff
        self._keys: Dict[str, List[Dict[str, Any]]] = {}
        self.found: List[Tuple[str, Dict[str, Any]]] = []
        self.unread: List[Tuple[str, Dict[str, Any]]] = []

    def add(self, table: str, key: Dict[str, Any]) -> None:
        keys = self._keys.setdefault(table, [])
        if not any(key_eq(key, seen) for seen in keys):
            keys.append(key)

    def __len__(self) -> int:
        return sum(len(keys) for keys in self._keys.values())

    def fetch(self) -> int:
        """Consistent-read every collected key. Returns how many items exist."""
        for request in self._batches():
            try:
                self._retrying()(self._read_round, [request])
            except PrefetchIncompleteError as exc:
                unread = [
                    (table, key)
                    for table, spec in exc.unprocessed.items()
                    for key in spec.get("Keys", [])
                ]
                self.unread.extend(unread)
                logger.warning(
                    f"Prefetch left {len(unread)} keys unread after {self._max_rounds} rounds; "
                    f"invalidating them by key"
                )

        if self._keys:
            logger.debug(f"Prefetched {len(self)} keys, {len(self.found)} existed, {len(self.unread)} unread")
        return len(self.found)

    def invalidate(self, exclude: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> int:
        """
        Invalidate by every pre-mutation image fetched, and by the key of
        every item that could not be read.

        exclude maps table → keys whose mutation did not happen (unprocessed).
        """
        exclude = exclude or {}
        done = 0
        for table, item in self.found:
            if any(key_eq_loose(key, item) for key in exclude.get(table, ())):
                continue
            self._invalidator.invalidate(table, item)
            done += 1
        for table, key in self.unread:
            if any(key_eq(key, skipped) for skipped in exclude.get(table, ())):
                continue
            self._invalidator.invalidate(table, key, partial=True)
            done += 1
        return done

    def _read_round(self, pending: List[Dict[str, Dict[str, Any]]]) -> None:
        # pending is a one-slot box so each retry reads only what is still unprocessed
        out = self._client.batch_get_item(RequestItems=pending[0])
        for table, items in out.get("Responses", {}).items():
            self.found.extend((table, item) for item in items)
        unprocessed = out.get("UnprocessedKeys") or {}
        if unprocessed:
            pending[0] = unprocessed
            raise PrefetchIncompleteError(unprocessed)

    def _retrying(self) -> Retrying:
        return Retrying(
            wait=wait_exponential(multiplier=self._backoff, max=MAX_BACKOFF),
            stop=stop_after_attempt(self._max_rounds),
            retry=retry_if_exception_type(PrefetchIncompleteError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )

    def _batches(self) -> Iterator[Dict[str, Dict[str, Any]]]:
        pending: List[Tuple[str, Dict[str, Any]]] = [
            (table, key) for table, keys in self._keys.items() for key in keys
        ]
        for start in range(0, len(pending), MAX_BATCH_KEYS):
            request: Dict[str, Dict[str, Any]] = {}
            for table, key in pending[start:start + MAX_BATCH_KEYS]:
                request.setdefault(table, {"Keys": [], "ConsistentRead": True})["Keys"].append(key)
            yield request
