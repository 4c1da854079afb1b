"""
Schema Cache
Memoized table key schemas

Implements:
- schema_of(table) → TableSchema
- index_schema_of(table, index) → IndexSchema
- key_schema_of(table, index=None) → table or index schema

describe_table results are held for a long TTL (metadata rarely changes).
Concurrent misses for the same table share one in-flight describe_table call.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from cachetools import TTLCache

from .errors import IndexNotFoundError, SchemaError, SchemaFetchError

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_TTL = 24 * 60 * 60


def _parse_key_schema(table: str, entries: Iterable[Dict[str, Any]]) -> Tuple[str, Optional[str]]:
    hash_attr = range_attr = None
    for entry in entries or ():
        if entry.get("KeyType") == "HASH":
            hash_attr = entry["AttributeName"]
        elif entry.get("KeyType") == "RANGE":
            range_attr = entry["AttributeName"]
    if hash_attr is None:
        raise SchemaError(table, "key schema has no HASH attribute")
    return hash_attr, range_attr


@dataclass(frozen=True)
class IndexSchema:
    name: str
    hash_attribute: str
    range_attribute: Optional[str] = None
    is_global: bool = True

    @property
    def key_attributes(self) -> Tuple[str, ...]:
        if self.range_attribute is None:
            return (self.hash_attribute,)
        return (self.hash_attribute, self.range_attribute)

    @property
    def is_composite(self) -> bool:
        return self.range_attribute is not None


@dataclass(frozen=True)
class TableSchema:
    name: str
    hash_attribute: str
    range_attribute: Optional[str] = None
    global_indexes: Tuple[IndexSchema, ...] = ()
    local_indexes: Tuple[IndexSchema, ...] = ()

    @property
    def key_attributes(self) -> Tuple[str, ...]:
        if self.range_attribute is None:
            return (self.hash_attribute,)
        return (self.hash_attribute, self.range_attribute)

    @property
    def is_composite(self) -> bool:
        return self.range_attribute is not None

    @property
    def indexes(self) -> Tuple[IndexSchema, ...]:
        return self.global_indexes + self.local_indexes

    def index(self, name: str) -> Optional[IndexSchema]:
        for idx in self.indexes:
            if idx.name == name:
                return idx
        return None

    @classmethod
    def from_description(cls, table: Dict[str, Any]) -> "TableSchema":
        """Build from the "Table" member of a describe_table response."""
        name = table.get("TableName", "")
        hash_attr, range_attr = _parse_key_schema(name, table.get("KeySchema"))

        def _indexes(entries, is_global):
            out = []
            for entry in entries or ():
                idx_hash, idx_range = _parse_key_schema(name, entry.get("KeySchema"))
                out.append(IndexSchema(entry["IndexName"], idx_hash, idx_range, is_global))
            return tuple(out)

        return cls(
            name=name,
            hash_attribute=hash_attr,
            range_attribute=range_attr,
            global_indexes=_indexes(table.get("GlobalSecondaryIndexes"), True),
            local_indexes=_indexes(table.get("LocalSecondaryIndexes"), False),
        )


KeySchema = Union[TableSchema, IndexSchema]


class SchemaCache:
    """
    Per-table key schema cache with single-flight fetches.

    A failed describe_table is never memoized; the leader and every waiter
    get the same SchemaFetchError.
    """

    def __init__(
        self,
        client: Any,
        ttl: int = DEFAULT_SCHEMA_TTL,
        maxsize: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._pending: Dict[str, Future] = {}
        self._lock = threading.RLock()
        self.fetches = 0

    def schema_of(self, table: str) -> TableSchema:
        with self._lock:
            schema = self._cache.get(table)
            if schema is not None:
                return schema
            future = self._pending.get(table)
            leader = future is None
            if leader:
                future = Future()
                self._pending[table] = future

        if not leader:
            return future.result()

        try:
            schema = self._fetch(table)
        except Exception as exc:
            future.set_exception(exc)
            raise
        else:
            with self._lock:
                self._cache[table] = schema
            future.set_result(schema)
            return schema
        finally:
            with self._lock:
                self._pending.pop(table, None)
            if not future.done():
                future.cancel()

    def index_schema_of(self, table: str, index: str) -> IndexSchema:
        idx = self.schema_of(table).index(index)
        if idx is None:
            raise IndexNotFoundError(table, index)
        return idx

    def key_schema_of(self, table: str, index: Optional[str] = None) -> KeySchema:
        if index is None:
            return self.schema_of(table)
        return self.index_schema_of(table, index)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def expire(self) -> int:
        with self._lock:
            return len(self._cache.expire())

    def __contains__(self, table: str) -> bool:
        with self._lock:
            return table in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def _fetch(self, table: str) -> TableSchema:
        self.fetches += 1
        try:
            response = self._client.describe_table(TableName=table)
        except Exception as exc:
            logger.warning(f"describe_table failed for {table}: {exc}")
            raise SchemaFetchError(table, f"describe_table failed: {exc}") from exc

        schema = TableSchema.from_description(response["Table"])
        logger.debug(
            f"Cached schema for {table} (hash={schema.hash_attribute}, "
            f"range={schema.range_attribute}, indexes={len(schema.indexes)})"
        )
        return schema
