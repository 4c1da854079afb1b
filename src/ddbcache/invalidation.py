#!/usr/bin/env python3
"""
Invalidation Engine
Which query/scan groups a write can affect

Implements:
- purge_set(schema, item, partial=False) → PurgeSet (pure)
- invalidate(table, item, partial=False) → PurgeSet (applied to the stores)

Rules, for an item (old or new image) of a table:
1. every scan group of the table goes, scans have no predicate to scope by
2. base table queries: whole table if hash-only, else the item's hash group
3. each index: whole index if hash-only, else the item's index-hash group
4. a partial snapshot (only the request key) that lacks an index's hash
   attribute purges every group of that index

This over-approximates: entries the write did not touch may go too, but
nothing the write could have changed survives.
"""

import logging
import threading
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple

from .schema import SchemaCache, TableSchema
from .stores import GroupedStore, GroupKey
from .values import encode

logger = logging.getLogger(__name__)


class PurgeSet(NamedTuple):
    table: str
    groups: Tuple[GroupKey, ...] = ()
    partitions: Tuple[Optional[str], ...] = ()  # index names; None = base table


def purge_set(schema: TableSchema, item: Dict[str, Any], partial: bool = False) -> PurgeSet:
    table = schema.name
    groups = []
    partitions = []

    if not schema.is_composite:
        groups.append(GroupKey(table, None, None))
    elif schema.hash_attribute in item:
        groups.append(GroupKey(table, None, encode(item[schema.hash_attribute])))
    else:
        partitions.append(None)

    for idx in schema.indexes:
        if not idx.is_composite:
            groups.append(GroupKey(table, idx.name, None))
        elif idx.hash_attribute in item:
            groups.append(GroupKey(table, idx.name, encode(item[idx.hash_attribute])))
        elif partial:
            partitions.append(idx.name)
        # a full image without the index hash attribute is not in that (sparse) index

    return PurgeSet(table, tuple(groups), tuple(partitions))


class Invalidator:
    """Applies purge sets to the query and scan stores."""

    def __init__(
        self,
        schemas: SchemaCache,
        queries: GroupedStore,
        scans: GroupedStore,
        on_purge: Optional[Callable[[str, str], None]] = None,
    ):
        self.schemas = schemas
        self.queries = queries
        self.scans = scans
        self._on_purge = on_purge
        self.count = 0
        self._lock = threading.Lock()

    def invalidate(self, table: str, item: Optional[Dict[str, Any]], partial: bool = False) -> Optional[PurgeSet]:
        if not item:
            return None
        schema = self.schemas.schema_of(table)
        purge = purge_set(schema, item, partial)

        for group in self.scans.delete_where(table):
            self._purged("invalidate scan", str(group))
        for group in purge.groups:
            self.queries.delete_group(group)
            self._purged("invalidate", str(group))
        for index in purge.partitions:
            self.queries.delete_where(table, index)
            self._purged("invalidate partition", f"{table}#{index}" if index else table)

        with self._lock:
            self.count += 1
        return purge

    def _purged(self, op: str, key: str) -> None:
        if self._on_purge is not None:
            self._on_purge(op, key)
        else:
            logger.debug(f"{op} {key}")
