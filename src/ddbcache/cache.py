#!/usr/bin/env python3
"""
DynamoDB Cache Layer
In-process read-through cache in front of a boto3 DynamoDB client

Implements:
- get_item / batch_get_item → item cache with negative caching
- query / scan → grouped result caches
- put_item / delete_item / update_item / batch_write_item / transact_write_items
  → write-through item cache + group invalidation (with prefetch where needed)
- allow(table), purge_all(), hit_ratio(), get_stats(), clear_expired()

Every other client method is forwarded untouched, so a CacheLayer can stand
in wherever the raw client is used.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set

import boto3

from .config import CacheConfig
from .invalidation import Invalidator
from .key_generator import (
    item_key,
    key_of,
    mentions_attribute,
    query_group,
    query_key,
    scan_group,
    scan_key,
)
from .prefetch import Prefetcher
from .schema import SchemaCache, TableSchema
from .stores import ABSENT, GroupedStore, ItemStore
from .values import key_eq, key_eq_loose

logger = logging.getLogger(__name__)

PROJECTION_FIELDS = ("ProjectionExpression", "AttributesToGet")


class CacheLayer:
    """
    Caching decorator for a DynamoDB low-level client.

    Design principles:
    - Remote errors propagate untouched; caches only change after a success
    - Invalidation over-approximates: stale query/scan results never survive a write
    - Missing items are cached too (ABSENT), so repeat misses stay local
    - Thread-safe: one instance serves every caller in the process
    """

    def __init__(
        self,
        client: Any,
        config: Optional[CacheConfig] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        config = config or CacheConfig()
        self.client = client
        self.config = config
        self.debug = config.debug

        self.items = ItemStore(ttl=config.item_ttl_sec, maxsize=config.max_items, timer=timer)
        self.queries = GroupedStore(
            ttl=config.query_ttl_sec,
            max_groups=config.max_groups,
            max_entries=config.max_group_entries,
            timer=timer,
        )
        self.scans = GroupedStore(
            ttl=config.scan_ttl_sec,
            max_groups=config.max_groups,
            max_entries=config.max_group_entries,
            timer=timer,
        )
        self.schemas = SchemaCache(client, ttl=config.schema_ttl_sec, timer=timer)
        self.invalidator = Invalidator(self.schemas, self.queries, self.scans, on_purge=self._log)

        self._allowed: Set[str] = set(config.allowed_tables)
        self._lock = threading.Lock()
        self.stats = {
            "hits": 0,
            "misses": 0,
            "writes": 0,
            "start_time": time.time(),
        }

        logger.info(
            f"CacheLayer initialized (item_ttl={config.item_ttl_sec}s, "
            f"query_ttl={config.query_ttl_sec}s, scan_ttl={config.scan_ttl_sec}s, "
            f"allowed={sorted(self._allowed) or 'all'})"
        )

    @classmethod
    def from_session(
        cls,
        session: Optional[boto3.session.Session] = None,
        config: Optional[CacheConfig] = None,
        **client_kwargs,
    ) -> "CacheLayer":
        """Build the DynamoDB client from a boto3 session and wrap it."""
        session = session or boto3.session.Session()
        return cls(session.client("dynamodb", **client_kwargs), config)

    def __getattr__(self, name: str) -> Any:
        # only reached for names CacheLayer does not define itself
        client = self.__dict__.get("client")
        if client is None:
            raise AttributeError(name)
        return getattr(client, name)

    # ── Administration ──────────────────────────────────────────

    def allow(self, table: str) -> None:
        """Cache only allowed tables once any table is allowed."""
        with self._lock:
            self._allowed.add(table)

    def is_allowed(self, table: str) -> bool:
        with self._lock:
            return not self._allowed or table in self._allowed

    def purge_all(self) -> None:
        self.items.clear()
        self.schemas.clear()
        self.queries.clear()
        self.scans.clear()
        logger.info("CacheLayer purged")

    def clear_expired(self) -> int:
        """Remove expired entries from every store. Returns how many went."""
        cleared = (
            self.items.expire()
            + self.queries.expire()
            + self.scans.expire()
            + self.schemas.expire()
        )
        if cleared > 0:
            logger.info(f"Cleared {cleared} expired cache entries")
        return cleared

    def hit_ratio(self) -> float:
        with self._lock:
            total = self.stats["hits"] + self.stats["misses"]
            return self.stats["hits"] / total if total else 0.0

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            hits = self.stats["hits"]
            misses = self.stats["misses"]
            writes = self.stats["writes"]
            start = self.stats["start_time"]
        total = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "hit_rate_percent": round(hits / total * 100, 1) if total else 0.0,
            "total_requests": total,
            "writes": writes,
            "invalidations": self.invalidator.count,
            "item_entries": len(self.items),
            "query_entries": len(self.queries),
            "scan_entries": len(self.scans),
            "schema_entries": len(self.schemas),
            "uptime_seconds": int(time.time() - start),
        }

    # ── Point operations ────────────────────────────────────────

    def get_item(self, **kwargs) -> Dict[str, Any]:
        table = kwargs["TableName"]
        if not self.is_allowed(table) or any(kwargs.get(f) for f in PROJECTION_FIELDS):
            return self.client.get_item(**kwargs)

        schema = self.schemas.schema_of(table)
        key = item_key(table, kwargs["Key"], schema)

        if not kwargs.get("ConsistentRead"):
            item, found = self.items.get(key)
            if found:
                self._count("hits", "hit get", key)
                if item is ABSENT:
                    return {}
                return {"Item": item}
            self._count("misses", "miss get", key)

        out = self.client.get_item(**kwargs)
        self._set_item(key, out.get("Item", ABSENT), "get")
        return out

    def put_item(self, **kwargs) -> Dict[str, Any]:
        table = kwargs["TableName"]
        if not self.is_allowed(table):
            return self.client.put_item(**kwargs)

        schema = self.schemas.schema_of(table)
        key = item_key(table, kwargs["Item"], schema)
        request, strip = self._request_images(kwargs, "ALL_OLD")

        # a replaced item may have sat in other global index groups
        prefetch = None
        if request.get("ReturnValues", "NONE") != "ALL_OLD" and schema.global_indexes:
            prefetch = self._prefetcher()
            prefetch.add(table, key_of(table, kwargs["Item"], schema))
            prefetch.fetch()

        out = self.client.put_item(**request)

        self._set_item(key, kwargs["Item"], "put")
        self.invalidator.invalidate(table, kwargs["Item"])
        if prefetch is not None:
            prefetch.invalidate()
        else:
            self.invalidator.invalidate(table, out.get("Attributes"))
        return self._strip(out, strip)

    def delete_item(self, **kwargs) -> Dict[str, Any]:
        table = kwargs["TableName"]
        if not self.is_allowed(table):
            return self.client.delete_item(**kwargs)

        schema = self.schemas.schema_of(table)
        key = item_key(table, kwargs["Key"], schema)
        request, strip = self._request_images(kwargs, "ALL_OLD")

        prefetch = None
        if request.get("ReturnValues", "NONE") != "ALL_OLD":
            prefetch = self._prefetcher()
            prefetch.add(table, kwargs["Key"])
            prefetch.fetch()

        out = self.client.delete_item(**request)

        self._set_item(key, ABSENT, "delete")
        if prefetch is not None:
            found = prefetch.invalidate() > 0
        else:
            found = self.invalidator.invalidate(table, out.get("Attributes")) is not None
        if not found:
            self.invalidator.invalidate(table, kwargs["Key"], partial=True)
        return self._strip(out, strip)

    def update_item(self, **kwargs) -> Dict[str, Any]:
        table = kwargs["TableName"]
        if not self.is_allowed(table):
            return self.client.update_item(**kwargs)

        schema = self.schemas.schema_of(table)
        key = item_key(table, kwargs["Key"], schema)
        request, strip = self._request_images(kwargs, "ALL_NEW")
        returns_new = request.get("ReturnValues") == "ALL_NEW"

        prefetch = None
        if not returns_new or self._moves_index(schema, request):
            prefetch = self._prefetcher()
            prefetch.add(table, kwargs["Key"])
            prefetch.fetch()

        out = self.client.update_item(**request)

        if prefetch is not None:
            prefetch.invalidate()
        new_image = out.get("Attributes")
        if returns_new and new_image:
            self._set_item(key, new_image, "update")
            self.invalidator.invalidate(table, new_image)
        else:
            self.items.delete(key)
            self._log("evict update", key)
            self.invalidator.invalidate(table, kwargs["Key"], partial=True)
        return self._strip(out, strip)

    # ── Batch operations ────────────────────────────────────────

    def batch_get_item(self, **kwargs) -> Dict[str, Any]:
        request_items = kwargs["RequestItems"]
        cached: Dict[str, List[Dict[str, Any]]] = {}
        forward: Dict[str, Dict[str, Any]] = {}
        schemas: Dict[str, TableSchema] = {}

        for table, spec in request_items.items():
            if not self.is_allowed(table) or any(spec.get(f) for f in PROJECTION_FIELDS):
                forward[table] = spec
                continue
            schema = schemas[table] = self.schemas.schema_of(table)
            if spec.get("ConsistentRead"):
                forward[table] = spec
                continue

            misses = []
            cached[table] = []
            for k in spec["Keys"]:
                key = item_key(table, k, schema)
                item, found = self.items.get(key)
                if found:
                    self._count("hits", "hit batch get", key)
                    if item is not ABSENT:
                        cached[table].append(item)
                else:
                    self._count("misses", "miss batch get", key)
                    misses.append(k)
            if misses:
                forward[table] = dict(spec, Keys=misses)

        if not forward:
            return {"Responses": cached, "UnprocessedKeys": {}}

        out = self.client.batch_get_item(**dict(kwargs, RequestItems=forward))
        responses = out.get("Responses", {})
        unprocessed = out.get("UnprocessedKeys") or {}

        for table, spec in forward.items():
            schema = schemas.get(table)
            if schema is None:
                continue
            returned = responses.get(table, [])
            for item in returned:
                self._set_item(item_key(table, item, schema), item, "batch get")
            pending = (unprocessed.get(table) or {}).get("Keys", [])
            for k in spec["Keys"]:
                if any(key_eq_loose(k, got) for got in returned):
                    continue
                if any(key_eq(k, uk) for uk in pending):
                    continue
                self._set_item(item_key(table, k, schema), ABSENT, "batch get absent")

        if not cached:
            return out
        merged = dict(out)
        merged["Responses"] = {t: list(items) for t, items in responses.items()}
        for table, items in cached.items():
            merged["Responses"].setdefault(table, []).extend(items)
        return merged

    def batch_write_item(self, **kwargs) -> Dict[str, Any]:
        request_items = kwargs["RequestItems"]
        prefetch = self._prefetcher()
        schemas: Dict[str, TableSchema] = {}

        for table, requests in request_items.items():
            if not self.is_allowed(table):
                continue
            schema = schemas[table] = self.schemas.schema_of(table)
            for req in requests:
                if "DeleteRequest" in req:
                    prefetch.add(table, req["DeleteRequest"]["Key"])
                elif "PutRequest" in req and schema.global_indexes:
                    prefetch.add(table, key_of(table, req["PutRequest"]["Item"], schema))
        prefetch.fetch()

        out = self.client.batch_write_item(**kwargs)
        unprocessed = out.get("UnprocessedItems") or {}

        skipped: Dict[str, List[Dict[str, Any]]] = {}
        for table, pending in unprocessed.items():
            schema = schemas.get(table)
            if schema is None:
                continue
            for req in pending:
                if "DeleteRequest" in req:
                    skipped.setdefault(table, []).append(req["DeleteRequest"]["Key"])
                elif "PutRequest" in req:
                    skipped.setdefault(table, []).append(key_of(table, req["PutRequest"]["Item"], schema))
        prefetch.invalidate(exclude=skipped)

        for table, requests in request_items.items():
            schema = schemas.get(table)
            if schema is None:
                continue
            for req in requests:
                if "DeleteRequest" in req:
                    k = req["DeleteRequest"]["Key"]
                    if any(key_eq(k, s) for s in skipped.get(table, ())):
                        self._log("skip unprocessed delete", item_key(table, k, schema))
                        continue
                    self._set_item(item_key(table, k, schema), ABSENT, "batch delete")
                elif "PutRequest" in req:
                    item = req["PutRequest"]["Item"]
                    k = key_of(table, item, schema)
                    if any(key_eq(k, s) for s in skipped.get(table, ())):
                        self._log("skip unprocessed put", item_key(table, k, schema))
                        continue
                    self._set_item(item_key(table, k, schema), item, "batch put")
                    self.invalidator.invalidate(table, item)
        return out

    def transact_write_items(self, **kwargs) -> Dict[str, Any]:
        entries = kwargs["TransactItems"]
        prefetch = self._prefetcher()
        ops = []

        for entry in entries:
            for op in ("Put", "Delete", "Update"):
                body = entry.get(op)
                if body is None or not self.is_allowed(body["TableName"]):
                    continue
                table = body["TableName"]
                schema = self.schemas.schema_of(table)
                if op == "Put":
                    if schema.global_indexes:
                        prefetch.add(table, key_of(table, body["Item"], schema))
                else:
                    prefetch.add(table, body["Key"])
                ops.append((op, table, schema, body))
        prefetch.fetch()

        out = self.client.transact_write_items(**kwargs)

        prefetch.invalidate()
        for op, table, schema, body in ops:
            if op == "Put":
                self._set_item(item_key(table, body["Item"], schema), body["Item"], "transact put")
                self.invalidator.invalidate(table, body["Item"])
            elif op == "Delete":
                self._set_item(item_key(table, body["Key"], schema), ABSENT, "transact delete")
            else:
                key = item_key(table, body["Key"], schema)
                self.items.delete(key)
                self._log("evict transact update", key)
                self.invalidator.invalidate(table, body["Key"], partial=True)
        return out

    # ── Query / Scan ────────────────────────────────────────────

    def query(self, **kwargs) -> Dict[str, Any]:
        table = kwargs["TableName"]
        if not self.is_allowed(table):
            return self.client.query(**kwargs)

        schema = self.schemas.key_schema_of(table, kwargs.get("IndexName"))
        group = query_group(kwargs, schema)
        if group is None:
            self._log("uncacheable query", table)
            return self.client.query(**kwargs)

        key = query_key(kwargs, schema)
        out, found = self.queries.get(group, key)
        if found:
            self._count("hits", "hit query", f"{group} {key}")
            return out
        self._count("misses", "miss query", f"{group} {key}")

        out = self.client.query(**kwargs)
        self.queries.set(group, key, out)
        self._log("set query", f"{group} {key}")
        return out

    def scan(self, **kwargs) -> Dict[str, Any]:
        table = kwargs["TableName"]
        if not self.is_allowed(table):
            return self.client.scan(**kwargs)

        schema = self.schemas.key_schema_of(table, kwargs.get("IndexName"))
        group = scan_group(kwargs)
        key = scan_key(kwargs, schema)
        out, found = self.scans.get(group, key)
        if found:
            self._count("hits", "hit scan", f"{group} {key}")
            return out
        self._count("misses", "miss scan", f"{group} {key}")

        out = self.client.scan(**kwargs)
        self.scans.set(group, key, out)
        self._log("set scan", f"{group} {key}")
        return out

    # ── Internals ───────────────────────────────────────────────

    def _prefetcher(self) -> Prefetcher:
        return Prefetcher(
            self.client,
            self.invalidator,
            max_rounds=self.config.prefetch_max_rounds,
            backoff=self.config.prefetch_backoff_sec,
        )

    def _request_images(self, kwargs: Dict[str, Any], wanted: str):
        """
        Ask the store to return an item image the caller did not ask for.

        Returns (request, strip): strip is True when Attributes must be
        removed again before the caller sees the response.
        """
        if not self.config.force_return_values or kwargs.get("ReturnValues", "NONE") != "NONE":
            return kwargs, False
        return dict(kwargs, ReturnValues=wanted), True

    @staticmethod
    def _strip(out: Dict[str, Any], strip: bool) -> Dict[str, Any]:
        if not strip or "Attributes" not in out:
            return out
        out = dict(out)
        del out["Attributes"]
        return out

    @staticmethod
    def _moves_index(schema: TableSchema, request: Dict[str, Any]) -> bool:
        """Could this update change the hash value of a composite global index?"""
        attrs = [g.hash_attribute for g in schema.global_indexes if g.is_composite]
        if not attrs:
            return False
        updates = request.get("AttributeUpdates") or {}
        if any(a in updates for a in attrs):
            return True
        expression = request.get("UpdateExpression")
        if not expression:
            return False
        names = request.get("ExpressionAttributeNames")
        return any(mentions_attribute(expression, names, a) for a in attrs)

    def _set_item(self, key: str, value: Any, op: str) -> None:
        self.items.set(key, value)
        with self._lock:
            self.stats["writes"] += 1
        self._log(f"set {op}" if value is not ABSENT else f"set {op} (absent)", key)

    def _count(self, stat: str, op: str, key: str) -> None:
        with self._lock:
            self.stats[stat] += 1
        self._log(op, key)

    def _log(self, op: str, key: str) -> None:
        if self.debug:
            logger.info(f"{op}: {key}")
        else:
            logger.debug(f"{op}: {key}")
