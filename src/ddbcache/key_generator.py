#!/usr/bin/env python3
"""
Cache Key Generation
Item keys, query/scan groups and request shapes

Implements:
- item_key(table, key, schema) → "table$hash:value[/range:value]"
- cursor_key(table, start_key, schema) → item key of a pagination cursor
- resolve_expression(expr, names, values) → expression with placeholders substituted
- query_group(request, schema) / scan_group(request) → GroupKey
- query_key(request, schema) / scan_key(request, schema) → request shape

Same request = identical key (cache hit). Any structural difference
(direction, index, conditions, cursor, filter, projection, limit) = a
different key. Free-text segments are JSON-quoted so that an expression can
never run into the next segment.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from .errors import EncodingError
from .schema import KeySchema
from .stores import GroupKey
from .values import encode, encode_literal

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"[#:][A-Za-z0-9_]+")
HASH_EQUALITY = re.compile(r"(?<![\w#:.])(#?[A-Za-z0-9_.\-]+)\s*=\s*(:[A-Za-z0-9_]+)")


def item_key(table: str, key: Dict[str, Any], schema: KeySchema) -> str:
    """Key of one item under the table (or index) key schema."""
    parts = [table, "$"]
    for i, name in enumerate(schema.key_attributes):
        if name not in key:
            raise EncodingError(f"{table}: key attribute {name!r} missing from {sorted(key)}")
        if i:
            parts.append("/")
        parts.append(f"{name}:{encode(key[name])}")
    return "".join(parts)


def key_of(table: str, item: Dict[str, Any], schema: KeySchema) -> Dict[str, Any]:
    """The key attributes of an item."""
    try:
        return {name: item[name] for name in schema.key_attributes}
    except KeyError as exc:
        raise EncodingError(f"{table}: key attribute {exc.args[0]!r} missing from item") from exc


def mentions_attribute(expression: str, names: Optional[Dict[str, str]], attribute: str) -> bool:
    """True if attribute appears as a top-level name in the expression (values ignored)."""
    resolved = PLACEHOLDER.sub(lambda m: (names or {}).get(m.group(0), m.group(0)), expression)
    pattern = r"(?<![\w.#:\-])" + re.escape(attribute) + r"(?![\w\-])"
    return re.search(pattern, resolved) is not None


def cursor_key(table: str, start_key: Dict[str, Any], schema: KeySchema) -> str:
    """
    Encode an ExclusiveStartKey like an item key.

    Schema attributes come first in key order, then any others (an index
    cursor also carries the base table's key) sorted by name.
    """
    ordered = [n for n in schema.key_attributes if n in start_key]
    ordered += sorted(n for n in start_key if n not in schema.key_attributes)
    return table + "$" + "/".join(f"{n}:{encode(start_key[n])}" for n in ordered)


def resolve_expression(
    expression: str,
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Substitute #name and :value placeholders with literals.

    One pass over the expression, so substituted text is never re-scanned and
    ":v1" never clobbers ":v10". Unknown placeholders are left as written.
    Nothing is evaluated.
    """
    names = names or {}
    values = values or {}

    def _sub(match):
        token = match.group(0)
        if token[0] == "#" and token in names:
            return names[token]
        if token[0] == ":" and token in values:
            return encode_literal(values[token])
        return token

    return PLACEHOLDER.sub(_sub, expression)


def hash_condition(request: Dict[str, Any], schema: KeySchema) -> Optional[Any]:
    """The attribute value the query pins the hash key to, or None."""
    hash_attr = schema.hash_attribute

    conditions = request.get("KeyConditions")
    if conditions:
        cond = conditions.get(hash_attr)
        if cond and cond.get("ComparisonOperator") == "EQ" and cond.get("AttributeValueList"):
            return cond["AttributeValueList"][0]
        return None

    expression = request.get("KeyConditionExpression")
    if isinstance(expression, str):
        names = request.get("ExpressionAttributeNames") or {}
        values = request.get("ExpressionAttributeValues") or {}
        for name, placeholder in HASH_EQUALITY.findall(expression):
            if names.get(name, name) == hash_attr and placeholder in values:
                return values[placeholder]
    return None


def query_group(request: Dict[str, Any], schema: KeySchema) -> Optional[GroupKey]:
    """
    Group of a query: table + index + hash value.

    A single-component key schema has no hash narrowing; its group covers the
    whole table (or index). Returns None when a composite schema's hash value
    cannot be read from the request, in which case the query is not cacheable.
    """
    table = request["TableName"]
    index = request.get("IndexName")
    if not schema.is_composite:
        return GroupKey(table, index, None)
    value = hash_condition(request, schema)
    if value is None:
        return None
    return GroupKey(table, index, encode(value))


def scan_group(request: Dict[str, Any]) -> GroupKey:
    return GroupKey(request["TableName"], request.get("IndexName"), None)


def query_key(request: Dict[str, Any], schema: KeySchema) -> str:
    """Request shape of a query under its table or index key schema."""
    key = [request.get("Select") or "*"]
    key.append(".b " if request.get("ScanIndexForward") is False else ".f ")
    if request.get("IndexName"):
        key.append(request["IndexName"] + "#")

    conditions = request.get("KeyConditions")
    if conditions:
        key.append("&".join(_conditions(conditions, schema.key_attributes)))
    if request.get("KeyConditionExpression"):
        key.append("^" + _quoted_expression(request, "KeyConditionExpression"))

    _common_segments(key, request, schema)
    return "".join(key)


def scan_key(request: Dict[str, Any], schema: KeySchema) -> str:
    """Request shape of a scan. schema is the scanned table or index."""
    key = [request.get("Select") or "*"]
    if request.get("IndexName"):
        key.append(request["IndexName"] + "#")
    if "Segment" in request or "TotalSegments" in request:
        key.append(f"%{request.get('Segment')}/{request.get('TotalSegments')}")
    _common_segments(key, request, schema)
    return "".join(key)


def _common_segments(key: List[str], request: Dict[str, Any], schema: KeySchema) -> None:
    start = request.get("ExclusiveStartKey")
    if start:
        key.append("@" + json.dumps(cursor_key(request["TableName"], start, schema)))

    if request.get("FilterExpression"):
        key.append("?" + _quoted_expression(request, "FilterExpression"))
    legacy_filter = request.get("QueryFilter") or request.get("ScanFilter")
    if legacy_filter:
        key.append("?" + "&".join(_conditions(legacy_filter, ())))
        if request.get("ConditionalOperator"):
            key.append(" " + request["ConditionalOperator"])

    if request.get("ProjectionExpression"):
        key.append(":" + _quoted_expression(request, "ProjectionExpression"))
    if request.get("AttributesToGet"):
        key.append(":" + json.dumps(sorted(request["AttributesToGet"])))

    if request.get("ConsistentRead"):
        key.append("!")
    if request.get("Limit") is not None:
        key.append("|" + str(int(request["Limit"])))


def _quoted_expression(request: Dict[str, Any], field: str) -> str:
    resolved = resolve_expression(
        request[field],
        request.get("ExpressionAttributeNames"),
        request.get("ExpressionAttributeValues"),
    )
    return json.dumps(resolved)


def _conditions(conditions: Dict[str, Any], first: Iterable[str]) -> List[str]:
    first = [n for n in first if n in conditions]
    order = first + sorted(n for n in conditions if n not in first)
    out = []
    for name in order:
        cond = conditions[name]
        operands = "~".join(encode_literal(v) for v in cond.get("AttributeValueList", ()))
        out.append(f"{name}`{cond.get('ComparisonOperator', '')} {operands}")
    return out
