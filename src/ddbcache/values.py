"""
Value Encoder
DynamoDB tagged values to cache key tokens

Implements:
- encode(value) → deterministic, human-readable token
- encode_literal(value) → tagged, quoted token for embedding in expressions
- key_eq(a, b) / key_eq_loose(a, b) → key map comparison

Tokens for scalars are their natural string form so that keys stay readable
in debug logs. Collections are tagged. List and map members keep their own
tag and are length-prefixed, so nesting never makes two different values
collide.
"""

import json
from typing import Any, Dict, Iterable, Tuple

from .errors import EncodingError

NULL_TOKEN = "NULL"

TAGS = ("S", "N", "B", "BOOL", "NULL", "SS", "NS", "BS", "L", "M")


def tag_of(value: Any) -> Tuple[str, Any]:
    """Return (tag, payload) for a tagged value, or raise EncodingError."""
    if not isinstance(value, dict) or len(value) != 1:
        raise EncodingError(f"not a tagged attribute value: {value!r}")
    tag, payload = next(iter(value.items()))
    if tag not in TAGS:
        raise EncodingError(f"unsupported attribute value tag {tag!r}")
    return tag, payload


def encode(value: Any) -> str:
    """Encode a tagged attribute value as a cache key token."""
    tag, payload = tag_of(value)

    if tag in ("S", "N"):
        if not isinstance(payload, str):
            raise EncodingError(f"{tag} value must be a string, got {type(payload).__name__}")
        return payload
    if tag == "B":
        return _bytes_token(payload)
    if tag == "BOOL":
        if not isinstance(payload, bool):
            raise EncodingError(f"BOOL value must be a bool, got {type(payload).__name__}")
        return "true" if payload else "false"
    if tag == "NULL":
        return NULL_TOKEN
    if tag in ("SS", "NS"):
        return _join(tag, sorted(_check_strings(tag, payload)))
    if tag == "BS":
        return _join(tag, sorted(_bytes_token(b) for b in _check_list(tag, payload)))
    if tag == "L":
        return _join(tag, [_member(v) for v in _check_list(tag, payload)])

    # M
    if not isinstance(payload, dict):
        raise EncodingError(f"M value must be a mapping, got {type(payload).__name__}")
    return _join(tag, [f"{len(k)}:{k}" + _member(v) for k, v in sorted(payload.items())])


def encode_literal(value: Any) -> str:
    """Tagged, quoted form: S"abc", N"12". Used inside resolved expressions."""
    tag, _ = tag_of(value)
    return tag + json.dumps(encode(value))


def key_eq(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    """True when two key maps name the same attributes with the same values."""
    if len(a) != len(b):
        return False
    return key_eq_loose(a, b)


def key_eq_loose(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    """True when every attribute of a is present in b with the same value.

    b may carry extra attributes, e.g. a full item matched against its key.
    """
    for name, value in a.items():
        other = b.get(name)
        if other is None:
            return False
        if tag_of(value)[0] != tag_of(other)[0] or encode(value) != encode(other):
            return False
    return True


def _bytes_token(raw: Any) -> str:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise EncodingError(f"B value must be bytes, got {type(raw).__name__}")
    # latin-1 maps every byte to one code point; unicode_escape keeps it printable
    return bytes(raw).decode("latin-1").encode("unicode_escape").decode("ascii")


def _member(value: Any) -> str:
    # nested members keep their tag; ":" ends it since no tag contains one
    tag, _ = tag_of(value)
    return f"{tag}:{encode(value)}"


def _join(tag: str, tokens: Iterable[str]) -> str:
    return tag + "[" + ",".join(f"{len(t)}:{t}" for t in tokens) + "]"


def _check_list(tag: str, payload: Any) -> list:
    if not isinstance(payload, (list, tuple, set, frozenset)):
        raise EncodingError(f"{tag} value must be a list, got {type(payload).__name__}")
    return list(payload)


def _check_strings(tag: str, payload: Any) -> list:
    members = _check_list(tag, payload)
    for member in members:
        if not isinstance(member, str):
            raise EncodingError(f"{tag} members must be strings, got {type(member).__name__}")
    return members
