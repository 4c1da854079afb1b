"""Configuration loader for the cache layer."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml
from jsonschema import Draft7Validator

from .errors import ConfigError

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "item_ttl_sec": {"type": "integer", "minimum": 1},
        "query_ttl_sec": {"type": "integer", "minimum": 1},
        "scan_ttl_sec": {"type": "integer", "minimum": 1},
        "schema_ttl_sec": {"type": "integer", "minimum": 1},
        "max_items": {"type": "integer", "minimum": 1},
        "max_groups": {"type": "integer", "minimum": 1},
        "max_group_entries": {"type": "integer", "minimum": 1},
        "force_return_values": {"type": "boolean"},
        "prefetch_max_rounds": {"type": "integer", "minimum": 1},
        "prefetch_backoff_sec": {"type": "number", "minimum": 0},
        "debug": {"type": "boolean"},
        "allowed_tables": {"type": "array", "items": {"type": "string", "minLength": 1}},
    },
}

_validator = Draft7Validator(CONFIG_SCHEMA)


def validate_config(data: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ConfigError(f"cache config validation failed: {messages}")


@dataclass(frozen=True)
class CacheConfig:
    item_ttl_sec: int = 15 * 60
    query_ttl_sec: int = 5 * 60
    scan_ttl_sec: int = 5 * 60
    schema_ttl_sec: int = 24 * 60 * 60
    max_items: int = 100_000
    max_groups: int = 10_000
    max_group_entries: int = 1_000
    force_return_values: bool = True
    prefetch_max_rounds: int = 10
    prefetch_backoff_sec: float = 0.05
    debug: bool = False
    allowed_tables: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheConfig":
        validate_config(data)
        defaults = cls()
        return cls(
            item_ttl_sec=int(data.get("item_ttl_sec", defaults.item_ttl_sec)),
            query_ttl_sec=int(data.get("query_ttl_sec", defaults.query_ttl_sec)),
            scan_ttl_sec=int(data.get("scan_ttl_sec", defaults.scan_ttl_sec)),
            schema_ttl_sec=int(data.get("schema_ttl_sec", defaults.schema_ttl_sec)),
            max_items=int(data.get("max_items", defaults.max_items)),
            max_groups=int(data.get("max_groups", defaults.max_groups)),
            max_group_entries=int(data.get("max_group_entries", defaults.max_group_entries)),
            force_return_values=bool(data.get("force_return_values", defaults.force_return_values)),
            prefetch_max_rounds=int(data.get("prefetch_max_rounds", defaults.prefetch_max_rounds)),
            prefetch_backoff_sec=float(data.get("prefetch_backoff_sec", defaults.prefetch_backoff_sec)),
            debug=bool(data.get("debug", defaults.debug)),
            allowed_tables=tuple(data.get("allowed_tables", ())),
        )


ENV_MAP = {
    "item_ttl_sec": "DDBCACHE_ITEM_TTL_SEC",
    "query_ttl_sec": "DDBCACHE_QUERY_TTL_SEC",
    "scan_ttl_sec": "DDBCACHE_SCAN_TTL_SEC",
    "schema_ttl_sec": "DDBCACHE_SCHEMA_TTL_SEC",
    "max_items": "DDBCACHE_MAX_ITEMS",
    "max_groups": "DDBCACHE_MAX_GROUPS",
    "max_group_entries": "DDBCACHE_MAX_GROUP_ENTRIES",
    "force_return_values": "DDBCACHE_FORCE_RETURN_VALUES",
    "prefetch_max_rounds": "DDBCACHE_PREFETCH_MAX_ROUNDS",
    "prefetch_backoff_sec": "DDBCACHE_PREFETCH_BACKOFF_SEC",
    "debug": "DDBCACHE_DEBUG",
    "allowed_tables": "DDBCACHE_ALLOWED_TABLES",
}

BOOL_KEYS = {"force_return_values", "debug"}
FLOAT_KEYS = {"prefetch_backoff_sec"}


def _parse_bool(env_name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"{env_name}: expected a boolean, got {raw!r}")


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        raw = os.environ[env_name]
        if key in BOOL_KEYS:
            merged[key] = _parse_bool(env_name, raw)
        elif key == "allowed_tables":
            merged[key] = [t.strip() for t in raw.split(",") if t.strip()]
        elif key in FLOAT_KEYS:
            try:
                merged[key] = float(raw)
            except ValueError as exc:
                raise ConfigError(f"{env_name}: expected a number, got {raw!r}") from exc
        else:
            try:
                merged[key] = int(raw)
            except ValueError as exc:
                raise ConfigError(f"{env_name}: expected an integer, got {raw!r}") from exc

    return merged


def load_config(config_path: str | Path = "config/ddbcache.defaults.yml") -> CacheConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = load_yaml(path)
    data = merge_env_overrides(data)
    return CacheConfig.from_dict(data)
