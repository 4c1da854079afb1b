"""
DynamoDB Cache Layer
In-process caching decorator for a boto3 DynamoDB client: item cache with
negative caching, grouped query/scan caches, index-aware invalidation and
pre-mutation prefetch.
"""

from .cache import CacheLayer
from .config import CacheConfig, load_config
from .errors import (
    CacheError,
    ConfigError,
    EncodingError,
    IndexNotFoundError,
    SchemaError,
    SchemaFetchError,
)
from .schema import IndexSchema, SchemaCache, TableSchema
from .stores import ABSENT, GroupKey

__all__ = [
    'CacheLayer', 'CacheConfig', 'load_config',
    'CacheError', 'ConfigError', 'EncodingError', 'IndexNotFoundError',
    'SchemaError', 'SchemaFetchError',
    'IndexSchema', 'SchemaCache', 'TableSchema',
    'ABSENT', 'GroupKey',
]
