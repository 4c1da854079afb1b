"""Error taxonomy for the DynamoDB cache layer.

Remote errors (botocore ClientError and friends) are never wrapped; they
reach the caller exactly as the client raised them.
"""


class CacheError(Exception):
    """Base class for errors raised by the cache layer itself."""


class SchemaError(CacheError):
    """Table metadata could not be used for a request."""

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"{table}: {message}")


class SchemaFetchError(SchemaError):
    """describe_table failed. The remote error is the __cause__."""


class IndexNotFoundError(SchemaError):
    def __init__(self, table: str, index: str):
        self.index = index
        super().__init__(table, f"no index named {index!r}")


class EncodingError(CacheError, ValueError):
    """An attribute value is not a well-formed tagged value, or a key attribute is missing."""


class PrefetchIncompleteError(CacheError):
    """A prefetch round left keys unprocessed. Drives the retry; callers never see it."""

    def __init__(self, unprocessed: dict):
        self.unprocessed = unprocessed
        count = sum(len(req.get("Keys", [])) for req in unprocessed.values())
        super().__init__(f"prefetch left {count} keys unprocessed")


class ConfigError(CacheError, ValueError):
    pass
