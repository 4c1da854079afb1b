"""
Shared fixtures: an in-memory DynamoDB stand-in wrapped in a MagicMock so
tests can count remote calls.
"""

import copy
import re
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ddbcache.cache import CacheLayer
from ddbcache.config import CacheConfig


TABLES = {
    # hash-only table with a hash-only global index
    "users": {
        "TableName": "users",
        "KeySchema": [{"AttributeName": "id", "KeyType": "HASH"}],
        "GlobalSecondaryIndexes": [
            {"IndexName": "by_email", "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}]},
        ],
    },
    # hash + range table with a composite global index and a local index
    "orders": {
        "TableName": "orders",
        "KeySchema": [
            {"AttributeName": "customer", "KeyType": "HASH"},
            {"AttributeName": "order_id", "KeyType": "RANGE"},
        ],
        "GlobalSecondaryIndexes": [
            {
                "IndexName": "by_status",
                "KeySchema": [
                    {"AttributeName": "status", "KeyType": "HASH"},
                    {"AttributeName": "created", "KeyType": "RANGE"},
                ],
            },
        ],
        "LocalSecondaryIndexes": [
            {
                "IndexName": "by_total",
                "KeySchema": [
                    {"AttributeName": "customer", "KeyType": "HASH"},
                    {"AttributeName": "total", "KeyType": "RANGE"},
                ],
            },
        ],
    },
}

SET_CLAUSE = re.compile(r"(#?\w+)\s*=\s*(:\w+)")


def not_found(operation):
    return ClientError(
        {"Error": {"Code": "ResourceNotFoundException", "Message": "Requested resource not found"}},
        operation,
    )


class FakeDynamoDB:
    """Just enough of the low-level client for the cache layer's calls."""

    def __init__(self):
        self.tables = {name: [] for name in TABLES}

    def _schema(self, table):
        if table not in TABLES:
            raise not_found("DescribeTable")
        return [e["AttributeName"] for e in TABLES[table]["KeySchema"]]

    def _find(self, table, key):
        names = self._schema(table)
        for i, item in enumerate(self.tables[table]):
            if all(item.get(n) == key.get(n) for n in names):
                return i, item
        return None, None

    def _put(self, table, item):
        i, _ = self._find(table, item)
        old = None
        if i is not None:
            old = self.tables[table].pop(i)
        self.tables[table].append(copy.deepcopy(item))
        return old

    def _delete(self, table, key):
        i, _ = self._find(table, key)
        if i is None:
            return None
        return self.tables[table].pop(i)

    def describe_table(self, TableName):
        if TableName not in TABLES:
            raise not_found("DescribeTable")
        return {"Table": copy.deepcopy(TABLES[TableName])}

    def get_item(self, TableName, Key, **kwargs):
        _, item = self._find(TableName, Key)
        if item is None:
            return {}
        return {"Item": copy.deepcopy(item)}

    def put_item(self, TableName, Item, ReturnValues="NONE", **kwargs):
        old = self._put(TableName, Item)
        if ReturnValues == "ALL_OLD" and old:
            return {"Attributes": old}
        return {}

    def delete_item(self, TableName, Key, ReturnValues="NONE", **kwargs):
        old = self._delete(TableName, Key)
        if ReturnValues == "ALL_OLD" and old:
            return {"Attributes": old}
        return {}

    def update_item(self, TableName, Key, UpdateExpression="", ReturnValues="NONE",
                    ExpressionAttributeNames=None, ExpressionAttributeValues=None, **kwargs):
        names = ExpressionAttributeNames or {}
        values = ExpressionAttributeValues or {}
        _, current = self._find(TableName, Key)
        old = copy.deepcopy(current) if current else None
        item = copy.deepcopy(current) if current else copy.deepcopy(Key)
        for name, placeholder in SET_CLAUSE.findall(UpdateExpression):
            item[names.get(name, name)] = values[placeholder]
        self._put(TableName, item)
        if ReturnValues == "ALL_NEW":
            return {"Attributes": copy.deepcopy(item)}
        if ReturnValues == "ALL_OLD" and old:
            return {"Attributes": old}
        return {}

    def batch_get_item(self, RequestItems, **kwargs):
        responses = {}
        for table, spec in RequestItems.items():
            responses[table] = []
            for key in spec["Keys"]:
                _, item = self._find(table, key)
                if item is not None:
                    responses[table].append(copy.deepcopy(item))
        return {"Responses": responses, "UnprocessedKeys": {}}

    def batch_write_item(self, RequestItems, **kwargs):
        for table, requests in RequestItems.items():
            for req in requests:
                if "PutRequest" in req:
                    self._put(table, req["PutRequest"]["Item"])
                else:
                    self._delete(table, req["DeleteRequest"]["Key"])
        return {"UnprocessedItems": {}}

    def transact_write_items(self, TransactItems, **kwargs):
        for entry in TransactItems:
            if "Put" in entry:
                self._put(entry["Put"]["TableName"], entry["Put"]["Item"])
            elif "Delete" in entry:
                self._delete(entry["Delete"]["TableName"], entry["Delete"]["Key"])
            elif "Update" in entry:
                body = entry["Update"]
                self.update_item(**body)
        return {}

    def query(self, TableName, IndexName=None, KeyConditions=None, **kwargs):
        schema = TABLES[TableName]
        key_schema = schema["KeySchema"]
        for idx in schema.get("GlobalSecondaryIndexes", []) + schema.get("LocalSecondaryIndexes", []):
            if idx["IndexName"] == IndexName:
                key_schema = idx["KeySchema"]
        hash_attr = key_schema[0]["AttributeName"]
        wanted = (KeyConditions or {}).get(hash_attr, {}).get("AttributeValueList", [None])[0]
        items = [copy.deepcopy(i) for i in self.tables[TableName] if i.get(hash_attr) == wanted]
        return {"Items": items, "Count": len(items), "ScannedCount": len(items)}

    def scan(self, TableName, **kwargs):
        items = [copy.deepcopy(i) for i in self.tables[TableName]]
        return {"Items": items, "Count": len(items), "ScannedCount": len(items)}


def S(value):
    return {"S": value}


def N(value):
    return {"N": str(value)}


def order(customer, order_id, status="open", created="2024-01-01", total=10):
    return {
        "customer": S(customer),
        "order_id": S(order_id),
        "status": S(status),
        "created": S(created),
        "total": N(total),
    }


def order_query(customer):
    return {
        "TableName": "orders",
        "KeyConditions": {"customer": {"AttributeValueList": [S(customer)], "ComparisonOperator": "EQ"}},
    }


def status_query(status):
    return {
        "TableName": "orders",
        "IndexName": "by_status",
        "KeyConditions": {"status": {"AttributeValueList": [S(status)], "ComparisonOperator": "EQ"}},
    }


@pytest.fixture
def fake():
    return FakeDynamoDB()


@pytest.fixture
def client(fake):
    return MagicMock(wraps=fake)


@pytest.fixture
def clock():
    """Manually advanced monotonic timer."""
    class Clock:
        now = 1000.0

        def __call__(self):
            return self.now

        def advance(self, seconds):
            self.now += seconds

    return Clock()


@pytest.fixture
def cache(client, clock):
    return CacheLayer(client, CacheConfig(), timer=clock)
