from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import boto3

from .errors import ProvisioningConflict


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class StateRecord:
    key: str
    value: dict[str, Any]
    version: int
    updated_at: str


def _conflict(key: str, expected: int, actual: int | None) -> ProvisioningConflict:
    if actual is None:
        found = "no record"
    else:
        found = f"version {actual}"
    if expected == 0:
        return ProvisioningConflict(f"state record {key!r} already exists ({found})", key=key)
    return ProvisioningConflict(
        f"state record {key!r} expected version {expected}, found {found}", key=key
    )


class InMemoryStateStore:
    """Versioned key-value store; writes are compare-and-swap on the version token."""

    def __init__(self) -> None:
        self._records: dict[str, StateRecord] = {}

    def get(self, key: str) -> StateRecord | None:
        rec = self._records.get(key)
        if rec is None:
            return None
        return StateRecord(rec.key, copy.deepcopy(rec.value), rec.version, rec.updated_at)

    def put(self, key: str, value: dict[str, Any], *, expected_version: int) -> StateRecord:
        current = self._records.get(key)
        actual = current.version if current else None
        if expected_version == 0:
            if current is not None:
                raise _conflict(key, expected_version, actual)
        elif actual != expected_version:
            raise _conflict(key, expected_version, actual)
        rec = StateRecord(
            key=key,
            value=copy.deepcopy(value),
            version=(actual or 0) + 1,
            updated_at=_now_iso(),
        )
        self._records[key] = rec
        return self.get(key)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._records if k.startswith(prefix))


class DynamoStateStore:
    """
    DynamoDB-backed store. Table layout:

      stateKey (S, partition key) | version (N) | value (S, JSON) | updatedAt (S)
    """

    def __init__(self, table_name: str, *, client: Any = None, region: str | None = None) -> None:
        if not table_name:
            raise ValueError("table_name is required")
        self.table_name = table_name
        self._client = client
        self._region = region

    def _ddb(self) -> Any:
        if self._client is None:
            self._client = boto3.client("dynamodb", region_name=self._region)
        return self._client

    def get(self, key: str) -> StateRecord | None:
        out = self._ddb().get_item(
            TableName=self.table_name,
            Key={"stateKey": {"S": key}},
            ConsistentRead=True,
        )
        item = out.get("Item")
        if not item:
            return None
        return StateRecord(
            key=key,
            value=json.loads((item.get("value") or {}).get("S") or "{}"),
            version=int((item.get("version") or {}).get("N") or "0"),
            updated_at=str((item.get("updatedAt") or {}).get("S") or ""),
        )

    def put(self, key: str, value: dict[str, Any], *, expected_version: int) -> StateRecord:
        new_version = expected_version + 1
        updated_at = _now_iso()
        kwargs: dict[str, Any] = {
            "TableName": self.table_name,
            "Item": {
                "stateKey": {"S": key},
                "version": {"N": str(new_version)},
                "value": {"S": json.dumps(value, separators=(",", ":"), sort_keys=True)},
                "updatedAt": {"S": updated_at},
            },
        }
        if expected_version == 0:
            kwargs["ConditionExpression"] = "attribute_not_exists(stateKey)"
        else:
            kwargs["ConditionExpression"] = "#v = :expected"
            kwargs["ExpressionAttributeNames"] = {"#v": "version"}
            kwargs["ExpressionAttributeValues"] = {":expected": {"N": str(expected_version)}}
        try:
            self._ddb().put_item(**kwargs)
        except Exception as e:
            if type(e).__name__ == "ConditionalCheckFailedException":
                current = self.get(key)
                raise _conflict(key, expected_version, current.version if current else None) from e
            raise
        return StateRecord(key=key, value=copy.deepcopy(value), version=new_version, updated_at=updated_at)

    def keys(self, prefix: str = "") -> list[str]:
        out: list[str] = []
        paginator = self._ddb().get_paginator("scan")
        for page in paginator.paginate(TableName=self.table_name, ProjectionExpression="stateKey"):
            for item in page.get("Items") or []:
                k = str((item.get("stateKey") or {}).get("S") or "")
                if k.startswith(prefix):
                    out.append(k)
        return sorted(out)
