from __future__ import annotations

import json
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import boto3
from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.conditions import Key
from botocore.config import Config
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from botocore.exceptions import ConnectionClosedError
from botocore.exceptions import ConnectTimeoutError
from botocore.exceptions import EndpointConnectionError
from botocore.exceptions import ReadTimeoutError

from task_expressions import UpdatePlan

DEFAULT_OWNER_INDEX = "OwnerIdIndex"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_SECONDS = 5
# Upper bound on store round trips spent filling one page.
MAX_ROUNDS_PER_PAGE = 10

BACKOFF_BASE_SECONDS = 0.05
CAPACITY_BACKOFF_BASE_SECONDS = 0.2
MAX_BACKOFF_SECONDS = 2.0

CONDITION_FAILED_CODE = "ConditionalCheckFailedException"
# updatedAt never moves backwards; the plan always sets #updatedAt/:updatedAt.
UPDATE_CONDITION = "attribute_exists(#id) AND (attribute_not_exists(#updatedAt) OR #updatedAt <= :updatedAt)"

WRITE_MISSING = "missing"
WRITE_STALE = "stale"
CAPACITY_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
}
TRANSIENT_ERROR_CODES = {
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
}
TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


class TaskStoreError(Exception):
    """A store call failed for a reason that is not a business outcome."""

    retryable = False

    def __init__(self, message: str, *, code: str = "") -> None:
        super().__init__(message)
        self.code = code


class TransientStoreFault(TaskStoreError):
    retryable = True


class StoreCapacityExceeded(TaskStoreError):
    retryable = True


class _ConditionNotMet(Exception):
    def __init__(self, item: dict[str, Any] | None = None) -> None:
        super().__init__("condition not met")
        # Current item, when the request asked for it on condition failure.
        self.item = item


@dataclass(frozen=True)
class Page:
    items: list[dict[str, Any]]
    last_key: dict[str, Any] | None


def dynamodb_table(table_name: str, *, timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS) -> Any:
    # SDK-level retries are off; DynamoTaskStore owns the retry budget.
    config = Config(
        connect_timeout=timeout_seconds,
        read_timeout=timeout_seconds,
        retries={"mode": "standard", "total_max_attempts": 1},
    )
    return boto3.resource("dynamodb", config=config).Table(table_name)


def classify_error(exc: Exception) -> TaskStoreError:
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code") or "")
        if code in CAPACITY_ERROR_CODES:
            return StoreCapacityExceeded(str(exc), code=code)
        if code in TRANSIENT_ERROR_CODES:
            return TransientStoreFault(str(exc), code=code)
        return TaskStoreError(str(exc), code=code)
    if isinstance(exc, TRANSIENT_BOTOCORE_ERRORS):
        return TransientStoreFault(str(exc), code=type(exc).__name__)
    return TaskStoreError(str(exc), code=type(exc).__name__)


def _eq_filter(filters: dict[str, str]) -> Any | None:
    condition = None
    for name, value in filters.items():
        clause = Attr(name).eq(value)
        condition = clause if condition is None else condition & clause
    return condition


class DynamoTaskStore:
    """Conditional key-value access to the tasks table.

    Business outcomes come back as values (None / False); faults are raised as
    TaskStoreError after the retry budget for retryable faults is spent.
    """

    def __init__(
        self,
        table: Any,
        *,
        owner_index: str = DEFAULT_OWNER_INDEX,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._table = table
        self._owner_index = owner_index
        self._max_attempts = max(1, int(max_attempts))
        self._sleep = sleep

    def _backoff(self, fault: TaskStoreError, attempt: int) -> float:
        base = CAPACITY_BACKOFF_BASE_SECONDS if isinstance(fault, StoreCapacityExceeded) else BACKOFF_BASE_SECONDS
        return random.uniform(0, min(MAX_BACKOFF_SECONDS, base * (2 ** (attempt - 1))))

    def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return getattr(self._table, operation)(**kwargs)
            except ClientError as e:
                code = str(e.response.get("Error", {}).get("Code") or "")
                if code == CONDITION_FAILED_CODE:
                    raise _ConditionNotMet(e.response.get("Item")) from e
                fault = classify_error(e)
            except BotoCoreError as e:
                fault = classify_error(e)

            if not fault.retryable or attempt >= self._max_attempts:
                raise fault
            delay = self._backoff(fault, attempt)
            print(
                json.dumps(
                    {
                        "event": "tasks_store_retry",
                        "ts": datetime.now(timezone.utc).isoformat(),
                        "operation": operation,
                        "attempt": attempt,
                        "error_code": fault.code,
                        "fault": type(fault).__name__,
                        "delay_ms": int(delay * 1000),
                    },
                    separators=(",", ":"),
                    sort_keys=True,
                )
            )
            self._sleep(delay)

    def get_by_key(self, task_id: str) -> dict[str, Any] | None:
        out = self._call("get_item", Key={"id": task_id}, ConsistentRead=True)
        item = out.get("Item")
        return dict(item) if isinstance(item, dict) and item else None

    def put_if_absent(self, record: dict[str, Any]) -> bool:
        try:
            self._call(
                "put_item",
                Item=record,
                ConditionExpression="attribute_not_exists(#id)",
                ExpressionAttributeNames={"#id": "id"},
            )
        except _ConditionNotMet:
            return False
        return True

    def update_if_exists(self, task_id: str, plan: UpdatePlan) -> tuple[dict[str, Any] | None, str]:
        """Apply ``plan`` when the record exists and is not newer than the plan.

        Returns ``(new_image, "")`` on success, ``(None, WRITE_MISSING)`` when
        the record is gone and ``(None, WRITE_STALE)`` when a later update
        already committed.
        """
        kwargs = plan.to_update_kwargs()
        kwargs["ExpressionAttributeNames"]["#id"] = "id"
        try:
            out = self._call(
                "update_item",
                Key={"id": task_id},
                ConditionExpression=UPDATE_CONDITION,
                ReturnValues="ALL_NEW",
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
                **kwargs,
            )
        except _ConditionNotMet as e:
            return None, WRITE_STALE if e.item else WRITE_MISSING
        return dict(out.get("Attributes") or {}), ""

    def delete_if_exists(self, task_id: str) -> bool:
        try:
            self._call(
                "delete_item",
                Key={"id": task_id},
                ConditionExpression="attribute_exists(#id)",
                ExpressionAttributeNames={"#id": "id"},
            )
        except _ConditionNotMet:
            return False
        return True

    def query_by_owner(
        self,
        owner_id: str,
        *,
        filters: dict[str, str],
        limit: int,
        start_key: dict[str, Any] | None = None,
    ) -> Page:
        base: dict[str, Any] = {
            "IndexName": self._owner_index,
            "KeyConditionExpression": Key("ownerId").eq(owner_id),
        }
        condition = _eq_filter(filters)
        if condition is not None:
            base["FilterExpression"] = condition
        return self._collect("query", base, limit, start_key)

    def scan_all(
        self,
        *,
        filters: dict[str, str],
        limit: int,
        start_key: dict[str, Any] | None = None,
    ) -> Page:
        base: dict[str, Any] = {}
        condition = _eq_filter(filters)
        if condition is not None:
            base["FilterExpression"] = condition
        return self._collect("scan", base, limit, start_key)

    def _collect(
        self,
        operation: str,
        base: dict[str, Any],
        limit: int,
        start_key: dict[str, Any] | None,
    ) -> Page:
        # Limit applies before FilterExpression, so a filtered round can come
        # back short. Keep reading from the store's own position until the
        # page is full; the returned key is always the store's, so pages never
        # overlap.
        out: list[dict[str, Any]] = []
        key = dict(start_key) if start_key else None
        for _ in range(MAX_ROUNDS_PER_PAGE):
            kwargs = dict(base)
            kwargs["Limit"] = limit - len(out)
            if key:
                kwargs["ExclusiveStartKey"] = key
            page = self._call(operation, **kwargs)
            out.extend(item for item in page.get("Items", []) or [] if isinstance(item, dict))
            key = page.get("LastEvaluatedKey") or None
            if not key or len(out) >= limit:
                break
        return Page(items=out, last_key=key)
