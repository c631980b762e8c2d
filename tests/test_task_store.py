import json

import pytest
from boto3.dynamodb.conditions import ConditionExpressionBuilder
from botocore.exceptions import ClientError
from botocore.exceptions import EndpointConnectionError

from task_expressions import build_update
from task_store import MAX_ROUNDS_PER_PAGE
from task_store import WRITE_MISSING
from task_store import WRITE_STALE
from task_store import DynamoTaskStore
from task_store import StoreCapacityExceeded
from task_store import TaskStoreError
from task_store import TransientStoreFault
from task_store import classify_error


def _client_error(code: str, op: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, op)


class FakeTable:
    """Records every call; each operation pops from its queue of scripted results."""

    def __init__(self, **scripts):
        self.calls: list[tuple[str, dict]] = []
        self._scripts = {name: list(results) for name, results in scripts.items()}

    def _next(self, name: str, kwargs: dict):
        self.calls.append((name, kwargs))
        queue = self._scripts.get(name) or [{}]
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        return result

    def get_item(self, **kwargs):
        return self._next("get_item", kwargs)

    def put_item(self, **kwargs):
        return self._next("put_item", kwargs)

    def update_item(self, **kwargs):
        return self._next("update_item", kwargs)

    def delete_item(self, **kwargs):
        return self._next("delete_item", kwargs)

    def query(self, **kwargs):
        return self._next("query", kwargs)

    def scan(self, **kwargs):
        return self._next("scan", kwargs)


def _store(table, **kwargs):
    sleeps: list[float] = []
    store = DynamoTaskStore(table, sleep=sleeps.append, **kwargs)
    return store, sleeps


def test_get_by_key_is_consistent_read():
    table = FakeTable(get_item=[{"Item": {"id": "t1", "title": "x"}}])
    store, _ = _store(table)

    assert store.get_by_key("t1") == {"id": "t1", "title": "x"}
    assert table.calls == [("get_item", {"Key": {"id": "t1"}, "ConsistentRead": True})]


def test_get_by_key_missing_returns_none():
    store, _ = _store(FakeTable(get_item=[{}]))
    assert store.get_by_key("nope") is None


def test_put_if_absent_guards_on_key():
    table = FakeTable(put_item=[{}])
    store, _ = _store(table)

    assert store.put_if_absent({"id": "t1"}) is True
    _, kwargs = table.calls[0]
    assert kwargs["ConditionExpression"] == "attribute_not_exists(#id)"
    assert kwargs["ExpressionAttributeNames"] == {"#id": "id"}


def test_put_if_absent_condition_failure_is_false_not_retried():
    table = FakeTable(put_item=[_client_error("ConditionalCheckFailedException")])
    store, sleeps = _store(table)

    assert store.put_if_absent({"id": "t1"}) is False
    assert len(table.calls) == 1
    assert sleeps == []


def test_update_if_exists_sends_guarded_plan_and_returns_new_image():
    table = FakeTable(update_item=[{"Attributes": {"id": "t1", "status": "COMPLETED"}}])
    store, _ = _store(table)
    plan = build_update({"status": "COMPLETED"}, "2026-10-18T00:00:00.000000Z")

    assert store.update_if_exists("t1", plan) == ({"id": "t1", "status": "COMPLETED"}, "")
    _, kwargs = table.calls[0]
    assert kwargs["Key"] == {"id": "t1"}
    assert kwargs["ConditionExpression"] == (
        "attribute_exists(#id) AND (attribute_not_exists(#updatedAt) OR #updatedAt <= :updatedAt)"
    )
    assert kwargs["ReturnValues"] == "ALL_NEW"
    assert kwargs["ReturnValuesOnConditionCheckFailure"] == "ALL_OLD"
    assert kwargs["UpdateExpression"] == "SET #status = :status, #updatedAt = :updatedAt"
    assert kwargs["ExpressionAttributeNames"] == {"#status": "status", "#updatedAt": "updatedAt", "#id": "id"}
    assert kwargs["ExpressionAttributeValues"][":updatedAt"] == "2026-10-18T00:00:00.000000Z"


def test_update_if_exists_missing_record():
    store, _ = _store(FakeTable(update_item=[_client_error("ConditionalCheckFailedException", "UpdateItem")]))
    plan = build_update({"title": "x"}, "now")
    assert store.update_if_exists("gone", plan) == (None, WRITE_MISSING)


def test_update_if_exists_newer_record_is_stale():
    newer = ClientError(
        {
            "Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"},
            "Item": {"id": {"S": "t1"}, "updatedAt": {"S": "2026-10-18T12:00:02.000000Z"}},
        },
        "UpdateItem",
    )
    table = FakeTable(update_item=[newer])
    store, sleeps = _store(table)
    plan = build_update({"priority": "HIGH"}, "2026-10-18T12:00:01.000000Z")

    assert store.update_if_exists("t1", plan) == (None, WRITE_STALE)
    assert len(table.calls) == 1
    assert sleeps == []


def test_delete_if_exists_reports_absence():
    table = FakeTable(delete_item=[{}, _client_error("ConditionalCheckFailedException", "DeleteItem")])
    store, _ = _store(table)

    assert store.delete_if_exists("t1") is True
    assert store.delete_if_exists("t1") is False


def test_throttling_is_retried_with_backoff(capsys):
    table = FakeTable(
        put_item=[
            _client_error("ThrottlingException"),
            _client_error("ProvisionedThroughputExceededException"),
            {},
        ]
    )
    store, sleeps = _store(table, max_attempts=3)

    assert store.put_if_absent({"id": "t1"}) is True
    assert len(table.calls) == 3
    assert len(sleeps) == 2
    assert all(0 <= s <= 2.0 for s in sleeps)

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    assert [line["event"] for line in lines] == ["tasks_store_retry", "tasks_store_retry"]
    assert lines[0]["operation"] == "put_item"
    assert lines[0]["fault"] == "StoreCapacityExceeded"


def test_retry_budget_is_bounded():
    table = FakeTable(get_item=[_client_error("InternalServerError", "GetItem")])
    store, sleeps = _store(table, max_attempts=3)

    with pytest.raises(TransientStoreFault) as exc:
        store.get_by_key("t1")
    assert exc.value.code == "InternalServerError"
    assert len(table.calls) == 3
    assert len(sleeps) == 2


def test_unclassified_error_is_not_retried():
    table = FakeTable(get_item=[_client_error("ValidationException", "GetItem")])
    store, sleeps = _store(table)

    with pytest.raises(TaskStoreError) as exc:
        store.get_by_key("t1")
    assert not exc.value.retryable
    assert len(table.calls) == 1
    assert sleeps == []


def test_connection_errors_are_transient():
    table = FakeTable(get_item=[EndpointConnectionError(endpoint_url="https://dynamodb.invalid"), {"Item": {"id": "t1"}}])
    store, sleeps = _store(table)

    assert store.get_by_key("t1") == {"id": "t1"}
    assert len(sleeps) == 1


def test_classify_error_buckets():
    assert isinstance(classify_error(_client_error("RequestLimitExceeded")), StoreCapacityExceeded)
    assert isinstance(classify_error(_client_error("ServiceUnavailable")), TransientStoreFault)
    plain = classify_error(_client_error("AccessDeniedException"))
    assert type(plain) is TaskStoreError
    assert plain.code == "AccessDeniedException"


def test_query_by_owner_targets_index_and_filters_status():
    table = FakeTable(query=[{"Items": [{"id": "a", "ownerId": "alice", "status": "COMPLETED"}]}])
    store, _ = _store(table, owner_index="OwnerIdIndex")

    page = store.query_by_owner("alice", filters={"status": "COMPLETED"}, limit=10)

    assert page.items == [{"id": "a", "ownerId": "alice", "status": "COMPLETED"}]
    assert page.last_key is None
    _, kwargs = table.calls[0]
    assert kwargs["IndexName"] == "OwnerIdIndex"
    assert kwargs["Limit"] == 10
    assert "ExclusiveStartKey" not in kwargs

    builder = ConditionExpressionBuilder()
    key_expr = builder.build_expression(kwargs["KeyConditionExpression"], is_key_condition=True)
    assert list(key_expr.attribute_name_placeholders.values()) == ["ownerId"]
    assert list(key_expr.attribute_value_placeholders.values()) == ["alice"]
    filter_expr = builder.build_expression(kwargs["FilterExpression"])
    assert list(filter_expr.attribute_name_placeholders.values()) == ["status"]
    assert list(filter_expr.attribute_value_placeholders.values()) == ["COMPLETED"]


def test_scan_without_filters_sends_no_filter_expression():
    table = FakeTable(scan=[{"Items": []}])
    store, _ = _store(table)

    store.scan_all(filters={}, limit=5, start_key={"id": "k"})

    _, kwargs = table.calls[0]
    assert "FilterExpression" not in kwargs
    assert kwargs["ExclusiveStartKey"] == {"id": "k"}


def test_filtered_scan_keeps_reading_until_page_is_full():
    table = FakeTable(
        scan=[
            {"Items": [{"id": "a"}, {"id": "b"}], "LastEvaluatedKey": {"id": "b"}},
            {"Items": [{"id": "f"}, {"id": "g"}, {"id": "h"}], "LastEvaluatedKey": {"id": "h"}},
        ]
    )
    store, _ = _store(table)

    page = store.scan_all(filters={"status": "PENDING"}, limit=5)

    assert [i["id"] for i in page.items] == ["a", "b", "f", "g", "h"]
    assert page.last_key == {"id": "h"}
    assert [kwargs["Limit"] for _, kwargs in table.calls] == [5, 3]
    assert table.calls[1][1]["ExclusiveStartKey"] == {"id": "b"}


def test_short_read_stops_when_store_is_exhausted():
    table = FakeTable(scan=[{"Items": [{"id": "a"}], "LastEvaluatedKey": {"id": "a"}}, {"Items": [{"id": "c"}]}])
    store, _ = _store(table)

    page = store.scan_all(filters={"status": "PENDING"}, limit=5)

    assert [i["id"] for i in page.items] == ["a", "c"]
    assert page.last_key is None


def test_rounds_per_page_are_capped():
    table = FakeTable(scan=[{"Items": [], "LastEvaluatedKey": {"id": "z"}}])
    store, _ = _store(table)

    page = store.scan_all(filters={"status": "CANCELLED"}, limit=5)

    assert page.items == []
    assert page.last_key == {"id": "z"}
    assert len(table.calls) == MAX_ROUNDS_PER_PAGE
