import sys
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
for p in (ROOT, ROOT / "lambda"):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from task_store import WRITE_MISSING  # noqa: E402
from task_store import WRITE_STALE  # noqa: E402
from task_store import Page  # noqa: E402


class InMemoryTaskStore:
    """Dict-backed stand-in for DynamoTaskStore with the same conditional semantics.

    Records are returned in id order; position tokens mirror DynamoDB's
    LastEvaluatedKey shape for the table and the owner index.
    """

    def __init__(self, records: list[dict[str, Any]] | None = None) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        for record in records or []:
            self.records[record["id"]] = dict(record)

    def get_by_key(self, task_id: str) -> dict[str, Any] | None:
        self.calls.append(("get_by_key", task_id))
        rec = self.records.get(task_id)
        return dict(rec) if rec is not None else None

    def put_if_absent(self, record: dict[str, Any]) -> bool:
        self.calls.append(("put_if_absent", record["id"]))
        if record["id"] in self.records:
            return False
        self.records[record["id"]] = dict(record)
        return True

    def update_if_exists(self, task_id: str, plan: Any) -> tuple[dict[str, Any] | None, str]:
        self.calls.append(("update_if_exists", task_id))
        rec = self.records.get(task_id)
        if rec is None:
            return None, WRITE_MISSING
        changes = plan.as_dict()
        if rec.get("updatedAt") and rec["updatedAt"] > changes["updatedAt"]:
            return None, WRITE_STALE
        rec.update(changes)
        return dict(rec), ""

    def delete_if_exists(self, task_id: str) -> bool:
        self.calls.append(("delete_if_exists", task_id))
        return self.records.pop(task_id, None) is not None

    def query_by_owner(self, owner_id, *, filters, limit, start_key=None) -> Page:
        self.calls.append(("query_by_owner", owner_id))
        candidates = [r for r in self._ordered() if r.get("ownerId") == owner_id]
        return self._page(candidates, filters, limit, start_key, ("id", "ownerId"))

    def scan_all(self, *, filters, limit, start_key=None) -> Page:
        self.calls.append(("scan_all", dict(filters)))
        return self._page(self._ordered(), filters, limit, start_key, ("id",))

    def _ordered(self) -> list[dict[str, Any]]:
        return [dict(self.records[k]) for k in sorted(self.records)]

    def _page(self, candidates, filters, limit, start_key, key_fields) -> Page:
        if start_key:
            candidates = [r for r in candidates if r["id"] > start_key["id"]]
        matches = [r for r in candidates if all(r.get(k) == v for k, v in filters.items())]
        items = matches[:limit]
        last_key = None
        if len(matches) > limit:
            last_key = {k: items[-1][k] for k in key_fields}
        return Page(items=items, last_key=last_key)


def make_record(task_id: str, owner_id: str = "sub-1", **overrides: Any) -> dict[str, Any]:
    record = {
        "id": task_id,
        "ownerId": owner_id,
        "title": f"task {task_id}",
        "description": "",
        "status": "PENDING",
        "priority": "MEDIUM",
        "dueDate": None,
        "createdAt": "2020-01-01T00:00:00.000000Z",
        "updatedAt": "2020-01-01T00:00:00.000000Z",
    }
    record.update(overrides)
    return record


@pytest.fixture
def memory_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()
