from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any

from task_access import ListScope

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100

MODE_QUERY = "query"
MODE_SCAN = "scan"

# Shape of LastEvaluatedKey for each retrieval path.
TABLE_KEY_FIELDS = frozenset({"id"})
OWNER_INDEX_KEY_FIELDS = frozenset({"id", "ownerId"})


class InvalidCursor(ValueError):
    pass


@dataclass(frozen=True)
class ListPlan:
    mode: str
    limit: int
    owner_id: str | None = None
    # Equality predicates, ANDed by the store.
    filters: dict[str, str] = field(default_factory=dict)
    start_key: dict[str, Any] | None = None


def page_limit(raw: Any) -> int:
    if raw is None or raw == "":
        return DEFAULT_PAGE_LIMIT
    try:
        n = int(str(raw).strip())
    except ValueError:
        return DEFAULT_PAGE_LIMIT
    if n < 1:
        return DEFAULT_PAGE_LIMIT
    return min(n, MAX_PAGE_LIMIT)


def encode_next_token(key: dict[str, Any] | None) -> str:
    if not key:
        return ""
    raw = json.dumps(key, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_next_token(next_token: str | None) -> dict[str, Any]:
    s = (next_token or "").strip()
    if not s:
        return {}
    padded = s + ("=" * (-len(s) % 4))
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        parsed = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidCursor("invalid nextToken") from e
    if not isinstance(parsed, dict) or not parsed:
        raise InvalidCursor("nextToken must decode to an object")
    return parsed


def _check_start_key(start_key: dict[str, Any], *, mode: str, owner_id: str | None) -> None:
    expected = OWNER_INDEX_KEY_FIELDS if mode == MODE_QUERY else TABLE_KEY_FIELDS
    if set(start_key) != expected:
        raise InvalidCursor("nextToken does not belong to this listing")
    if any(not isinstance(v, str) or not v for v in start_key.values()):
        raise InvalidCursor("nextToken does not belong to this listing")
    if mode == MODE_QUERY and start_key["ownerId"] != owner_id:
        raise InvalidCursor("nextToken does not belong to this listing")


def plan_listing(
    scope: ListScope,
    *,
    status: str = "",
    limit: Any = None,
    next_token: str | None = None,
    use_owner_index: bool = False,
) -> ListPlan:
    """Choose between the owner-index query and a filtered scan.

    Both paths return the same records for the same scope and status; the
    index only makes the scoped case cheaper.
    """
    start_key = decode_next_token(next_token) or None
    size = page_limit(limit)

    if scope.scoped and use_owner_index:
        filters = {"status": status} if status else {}
        plan = ListPlan(
            mode=MODE_QUERY,
            limit=size,
            owner_id=scope.owner_id,
            filters=filters,
            start_key=start_key,
        )
    else:
        filters = {}
        if scope.scoped:
            filters["ownerId"] = str(scope.owner_id)
        if status:
            filters["status"] = status
        plan = ListPlan(mode=MODE_SCAN, limit=size, filters=filters, start_key=start_key)

    if plan.start_key:
        _check_start_key(plan.start_key, mode=plan.mode, owner_id=plan.owner_id)
    return plan


def run_plan(store: Any, plan: ListPlan) -> tuple[list[dict[str, Any]], str]:
    if plan.mode == MODE_QUERY:
        page = store.query_by_owner(
            str(plan.owner_id),
            filters=dict(plan.filters),
            limit=plan.limit,
            start_key=plan.start_key,
        )
    else:
        page = store.scan_all(
            filters=dict(plan.filters),
            limit=plan.limit,
            start_key=plan.start_key,
        )
    return page.items, encode_next_token(page.last_key)
