from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from task_access import OP_READ
from task_access import OP_WRITE
from task_access import Subject
from task_access import can_access
from task_access import can_list
from task_expressions import build_update
from task_ids import new_task_id
from task_ids import normalize_task_id
from task_query import InvalidCursor
from task_query import plan_listing
from task_query import run_plan
from task_store import WRITE_MISSING
from task_store import WRITE_STALE
from task_store import TaskStoreError
from task_validation import PRIORITY_MEDIUM
from task_validation import STATUS_PENDING
from task_validation import VALID_STATUSES
from task_validation import present_fields
from task_validation import validate_for_create
from task_validation import validate_for_update

OUTCOME_OK = "ok"
OUTCOME_CREATED = "created"
OUTCOME_DELETED = "deleted"
OUTCOME_VALIDATION_FAILED = "validation_failed"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_CONFLICT = "conflict"
OUTCOME_FORBIDDEN = "forbidden"
OUTCOME_INVALID_CURSOR = "invalid_cursor"
OUTCOME_STORE_FAILURE = "store_failure"


@dataclass(frozen=True)
class TaskOutcome:
    kind: str
    task: dict[str, Any] | None = None
    items: list[dict[str, Any]] = field(default_factory=list)
    next_token: str = ""
    limit: int = 0
    message: str = ""
    error_field: str = ""
    # Attributes written by an update, updatedAt included.
    changed: tuple[str, ...] = ()
    plan_mode: str = ""

    @property
    def ok(self) -> bool:
        return self.kind in {OUTCOME_OK, OUTCOME_CREATED, OUTCOME_DELETED}


def now_iso() -> str:
    # Fixed-format UTC timestamp for lexicographic ordering.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _invalid(message: str, field_name: str = "") -> TaskOutcome:
    return TaskOutcome(kind=OUTCOME_VALIDATION_FAILED, message=message, error_field=field_name)


def _not_found(task_id: str) -> TaskOutcome:
    return TaskOutcome(kind=OUTCOME_NOT_FOUND, message=f"task not found: {task_id}")


def _forbidden(action: str) -> TaskOutcome:
    return TaskOutcome(kind=OUTCOME_FORBIDDEN, message=f"You do not have permission to {action} this task")


def _store_failure(e: TaskStoreError) -> TaskOutcome:
    return TaskOutcome(kind=OUTCOME_STORE_FAILURE, message=str(e) or type(e).__name__)


def _fetch_authorized(
    store: Any,
    subject: Subject,
    task_id: str,
    *,
    operation: str,
    action: str,
) -> tuple[dict[str, Any] | None, TaskOutcome | None]:
    record = store.get_by_key(task_id)
    if record is None:
        return None, _not_found(task_id)
    if not can_access(subject, record, operation):
        return None, _forbidden(action)
    return record, None


def create_task(
    store: Any,
    subject: Subject,
    payload: Any,
    *,
    now: Callable[[], str] = now_iso,
    new_id: Callable[[], str] = new_task_id,
) -> TaskOutcome:
    err = validate_for_create(payload)
    if err:
        return _invalid(err.reason, err.field)

    fields = present_fields(payload)
    ts = now()
    due = fields.get("dueDate")
    record = {
        "id": new_id(),
        "ownerId": subject.subject_id,
        "title": fields["title"].strip(),
        "description": (fields.get("description") or "").strip(),
        "status": fields.get("status") or STATUS_PENDING,
        "priority": fields.get("priority") or PRIORITY_MEDIUM,
        "dueDate": (due.strip() or None) if isinstance(due, str) else None,
        "createdAt": ts,
        "updatedAt": ts,
    }
    try:
        written = store.put_if_absent(record)
    except TaskStoreError as e:
        return _store_failure(e)
    if not written:
        return TaskOutcome(kind=OUTCOME_CONFLICT, message=f"Task with this ID already exists: {record['id']}")
    return TaskOutcome(kind=OUTCOME_CREATED, task=record)


def get_task(store: Any, subject: Subject, task_id: Any) -> TaskOutcome:
    tid = normalize_task_id(task_id)
    if not tid:
        return _invalid("Task ID is required", "id")
    try:
        record, denied = _fetch_authorized(store, subject, tid, operation=OP_READ, action="view")
    except TaskStoreError as e:
        return _store_failure(e)
    if denied:
        return denied
    return TaskOutcome(kind=OUTCOME_OK, task=record)


def update_task(
    store: Any,
    subject: Subject,
    task_id: Any,
    payload: Any,
    *,
    now: Callable[[], str] = now_iso,
) -> TaskOutcome:
    tid = normalize_task_id(task_id)
    if not tid:
        return _invalid("Task ID is required", "id")
    err = validate_for_update(payload)
    if err:
        return _invalid(err.reason, err.field)

    changes = present_fields(payload)
    try:
        _record, denied = _fetch_authorized(store, subject, tid, operation=OP_WRITE, action="update")
        if denied:
            return denied
        # Stamp after the read so a slow authorizing fetch cannot carry an
        # older updatedAt past a newer committed write.
        plan = build_update(changes, now())
        updated, failure = store.update_if_exists(tid, plan)
    except TaskStoreError as e:
        return _store_failure(e)
    if failure == WRITE_MISSING:
        # Deleted between the authorizing read and the write.
        return TaskOutcome(kind=OUTCOME_NOT_FOUND, message=f"Task no longer exists: {tid}")
    if failure == WRITE_STALE:
        return TaskOutcome(kind=OUTCOME_CONFLICT, message=f"Task was changed by a newer update: {tid}")
    return TaskOutcome(kind=OUTCOME_OK, task=updated, changed=tuple(plan.fields()))


def delete_task(store: Any, subject: Subject, task_id: Any) -> TaskOutcome:
    tid = normalize_task_id(task_id)
    if not tid:
        return _invalid("Task ID is required", "id")
    try:
        record, denied = _fetch_authorized(store, subject, tid, operation=OP_WRITE, action="delete")
        if denied:
            return denied
        deleted = store.delete_if_exists(tid)
    except TaskStoreError as e:
        return _store_failure(e)
    if not deleted:
        return TaskOutcome(kind=OUTCOME_NOT_FOUND, message=f"Task no longer exists: {tid}")
    return TaskOutcome(kind=OUTCOME_DELETED, task=record)


def list_tasks(
    store: Any,
    subject: Subject,
    *,
    status: str | None = None,
    limit: Any = None,
    next_token: str | None = None,
    use_owner_index: bool = False,
) -> TaskOutcome:
    status_filter = str(status or "").strip().upper()
    if status_filter and status_filter not in VALID_STATUSES:
        return _invalid(f"status must be one of: {', '.join(VALID_STATUSES)}", "status")

    try:
        plan = plan_listing(
            can_list(subject),
            status=status_filter,
            limit=limit,
            next_token=next_token,
            use_owner_index=use_owner_index,
        )
    except InvalidCursor as e:
        return TaskOutcome(kind=OUTCOME_INVALID_CURSOR, message=str(e), error_field="nextToken")

    try:
        items, token = run_plan(store, plan)
    except TaskStoreError as e:
        return _store_failure(e)
    return TaskOutcome(kind=OUTCOME_OK, items=items, next_token=token, limit=plan.limit, plan_mode=plan.mode)
