from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

STATUS_PENDING = "PENDING"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"
VALID_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_CANCELLED)

PRIORITY_LOW = "LOW"
PRIORITY_MEDIUM = "MEDIUM"
PRIORITY_HIGH = "HIGH"
VALID_PRIORITIES = (PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_HIGH)

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000

# Client-writable fields, in the order mutations are applied.
UPDATABLE_FIELDS = ("title", "description", "status", "priority", "dueDate")


@dataclass(frozen=True)
class Invalid:
    field: str
    reason: str


def is_valid_date(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    s = value.strip()
    if not s:
        return False
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        datetime.fromisoformat(s)
    except ValueError:
        return False
    return True


def is_blank_date(value: Any) -> bool:
    # A null or empty dueDate means "no due date".
    return value is None or (isinstance(value, str) and not value.strip())


def present_fields(payload: dict[str, Any]) -> dict[str, Any]:
    """Pick the updatable fields the client actually sent.

    Presence is key membership: ``{"dueDate": None}`` is present and clears the
    due date, while a missing ``dueDate`` key leaves the stored value alone.
    """
    return {name: payload[name] for name in UPDATABLE_FIELDS if name in payload}


def _check_title(title: Any) -> Invalid | None:
    if not isinstance(title, str) or not title.strip():
        return Invalid("title", "Task title cannot be empty")
    if len(title.strip()) > MAX_TITLE_LENGTH:
        return Invalid("title", f"Task title must be at most {MAX_TITLE_LENGTH} characters")
    return None


def _check_optional_fields(fields: dict[str, Any]) -> Invalid | None:
    if "description" in fields:
        description = fields["description"]
        if description is not None and not isinstance(description, str):
            return Invalid("description", "Task description must be a string")
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            return Invalid(
                "description",
                f"Task description must be at most {MAX_DESCRIPTION_LENGTH} characters",
            )
    if "status" in fields and fields["status"] not in VALID_STATUSES:
        return Invalid("status", f"status must be one of: {', '.join(VALID_STATUSES)}")
    if "priority" in fields and fields["priority"] not in VALID_PRIORITIES:
        return Invalid("priority", f"priority must be one of: {', '.join(VALID_PRIORITIES)}")
    if "dueDate" in fields and not is_blank_date(fields["dueDate"]) and not is_valid_date(fields["dueDate"]):
        return Invalid("dueDate", "dueDate must be a valid date")
    return None


def validate_for_create(payload: Any) -> Invalid | None:
    if not isinstance(payload, dict):
        return Invalid("body", "Request body is required")
    if "title" not in payload or payload["title"] is None:
        return Invalid("title", "Task title is required")
    fields = present_fields(payload)
    # Create defaults absent/None optionals instead of storing nulls for them.
    for name in ("status", "priority"):
        if fields.get(name) is None:
            fields.pop(name, None)
    return _check_title(fields["title"]) or _check_optional_fields(fields)


def validate_for_update(payload: Any) -> Invalid | None:
    if not isinstance(payload, dict):
        return Invalid("body", "No update data provided")
    fields = present_fields(payload)
    if not fields:
        return Invalid("body", "No update data provided")
    if "title" in fields:
        err = _check_title(fields["title"])
        if err:
            return err
    return _check_optional_fields(fields)
