from __future__ import annotations

from dataclasses import dataclass
from typing import Any

ANONYMOUS_SUBJECT = "anonymous"

OP_READ = "read"
OP_WRITE = "write"


@dataclass(frozen=True)
class Subject:
    subject_id: str
    is_admin: bool = False

    @property
    def is_anonymous(self) -> bool:
        return self.subject_id == ANONYMOUS_SUBJECT


@dataclass(frozen=True)
class ListScope:
    # None means every owner's records are visible.
    owner_id: str | None

    @property
    def scoped(self) -> bool:
        return self.owner_id is not None


def subject_from(subject_id: str | None, *, is_admin: bool = False) -> Subject:
    sid = str(subject_id or "").strip()
    return Subject(subject_id=sid or ANONYMOUS_SUBJECT, is_admin=bool(is_admin))


def can_access(subject: Subject, record: dict[str, Any], operation: str = OP_READ) -> bool:
    # Admin rights cover reads and writes alike, so `operation` does not
    # change the decision today.
    del operation
    if subject.is_admin:
        return True
    owner = str(record.get("ownerId") or "").strip()
    if not owner:
        # Legacy records written without an owner stay open to everyone.
        return True
    return owner == subject.subject_id


def can_list(subject: Subject) -> ListScope:
    if subject.is_admin:
        return ListScope(owner_id=None)
    return ListScope(owner_id=subject.subject_id)
