from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from task_validation import UPDATABLE_FIELDS


@dataclass(frozen=True)
class UpdatePlan:
    """Ordered field mutations for one partial update.

    ``mutations`` always ends with ``("updatedAt", now)``.
    """

    mutations: tuple[tuple[str, Any], ...]

    def fields(self) -> list[str]:
        return [name for name, _ in self.mutations]

    def as_dict(self) -> dict[str, Any]:
        return dict(self.mutations)

    def to_update_kwargs(self) -> dict[str, Any]:
        # Every attribute goes through a #name alias; "status" is a DynamoDB
        # reserved word and the others may become one.
        assignments: list[str] = []
        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        for name, value in self.mutations:
            assignments.append(f"#{name} = :{name}")
            names[f"#{name}"] = name
            values[f":{name}"] = value
        return {
            "UpdateExpression": "SET " + ", ".join(assignments),
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }


def _normalized(name: str, value: Any) -> Any:
    if name == "title":
        return value.strip()
    if name == "description":
        return value.strip() if value else ""
    if name == "dueDate":
        return (value.strip() or None) if isinstance(value, str) else None
    return value


def build_update(changes: dict[str, Any], now: str) -> UpdatePlan:
    mutations: list[tuple[str, Any]] = []
    for name in UPDATABLE_FIELDS:
        if name in changes:
            mutations.append((name, _normalized(name, changes[name])))
    mutations.append(("updatedAt", now))
    return UpdatePlan(mutations=tuple(mutations))
