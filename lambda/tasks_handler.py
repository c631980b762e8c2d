from __future__ import annotations

import base64
import json
import os
import re
import time
from datetime import datetime, timezone
from typing import Any

from task_access import Subject
from task_access import subject_from
from task_ids import new_task_id
from task_operations import OUTCOME_CONFLICT
from task_operations import OUTCOME_CREATED
from task_operations import OUTCOME_DELETED
from task_operations import OUTCOME_FORBIDDEN
from task_operations import OUTCOME_INVALID_CURSOR
from task_operations import OUTCOME_NOT_FOUND
from task_operations import OUTCOME_OK
from task_operations import OUTCOME_STORE_FAILURE
from task_operations import OUTCOME_VALIDATION_FAILED
from task_operations import TaskOutcome
from task_operations import create_task
from task_operations import delete_task
from task_operations import get_task
from task_operations import list_tasks
from task_operations import update_task
from task_store import DEFAULT_MAX_ATTEMPTS
from task_store import DEFAULT_OWNER_INDEX
from task_store import DEFAULT_TIMEOUT_SECONDS
from task_store import DynamoTaskStore
from task_store import dynamodb_table


def _env_flag(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in {"1", "true", "yes"}


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.environ.get(name) or "").strip() or default)
    except ValueError:
        return default


TASKS_TABLE_NAME = os.environ.get("TASKS_TABLE", "")
OWNER_INDEX_NAME = os.environ.get("TASKS_OWNER_INDEX", DEFAULT_OWNER_INDEX)
USE_OWNER_INDEX = _env_flag("USE_OWNER_INDEX")
SCHEMA_VERSION = os.environ.get("TASKS_SCHEMA_VERSION", "2026-10-01")
ADMIN_GROUP = os.environ.get("TASKS_ADMIN_GROUP", "admins")
STORE_MAX_ATTEMPTS = _env_int("TASKS_STORE_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)
STORE_TIMEOUT_SECONDS = _env_int("TASKS_STORE_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)

COLLECTION_METHODS = "GET, POST, OPTIONS"
ITEM_METHODS = "GET, PUT, PATCH, DELETE, OPTIONS"
ALLOWED_HEADERS = "Content-Type,X-Amz-Date,Authorization,X-Api-Key"

_OUTCOME_STATUS = {
    OUTCOME_OK: 200,
    OUTCOME_CREATED: 201,
    OUTCOME_DELETED: 204,
    OUTCOME_VALIDATION_FAILED: 400,
    OUTCOME_INVALID_CURSOR: 400,
    OUTCOME_FORBIDDEN: 403,
    OUTCOME_NOT_FOUND: 404,
    OUTCOME_CONFLICT: 409,
    OUTCOME_STORE_FAILURE: 500,
}
_OUTCOME_ERROR_CODE = {
    OUTCOME_VALIDATION_FAILED: "VALIDATION_FAILED",
    OUTCOME_INVALID_CURSOR: "INVALID_NEXT_TOKEN",
    OUTCOME_FORBIDDEN: "FORBIDDEN",
    OUTCOME_NOT_FOUND: "TASK_NOT_FOUND",
    OUTCOME_CONFLICT: "TASK_CONFLICT",
    OUTCOME_STORE_FAILURE: "STORE_UNAVAILABLE",
}

_task_store: DynamoTaskStore | None = None


def _store() -> Any:
    global _task_store
    if _task_store is None:
        _task_store = DynamoTaskStore(
            dynamodb_table(TASKS_TABLE_NAME, timeout_seconds=STORE_TIMEOUT_SECONDS),
            owner_index=OWNER_INDEX_NAME,
            max_attempts=STORE_MAX_ATTEMPTS,
        )
    return _task_store


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _response(
    status_code: int,
    body: dict[str, Any] | None,
    request_id: str,
    *,
    methods: str,
    cacheable: bool = False,
) -> dict[str, Any]:
    headers = {
        "content-type": "application/json",
        "cache-control": "max-age=60" if cacheable else "no-store",
        "access-control-allow-origin": "*",
        "access-control-allow-methods": methods,
        "access-control-allow-headers": ALLOWED_HEADERS,
    }
    if body is None:
        return {"statusCode": int(status_code), "headers": headers, "body": ""}
    payload = dict(body)
    payload.setdefault("requestId", request_id)
    payload.setdefault("schemaVersion", SCHEMA_VERSION)
    return {
        "statusCode": int(status_code),
        "headers": headers,
        "body": json.dumps(payload),
    }


def _error(status_code: int, code: str, message: str, request_id: str, *, methods: str) -> dict[str, Any]:
    return _response(
        status_code,
        {"errorCode": code, "message": message},
        request_id,
        methods=methods,
    )


def _request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if isinstance(rc, dict):
        rid = str(rc.get("requestId") or "").strip()
        if rid:
            return rid
    return new_task_id()


def _parse_body(event: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    raw = event.get("body")
    if raw is None:
        return {}, None
    if not isinstance(raw, str):
        return None, "request body must be a JSON object"
    if bool(event.get("isBase64Encoded")):
        try:
            raw = base64.b64decode(raw.encode("utf-8")).decode("utf-8")
        except Exception:
            return None, "request body base64 decode failed"
    if not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except Exception:
        return None, "request body must be valid JSON"
    if not isinstance(parsed, dict):
        return None, "request body must be a JSON object"
    return parsed, None


def _path_segments(event: dict[str, Any]) -> list[str]:
    p = str(event.get("path") or "").strip()
    # Best effort for custom-domain stage prefixes.
    idx = p.find("/v1/tasks")
    if idx >= 0:
        p = p[idx + len("/v1") :]
    return [s for s in p.split("/") if s]


def _query_param(event: dict[str, Any], key: str) -> str:
    qs = event.get("queryStringParameters") or {}
    if not isinstance(qs, dict):
        return ""
    val = qs.get(key)
    return str(val).strip() if val is not None else ""


def _claims(event: dict[str, Any]) -> dict[str, Any]:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return {}
    auth = rc.get("authorizer") or {}
    if not isinstance(auth, dict):
        return {}
    claims = auth.get("claims")
    if isinstance(claims, dict):
        return claims
    jwt_claims = (auth.get("jwt") or {}).get("claims")
    if isinstance(jwt_claims, dict):
        return jwt_claims
    return {}


def _claim_groups(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(g).strip() for g in raw if str(g).strip()]
    # REST authorizers flatten lists to "[a, b]" or "a,b".
    text = str(raw or "").strip().strip("[]")
    return [g for g in re.split(r"[,\s]+", text) if g]


def _is_admin(claims: dict[str, Any]) -> bool:
    flag = claims.get("isAdmin")
    if isinstance(flag, bool) and flag:
        return True
    if str(flag or "").strip().lower() in {"true", "1", "yes"}:
        return True
    return bool(ADMIN_GROUP) and ADMIN_GROUP in _claim_groups(claims.get("cognito:groups"))


def _subject(event: dict[str, Any]) -> Subject:
    claims = _claims(event)
    return subject_from(claims.get("sub"), is_admin=_is_admin(claims))


def _task_to_json(item: dict[str, Any]) -> dict[str, Any]:
    due = item.get("dueDate")
    return {
        "id": str(item.get("id") or ""),
        "ownerId": str(item.get("ownerId") or ""),
        "title": str(item.get("title") or ""),
        "description": str(item.get("description") or ""),
        "status": str(item.get("status") or ""),
        "priority": str(item.get("priority") or ""),
        "dueDate": str(due) if due else None,
        "createdAt": str(item.get("createdAt") or ""),
        "updatedAt": str(item.get("updatedAt") or ""),
    }


def _outcome_response(
    outcome: TaskOutcome,
    request_id: str,
    *,
    verb: str,
    methods: str,
) -> dict[str, Any]:
    status_code = _OUTCOME_STATUS.get(outcome.kind, 500)
    if outcome.kind == OUTCOME_DELETED:
        return _response(204, None, request_id, methods=methods)
    if outcome.ok:
        if outcome.task is not None:
            body: dict[str, Any] = {"task": _task_to_json(outcome.task)}
        else:
            body = {
                "items": [_task_to_json(i) for i in outcome.items],
                "count": len(outcome.items),
                "limit": outcome.limit,
                "nextToken": outcome.next_token,
            }
        return _response(
            status_code,
            body,
            request_id,
            methods=methods,
            cacheable=outcome.kind == OUTCOME_OK and verb in {"fetch", "list"},
        )
    if outcome.kind == OUTCOME_STORE_FAILURE:
        # Store detail goes to the log, not the client.
        return _error(500, "STORE_UNAVAILABLE", f"Failed to {verb} task", request_id, methods=methods)
    body = {
        "errorCode": _OUTCOME_ERROR_CODE.get(outcome.kind, "INTERNAL_ERROR"),
        "message": outcome.message,
    }
    if outcome.error_field:
        body["field"] = outcome.error_field
    return _response(status_code, body, request_id, methods=methods)


def _dispatch(
    event: dict[str, Any],
    request_id: str,
    method: str,
    segments: list[str],
    wide_event: dict[str, Any],
) -> dict[str, Any]:
    if not segments or segments[0] != "tasks" or len(segments) > 2:
        wide_event["route"] = "unknown"
        return _error(404, "NOT_FOUND", f"route not found: {method} /{'/'.join(segments)}", request_id, methods=ITEM_METHODS)

    is_item = len(segments) == 2 or bool((event.get("pathParameters") or {}).get("id"))
    methods = ITEM_METHODS if is_item else COLLECTION_METHODS
    wide_event["route"] = "/tasks/{id}" if is_item else "/tasks"

    if method == "OPTIONS":
        wide_event["outcome"] = "preflight"
        return _response(200, None, request_id, methods=methods)

    subject = _subject(event)
    wide_event["principal"] = {
        "sub": subject.subject_id,
        "admin": subject.is_admin,
        "anonymous": subject.is_anonymous,
    }

    if not is_item:
        if method == "GET":
            outcome = list_tasks(
                _store(),
                subject,
                status=_query_param(event, "status"),
                limit=_query_param(event, "limit"),
                next_token=_query_param(event, "nextToken"),
                use_owner_index=USE_OWNER_INDEX,
            )
            wide_event["count"] = len(outcome.items)
            if outcome.plan_mode:
                wide_event["plan"] = outcome.plan_mode
            return _finish(outcome, request_id, "list", methods, wide_event)
        if method == "POST":
            body, err = _parse_body(event)
            if err:
                wide_event["outcome"] = "bad_request"
                return _error(400, "INVALID_BODY", err, request_id, methods=methods)
            outcome = create_task(_store(), subject, body)
            if outcome.task:
                wide_event["task_id"] = str(outcome.task.get("id") or "")
            return _finish(outcome, request_id, "create", methods, wide_event)
        wide_event["outcome"] = "route_not_found"
        return _error(404, "NOT_FOUND", f"route not found: {method} /tasks", request_id, methods=methods)

    task_id = str((event.get("pathParameters") or {}).get("id") or (segments[1] if len(segments) == 2 else ""))
    wide_event["task_id"] = task_id
    if method == "GET":
        return _finish(get_task(_store(), subject, task_id), request_id, "fetch", methods, wide_event)
    if method in {"PUT", "PATCH"}:
        body, err = _parse_body(event)
        if err:
            wide_event["outcome"] = "bad_request"
            return _error(400, "INVALID_BODY", err, request_id, methods=methods)
        outcome = update_task(_store(), subject, task_id, body)
        if outcome.changed:
            wide_event["fields"] = list(outcome.changed)
        return _finish(outcome, request_id, "update", methods, wide_event)
    if method == "DELETE":
        return _finish(delete_task(_store(), subject, task_id), request_id, "delete", methods, wide_event)

    wide_event["outcome"] = "route_not_found"
    return _error(404, "NOT_FOUND", f"route not found: {method} /tasks/{{id}}", request_id, methods=methods)


def _finish(
    outcome: TaskOutcome,
    request_id: str,
    verb: str,
    methods: str,
    wide_event: dict[str, Any],
) -> dict[str, Any]:
    if outcome.kind == OUTCOME_STORE_FAILURE:
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": "TaskStoreError", "message": outcome.message}
    else:
        wide_event["outcome"] = outcome.kind
    return _outcome_response(outcome, request_id, verb=verb, methods=methods)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _request_id(event)
    method = str(event.get("httpMethod") or "").upper()
    segments = _path_segments(event)

    wide_event: dict[str, Any] = {
        "event": "tasks_api_request",
        "schema_version": SCHEMA_VERSION,
        "request_id": request_id,
        "ts": _now_iso(),
        "method": method,
    }

    out: dict[str, Any] = {}
    try:
        if not TASKS_TABLE_NAME:
            wide_event["outcome"] = "error"
            wide_event["error"] = {"type": "Misconfigured", "message": "TASKS_TABLE missing"}
            out = _error(500, "MISCONFIGURED", "TASKS_TABLE env var is required", request_id, methods=ITEM_METHODS)
            return out
        out = _dispatch(event, request_id, method, segments, wide_event)
        return out
    except Exception as exc:
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        out = _error(500, "INTERNAL_ERROR", "Failed to process request", request_id, methods=ITEM_METHODS)
        return out
    finally:
        wide_event["status_code"] = int(out.get("statusCode") or 500)
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
