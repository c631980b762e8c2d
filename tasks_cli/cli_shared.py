from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen


class TasksCliError(Exception):
    pass


class UsageError(TasksCliError):
    pass


class OpError(TasksCliError):
    pass


TASKS_API_ENDPOINT = "TASKS_API_ENDPOINT"
TASKS_ID_TOKEN = "TASKS_ID_TOKEN"
EXPECTED_BASE_PATH = "/v1/tasks"


@dataclass(frozen=True)
class GlobalOpts:
    endpoint: str
    id_token: str
    pretty: bool = True
    json_output: bool = False


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def resolve_auth(endpoint: str | None, id_token: str | None) -> tuple[str, str]:
    """Resolve endpoint + ID token from flags or env and preflight their shape."""
    endpoint_value = (endpoint or _env_or_none(TASKS_API_ENDPOINT) or "").strip().rstrip("/")
    if not endpoint_value:
        raise UsageError(f"missing tasks endpoint (--endpoint or env {TASKS_API_ENDPOINT})")
    if EXPECTED_BASE_PATH not in endpoint_value:
        raise UsageError(f"tasks endpoint must include {EXPECTED_BASE_PATH!r}; got {endpoint_value!r}")

    token_value = (id_token or _env_or_none(TASKS_ID_TOKEN) or "").strip()
    if not token_value:
        raise UsageError(f"missing Cognito ID token (--id-token or env {TASKS_ID_TOKEN})")
    parts = token_value.split(".")
    if len(parts) != 3 or any(not p.strip() for p in parts):
        raise UsageError("Cognito ID token is not a JWT (expected 3 dot-separated segments)")
    return endpoint_value, token_value


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            return int(getattr(resp, "status", 200)), resp.read()
    except HTTPError as e:
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def api_request(
    *,
    method: str,
    endpoint: str,
    id_token: str,
    path: str = "",
    query: dict[str, Any] | None = None,
    body_obj: dict[str, Any] | None = None,
) -> dict[str, Any]:
    query_clean = {
        k: str(v)
        for k, v in (query or {}).items()
        if v is not None and str(v).strip() != ""
    }
    url = f"{endpoint.rstrip('/')}{path}"
    if query_clean:
        url += f"?{urlencode(query_clean)}"

    body_bytes = None
    headers = {"authorization": f"Bearer {id_token}"}
    if body_obj is not None:
        body_bytes = json.dumps(body_obj, separators=(",", ":")).encode("utf-8")
        headers["content-type"] = "application/json"

    status, data = _http_request(method=method, url=url, headers=headers, body=body_bytes)
    text = data.decode("utf-8", errors="replace")
    parsed: Any
    try:
        parsed = json.loads(text) if text else {}
    except Exception:
        parsed = {"raw": text}

    if status < 200 or status >= 300:
        if isinstance(parsed, dict):
            msg = str(parsed.get("message") or parsed.get("error") or text).strip()
            code = str(parsed.get("errorCode") or "").strip()
        else:
            msg, code = str(parsed), ""
        suffix = f" code={code}" if code else ""
        raise OpError(f"tasks request failed: status={status} method={method} path={path or '/'}{suffix} message={msg}")

    if isinstance(parsed, dict):
        return parsed
    return {"result": parsed}
