from __future__ import annotations

import argparse
import sys
from typing import Any
from urllib.parse import quote

import click
import typer
from dotenv import load_dotenv
from rich.console import Console

from . import __version__
from .cli_shared import GlobalOpts
from .cli_shared import OpError
from .cli_shared import UsageError
from .cli_shared import _print_json
from .cli_shared import api_request
from .cli_shared import resolve_auth

_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"tasks {__version__}")
        raise typer.Exit(code=0)


class _InsertionOrderTyperGroup(typer.core.TyperGroup):
    def list_commands(self, ctx: click.Context) -> list[str]:
        return list(self.commands)


def _bootstrap_env() -> None:
    # Discover and load .env without overriding already-exported values.
    load_dotenv()


app = typer.Typer(
    name="tasks",
    help="Create, inspect and page through task records.",
    cls=_InsertionOrderTyperGroup,
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def app_callback(
    ctx: typer.Context,
    endpoint: str | None = typer.Option(None, "--endpoint", help="Tasks API base URL ending in /v1/tasks (env TASKS_API_ENDPOINT)"),
    id_token: str | None = typer.Option(None, "--id-token", help="Cognito ID token (env TASKS_ID_TOKEN)"),
    json_output: bool = typer.Option(False, "--json", help="Emit raw JSON API responses"),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    _bootstrap_env()
    ctx.obj = {
        "endpoint": endpoint,
        "id_token": id_token,
        "json_output": bool(json_output or plain_json),
        "pretty": not plain_json,
    }


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    obj = ctx.obj if isinstance(ctx.obj, dict) else {}
    endpoint, id_token = resolve_auth(obj.get("endpoint"), obj.get("id_token"))
    return GlobalOpts(
        endpoint=endpoint,
        id_token=id_token,
        pretty=bool(obj.get("pretty", True)),
        json_output=bool(obj.get("json_output", False)),
    )


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    try:
        g = _ctx_global(ctx)
        code = int(func(argparse.Namespace(**kwargs), g))
    except UsageError as e:
        _rich_error(str(e))
        raise typer.Exit(code=2)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)
    if code:
        raise typer.Exit(code=code)


def _cell(value: Any) -> str:
    text = str(value or "").strip()
    return text or "-"


def _task_line(task: dict[str, Any]) -> str:
    return (
        f"- {_cell(task.get('id'))} [{_cell(task.get('status'))}] "
        f"priority={_cell(task.get('priority'))} due={_cell(task.get('dueDate'))} "
        f"title={_cell(task.get('title'))}"
    )


def _task_path(task_id: str) -> str:
    tid = str(task_id or "").strip()
    if not tid:
        raise UsageError("task id is required")
    return f"/{quote(tid, safe='')}"


def _changes(args: argparse.Namespace) -> dict[str, Any]:
    body: dict[str, Any] = {}
    for attr, key in (
        ("title", "title"),
        ("description", "description"),
        ("status", "status"),
        ("priority", "priority"),
        ("due_date", "dueDate"),
    ):
        val = getattr(args, attr, None)
        if val is not None:
            body[key] = val
    if getattr(args, "clear_due_date", False):
        if "dueDate" in body:
            raise UsageError("use either --due-date or --clear-due-date, not both")
        body["dueDate"] = None
    return body


def cmd_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    body = _changes(args)
    if not str(body.get("title") or "").strip():
        raise UsageError("title is required")
    out = api_request(method="POST", endpoint=g.endpoint, id_token=g.id_token, body_obj=body)
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"created task {_cell(task.get('id'))} [{_cell(task.get('status'))}]\n")
    return 0


def cmd_get(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = api_request(method="GET", endpoint=g.endpoint, id_token=g.id_token, path=_task_path(args.task_id))
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(_task_line(task) + "\n")
    description = str(task.get("description") or "").strip()
    if description:
        sys.stdout.write(f"  {description}\n")
    sys.stdout.write(f"  owner={_cell(task.get('ownerId'))} updated={_cell(task.get('updatedAt'))}\n")
    return 0


def cmd_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = api_request(
        method="GET",
        endpoint=g.endpoint,
        id_token=g.id_token,
        query={
            "status": args.status,
            "limit": args.limit,
            "nextToken": args.next_token,
        },
    )
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return 0
    count = 0
    items = out.get("items")
    if isinstance(items, list):
        for item in items:
            if not isinstance(item, dict):
                continue
            count += 1
            sys.stdout.write(_task_line(item) + "\n")
    if count == 0:
        sys.stdout.write("No tasks.\n")
    sys.stdout.write(f"items: {count}\n")
    tok = str(out.get("nextToken") or "").strip()
    if tok:
        sys.stdout.write(f"next-token: {tok}\n")
        sys.stdout.write(f"rerun with: tasks list --next-token '{tok}'\n")
    return 0


def cmd_update(args: argparse.Namespace, g: GlobalOpts) -> int:
    body = _changes(args)
    if not body:
        raise UsageError("nothing to update (pass at least one field option)")
    out = api_request(
        method="PATCH",
        endpoint=g.endpoint,
        id_token=g.id_token,
        path=_task_path(args.task_id),
        body_obj=body,
    )
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"updated task {_cell(task.get('id'))}: {', '.join(sorted(body))}\n")
    return 0


def cmd_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = api_request(method="DELETE", endpoint=g.endpoint, id_token=g.id_token, path=_task_path(args.task_id))
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return 0
    sys.stdout.write(f"deleted task {args.task_id}\n")
    return 0


@app.command("create", help="Create a task.")
def create(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Task title (1-100 characters)"),
    description: str | None = typer.Option(None, "--description", help="Task description"),
    status: str | None = typer.Option(None, "--status", help="PENDING|IN_PROGRESS|COMPLETED|CANCELLED"),
    priority: str | None = typer.Option(None, "--priority", help="LOW|MEDIUM|HIGH"),
    due_date: str | None = typer.Option(None, "--due-date", help="ISO 8601 date or date-time"),
) -> None:
    _invoke(
        ctx,
        cmd_create,
        title=title,
        description=description,
        status=status,
        priority=priority,
        due_date=due_date,
    )


@app.command("get", help="Show one task.")
def get(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    _invoke(ctx, cmd_get, task_id=task_id)


@app.command("list", help="List tasks visible to the caller.")
def list_(
    ctx: typer.Context,
    status: str | None = typer.Option(None, "--status", help="PENDING|IN_PROGRESS|COMPLETED|CANCELLED"),
    limit: str | None = typer.Option(None, "--limit", help="Page size (default 50, max 100)"),
    next_token: str | None = typer.Option(None, "--next-token", help="Pagination token from prior response"),
) -> None:
    _invoke(ctx, cmd_list, status=status, limit=limit, next_token=next_token)


@app.command("update", help="Change only the given fields of a task.")
def update(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    title: str | None = typer.Option(None, "--title", help="New title"),
    description: str | None = typer.Option(None, "--description", help="New description"),
    status: str | None = typer.Option(None, "--status", help="PENDING|IN_PROGRESS|COMPLETED|CANCELLED"),
    priority: str | None = typer.Option(None, "--priority", help="LOW|MEDIUM|HIGH"),
    due_date: str | None = typer.Option(None, "--due-date", help="ISO 8601 date or date-time"),
    clear_due_date: bool = typer.Option(False, "--clear-due-date", help="Remove the due date"),
) -> None:
    _invoke(
        ctx,
        cmd_update,
        task_id=task_id,
        title=title,
        description=description,
        status=status,
        priority=priority,
        due_date=due_date,
        clear_due_date=clear_due_date,
    )


@app.command("delete", help="Delete a task.")
def delete(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    _invoke(ctx, cmd_delete, task_id=task_id)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
