"""Command-line interface: ``gh-pm <command> [task_id] ...``."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import GhPmConfig, load_config
from .constants import (
    DEFAULT_APPROVAL_MESSAGE,
    DEFAULT_COMPLETION_MESSAGE,
    DEFAULT_OVERRIDE_REASON,
    DEFAULT_REVIEW_MESSAGE,
    EXIT_API,
    EXIT_AUTH,
    EXIT_CONFIG,
    EXIT_CONFLICT,
    EXIT_DEPENDENCY,
    EXIT_GENERAL,
    EXIT_INVALID_INPUT,
    EXIT_NOT_FOUND,
    EXIT_OK,
    STATE_DIR_NAME,
)
from .logging_utils import configure_logging, pretty, summarize_result
from .task_engine.dependencies import parse_dependencies
from .task_engine.engine import OperationResult, WorkflowEngine
from .task_engine.errors import ConfigError, WorkflowError
from .task_engine.model import Task, WorkflowStatus
from .task_engine.store import LocalTaskStore, TaskStore
from .utils import validate_task_id

console = Console()

EXIT_CODES: dict[str, int] = {
    "not_found": EXIT_NOT_FOUND,
    "invalid_transition": EXIT_CONFLICT,
    "conflict": EXIT_CONFLICT,
    "unmet_dependency": EXIT_DEPENDENCY,
    "cyclic_dependency": EXIT_DEPENDENCY,
    "malformed_dependency": EXIT_INVALID_INPUT,
    "auth_error": EXIT_AUTH,
    "transient_store_error": EXIT_API,
    "fatal_store_error": EXIT_API,
    "sync_drift": EXIT_API,
    "config_error": EXIT_CONFIG,
}


def exit_code_for(error_kind: Optional[str]) -> int:
    if not error_kind:
        return EXIT_OK
    return EXIT_CODES.get(error_kind, EXIT_GENERAL)


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _load(args: argparse.Namespace) -> GhPmConfig:
    project_dir = _resolve_project_dir(args.project_dir)
    cfg, err = load_config(project_dir)
    if err:
        raise ConfigError(err)
    log_file = args.log_file or cfg.log_file
    log_path = Path(log_file).expanduser() if log_file else None
    if log_path is not None and not log_path.is_absolute():
        log_path = project_dir / log_path
    configure_logging(args.log_level or cfg.log_level, log_file=log_path)
    return cfg


def _build_store(args: argparse.Namespace, cfg: GhPmConfig) -> TaskStore:
    project_dir = _resolve_project_dir(args.project_dir)
    simulate = bool(args.dry_run or cfg.dry_run)
    backend = args.store or cfg.store
    if backend == "github":
        from .github import GitHubTaskStore

        return GitHubTaskStore(cfg.field_map(), simulate=simulate)
    return LocalTaskStore(project_dir / STATE_DIR_NAME, simulate=simulate)


def _engine(args: argparse.Namespace) -> WorkflowEngine:
    cfg = _load(args)
    return WorkflowEngine(_build_store(args, cfg), retry=cfg.retry.policy())


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _fail(args: argparse.Namespace, exc: WorkflowError) -> int:
    if args.json:
        _write_json({"ok": False, **exc.to_dict()})
    else:
        console.print(f"[red]❌ {exc.detail}[/red]")
    return exit_code_for(exc.kind)


def _invalid_input(args: argparse.Namespace, message: str) -> int:
    if args.json:
        _write_json({"ok": False, "error_kind": "invalid_input", "detail": message})
    else:
        console.print(f"[red]❌ {message}[/red]")
    return EXIT_INVALID_INPUT


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _render_result(result: OperationResult) -> None:
    prefix = "[cyan]🔍 DRY-RUN[/cyan] " if result.simulated else ""
    who = f"Task #{result.task_id}" if result.task_id is not None else result.action
    if not result.ok:
        console.print(f"{prefix}[red]❌ {result.detail}[/red]")
        if result.new_status is not None:
            console.print(f"   Confirmed status: {result.new_status.value}")
    elif result.previous_status and result.new_status and result.previous_status != result.new_status:
        console.print(
            f"{prefix}[green]✅ {who}: {result.previous_status.value} → {result.new_status.value}[/green]"
        )
    else:
        console.print(f"{prefix}[green]✅ {who}[/green] {result.detail}".rstrip())
    for task_id in result.unblocked:
        console.print(f"   [blue]🔵 Task #{task_id} unblocked → ready[/blue]")
    if result.blocking_ids and result.ok:
        console.print(f"   Waiting on: {', '.join(f'#{i}' for i in result.blocking_ids)}")
    for drift in result.drift:
        console.print(f"   [yellow]⚠️  {drift.get('detail')}[/yellow]")
    for failure in result.failures:
        console.print(f"   [red]⚠️  {failure.get('detail')}[/red]")
    if result.simulated:
        for write in result.writes:
            console.print(f"   [cyan]would {write}[/cyan]")


def _emit_result(args: argparse.Namespace, result: OperationResult) -> int:
    logger.debug("Result: {}", pretty(summarize_result(result)))
    if args.json:
        _write_json(result.to_dict())
    else:
        _render_result(result)
    return exit_code_for(result.error_kind)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _task_op(args: argparse.Namespace, op: Callable[[WorkflowEngine, int], OperationResult]) -> int:
    try:
        task_id = validate_task_id(args.task_id)
    except ValueError as exc:
        return _invalid_input(args, str(exc))
    try:
        engine = _engine(args)
    except WorkflowError as exc:
        return _fail(args, exc)
    return _emit_result(args, op(engine, task_id))


def _start(args: argparse.Namespace) -> int:
    return _task_op(args, lambda eng, tid: eng.start(tid))


def _review(args: argparse.Namespace) -> int:
    return _task_op(args, lambda eng, tid: eng.submit_for_review(tid, args.message))


def _approve(args: argparse.Namespace) -> int:
    return _task_op(args, lambda eng, tid: eng.approve(tid, args.message))


def _rework(args: argparse.Namespace) -> int:
    if not (args.feedback or "").strip():
        return _invalid_input(args, "Feedback message is required")
    return _task_op(args, lambda eng, tid: eng.request_rework(tid, args.feedback))


def _complete(args: argparse.Namespace) -> int:
    return _task_op(args, lambda eng, tid: eng.complete_direct(tid, args.message))


def _force_ready(args: argparse.Namespace) -> int:
    return _task_op(args, lambda eng, tid: eng.force_ready(tid, args.reason))


def _deps(args: argparse.Namespace) -> int:
    return _task_op(args, lambda eng, tid: eng.set_dependencies(tid, args.declaration))


def _evaluate(args: argparse.Namespace) -> int:
    if args.task_id is not None:
        return _task_op(args, lambda eng, tid: eng.evaluate(tid))
    try:
        engine = _engine(args)
        results = engine.evaluate_all()
    except WorkflowError as exc:
        return _fail(args, exc)
    if args.json:
        _write_json({"results": [r.to_dict() for r in results]})
    else:
        if not results:
            console.print("Nothing to evaluate: no backlog or blocked tasks")
        for result in results:
            _render_result(result)
    failed = [r for r in results if not r.ok]
    return exit_code_for(failed[0].error_kind) if failed else EXIT_OK


def _reconcile(args: argparse.Namespace) -> int:
    try:
        engine = _engine(args)
    except WorkflowError as exc:
        return _fail(args, exc)
    return _emit_result(args, engine.reconcile())


def _status(args: argparse.Namespace) -> int:
    try:
        engine = _engine(args)
        tasks = engine.store.list_tasks()
        summary = engine.summary()
    except WorkflowError as exc:
        return _fail(args, exc)
    if args.json:
        _write_json({"tasks": [t.to_dict() for t in tasks], "summary": summary})
        return EXIT_OK

    table = Table(title="Project Tasks")
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("Workflow")
    table.add_column("Native")
    table.add_column("Dependencies")
    for task in tasks:
        native = task.observed_native.value if task.observed_native else "?"
        if task.observed_native != task.native_status:
            native = f"[yellow]{native} (drift)[/yellow]"
        deps = ", ".join(f"#{d}" for d in sorted(task.dependencies)) or "-"
        table.add_row(f"#{task.id}", task.title, task.status.value, native, deps)
    console.print(table)
    counts = ", ".join(f"{k}: {v}" for k, v in summary["counts"].items() if v)
    console.print(f"[bold]Summary:[/bold] {summary['total']} tasks ({counts or 'empty'})")
    active = summary["active_task_id"]
    console.print(f"[bold]Active:[/bold] {'#' + str(active) if active else 'none'}")
    if summary["ready"]:
        console.print(f"[bold]Ready:[/bold] {', '.join(f'#{i}' for i in summary['ready'])}")
    return EXIT_OK


def _graph(args: argparse.Namespace) -> int:
    try:
        summary = _engine(args).summary()
    except WorkflowError as exc:
        return _fail(args, exc)
    payload = {"execution_order": summary["execution_order"], "cycle": summary["cycle"]}
    if args.json:
        _write_json(payload)
    else:
        for depth, batch in enumerate(payload["execution_order"], start=1):
            console.print(f"[bold]Wave {depth}:[/bold] {', '.join(f'#{i}' for i in batch)}")
        if payload["cycle"]:
            cycle = " -> ".join(f"#{i}" for i in payload["cycle"] + payload["cycle"][:1])
            console.print(f"[red]⚠️  Dependency cycle: {cycle}[/red]")
    return EXIT_DEPENDENCY if payload["cycle"] else EXIT_OK


def _add(args: argparse.Namespace) -> int:
    try:
        task_id = validate_task_id(args.task_id)
    except ValueError as exc:
        return _invalid_input(args, str(exc))
    try:
        cfg = _load(args)
        store = _build_store(args, cfg)
        if not isinstance(store, LocalTaskStore):
            return _invalid_input(args, "Tasks can only be added to the local store; create issues on GitHub")
        task = Task(id=task_id, title=args.title, dependencies=parse_dependencies(args.deps))
        if args.ready:
            task.status = WorkflowStatus.READY
        if store.simulate:
            logger.info("DRY-RUN: would add task #{}", task_id)
        else:
            store.add_task(task)
    except WorkflowError as exc:
        return _fail(args, exc)
    except ValueError as exc:
        return _invalid_input(args, str(exc))
    if args.json:
        _write_json({"ok": True, "task": task.to_dict()})
    else:
        console.print(f"[green]✅ Added task #{task.id}: {task.title} ({task.status.value})[/green]")
    return EXIT_OK


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .server import create_app

    cfg = _load(args)
    app = create_app(_resolve_project_dir(args.project_dir), store=_build_store(args, cfg))
    uvicorn.run(app, host=args.host, port=args.port)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gh-pm",
        description="Workflow state machine and dependency engine for GitHub project boards",
    )
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--store", choices=["local", "github"], default=None, help="Task store (default: from config)")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without writing")
    parser.add_argument("--log-level", default=None, help="Logging level (default: from config, INFO)")
    parser.add_argument("--log-file", default=None, help="Also write DEBUG logs to this file (relative to the project dir)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Move a Ready task to In Progress")
    start.add_argument("task_id")
    start.set_defaults(func=_start)

    review = subparsers.add_parser("review", help="Submit an In Progress task for review")
    review.add_argument("task_id")
    review.add_argument("message", nargs="?", default=DEFAULT_REVIEW_MESSAGE)
    review.set_defaults(func=_review)

    approve = subparsers.add_parser("approve", help="Approve a task in Review")
    approve.add_argument("task_id")
    approve.add_argument("message", nargs="?", default=DEFAULT_APPROVAL_MESSAGE)
    approve.set_defaults(func=_approve)

    rework = subparsers.add_parser("rework", help="Return a task in Review to In Progress with feedback")
    rework.add_argument("task_id")
    rework.add_argument("feedback")
    rework.set_defaults(func=_rework)

    complete = subparsers.add_parser("complete", help="Complete an In Progress task without review")
    complete.add_argument("task_id")
    complete.add_argument("message", nargs="?", default=DEFAULT_COMPLETION_MESSAGE)
    complete.set_defaults(func=_complete)

    force = subparsers.add_parser("force-ready", help="Override: move a Backlog/Blocked task to Ready")
    force.add_argument("task_id")
    force.add_argument("--reason", default=DEFAULT_OVERRIDE_REASON)
    force.set_defaults(func=_force_ready)

    evaluate = subparsers.add_parser("evaluate", help="Triage Backlog tasks and release Blocked tasks")
    evaluate.add_argument("task_id", nargs="?", default=None)
    evaluate.set_defaults(func=_evaluate)

    deps = subparsers.add_parser("deps", help='Set dependencies, e.g. "Blocked by #12, #14"')
    deps.add_argument("task_id")
    deps.add_argument("declaration")
    deps.set_defaults(func=_deps)

    reconcile = subparsers.add_parser("reconcile", help="Repair native status fields that drifted")
    reconcile.set_defaults(func=_reconcile)

    status = subparsers.add_parser("status", help="Show the board")
    status.set_defaults(func=_status)

    graph = subparsers.add_parser("graph", help="Show dependency execution order")
    graph.set_defaults(func=_graph)

    add = subparsers.add_parser("add", help="Add a task to the local store")
    add.add_argument("task_id")
    add.add_argument("title")
    add.add_argument("--deps", default=None, help='Dependency declaration, e.g. "#1, #2"')
    add.add_argument("--ready", action="store_true", help="Create in Ready instead of Backlog")
    add.set_defaults(func=_add)

    serve = subparsers.add_parser("serve", help="Start the HTTP API server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", default=8000, type=int)
    serve.set_defaults(func=_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return EXIT_GENERAL
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
