from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

import click

from checkflow.backends import CommandBackend, ResilientBackend, RetryPolicy
from checkflow.config import CheckflowConfig, load_config, save_config
from checkflow.engine import (
    ChecklistEngine,
    RemarkNotFoundError,
    TaskNotFoundError,
    default_identity,
)
from checkflow.executor import TodoExecutor, load_context_documents
from checkflow.markdown import MalformedImportError
from checkflow.models import PRIORITIES, format_timestamp
from checkflow.scheduler import Scheduler, StepOutcome
from checkflow.state import ChecklistStore, StoreError
from checkflow.workflow.machine import InvalidTransitionError
from checkflow.workflow.queue import ExecutionQueue

logger = logging.getLogger(__name__)

DOMAIN_ERRORS = (
    StoreError,
    MalformedImportError,
    InvalidTransitionError,
    TaskNotFoundError,
    RemarkNotFoundError,
    ValueError,
)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: CheckflowConfig
    store: ChecklistStore
    engine: ChecklistEngine


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _record_event(store: ChecklistStore, event: dict[str, Any]) -> None:
    try:
        store.record_event(event)
    except StoreError as exc:
        logger.warning("Could not record event %s: %s", event, exc)


def _build_backend(config: CheckflowConfig, repo_root: Path, store: ChecklistStore) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=CommandBackend(config.backend.primary, working_directory=repo_root),
        fallback_name=config.backend.fallback,
        fallback_backend=CommandBackend(config.backend.fallback, working_directory=repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_event(store, event),
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store_root = Path(config.store.root)
    if not store_root.is_absolute():
        store_root = repo_root / store_root
    store = ChecklistStore(store_root)
    ctx = click.get_current_context(silent=True)
    user_id = ctx.obj.get("user") if ctx is not None and ctx.obj else None
    engine = ChecklistEngine(
        store,
        workflow=config.workflow,
        identity=lambda: user_id or config.identity.user_id or default_identity(),
        event_hook=lambda event: _record_event(store, event),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        engine=engine,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _build_scheduler(runtime: Runtime, checklist_id: str) -> Scheduler:
    executor = TodoExecutor(_build_backend(runtime.config, runtime.repo_root, runtime.store))
    return Scheduler(
        runtime.engine,
        checklist_id,
        executor.run,
        context_documents=lambda: load_context_documents(
            runtime.config.context.documents, runtime.repo_root
        ),
    )


def _echo_outcomes(outcomes: list[StepOutcome], queue: ExecutionQueue) -> None:
    if not outcomes:
        click.echo("Nothing to run.")
    for outcome in outcomes:
        entry = outcome.entry
        target = f"{entry.task_id}/{entry.remark_id}" if entry else "-"
        line = f"{outcome.status:<9} {target}"
        if outcome.late:
            line += " (late result)"
        if outcome.error:
            line += f" error: {outcome.error}"
        click.echo(line)
    if queue:
        click.echo(f"{len(queue)} entr{'y' if len(queue) == 1 else 'ies'} still queued.")


def _drain(runtime: Runtime, checklist_id: str, queue: ExecutionQueue) -> None:
    scheduler = _build_scheduler(runtime, checklist_id)
    try:
        remaining, outcomes = asyncio.run(scheduler.drain(queue))
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_outcomes(outcomes, remaining)


config_option = click.option(
    "--config", "config_value", default="checkflow.toml", show_default=True
)


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log progress to stderr.")
@click.option("--user", envvar="CHECKFLOW_USER", default=None, help="Acting user id.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, user: str | None) -> None:
    """Checklists with AI to-dos."""
    ctx.ensure_object(dict)
    ctx.obj["user"] = user
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    runtime = _load_runtime(repo_root, config_path)
    click.echo(f"Initialized checkflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Store: {runtime.store.root}")


@cli.command("new")
@click.argument("name")
@config_option
def new_command(name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        checklist = runtime.engine.create_checklist(name)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(checklist.id)


@cli.command("list")
@config_option
def list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    summaries = runtime.store.list_checklists()
    if not summaries:
        click.echo("No checklists found.")
        return
    for summary in summaries:
        click.echo(f"{summary['id']} {summary['tasks']:>3} task(s)  {summary['name']}")


@cli.group("task")
def task_group() -> None:
    """Manage tasks."""


@task_group.command("add")
@click.argument("checklist_id")
@click.argument("description")
@click.option("--priority", type=click.Choice(list(PRIORITIES)), default="Medium", show_default=True)
@click.option("--due", "due_value", default=None, help="Due date as YYYY-MM-DD.")
@click.option("--assignee", default=None)
@config_option
def task_add_command(
    checklist_id: str,
    description: str,
    priority: str,
    due_value: str | None,
    assignee: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        due_date = date.fromisoformat(due_value) if due_value else None
        task = runtime.engine.add_task(
            checklist_id, description, priority=priority, due_date=due_date, assignee=assignee
        )
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(task.id)


@task_group.command("toggle")
@click.argument("checklist_id")
@click.argument("task_id")
@config_option
def task_toggle_command(checklist_id: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        task = runtime.engine.toggle_task(checklist_id, task_id)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{task.id} {task.status}")


@task_group.command("delete")
@click.argument("checklist_id")
@click.argument("task_id")
@config_option
def task_delete_command(checklist_id: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.engine.delete_task(checklist_id, task_id)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted {task_id}")


@cli.group("remark")
def remark_group() -> None:
    """Manage remarks."""


@remark_group.command("add")
@click.argument("checklist_id")
@click.argument("task_id")
@click.argument("text")
@click.option("--parent", "parent_id", default=None, help="Reply to this remark.")
@click.option("--ai", "ai_todo", is_flag=True, default=False, help="Create a pending AI to-do.")
@config_option
def remark_add_command(
    checklist_id: str,
    task_id: str,
    text: str,
    parent_id: str | None,
    ai_todo: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        remark = runtime.engine.add_remark(
            checklist_id, task_id, text, parent_id=parent_id, ai_todo=ai_todo
        )
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(remark.id)


@remark_group.command("delete")
@click.argument("checklist_id")
@click.argument("task_id")
@click.argument("remark_id")
@config_option
def remark_delete_command(checklist_id: str, task_id: str, remark_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        removed = runtime.engine.delete_remark(checklist_id, task_id, remark_id)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted {removed} remark(s).")


@cli.command("thread")
@click.argument("checklist_id")
@click.argument("task_id")
@config_option
def thread_command(checklist_id: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        items = runtime.engine.thread(checklist_id, task_id)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not items:
        click.echo("No remarks.")
        return
    for item in items:
        remark = item.remark
        indent = "  " * item.depth
        click.echo(
            f"{indent}{remark.id} {remark.wire_text} "
            f"(by {remark.user_id}, {format_timestamp(remark.timestamp)})"
        )


@cli.group("todo")
def todo_group() -> None:
    """Queue and run AI to-dos."""


@todo_group.command("run")
@click.argument("checklist_id")
@click.argument("task_id")
@click.argument("remark_ids", nargs=-1, required=True)
@config_option
def todo_run_command(
    checklist_id: str, task_id: str, remark_ids: tuple[str, ...], config_value: str
) -> None:
    runtime = _runtime(config_value)
    queue = ExecutionQueue()
    try:
        for remark_id in remark_ids:
            queue = runtime.engine.enqueue_todo(queue, checklist_id, task_id, remark_id)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _drain(runtime, checklist_id, queue)


@todo_group.command("refine")
@click.argument("checklist_id")
@click.argument("task_id")
@click.argument("result_remark_id")
@config_option
def todo_refine_command(
    checklist_id: str, task_id: str, result_remark_id: str, config_value: str
) -> None:
    runtime = _runtime(config_value)
    try:
        queue, child = runtime.engine.request_refined_prompt(
            ExecutionQueue(), checklist_id, task_id, result_remark_id
        )
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created {child.id}")
    _drain(runtime, checklist_id, queue)


@cli.command("run")
@click.argument("checklist_id")
@config_option
def run_command(checklist_id: str, config_value: str) -> None:
    """Run to-dos left waiting by an earlier session."""
    runtime = _runtime(config_value)
    try:
        queue = runtime.engine.recover_queue(ExecutionQueue(), checklist_id)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _drain(runtime, checklist_id, queue)


@cli.command("export")
@click.argument("checklist_id")
@click.option("-o", "--output", "output_path", type=click.Path(dir_okay=False), default=None)
@config_option
def export_command(checklist_id: str, output_path: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        content = runtime.engine.export_markdown(checklist_id)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if output_path is None:
        click.echo(content, nl=False)
        return
    Path(output_path).write_text(content, encoding="utf-8")
    click.echo(f"Exported to {output_path}")


@cli.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.option("--into", "into_id", default=None, help="Append tasks to this checklist.")
@click.option("--replace", is_flag=True, default=False, help="Overwrite a same-named checklist.")
@config_option
def import_command(source: str, into_id: str | None, replace: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    text = Path(source).read_text(encoding="utf-8")
    try:
        checklist = runtime.engine.import_markdown(text, into=into_id, replace=replace)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(f"Import failed: {exc}") from exc
    click.echo(f"Imported {checklist.name} ({checklist.id}): {len(checklist.tasks)} task(s)")


@cli.command("status")
@click.argument("checklist_id")
@click.option("--events", "show_events", is_flag=True, default=False)
@config_option
def status_command(checklist_id: str, show_events: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = runtime.engine.status(checklist_id)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if show_events:
        payload["events"] = [
            event
            for event in runtime.store.get_events()
            if event.get("checklist_id") in (None, checklist_id)
        ]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
