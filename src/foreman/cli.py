from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from foreman.config import DEFAULT_CONFIG_FILE, ForemanConfig, load_config, save_config
from foreman.executors import build_executor
from foreman.models import Plan, Task, compute_stats
from foreman.plan_file import PlanDocumentError, load_plan_document
from foreman.runner import RunOptions, Runner, RunnerError
from foreman.scheduler import GraphValidationError
from foreman.state import StateStore, StateStoreError
from foreman.vcs import GitAdapter, VcsOperationError

logger = logging.getLogger(__name__)

HANDLED_ERRORS = (
    RunnerError,
    GraphValidationError,
    VcsOperationError,
    StateStoreError,
    PlanDocumentError,
    ValueError,
)


class _ClickEchoHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def _configure_logging(level: str) -> None:
    package_logger = logging.getLogger("foreman")
    package_logger.setLevel(level.upper())
    if not any(isinstance(handler, _ClickEchoHandler) for handler in package_logger.handlers):
        handler = _ClickEchoHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(handler)
    package_logger.propagate = False


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    store: StateStore
    vcs: GitAdapter


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path, *, verbose: bool = False) -> Runtime:
    config = load_config(config_path)
    _configure_logging("DEBUG" if verbose else config.logging.level)
    state_dir = repo_root / config.state.dir
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=StateStore(state_dir),
        vcs=GitAdapter(repo_root, state_dir_name=config.state.dir),
    )


def _resolve_plan_id(store: StateStore, plan_id: str | None) -> str:
    if plan_id:
        return plan_id
    latest = store.find_latest_plan()
    if latest is None:
        raise click.ClickException("No plans found. Import one with: foreman import FILE")
    return latest


def _load_plan(store: StateStore, plan_id: str) -> Plan:
    plan = store.load_plan(plan_id)
    if plan is None:
        raise click.ClickException(f"Plan not found: {plan_id}")
    return plan


def _task_line(task: Task) -> str:
    attempts = f" ({len(task.attempts)}/{task.max_attempts} attempts)" if task.attempts else ""
    critical = " [critical]" if task.priority == "critical" else ""
    return f"  {task.id} [{task.status}]{critical} {task.title}{attempts}"


@click.group()
def cli() -> None:
    """Run dependency-ordered coding task graphs on an isolated git branch."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.executor.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)

    state_dir = repo_root / config.state.dir
    (state_dir / "plans").mkdir(parents=True, exist_ok=True)
    vcs = GitAdapter(repo_root, state_dir_name=config.state.dir)
    if vcs.is_repository():
        try:
            vcs.ensure_state_dir_excluded()
        except VcsOperationError as exc:
            raise click.ClickException(str(exc)) from exc
    else:
        click.echo("Warning: not a git repository; runs will fail until one is initialized.")

    click.echo(f"Initialized foreman in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Executor: {config.executor.backend}")
    click.echo(f"State: {state_dir}")


@cli.command("import")
@click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def import_command(document: Path, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        plan, tasks = load_plan_document(
            document,
            default_gate_timeout=runtime.config.gates.default_timeout_seconds,
            default_mode=runtime.config.run.mode,
        )
        runtime.store.save_tasks(plan.id, tasks)
        runtime.store.save_plan(plan)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.store.append_progress(plan.id, f"Imported plan from {document.name}")
    click.echo(f"Imported {plan.id}: {plan.title} ({len(tasks)} tasks)")
    click.echo(f"Run: foreman run {plan.id} --dry-run")


@cli.command("run")
@click.argument("plan_id", required=False)
@click.option("--mode", type=click.Choice(["loop", "team"]), default=None)
@click.option("--concurrency", type=click.IntRange(min=1), default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--resume", is_flag=True, default=False)
@click.option("--task", "task_id", default=None, help="Run only this task.")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--model", default=None)
@click.option("--no-branch", is_flag=True, default=False)
@click.option("--force", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(
    plan_id: str | None,
    mode: str | None,
    concurrency: int | None,
    dry_run: bool,
    resume: bool,
    task_id: str | None,
    max_iterations: int | None,
    model: str | None,
    no_branch: bool,
    force: bool,
    verbose: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), verbose=verbose
    )
    config = runtime.config
    resolved_id = _resolve_plan_id(runtime.store, plan_id)
    logger.debug("Using config %s for %s", runtime.config_path, resolved_id)
    options = RunOptions(
        mode=mode,  # type: ignore[arg-type]
        concurrency=concurrency or config.run.concurrency,
        dry_run=dry_run,
        resume=resume,
        task_id=task_id,
        model=model or config.executor.model or None,
        no_branch=no_branch,
        force=force,
        max_iterations=max_iterations or config.run.max_iterations,
    )

    try:
        if not dry_run:
            if not runtime.vcs.is_repository():
                raise RunnerError(f"{repo_root} is not a git repository")
        runner = Runner(
            repo_root=repo_root,
            store=runtime.store,
            vcs=runtime.vcs,
            executor=build_executor(config.executor.backend, config.executor.binary or None),
            task_timeout_seconds=config.run.task_timeout_seconds,
            permission_mode=config.executor.permission_mode or None,
            permitted_operations=config.executor.permitted_operations,
            branch_prefix=config.run.branch_prefix,
        )
        result = asyncio.run(runner.run(resolved_id, options))
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    for line in result.report:
        click.echo(line)
    if not result.success:
        raise SystemExit(1)


@cli.command("status")
@click.argument("plan_id", required=False)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(plan_id: str | None, as_json: bool, verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        resolved_id = _resolve_plan_id(runtime.store, plan_id)
        plan = _load_plan(runtime.store, resolved_id)
        tasks = runtime.store.load_tasks(resolved_id)
        execution = runtime.store.load_execution(resolved_id)
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        payload: dict[str, Any] = {
            "plan": plan.to_dict(),
            "tasks": [task.to_dict() for task in tasks],
            "execution": execution.to_dict() if execution else None,
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    stats = compute_stats(tasks)
    click.echo(f"{plan.id}: {plan.title}")
    click.echo(f"  Status: {plan.status}  Mode: {plan.execution_mode}")
    click.echo(
        f"  Tasks: {stats.completed_tasks}/{stats.total_tasks} completed, "
        f"{stats.failed_tasks} failed, {stats.skipped_tasks} skipped"
    )
    if execution:
        click.echo(
            f"  Branch: {execution.branch} (PID {execution.pid}, iteration "
            f"{execution.iteration}/{execution.max_iterations})"
        )
        if execution.current_task_id:
            click.echo(f"  Current task: {execution.current_task_id}")
    click.echo("")
    for task in tasks:
        click.echo(_task_line(task))
        if not verbose:
            continue
        for attempt in task.attempts:
            detail = f": {attempt.error}" if attempt.error else ""
            click.echo(f"      attempt {attempt.attempt_number} {attempt.status}{detail}")

    if verbose:
        progress = runtime.store.load_progress(resolved_id).strip()
        if progress:
            click.echo("")
            click.echo("Progress:")
            for line in progress.splitlines()[-20:]:
                click.echo(f"  {line}")


@cli.command("list")
@click.option("--all", "include_all", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def list_command(include_all: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        entries = runtime.store.list_plans(include_archived=include_all)
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if not entries:
        click.echo("No plans found.")
        return
    for entry in sorted(entries, key=lambda item: str(item.get("created_at", ""))):
        click.echo(
            f"{entry.get('id')} {str(entry.get('status', '')):<11} "
            f"{entry.get('completed_tasks', 0)}/{entry.get('total_tasks', 0)} {entry.get('title', '')}"
        )


@cli.command("archive")
@click.argument("plan_id", required=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def archive_command(plan_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        resolved_id = _resolve_plan_id(runtime.store, plan_id)
        plan = _load_plan(runtime.store, resolved_id)
        plan.status = "archived"
        runtime.store.save_plan(plan)
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.store.append_progress(plan.id, "Archived")
    click.echo(f"Archived {plan.id}")
