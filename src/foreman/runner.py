from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from foreman.executors.base import DEFAULT_TASK_TIMEOUT_SECONDS, Executor
from foreman.models import (
    BRANCH_PREFIX,
    DEFAULT_MAX_ITERATIONS,
    Execution,
    ExecutionMode,
    Plan,
    Task,
    branch_for_plan,
    compute_stats,
    create_execution,
    utcnow_iso,
)
from foreman.scheduler import (
    GraphValidationError,
    ValidationResult,
    plan_waves,
    topological_sort,
    validate_task_graph,
)
from foreman.state.store import StateStore
from foreman.strategies import CriticalEscalation, RunContext, build_strategy
from foreman.vcs.base import VcsOperationError
from foreman.vcs.git import GitAdapter
from foreman.vcs.worktree import WorktreeManager

logger = logging.getLogger(__name__)


class RunnerError(RuntimeError):
    """Raised when a run cannot start or resume."""


class StaleProcessConflict(RunnerError):
    def __init__(self, pid: int) -> None:
        super().__init__(
            f"Another runner (PID {pid}) may still be running. "
            "Use --force to override, or stop that process first."
        )
        self.pid = pid


@dataclass(slots=True)
class RunOptions:
    mode: ExecutionMode | None = None
    concurrency: int = 3
    dry_run: bool = False
    resume: bool = False
    task_id: str | None = None
    model: str | None = None
    no_branch: bool = False
    force: bool = False
    max_iterations: int = DEFAULT_MAX_ITERATIONS


@dataclass(slots=True)
class RunResult:
    plan: Plan
    success: bool
    tasks_completed: int
    tasks_failed: int
    branch: str | None = None
    paused: bool = False
    report: list[str] = field(default_factory=list)


def is_process_running(pid: int) -> bool:
    """Probe a pid with signal 0. Any failure, permission errors included, reads as not running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def _dependency_note(task: Task) -> str:
    if not task.depends_on:
        return ""
    return f" (after: {', '.join(task.depends_on)})"


class Runner:
    def __init__(
        self,
        *,
        repo_root: Path,
        store: StateStore,
        vcs: GitAdapter,
        executor: Executor,
        task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS,
        permission_mode: str | None = "acceptEdits",
        permitted_operations: list[str] | None = None,
        branch_prefix: str = BRANCH_PREFIX,
        worktrees_dir: Path | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.store = store
        self.vcs = vcs
        self.executor = executor
        self.task_timeout_seconds = task_timeout_seconds
        self.permission_mode = permission_mode
        self.permitted_operations = list(permitted_operations or [])
        self.branch_prefix = branch_prefix
        self.worktrees_dir = worktrees_dir or store.root / "worktrees"

    def _load(self, plan_id: str) -> tuple[Plan, list[Task]]:
        plan = self.store.load_plan(plan_id)
        if plan is None:
            raise RunnerError(f"Plan not found: {plan_id}")
        tasks = self.store.load_tasks(plan_id)
        if not tasks:
            raise RunnerError(f"Plan {plan_id} has no tasks")
        return plan, tasks

    @staticmethod
    def _validate(tasks: list[Task]) -> ValidationResult:
        validation = validate_task_graph(tasks)
        if not validation.valid:
            raise GraphValidationError(
                "Invalid task graph:\n" + "\n".join(validation.errors),
                errors=validation.errors,
            )
        for warning in validation.warnings:
            logger.warning("%s", warning)
        return validation

    async def run(self, plan_id: str, options: RunOptions | None = None) -> RunResult:
        options = options or RunOptions()
        plan, tasks = self._load(plan_id)
        validation = self._validate(tasks)
        mode: ExecutionMode = options.mode or plan.execution_mode
        if options.task_id and not any(task.id == options.task_id for task in tasks):
            raise RunnerError(f"Task {options.task_id} not found in plan {plan_id}")

        if options.dry_run:
            return self._dry_run(plan, tasks, validation, mode, options.concurrency)

        self.vcs.ensure_state_dir_excluded()
        if options.resume:
            execution = self._resume(plan, tasks, options)
        else:
            execution = self._start(plan, mode, options)

        ctx = RunContext(
            plan=plan,
            tasks=tasks,
            execution=execution,
            store=self.store,
            vcs=self.vcs,
            executor=self.executor,
            repo_root=self.repo_root,
            model=options.model,
            permission_mode=self.permission_mode,
            permitted_operations=self.permitted_operations,
            task_timeout_seconds=self.task_timeout_seconds,
            target_task_id=options.task_id,
            worktrees_dir=self.worktrees_dir,
        )
        strategy = build_strategy(execution.mode, concurrency=options.concurrency)
        logger.info("Running %s with the %s strategy", plan.id, strategy.name)

        try:
            try:
                await strategy.run(ctx)
            except CriticalEscalation as exc:
                return self._pause(ctx, exc.task)
        finally:
            if not options.resume and not options.no_branch:
                self._teardown(execution)
        return self._finalize(ctx, options)

    def _dry_run(
        self,
        plan: Plan,
        tasks: list[Task],
        validation: ValidationResult,
        mode: ExecutionMode,
        concurrency: int,
    ) -> RunResult:
        lines = [f"[DRY RUN] Plan: {plan.title} ({plan.id})"]
        lines.append(f"Mode: {mode}" + (f" (concurrency: {concurrency})" if mode == "team" else ""))
        lines.append("")
        if mode == "team":
            for number, wave in enumerate(plan_waves(tasks, concurrency), start=1):
                lines.append(f"  Wave {number}:")
                for task in wave:
                    lines.append(f"    {task.id} [{task.priority}] {task.title}{_dependency_note(task)}")
        else:
            lines.append("Execution plan:")
            for task in topological_sort(tasks):
                lines.append(f"  {task.id} [{task.priority}] {task.title}{_dependency_note(task)}")
                if task.files_to_modify:
                    lines.append(f"    files: {', '.join(task.files_to_modify)}")

        if plan.quality_gates:
            lines.append("")
            lines.append("Quality gates:")
            lines.extend(f"  - {gate.type}: {gate.command}" for gate in plan.quality_gates)
        if validation.warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"  - {warning}" for warning in validation.warnings)
        lines.append("")
        lines.append(f"To execute: foreman run {plan.id}")
        return RunResult(
            plan=plan,
            success=True,
            tasks_completed=0,
            tasks_failed=0,
            report=lines,
        )

    def _start(self, plan: Plan, mode: ExecutionMode, options: RunOptions) -> Execution:
        if plan.status == "archived":
            raise RunnerError(f"Plan {plan.id} is archived")
        original_branch = self.vcs.current_branch()
        branch = branch_for_plan(plan.id, self.branch_prefix)
        if not options.no_branch and self.vcs.branch_exists(branch):
            raise RunnerError(
                f"Branch {branch} already exists. Use --resume to continue, or delete the branch."
            )

        execution = create_execution(
            plan.id,
            mode=mode,
            original_branch=original_branch,
            pid=os.getpid(),
            max_iterations=options.max_iterations,
            concurrency=options.concurrency,
            branch_prefix=self.branch_prefix,
        )
        if options.no_branch:
            execution.branch = original_branch
        else:
            execution.stashed = self.vcs.stash_push(f"foreman: auto-stash before {plan.id}")
            if execution.stashed:
                logger.info("Stashed uncommitted changes before %s", plan.id)
            try:
                self.vcs.create_branch(branch)
            except VcsOperationError:
                if execution.stashed:
                    self.vcs.stash_pop()
                raise

        self.store.save_execution(execution)
        plan.status = "in_progress"
        plan.started_at = utcnow_iso()
        plan.completed_at = None
        self.store.save_plan(plan)
        self.store.append_progress(
            plan.id, f"Execution started: branch {execution.branch}, mode {mode}"
        )
        return execution

    def _resume(self, plan: Plan, tasks: list[Task], options: RunOptions) -> Execution:
        execution = self.store.load_execution(plan.id)
        if execution is None:
            raise RunnerError(f"No execution state for {plan.id}. Start a fresh run without --resume")
        if plan.status == "completed":
            raise RunnerError(f"Plan {plan.id} already completed. Nothing to resume.")
        if plan.status == "archived":
            raise RunnerError(f"Plan {plan.id} is archived")
        if not options.no_branch and not self.vcs.branch_exists(execution.branch):
            raise RunnerError(f"Branch {execution.branch} not found. Cannot resume.")
        if execution.pid and execution.pid != os.getpid() and is_process_running(execution.pid):
            if not options.force:
                raise StaleProcessConflict(execution.pid)
            logger.warning("Overriding runner PID %s", execution.pid)

        if options.mode:
            execution.mode = options.mode
        execution.pid = os.getpid()
        execution.max_iterations = options.max_iterations
        execution.concurrency = options.concurrency
        execution.current_task_id = None
        if not options.no_branch and self.vcs.current_branch() != execution.branch:
            self.vcs.checkout(execution.branch)
        self.vcs.reset_working_tree()

        for task in tasks:
            if task.status in ("in_progress", "failed"):
                previous = task.status
                task.status = "pending"
                task.touch()
                suffix = " (retry on resume)" if previous == "failed" else ""
                self.store.append_progress(
                    plan.id, f"Reset {task.id} from {previous} to pending{suffix}"
                )
        self.store.save_tasks(plan.id, tasks)

        if execution.mode == "team":
            removed = WorktreeManager(self.vcs, self.worktrees_dir).cleanup_all()
            if removed:
                logger.info("Removed stale worktrees: %s", ", ".join(removed))

        if plan.status == "failed":
            plan.status = "in_progress"
            plan.completed_at = None
        plan.stats = compute_stats(tasks)
        self.store.save_plan(plan)
        self.store.save_execution(execution)
        self.store.append_progress(plan.id, f"Resumed execution (PID {execution.pid})")
        return execution

    def _pause(self, ctx: RunContext, task: Task) -> RunResult:
        ctx.execution.current_task_id = task.id
        ctx.persist_execution()
        ctx.persist_tasks()
        ctx.progress(f"PAUSED: critical task {task.id} failed")
        hint = f"Fix manually, then: foreman run {ctx.plan.id} --resume"
        self.store.append_progress(ctx.plan.id, hint)
        stats = compute_stats(ctx.tasks)
        return RunResult(
            plan=ctx.plan,
            success=False,
            tasks_completed=stats.completed_tasks,
            tasks_failed=stats.failed_tasks,
            branch=ctx.execution.branch,
            paused=True,
            report=[f"Critical task {task.id} failed. Execution paused.", hint],
        )

    def _teardown(self, execution: Execution) -> None:
        try:
            if self.vcs.current_branch() != execution.original_branch:
                self.vcs.checkout(execution.original_branch)
        except VcsOperationError as exc:
            logger.warning("Branch teardown issue: %s", exc.output or exc)
            return
        if not execution.stashed:
            return
        try:
            self.vcs.reset_working_tree()
            self.vcs.stash_pop()
        except VcsOperationError as exc:
            logger.warning("Could not pop stash, check `git stash list`: %s", exc.output or exc)

    def _finalize(self, ctx: RunContext, options: RunOptions) -> RunResult:
        plan, execution = ctx.plan, ctx.execution
        all_done = all(task.is_terminal for task in ctx.tasks)
        plan.status = "completed" if all_done else "failed"
        plan.completed_at = utcnow_iso()
        plan.stats = compute_stats(ctx.tasks)
        self.store.save_tasks(plan.id, ctx.tasks)
        self.store.save_plan(plan)
        execution.current_task_id = None
        self.store.save_execution(execution)
        self.store.append_progress(plan.id, f"Execution finished: status {plan.status}")

        report = [
            f"Plan {plan.id}: {plan.status}",
            f"  Completed: {plan.stats.completed_tasks}/{plan.stats.total_tasks}",
        ]
        if plan.stats.failed_tasks:
            report.append(f"  Failed: {plan.stats.failed_tasks}")
        if plan.stats.skipped_tasks:
            report.append(f"  Skipped: {plan.stats.skipped_tasks}")
        if not options.no_branch:
            report.append(f"Review: git diff {execution.original_branch}...{execution.branch}")
            report.append(f"Merge:  git merge {execution.branch}")
        return RunResult(
            plan=plan,
            success=all_done,
            tasks_completed=plan.stats.completed_tasks,
            tasks_failed=plan.stats.failed_tasks,
            branch=execution.branch,
            report=report,
        )
