from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from foreman.executors.base import ExecuteOptions, ExecuteResult, Executor
from foreman.gates import GateSession, all_required_passed, format_gate_results, run_all_gates
from foreman.models import Execution, Plan, Task, TaskAttempt, compute_stats, utcnow_iso
from foreman.prompts import blocked_reason, build_task_prompt
from foreman.state.store import StateStore
from foreman.vcs.git import GitAdapter

logger = logging.getLogger(__name__)

Verdict = Literal["blocked", "executor_failed", "gates_failed", "passed"]


class CriticalEscalation(RuntimeError):
    """Raised by a strategy when a critical task has failed for good."""

    def __init__(self, task: Task) -> None:
        super().__init__(f"Critical task {task.id} failed")
        self.task = task


@dataclass(slots=True)
class AttemptVerdict:
    verdict: Verdict
    gate_report: str = ""

    @property
    def passed(self) -> bool:
        return self.verdict == "passed"


@dataclass(slots=True)
class RunContext:
    plan: Plan
    tasks: list[Task]
    execution: Execution
    store: StateStore
    vcs: GitAdapter
    executor: Executor
    repo_root: Path
    model: str | None = None
    permission_mode: str | None = "acceptEdits"
    permitted_operations: list[str] = field(default_factory=list)
    task_timeout_seconds: float = 900.0
    target_task_id: str | None = None
    worktrees_dir: Path | None = None

    def progress(self, line: str) -> None:
        logger.info("%s: %s", self.plan.id, line)
        self.store.append_progress(self.plan.id, line)

    def persist_tasks(self) -> None:
        self.store.save_tasks(self.plan.id, self.tasks)
        self.plan.stats = compute_stats(self.tasks)
        self.store.save_plan(self.plan)

    def persist_execution(self) -> None:
        self.store.save_execution(self.execution)

    def execute_options(self, task: Task, cwd: Path) -> ExecuteOptions:
        plan_id = self.plan.id

        def _on_output(chunk: str) -> None:
            self.store.append_task_log(plan_id, task.id, chunk)

        return ExecuteOptions(
            cwd=cwd,
            timeout_seconds=self.task_timeout_seconds,
            model=self.model,
            permission_mode=self.permission_mode,
            permitted_operations=list(self.permitted_operations),
            on_output=_on_output,
        )

    def initial_prompt(self, task: Task) -> str:
        return build_task_prompt(task, self.plan, progress=self.store.load_progress(self.plan.id))


def commit_message(plan_id: str, task: Task) -> str:
    return f"prd({plan_id}): {task.id} — {task.title}"


def mark_task(task: Task, status: str) -> None:
    task.status = status  # type: ignore[assignment]
    task.touch()


def begin_attempt(ctx: RunContext, task: Task) -> TaskAttempt:
    attempt = TaskAttempt(
        attempt_number=len(task.attempts) + 1,
        log_path=str(ctx.store.get_task_log_path(ctx.plan.id, task.id)),
    )
    task.attempts.append(attempt)
    task.touch()
    ctx.store.append_task_log(
        ctx.plan.id,
        task.id,
        f"\n===== {task.id} attempt {attempt.attempt_number} @ {attempt.started_at} =====\n",
    )
    return attempt


async def invoke_executor(ctx: RunContext, task: Task, prompt: str, cwd: Path) -> ExecuteResult:
    result = await ctx.executor.execute(prompt, ctx.execute_options(task, cwd))
    logger.debug(
        "%s executor exit=%s in %sms", task.id, result.exit_code, result.duration_ms
    )
    return result


async def judge_attempt(
    ctx: RunContext,
    task: Task,
    attempt: TaskAttempt,
    result: ExecuteResult,
    cwd: Path,
) -> AttemptVerdict:
    """Classify one executor run, running quality gates when the executor succeeded."""
    reason = blocked_reason(result.output)
    if reason is not None:
        attempt.status = "failed"
        attempt.error = f"BLOCKED: {reason}"
        attempt.completed_at = utcnow_iso()
        ctx.progress(f"{task.id} attempt {attempt.attempt_number} BLOCKED: {reason}")
        return AttemptVerdict("blocked")

    if not result.success:
        attempt.status = "failed"
        attempt.error = f"Exit code: {result.exit_code}"
        attempt.completed_at = utcnow_iso()
        ctx.progress(f"{task.id} attempt {attempt.attempt_number} failed (exit {result.exit_code})")
        return AttemptVerdict("executor_failed")

    if ctx.plan.quality_gates:
        session = GateSession()
        try:
            gate_results = await asyncio.to_thread(
                run_all_gates, ctx.plan.quality_gates, cwd, session
            )
        except asyncio.CancelledError:
            session.cancel()
            raise
        attempt.gate_results = gate_results
        if not all_required_passed(gate_results):
            report = format_gate_results(gate_results)
            failed_types = [r.gate.type for r in gate_results if not r.passed and r.gate.required]
            attempt.status = "failed"
            attempt.error = f"Gates failed: {', '.join(failed_types)}"
            attempt.completed_at = utcnow_iso()
            ctx.progress(f"{task.id} attempt {attempt.attempt_number} gates failed: {attempt.error}")
            logger.info("%s gate report:\n%s", task.id, report)
            return AttemptVerdict("gates_failed", gate_report=report)

    attempt.status = "passed"
    attempt.completed_at = utcnow_iso()
    return AttemptVerdict("passed")


def note_unpredicted_files(ctx: RunContext, task: Task, attempt: TaskAttempt, files: list[str]) -> None:
    attempt.files_actually_modified = files
    unpredicted = [path for path in files if path not in task.files_to_modify]
    if unpredicted:
        warning = f"Task {task.id} modified unpredicted files: {', '.join(unpredicted)}"
        logger.warning("%s", warning)
        ctx.store.append_progress(ctx.plan.id, f"WARNING: {warning}")


class RunStrategy(ABC):
    name: str = "strategy"

    @abstractmethod
    async def run(self, ctx: RunContext) -> None:
        """Drive tasks toward a terminal state; raise CriticalEscalation to pause the run."""
