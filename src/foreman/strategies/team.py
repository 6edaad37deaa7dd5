from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from foreman.executors.base import ExecuteResult
from foreman.models import Task, TaskAttempt, utcnow_iso
from foreman.prompts import append_failure_context
from foreman.scheduler import get_ready_tasks, has_failed_dependency
from foreman.strategies.base import (
    AttemptVerdict,
    CriticalEscalation,
    RunContext,
    RunStrategy,
    begin_attempt,
    commit_message,
    invoke_executor,
    judge_attempt,
    mark_task,
    note_unpredicted_files,
)
from foreman.vcs.base import VcsOperationError
from foreman.vcs.worktree import WorktreeManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Worker:
    task: Task
    attempt: TaskAttempt
    path: Path
    future: asyncio.Task[tuple[ExecuteResult, AttemptVerdict]]


class TeamStrategy(RunStrategy):
    """Bounded parallel execution, one git worktree per task, merged back serially."""

    name = "team"

    def __init__(self, concurrency: int = 3) -> None:
        self.concurrency = max(1, concurrency)
        self._attempts: dict[str, int] = {}
        self._prompts: dict[str, str] = {}

    def _worktrees(self, ctx: RunContext) -> WorktreeManager:
        worktrees_dir = ctx.worktrees_dir or ctx.store.root / "worktrees"
        return WorktreeManager(ctx.vcs, worktrees_dir)

    def _candidates(self, ctx: RunContext) -> list[Task]:
        return [
            task
            for task in ctx.tasks
            if task.status == "pending"
            and (not ctx.target_task_id or task.id == ctx.target_task_id)
        ]

    def _skip_failed_dependents(self, ctx: RunContext) -> bool:
        skipped = False
        for task in ctx.tasks:
            if task.status == "pending" and has_failed_dependency(task, ctx.tasks):
                mark_task(task, "skipped")
                ctx.progress(f'Skipped {task.id} "{task.title}": dependency failed')
                skipped = True
        if skipped:
            ctx.persist_tasks()
        return skipped

    def _settle_failure(self, task: Task) -> None:
        if self._attempts.get(task.id, 0) >= task.max_attempts:
            mark_task(task, "failed")
        else:
            mark_task(task, "pending")

    async def run(self, ctx: RunContext) -> None:
        worktrees = self._worktrees(ctx)
        running: dict[str, _Worker] = {}
        ctx.execution.concurrency = self.concurrency
        ctx.persist_execution()
        ctx.progress(f"Team mode: concurrency {self.concurrency}")

        try:
            while True:
                self._skip_failed_dependents(ctx)
                candidates = self._candidates(ctx)
                if not candidates and not running:
                    break

                busy = [worker.task for worker in running.values()]
                candidate_ids = {task.id for task in candidates}
                ready = [
                    task
                    for task in get_ready_tasks(ctx.tasks, busy)
                    if task.id in candidate_ids
                    and self._attempts.get(task.id, 0) < task.max_attempts
                ]
                for task in ready[: self.concurrency - len(running)]:
                    worker = self._dispatch(ctx, worktrees, task)
                    if worker is not None:
                        running[task.id] = worker

                if not running:
                    if ready:
                        # Every dispatch failed before the executor started; re-evaluate.
                        continue
                    ctx.progress(f"DEADLOCK: {len(candidates)} tasks cannot proceed")
                    break

                done, _ = await asyncio.wait(
                    [worker.future for worker in running.values()],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for worker in [item for item in running.values() if item.future in done]:
                    del running[worker.task.id]
                    self._complete(ctx, worktrees, worker)
                    ctx.persist_tasks()
                    if worker.task.status == "failed" and worker.task.priority == "critical":
                        await self._abort(ctx, worktrees, running, worker.task)
                        raise CriticalEscalation(worker.task)
        finally:
            if running:
                await self._abort(ctx, worktrees, running, None)
            worktrees.cleanup_all()

    def _dispatch(self, ctx: RunContext, worktrees: WorktreeManager, task: Task) -> _Worker | None:
        self._attempts[task.id] = self._attempts.get(task.id, 0) + 1
        mark_task(task, "in_progress")
        attempt = begin_attempt(ctx, task)
        ctx.progress(f'Dispatched {task.id} "{task.title}" (attempt {attempt.attempt_number})')
        try:
            path = worktrees.create(task.id, ctx.vcs.head_commit())
        except VcsOperationError as exc:
            attempt.status = "failed"
            attempt.error = f"Worktree setup failed: {exc.output or exc}"
            attempt.completed_at = utcnow_iso()
            ctx.progress(f"{task.id} worktree setup failed")
            self._settle_failure(task)
            ctx.persist_tasks()
            return None
        ctx.persist_tasks()

        prompt = self._prompts.setdefault(task.id, ctx.initial_prompt(task))
        future = asyncio.create_task(self._work(ctx, task, attempt, prompt, path))
        return _Worker(task=task, attempt=attempt, path=path, future=future)

    @staticmethod
    async def _work(
        ctx: RunContext,
        task: Task,
        attempt: TaskAttempt,
        prompt: str,
        path: Path,
    ) -> tuple[ExecuteResult, AttemptVerdict]:
        result = await invoke_executor(ctx, task, prompt, path)
        verdict = await judge_attempt(ctx, task, attempt, result, path)
        return result, verdict

    def _complete(self, ctx: RunContext, worktrees: WorktreeManager, worker: _Worker) -> None:
        task, attempt = worker.task, worker.attempt
        result, verdict = worker.future.result()
        try:
            if verdict.verdict == "blocked":
                mark_task(task, "failed")
                return
            if not verdict.passed:
                self._prompts[task.id] = append_failure_context(
                    self._prompts[task.id], attempt.attempt_number, verdict.gate_report, result.output
                )
                self._settle_failure(task)
                return

            merge = worktrees.merge_changes(worker.path, commit_message(ctx.plan.id, task))
            if merge.success:
                mark_task(task, "completed")
                ctx.progress(f'Completed {task.id} "{task.title}"')
                if merge.commit:
                    logger.info("%s merged as %s", task.id, merge.commit[:10])
                    note_unpredicted_files(ctx, task, attempt, ctx.vcs.modified_files())
                return

            detail = ", ".join(merge.conflict_files) or merge.error or "unknown"
            attempt.status = "failed"
            attempt.error = f"Merge conflict: {detail}"
            ctx.progress(f"{task.id} merge conflict: {detail}")
            self._prompts[task.id] = append_failure_context(
                self._prompts[task.id],
                attempt.attempt_number,
                f"Your changes conflicted with work merged meanwhile in: {detail}",
                result.output,
            )
            self._settle_failure(task)
        finally:
            if task.status == "failed":
                ctx.progress(f'Failed {task.id} "{task.title}"')
            worktrees.remove(task.id)

    @staticmethod
    async def _abort(
        ctx: RunContext,
        worktrees: WorktreeManager,
        running: dict[str, _Worker],
        cause: Task | None,
    ) -> None:
        workers = list(running.values())
        running.clear()
        for worker in workers:
            worker.future.cancel()
        await asyncio.gather(*(worker.future for worker in workers), return_exceptions=True)
        reason = f"Aborted: critical task {cause.id} failed" if cause else "Aborted"
        for worker in workers:
            worker.attempt.status = "failed"
            worker.attempt.error = reason
            worker.attempt.completed_at = utcnow_iso()
            mark_task(worker.task, "pending")
            worktrees.remove(worker.task.id)
            ctx.progress(f"Returned {worker.task.id} to pending ({reason})")
        if workers:
            ctx.persist_tasks()
