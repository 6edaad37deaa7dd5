from __future__ import annotations

import logging

from foreman.models import Task, TaskAttempt
from foreman.prompts import append_failure_context
from foreman.scheduler import all_dependencies_met, has_failed_dependency, topological_sort
from foreman.strategies.base import (
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

logger = logging.getLogger(__name__)


class LoopStrategy(RunStrategy):
    """One task at a time in the main working tree, in dependency order."""

    name = "loop"

    @staticmethod
    def _finished(ctx: RunContext) -> bool:
        if ctx.target_task_id:
            target = next((task for task in ctx.tasks if task.id == ctx.target_task_id), None)
            return target is None or target.status != "pending"
        return all(task.status != "pending" for task in ctx.tasks)

    async def run(self, ctx: RunContext) -> None:
        execution = ctx.execution
        for iteration in range(1, execution.max_iterations + 1):
            execution.iteration = iteration
            ctx.persist_execution()
            if self._finished(ctx):
                break
            if iteration > 1:
                ctx.progress(f"--- Iteration {iteration} ---")

            changed = False
            for task in topological_sort(ctx.tasks):
                if task.status != "pending":
                    continue
                if has_failed_dependency(task, ctx.tasks):
                    mark_task(task, "skipped")
                    ctx.progress(f'Skipped {task.id} "{task.title}": dependency failed')
                    ctx.persist_tasks()
                    changed = True
                    continue
                if not all_dependencies_met(task, ctx.tasks):
                    continue
                if ctx.target_task_id and task.id != ctx.target_task_id:
                    continue

                await self._execute_task(ctx, task)
                changed = True
                ctx.persist_tasks()
                if task.status == "failed" and task.priority == "critical":
                    raise CriticalEscalation(task)

            if not changed:
                logger.info("No runnable tasks left after iteration %s", iteration)
                break

    @staticmethod
    def _reset(ctx: RunContext) -> None:
        try:
            ctx.vcs.reset_working_tree()
        except VcsOperationError as exc:
            logger.warning("Working tree reset failed: %s", exc.output or exc)

    async def _execute_task(self, ctx: RunContext, task: Task) -> None:
        mark_task(task, "in_progress")
        ctx.execution.current_task_id = task.id
        ctx.persist_execution()
        ctx.persist_tasks()
        ctx.progress(f'Started {task.id} "{task.title}"')

        prompt = ctx.initial_prompt(task)
        for attempt_index in range(1, task.max_attempts + 1):
            logger.info("%s attempt %s/%s", task.id, attempt_index, task.max_attempts)
            attempt = begin_attempt(ctx, task)
            ctx.persist_tasks()

            result = await invoke_executor(ctx, task, prompt, ctx.repo_root)
            verdict = await judge_attempt(ctx, task, attempt, result, ctx.repo_root)

            if verdict.verdict == "blocked":
                self._reset(ctx)
                mark_task(task, "failed")
                break

            if not verdict.passed:
                self._reset(ctx)
                if attempt_index < task.max_attempts:
                    prompt = append_failure_context(
                        prompt, attempt.attempt_number, verdict.gate_report, result.output
                    )
                else:
                    mark_task(task, "failed")
                ctx.persist_tasks()
                continue

            mark_task(task, "completed")
            ctx.progress(f'Completed {task.id} "{task.title}"')
            self._commit(ctx, task, attempt)
            break

        if task.status == "failed":
            ctx.progress(f'Failed {task.id} "{task.title}" after {attempt_index} attempt(s)')
        ctx.execution.current_task_id = None
        ctx.persist_execution()

    @staticmethod
    def _commit(ctx: RunContext, task: Task, attempt: TaskAttempt) -> None:
        try:
            commit = ctx.vcs.commit_all(commit_message(ctx.plan.id, task))
        except VcsOperationError as exc:
            logger.warning("Commit for %s failed: %s", task.id, exc.output or exc)
            ctx.store.append_progress(ctx.plan.id, f"WARNING: commit for {task.id} failed")
            return
        if commit is None:
            logger.info("%s left no changes to commit", task.id)
            return
        logger.info("%s committed as %s", task.id, commit[:10])
        note_unpredicted_files(ctx, task, attempt, ctx.vcs.modified_files())
