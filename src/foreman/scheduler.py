from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from foreman.models import TERMINAL_TASK_STATUSES, Task


class GraphValidationError(RuntimeError):
    """Raised when a task graph has a cycle or dangling dependency."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def topological_sort(tasks: list[Task]) -> list[Task]:
    """Order tasks so dependencies come first, keeping input order otherwise."""
    task_by_id = {task.id: task for task in tasks}
    visited: set[str] = set()
    in_stack: set[str] = set()
    ordered: list[Task] = []

    def _visit(task_id: str) -> None:
        if task_id in in_stack:
            raise GraphValidationError(f"Circular dependency detected involving task {task_id}")
        if task_id in visited:
            return
        in_stack.add(task_id)
        task = task_by_id[task_id]
        for dep_id in task.depends_on:
            if dep_id in task_by_id:
                _visit(dep_id)
        in_stack.discard(task_id)
        visited.add(task_id)
        ordered.append(task)

    for task in tasks:
        _visit(task.id)
    return ordered


def all_dependencies_met(task: Task, tasks: Iterable[Task]) -> bool:
    if not task.depends_on:
        return True
    task_by_id = {item.id: item for item in tasks}
    for dep_id in task.depends_on:
        dependency = task_by_id.get(dep_id)
        # Unknown ids are reported by validate_task_graph.
        if dependency is None:
            continue
        if dependency.status not in TERMINAL_TASK_STATUSES:
            return False
    return True


def has_failed_dependency(task: Task, tasks: Iterable[Task]) -> bool:
    task_by_id = {item.id: item for item in tasks}
    return any(
        dep_id in task_by_id and task_by_id[dep_id].status == "failed"
        for dep_id in task.depends_on
    )


def validate_task_graph(tasks: list[Task]) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []
    task_ids = {task.id for task in tasks}

    try:
        topological_sort(tasks)
    except GraphValidationError as exc:
        errors.append(str(exc))

    for task in tasks:
        for dep_id in task.depends_on:
            if dep_id not in task_ids:
                errors.append(f"Task {task.id} depends on non-existent task {dep_id}")

    for index, first in enumerate(tasks):
        for second in tasks[index + 1 :]:
            overlap = [path for path in first.files_to_modify if path in second.files_to_modify]
            if not overlap:
                continue
            if second.id in first.depends_on or first.id in second.depends_on:
                continue
            warnings.append(
                f"Tasks {first.id} and {second.id} both modify {', '.join(overlap)} "
                "but have no dependency"
            )

    for task in tasks:
        if not task.files_to_modify:
            warnings.append(f'Task {task.id} "{task.title}": no files_to_modify predicted')

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def get_ready_tasks(tasks: list[Task], running: Iterable[Task] = ()) -> list[Task]:
    """Pending tasks whose dependencies are met and whose files are free."""
    busy_files: set[str] = set()
    for task in running:
        busy_files.update(task.files_to_modify)

    ready: list[Task] = []
    for task in tasks:
        if task.status != "pending":
            continue
        if not all_dependencies_met(task, tasks):
            continue
        if busy_files.intersection(task.files_to_modify):
            continue
        ready.append(task)
    return ready


def plan_waves(tasks: list[Task], concurrency: int) -> list[list[Task]]:
    """Simulate team dispatch, assuming every dispatched task completes."""
    limit = max(1, concurrency)
    done = {task.id for task in tasks if task.status in TERMINAL_TASK_STATUSES}
    known = {task.id for task in tasks}
    remaining = [task for task in tasks if task.status == "pending"]
    waves: list[list[Task]] = []

    while remaining:
        ready = [
            task
            for task in remaining
            if all(dep_id in done or dep_id not in known for dep_id in task.depends_on)
        ]
        if not ready:
            break
        batch = ready[:limit]
        waves.append(batch)
        done.update(task.id for task in batch)
        batch_ids = {task.id for task in batch}
        remaining = [task for task in remaining if task.id not in batch_ids]
    return waves
