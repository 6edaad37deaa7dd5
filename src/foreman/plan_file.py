"""Declarative task-graph documents (JSON or TOML) turned into a ready Plan."""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, get_args

from foreman.models import (
    DEFAULT_GATE_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    ExecutionMode,
    GateType,
    Plan,
    Priority,
    QualityGate,
    Task,
    compute_stats,
    create_gate,
    create_plan,
    create_task,
    generate_task_id,
)


class PlanDocumentError(RuntimeError):
    """Raised when a plan document is unreadable or malformed."""


def _read_document(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanDocumentError(f"Cannot read plan document {path}: {exc}") from exc
    try:
        if path.suffix.lower() == ".toml":
            payload: Any = tomllib.loads(raw)
        else:
            payload = json.loads(raw)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
        raise PlanDocumentError(f"Cannot parse plan document {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise PlanDocumentError(f"Plan document {path} must be a table/object at the top level")
    return payload


def _string_list(payload: dict[str, Any], key: str, where: str) -> list[str]:
    value = payload.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise PlanDocumentError(f"{where}: '{key}' must be a list of strings")
    return list(value)


def _choice(value: Any, allowed: tuple[str, ...], key: str, where: str) -> str:
    if value not in allowed:
        raise PlanDocumentError(f"{where}: '{key}' must be one of {', '.join(allowed)}, got {value!r}")
    return str(value)


def _parse_gate(payload: Any, index: int, default_timeout: int) -> QualityGate:
    where = f"quality_gates[{index}]"
    if not isinstance(payload, dict):
        raise PlanDocumentError(f"{where}: expected a table/object")
    command = payload.get("command")
    if not isinstance(command, str) or not command.strip():
        raise PlanDocumentError(f"{where}: 'command' is required")
    gate_type = _choice(payload.get("type", "custom"), get_args(GateType), "type", where)
    timeout = payload.get("timeout_seconds", default_timeout)
    if not isinstance(timeout, int) or timeout <= 0:
        raise PlanDocumentError(f"{where}: 'timeout_seconds' must be a positive integer")
    return create_gate(
        gate_type,  # type: ignore[arg-type]
        command.strip(),
        required=bool(payload.get("required", True)),
        timeout_seconds=timeout,
    )


def _resolve_dependency(value: Any, task_count: int, where: str) -> str:
    # Integers are 1-based positions in the document's task list.
    if isinstance(value, bool):
        raise PlanDocumentError(f"{where}: invalid dependency {value!r}")
    if isinstance(value, int):
        if not 1 <= value <= task_count:
            raise PlanDocumentError(f"{where}: dependency {value} is out of range 1..{task_count}")
        return generate_task_id(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise PlanDocumentError(f"{where}: invalid dependency {value!r}")


def _parse_task(plan_id: str, payload: Any, sequence: int, task_count: int) -> Task:
    where = f"tasks[{sequence - 1}]"
    if not isinstance(payload, dict):
        raise PlanDocumentError(f"{where}: expected a table/object")
    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        raise PlanDocumentError(f"{where}: 'title' is required")
    depends = payload.get("depends_on", [])
    if not isinstance(depends, list):
        raise PlanDocumentError(f"{where}: 'depends_on' must be a list")
    max_attempts = payload.get("max_attempts", DEFAULT_MAX_ATTEMPTS)
    if not isinstance(max_attempts, int) or max_attempts < 1:
        raise PlanDocumentError(f"{where}: 'max_attempts' must be a positive integer")
    priority = _choice(payload.get("priority", "normal"), get_args(Priority), "priority", where)
    return create_task(
        plan_id,
        sequence,
        title.strip(),
        description=str(payload.get("description", "")),
        depends_on=[_resolve_dependency(item, task_count, where) for item in depends],
        files_to_modify=_string_list(payload, "files_to_modify", where),
        relevant_files=_string_list(payload, "relevant_files", where),
        acceptance_criteria=_string_list(payload, "acceptance_criteria", where),
        priority=priority,  # type: ignore[arg-type]
        max_attempts=max_attempts,
    )


def parse_plan_document(
    payload: dict[str, Any],
    *,
    default_gate_timeout: int = DEFAULT_GATE_TIMEOUT_SECONDS,
    default_mode: ExecutionMode = "loop",
) -> tuple[Plan, list[Task]]:
    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        raise PlanDocumentError("Plan document: 'title' is required")
    mode = _choice(
        payload.get("execution_mode", default_mode),
        get_args(ExecutionMode),
        "execution_mode",
        "Plan document",
    )
    raw_gates = payload.get("quality_gates", [])
    raw_tasks = payload.get("tasks", [])
    if not isinstance(raw_gates, list):
        raise PlanDocumentError("Plan document: 'quality_gates' must be a list")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise PlanDocumentError("Plan document: 'tasks' must be a non-empty list")

    plan = create_plan(
        title.strip(),
        description=str(payload.get("description", "")),
        goals=_string_list(payload, "goals", "Plan document"),
        out_of_scope=_string_list(payload, "out_of_scope", "Plan document"),
        quality_gates=[
            _parse_gate(item, index, default_gate_timeout) for index, item in enumerate(raw_gates)
        ],
        execution_mode=mode,  # type: ignore[arg-type]
        status="ready",
    )
    tasks = [
        _parse_task(plan.id, item, sequence, len(raw_tasks))
        for sequence, item in enumerate(raw_tasks, start=1)
    ]
    plan.stats = compute_stats(tasks)
    return plan, tasks


def load_plan_document(
    path: Path,
    *,
    default_gate_timeout: int = DEFAULT_GATE_TIMEOUT_SECONDS,
    default_mode: ExecutionMode = "loop",
) -> tuple[Plan, list[Task]]:
    return parse_plan_document(
        _read_document(path),
        default_gate_timeout=default_gate_timeout,
        default_mode=default_mode,
    )
