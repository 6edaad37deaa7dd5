from __future__ import annotations

import re
from functools import lru_cache
from importlib import resources

from foreman.models import Plan, Task

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")
BLOCKED_PATTERN = re.compile(r"BLOCKED:(.*)")
AGENT_OUTPUT_TAIL = 2000


@lru_cache(maxsize=1)
def _task_template() -> str:
    return (
        resources.files("foreman.templates")
        .joinpath("task_execution.md")
        .read_text(encoding="utf-8")
    )


def _bullets(items: list[str], empty: str) -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def build_task_prompt(
    task: Task,
    plan: Plan,
    *,
    progress: str = "",
) -> str:
    if task.acceptance_criteria:
        criteria = "\n".join(
            f"{index}. {item}" for index, item in enumerate(task.acceptance_criteria, start=1)
        )
    else:
        criteria = "(No specific acceptance criteria; use your best judgment)"

    if plan.quality_gates:
        gates = "\n".join(f"   - {gate.type}: `{gate.command}`" for gate in plan.quality_gates)
    else:
        gates = "   (No quality gates configured)"

    out_of_scope = ""
    if plan.out_of_scope:
        out_of_scope = "7. Stay out of these areas:\n" + "\n".join(
            f"   - {item}" for item in plan.out_of_scope
        ) + "\n"

    values = {
        "plan_title": f"{plan.id}: {plan.title}",
        "plan_goals": _bullets(plan.goals, plan.description or "(No goals recorded)"),
        "task_title": f"{task.id}: {task.title}",
        "task_description": task.description,
        "acceptance_criteria": criteria,
        "files_to_modify": _bullets(
            task.files_to_modify, "(No specific files predicted; determine from context)"
        ),
        "relevant_files": _bullets(task.relevant_files, "(None specified)"),
        "progress_so_far": progress.strip() or "(No progress recorded yet)",
        "quality_gates": gates,
        "out_of_scope": out_of_scope,
    }
    return PLACEHOLDER_PATTERN.sub(
        lambda match: values.get(match.group(1), match.group(0)), _task_template()
    )


def append_failure_context(
    prompt: str,
    attempt_number: int,
    gate_output: str,
    agent_output: str,
) -> str:
    tail = agent_output[-AGENT_OUTPUT_TAIL:]
    return (
        f"{prompt}\n\n## Previous Attempt ({attempt_number}) Failed\n\n"
        f"### Gate Failures\n{gate_output or '(No gate output)'}\n\n"
        f"### Agent Output (last {AGENT_OUTPUT_TAIL} chars)\n{tail or '(No output)'}\n\n"
        "### Instructions for Retry\n"
        "- Fix the issues identified above\n"
        "- Do NOT repeat the same approach if it clearly failed\n"
        '- If the task seems impossible, explain why with "BLOCKED:" prefix\n'
    )


def blocked_reason(output: str) -> str | None:
    """Explanation following the ``BLOCKED:`` sentinel, if the agent gave up."""
    if "BLOCKED:" not in output:
        return None
    match = BLOCKED_PATTERN.search(output)
    reason = match.group(1).strip() if match else ""
    return reason or "Agent reported blocked"
