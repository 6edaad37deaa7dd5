from __future__ import annotations

from foreman.executors.base import (
    DEFAULT_PERMITTED_OPERATIONS,
    ExecuteOptions,
    ExecuteResult,
    Executor,
    SubprocessExecutor,
)
from foreman.executors.claude import ClaudeCliExecutor
from foreman.executors.codex import CodexCliExecutor

EXECUTORS: dict[str, type[SubprocessExecutor]] = {
    "claude": ClaudeCliExecutor,
    "codex": CodexCliExecutor,
}


def build_executor(backend: str, binary: str | None = None) -> SubprocessExecutor:
    try:
        executor_cls = EXECUTORS[backend]
    except KeyError as exc:
        raise ValueError(f"Unsupported executor backend: {backend}") from exc
    if binary:
        return executor_cls(binary=binary)
    return executor_cls()


__all__ = [
    "DEFAULT_PERMITTED_OPERATIONS",
    "EXECUTORS",
    "ClaudeCliExecutor",
    "CodexCliExecutor",
    "ExecuteOptions",
    "ExecuteResult",
    "Executor",
    "SubprocessExecutor",
    "build_executor",
]
