from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from foreman.executors.base import DEFAULT_PERMITTED_OPERATIONS
from foreman.models import BRANCH_PREFIX, ExecutionMode

BackendName = Literal["claude", "codex"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
DEFAULT_CONFIG_FILE = "foreman.toml"


@dataclass(slots=True)
class RunConfig:
    mode: ExecutionMode = "loop"
    concurrency: int = 3
    max_iterations: int = 3
    task_timeout_seconds: float = 900.0
    branch_prefix: str = BRANCH_PREFIX


@dataclass(slots=True)
class ExecutorConfig:
    backend: BackendName = "claude"
    binary: str = ""
    model: str = "sonnet"
    permission_mode: str = "acceptEdits"
    permitted_operations: list[str] = field(
        default_factory=lambda: list(DEFAULT_PERMITTED_OPERATIONS)
    )


@dataclass(slots=True)
class GatesConfig:
    default_timeout_seconds: int = 120


@dataclass(slots=True)
class StateConfig:
    dir: str = ".foreman"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class ForemanConfig:
    run: RunConfig = field(default_factory=RunConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        return cls(
            run=RunConfig(**data.get("run", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            gates=GatesConfig(**data.get("gates", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "run": {
                "mode": self.run.mode,
                "concurrency": self.run.concurrency,
                "max_iterations": self.run.max_iterations,
                "task_timeout_seconds": self.run.task_timeout_seconds,
                "branch_prefix": self.run.branch_prefix,
            },
            "executor": {
                "backend": self.executor.backend,
                "binary": self.executor.binary,
                "model": self.executor.model,
                "permission_mode": self.executor.permission_mode,
                "permitted_operations": list(self.executor.permitted_operations),
            },
            "gates": {
                "default_timeout_seconds": self.gates.default_timeout_seconds,
            },
            "state": {
                "dir": self.state.dir,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("run", "executor", "gates", "state", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
