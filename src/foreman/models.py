from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

PlanStatus = Literal["draft", "ready", "in_progress", "completed", "failed", "archived"]
TaskStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
AttemptStatus = Literal["running", "passed", "failed"]
Priority = Literal["normal", "critical"]
ExecutionMode = Literal["loop", "team"]
GateType = Literal["typecheck", "test", "lint", "build", "custom"]

TERMINAL_TASK_STATUSES = frozenset({"completed", "skipped"})
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_ITERATIONS = 3
DEFAULT_GATE_TIMEOUT_SECONDS = 120
BRANCH_PREFIX = "prd/"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class QualityGate:
    type: GateType
    command: str
    required: bool = True
    timeout_seconds: int = DEFAULT_GATE_TIMEOUT_SECONDS

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QualityGate:
        return cls(
            type=payload.get("type", "custom"),
            command=str(payload["command"]),
            required=bool(payload.get("required", True)),
            timeout_seconds=int(payload.get("timeout_seconds", DEFAULT_GATE_TIMEOUT_SECONDS)),
        )


@dataclass(slots=True)
class GateResult:
    gate: QualityGate
    passed: bool
    output: str
    duration_ms: int

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GateResult:
        return cls(
            gate=QualityGate.from_dict(payload["gate"]),
            passed=bool(payload["passed"]),
            output=str(payload.get("output", "")),
            duration_ms=int(payload.get("duration_ms", 0)),
        )


@dataclass(slots=True)
class TaskAttempt:
    attempt_number: int
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None
    status: AttemptStatus = "running"
    gate_results: list[GateResult] = field(default_factory=list)
    files_actually_modified: list[str] = field(default_factory=list)
    error: str | None = None
    log_path: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskAttempt:
        return cls(
            attempt_number=int(payload["attempt_number"]),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            completed_at=payload.get("completed_at"),
            status=payload.get("status", "running"),
            gate_results=[GateResult.from_dict(item) for item in payload.get("gate_results", [])],
            files_actually_modified=list(payload.get("files_actually_modified", [])),
            error=payload.get("error"),
            log_path=payload.get("log_path"),
        )

    def duration_ms(self) -> int:
        if not self.completed_at:
            return 0
        started = datetime.fromisoformat(self.started_at)
        completed = datetime.fromisoformat(self.completed_at)
        return max(0, int((completed - started).total_seconds() * 1000))


@dataclass(slots=True)
class Task:
    id: str
    plan_id: str
    sequence: int
    title: str
    description: str = ""
    status: TaskStatus = "pending"
    priority: Priority = "normal"
    depends_on: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    relevant_files: list[str] = field(default_factory=list)
    attempts: list[TaskAttempt] = field(default_factory=list)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            plan_id=str(payload["plan_id"]),
            sequence=int(payload["sequence"]),
            title=str(payload["title"]),
            description=str(payload.get("description", "")),
            status=payload.get("status", "pending"),
            priority=payload.get("priority", "normal"),
            depends_on=list(payload.get("depends_on", [])),
            acceptance_criteria=list(payload.get("acceptance_criteria", [])),
            files_to_modify=list(payload.get("files_to_modify", [])),
            relevant_files=list(payload.get("relevant_files", [])),
            attempts=[TaskAttempt.from_dict(item) for item in payload.get("attempts", [])],
            max_attempts=int(payload.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class PlanStats:
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    total_attempts: int = 0
    total_duration_ms: int = 0


@dataclass(slots=True)
class Plan:
    id: str
    title: str
    description: str = ""
    version: int = 1
    status: PlanStatus = "draft"
    execution_mode: ExecutionMode = "loop"
    goals: list[str] = field(default_factory=list)
    out_of_scope: list[str] = field(default_factory=list)
    quality_gates: list[QualityGate] = field(default_factory=list)
    stats: PlanStats = field(default_factory=PlanStats)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Plan:
        return cls(
            id=str(payload["id"]),
            title=str(payload["title"]),
            description=str(payload.get("description", "")),
            version=int(payload.get("version", 1)),
            status=payload.get("status", "draft"),
            execution_mode=payload.get("execution_mode", "loop"),
            goals=list(payload.get("goals", [])),
            out_of_scope=list(payload.get("out_of_scope", [])),
            quality_gates=[QualityGate.from_dict(item) for item in payload.get("quality_gates", [])],
            stats=PlanStats(**payload.get("stats", {})),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class Execution:
    plan_id: str
    mode: ExecutionMode
    branch: str
    original_branch: str
    pid: int
    started_at: str = field(default_factory=utcnow_iso)
    current_task_id: str | None = None
    iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    concurrency: int = 1
    stashed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Execution:
        return cls(
            plan_id=str(payload["plan_id"]),
            mode=payload.get("mode", "loop"),
            branch=str(payload["branch"]),
            original_branch=str(payload.get("original_branch", "")),
            pid=int(payload.get("pid", 0)),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            current_task_id=payload.get("current_task_id"),
            iteration=int(payload.get("iteration", 0)),
            max_iterations=int(payload.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
            concurrency=int(payload.get("concurrency", 1)),
            stashed=bool(payload.get("stashed", False)),
        )


def generate_plan_id() -> str:
    return f"plan_{uuid4().hex[:8]}"


def generate_task_id(sequence: int) -> str:
    return f"task_{sequence:03d}"


def branch_for_plan(plan_id: str, prefix: str = BRANCH_PREFIX) -> str:
    return f"{prefix}{plan_id}"


def create_plan(
    title: str,
    *,
    description: str = "",
    goals: list[str] | None = None,
    out_of_scope: list[str] | None = None,
    quality_gates: list[QualityGate] | None = None,
    execution_mode: ExecutionMode = "loop",
    status: PlanStatus = "draft",
) -> Plan:
    return Plan(
        id=generate_plan_id(),
        title=title,
        description=description,
        status=status,
        execution_mode=execution_mode,
        goals=list(goals or []),
        out_of_scope=list(out_of_scope or []),
        quality_gates=list(quality_gates or []),
    )


def create_task(
    plan_id: str,
    sequence: int,
    title: str,
    *,
    description: str = "",
    depends_on: list[str] | None = None,
    files_to_modify: list[str] | None = None,
    relevant_files: list[str] | None = None,
    acceptance_criteria: list[str] | None = None,
    priority: Priority = "normal",
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Task:
    return Task(
        id=generate_task_id(sequence),
        plan_id=plan_id,
        sequence=sequence,
        title=title,
        description=description,
        priority=priority,
        depends_on=list(depends_on or []),
        files_to_modify=list(files_to_modify or []),
        relevant_files=list(relevant_files or []),
        acceptance_criteria=list(acceptance_criteria or []),
        max_attempts=max(1, max_attempts),
    )


def create_gate(
    gate_type: GateType,
    command: str,
    *,
    required: bool = True,
    timeout_seconds: int = DEFAULT_GATE_TIMEOUT_SECONDS,
) -> QualityGate:
    return QualityGate(
        type=gate_type,
        command=command,
        required=required,
        timeout_seconds=timeout_seconds,
    )


def create_execution(
    plan_id: str,
    *,
    mode: ExecutionMode,
    original_branch: str,
    pid: int,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    concurrency: int = 1,
    branch_prefix: str = BRANCH_PREFIX,
) -> Execution:
    return Execution(
        plan_id=plan_id,
        mode=mode,
        branch=branch_for_plan(plan_id, branch_prefix),
        original_branch=original_branch,
        pid=pid,
        max_iterations=max_iterations,
        concurrency=concurrency,
    )


def compute_stats(tasks: list[Task]) -> PlanStats:
    stats = PlanStats(total_tasks=len(tasks))
    for task in tasks:
        if task.status == "completed":
            stats.completed_tasks += 1
        elif task.status == "failed":
            stats.failed_tasks += 1
        elif task.status == "skipped":
            stats.skipped_tasks += 1
        stats.total_attempts += len(task.attempts)
        stats.total_duration_ms += sum(attempt.duration_ms() for attempt in task.attempts)
    return stats
