import asyncio
import os
import re
import subprocess
from pathlib import Path

import pytest

import foreman.runner as runner_module
from foreman.executors.base import ExecuteOptions, ExecuteResult, Executor
from foreman.models import Plan, QualityGate, create_gate, create_plan, create_task
from foreman.runner import RunOptions, Runner, RunnerError, StaleProcessConflict
from foreman.scheduler import GraphValidationError
from foreman.state import StateStore
from foreman.vcs import GitAdapter

TASK_PATTERN = re.compile(r"## Your Task\s+(task_\d{3}):")


class FakeExecutor(Executor):
    """Plays back scripted outcomes per task: write, stray, fail, blocked."""

    name = "fake"

    def __init__(self, script: dict[str, list[str]] | None = None) -> None:
        self.script = {task_id: list(outcomes) for task_id, outcomes in (script or {}).items()}
        self.calls: list[tuple[str, Path, str]] = []

    async def execute(self, prompt: str, options: ExecuteOptions) -> ExecuteResult:
        match = TASK_PATTERN.search(prompt)
        assert match is not None
        task_id = match.group(1)
        self.calls.append((task_id, options.cwd, prompt))
        outcomes = self.script.get(task_id) or ["write"]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if options.on_output is not None:
            options.on_output(f"{task_id}: {outcome}\n")

        if outcome == "fail":
            return ExecuteResult(success=False, exit_code=1, output="boom")
        if outcome == "blocked":
            return ExecuteResult(success=True, exit_code=0, output="BLOCKED: missing credentials")
        if outcome == "stray":
            (options.cwd / "NOTES.md").write_text("scratch\n", encoding="utf-8")
        (options.cwd / f"{task_id}.txt").write_text(f"{task_id}\n", encoding="utf-8")
        return ExecuteResult(success=True, exit_code=0, output="done")

    def calls_for(self, task_id: str) -> int:
        return sum(1 for call in self.calls if call[0] == task_id)


def _run(cmd: list[str], cwd: Path) -> str:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True).stdout


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _setup(
    tmp_path: Path,
    task_shapes: list[dict],
    *,
    gates: list[QualityGate] | None = None,
) -> tuple[Path, StateStore, GitAdapter, Plan]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    store = StateStore(repo / ".foreman")
    vcs = GitAdapter(repo)
    plan = create_plan("Demo", quality_gates=gates, status="ready")
    tasks = []
    for sequence, shape in enumerate(task_shapes, start=1):
        tasks.append(
            create_task(
                plan.id,
                sequence,
                shape.get("title", f"Task {sequence}"),
                depends_on=shape.get("depends_on"),
                priority=shape.get("priority", "normal"),
                max_attempts=shape.get("max_attempts", 3),
                files_to_modify=[f"task_{sequence:03d}.txt"],
            )
        )
    store.save_tasks(plan.id, tasks)
    store.save_plan(plan)
    return repo, store, vcs, plan


def _runner(repo: Path, store: StateStore, vcs: GitAdapter, executor: Executor) -> Runner:
    return Runner(repo_root=repo, store=store, vcs=vcs, executor=executor)


def _statuses(store: StateStore, plan_id: str) -> dict[str, str]:
    return {task.id: task.status for task in store.load_tasks(plan_id)}


def test_loop_run_completes_tasks_in_dependency_order(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(
        tmp_path,
        [{"depends_on": ["task_002"]}, {}, {}],
        gates=[create_gate("test", "test -f README.md")],
    )
    original = vcs.current_branch()
    executor = FakeExecutor()

    result = asyncio.run(_runner(repo, store, vcs, executor).run(plan.id))

    assert result.success is True
    assert result.tasks_completed == 3
    assert result.branch == f"prd/{plan.id}"
    assert [call[0] for call in executor.calls] == ["task_002", "task_001", "task_003"]
    assert vcs.current_branch() == original
    count = _run(["git", "rev-list", "--count", f"{original}..prd/{plan.id}"], cwd=repo).strip()
    assert count == "3"
    subjects = _run(["git", "log", "--pretty=%s", f"prd/{plan.id}"], cwd=repo)
    assert f"prd({plan.id}): task_002" in subjects

    saved = store.load_plan(plan.id)
    assert saved is not None
    assert saved.status == "completed"
    assert saved.completed_at is not None
    assert saved.stats.completed_tasks == 3
    tasks = store.load_tasks(plan.id)
    assert all(task.attempts[-1].status == "passed" for task in tasks)
    assert tasks[0].attempts[0].files_actually_modified == ["task_001.txt"]
    assert tasks[0].attempts[0].gate_results[0].passed is True
    progress = store.load_progress(plan.id)
    assert "Execution started" in progress
    assert "Execution finished: status completed" in progress
    assert "task_001: write" in store.get_task_log_path(plan.id, "task_001").read_text(encoding="utf-8")


def test_failed_task_skips_dependents_and_finalizes_as_failed(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{}, {"depends_on": ["task_001"]}, {}])
    executor = FakeExecutor({"task_001": ["fail"]})

    result = asyncio.run(_runner(repo, store, vcs, executor).run(plan.id))

    assert result.success is False
    assert result.paused is False
    assert _statuses(store, plan.id) == {
        "task_001": "failed",
        "task_002": "skipped",
        "task_003": "completed",
    }
    assert executor.calls_for("task_001") == 3
    assert executor.calls_for("task_002") == 0
    retry_prompt = [call[2] for call in executor.calls if call[0] == "task_001"][1]
    assert "## Previous Attempt (1) Failed" in retry_prompt
    failed = store.load_tasks(plan.id)[0]
    assert [attempt.error for attempt in failed.attempts] == ["Exit code: 1"] * 3
    saved = store.load_plan(plan.id)
    assert saved is not None
    assert saved.status == "failed"


def test_required_gate_failure_retries_then_fails(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(
        tmp_path,
        [{"max_attempts": 2}],
        gates=[create_gate("test", "false"), create_gate("lint", "false", required=False)],
    )
    executor = FakeExecutor()

    result = asyncio.run(_runner(repo, store, vcs, executor).run(plan.id))

    assert result.success is False
    task = store.load_tasks(plan.id)[0]
    assert task.status == "failed"
    assert len(task.attempts) == 2
    assert task.attempts[0].error == "Gates failed: test"
    assert "[x] test: false" in executor.calls[1][2]
    assert not (repo / "task_001.txt").exists()


def test_optional_gate_failure_does_not_block(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(
        tmp_path, [{}], gates=[create_gate("lint", "false", required=False)]
    )

    result = asyncio.run(_runner(repo, store, vcs, FakeExecutor()).run(plan.id))

    assert result.success is True


def test_unpredicted_files_are_recorded_as_a_warning(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{}])
    executor = FakeExecutor({"task_001": ["stray"]})

    result = asyncio.run(_runner(repo, store, vcs, executor).run(plan.id))

    assert result.success is True
    task = store.load_tasks(plan.id)[0]
    assert task.status == "completed"
    assert sorted(task.attempts[-1].files_actually_modified) == ["NOTES.md", "task_001.txt"]
    progress = store.load_progress(plan.id)
    assert "WARNING: Task task_001 modified unpredicted files: NOTES.md" in progress
    assert _run(["git", "show", f"prd/{plan.id}:NOTES.md"], cwd=repo) == "scratch\n"


def test_blocked_task_fails_without_retry(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{}])
    executor = FakeExecutor({"task_001": ["blocked"]})

    asyncio.run(_runner(repo, store, vcs, executor).run(plan.id))

    task = store.load_tasks(plan.id)[0]
    assert task.status == "failed"
    assert len(task.attempts) == 1
    assert task.attempts[0].error == "BLOCKED: missing credentials"


def test_critical_failure_pauses_and_resume_finishes(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(
        tmp_path, [{"priority": "critical"}, {"depends_on": ["task_001"]}]
    )
    original = vcs.current_branch()
    executor = FakeExecutor({"task_001": ["fail"]})

    paused = asyncio.run(_runner(repo, store, vcs, executor).run(plan.id))

    assert paused.paused is True
    assert paused.success is False
    assert vcs.current_branch() == original
    execution = store.load_execution(plan.id)
    assert execution is not None
    assert execution.current_task_id == "task_001"
    saved = store.load_plan(plan.id)
    assert saved is not None
    assert saved.status == "in_progress"
    assert _statuses(store, plan.id) == {"task_001": "failed", "task_002": "pending"}
    assert "PAUSED: critical task task_001 failed" in store.load_progress(plan.id)

    resumed = asyncio.run(
        _runner(repo, store, vcs, FakeExecutor()).run(plan.id, RunOptions(resume=True))
    )

    assert resumed.success is True
    assert vcs.current_branch() == f"prd/{plan.id}"
    assert _statuses(store, plan.id) == {"task_001": "completed", "task_002": "completed"}
    assert len(store.load_tasks(plan.id)[0].attempts) == 4
    progress = store.load_progress(plan.id)
    assert "Reset task_001 from failed to pending (retry on resume)" in progress
    assert f"Resumed execution (PID {os.getpid()})" in progress


def test_resume_refuses_when_another_runner_is_alive(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{"priority": "critical"}])
    asyncio.run(_runner(repo, store, vcs, FakeExecutor({"task_001": ["fail"]})).run(plan.id))
    execution = store.load_execution(plan.id)
    assert execution is not None
    execution.pid = 424242
    store.save_execution(execution)
    monkeypatch.setattr(runner_module, "is_process_running", lambda pid: pid == 424242)

    with pytest.raises(StaleProcessConflict) as excinfo:
        asyncio.run(_runner(repo, store, vcs, FakeExecutor()).run(plan.id, RunOptions(resume=True)))
    assert excinfo.value.pid == 424242

    forced = asyncio.run(
        _runner(repo, store, vcs, FakeExecutor()).run(plan.id, RunOptions(resume=True, force=True))
    )
    assert forced.success is True


def test_resume_resets_stuck_in_progress_tasks(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{"priority": "critical"}, {}])
    asyncio.run(_runner(repo, store, vcs, FakeExecutor({"task_001": ["fail"]})).run(plan.id))
    tasks = store.load_tasks(plan.id)
    tasks[1].status = "in_progress"
    store.save_tasks(plan.id, tasks)

    result = asyncio.run(
        _runner(repo, store, vcs, FakeExecutor()).run(plan.id, RunOptions(resume=True))
    )

    assert result.success is True
    assert "Reset task_002 from in_progress to pending" in store.load_progress(plan.id)


def test_resume_requires_execution_state(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{}])

    with pytest.raises(RunnerError, match="No execution state"):
        asyncio.run(_runner(repo, store, vcs, FakeExecutor()).run(plan.id, RunOptions(resume=True)))


def test_fresh_run_refuses_existing_branch(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{}])
    original = vcs.current_branch()
    _run(["git", "branch", f"prd/{plan.id}"], cwd=repo)
    executor = FakeExecutor()

    with pytest.raises(RunnerError, match="already exists"):
        asyncio.run(_runner(repo, store, vcs, executor).run(plan.id))

    assert executor.calls == []
    assert vcs.current_branch() == original
    assert store.load_execution(plan.id) is None
    saved = store.load_plan(plan.id)
    assert saved is not None
    assert saved.status == "ready"


def test_invalid_graph_is_rejected_before_any_mutation(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(
        tmp_path, [{"depends_on": ["task_002"]}, {"depends_on": ["task_001"]}]
    )

    with pytest.raises(GraphValidationError, match="Invalid task graph"):
        asyncio.run(_runner(repo, store, vcs, FakeExecutor()).run(plan.id))

    assert store.load_execution(plan.id) is None
    assert not vcs.branch_exists(f"prd/{plan.id}")


def test_dry_run_reports_plan_without_side_effects(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(
        tmp_path,
        [{}, {}, {"depends_on": ["task_001", "task_002"]}],
        gates=[create_gate("test", "pytest -q")],
    )
    executor = FakeExecutor()

    loop_report = asyncio.run(
        _runner(repo, store, vcs, executor).run(plan.id, RunOptions(dry_run=True))
    )
    team_report = asyncio.run(
        _runner(repo, store, vcs, executor).run(
            plan.id, RunOptions(dry_run=True, mode="team", concurrency=2)
        )
    )

    assert loop_report.tasks_completed == 0
    assert loop_report.report[0] == f"[DRY RUN] Plan: Demo ({plan.id})"
    assert "  task_003 [normal] Task 3 (after: task_001, task_002)" in loop_report.report
    assert "  - test: pytest -q" in loop_report.report
    assert "Mode: team (concurrency: 2)" in team_report.report
    assert "  Wave 2:" in team_report.report
    assert executor.calls == []
    assert store.load_execution(plan.id) is None
    assert not vcs.branch_exists(f"prd/{plan.id}")
    saved = store.load_plan(plan.id)
    assert saved is not None
    assert saved.status == "ready"


def test_uncommitted_changes_are_stashed_and_restored(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{}])
    (repo / "README.md").write_text("local edits\n", encoding="utf-8")

    result = asyncio.run(_runner(repo, store, vcs, FakeExecutor()).run(plan.id))

    assert result.success is True
    assert (repo / "README.md").read_text(encoding="utf-8") == "local edits\n"
    on_branch = _run(["git", "show", f"prd/{plan.id}:README.md"], cwd=repo)
    assert on_branch == "seed\n"
    assert _run(["git", "stash", "list"], cwd=repo).strip() == ""


def test_no_branch_commits_on_current_branch(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{}])
    original = vcs.current_branch()

    result = asyncio.run(
        _runner(repo, store, vcs, FakeExecutor()).run(plan.id, RunOptions(no_branch=True))
    )

    assert result.success is True
    assert result.branch == original
    assert not vcs.branch_exists(f"prd/{plan.id}")
    assert (repo / "task_001.txt").exists()
    assert vcs.has_uncommitted_changes() is False


def test_single_task_target(tmp_path: Path) -> None:
    repo, store, vcs, plan = _setup(tmp_path, [{}, {}])
    executor = FakeExecutor()

    result = asyncio.run(
        _runner(repo, store, vcs, executor).run(plan.id, RunOptions(task_id="task_002"))
    )

    assert [call[0] for call in executor.calls] == ["task_002"]
    assert _statuses(store, plan.id) == {"task_001": "pending", "task_002": "completed"}
    assert result.success is False


def test_process_probe_treats_failures_as_not_running() -> None:
    assert runner_module.is_process_running(os.getpid()) is True
    assert runner_module.is_process_running(0) is False
    assert runner_module.is_process_running(-5) is False
