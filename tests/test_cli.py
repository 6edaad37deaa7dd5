import json
import re
import subprocess
from pathlib import Path

import pytest
from click.testing import CliRunner

import foreman.cli as cli_module
from foreman.cli import cli
from foreman.config import load_config
from foreman.executors.base import ExecuteOptions, ExecuteResult, Executor

TASK_PATTERN = re.compile(r"## Your Task\s+(task_\d{3}):")

PLAN_DOCUMENT = """
title = "CLI demo"

[[tasks]]
title = "First file"
files_to_modify = ["task_001.txt"]

[[tasks]]
title = "Second file"
depends_on = [1]
files_to_modify = ["task_002.txt"]
"""


class FileWritingExecutor(Executor):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail

    async def execute(self, prompt: str, options: ExecuteOptions) -> ExecuteResult:
        match = TASK_PATTERN.search(prompt)
        assert match is not None
        if self.fail:
            return ExecuteResult(success=False, exit_code=2, output="nope")
        (options.cwd / f"{match.group(1)}.txt").write_text("ok\n", encoding="utf-8")
        return ExecuteResult(success=True, exit_code=0, output="ok")


def _run(cmd: list[str], cwd: Path) -> str:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True).stdout


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _prepare(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, CliRunner, str]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    (tmp_path / "plan.toml").write_text(PLAN_DOCUMENT, encoding="utf-8")
    imported = runner.invoke(cli, ["import", str(tmp_path / "plan.toml")])
    assert imported.exit_code == 0, imported.output
    match = re.search(r"Imported (plan_[0-9a-f]{8})", imported.output)
    assert match is not None
    return repo, runner, match.group(1)


def test_init_writes_config_state_dir_and_git_exclude(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)

    result = CliRunner().invoke(cli, ["init", "--backend", "codex"])

    assert result.exit_code == 0, result.output
    assert "Initialized foreman" in result.output
    assert load_config(repo / "foreman.toml").executor.backend == "codex"
    assert (repo / ".foreman" / "plans").is_dir()
    exclude = (repo / ".git" / "info" / "exclude").read_text(encoding="utf-8")
    assert "/.foreman/" in exclude.splitlines()
    assert "foreman.toml" in _run(["git", "status", "--porcelain"], cwd=repo)
    assert ".foreman" not in _run(["git", "status", "--porcelain", "--untracked-files=all"], cwd=repo)


def test_import_list_status_and_archive(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _repo, runner, plan_id = _prepare(tmp_path, monkeypatch)

    listed = runner.invoke(cli, ["list"])
    assert listed.exit_code == 0
    assert plan_id in listed.output
    assert "0/2 CLI demo" in listed.output

    status = runner.invoke(cli, ["status", "--json"])
    assert status.exit_code == 0
    payload = json.loads(status.output)
    assert payload["plan"]["id"] == plan_id
    assert payload["plan"]["status"] == "ready"
    assert [task["depends_on"] for task in payload["tasks"]] == [[], ["task_001"]]
    assert payload["execution"] is None

    text_status = runner.invoke(cli, ["status", plan_id])
    assert "  task_002 [pending] Second file" in text_status.output

    archived = runner.invoke(cli, ["archive", plan_id])
    assert archived.exit_code == 0
    assert plan_id not in runner.invoke(cli, ["list"]).output
    assert plan_id in runner.invoke(cli, ["list", "--all"]).output


def test_import_rejects_malformed_document(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    document = tmp_path / "broken.json"
    document.write_text(json.dumps({"title": "No tasks"}), encoding="utf-8")

    result = CliRunner().invoke(cli, ["import", str(document)])

    assert result.exit_code != 0
    assert "'tasks' must be a non-empty list" in result.output


def test_run_dry_run_prints_plan(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo, runner, plan_id = _prepare(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["run", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert f"[DRY RUN] Plan: CLI demo ({plan_id})" in result.output
    assert "task_002 [normal] Second file (after: task_001)" in result.output
    assert "prd/" not in _run(["git", "branch", "--list"], cwd=repo)


def test_run_executes_plan_with_configured_executor(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    repo, runner, plan_id = _prepare(tmp_path, monkeypatch)
    requested: list[tuple[str, str | None]] = []

    def _fake_build_executor(backend: str, binary: str | None = None) -> Executor:
        requested.append((backend, binary))
        return FileWritingExecutor()

    monkeypatch.setattr(cli_module, "build_executor", _fake_build_executor)

    result = runner.invoke(cli, ["run", plan_id, "--model", "opus"])

    assert result.exit_code == 0, result.output
    assert requested == [("claude", None)]
    assert f"Plan {plan_id}: completed" in result.output
    assert f"git merge prd/{plan_id}" in result.output
    assert _run(["git", "show", f"prd/{plan_id}:task_002.txt"], cwd=repo) == "ok\n"

    status = runner.invoke(cli, ["status", plan_id, "--verbose"])
    assert "task_001 [completed] First file (1/3 attempts)" in status.output
    assert "attempt 1 passed" in status.output
    assert "Execution finished: status completed" in status.output


def test_run_exits_non_zero_when_tasks_fail(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _repo, runner, plan_id = _prepare(tmp_path, monkeypatch)
    monkeypatch.setattr(
        cli_module, "build_executor", lambda backend, binary=None: FileWritingExecutor(fail=True)
    )

    result = runner.invoke(cli, ["run", plan_id, "--max-iterations", "1"])

    assert result.exit_code == 1
    assert f"Plan {plan_id}: failed" in result.output
    assert "Failed: 1" in result.output
    assert "Skipped: 1" in result.output


def test_run_surfaces_runner_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _repo, runner, plan_id = _prepare(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["run", plan_id, "--resume"])

    assert result.exit_code != 0
    assert "No execution state" in result.output


def test_commands_without_plans_explain_next_step(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "foreman import" in result.output
