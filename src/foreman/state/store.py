from __future__ import annotations

import json
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foreman.models import Execution, Plan, Task, utcnow_iso


class StateStoreError(RuntimeError):
    """Raised when persisted run state cannot be read or written."""


class StateStore:
    """Plan, task and execution records as JSON files under ``<root>/plans``."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.plans_dir = self.root / "plans"
        self.index_file = self.plans_dir / "index.json"

    def plan_dir(self, plan_id: str) -> Path:
        return self.plans_dir / plan_id

    def _plan_file(self, plan_id: str) -> Path:
        return self.plan_dir(plan_id) / "plan.json"

    def _tasks_file(self, plan_id: str) -> Path:
        return self.plan_dir(plan_id) / "tasks.json"

    def _execution_file(self, plan_id: str) -> Path:
        return self.plan_dir(plan_id) / "execution.json"

    def _progress_file(self, plan_id: str) -> Path:
        return self.plan_dir(plan_id) / "progress.md"

    def _logs_dir(self, plan_id: str) -> Path:
        return self.plan_dir(plan_id) / "logs"

    def _ensure_plan_dir(self, plan_id: str) -> None:
        self._logs_dir(plan_id).mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _write_json(path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise

    @staticmethod
    def _read_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt state file {path}: {exc}") from exc

    def _load_index(self) -> list[dict[str, Any]]:
        payload = self._read_json(self.index_file)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StateStoreError(f"Corrupt plan index {self.index_file}: expected a list")
        return [entry for entry in payload if isinstance(entry, dict)]

    def _upsert_index(self, plan: Plan) -> None:
        entry = {
            "id": plan.id,
            "title": plan.title,
            "status": plan.status,
            "execution_mode": plan.execution_mode,
            "total_tasks": plan.stats.total_tasks,
            "completed_tasks": plan.stats.completed_tasks,
            "created_at": plan.created_at,
            "updated_at": plan.updated_at,
        }
        entries = [item for item in self._load_index() if item.get("id") != plan.id]
        entries.append(entry)
        self._write_json(self.index_file, entries)

    def save_plan(self, plan: Plan) -> None:
        self._ensure_plan_dir(plan.id)
        plan.updated_at = utcnow_iso()
        self._write_json(self._plan_file(plan.id), plan.to_dict())
        self._upsert_index(plan)

    def load_plan(self, plan_id: str) -> Plan | None:
        payload = self._read_json(self._plan_file(plan_id))
        if payload is None:
            return None
        try:
            return Plan.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(f"Invalid plan record for {plan_id}: {exc}") from exc

    def save_tasks(self, plan_id: str, tasks: list[Task]) -> None:
        self._ensure_plan_dir(plan_id)
        self._write_json(self._tasks_file(plan_id), [task.to_dict() for task in tasks])

    def load_tasks(self, plan_id: str) -> list[Task]:
        payload = self._read_json(self._tasks_file(plan_id))
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StateStoreError(f"Invalid task list for {plan_id}: expected a list")
        try:
            return [Task.from_dict(item) for item in payload]
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(f"Invalid task record for {plan_id}: {exc}") from exc

    def save_execution(self, execution: Execution) -> None:
        self._ensure_plan_dir(execution.plan_id)
        self._write_json(self._execution_file(execution.plan_id), execution.to_dict())

    def load_execution(self, plan_id: str) -> Execution | None:
        payload = self._read_json(self._execution_file(plan_id))
        if payload is None:
            return None
        try:
            return Execution.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(f"Invalid execution record for {plan_id}: {exc}") from exc

    def append_progress(self, plan_id: str, line: str) -> None:
        self._ensure_plan_dir(plan_id)
        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        with self._progress_file(plan_id).open("a", encoding="utf-8") as handle:
            handle.write(f"[{timestamp}] {line}\n")

    def load_progress(self, plan_id: str) -> str:
        path = self._progress_file(plan_id)
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def get_task_log_path(self, plan_id: str, task_id: str) -> Path:
        self._ensure_plan_dir(plan_id)
        return self._logs_dir(plan_id) / f"{task_id}.log"

    def append_task_log(self, plan_id: str, task_id: str, chunk: str) -> None:
        with self.get_task_log_path(plan_id, task_id).open("a", encoding="utf-8") as handle:
            handle.write(chunk)

    def list_plans(self, include_archived: bool = False) -> list[dict[str, Any]]:
        entries = self._load_index()
        if include_archived:
            return entries
        return [entry for entry in entries if entry.get("status") != "archived"]

    def find_latest_plan(self) -> str | None:
        entries = self.list_plans()
        if not entries:
            return None
        latest = max(entries, key=lambda entry: str(entry.get("updated_at", "")))
        return str(latest["id"])
