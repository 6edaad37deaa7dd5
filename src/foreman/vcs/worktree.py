from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from foreman.vcs.base import VcsOperationError
from foreman.vcs.git import GitAdapter

logger = logging.getLogger(__name__)

SHARED_DEPENDENCY_DIRS = ("node_modules", ".venv")


@dataclass(slots=True)
class MergeResult:
    success: bool
    commit: str | None = None
    conflict_files: list[str] = field(default_factory=list)
    error: str | None = None


class WorktreeManager:
    """Detached git worktrees, one per parallel task, under the state directory."""

    def __init__(self, repo: GitAdapter, worktrees_dir: Path) -> None:
        self.repo = repo
        self.worktrees_dir = worktrees_dir

    def path_for(self, task_id: str) -> Path:
        return self.worktrees_dir / task_id

    def create(self, task_id: str, base_ref: str) -> Path:
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(task_id)
        if path.exists():
            self.remove(task_id)
        self.repo.add_worktree(path, base_ref)
        self._link_dependencies(path)
        return path

    def _link_dependencies(self, path: Path) -> None:
        for name in SHARED_DEPENDENCY_DIRS:
            source = self.repo.repo_root / name
            target = path / name
            if not source.is_dir() or target.exists():
                continue
            try:
                os.symlink(source, target, target_is_directory=True)
            except OSError as exc:
                logger.warning("Could not link %s into %s: %s", name, path, exc)

    def merge_changes(self, path: Path, message: str) -> MergeResult:
        """Commit the worktree's changes and cherry-pick them onto the shared branch."""
        worker = GitAdapter(path, state_dir_name=self.repo.state_dir_name)
        try:
            commit = worker.commit_all(message, exclude=list(SHARED_DEPENDENCY_DIRS))
        except VcsOperationError as exc:
            return MergeResult(success=False, error=exc.output or str(exc))
        if commit is None:
            return MergeResult(success=True)

        try:
            self.repo.cherry_pick(commit)
        except VcsOperationError as exc:
            conflicts = self.repo.conflicting_files()
            self.repo.cherry_pick_abort()
            return MergeResult(
                success=False,
                conflict_files=conflicts,
                error=exc.output or str(exc),
            )
        return MergeResult(success=True, commit=self.repo.head_commit())

    def remove(self, task_id: str) -> None:
        path = self.path_for(task_id)
        try:
            self.repo.remove_worktree(path)
        except VcsOperationError as exc:
            logger.debug("worktree remove failed for %s: %s", task_id, exc.output)
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            self.repo.prune_worktrees()

    def cleanup_all(self) -> list[str]:
        removed: list[str] = []
        if self.worktrees_dir.is_dir():
            for entry in sorted(self.worktrees_dir.iterdir()):
                if entry.name.startswith("task_"):
                    self.remove(entry.name)
                    removed.append(entry.name)
        self.repo.prune_worktrees()
        return removed
