from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from foreman.vcs.base import VcsAdapter, VcsOperationError

logger = logging.getLogger(__name__)


class GitAdapter(VcsAdapter):
    def __init__(self, repo_root: Path, *, state_dir_name: str = ".foreman") -> None:
        self.repo_root = repo_root.resolve()
        self.state_dir_name = state_dir_name.strip("/")

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        proc = subprocess.run(
            command,
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            output = proc.stderr.strip() or proc.stdout.strip()
            raise VcsOperationError(
                f"git {' '.join(args)} failed: {output}",
                command=command,
                output=output,
            )
        return proc

    def is_repository(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def ensure_state_dir_excluded(self) -> None:
        """Keep the state directory out of status, stash, add and clean."""
        exclude_path = Path(self._run_git(["rev-parse", "--git-path", "info/exclude"]).stdout.strip())
        if not exclude_path.is_absolute():
            exclude_path = self.repo_root / exclude_path
        pattern = f"/{self.state_dir_name}/"
        existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude_path.write_text(f"{existing}{prefix}{pattern}\n", encoding="utf-8")

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def head_commit(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return proc.returncode == 0

    def create_branch(self, name: str) -> None:
        self._run_git(["checkout", "-b", name])

    def checkout(self, name: str) -> None:
        self._run_git(["checkout", name])

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate.strip('"')

    def uncommitted_paths(self) -> list[str]:
        proc = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = self._status_line_path(line)
            if not path or path.startswith(f"{self.state_dir_name}/"):
                continue
            paths.append(path)
        return paths

    def has_uncommitted_changes(self) -> bool:
        return bool(self.uncommitted_paths())

    def stash_push(self, message: str) -> bool:
        if not self.has_uncommitted_changes():
            return False
        before = self._run_git(["rev-parse", "--verify", "--quiet", "refs/stash"], check=False)
        self._run_git(["stash", "push", "--include-untracked", "-m", message])
        after = self._run_git(["rev-parse", "--verify", "--quiet", "refs/stash"], check=False)
        return after.returncode == 0 and after.stdout.strip() != before.stdout.strip()

    def stash_pop(self) -> None:
        self._run_git(["stash", "pop"])

    def commit_all(self, message: str, *, exclude: list[str] | None = None) -> str | None:
        pathspec = ["."] + [f":(exclude){path}" for path in exclude or []]
        self._run_git(["add", "-A", "--", *pathspec])
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return None
        self._run_git(["commit", "-m", message])
        return self.head_commit()

    def modified_files(self) -> list[str]:
        proc = self._run_git(["show", "--pretty=format:", "--name-only", "HEAD"])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def reset_working_tree(self) -> None:
        self._run_git(["reset", "--hard", "HEAD"])
        self._run_git(["clean", "-fd", "-e", self.state_dir_name])

    def conflicting_files(self) -> list[str]:
        proc = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def cherry_pick(self, commit: str) -> None:
        self._run_git(["cherry-pick", commit])

    def cherry_pick_abort(self) -> None:
        proc = self._run_git(["cherry-pick", "--abort"], check=False)
        if proc.returncode != 0:
            logger.warning("cherry-pick --abort failed: %s", proc.stderr.strip())

    def add_worktree(self, path: Path, ref: str) -> None:
        self._run_git(["worktree", "add", "--detach", str(path), ref])

    def remove_worktree(self, path: Path) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)])

    def prune_worktrees(self) -> None:
        self._run_git(["worktree", "prune"], check=False)
