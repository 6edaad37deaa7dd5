from __future__ import annotations

from abc import ABC, abstractmethod


class VcsOperationError(RuntimeError):
    """Raised when a version-control command exits non-zero."""

    def __init__(self, message: str, *, command: list[str] | None = None, output: str = "") -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.output = output


class VcsAdapter(ABC):
    @abstractmethod
    def current_branch(self) -> str:
        """Name of the checked-out branch."""

    @abstractmethod
    def branch_exists(self, name: str) -> bool:
        """Whether a local branch with this name exists."""

    @abstractmethod
    def create_branch(self, name: str) -> None:
        """Create a branch at HEAD and check it out."""

    @abstractmethod
    def checkout(self, name: str) -> None:
        """Check out an existing branch."""

    @abstractmethod
    def has_uncommitted_changes(self) -> bool:
        """Whether the working tree differs from HEAD."""

    @abstractmethod
    def stash_push(self, message: str) -> bool:
        """Stash working-tree changes; returns False when nothing was stashed."""

    @abstractmethod
    def stash_pop(self) -> None:
        """Restore the most recent stash entry."""

    @abstractmethod
    def commit_all(self, message: str) -> str | None:
        """Commit every change; returns the new commit id, or None if clean."""

    @abstractmethod
    def modified_files(self) -> list[str]:
        """Files touched by the last commit."""

    @abstractmethod
    def reset_working_tree(self) -> None:
        """Discard all uncommitted changes, tracked and untracked."""
