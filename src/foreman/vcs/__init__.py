from foreman.vcs.base import VcsAdapter, VcsOperationError
from foreman.vcs.git import GitAdapter
from foreman.vcs.worktree import MergeResult, WorktreeManager

__all__ = [
    "GitAdapter",
    "MergeResult",
    "VcsAdapter",
    "VcsOperationError",
    "WorktreeManager",
]
