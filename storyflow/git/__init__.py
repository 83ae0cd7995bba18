"""Git operations for storyflow.

run_git() is the single entry point for git subprocesses; worktree.py builds
the isolated per-story sandboxes on top of it.
"""

from storyflow.git.runner import GitResult, run_git, run_git_checked, GitError
from storyflow.git.worktree import (
    ExecutionSandbox,
    GitWorktreeSandbox,
    IsolatedResult,
    SandboxError,
    SandboxRef,
)

__all__ = [
    "GitResult",
    "GitError",
    "run_git",
    "run_git_checked",
    "ExecutionSandbox",
    "GitWorktreeSandbox",
    "IsolatedResult",
    "SandboxError",
    "SandboxRef",
]
