"""
Git subprocess helper.

Every git call in storyflow goes through run_git() so that each one carries a
timeout and comes back as a GitResult. Worktree add/remove get a longer
timeout than queries.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TIMEOUT = 30
WORKTREE_TIMEOUT = 120  # Checkouts of large repos are slow


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def detail(self) -> str:
        """Most useful text for an error message."""
        return self.stderr.strip() or self.stdout.strip() or f"exit {self.returncode}"


class GitError(Exception):
    """A git command that had to succeed did not."""

    def __init__(self, git_args: list[str], result: GitResult):
        self.git_args = list(git_args)
        self.result = result
        super().__init__(f"git {' '.join(git_args)} failed: {result.detail}")


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT, check: bool = False) -> GitResult:
    """Run `git -C <cwd> <args>`.

    A timeout is reported as a failed result with timed_out set. With
    check=True any failure raises GitError instead of being returned.
    """
    cmd = ["git", "-C", str(cwd), *args]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        result = GitResult(proc.returncode, proc.stdout, proc.stderr)
    except subprocess.TimeoutExpired:
        result = GitResult(-1, "", f"Command timed out after {timeout}s", timed_out=True)

    if check and not result.success:
        raise GitError(args, result)
    return result


def run_git_checked(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    return run_git(args, cwd, timeout, check=True)
