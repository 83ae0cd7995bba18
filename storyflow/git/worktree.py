"""
Per-story execution sandboxes built on git worktrees.

Each story in an epic runs in its own worktree on its own branch, so
concurrent stories never share a working directory or git index. The story's
pipeline runs there as a separate process; the orchestrator only sees its
exit code, its captured output, and the story state it leaves behind.

Layout:
  <repo>/<worktree_base>/<story_id>/            worktree checkout
  <repo>/<worktree_base>/<story_id>/.storyflow  orchestration root inside it
Branch: storyflow/<story_id>
"""

import logging
import os
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from storyflow.git.runner import GitError, WORKTREE_TIMEOUT, run_git, run_git_checked
from storyflow.lib.constants import (
    AGENTS_FILENAME,
    CONFIG_FILENAME,
    DEFAULT_ROOT_DIRNAME,
    ROOT_ENV_VAR,
    STORIES_DIRNAME,
    STORY_ID_PATTERN,
)

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "storyflow/"


class SandboxError(Exception):
    """Sandbox could not be created, verified, or removed."""

    def __init__(self, story_id: str, message: str):
        self.story_id = story_id
        super().__init__(f"Sandbox for {story_id}: {message}")


@dataclass
class SandboxRef:
    """Handle to a created sandbox."""
    story_id: str
    path: Path
    branch: str
    resumed: bool = False

    @property
    def root(self) -> Path:
        """Orchestration root inside the sandbox."""
        return self.path / DEFAULT_ROOT_DIRNAME


@dataclass
class IsolatedResult:
    """Exit code and captured output of a sandboxed process."""
    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ExecutionSandbox(ABC):
    """Create/remove/run contract the phase executor depends on."""

    @abstractmethod
    def create(self, story_id: str, resume_if_exists: bool = True) -> SandboxRef:
        """Create (or reuse) the sandbox. Raises SandboxError."""

    @abstractmethod
    def remove(self, ref: SandboxRef, force: bool = False) -> None:
        """Tear down the sandbox. Raises SandboxError."""

    @abstractmethod
    def run_isolated(self, ref: SandboxRef, command: list[str], timeout: Optional[int] = None) -> IsolatedResult:
        """Run a command inside the sandbox, capturing its output."""

    def exists(self, ref: SandboxRef) -> bool:
        return ref.path.is_dir()


class GitWorktreeSandbox(ExecutionSandbox):
    """Sandboxes as git worktrees of the repository that owns `root`."""

    def __init__(self, root: Path, worktree_base: str = ".storyflow-worktrees"):
        self.root = root
        self.repo_path = root.parent
        self.base_dir = self.repo_path / worktree_base

    def worktree_path(self, story_id: str) -> Path:
        return self.base_dir / story_id

    def _is_registered(self, path: Path) -> bool:
        result = run_git(["worktree", "list", "--porcelain"], self.repo_path)
        if not result.success:
            return False
        target = str(path.resolve())
        for line in result.stdout.splitlines():
            if line.startswith("worktree ") and str(Path(line[len("worktree "):]).resolve()) == target:
                return True
        return False

    def _branch_exists(self, branch: str) -> bool:
        return run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], self.repo_path).success

    def create(self, story_id: str, resume_if_exists: bool = True) -> SandboxRef:
        if not STORY_ID_PATTERN.match(story_id):
            raise SandboxError(story_id, "invalid story id for a worktree name")

        path = self.worktree_path(story_id)
        branch = f"{BRANCH_PREFIX}{story_id}"

        if path.exists():
            if resume_if_exists and self._is_registered(path):
                logger.info(f"[Sandbox] Resuming existing worktree for {story_id} at {path}")
                ref = SandboxRef(story_id=story_id, path=path, branch=branch, resumed=True)
                self._seed_story_state(ref)
                return ref
            raise SandboxError(story_id, f"{path} exists but is not a reusable worktree")

        # Clear stale registrations left by worktrees deleted out from under git
        run_git(["worktree", "prune"], self.repo_path)
        self.base_dir.mkdir(parents=True, exist_ok=True)

        if self._branch_exists(branch):
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path), "HEAD"]

        try:
            run_git_checked(args, self.repo_path, timeout=WORKTREE_TIMEOUT)
        except GitError as e:
            raise SandboxError(story_id, str(e)) from e

        logger.info(f"[Sandbox] Created worktree for {story_id} at {path} on {branch}")
        ref = SandboxRef(story_id=story_id, path=path, branch=branch)
        self._seed_story_state(ref)
        return ref

    def _seed_story_state(self, ref: SandboxRef) -> None:
        """Copy the story and config into the sandbox when git didn't bring them.

        Orchestration state is often untracked, in which case the fresh
        checkout has no story to run. Files already present are left alone
        so a resumed sandbox keeps its progress.
        """
        copies = [
            (self.root / STORIES_DIRNAME / f"{ref.story_id}.json",
             ref.root / STORIES_DIRNAME / f"{ref.story_id}.json"),
            (self.root / CONFIG_FILENAME, ref.root / CONFIG_FILENAME),
            (self.root / AGENTS_FILENAME, ref.root / AGENTS_FILENAME),
        ]
        try:
            for src, dest in copies:
                if src.exists() and not dest.exists():
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, dest)
        except OSError as e:
            raise SandboxError(ref.story_id, f"failed to seed story state: {e}") from e

    def remove(self, ref: SandboxRef, force: bool = False) -> None:
        args = ["worktree", "remove", str(ref.path)]
        if force:
            args.append("--force")

        result = run_git(args, self.repo_path, timeout=WORKTREE_TIMEOUT)
        if not result.success:
            raise SandboxError(ref.story_id, f"worktree remove failed: {result.detail}")
        run_git(["worktree", "prune"], self.repo_path)

        # Forced teardown follows a merge that deleted the remote branch
        if force and self._branch_exists(ref.branch):
            branch_result = run_git(["branch", "-D", ref.branch], self.repo_path)
            if not branch_result.success:
                logger.warning(f"[Sandbox] Could not delete branch {ref.branch}: {branch_result.detail}")

        logger.info(f"[Sandbox] Removed worktree for {ref.story_id}")

    def run_isolated(self, ref: SandboxRef, command: list[str], timeout: Optional[int] = None) -> IsolatedResult:
        env = os.environ.copy()
        env[ROOT_ENV_VAR] = str(ref.root)

        start = time.time()
        try:
            result = subprocess.run(
                command,
                cwd=str(ref.path),
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return IsolatedResult(
                exit_code=-1,
                stdout=e.stdout if isinstance(e.stdout, str) else "",
                stderr=f"Timed out after {timeout}s",
                duration=time.time() - start,
            )
        except OSError as e:
            return IsolatedResult(exit_code=-1, stdout="", stderr=str(e), duration=time.time() - start)

        return IsolatedResult(
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=time.time() - start,
        )
