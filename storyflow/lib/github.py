"""
GitHub integration for merge-on-success.

Waits for a PR's CI checks and merges it via the gh CLI. Used by the epic
executor when MERGE_ENABLED is set so that dependent stories start from a
main branch that already contains their dependencies.
"""

import json
import logging
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, NamedTuple, Optional

logger = logging.getLogger(__name__)


# Timeout for individual GitHub CLI calls (seconds)
GH_TIMEOUT_SECONDS = 30

CHECKS_SUCCESS = "success"
CHECKS_FAILURE = "failure"
CHECKS_PENDING = "pending"

MERGE_FLAGS = {
    "squash": "--squash",
    "merge": "--merge",
    "rebase": "--rebase",
}


class ChecksStatus(NamedTuple):
    """Aggregate CI state of a PR."""
    status: str | None  # "success", "failure", "pending", None when there are no checks
    failed: list[str]
    pending: list[str]
    error: str | None = None


@dataclass
class ChecksResult:
    all_passed: bool
    timed_out: bool = False
    error: Optional[str] = None


@dataclass
class MergeResult:
    success: bool
    merge_sha: Optional[str] = None
    error: Optional[str] = None


class MergeCollaborator(ABC):
    """CI/merge contract the phase executor depends on."""

    @abstractmethod
    def wait_for_checks(self, pr_url: str, timeout: int, poll_interval: int,
                        require_all: bool = True) -> ChecksResult:
        """Block until checks pass, fail, or the timeout elapses."""

    @abstractmethod
    def merge(self, pr_url: str, strategy: str = "squash", delete_branch: bool = True) -> MergeResult:
        """Merge the PR."""


def _run_gh(args: list[str], cwd: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["gh"] + args,
        capture_output=True,
        text=True,
        cwd=str(cwd),
        timeout=GH_TIMEOUT_SECONDS,
    )


def get_checks_status(repo_path: Path, pr_ref: str) -> ChecksStatus:
    """Read statusCheckRollup for a PR (number or URL).

    Returns ChecksStatus with error field set on failure.
    """
    try:
        result = _run_gh(["pr", "view", pr_ref, "--json", "statusCheckRollup"], repo_path)
        if result.returncode != 0:
            return ChecksStatus(None, [], [], error=result.stderr.strip())
        data = json.loads(result.stdout)
    except subprocess.TimeoutExpired:
        return ChecksStatus(None, [], [], error="GitHub API timeout")
    except (json.JSONDecodeError, OSError) as e:
        return ChecksStatus(None, [], [], error=f"Invalid response from GitHub: {e}")

    failed, pending = [], []
    checks = data.get("statusCheckRollup") or []
    for check in checks:
        name = check.get("name") or check.get("context") or "unnamed"
        # CheckRun has status+conclusion; StatusContext only has state
        state = (check.get("conclusion") or check.get("state") or check.get("status") or "").lower()
        if state in ("success", "neutral", "skipped"):
            continue
        if state in ("failure", "failed", "error", "cancelled", "timed_out", "action_required"):
            failed.append(name)
        else:
            pending.append(name)

    if not checks:
        status = None
    elif failed:
        status = CHECKS_FAILURE
    elif pending:
        status = CHECKS_PENDING
    else:
        status = CHECKS_SUCCESS
    return ChecksStatus(status, failed, pending)


class GhMergeCollaborator(MergeCollaborator):
    """Checks and merges through the gh CLI."""

    def __init__(
        self,
        repo_path: Path,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repo_path = repo_path
        self._sleep = sleep
        self._clock = clock

    def wait_for_checks(self, pr_url: str, timeout: int, poll_interval: int,
                        require_all: bool = True) -> ChecksResult:
        """Poll until checks settle.

        With require_all, every check must pass; otherwise pending checks
        are ignored and only failures count. A PR without checks passes.
        """
        deadline = self._clock() + timeout

        while True:
            status = get_checks_status(self.repo_path, pr_url)
            if status.error:
                logger.warning(f"[Merge] Could not read checks for {pr_url}: {status.error}")
            elif status.status == CHECKS_FAILURE:
                return ChecksResult(all_passed=False, error=f"Failed checks: {', '.join(status.failed)}")
            elif status.status in (None, CHECKS_SUCCESS):
                return ChecksResult(all_passed=True)
            elif not require_all:
                return ChecksResult(all_passed=True)

            if self._clock() >= deadline:
                pending = ", ".join(status.pending) if status.pending else "unknown"
                return ChecksResult(all_passed=False, timed_out=True,
                                    error=f"Checks still pending after {timeout}s: {pending}")

            logger.info(f"[Merge] Waiting for checks on {pr_url} ({len(status.pending)} pending)")
            self._sleep(poll_interval)

    def merge(self, pr_url: str, strategy: str = "squash", delete_branch: bool = True) -> MergeResult:
        args = ["pr", "merge", pr_url, MERGE_FLAGS.get(strategy, "--squash")]
        if delete_branch:
            args.append("--delete-branch")

        try:
            result = _run_gh(args, self.repo_path)
        except subprocess.TimeoutExpired:
            return MergeResult(success=False, error="Merge operation timed out")
        except OSError as e:
            return MergeResult(success=False, error=f"Merge operation failed: {e}")

        if result.returncode != 0:
            return MergeResult(success=False, error=result.stderr.strip() or "gh pr merge failed")

        return MergeResult(success=True, merge_sha=self._merge_commit(pr_url))

    def _merge_commit(self, pr_url: str) -> Optional[str]:
        """Best-effort lookup of the merge commit sha."""
        try:
            result = _run_gh(["pr", "view", pr_url, "--json", "mergeCommit"], self.repo_path)
            if result.returncode != 0:
                return None
            commit = json.loads(result.stdout).get("mergeCommit") or {}
            return commit.get("oid")
        except (subprocess.TimeoutExpired, json.JSONDecodeError, OSError) as e:
            logger.warning(f"[Merge] Could not read merge commit for {pr_url}: {e}")
            return None
