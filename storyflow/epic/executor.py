"""
Concurrent phase executor.

Runs one phase of an epic: every story gets its own sandbox and its own
pipeline process, with at most max_concurrent running at a time. A freed
slot is refilled as soon as any running story finishes, so a phase takes
roughly ceil(n / max_concurrent) story-durations rather than n.

A story succeeds only if its pipeline exits 0 AND the story state it leaves
in the sandbox says done with reviews complete. Exit codes alone are not
trusted: an agent can exit cleanly without finishing its work.
"""

import logging
import sys
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from storyflow.git.worktree import ExecutionSandbox, SandboxError, SandboxRef
from storyflow.lib.config import StoryflowConfig
from storyflow.lib.constants import STATUS_DONE
from storyflow.lib.github import MergeCollaborator
from storyflow.lib.story_log import StoryLog
from storyflow.pm.models import Story
from storyflow.pm.stories import JsonStoryRepository, StoryPersistenceError, StoryRepository

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


class FailureKind(Enum):
    """Why a story did not succeed. Each maps to a distinct diagnostic."""
    DEPENDENCY = "dependency"
    BUSY = "busy"
    SANDBOX = "sandbox"
    SUBPROCESS = "subprocess"
    POST_VERIFICATION = "post_verification"
    CHECK_TIMEOUT = "check_timeout"
    CHECK_FAILURE = "check_failure"
    MERGE = "merge"
    UNEXPECTED = "unexpected"


@dataclass
class StoryOutcome:
    story_id: str
    status: str
    reason: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    duration: float = 0.0
    pr_url: Optional[str] = None


@dataclass
class PhaseResult:
    succeeded: list[StoryOutcome] = field(default_factory=list)
    failed: list[StoryOutcome] = field(default_factory=list)
    skipped: list[StoryOutcome] = field(default_factory=list)

    def add(self, outcome: StoryOutcome) -> None:
        {
            OUTCOME_SUCCEEDED: self.succeeded,
            OUTCOME_FAILED: self.failed,
            OUTCOME_SKIPPED: self.skipped,
        }[outcome.status].append(outcome)

    @property
    def succeeded_ids(self) -> list[str]:
        return [o.story_id for o in self.succeeded]

    @property
    def failed_ids(self) -> list[str]:
        return [o.story_id for o in self.failed]

    @property
    def skipped_ids(self) -> list[str]:
        return [o.story_id for o in self.skipped]


def default_story_command(story: Story) -> list[str]:
    """Full pipeline for one story, run inside its sandbox."""
    return [sys.executable, "-m", "storyflow", "run", "--story", story.id, "--auto", "--no-worktree"]


def first_failed_dependency(story: Story, failed_deps: set[str]) -> Optional[str]:
    for dep in story.dependencies:
        if dep in failed_deps:
            return dep
    return None


class PhaseExecutor:
    """Runs phases of stories in sandboxes with bounded concurrency."""

    def __init__(
        self,
        root: Path,
        repository: StoryRepository,
        sandbox: ExecutionSandbox,
        config: StoryflowConfig,
        merger: Optional[MergeCollaborator] = None,
        command_builder: Callable[[Story], list[str]] = default_story_command,
        story_timeout: Optional[int] = None,
    ):
        self.root = root
        self.repository = repository
        self.sandbox = sandbox
        self.config = config
        self.merger = merger
        self.command_builder = command_builder
        self.story_timeout = story_timeout
        self._active_ids: set[str] = set()
        self._active_lock = threading.Lock()

    @property
    def active_ids(self) -> set[str]:
        with self._active_lock:
            return set(self._active_ids)

    def execute_phase(self, stories: list[Story], max_concurrent: int, failed_deps: set[str]) -> PhaseResult:
        """Run a phase. Stories that fail are added to failed_deps.

        Raises:
            ValueError: if max_concurrent < 1
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")

        queue = deque(stories)
        result = PhaseResult()
        active = {}

        with ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="storyflow-story") as pool:
            while queue or active:
                while queue and len(active) < max_concurrent:
                    story = queue.popleft()
                    # Siblings may have failed since this phase was filtered
                    failed_dep = first_failed_dependency(story, failed_deps)
                    if failed_dep:
                        logger.info(f"[Executor] Skipping {story.id}: dependency {failed_dep} failed")
                        result.add(StoryOutcome(
                            story_id=story.id,
                            status=OUTCOME_SKIPPED,
                            reason=f"Dependency failed: {failed_dep}",
                            failure_kind=FailureKind.DEPENDENCY,
                        ))
                        continue
                    active[pool.submit(self.process_story, story)] = story

                if not active:
                    break

                done, _ = wait(active, return_when=FIRST_COMPLETED)
                for future in done:
                    story = active.pop(future)
                    try:
                        outcome = future.result()
                    except Exception as e:
                        logger.exception(f"[Executor] Unexpected error running {story.id}")
                        outcome = StoryOutcome(
                            story_id=story.id,
                            status=OUTCOME_FAILED,
                            reason=f"Unexpected error: {e}",
                            failure_kind=FailureKind.UNEXPECTED,
                        )
                    if outcome.status == OUTCOME_FAILED:
                        failed_deps.add(story.id)
                    self._report(outcome)
                    result.add(outcome)

        return result

    def _report(self, outcome: StoryOutcome) -> None:
        if outcome.status == OUTCOME_SUCCEEDED:
            print(f"  ✓ {outcome.story_id} completed ({outcome.duration:.1f}s)")
        elif outcome.status == OUTCOME_FAILED:
            print(f"  ✗ {outcome.story_id} failed: {outcome.reason}")

    def _claim(self, story_id: str) -> bool:
        with self._active_lock:
            if story_id in self._active_ids:
                return False
            self._active_ids.add(story_id)
            return True

    def _release(self, story_id: str) -> None:
        with self._active_lock:
            self._active_ids.discard(story_id)

    def process_story(self, story: Story) -> StoryOutcome:
        """Run one story end to end. Never raises for per-story failures."""
        if not self._claim(story.id):
            return StoryOutcome(
                story_id=story.id,
                status=OUTCOME_FAILED,
                reason="Story is already running",
                failure_kind=FailureKind.BUSY,
            )
        try:
            return self._run_story(story)
        finally:
            self._release(story.id)

    def _fail(self, story: Story, log: StoryLog, start: float, kind: FailureKind, reason: str) -> StoryOutcome:
        log.log(f"FAILED ({kind.value}): {reason}", level="ERROR")
        logger.warning(f"[Executor] {story.id} failed ({kind.value}): {reason}")
        return StoryOutcome(
            story_id=story.id,
            status=OUTCOME_FAILED,
            reason=reason,
            failure_kind=kind,
            duration=time.time() - start,
        )

    def _run_story(self, story: Story) -> StoryOutcome:
        start = time.time()
        log = StoryLog(self.root, story.id, "epic")
        log.log(f"Starting story {story.id}: {story.title}")

        try:
            ref = self.sandbox.create(story.id, resume_if_exists=True)
        except SandboxError as e:
            return self._fail(story, log, start, FailureKind.SANDBOX, f"Sandbox creation failed: {e}")
        if not self.sandbox.exists(ref):
            return self._fail(story, log, start, FailureKind.SANDBOX,
                              f"Sandbox creation failed: {ref.path} does not exist")

        print(f"  ▶ {story.id} started in {ref.path}")
        command = self.command_builder(story)
        log.log(f"Running: {' '.join(command)} (cwd={ref.path})")
        run = self.sandbox.run_isolated(ref, command, timeout=self.story_timeout)
        log.log_output("pipeline", run.exit_code, run.stdout, run.stderr, run.duration)

        if not run.success:
            detail = run.stderr.strip().splitlines()[-1] if run.stderr.strip() else ""
            reason = f"Process exited with code {run.exit_code}" + (f": {detail}" if detail else "")
            return self._fail(story, log, start, FailureKind.SUBPROCESS, reason)

        sandbox_story, mismatch = self._post_verify(ref, story.id)
        if mismatch:
            return self._fail(story, log, start, FailureKind.POST_VERIFICATION,
                              f"Post-verification failed: {mismatch}")

        if self.config.merge.enabled and sandbox_story.pr_merged:
            log.log(f"PR {sandbox_story.pr_url} already merged; skipping merge")
        elif self.config.merge.enabled and sandbox_story.pr_url:
            failure = self._merge(sandbox_story, log)
            if failure:
                kind, reason = failure
                self._sync_back(sandbox_story, log)
                return self._fail(story, log, start, kind, reason)
        elif self.config.merge.enabled:
            log.log("Merge enabled but story has no PR; skipping merge")

        self._sync_back(sandbox_story, log)
        # The merge already deleted the branch, so a plain remove would refuse
        self._teardown(ref, log, force=sandbox_story.pr_merged and self.config.merge.delete_branch)

        duration = time.time() - start
        log.log(f"Completed in {duration:.1f}s")
        return StoryOutcome(
            story_id=story.id,
            status=OUTCOME_SUCCEEDED,
            duration=duration,
            pr_url=sandbox_story.pr_url,
        )

    def _post_verify(self, ref: SandboxRef, story_id: str) -> tuple[Optional[Story], Optional[str]]:
        """Re-read the story inside the sandbox. Returns (story, mismatch)."""
        sandbox_story = JsonStoryRepository(ref.root).load(story_id)
        if sandbox_story is None:
            return None, "story state could not be read from the sandbox"
        if sandbox_story.status != STATUS_DONE or not sandbox_story.reviews_complete:
            return sandbox_story, (
                f"pipeline exited 0 but story is status={sandbox_story.status}, "
                f"reviews_complete={sandbox_story.reviews_complete}"
            )
        return sandbox_story, None

    def _merge(self, story: Story, log: StoryLog) -> Optional[tuple[FailureKind, str]]:
        """Wait for checks then merge. Returns (kind, reason) on failure."""
        merge_config = self.config.merge
        if self.merger is None:
            return FailureKind.MERGE, "Merge enabled but no merge collaborator configured"

        log.log(f"Waiting for checks on {story.pr_url}")
        checks = self.merger.wait_for_checks(
            story.pr_url,
            timeout=merge_config.checks_timeout,
            poll_interval=merge_config.checks_poll_interval,
            require_all=merge_config.require_all_checks,
        )
        if checks.timed_out:
            return FailureKind.CHECK_TIMEOUT, f"CI checks timed out after {merge_config.checks_timeout}s"
        if not checks.all_passed:
            return FailureKind.CHECK_FAILURE, f"CI checks failed: {checks.error or 'unknown'}"

        merged = self.merger.merge(story.pr_url, strategy=merge_config.strategy,
                                   delete_branch=merge_config.delete_branch)
        if not merged.success:
            return FailureKind.MERGE, f"Merge failed: {merged.error or 'unknown'}"

        story.pr_merged = True
        story.merge_sha = merged.merge_sha
        log.log(f"Merged {story.pr_url} ({merged.merge_sha or 'sha unknown'})")
        return None

    def _sync_back(self, sandbox_story: Story, log: StoryLog) -> None:
        """Copy the sandbox's final story state into the main repository."""
        try:
            self.repository.save(sandbox_story)
        except StoryPersistenceError as e:
            log.log(f"Could not sync story state back: {e}", level="WARNING")
            logger.warning(f"[Executor] {e}")

    def _teardown(self, ref: SandboxRef, log: StoryLog, force: bool = False) -> None:
        if self.config.epic.keep_worktrees:
            log.log(f"Keeping sandbox at {ref.path}")
            return
        try:
            self.sandbox.remove(ref, force=force)
            log.log(f"Removed sandbox {ref.path}")
        except SandboxError as e:
            log.log(f"Sandbox cleanup failed: {e}", level="WARNING")
            logger.warning(f"[Executor] {e}")
