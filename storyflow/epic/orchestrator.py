"""
Epic orchestration.

Runs every story labelled epic-<id> to completion: validate the dependency
graph, level it into phases, then execute the phases in order with the
concurrent phase executor. Failures and skips propagate forward: a story
whose dependency failed or was skipped is skipped too.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from storyflow.epic.dependencies import group_into_phases, validate_dependencies
from storyflow.epic.executor import PhaseExecutor
from storyflow.lib.config import StoryflowConfig
from storyflow.lib.constants import EPIC_LABEL_PREFIX, STATUS_DONE
from storyflow.pm.models import Story
from storyflow.pm.stories import StoryRepository

logger = logging.getLogger(__name__)


@dataclass
class EpicSummary:
    """Aggregate result of one epic run. Derived, never persisted."""
    epic_id: str
    total_stories: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    duration: float = 0.0
    failed_stories: list[tuple[str, str]] = field(default_factory=list)
    skipped_stories: list[tuple[str, str]] = field(default_factory=list)
    completed_stories: list[str] = field(default_factory=list)
    validation_errors: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed > 0 or self.validation_errors else 0


def normalize_epic_id(epic_id: str) -> str:
    """'epic-auth' and 'auth' name the same epic."""
    if epic_id.startswith(EPIC_LABEL_PREFIX):
        return epic_id[len(EPIC_LABEL_PREFIX):]
    return epic_id


class EpicOrchestrator:
    """Drives all phases of one epic and reports a summary."""

    def __init__(self, repository: StoryRepository, config: StoryflowConfig, executor: PhaseExecutor):
        self.repository = repository
        self.config = config
        self.executor = executor

    def discover(self, epic_id: str) -> tuple[list[Story], set[str]]:
        """(active stories, ids of stories already done) for the epic."""
        label = f"{EPIC_LABEL_PREFIX}{normalize_epic_id(epic_id)}"
        stories = self.repository.find_by_label(label)
        done_ids = {s.id for s in stories if s.status == STATUS_DONE}
        active = [s for s in stories if s.status != STATUS_DONE]
        return active, done_ids

    def run(
        self,
        epic_id: str,
        max_concurrent: Optional[int] = None,
        continue_on_failure: Optional[bool] = None,
        dry_run: bool = False,
    ) -> EpicSummary:
        """Run the epic.

        Raises:
            ValueError: if max_concurrent < 1
        """
        epic_id = normalize_epic_id(epic_id)
        if max_concurrent is None:
            max_concurrent = self.config.epic.max_concurrent
        if continue_on_failure is None:
            continue_on_failure = self.config.epic.continue_on_failure
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")

        summary = EpicSummary(epic_id=epic_id)
        start = time.time()

        stories, done_ids = self.discover(epic_id)
        if not stories:
            print(f"No active stories found for epic '{epic_id}'")
            return summary

        validation = validate_dependencies(stories, done_ids)
        if not validation.valid:
            summary.validation_errors = validation.errors
            logger.error(f"[Epic] {epic_id}: {len(validation.errors)} dependency error(s)")
            print(f"ERROR: Dependency validation failed for epic '{epic_id}':")
            for error in validation.errors:
                print(f"  - {error}")
            print("No stories were run.")
            return summary

        phases = group_into_phases(stories, done_ids)
        summary.total_stories = sum(len(p) for p in phases)
        self.print_plan(epic_id, phases, done_ids, max_concurrent)

        if dry_run:
            print("Dry run: no stories executed.")
            return summary

        failed_ids: set[str] = set()
        skipped_ids: set[str] = set()
        succeeded_ids: set[str] = set()

        for index, phase in enumerate(phases, 1):
            print(f"\n=== Phase {index}/{len(phases)} ({len(phase)} stories) ===")
            runnable = []
            for story in phase:
                reason = self._skip_reason(story, failed_ids, skipped_ids, succeeded_ids)
                if reason:
                    print(f"  - {story.id} skipped: {reason}")
                    skipped_ids.add(story.id)
                    summary.skipped_stories.append((story.id, reason))
                else:
                    runnable.append(story)

            logger.info(f"[Epic] {epic_id} phase {index}: running {len(runnable)}, skipped {len(phase) - len(runnable)}")
            result = self.executor.execute_phase(runnable, max_concurrent, failed_ids)

            for outcome in result.succeeded:
                succeeded_ids.add(outcome.story_id)
                summary.completed_stories.append(outcome.story_id)
            for outcome in result.failed:
                failed_ids.add(outcome.story_id)
                summary.failed_stories.append((outcome.story_id, outcome.reason or "unknown error"))
            for outcome in result.skipped:
                skipped_ids.add(outcome.story_id)
                summary.skipped_stories.append((outcome.story_id, outcome.reason or "skipped"))

            if result.failed and not continue_on_failure:
                remaining = [s for later in phases[index:] for s in later]
                for story in remaining:
                    reason = f"Epic aborted after phase {index}"
                    skipped_ids.add(story.id)
                    summary.skipped_stories.append((story.id, reason))
                print(f"\nStopping after phase {index}: {len(result.failed)} failure(s) and continue-on-failure is off")
                break

        summary.completed = len(summary.completed_stories)
        summary.failed = len(summary.failed_stories)
        summary.skipped = len(summary.skipped_stories)
        summary.duration = time.time() - start
        self.print_summary(summary)
        return summary

    def _skip_reason(self, story: Story, failed_ids: set[str], skipped_ids: set[str],
                     succeeded_ids: set[str]) -> Optional[str]:
        for dep in story.dependencies:
            if dep in failed_ids:
                return f"Dependency failed: {dep}"
            if dep in skipped_ids:
                return f"Dependency skipped: {dep}"

        if self.config.merge.enabled:
            for dep in story.dependencies:
                if dep not in succeeded_ids:
                    continue
                dep_story = self.repository.load(dep)
                if dep_story is not None and dep_story.pr_url and not dep_story.pr_merged:
                    return f"Waiting for dependency merge: {dep}"
        return None

    def print_plan(self, epic_id: str, phases: list[list[Story]], done_ids: set[str], max_concurrent: int):
        total = sum(len(p) for p in phases)
        print(f"Epic '{epic_id}': {total} stories in {len(phases)} phase(s), max {max_concurrent} concurrent")
        if done_ids:
            print(f"  Already done: {', '.join(sorted(done_ids))}")
        for index, phase in enumerate(phases, 1):
            print(f"  Phase {index}:")
            for story in phase:
                deps = f" (depends on {', '.join(story.dependencies)})" if story.dependencies else ""
                print(f"    {story.id} [p{story.priority}] {story.title}{deps}")

    def print_summary(self, summary: EpicSummary):
        print("")
        print("=" * 60)
        print(f"Epic '{summary.epic_id}' summary ({summary.duration:.1f}s)")
        print("=" * 60)
        print(f"  Total:     {summary.total_stories}")
        print(f"  Completed: {summary.completed}")
        print(f"  Failed:    {summary.failed}")
        print(f"  Skipped:   {summary.skipped}")
        if summary.completed_stories:
            print(f"\n  Completed: {', '.join(summary.completed_stories)}")
        if summary.failed_stories:
            print("\n  Failed:")
            for story_id, reason in summary.failed_stories:
                print(f"    ✗ {story_id}: {reason}")
        if summary.skipped_stories:
            print("\n  Skipped:")
            for story_id, reason in summary.skipped_stories:
                print(f"    - {story_id}: {reason}")
