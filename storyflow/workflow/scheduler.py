"""
Priority scheduler.

Scans every story, recommends at most one action per story, and applies the
circuit breaker to stories that have exhausted their retry or refinement
limits. The pass is synchronous: load, decide, sort.

Priorities are "lower runs first". A completion score biases the queue
toward finishing stories that are nearly done before starting new ones:

    score = 10*research + 20*plan + 30*implementation + 40*reviews
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Optional

from storyflow.agents.categorizer import classify
from storyflow.lib.config import StoryflowConfig
from storyflow.lib.constants import (
    BLOCKED_FALLBACK_PRIORITY_OFFSET,
    STATUS_BACKLOG,
    STATUS_IN_PROGRESS,
    STATUS_READY,
    STATUSES,
)
from storyflow.lib.validate import ValidationError
from storyflow.pm.models import Action, ActionKind, Story
from storyflow.pm.stories import StoryPersistenceError, StoryRepository
from storyflow.workflow.fsm import InvalidTransition, block_story

logger = logging.getLogger(__name__)

# Added to story.priority per decision-table row
OFFSET_IMPLEMENT_IN_PROGRESS = 50
OFFSET_REVIEW = 100
OFFSET_REVIEW_PER_RETRY = 50
OFFSET_CREATE_PR = 150
OFFSET_RESEARCH = 200
OFFSET_PLAN = 300
OFFSET_IMPLEMENT_READY = 400
OFFSET_REFINE = 500

Classifier = Callable[[list], str]


@dataclass
class StateAssessment:
    """Result of one scheduling pass."""
    buckets: dict[str, list[Story]] = field(default_factory=dict)
    recommended_actions: list[Action] = field(default_factory=list)

    def actions_for(self, story_id: str) -> list[Action]:
        return [a for a in self.recommended_actions if a.story_id == story_id]


def completion_score(story: Story) -> int:
    return (
        10 * int(story.research_complete)
        + 20 * int(story.plan_complete)
        + 30 * int(story.implementation_complete)
        + 40 * int(story.reviews_complete)
    )


def effective_max_retries(story: Story, config: StoryflowConfig) -> float:
    """Story override if set, else the config default. math.inf = no limit."""
    if story.max_retries is not None:
        return story.max_retries
    return config.review.max_retries


def effective_max_refinements(story: Story, config: StoryflowConfig) -> float:
    if story.max_refinement_attempts is not None:
        return story.max_refinement_attempts
    return config.refinement.max_iterations


def effective_max_implementation_retries(story: Story, config: StoryflowConfig) -> float:
    """Story override capped at the configured upper bound."""
    if story.max_implementation_retries is not None:
        return min(story.max_implementation_retries, config.implementation.max_retries_upper_bound)
    return config.implementation.max_retries


def format_limit(limit: float) -> str:
    return "unlimited" if limit == math.inf else str(int(limit))


class Scheduler:
    """Recommends the next action for every story."""

    def __init__(
        self,
        repository: StoryRepository,
        config: StoryflowConfig,
        classifier: Optional[Classifier] = None,
    ):
        self.repository = repository
        self.config = config
        self.classifier = classifier or classify

    def assess(self) -> StateAssessment:
        """Run one pass over all stories.

        Stories that trip the circuit breaker are blocked (and persisted)
        during the pass, so they land in the 'blocked' bucket and emit
        no action.
        """
        stories = self.repository.list_all()
        actions: list[Action] = []

        for story in stories:
            action = self.recommend(story)
            if action is not None:
                actions.append(action)

        buckets: dict[str, list[Story]] = {status: [] for status in STATUSES}
        for story in stories:
            buckets.setdefault(story.status, []).append(story)

        actions.sort(key=lambda a: (a.priority, a.story_id))
        return StateAssessment(buckets=buckets, recommended_actions=actions)

    def recommend(self, story: Story) -> Optional[Action]:
        """Decision table. First matching row wins; blocked/done emit nothing."""
        score = completion_score(story)
        p = story.priority

        if story.status == STATUS_IN_PROGRESS:
            if (
                story.implementation_complete
                and not story.reviews_complete
                and story.has_unaddressed_rejection
            ):
                max_refinements = effective_max_refinements(story, self.config)
                if story.refinement_count < max_refinements:
                    return self._rework_action(story)
                return self._circuit_break(
                    story,
                    f"Max refinement attempts ({format_limit(max_refinements)}) reached",
                    "blocked_by_max_refinements",
                )

            max_retries = effective_max_retries(story, self.config)
            if story.retry_count >= max_retries:
                return self._circuit_break(
                    story,
                    f"Max review retries ({format_limit(max_retries)}) reached",
                    "blocked_by_max_retries",
                )

            if not story.implementation_complete:
                return self._action(ActionKind.IMPLEMENT, story, p + OFFSET_IMPLEMENT_IN_PROGRESS - score,
                                    "Continue implementation")
            if not story.reviews_complete:
                return self._action(
                    ActionKind.REVIEW, story,
                    p + OFFSET_REVIEW + OFFSET_REVIEW_PER_RETRY * story.retry_count - score,
                    "Review implementation" + (f" (retry {story.retry_count})" if story.retry_count else ""),
                )
            return self._action(ActionKind.CREATE_PR, story, p + OFFSET_CREATE_PR - score,
                                "Create pull request")

        if story.status == STATUS_READY:
            if not story.research_complete:
                return self._action(ActionKind.RESEARCH, story, p + OFFSET_RESEARCH - score, "Research story")
            if not story.plan_complete:
                return self._action(ActionKind.PLAN, story, p + OFFSET_PLAN - score, "Plan implementation")
            return self._action(ActionKind.IMPLEMENT, story, p + OFFSET_IMPLEMENT_READY - score,
                                "Start implementation")

        if story.status == STATUS_BACKLOG:
            return self._action(ActionKind.REFINE, story, p + OFFSET_REFINE, "Refine backlog story")

        return None

    def _action(self, kind: ActionKind, story: Story, priority: int, reason: str,
                context: Optional[dict] = None) -> Action:
        return Action(
            kind=kind,
            story_id=story.id,
            story_ref=story.ref,
            priority=priority,
            reason=f"{reason}: {story.title}",
            context=context or {},
        )

    def _rework_action(self, story: Story) -> Action:
        latest = story.latest_review
        issues = list(latest.blockers) or ([latest.feedback] if latest.feedback else [])
        target_phase = self.classifier(issues)
        iteration = story.refinement_count + 1
        return self._action(
            ActionKind.REWORK,
            story,
            story.priority,
            f"Rework {target_phase} after rejected review (iteration {iteration})",
            context={
                "target_phase": target_phase,
                "review_feedback": latest.feedback,
                "iteration": iteration,
            },
        )

    def _circuit_break(self, story: Story, reason: str, fallback_flag: str) -> Optional[Action]:
        """Block the story. If that cannot be persisted, surface it for manual review instead."""
        try:
            block_story(story, reason, self.repository)
        except (StoryPersistenceError, OSError, ValidationError, InvalidTransition) as e:
            logger.error(f"[Scheduler] Failed to block {story.id} ({reason}): {e}")
            return self._action(
                ActionKind.REVIEW,
                story,
                story.priority + BLOCKED_FALLBACK_PRIORITY_OFFSET,
                f"{reason}; manual intervention required",
                context={fallback_flag: True},
            )

        logger.warning(f"[Scheduler] Circuit breaker tripped for {story.id}: {reason}")
        return None


def assess_state(
    repository: StoryRepository,
    config: StoryflowConfig,
    classifier: Optional[Classifier] = None,
) -> StateAssessment:
    """Convenience wrapper for a single scheduling pass."""
    return Scheduler(repository, config, classifier).assess()
