"""Story status state machine using the transitions library.

Every status change a story goes through is an explicit, named trigger:

    backlog --refined--> ready --start_implementation--> in-progress --complete--> done
    in-progress --restart--> ready                 (rejection reset, rework to research/plan)
    backlog|ready|in-progress --block--> blocked   (circuit breaker, recovery limits)
    blocked --unblock_to_*--> backlog|ready|in-progress

blocked is only left through an explicit unblock. Usage:

    from storyflow.workflow.fsm import StoryFSM, block_story

    fsm = StoryFSM(story)
    fsm.refined()
    repository.save(story)
"""

import logging
from datetime import datetime
from typing import Callable

from transitions import Machine, MachineError

from storyflow.lib.constants import (
    STATUS_BACKLOG,
    STATUS_BLOCKED,
    STATUS_DONE,
    STATUS_IN_PROGRESS,
    STATUS_READY,
    STATUSES,
)
from storyflow.lib.sanitize import sanitize_reason_text
from storyflow.pm.models import Story
from storyflow.pm.stories import StoryRepository

logger = logging.getLogger(__name__)

STATES = list(STATUSES)

ACTIVE_STATES = [STATUS_BACKLOG, STATUS_READY, STATUS_IN_PROGRESS]

TRANSITIONS = [
    {"trigger": "refined", "source": STATUS_BACKLOG, "dest": STATUS_READY},
    {"trigger": "start_implementation", "source": STATUS_READY, "dest": STATUS_IN_PROGRESS},
    {"trigger": "restart", "source": STATUS_IN_PROGRESS, "dest": STATUS_READY},
    {"trigger": "complete", "source": STATUS_IN_PROGRESS, "dest": STATUS_DONE},

    # Circuit breaker: one-way until a human unblocks
    {"trigger": "block", "source": ACTIVE_STATES, "dest": STATUS_BLOCKED},

    {"trigger": "unblock_to_backlog", "source": STATUS_BLOCKED, "dest": STATUS_BACKLOG},
    {"trigger": "unblock_to_ready", "source": STATUS_BLOCKED, "dest": STATUS_READY},
    {"trigger": "unblock_to_in_progress", "source": STATUS_BLOCKED, "dest": STATUS_IN_PROGRESS},
]


class InvalidTransition(Exception):
    """Requested status change is not allowed from the current status."""

    def __init__(self, story_id: str, from_state: str, trigger: str):
        self.story_id = story_id
        self.from_state = from_state
        self.trigger = trigger
        super().__init__(f"Story {story_id}: cannot '{trigger}' from status '{from_state}'")


class StoryFSM:
    """State machine bound to one Story object.

    Transitions update story.status in place and log; callers persist the
    story so the status change and any field updates land in one write.
    """

    def __init__(self, story: Story, on_transition: Callable[[str, str, str], None] | None = None):
        self.story = story
        self.on_transition = on_transition

        initial = story.status
        if initial not in STATES:
            logger.warning(f"[FSM] {story.id}: Unknown status '{initial}', defaulting to '{STATUS_BACKLOG}'")
            initial = STATUS_BACKLOG
            story.status = initial

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        self.story.status = to_state
        logger.info(f"[FSM] {self.story.id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def fire(self, trigger: str) -> None:
        """Run a trigger by name, raising InvalidTransition when not allowed."""
        try:
            self.trigger(trigger)
        except MachineError:
            raise InvalidTransition(self.story.id, self.state, trigger) from None


def block_story(story: Story, reason: str, repository: StoryRepository) -> None:
    """Move a story to blocked with a sanitized reason and persist it.

    Raises:
        InvalidTransition: if the story is done or already blocked
        StoryPersistenceError: if the save fails
    """
    previous = (story.status, story.blocked_reason, story.blocked_at)
    StoryFSM(story).fire("block")
    story.blocked_reason = sanitize_reason_text(reason)
    story.blocked_at = datetime.now().isoformat()
    try:
        repository.save(story)
    except Exception:
        # Keep the in-memory story consistent with what is on disk
        story.status, story.blocked_reason, story.blocked_at = previous
        raise


def unblock_status(story: Story) -> str:
    """Status a story returns to when unblocked, based on its phase flags."""
    if story.implementation_complete:
        return STATUS_IN_PROGRESS
    if story.plan_complete:
        return STATUS_READY
    return STATUS_BACKLOG


def unblock_story(repository: StoryRepository, story_id: str, reset_retries: bool = False) -> Story:
    """Manually release a blocked story.

    Args:
        repository: Story storage
        story_id: Story to unblock
        reset_retries: Also zero the retry, refinement and recovery counters

    Raises:
        KeyError: if the story does not exist
        InvalidTransition: if the story is not blocked
    """
    story = repository.load(story_id)
    if story is None:
        raise KeyError(story_id)
    if story.status != STATUS_BLOCKED:
        raise InvalidTransition(story_id, story.status, "unblock")

    target = unblock_status(story)
    StoryFSM(story).fire(f"unblock_to_{target.replace('-', '_')}")

    story.blocked_reason = None
    story.blocked_at = None
    if reset_retries:
        story.retry_count = 0
        story.refinement_count = 0
        story.implementation_retry_count = 0
        story.total_recovery_attempts = 0

    repository.save(story)
    return story
