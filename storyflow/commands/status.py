"""
storyflow status - Show stories by status and the recommended next actions.
"""

from pathlib import Path

from storyflow.lib.config import StoryflowConfig
from storyflow.lib.constants import STATUS_BLOCKED, STATUSES
from storyflow.pm.stories import JsonStoryRepository
from storyflow.runner.locking import is_story_locked
from storyflow.workflow.fsm import ACTIVE_STATES
from storyflow.workflow.scheduler import Scheduler


def cmd_status(args, root: Path, config: StoryflowConfig) -> int:
    """Show story counts, blocked reasons and the action queue."""
    repository = JsonStoryRepository(root)
    assessment = Scheduler(repository, config).assess()

    total = sum(len(stories) for stories in assessment.buckets.values())
    if total == 0:
        print(f"No stories in {repository.stories_dir}")
        print("Create one with: storyflow new <id> <title>")
        return 0

    print(f"Stories: {total}")
    for status in STATUSES:
        stories = assessment.buckets.get(status, [])
        print(f"  {status:<12} {len(stories)}")

    blocked = assessment.buckets.get(STATUS_BLOCKED, [])
    if blocked:
        print("\nBlocked:")
        for story in blocked:
            print(f"  {story.id}: {story.blocked_reason or 'no reason recorded'}")
        print("  Release with: storyflow unblock <id> [--reset-retries]")

    running = [story for status in ACTIVE_STATES for story in assessment.buckets.get(status, [])
               if is_story_locked(root, story.id)]
    if running:
        print("\nRunning:")
        for story in running:
            print(f"  {story.id}: locked by another storyflow run")

    actions = assessment.recommended_actions
    if getattr(args, "story", None):
        actions = assessment.actions_for(args.story)

    print("")
    if not actions:
        print("No pending actions.")
        return 0

    print(f"Next actions ({len(actions)}):")
    for action in actions[:args.limit]:
        print(f"  [{action.priority:>5}] {action.kind.value:<10} {action.story_id}: {action.reason}")
    if len(actions) > args.limit:
        print(f"  ... and {len(actions) - args.limit} more")
    return 0
