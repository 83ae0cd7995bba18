"""
storyflow unblock - Release a story the circuit breaker blocked.
"""

from pathlib import Path

from storyflow.lib.config import StoryflowConfig
from storyflow.pm.stories import JsonStoryRepository, StoryPersistenceError
from storyflow.workflow.fsm import InvalidTransition, unblock_story


def cmd_unblock(args, root: Path, config: StoryflowConfig) -> int:
    repository = JsonStoryRepository(root)
    try:
        story = unblock_story(repository, args.id, reset_retries=args.reset_retries)
    except KeyError:
        print(f"ERROR: Story '{args.id}' not found")
        return 2
    except InvalidTransition as e:
        print(f"ERROR: {e}")
        return 1
    except StoryPersistenceError as e:
        print(f"ERROR: {e}")
        return 1

    print(f"Unblocked {story.id}: now {story.status}")
    if args.reset_retries:
        print("  Retry, refinement and recovery counters reset")
    return 0
