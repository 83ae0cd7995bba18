"""
storyflow new - Create a backlog story.
"""

from pathlib import Path

from storyflow.lib.config import StoryflowConfig
from storyflow.pm.stories import JsonStoryRepository, StoryPersistenceError, create_story


def cmd_new(args, root: Path, config: StoryflowConfig) -> int:
    """Create a story in backlog."""
    repository = JsonStoryRepository(root)
    labels = list(args.label or [])
    if args.epic:
        labels.append(f"epic-{args.epic}")

    try:
        story = create_story(
            repository,
            args.id,
            args.title,
            priority=args.priority,
            labels=labels,
            dependencies=list(args.depends_on or []),
        )
    except ValueError as e:
        print(f"ERROR: {e}")
        return 2
    except StoryPersistenceError as e:
        print(f"ERROR: {e}")
        return 1

    print(f"Created {story.id}: {story.title}")
    print(f"  File: {repository.story_path(story.id)}")
    return 0
