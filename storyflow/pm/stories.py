"""
Story storage and mutation helpers.

The scheduler and runner only talk to the abstract StoryRepository. The
default JsonStoryRepository keeps one JSON document per story:
  <root>/stories/<story_id>.json
"""

import fnmatch
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

from storyflow.lib.atomic_io import atomic_write_json
from storyflow.lib.constants import (
    MAX_REVIEW_HISTORY,
    STATUS_BACKLOG,
    STORIES_DIRNAME,
    STORY_ID_PATTERN,
)
from storyflow.lib.validate import ValidationError, validate, validate_before_write
from storyflow.pm.models import ReviewAttempt, Story

logger = logging.getLogger(__name__)


class StoryPersistenceError(Exception):
    """A story could not be written."""

    def __init__(self, story_id: str, message: str):
        self.story_id = story_id
        super().__init__(f"Failed to save story {story_id}: {message}")


class StoryRepository(ABC):
    """Load/save/query interface. Any storage satisfying it is usable."""

    @abstractmethod
    def load(self, story_id: str) -> Optional[Story]:
        """Return the story, or None if it does not exist or is unreadable."""

    @abstractmethod
    def save(self, story: Story) -> None:
        """Persist the story. Raises StoryPersistenceError on I/O failure."""

    @abstractmethod
    def list_all(self) -> list[Story]:
        """All readable stories, ordered by id."""

    def find_by_status(self, status: str) -> list[Story]:
        return [s for s in self.list_all() if s.status == status]

    def find_by_label(self, pattern: str) -> list[Story]:
        """Stories with at least one label matching the fnmatch pattern."""
        return [
            s for s in self.list_all()
            if any(fnmatch.fnmatchcase(label, pattern) for label in s.labels)
        ]

    def reload(self, story: Story) -> Story:
        """Fresh copy of a story, falling back to the given object if it vanished."""
        return self.load(story.id) or story


class JsonStoryRepository(StoryRepository):
    """Stories as schema-validated JSON files under <root>/stories/."""

    def __init__(self, root: Path):
        self.root = root
        self.stories_dir = root / STORIES_DIRNAME

    def story_path(self, story_id: str) -> Path:
        return self.stories_dir / f"{story_id}.json"

    def _read(self, path: Path) -> Optional[Story]:
        try:
            data = json.loads(path.read_text())
            validate(data, "story")
            return Story.from_dict(data, path=str(path))
        except (OSError, json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Failed to load story file {path}: {e}")
            return None

    def load(self, story_id: str) -> Optional[Story]:
        path = self.story_path(story_id)
        if not path.exists():
            return None
        return self._read(path)

    def save(self, story: Story) -> None:
        path = self.story_path(story.id)
        story.updated = datetime.now().isoformat()
        data = story.to_dict()
        validate_before_write(data, "story", path)
        try:
            atomic_write_json(path, data)
        except OSError as e:
            raise StoryPersistenceError(story.id, str(e)) from e
        story.path = str(path)

    def list_all(self) -> list[Story]:
        if not self.stories_dir.exists():
            return []

        stories = []
        for f in sorted(self.stories_dir.glob("*.json")):
            # Skip per-story checkpoints living beside the stories
            if f.name.endswith(".workflow-state.json"):
                continue
            story = self._read(f)
            if story is not None:
                stories.append(story)
        return stories


def create_story(
    repository: StoryRepository,
    story_id: str,
    title: str,
    priority: int = 100,
    labels: Optional[list[str]] = None,
    dependencies: Optional[list[str]] = None,
) -> Story:
    """Create a new story in backlog.

    Raises:
        ValueError: if the id is malformed or already taken
    """
    if not STORY_ID_PATTERN.match(story_id):
        raise ValueError(f"Invalid story id '{story_id}'")
    if repository.load(story_id) is not None:
        raise ValueError(f"Story '{story_id}' already exists")

    story = Story(
        id=story_id,
        title=title,
        priority=priority,
        created=datetime.now().isoformat(),
        status=STATUS_BACKLOG,
        labels=labels or [],
        dependencies=dependencies or [],
    )
    repository.save(story)
    return story


def append_review_attempt(story: Story, attempt: ReviewAttempt) -> None:
    """Append to review history, dropping the oldest entries beyond the cap."""
    story.review_history.append(attempt)
    overflow = len(story.review_history) - MAX_REVIEW_HISTORY
    if overflow > 0:
        del story.review_history[:overflow]


def reset_rpiv_cycle(story: Story, reason: str) -> None:
    """Restart plan/implement/review after a rejection. Research is kept."""
    story.plan_complete = False
    story.implementation_complete = False
    story.reviews_complete = False
    story.retry_count += 1
    story.total_recovery_attempts += 1
    story.last_restart_reason = reason
    story.last_restart_at = datetime.now().isoformat()


def mark_all_complete(story: Story) -> None:
    story.research_complete = True
    story.plan_complete = True
    story.implementation_complete = True
    story.reviews_complete = True
