"""
Story data model and storage.

Stories are the unit of work for storyflow. The scheduler decides the next
action for each one; the repository is the only I/O boundary.
"""

from storyflow.pm.models import (
    Action,
    ActionKind,
    ReviewAttempt,
    ReviewDecision,
    ReviewIssue,
    Story,
)
from storyflow.pm.stories import (
    JsonStoryRepository,
    StoryPersistenceError,
    StoryRepository,
    append_review_attempt,
    create_story,
    mark_all_complete,
    reset_rpiv_cycle,
)

__all__ = [
    "Action",
    "ActionKind",
    "ReviewAttempt",
    "ReviewDecision",
    "ReviewIssue",
    "Story",
    "JsonStoryRepository",
    "StoryPersistenceError",
    "StoryRepository",
    "append_review_attempt",
    "create_story",
    "mark_all_complete",
    "reset_rpiv_cycle",
]
