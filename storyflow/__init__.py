"""storyflow: priority-scheduled story pipeline orchestration."""

__version__ = "0.1.0"
