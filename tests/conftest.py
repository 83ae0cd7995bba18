"""Shared fixtures for storyflow tests."""

import threading
import time
from pathlib import Path

import pytest

from storyflow.git.worktree import ExecutionSandbox, IsolatedResult, SandboxError, SandboxRef
from storyflow.lib.config import StoryflowConfig
from storyflow.pm.models import Story
from storyflow.pm.stories import JsonStoryRepository


def build_story(story_id: str = "S-1", **overrides) -> Story:
    fields = {
        "title": f"Story {story_id}",
        "priority": 10,
        "created": "2026-01-01T00:00:00",
    }
    fields.update(overrides)
    return Story(id=story_id, **fields)


@pytest.fixture
def root(tmp_path):
    """Orchestration root inside a fake repository checkout."""
    root = tmp_path / ".storyflow"
    root.mkdir()
    return root


@pytest.fixture
def repository(root):
    return JsonStoryRepository(root)


@pytest.fixture
def config():
    return StoryflowConfig()


@pytest.fixture
def make_story():
    """Factory for unsaved stories."""
    return build_story


@pytest.fixture
def save_story(repository):
    """Factory that builds a story and persists it."""
    def _save(story_id: str = "S-1", **overrides) -> Story:
        story = build_story(story_id, **overrides)
        repository.save(story)
        return story
    return _save


class FakeSandbox(ExecutionSandbox):
    """In-memory sandbox: directories under base, no git, no subprocess.

    run_isolated sleeps for `duration`, then writes the story into the
    sandbox root the way a finished pipeline would. Per-story exit codes and
    final story fields can be overridden.
    """

    def __init__(self, base: Path, duration: float = 0.0):
        self.base = base
        self.duration = duration
        self.exit_codes: dict[str, int] = {}
        self.final_fields: dict[str, dict] = {}
        self.create_errors: set[str] = set()
        self.created: list[str] = []
        self.removed: list[tuple[str, bool]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def create(self, story_id: str, resume_if_exists: bool = True) -> SandboxRef:
        if story_id in self.create_errors:
            raise SandboxError(story_id, "worktree add failed")
        path = self.base / story_id
        path.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self.created.append(story_id)
        return SandboxRef(story_id=story_id, path=path, branch=f"storyflow/{story_id}")

    def remove(self, ref: SandboxRef, force: bool = False) -> None:
        with self._lock:
            self.removed.append((ref.story_id, force))

    def run_isolated(self, ref: SandboxRef, command: list[str], timeout=None) -> IsolatedResult:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.duration)
            exit_code = self.exit_codes.get(ref.story_id, 0)
            if exit_code == 0:
                fields = {
                    "status": "done",
                    "research_complete": True,
                    "plan_complete": True,
                    "implementation_complete": True,
                    "reviews_complete": True,
                }
                fields.update(self.final_fields.get(ref.story_id, {}))
                JsonStoryRepository(ref.root).save(build_story(ref.story_id, **fields))
            return IsolatedResult(
                exit_code=exit_code,
                stdout="pipeline output\n",
                stderr="" if exit_code == 0 else "Traceback...\nRuntimeError: agent crashed\n",
                duration=self.duration,
            )
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def sandbox(tmp_path):
    return FakeSandbox(tmp_path / "worktrees")
