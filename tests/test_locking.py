"""Tests for storyflow.runner.locking module."""

import os

import pytest

from storyflow.runner.locking import LockTimeout, is_story_locked, lock_path, story_lock


class TestStoryLock:

    def test_lock_path(self, root):
        assert lock_path(root, "S-1") == root / "locks" / "stories" / "S-1.lock"

    def test_not_locked_without_file(self, root):
        assert is_story_locked(root, "S-1") is False

    def test_lock_held_inside_context(self, root):
        with story_lock(root, "S-1"):
            assert is_story_locked(root, "S-1") is True
            assert lock_path(root, "S-1").read_text() == f"{os.getpid()}\n"
        assert is_story_locked(root, "S-1") is False

    def test_second_acquire_times_out(self, root):
        with story_lock(root, "S-1"):
            with pytest.raises(LockTimeout, match="lock for story S-1"):
                with story_lock(root, "S-1"):
                    pass

    def test_other_stories_independent(self, root):
        with story_lock(root, "S-1"):
            with story_lock(root, "S-2"):
                assert is_story_locked(root, "S-2")

    def test_lock_file_survives_release(self, root):
        with story_lock(root, "S-1"):
            pass
        assert lock_path(root, "S-1").exists()
