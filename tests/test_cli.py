"""Tests for storyflow.cli module."""

from unittest.mock import patch

import pytest

from storyflow.cli import build_parser, main
from storyflow.pm.stories import JsonStoryRepository


@pytest.fixture(autouse=True)
def restore_root_env(monkeypatch):
    # main() exports --root for sandboxed child processes
    monkeypatch.setenv("STORYFLOW_ROOT", "")
    monkeypatch.delenv("STORYFLOW_ROOT")


class TestParser:

    def test_run_defaults(self):
        args = build_parser().parse_args(["run"])
        assert args.auto is False
        assert args.resume is False
        assert args.worktree is False
        assert args.story is None

    def test_run_flags(self):
        args = build_parser().parse_args(["run", "--auto", "--continue", "--worktree", "-s", "S-1"])
        assert args.auto and args.resume and args.worktree
        assert args.story == "S-1"

    def test_worktree_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "--worktree", "--no-worktree"])

    def test_epic_defaults_defer_to_config(self):
        args = build_parser().parse_args(["epic", "auth"])
        assert args.max_concurrent is None
        assert args.continue_on_failure is None
        assert args.merge is None

    def test_epic_flags(self):
        args = build_parser().parse_args(["epic", "auth", "-j", "4", "--no-continue-on-failure"])
        assert args.max_concurrent == 4
        assert args.continue_on_failure is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:

    def test_new_then_status(self, root, capsys):
        assert main(["--root", str(root), "new", "S-1", "Login page", "-p", "5", "--epic", "auth"]) == 0
        story = JsonStoryRepository(root).load("S-1")
        assert story.status == "backlog"
        assert story.labels == ["epic-auth"]

        assert main(["--root", str(root), "status"]) == 0
        out = capsys.readouterr().out
        assert "refine" in out
        assert "S-1" in out

    def test_new_duplicate(self, root, save_story):
        save_story("S-1")
        assert main(["--root", str(root), "new", "S-1", "Again"]) == 2

    def test_status_empty(self, root, capsys):
        assert main(["--root", str(root), "status"]) == 0
        assert "No stories" in capsys.readouterr().out

    def test_status_shows_blocked_reason(self, root, save_story, capsys):
        save_story("S-1", status="blocked", blocked_reason="Max review retries (3) reached")
        main(["--root", str(root), "status"])
        assert "S-1: Max review retries (3) reached" in capsys.readouterr().out

    def test_status_shows_locked_story(self, root, save_story, capsys):
        from storyflow.runner.locking import story_lock
        save_story("S-1", status="in-progress")
        save_story("S-2", status="ready")
        with story_lock(root, "S-1"):
            main(["--root", str(root), "status"])
        out = capsys.readouterr().out
        assert "S-1: locked by another storyflow run" in out
        assert "S-2: locked" not in out

    def test_unblock(self, root, save_story):
        save_story("S-1", status="blocked", blocked_reason="x", plan_complete=True,
                   research_complete=True, retry_count=3)
        assert main(["--root", str(root), "unblock", "S-1", "--reset-retries"]) == 0
        story = JsonStoryRepository(root).load("S-1")
        assert story.status == "ready"
        assert story.retry_count == 0

    def test_unblock_missing_and_not_blocked(self, root, save_story):
        save_story("S-1", status="ready")
        assert main(["--root", str(root), "unblock", "S-9"]) == 2
        assert main(["--root", str(root), "unblock", "S-1"]) == 1

    def test_bad_config_exits_2(self, root):
        (root / "storyflow.env").write_text("MAX_CONCURRENT=lots\n")
        with pytest.raises(SystemExit) as exc:
            main(["--root", str(root), "status"])
        assert exc.value.code == 2

    def test_run_passes_options_to_flow(self, root, save_story):
        save_story("S-1", status="ready")
        with patch("storyflow.commands.run.run_workflow_flow", return_value=0) as flow:
            assert main(["--root", str(root), "run", "--story", "S-1", "--auto", "--continue"]) == 0
        flow.assert_called_once_with(root=str(root.resolve()), auto=True, resume=True, story_id="S-1", dry_run=False)

    def test_run_unknown_story(self, root):
        assert main(["--root", str(root), "run", "--story", "S-9"]) == 2

    def test_run_worktree_requires_story(self, root):
        assert main(["--root", str(root), "run", "--worktree"]) == 2

    def test_run_refuses_locked_story(self, root, save_story):
        from storyflow.runner.locking import story_lock
        save_story("S-1", status="ready")
        with story_lock(root, "S-1"):
            with patch("storyflow.commands.run.run_workflow_flow") as flow:
                assert main(["--root", str(root), "run", "--story", "S-1"]) == 1
        flow.assert_not_called()

    def test_epic_rejects_zero_concurrency(self, root):
        assert main(["--root", str(root), "epic", "auth", "-j", "0"]) == 2
