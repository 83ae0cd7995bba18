"""Tests for storyflow.epic.orchestrator module."""

import time

import pytest

from storyflow.epic.executor import PhaseExecutor
from storyflow.epic.orchestrator import EpicOrchestrator, normalize_epic_id


@pytest.fixture
def orchestrator(root, repository, sandbox, config):
    executor = PhaseExecutor(root, repository, sandbox, config)
    return EpicOrchestrator(repository, config, executor)


def epic_story(save_story, story_id, deps=(), **overrides):
    return save_story(story_id, status="ready", labels=["epic-auth"], dependencies=list(deps), **overrides)


class TestEpicRun:

    def test_runs_phases_in_dependency_order(self, orchestrator, sandbox, save_story):
        epic_story(save_story, "B", ["A"])
        epic_story(save_story, "A")
        save_story("X", status="ready", labels=["epic-other"])

        summary = orchestrator.run("auth", max_concurrent=2)

        assert sandbox.created == ["A", "B"]
        assert summary.completed_stories == ["A", "B"]
        assert summary.exit_code == 0

    def test_failure_skips_dependents(self, orchestrator, sandbox, save_story, capsys):
        epic_story(save_story, "A")
        epic_story(save_story, "B", ["A"])
        epic_story(save_story, "C", ["A"])
        sandbox.exit_codes["A"] = 1

        summary = orchestrator.run("epic-auth", max_concurrent=3)

        assert summary.failed == 1
        assert summary.skipped == 2
        assert dict(summary.skipped_stories) == {"B": "Dependency failed: A", "C": "Dependency failed: A"}
        assert sandbox.created == ["A"]
        assert summary.exit_code == 1
        assert "Dependency failed: A" in capsys.readouterr().out

    def test_skips_propagate_transitively(self, orchestrator, sandbox, save_story):
        epic_story(save_story, "A")
        epic_story(save_story, "B", ["A"])
        epic_story(save_story, "C", ["B"])
        sandbox.exit_codes["A"] = 1

        summary = orchestrator.run("auth")

        assert dict(summary.skipped_stories) == {"B": "Dependency failed: A", "C": "Dependency skipped: B"}

    def test_concurrent_phase_is_faster_than_serial(self, orchestrator, sandbox, save_story):
        sandbox.duration = 0.5
        for story_id in ("A", "B", "C"):
            epic_story(save_story, story_id)

        start = time.time()
        summary = orchestrator.run("auth", max_concurrent=3)
        elapsed = time.time() - start

        assert summary.completed == 3
        assert sandbox.max_active == 3
        assert elapsed < 1.2

    def test_validation_errors_run_nothing(self, orchestrator, sandbox, save_story, capsys):
        epic_story(save_story, "A", ["B"])
        epic_story(save_story, "B", ["A"])

        summary = orchestrator.run("auth")

        assert summary.validation_errors == ["Circular dependency detected: A -> B -> A"]
        assert summary.exit_code == 1
        assert sandbox.created == []
        assert "Dependency validation failed" in capsys.readouterr().out

    def test_stop_after_failed_phase(self, orchestrator, sandbox, save_story):
        epic_story(save_story, "A")
        epic_story(save_story, "B")
        epic_story(save_story, "C", ["B"])
        sandbox.exit_codes["A"] = 1

        summary = orchestrator.run("auth", continue_on_failure=False)

        assert summary.completed_stories == ["B"]
        assert dict(summary.skipped_stories) == {"C": "Epic aborted after phase 1"}
        assert "C" not in sandbox.created

    def test_done_stories_count_as_satisfied(self, orchestrator, sandbox, save_story):
        save_story("A", status="done", labels=["epic-auth"])
        epic_story(save_story, "B", ["A"])

        summary = orchestrator.run("auth")

        assert sandbox.created == ["B"]
        assert summary.total_stories == 1

    def test_dry_run_prints_plan_only(self, orchestrator, sandbox, save_story, capsys):
        epic_story(save_story, "A")
        epic_story(save_story, "B", ["A"])

        orchestrator.run("auth", dry_run=True)

        out = capsys.readouterr().out
        assert "Phase 1:" in out and "Phase 2:" in out
        assert "B [p10] Story B (depends on A)" in out
        assert sandbox.created == []

    def test_no_stories(self, orchestrator, capsys):
        summary = orchestrator.run("empty")
        assert summary.total_stories == 0
        assert "No active stories" in capsys.readouterr().out

    def test_rejects_zero_concurrency(self, orchestrator, save_story):
        epic_story(save_story, "A")
        with pytest.raises(ValueError):
            orchestrator.run("auth", max_concurrent=0)

    def test_waits_for_unmerged_dependency(self, orchestrator, config, save_story, make_story):
        config.merge.enabled = True
        save_story("A", pr_url="https://github.com/o/r/pull/1", pr_merged=False)
        reason = orchestrator._skip_reason(make_story("B", dependencies=["A"]), set(), set(), {"A"})
        assert reason == "Waiting for dependency merge: A"


class TestNormalizeEpicId:

    def test_strips_prefix(self):
        assert normalize_epic_id("epic-auth") == "auth"
        assert normalize_epic_id("auth") == "auth"
