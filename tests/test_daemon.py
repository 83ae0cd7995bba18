"""Tests for storyflow.workflow.daemon module."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from storyflow.agents.commands import AGENT_KINDS, Agent, AgentResult
from storyflow.pm.models import ActionKind, ReviewDecision
from storyflow.workflow.daemon import Daemon, Ticker, story_id_from_path
from storyflow.workflow.runner import WorkflowRunner


class ApprovingAgent(Agent):
    def __init__(self):
        self.calls = []

    def run(self, story_ref, root, options=None):
        self.calls.append(story_ref)
        return AgentResult(success=True, decision=ReviewDecision.APPROVED, pr_url="https://github.com/o/r/pull/1")


class SlowAgent(Agent):
    def __init__(self, started: threading.Event, release: threading.Event):
        self.started = started
        self.release = release

    def run(self, story_ref, root, options=None):
        self.started.set()
        self.release.wait(5)
        return AgentResult(success=True)


@pytest.fixture
def agents():
    return {kind: ApprovingAgent() for kind in AGENT_KINDS}


@pytest.fixture
def daemon(root, repository, config, agents):
    def factory(story_id):
        return WorkflowRunner(root, repository, config, agents, story_id=story_id)
    return Daemon(root, config, repository, factory)


class TestStoryIdFromPath:

    def test_story_file(self):
        assert story_id_from_path("/x/stories/S-12.json") == "S-12"

    def test_checkpoint_file_ignored(self):
        assert story_id_from_path("/x/stories/S-12.workflow-state.json") is None

    def test_temp_file_ignored(self):
        assert story_id_from_path("/x/stories/.S-12.json.tmp") is None
        assert story_id_from_path("/x/stories/notes.txt") is None


class TestEnqueue:

    def test_enqueue_once(self, daemon):
        assert daemon.enqueue("S-1") is True
        assert daemon.enqueue("S-1") is False
        assert list(daemon.queue) == ["S-1"]

    def test_completed_not_requeued(self, daemon):
        daemon.completed.add("S-1")
        assert daemon.enqueue("S-1") is False

    def test_active_not_requeued(self, daemon):
        daemon.active = "S-1"
        assert daemon.enqueue("S-1") is False

    def test_shutting_down_rejects(self, daemon):
        daemon.shutting_down = True
        assert daemon.enqueue("S-1") is False
        assert not daemon.queue

    def test_scan_queues_active_stories_only(self, daemon, save_story):
        save_story("S-1", status="backlog")
        save_story("S-2", status="in-progress")
        save_story("S-3", status="done")
        save_story("S-4", status="blocked", blocked_reason="x")

        assert daemon.scan() == 2
        assert list(daemon.queue) == ["S-1", "S-2"]
        assert daemon.scan() == 0


class TestProcessing:

    def test_process_story_runs_to_done(self, daemon, repository, save_story, capsys):
        save_story("S-1", status="backlog")

        executed = daemon.process_story("S-1")

        assert executed == 5
        assert repository.load("S-1").status == "done"
        assert "[daemon] S-1 done" in capsys.readouterr().out

    def test_process_story_stops_at_gate(self, daemon, config, repository, save_story, agents):
        config.stage_gates.require_approval_before_pr = True
        save_story("S-1", status="ready")

        daemon.process_story("S-1")

        story = repository.load("S-1")
        assert story.reviews_complete is True
        assert story.status == "in-progress"
        assert agents[ActionKind.CREATE_PR].calls == []

    def test_process_story_stops_on_failure(self, daemon, agents, save_story):
        agents[ActionKind.RESEARCH] = MagicMock(spec=Agent)
        agents[ActionKind.RESEARCH].run.return_value = AgentResult(success=False, error="boom")
        save_story("S-1", status="ready")

        assert daemon.process_story("S-1") == 1
        assert agents[ActionKind.RESEARCH].run.call_count == 1

    def test_process_story_respects_iteration_limit(self, daemon, config, repository, save_story):
        config.daemon.max_iterations = 2
        save_story("S-1", status="backlog")

        assert daemon.process_story("S-1") == 2
        assert repository.load("S-1").research_complete is True

    def test_process_queue_marks_completed(self, daemon, save_story):
        save_story("S-1", status="backlog")
        save_story("S-2", status="ready")
        daemon.scan()

        assert daemon.process_queue() == 2
        assert daemon.completed == {"S-1", "S-2"}
        assert daemon.active is None
        assert daemon.enqueue("S-1") is False

    def test_process_queue_survives_story_error(self, root, repository, config, save_story):
        factory = MagicMock(side_effect=RuntimeError("broken runner"))
        daemon = Daemon(root, config, repository, factory)
        daemon.enqueue("S-1")
        daemon.enqueue("S-2")

        assert daemon.process_queue() == 2
        assert daemon.completed == {"S-1", "S-2"}

    def test_process_queue_is_single_flight(self, daemon):
        daemon._processing = True
        daemon.enqueue("S-1")
        assert daemon.process_queue() == 0
        assert list(daemon.queue) == ["S-1"]


class TestShutdown:

    def test_stop_when_idle(self, daemon):
        assert daemon.stop(timeout=1) is True
        assert daemon.shutting_down
        assert daemon.ticker.stopped

    def test_stop_waits_for_in_flight_story(self, root, repository, config, save_story):
        started, release = threading.Event(), threading.Event()
        agents = {kind: SlowAgent(started, release) for kind in AGENT_KINDS}
        daemon = Daemon(root, config, repository,
                        lambda sid: WorkflowRunner(root, repository, config, agents, story_id=sid))
        save_story("S-1", status="ready")
        daemon.enqueue("S-1")

        worker = threading.Thread(target=daemon.process_queue)
        worker.start()
        assert started.wait(5)

        assert daemon.stop(timeout=0.1) is False

        release.set()
        worker.join(5)
        assert daemon.stop(timeout=1) is True
        # Shutdown is honored between actions
        assert repository.load("S-1").plan_complete is False

    def test_tick_after_shutdown_is_noop(self, daemon, save_story):
        save_story("S-1", status="backlog")
        daemon.shutting_down = True
        daemon.tick()
        assert not daemon.queue


class TestTicker:

    def test_calls_repeatedly_until_stopped(self):
        calls = []
        ticker = Ticker(0.01, lambda: calls.append(1))
        ticker.start()
        time.sleep(0.1)
        ticker.stop()
        assert len(calls) >= 2
        count = len(calls)
        time.sleep(0.05)
        assert len(calls) <= count + 1

    def test_poke_runs_early(self):
        called = threading.Event()
        calls = []

        def callback():
            calls.append(1)
            if len(calls) == 2:
                called.set()

        ticker = Ticker(60, callback)
        ticker.start()
        time.sleep(0.05)
        ticker.poke()
        assert called.wait(2)
        ticker.stop()

    def test_callback_error_does_not_kill_thread(self):
        calls = []

        def callback():
            calls.append(1)
            raise RuntimeError("tick failed")

        ticker = Ticker(0.01, callback)
        ticker.start()
        time.sleep(0.1)
        ticker.stop()
        assert len(calls) >= 2
