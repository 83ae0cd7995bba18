"""Tests for storyflow.agents.commands module."""

import json
import subprocess
from unittest.mock import patch, MagicMock

import pytest

from storyflow.agents.commands import (
    AGENT_KINDS,
    DEFAULT_COMMAND,
    CommandAgent,
    build_agents,
    build_command,
    load_agents_config,
    parse_agent_output,
    result_from_report,
)
from storyflow.pm.models import ActionKind, ReviewDecision


class TestLoadAgentsConfig:

    def test_defaults_without_file(self, root):
        config = load_agents_config(root)
        assert config.actions["implement"] == DEFAULT_COMMAND
        assert "rework" not in config.actions

    def test_none_root_gives_defaults(self):
        assert load_agents_config(None).actions["review"] == DEFAULT_COMMAND

    def test_overrides_and_unknown_kinds(self, root):
        (root / "agents.yaml").write_text(
            "actions:\n"
            "  implement: \"codex exec -C {worktree} {prompt}\"\n"
            "  deploy: \"make deploy\"\n"
        )
        config = load_agents_config(root)
        assert config.actions["implement"] == "codex exec -C {worktree} {prompt}"
        assert config.actions["review"] == DEFAULT_COMMAND
        assert "deploy" not in config.actions

    def test_invalid_yaml_gives_defaults(self, root):
        (root / "agents.yaml").write_text("actions: [unclosed\n")
        assert load_agents_config(root).actions["plan"] == DEFAULT_COMMAND


class TestBuildCommand:

    def test_prompt_via_stdin_when_absent(self):
        cmd, via_stdin = build_command("claude -p", {"prompt": "do it", "story": "/s.json"})
        assert cmd == ["claude", "-p"]
        assert via_stdin is True

    def test_prompt_substituted_as_single_argument(self):
        cmd, via_stdin = build_command(
            "codex exec -C {worktree} {prompt}",
            {"prompt": "fix 'this' \"now\"", "worktree": "/my repo"},
        )
        assert cmd == ["codex", "exec", "-C", "/my repo", "fix 'this' \"now\""]
        assert via_stdin is False

    def test_unknown_variable(self):
        with pytest.raises(ValueError, match="Unknown variables"):
            build_command("agent {nope}", {"prompt": "x"})


class TestParseAgentOutput:

    def test_plain_json(self):
        assert parse_agent_output('{"success": true}') == {"success": True}

    def test_envelope_with_fenced_json(self):
        envelope = {"result": '```json\n{"success": true, "decision": "approved"}\n```'}
        assert parse_agent_output(json.dumps(envelope)) == {"success": True, "decision": "approved"}

    def test_envelope_with_plain_text(self):
        envelope = {"result": "All done", "is_error": False}
        assert parse_agent_output(json.dumps(envelope)) == {"success": True, "feedback": "All done"}

    def test_envelope_error_flag(self):
        envelope = {"result": "rate limited", "is_error": True}
        assert parse_agent_output(json.dumps(envelope))["success"] is False

    def test_not_json(self):
        assert parse_agent_output("I changed three files") is None
        assert parse_agent_output("") is None
        assert parse_agent_output("[1, 2]") is None


class TestResultFromReport:

    def test_review_report(self):
        result = result_from_report({
            "success": True,
            "decision": "rejected",
            "severity": "major",
            "feedback": "needs tests",
            "issues": [{"severity": "blocker", "category": "testing", "description": "no tests"}, "typo"],
        })
        assert result.decision == ReviewDecision.REJECTED
        assert result.issues[0].severity == "blocker"
        assert result.issues[1].severity == "major"
        assert result.issues[1].description == "typo"
        assert result.feedback == "needs tests"

    def test_unknown_decision_ignored(self):
        assert result_from_report({"decision": "MAYBE"}).decision is None

    def test_defaults(self):
        result = result_from_report({"changes_made": ["a.py"], "pr_url": "https://x/pull/1"})
        assert result.success is True
        assert result.changes_made == ["a.py"]
        assert result.pr_url == "https://x/pull/1"


class TestCommandAgent:

    @pytest.fixture
    def story_ref(self, root, save_story):
        return save_story("S-1").ref

    @patch("storyflow.agents.commands.subprocess.run")
    def test_runs_with_prompt_on_stdin(self, mock_run, root, story_ref, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "secret")
        mock_run.return_value = MagicMock(returncode=0, stdout='{"success": true, "changes_made": ["a.py"]}',
                                          stderr="")
        agent = CommandAgent(ActionKind.IMPLEMENT, "claude -p", timeout=60)

        result = agent.run(story_ref, root)

        assert result.success
        assert result.changes_made == ["a.py"]
        kwargs = mock_run.call_args[1]
        assert mock_run.call_args[0][0] == ["claude", "-p"]
        assert story_ref in kwargs["input"]
        assert kwargs["cwd"] == str(root.parent)
        assert kwargs["timeout"] == 60
        assert "ANTHROPIC_API_KEY" not in kwargs["env"]
        assert (root / "logs" / "S-1" / "agents.log").exists()

    @patch("storyflow.agents.commands.subprocess.run")
    def test_story_variables(self, mock_run, root, story_ref):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        CommandAgent(ActionKind.PLAN, "planner --id {story_id} --file {story} {prompt}").run(story_ref, root)
        cmd = mock_run.call_args[0][0]
        assert cmd[:5] == ["planner", "--id", "S-1", "--file", story_ref]
        assert mock_run.call_args[1]["input"] is None

    @patch("storyflow.agents.commands.subprocess.run")
    def test_nonzero_exit(self, mock_run, root, story_ref):
        mock_run.return_value = MagicMock(returncode=2, stdout="", stderr="boom\n")
        result = CommandAgent(ActionKind.IMPLEMENT, "claude -p").run(story_ref, root)
        assert not result.success
        assert result.error == "implement agent failed (exit 2): boom"

    @patch("storyflow.agents.commands.subprocess.run")
    def test_timeout(self, mock_run, root, story_ref):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="claude", timeout=5)
        result = CommandAgent(ActionKind.REVIEW, "claude -p", timeout=5).run(story_ref, root)
        assert result.error == "review agent timed out after 5s"

    @patch("storyflow.agents.commands.subprocess.run")
    def test_missing_binary(self, mock_run, root, story_ref):
        mock_run.side_effect = FileNotFoundError()
        result = CommandAgent(ActionKind.REVIEW, "no-such-agent -p").run(story_ref, root)
        assert result.error == "Agent command not found: no-such-agent"

    @patch("storyflow.agents.commands.subprocess.run")
    def test_plain_text_output_is_success(self, mock_run, root, story_ref):
        mock_run.return_value = MagicMock(returncode=0, stdout="Researched the codebase.\n", stderr="")
        result = CommandAgent(ActionKind.RESEARCH, "claude -p").run(story_ref, root)
        assert result.success
        assert result.feedback == "Researched the codebase."

    def test_bad_template_fails_without_running(self, root, story_ref):
        with patch("storyflow.agents.commands.subprocess.run") as mock_run:
            result = CommandAgent(ActionKind.PLAN, "planner {unknown}").run(story_ref, root)
        mock_run.assert_not_called()
        assert not result.success

    def test_review_prompt_asks_for_decision(self):
        agent = CommandAgent(ActionKind.REVIEW, "claude -p")
        prompt = agent.render_prompt({"story": "/s.json", "story_id": "S-1", "root": "/r", "worktree": "/"})
        assert "/s.json" in prompt
        assert '"decision"' in prompt
        assert prompt.endswith("}")


class TestBuildAgents:

    def test_one_agent_per_kind(self, root):
        agents = build_agents(root, timeout=30)
        assert set(agents) == set(AGENT_KINDS)
        assert ActionKind.REWORK not in agents
        assert all(agent.timeout == 30 for agent in agents.values())
