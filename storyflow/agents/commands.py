"""
Phase agents as external commands.

Each agent-backed action kind (refine, research, plan, implement, review,
create_pr) maps to a CLI command template in <root>/agents.yaml. If no
config file exists, every kind defaults to Claude Code in print mode.

    actions:
      implement: "codex exec --dangerously-bypass-approvals-and-sandbox -C {worktree} {prompt}"
      review: "claude -p --output-format json"

Template variables:
- {prompt}: the phase prompt. If absent from the template, the prompt goes
  via stdin (safer for long, multi-line prompts).
- {story}: path to the story JSON file
- {story_id}: the story id
- {root}: orchestration root
- {worktree}: repository working directory (the root's parent)

Agents report back by printing one JSON object (optionally wrapped in the
Claude CLI's {"result": "..."} envelope):

    {"success": true, "changes_made": ["..."], "error": null,
     "decision": "APPROVED", "severity": "minor", "feedback": "...",
     "issues": [{"severity": "...", "category": "...", "description": "..."}],
     "pr_url": "https://..."}
"""

import json
import logging
import os
import re
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from storyflow.lib.constants import AGENTS_FILENAME
from storyflow.lib.story_log import StoryLog
from storyflow.pm.models import ActionKind, ReviewDecision, ReviewIssue

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "claude -p --output-format json --permission-mode acceptEdits"

# Kinds the runner handles itself, without an external agent
INTERNAL_KINDS = {ActionKind.REWORK}

AGENT_KINDS = [kind for kind in ActionKind if kind not in INTERNAL_KINDS]

DEFAULT_ACTION_COMMANDS = {kind.value: DEFAULT_COMMAND for kind in AGENT_KINDS}

RESULT_CONTRACT = (
    'When finished, reply with ONLY a JSON object: {"success": true|false, '
    '"changes_made": [strings], "error": string|null'
)

PHASE_PROMPTS = {
    ActionKind.REFINE: "Refine the backlog story in {story}: make the title, scope and "
                       "acceptance criteria concrete. Do not write code.",
    ActionKind.RESEARCH: "Research the codebase for the story in {story}: find the relevant "
                         "files, patterns and risks. Record findings; do not write code.",
    ActionKind.PLAN: "Write an implementation plan for the story in {story}, based on its "
                     "research notes. Do not write code yet.",
    ActionKind.IMPLEMENT: "Implement the story in {story} following its plan, in {worktree}. "
                          "Write tests and make them pass.",
    ActionKind.REVIEW: "Review the implementation of the story in {story} in {worktree}. "
                       "Decide APPROVED, REJECTED (code must be reworked) or RECOVERY "
                       "(implementation incomplete, continue it).",
    ActionKind.CREATE_PR: "Push the branch for the story in {story} and open a pull request.",
}

PHASE_RESULT_EXTRAS = {
    ActionKind.REVIEW: ', "decision": "APPROVED"|"REJECTED"|"RECOVERY", "severity": string, '
                       '"feedback": string, "issues": [{"severity", "category", "description"}]',
    ActionKind.CREATE_PR: ', "pr_url": string',
}


@dataclass
class AgentResult:
    """What an agent reports after running one phase."""
    success: bool
    changes_made: list[str] = field(default_factory=list)
    error: Optional[str] = None
    decision: Optional[ReviewDecision] = None
    issues: list[ReviewIssue] = field(default_factory=list)
    severity: Optional[str] = None
    feedback: str = ""
    pr_url: Optional[str] = None


class Agent(ABC):
    """One phase worker. Must be safe to re-invoke after a crash."""

    @abstractmethod
    def run(self, story_ref: str, root: Path, options: Optional[dict] = None) -> AgentResult:
        """Run the phase for the story at story_ref."""


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    actions: dict[str, str] = field(default_factory=lambda: DEFAULT_ACTION_COMMANDS.copy())


def load_agents_config(root: Optional[Path]) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If root is None or the file doesn't exist, returns defaults.
    """
    if root is None:
        return AgentsConfig()

    config_path = root / AGENTS_FILENAME
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()

    actions = DEFAULT_ACTION_COMMANDS.copy()
    if isinstance(data, dict) and isinstance(data.get("actions"), dict):
        for kind, command in data["actions"].items():
            if kind not in actions:
                logger.warning(f"{config_path}: ignoring unknown action '{kind}'")
                continue
            actions[kind] = str(command)
    return AgentsConfig(actions=actions)


def build_command(template: str, context: dict[str, str]) -> tuple[list[str], bool]:
    """Substitute variables into a template.

    Returns (argv, prompt_via_stdin). {prompt} is substituted after shlex
    splitting so quotes inside the prompt cannot break the command.
    """
    prompt_via_stdin = "{prompt}" not in template
    template = template.replace("{prompt}", "__PROMPT_PLACEHOLDER__")
    for key, value in context.items():
        if key != "prompt":
            template = template.replace(f"{{{key}}}", shlex.quote(value))

    remaining = re.findall(r'\{(\w+)\}', template)
    if remaining:
        raise ValueError(f"Unknown variables in agent command: {remaining}")

    cmd = shlex.split(template)
    if not prompt_via_stdin:
        cmd = [context.get("prompt", "") if arg == "__PROMPT_PLACEHOLDER__" else arg for arg in cmd]
    return cmd, prompt_via_stdin


def strip_markdown_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines)
    return text.strip()


def parse_agent_output(stdout: str) -> Optional[dict]:
    """Extract the agent's JSON report, unwrapping a Claude CLI envelope."""
    text = stdout.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None

    if isinstance(data, dict) and isinstance(data.get("result"), str):
        inner = strip_markdown_fences(data["result"])
        try:
            data = json.loads(inner)
        except json.JSONDecodeError:
            # Plain-text answer: success is judged by exit code alone
            return {"success": not data.get("is_error", False), "feedback": inner}

    return data if isinstance(data, dict) else None


def result_from_report(report: dict) -> AgentResult:
    decision = report.get("decision")
    issues = []
    for item in report.get("issues") or []:
        if isinstance(item, dict):
            issues.append(ReviewIssue(
                severity=str(item.get("severity", "major")),
                category=str(item.get("category", "")),
                description=str(item.get("description", "")),
            ))
        else:
            issues.append(ReviewIssue(severity="major", description=str(item)))

    try:
        parsed_decision = ReviewDecision(str(decision).upper()) if decision else None
    except ValueError:
        parsed_decision = None

    return AgentResult(
        success=bool(report.get("success", True)),
        changes_made=[str(c) for c in report.get("changes_made") or []],
        error=report.get("error"),
        decision=parsed_decision,
        issues=issues,
        severity=report.get("severity"),
        feedback=str(report.get("feedback") or ""),
        pr_url=report.get("pr_url"),
    )


class CommandAgent(Agent):
    """Runs an external CLI for one action kind."""

    def __init__(self, kind: ActionKind, template: str, timeout: int = 900):
        self.kind = kind
        self.template = template
        self.timeout = timeout

    def render_prompt(self, context: dict[str, str]) -> str:
        prompt = PHASE_PROMPTS[self.kind].format(**context)
        return f"{prompt}\n\n{RESULT_CONTRACT}{PHASE_RESULT_EXTRAS.get(self.kind, '')}}}"

    def run(self, story_ref: str, root: Path, options: Optional[dict] = None) -> AgentResult:
        story_id = Path(story_ref).stem
        context = {
            "story": story_ref,
            "story_id": story_id,
            "root": str(root),
            "worktree": str(root.parent),
        }
        context["prompt"] = self.render_prompt(context)

        try:
            cmd, via_stdin = build_command(self.template, context)
        except ValueError as e:
            return AgentResult(success=False, error=str(e))

        # Remove ANTHROPIC_API_KEY so Claude uses OAuth credentials instead
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}
        log = StoryLog(root, story_id, "agents")
        start = time.time()

        try:
            result = subprocess.run(
                cmd,
                cwd=str(root.parent),
                input=context["prompt"] if via_stdin else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            log.log(f"{self.kind.value}: timed out after {self.timeout}s", level="ERROR")
            return AgentResult(success=False, error=f"{self.kind.value} agent timed out after {self.timeout}s")
        except FileNotFoundError:
            return AgentResult(success=False, error=f"Agent command not found: {cmd[0]}")

        log.log_output(self.kind.value, result.returncode, result.stdout, result.stderr, time.time() - start)

        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or "(no output)"
            return AgentResult(success=False, error=f"{self.kind.value} agent failed (exit {result.returncode}): {detail}")

        report = parse_agent_output(result.stdout)
        if report is None:
            return AgentResult(success=True, feedback=result.stdout.strip())
        return result_from_report(report)


def build_agents(root: Path, timeout: int = 900) -> dict[ActionKind, Agent]:
    """One CommandAgent per agent-backed action kind."""
    config = load_agents_config(root)
    return {
        kind: CommandAgent(kind, config.actions[kind.value], timeout=timeout)
        for kind in AGENT_KINDS
    }
