"""Prefect task and flow wrappers for workflow and epic runs.

Wraps runner actions with @task decorators to get:
- Automatic retry with configurable delay
- Structured logging
- Observability (when connected to Prefect server)

The runner and epic orchestrator remain plain Python; flows only build
them from an orchestration root and hand each action to a task.
"""

import logging
from pathlib import Path
from typing import Optional

from prefect import flow, task
from prefect.cache_policies import NO_CACHE

from storyflow.agents.commands import build_agents
from storyflow.epic.executor import PhaseExecutor
from storyflow.epic.orchestrator import EpicOrchestrator, EpicSummary
from storyflow.git.worktree import GitWorktreeSandbox
from storyflow.lib.config import StoryflowConfig, load_config
from storyflow.lib.github import GhMergeCollaborator
from storyflow.pm.models import Action
from storyflow.pm.stories import JsonStoryRepository
from storyflow.workflow.runner import ActionOutcome, RunResult, WorkflowRunner

logger = logging.getLogger(__name__)


@task(
    retries=1,
    retry_delay_seconds=30,
    name="execute_action",
    description="Run one scheduler action through its phase agent",
    cache_policy=NO_CACHE,
)
def task_execute_action(runner: WorkflowRunner, action: Action, state: Optional[dict]) -> ActionOutcome:
    """Action execution with Prefect retry handling.

    Agent failures come back as unsuccessful outcomes, so retries only
    cover unexpected errors such as a story write failing mid-action.
    """
    return runner.execute_action(action, state)


def create_runner(root: Path, config: Optional[StoryflowConfig] = None,
                  story_id: Optional[str] = None) -> WorkflowRunner:
    config = config or load_config(root)
    return WorkflowRunner(
        root=root,
        repository=JsonStoryRepository(root),
        config=config,
        agents=build_agents(root, timeout=config.agent_timeout),
        story_id=story_id,
    )


@flow(name="storyflow_run")
def run_workflow_flow(
    root: str,
    auto: bool = False,
    resume: bool = False,
    story_id: Optional[str] = None,
    dry_run: bool = False,
) -> int:
    """Single or auto workflow run. Returns the process exit code."""
    runner = create_runner(Path(root), story_id=story_id)
    runner.execute = lambda action, state: task_execute_action(runner, action, state)
    result: RunResult = runner.run(auto=auto, resume=resume, dry_run=dry_run)
    logger.info(f"[Flow] run finished: {result.stop_reason} after {len(result.outcomes)} action(s)")
    return result.exit_code


def create_epic_orchestrator(root: Path, config: StoryflowConfig) -> EpicOrchestrator:
    repository = JsonStoryRepository(root)
    sandbox = GitWorktreeSandbox(root, worktree_base=config.epic.worktree_base)
    merger = GhMergeCollaborator(root.parent) if config.merge.enabled else None
    executor = PhaseExecutor(root, repository, sandbox, config, merger=merger)
    return EpicOrchestrator(repository, config, executor)


@flow(name="storyflow_epic")
def epic_flow(
    root: str,
    epic_id: str,
    max_concurrent: Optional[int] = None,
    continue_on_failure: Optional[bool] = None,
    keep_worktrees: Optional[bool] = None,
    merge: Optional[bool] = None,
    dry_run: bool = False,
) -> int:
    """Run every story of an epic. Returns the process exit code."""
    root_path = Path(root)
    config = load_config(root_path)
    if keep_worktrees is not None:
        config.epic.keep_worktrees = keep_worktrees
    if merge is not None:
        config.merge.enabled = merge

    orchestrator = create_epic_orchestrator(root_path, config)
    summary: EpicSummary = orchestrator.run(
        epic_id,
        max_concurrent=max_concurrent,
        continue_on_failure=continue_on_failure,
        dry_run=dry_run,
    )
    return summary.exit_code
