"""
Workflow runner.

Executes scheduler actions against phase agents. Single mode runs the one
highest-priority action; auto mode keeps re-assessing and executing until
nothing is left, a stage gate is hit, an action fails, or the iteration cap
is reached.

The runner owns story mutation: agents do the work, then the runner records
the phase as complete, applies review decisions, and moves the story
through its state machine. Every action is recorded in a checkpoint so an
interrupted auto run can pick up where it left off with --continue.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from storyflow.agents.categorizer import PHASE_PLAN, PHASE_RESEARCH, ROUTING_SEVERITIES, classify
from storyflow.agents.commands import Agent, AgentResult
from storyflow.lib.config import StoryflowConfig
from storyflow.lib.constants import (
    GLOBAL_RECOVERY_LIMIT,
    MAX_AUTO_ITERATIONS,
    STATUS_BACKLOG,
    STATUS_IN_PROGRESS,
    STATUS_READY,
)
from storyflow.lib.sanitize import sanitize_reason_text
from storyflow.lib.story_log import StoryLog
from storyflow.pm.models import Action, ActionKind, ReviewAttempt, ReviewDecision, Story
from storyflow.pm.stories import (
    StoryPersistenceError,
    StoryRepository,
    append_review_attempt,
    mark_all_complete,
    reset_rpiv_cycle,
)
from storyflow.workflow import checkpoint
from storyflow.workflow.checkpoint import CheckpointStore
from storyflow.workflow.fsm import InvalidTransition, StoryFSM, block_story
from storyflow.workflow.scheduler import (
    Scheduler,
    effective_max_implementation_retries,
    effective_max_refinements,
    effective_max_retries,
    format_limit,
)

logger = logging.getLogger(__name__)

STOP_SINGLE = "single"
STOP_DRAINED = "drained"
STOP_GATE = "gate"
STOP_FAILURE = "failure"
STOP_ITERATION_CAP = "iteration_cap"
STOP_DRY_RUN = "dry_run"

GATE_BEFORE_IMPLEMENTATION = "require_approval_before_implementation"
GATE_BEFORE_PR = "require_approval_before_pr"


@dataclass
class ActionOutcome:
    """Result of executing one action."""
    action: Action
    success: bool
    message: str = ""
    decision: Optional[ReviewDecision] = None
    blocked: bool = False
    # Story progress was reset, so earlier checkpoint entries no longer apply
    invalidates_progress: bool = False


@dataclass
class RunResult:
    stop_reason: str
    outcomes: list[ActionOutcome] = field(default_factory=list)
    pending: list[Action] = field(default_factory=list)
    gate: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.stop_reason in (STOP_FAILURE, STOP_ITERATION_CAP) else 0


ActionExecutor = Callable[[Action, Optional[dict]], ActionOutcome]


class WorkflowRunner:
    """Runs actions for one orchestration root, optionally scoped to one story."""

    def __init__(
        self,
        root: Path,
        repository: StoryRepository,
        config: StoryflowConfig,
        agents: dict[ActionKind, Agent],
        story_id: Optional[str] = None,
        scheduler: Optional[Scheduler] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
    ):
        self.root = root
        self.repository = repository
        self.config = config
        self.agents = agents
        self.story_id = story_id
        self.scheduler = scheduler or Scheduler(repository, config, classify)
        self.checkpoint_store = checkpoint_store or CheckpointStore(root, story_id)
        # Replaced by the Prefect flow to run each action as a task
        self.execute: ActionExecutor = self.execute_action
        # Unattended runs open the pull request right after an approval
        self.auto = False

    # --- Assessment -----------------------------------------------------

    def pending_actions(self, state: Optional[dict] = None) -> list[Action]:
        """Fresh assessment, scoped to the runner's story and minus completed work."""
        actions = self.scheduler.assess().recommended_actions
        if self.story_id:
            actions = [a for a in actions if a.story_id == self.story_id]
        return checkpoint.filter_pending(actions, state)

    def blocking_gate(self, action: Action) -> Optional[str]:
        gates = self.config.stage_gates
        if action.kind == ActionKind.IMPLEMENT and gates.require_approval_before_implementation:
            return GATE_BEFORE_IMPLEMENTATION
        if action.kind == ActionKind.CREATE_PR and gates.require_approval_before_pr:
            return GATE_BEFORE_PR
        return None

    # --- Run loop -------------------------------------------------------

    def _start_state(self, resume: bool, options: dict) -> tuple[dict, list[str]]:
        """Checkpoint state for this run plus any resume warnings.

        Raises:
            CheckpointError: if resuming from a corrupt checkpoint
        """
        if not resume:
            if self.checkpoint_store.exists():
                logger.info(f"[Runner] Starting fresh; existing checkpoint {self.checkpoint_store.path} will be replaced")
            return checkpoint.new_state(options), []

        self.checkpoint_store.migrate_from_root()
        state = self.checkpoint_store.load()
        if state is None:
            print("No checkpoint found; starting fresh.")
            return checkpoint.new_state(options), []

        warnings = checkpoint.resume_warnings(state)
        print(f"Resuming {state['workflowId']} ({len(state['completedActions'])} completed actions)")
        for warning in warnings:
            print(f"WARNING: {warning}")
        return state, warnings

    def run(self, auto: bool = False, resume: bool = False, dry_run: bool = False) -> RunResult:
        """Run in single or auto mode.

        Raises:
            CheckpointError: if resuming from a corrupt checkpoint
        """
        options = {"auto": auto, "storyId": self.story_id, "dryRun": dry_run}
        self.auto = auto
        state, warnings = self._start_state(resume, options)
        result = RunResult(stop_reason=STOP_DRAINED, warnings=warnings)

        if dry_run:
            result.stop_reason = STOP_DRY_RUN
            result.pending = self.pending_actions(state)
            self.print_actions(result.pending)
            return result

        iterations = 0
        while True:
            if iterations >= MAX_AUTO_ITERATIONS:
                logger.warning(f"[Runner] Stopping after {MAX_AUTO_ITERATIONS} iterations")
                print(f"\nStopped: reached the {MAX_AUTO_ITERATIONS}-iteration limit")
                result.stop_reason = STOP_ITERATION_CAP
                return result

            pending = self.pending_actions(state)
            if not pending:
                if iterations == 0:
                    print("Nothing to do.")
                else:
                    print("\nAll actions complete.")
                if auto or resume or self.checkpoint_store.exists():
                    self.checkpoint_store.clear()
                result.stop_reason = STOP_DRAINED
                return result

            action = pending[0]
            if auto:
                gate = self.blocking_gate(action)
                if gate:
                    print(f"\nStopped at stage gate '{gate}' before: {action.reason}")
                    print("Approve by running the action without --auto, or disable the gate.")
                    result.stop_reason = STOP_GATE
                    result.gate = gate
                    result.pending = pending
                    return result

            iterations += 1
            print(f"\n[{iterations}] {action.kind.value}: {action.reason}")
            outcome = self.execute(action, state)
            result.outcomes.append(outcome)

            if not outcome.success and not outcome.blocked:
                print(f"Failed: {outcome.message}")
                result.stop_reason = STOP_FAILURE
                return result

            print(f"  -> {outcome.message}")
            if not auto:
                result.stop_reason = STOP_SINGLE
                return result

    def print_actions(self, actions: list[Action]):
        if not actions:
            print("No actions to run.")
            return
        print(f"{len(actions)} pending action(s):")
        for action in actions:
            print(f"  [{action.priority:>5}] {action.kind.value:<10} {action.story_id}: {action.reason}")

    # --- Action execution -----------------------------------------------

    def execute_action(self, action: Action, state: Optional[dict] = None) -> ActionOutcome:
        """Execute one action and update the checkpoint if one is given."""
        story = self.repository.load(action.story_id)
        if story is None:
            return ActionOutcome(action, success=False, message=f"Story {action.story_id} not found")

        if story.total_recovery_attempts >= GLOBAL_RECOVERY_LIMIT:
            return self._block(
                action, story,
                f"Global recovery limit ({GLOBAL_RECOVERY_LIMIT}) reached after "
                f"{story.total_recovery_attempts} recovery attempts",
            )

        if state is not None:
            checkpoint.mark_started(state, action)
            self.checkpoint_store.save(state)

        log = StoryLog(self.root, story.id, "workflow")
        log.log(f"Action {action.kind.value} started: {action.reason}")

        handler = self._DISPATCH[action.kind]
        outcome = handler(self, action, story)

        log.log(f"Action {action.kind.value} {'succeeded' if outcome.success else 'did not succeed'}: "
                f"{outcome.message}", level="INFO" if outcome.success else "WARNING")

        if state is not None:
            if outcome.invalidates_progress:
                removed = checkpoint.forget_story(state, story.id)
                logger.info(f"[Runner] {story.id} progress reset; dropped {removed} checkpoint entries")
                state["currentAction"] = None
            elif outcome.success:
                checkpoint.record_completed(state, action)
            else:
                state["currentAction"] = None
            self.checkpoint_store.save(state)

        return outcome

    def _save(self, story: Story) -> None:
        self.repository.save(story)

    def _block(self, action: Action, story: Story, reason: str) -> ActionOutcome:
        try:
            block_story(story, reason, self.repository)
        except (StoryPersistenceError, InvalidTransition) as e:
            logger.error(f"[Runner] Failed to block {story.id}: {e}")
            return ActionOutcome(action, success=False, message=f"{reason}; blocking failed: {e}")
        logger.warning(f"[Runner] Blocked {story.id}: {reason}")
        return ActionOutcome(action, success=False, blocked=True, message=f"Blocked: {reason}")

    def _run_agent(self, action: Action, story: Story) -> AgentResult:
        agent = self.agents.get(action.kind)
        if agent is None:
            return AgentResult(success=False, error=f"No agent configured for '{action.kind.value}'")
        return agent.run(story.ref, self.root, {"context": action.context})

    def _agent_failed(self, action: Action, story: Story, result: AgentResult) -> ActionOutcome:
        error = result.error or f"{action.kind.value} agent reported failure"
        story.last_error = sanitize_reason_text(error)
        self._save(story)
        return ActionOutcome(action, success=False, message=error)

    # --- Phase handlers -------------------------------------------------

    def _handle_refine(self, action: Action, story: Story) -> ActionOutcome:
        result = self._run_agent(action, story)
        story = self.repository.reload(story)
        if not result.success:
            return self._agent_failed(action, story, result)
        if story.status == STATUS_BACKLOG:
            StoryFSM(story).fire("refined")
        story.last_error = None
        self._save(story)
        return ActionOutcome(action, success=True, message="Refined; story is ready")

    def _handle_research(self, action: Action, story: Story) -> ActionOutcome:
        result = self._run_agent(action, story)
        story = self.repository.reload(story)
        if not result.success:
            return self._agent_failed(action, story, result)
        story.research_complete = True
        story.last_error = None
        self._save(story)
        return ActionOutcome(action, success=True, message="Research complete")

    def _handle_plan(self, action: Action, story: Story) -> ActionOutcome:
        result = self._run_agent(action, story)
        story = self.repository.reload(story)
        if not result.success:
            return self._agent_failed(action, story, result)
        story.plan_complete = True
        story.last_error = None
        self._save(story)
        return ActionOutcome(action, success=True, message="Plan complete")

    def _handle_implement(self, action: Action, story: Story) -> ActionOutcome:
        if story.status == STATUS_READY:
            # Mark in-progress first so an interrupted run resumes as "continue implementation"
            StoryFSM(story).fire("start_implementation")
            self._save(story)

        result = self._run_agent(action, story)
        story = self.repository.reload(story)
        if not result.success:
            return self._agent_failed(action, story, result)
        story.implementation_complete = True
        story.last_error = None
        self._save(story)
        changes = f" ({len(result.changes_made)} changes)" if result.changes_made else ""
        return ActionOutcome(action, success=True, message=f"Implementation complete{changes}")

    def _handle_create_pr(self, action: Action, story: Story) -> ActionOutcome:
        result = self._run_agent(action, story)
        story = self.repository.reload(story)
        if not result.success:
            return self._agent_failed(action, story, result)
        if result.pr_url:
            story.pr_url = result.pr_url
        if story.status == STATUS_IN_PROGRESS:
            StoryFSM(story).fire("complete")
        story.last_error = None
        self._save(story)
        return ActionOutcome(action, success=True, message=f"Pull request created: {story.pr_url or 'url unknown'}")

    def _handle_review(self, action: Action, story: Story) -> ActionOutcome:
        result = self._run_agent(action, story)
        story = self.repository.reload(story)

        decision = result.decision
        if decision is None or decision == ReviewDecision.FAILED:
            # The review itself broke; counters and flags stay untouched
            error = result.error or "Review agent returned no decision"
            story.last_error = sanitize_reason_text(error)
            self._save(story)
            logger.warning(f"[Runner] Review of {story.id} failed: {error}")
            return ActionOutcome(action, success=False, decision=ReviewDecision.FAILED,
                                 message=f"Review failed: {error}")

        blockers = [i.description for i in result.issues if i.severity.lower() in ROUTING_SEVERITIES]
        if not blockers:
            blockers = [i.description for i in result.issues]
        append_review_attempt(story, ReviewAttempt(
            timestamp=datetime.now().isoformat(),
            decision=decision,
            severity=result.severity,
            feedback=result.feedback,
            blockers=tuple(blockers),
        ))
        story.last_error = None

        if decision == ReviewDecision.APPROVED:
            return self._review_approved(action, story)
        if decision == ReviewDecision.REJECTED:
            return self._review_rejected(action, story, result)
        return self._review_recovery(action, story)

    def _review_approved(self, action: Action, story: Story) -> ActionOutcome:
        """Record an approval.

        With auto-complete the story is finished here: every phase flag is
        set and it moves to done. Auto runs open the pull request first,
        unless a stage gate asks for approval before PRs, in which case the
        story stays in progress so the gate stops the run at create_pr.
        Without auto-complete only the review flag is set and the scheduler
        recommends create_pr next.
        """
        if not self.config.review.auto_complete_on_approval:
            story.reviews_complete = True
            self._save(story)
            return ActionOutcome(action, success=True, decision=ReviewDecision.APPROVED,
                                 message="Approved; reviews complete")

        mark_all_complete(story)
        story.implementation_retry_count = 0
        self._save(story)

        if self.auto and self.config.stage_gates.require_approval_before_pr:
            return ActionOutcome(action, success=True, decision=ReviewDecision.APPROVED,
                                 message="Approved; pull request waits for approval")

        if self.auto and not story.pr_url:
            pr_action = Action(ActionKind.CREATE_PR, story.id, story.ref, action.priority,
                               f"Create pull request after approval: {story.title}")
            result = self._run_agent(pr_action, story)
            story = self.repository.reload(story)
            if not result.success:
                outcome = self._block(
                    action, story,
                    f"Pull request creation failed after approval: {result.error or 'no error reported'}",
                )
                outcome.decision = ReviewDecision.APPROVED
                return outcome
            if result.pr_url:
                story.pr_url = result.pr_url

        if story.status == STATUS_IN_PROGRESS:
            StoryFSM(story).fire("complete")
        self._save(story)
        pr = f"; pull request {story.pr_url}" if story.pr_url else ""
        return ActionOutcome(action, success=True, decision=ReviewDecision.APPROVED,
                             message=f"Approved; story done{pr}")

    def _review_rejected(self, action: Action, story: Story, result: AgentResult) -> ActionOutcome:
        max_retries = effective_max_retries(story, self.config)
        if self.config.review.auto_restart_on_rejection and story.retry_count < max_retries:
            reason = sanitize_reason_text(f"Review rejected: {result.feedback or 'no feedback'}")
            reset_rpiv_cycle(story, reason)
            if story.status == STATUS_IN_PROGRESS:
                StoryFSM(story).fire("restart")
            self._save(story)
            logger.info(f"[Runner] {story.id} rejected; restarting cycle "
                        f"(retry {story.retry_count}/{format_limit(max_retries)})")
            return ActionOutcome(action, success=True, decision=ReviewDecision.REJECTED,
                                 invalidates_progress=True,
                                 message=f"Rejected; cycle restarted (retry {story.retry_count})")

        self._save(story)
        logger.info(f"[Runner] {story.id} rejected; no automatic restart")
        return ActionOutcome(action, success=True, decision=ReviewDecision.REJECTED,
                             message="Rejected; left for rework or the retry limit")

    def _review_recovery(self, action: Action, story: Story) -> ActionOutcome:
        story.implementation_retry_count += 1
        story.total_recovery_attempts += 1
        max_impl = effective_max_implementation_retries(story, self.config)
        self._save(story)
        if story.implementation_retry_count > max_impl:
            outcome = self._block(
                action, story,
                f"Max implementation retries ({format_limit(max_impl)}) reached",
            )
            outcome.decision = ReviewDecision.RECOVERY
            return outcome
        return ActionOutcome(action, success=True, decision=ReviewDecision.RECOVERY, invalidates_progress=True,
                             message=f"Recovery requested (attempt {story.implementation_retry_count})")

    def _handle_rework(self, action: Action, story: Story) -> ActionOutcome:
        """Re-enter an earlier phase after a rejected review. No agent runs here."""
        max_refinements = effective_max_refinements(story, self.config)
        if story.refinement_count >= max_refinements:
            return self._block(
                action, story,
                f"Max refinement attempts ({format_limit(max_refinements)}) reached",
            )

        target = action.context.get("target_phase", "implement")
        story.refinement_count += 1
        story.total_recovery_attempts += 1
        story.reviews_complete = False
        story.implementation_complete = False
        if target in (PHASE_RESEARCH, PHASE_PLAN):
            story.plan_complete = False
        if target == PHASE_RESEARCH:
            story.research_complete = False

        feedback = action.context.get("review_feedback") or ""
        story.last_restart_reason = sanitize_reason_text(
            f"Rework {target} (iteration {story.refinement_count}): {feedback}"
        )
        story.last_restart_at = datetime.now().isoformat()

        if target in (PHASE_RESEARCH, PHASE_PLAN) and story.status == STATUS_IN_PROGRESS:
            StoryFSM(story).fire("restart")
        self._save(story)
        return ActionOutcome(action, success=True, invalidates_progress=True,
                             message=f"Rework routed to {target} (iteration {story.refinement_count})")

    _DISPATCH = {
        ActionKind.REFINE: _handle_refine,
        ActionKind.RESEARCH: _handle_research,
        ActionKind.PLAN: _handle_plan,
        ActionKind.IMPLEMENT: _handle_implement,
        ActionKind.REVIEW: _handle_review,
        ActionKind.REWORK: _handle_rework,
        ActionKind.CREATE_PR: _handle_create_pr,
    }
