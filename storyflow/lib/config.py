"""
Configuration loaders for storyflow.

Loads orchestration settings from <root>/storyflow.env. Every key is optional;
a missing file yields the defaults below.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path

from . import envparse
from .constants import (
    CONFIG_FILENAME,
    DEFAULT_ROOT_DIRNAME,
    MAX_AUTO_ITERATIONS,
    ROOT_ENV_VAR,
)

logger = logging.getLogger(__name__)

MERGE_STRATEGIES = {"squash", "merge", "rebase"}
DEFAULT_MERGE_STRATEGY = "squash"


class ConfigError(Exception):
    """storyflow.env could not be parsed or holds an invalid value."""
    pass


@dataclass
class EpicConfig:
    """Concurrent epic execution settings."""
    max_concurrent: int = 3
    keep_worktrees: bool = False
    continue_on_failure: bool = True
    worktree_base: str = ".storyflow-worktrees"  # Relative to the repo root


@dataclass
class MergeConfig:
    """Merge-on-success settings for epic runs."""
    enabled: bool = False
    strategy: str = DEFAULT_MERGE_STRATEGY
    delete_branch: bool = True
    checks_timeout: int = 600  # Seconds
    checks_poll_interval: int = 30  # Seconds
    require_all_checks: bool = True


@dataclass
class RefinementConfig:
    max_iterations: float = 3


@dataclass
class ReviewConfig:
    """Review retry limits. max_retries is capped at max_retries_upper_bound."""
    max_retries: float = 3
    max_retries_upper_bound: float = 10
    auto_complete_on_approval: bool = True
    auto_restart_on_rejection: bool = True


@dataclass
class ImplementationConfig:
    max_retries: float = 3
    max_retries_upper_bound: float = 10


@dataclass
class StageGates:
    """Named gates that stop auto mode before a kind of action runs."""
    require_approval_before_implementation: bool = False
    require_approval_before_pr: bool = False


@dataclass
class DaemonConfig:
    poll_interval: float = 5.0  # Seconds
    shutdown_timeout: float = 30.0  # Seconds
    max_iterations: int = MAX_AUTO_ITERATIONS


@dataclass
class StoryflowConfig:
    """Complete orchestration configuration."""
    epic: EpicConfig = field(default_factory=EpicConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    implementation: ImplementationConfig = field(default_factory=ImplementationConfig)
    stage_gates: StageGates = field(default_factory=StageGates)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    agent_timeout: int = 900  # Seconds per agent invocation


def get_storyflow_root(cwd: Path | None = None) -> Path:
    """Resolve the orchestration root: $STORYFLOW_ROOT, else <cwd>/.storyflow."""
    override = os.environ.get(ROOT_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    return (cwd or Path.cwd()) / DEFAULT_ROOT_DIRNAME


def _cap_limit(value: float, upper_bound: float, key: str) -> float:
    """Cap a finite retry limit at its upper bound, warning when it is lowered.

    Unlimited values pass through uncapped.
    """
    if is_unlimited(value):
        return value
    if value > upper_bound:
        logger.warning(
            f"{key}={value} exceeds upper bound {upper_bound}; capping to {upper_bound}"
        )
        return upper_bound
    return value


def parse_config(env: dict) -> StoryflowConfig:
    """Build a StoryflowConfig from parsed env values.

    Raises:
        ConfigError: if any value has the wrong type or is out of range
    """
    try:
        epic = EpicConfig(
            max_concurrent=envparse.parse_int(env, "MAX_CONCURRENT", 3, minimum=1),
            keep_worktrees=envparse.parse_bool(env, "KEEP_WORKTREES", False),
            continue_on_failure=envparse.parse_bool(env, "CONTINUE_ON_FAILURE", True),
            worktree_base=env.get("WORKTREE_BASE", ".storyflow-worktrees"),
        )

        strategy = env.get("MERGE_STRATEGY", DEFAULT_MERGE_STRATEGY).lower()
        if strategy not in MERGE_STRATEGIES:
            logger.warning(
                f"Unknown MERGE_STRATEGY '{strategy}', using '{DEFAULT_MERGE_STRATEGY}'"
            )
            strategy = DEFAULT_MERGE_STRATEGY
        merge = MergeConfig(
            enabled=envparse.parse_bool(env, "MERGE_ENABLED", False),
            strategy=strategy,
            delete_branch=envparse.parse_bool(env, "MERGE_DELETE_BRANCH", True),
            checks_timeout=envparse.parse_int(env, "MERGE_CHECKS_TIMEOUT", 600, minimum=0),
            checks_poll_interval=envparse.parse_int(env, "MERGE_CHECKS_POLL_INTERVAL", 30, minimum=1),
            require_all_checks=envparse.parse_bool(env, "MERGE_REQUIRE_ALL_CHECKS", True),
        )

        refinement = RefinementConfig(
            max_iterations=envparse.parse_limit(env, "REFINEMENT_MAX_ITERATIONS", 3),
        )

        review_upper = envparse.parse_limit(env, "REVIEW_MAX_RETRIES_UPPER_BOUND", 10)
        review = ReviewConfig(
            max_retries=_cap_limit(
                envparse.parse_limit(env, "REVIEW_MAX_RETRIES", 3), review_upper, "REVIEW_MAX_RETRIES"
            ),
            max_retries_upper_bound=review_upper,
            auto_complete_on_approval=envparse.parse_bool(env, "REVIEW_AUTO_COMPLETE", True),
            auto_restart_on_rejection=envparse.parse_bool(env, "REVIEW_AUTO_RESTART", True),
        )

        impl_upper = envparse.parse_limit(env, "IMPLEMENTATION_MAX_RETRIES_UPPER_BOUND", 10)
        implementation = ImplementationConfig(
            max_retries=_cap_limit(
                envparse.parse_limit(env, "IMPLEMENTATION_MAX_RETRIES", 3),
                impl_upper,
                "IMPLEMENTATION_MAX_RETRIES",
            ),
            max_retries_upper_bound=impl_upper,
        )

        stage_gates = StageGates(
            require_approval_before_implementation=envparse.parse_bool(
                env, "GATE_APPROVAL_BEFORE_IMPLEMENTATION", False
            ),
            require_approval_before_pr=envparse.parse_bool(env, "GATE_APPROVAL_BEFORE_PR", False),
        )

        daemon = DaemonConfig(
            poll_interval=float(envparse.parse_int(env, "DAEMON_POLL_INTERVAL", 5, minimum=1)),
            shutdown_timeout=float(envparse.parse_int(env, "DAEMON_SHUTDOWN_TIMEOUT", 30, minimum=0)),
            max_iterations=envparse.parse_int(env, "DAEMON_MAX_ITERATIONS", MAX_AUTO_ITERATIONS, minimum=1),
        )

        agent_timeout = envparse.parse_int(env, "AGENT_TIMEOUT", 900, minimum=1)
    except ValueError as e:
        raise ConfigError(str(e)) from None

    return StoryflowConfig(
        epic=epic,
        merge=merge,
        refinement=refinement,
        review=review,
        implementation=implementation,
        stage_gates=stage_gates,
        daemon=daemon,
        agent_timeout=agent_timeout,
    )


def load_config(root: Path) -> StoryflowConfig:
    """Load <root>/storyflow.env and return StoryflowConfig.

    Missing file returns defaults. Unparseable file raises ConfigError.
    """
    config_path = root / CONFIG_FILENAME
    if not config_path.exists():
        return StoryflowConfig()

    try:
        env = envparse.load_env(str(config_path))
    except ValueError as e:
        raise ConfigError(f"{config_path}: {e}") from None

    return parse_config(env)


def is_unlimited(limit: float) -> bool:
    return limit == math.inf
