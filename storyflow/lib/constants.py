"""Shared constants for storyflow."""

import re

# Story statuses
STATUS_BACKLOG = "backlog"
STATUS_READY = "ready"
STATUS_IN_PROGRESS = "in-progress"
STATUS_BLOCKED = "blocked"
STATUS_DONE = "done"
STATUSES = [STATUS_BACKLOG, STATUS_READY, STATUS_IN_PROGRESS, STATUS_BLOCKED, STATUS_DONE]

# Story ID validation (also used for worktree and branch names)
STORY_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')

# Orchestration root layout
ROOT_ENV_VAR = "STORYFLOW_ROOT"
DEFAULT_ROOT_DIRNAME = ".storyflow"
CONFIG_FILENAME = "storyflow.env"
AGENTS_FILENAME = "agents.yaml"
STORIES_DIRNAME = "stories"
LOGS_DIRNAME = "logs"
CHECKPOINT_FILENAME = ".workflow-state.json"

# Review history is FIFO-capped
MAX_REVIEW_HISTORY = 10

# Lifetime recovery backstop, independent of per-phase counters
GLOBAL_RECOVERY_LIMIT = 10

# Hard cap for auto mode and daemon per-story loops
MAX_AUTO_ITERATIONS = 100

# Circuit-break fallback actions sort after everything else
BLOCKED_FALLBACK_PRIORITY_OFFSET = 10000

# Checkpoints older than this produce a warning on resume
CHECKPOINT_STALE_HOURS = 48

# Persisted blocked reasons are truncated to this length
MAX_REASON_LENGTH = 200

# Epic labels are "epic-<id>"
EPIC_LABEL_PREFIX = "epic-"
