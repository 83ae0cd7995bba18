"""
Workflow checkpoints for crash-safe resumption.

A checkpoint records which actions a run has completed. On --continue, the
freshly assessed action list is filtered against it so completed work is not
repeated. There is no partial-action resumption: an action interrupted
mid-flight simply runs again.

Format (JSON, validated against checkpoint.schema.json):
    {
      "version": "1.0",
      "workflowId": "workflow-<ms>-<hex>",
      "timestamp": "...",
      "currentAction": {...} | null,
      "completedActions": [{"kind", "storyId", "storyRef", "completedAt"}],
      "context": {"options": {...}, "storyContentHash": "...", "storyRef": "..."}
    }
"""

import hashlib
import json
import logging
import secrets
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from storyflow.lib.atomic_io import atomic_write_json
from storyflow.lib.constants import CHECKPOINT_FILENAME, CHECKPOINT_STALE_HOURS, STORIES_DIRNAME
from storyflow.lib.validate import ValidationError, validate, validate_before_write
from storyflow.pm.models import Action

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = "1.0"


class CheckpointError(Exception):
    """Checkpoint exists but cannot be used."""
    pass


def generate_workflow_id() -> str:
    return f"workflow-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def story_content_hash(path: Optional[str]) -> Optional[str]:
    """sha256 of a story file, or None if it cannot be read."""
    if not path:
        return None
    try:
        return hashlib.sha256(Path(path).read_bytes()).hexdigest()
    except OSError:
        return None


def new_state(options: Optional[dict] = None) -> dict:
    return {
        "version": CHECKPOINT_VERSION,
        "workflowId": generate_workflow_id(),
        "timestamp": datetime.now().isoformat(),
        "currentAction": None,
        "completedActions": [],
        "context": {"options": dict(options or {}), "storyContentHash": None, "storyRef": None},
    }


def _action_key(entry: dict) -> tuple[str, str]:
    return (entry["kind"], entry["storyRef"])


def completed_keys(state: Optional[dict]) -> set[tuple[str, str]]:
    if not state:
        return set()
    return {_action_key(e) for e in state.get("completedActions", [])}


def filter_pending(actions: list[Action], state: Optional[dict]) -> list[Action]:
    """Drop actions whose (kind, storyRef) is already recorded as completed."""
    done = completed_keys(state)
    return [a for a in actions if a.key not in done]


def mark_started(state: dict, action: Action) -> None:
    state["currentAction"] = {
        "kind": action.kind.value,
        "storyId": action.story_id,
        "storyRef": action.story_ref,
        "startedAt": datetime.now().isoformat(),
    }


def record_completed(state: dict, action: Action) -> None:
    """Add a completed entry, replacing an older one with the same key.

    Also fingerprints the touched story so a resumed run can tell whether
    it was edited in between.
    """
    entries = [e for e in state["completedActions"] if _action_key(e) != action.key]
    entries.append({
        "kind": action.kind.value,
        "storyId": action.story_id,
        "storyRef": action.story_ref,
        "completedAt": datetime.now().isoformat(),
    })
    state["completedActions"] = entries
    state["currentAction"] = None
    state["timestamp"] = datetime.now().isoformat()
    state["context"]["storyRef"] = action.story_ref
    state["context"]["storyContentHash"] = story_content_hash(action.story_ref)


def forget_story(state: dict, story_id: str) -> int:
    """Drop a story's completed entries after its phase flags were reset.

    Returns the number of entries removed.
    """
    before = len(state["completedActions"])
    state["completedActions"] = [e for e in state["completedActions"] if e["storyId"] != story_id]
    return before - len(state["completedActions"])


def resume_warnings(state: dict, now: Optional[datetime] = None) -> list[str]:
    """Non-fatal reasons a checkpoint may be out of date."""
    warnings = []
    context = state.get("context", {})

    recorded_hash = context.get("storyContentHash")
    story_ref = context.get("storyRef")
    if recorded_hash and story_ref:
        current_hash = story_content_hash(story_ref)
        if current_hash != recorded_hash:
            warnings.append(
                f"Story {story_ref} changed since the checkpoint was written; "
                f"completed actions may no longer reflect its state"
            )

    try:
        written = datetime.fromisoformat(state["timestamp"])
    except (KeyError, ValueError):
        warnings.append("Checkpoint has no readable timestamp")
    else:
        age = (now or datetime.now()) - written
        if age > timedelta(hours=CHECKPOINT_STALE_HOURS):
            warnings.append(f"Checkpoint is {age.total_seconds() / 3600:.0f} hours old")

    return warnings


class CheckpointStore:
    """One checkpoint file per orchestration root, or per story when scoped."""

    def __init__(self, root: Path, story_id: Optional[str] = None):
        self.root = root
        self.story_id = story_id
        if story_id:
            self.path = root / STORIES_DIRNAME / f"{story_id}.workflow-state.json"
        else:
            self.path = root / CHECKPOINT_FILENAME

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[dict]:
        """Return the checkpoint, or None if there is none.

        Raises:
            CheckpointError: if the file is corrupt or fails schema validation
        """
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise CheckpointError(
                f"Checkpoint {self.path} is corrupted ({e}). "
                f"Delete the file to start a fresh run."
            ) from None
        except OSError as e:
            raise CheckpointError(f"Cannot read checkpoint {self.path}: {e}") from e

        try:
            validate(data, "checkpoint")
        except ValidationError as e:
            raise CheckpointError(
                f"Checkpoint {self.path} is invalid: {e}. Delete the file to start a fresh run."
            ) from None
        return data

    def save(self, state: dict) -> None:
        """Overwrite the checkpoint atomically."""
        validate_before_write(state, "checkpoint", self.path)
        atomic_write_json(self.path, state)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info(f"[Checkpoint] Cleared {self.path}")

    def migrate_from_root(self) -> bool:
        """Move a root-level checkpoint into this story-scoped location.

        Only applies when the root checkpoint's last action touched this
        story. Returns True if a checkpoint was moved.
        """
        if not self.story_id or self.path.exists():
            return False
        root_store = CheckpointStore(self.root)
        state = root_store.load()
        if not state:
            return False
        touched = {e["storyId"] for e in state["completedActions"]}
        if touched != {self.story_id}:
            return False
        self.save(state)
        root_store.clear()
        logger.info(f"[Checkpoint] Migrated root checkpoint to {self.path}")
        return True
