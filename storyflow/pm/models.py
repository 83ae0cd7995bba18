"""
Data models for stories, reviews and scheduler actions.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from storyflow.lib.constants import STATUS_BACKLOG


class ReviewDecision(Enum):
    """Outcome of a review action."""
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"  # Code was reviewed and found lacking
    RECOVERY = "RECOVERY"  # Implementation needs another pass, no full reset
    FAILED = "FAILED"      # The review process itself errored


class ActionKind(Enum):
    """Pipeline phase an action advances."""
    REFINE = "refine"
    RESEARCH = "research"
    PLAN = "plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    REWORK = "rework"
    CREATE_PR = "create_pr"


@dataclass(frozen=True)
class ReviewAttempt:
    """One entry of a story's review history. Never mutated."""
    timestamp: str
    decision: ReviewDecision
    severity: Optional[str] = None
    feedback: str = ""
    blockers: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "decision": self.decision.value,
            "severity": self.severity,
            "feedback": self.feedback,
            "blockers": list(self.blockers),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewAttempt":
        return cls(
            timestamp=data["timestamp"],
            decision=ReviewDecision(data["decision"]),
            severity=data.get("severity"),
            feedback=data.get("feedback", ""),
            blockers=tuple(data.get("blockers", [])),
        )


@dataclass
class ReviewIssue:
    """A single issue reported by a review agent."""
    severity: str          # blocker, critical, major, minor
    category: str = ""     # e.g. "requirements", "design", "testing"
    description: str = ""


@dataclass
class Story:
    """A unit of work tracked through refine -> research -> plan -> implement -> review -> PR.

    Stories are persisted as JSON by a StoryRepository. `path` is the story's
    current location (its "ref") and is never written to disk.
    """
    id: str
    title: str
    priority: int                              # Lower = more urgent
    created: str                               # ISO timestamp
    status: str = STATUS_BACKLOG               # backlog, ready, in-progress, blocked, done
    labels: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)

    research_complete: bool = False
    plan_complete: bool = False
    implementation_complete: bool = False
    reviews_complete: bool = False

    retry_count: int = 0                       # Review rejections that restarted the cycle
    refinement_count: int = 0                  # Rework iterations
    implementation_retry_count: int = 0        # RECOVERY decisions
    total_recovery_attempts: int = 0           # Lifetime backstop across all counters

    max_retries: Optional[int] = None          # Per-story overrides of config limits
    max_refinement_attempts: Optional[int] = None
    max_implementation_retries: Optional[int] = None

    review_history: list[ReviewAttempt] = field(default_factory=list)

    blocked_reason: Optional[str] = None
    blocked_at: Optional[str] = None
    pr_url: Optional[str] = None
    pr_merged: bool = False
    merge_sha: Optional[str] = None
    last_restart_reason: Optional[str] = None
    last_restart_at: Optional[str] = None     # When a rework or reset last consumed a rejection
    last_error: Optional[str] = None
    updated: Optional[str] = None

    path: Optional[str] = field(default=None, compare=False)

    @property
    def ref(self) -> str:
        """Stable reference used in actions and checkpoints."""
        return self.path or self.id

    @property
    def latest_review(self) -> Optional[ReviewAttempt]:
        return self.review_history[-1] if self.review_history else None

    @property
    def has_unaddressed_rejection(self) -> bool:
        """Latest review is REJECTED and no rework or reset has happened since."""
        latest = self.latest_review
        if latest is None or latest.decision != ReviewDecision.REJECTED:
            return False
        if not self.last_restart_at:
            return True
        try:
            return datetime.fromisoformat(latest.timestamp) > datetime.fromisoformat(self.last_restart_at)
        except ValueError:
            return True

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("path")
        data["review_history"] = [r.to_dict() for r in self.review_history]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Optional[str] = None) -> "Story":
        """Build a Story from persisted JSON. Unknown keys are ignored."""
        known = {f.name for f in fields(cls)} - {"path", "review_history"}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["review_history"] = [
            ReviewAttempt.from_dict(r) for r in data.get("review_history", [])
        ]
        return cls(path=path, **kwargs)


@dataclass
class Action:
    """A recommended next step for one story. Recomputed on every assessment."""
    kind: ActionKind
    story_id: str
    story_ref: str
    priority: int
    reason: str
    context: dict = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        """Identity used to skip already-completed actions on resume."""
        return (self.kind.value, self.story_ref)
