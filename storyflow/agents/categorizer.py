"""
Issue categorizer for rework routing.

A rejected review lists issues; rework re-enters the earliest pipeline phase
those issues point at. Requirements gaps go back to research, design
problems back to planning, everything else back to implementation.
"""

import re

from storyflow.pm.models import ReviewIssue

PHASE_RESEARCH = "research"
PHASE_PLAN = "plan"
PHASE_IMPLEMENT = "implement"

# Earlier phases first; the earliest matching phase wins
PHASE_ORDER = [PHASE_RESEARCH, PHASE_PLAN, PHASE_IMPLEMENT]

PHASE_KEYWORDS = {
    PHASE_RESEARCH: re.compile(
        r'\b(requirements?|acceptance criteria|research|misunderstood|scope|'
        r'unclear|ambiguous|wrong problem|user need)\b',
        re.IGNORECASE,
    ),
    PHASE_PLAN: re.compile(
        r'\b(design|architecture|approach|plan|planning|data model|interface|'
        r'api contract|structure|refactor(?:ing)? strategy)\b',
        re.IGNORECASE,
    ),
}

# Only these severities can pull rework back past implementation
ROUTING_SEVERITIES = {"blocker", "critical"}


def _issue_text(issue) -> tuple[str, str | None]:
    """(text, severity) for a ReviewIssue, dict, or plain string."""
    if isinstance(issue, ReviewIssue):
        return f"{issue.category} {issue.description}", issue.severity.lower()
    if isinstance(issue, dict):
        text = f"{issue.get('category', '')} {issue.get('description', '')}"
        severity = issue.get("severity")
        return text, severity.lower() if severity else None
    return str(issue), None


def classify(issues: list) -> str:
    """Pick the phase a rework should target.

    Issues with an explicit severity only route to research/plan when they
    are blocker or critical; issues without severity (e.g. blocker strings
    from review history) always count.
    """
    matched = set()
    for issue in issues:
        text, severity = _issue_text(issue)
        if severity is not None and severity not in ROUTING_SEVERITIES:
            continue
        for phase, pattern in PHASE_KEYWORDS.items():
            if pattern.search(text):
                matched.add(phase)

    for phase in PHASE_ORDER:
        if phase in matched:
            return phase
    return PHASE_IMPLEMENT
