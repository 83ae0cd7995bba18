"""
storyflow epic - Run every story of an epic, in dependency order.
"""

from pathlib import Path

from storyflow.lib.config import StoryflowConfig
from storyflow.workflow.tasks import epic_flow


def cmd_epic(args, root: Path, config: StoryflowConfig) -> int:
    if args.max_concurrent is not None and args.max_concurrent < 1:
        print(f"ERROR: --max-concurrent must be at least 1, got {args.max_concurrent}")
        return 2

    return epic_flow(
        root=str(root),
        epic_id=args.epic_id,
        max_concurrent=args.max_concurrent,
        continue_on_failure=args.continue_on_failure,
        keep_worktrees=args.keep_worktrees,
        merge=args.merge,
        dry_run=args.dry_run,
    )
