"""
storyflow run - Execute workflow actions.

Single mode (default) runs the highest-priority action and stops. --auto keeps
going until nothing is left, a stage gate is hit, or an action fails.
--continue resumes from the last checkpoint instead of starting fresh.
"""

import sys
from pathlib import Path

from storyflow.git.worktree import GitWorktreeSandbox, SandboxError
from storyflow.lib.config import StoryflowConfig
from storyflow.pm.stories import JsonStoryRepository, StoryPersistenceError
from storyflow.runner.locking import LockTimeout, story_lock
from storyflow.workflow.checkpoint import CheckpointError
from storyflow.workflow.tasks import run_workflow_flow


def cmd_run(args, root: Path, config: StoryflowConfig) -> int:
    if args.worktree and not args.story:
        print("ERROR: --worktree requires --story")
        return 2

    repository = JsonStoryRepository(root)
    if args.story and repository.load(args.story) is None:
        print(f"ERROR: Story '{args.story}' not found")
        return 2

    if args.worktree:
        return run_in_worktree(args, root, config)

    if not args.story:
        return _run_flow(args, root)

    try:
        with story_lock(root, args.story):
            return _run_flow(args, root)
    except LockTimeout:
        print(f"ERROR: Story '{args.story}' is already being run by another process")
        return 1


def _run_flow(args, root: Path) -> int:
    try:
        return run_workflow_flow(
            root=str(root),
            auto=args.auto,
            resume=args.resume,
            story_id=args.story,
            dry_run=args.dry_run,
        )
    except CheckpointError as e:
        print(f"ERROR: {e}")
        return 1


def run_in_worktree(args, root: Path, config: StoryflowConfig) -> int:
    """Run the story in its own git worktree, then copy its state back."""
    sandbox = GitWorktreeSandbox(root, worktree_base=config.epic.worktree_base)
    try:
        ref = sandbox.create(args.story, resume_if_exists=True)
    except SandboxError as e:
        print(f"ERROR: {e}")
        return 1

    command = [sys.executable, "-m", "storyflow", "run", "--story", args.story, "--no-worktree"]
    if args.auto:
        command.append("--auto")
    if args.resume:
        command.append("--continue")
    if args.dry_run:
        command.append("--dry-run")

    print(f"Running {args.story} in {ref.path} ({'resumed' if ref.resumed else 'new'} worktree)")
    result = sandbox.run_isolated(ref, command)
    if result.stdout:
        print(result.stdout, end="" if result.stdout.endswith("\n") else "\n")
    if result.stderr:
        print(result.stderr, end="" if result.stderr.endswith("\n") else "\n", file=sys.stderr)

    story = JsonStoryRepository(ref.root).load(args.story)
    if story is not None:
        try:
            JsonStoryRepository(root).save(story)
        except StoryPersistenceError as e:
            print(f"WARNING: could not copy story state back: {e}")

    print(f"Worktree kept at {ref.path} (branch {ref.branch})")
    return result.exit_code
