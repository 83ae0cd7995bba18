#!/usr/bin/env python3
"""storyflow CLI entrypoint."""

import argparse
import logging
import os
import sys
from pathlib import Path

from storyflow import __version__
from storyflow.commands import daemon as cmd_daemon_module
from storyflow.commands import epic as cmd_epic_module
from storyflow.commands import new as cmd_new_module
from storyflow.commands import run as cmd_run_module
from storyflow.commands import status as cmd_status_module
from storyflow.commands import unblock as cmd_unblock_module
from storyflow.lib.config import ConfigError, get_storyflow_root, load_config
from storyflow.lib.constants import ROOT_ENV_VAR


def get_root_and_config(args):
    """Resolve the orchestration root and load its config. Exits 2 on bad config."""
    if args.root:
        root = Path(args.root).expanduser().resolve()
        # Sandboxed child processes resolve the root the same way
        os.environ[ROOT_ENV_VAR] = str(root)
    else:
        root = get_storyflow_root()

    try:
        config = load_config(root)
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(2)
    return root, config


def cmd_status(args):
    root, config = get_root_and_config(args)
    return cmd_status_module.cmd_status(args, root, config)


def cmd_new(args):
    root, config = get_root_and_config(args)
    return cmd_new_module.cmd_new(args, root, config)


def cmd_run(args):
    root, config = get_root_and_config(args)
    return cmd_run_module.cmd_run(args, root, config)


def cmd_epic(args):
    root, config = get_root_and_config(args)
    return cmd_epic_module.cmd_epic(args, root, config)


def cmd_unblock(args):
    root, config = get_root_and_config(args)
    return cmd_unblock_module.cmd_unblock(args, root, config)


def cmd_daemon(args):
    root, config = get_root_and_config(args)
    return cmd_daemon_module.cmd_daemon(args, root, config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='storyflow', description='Story pipeline orchestrator')
    parser.add_argument('--root', help=f'Orchestration root (default: ${ROOT_ENV_VAR} or ./.storyflow)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', required=True)

    # storyflow status
    p_status = subparsers.add_parser('status', help='Show stories and next actions')
    p_status.add_argument('--story', '-s', help='Only show actions for this story')
    p_status.add_argument('--limit', '-n', type=int, default=20, help='Max actions to list (default: 20)')
    p_status.set_defaults(func=cmd_status)

    # storyflow new
    p_new = subparsers.add_parser('new', help='Create a backlog story')
    p_new.add_argument('id', help='Story ID (e.g., S-001)')
    p_new.add_argument('title', help='Story title')
    p_new.add_argument('--priority', '-p', type=int, default=100, help='Lower runs first (default: 100)')
    p_new.add_argument('--label', '-l', action='append', help='Label (repeatable)')
    p_new.add_argument('--epic', '-e', help='Add the epic-<id> label')
    p_new.add_argument('--depends-on', '-d', action='append', help='Dependency story ID (repeatable)')
    p_new.set_defaults(func=cmd_new)

    # storyflow run
    p_run = subparsers.add_parser('run', help='Execute the next action (or all with --auto)')
    p_run.add_argument('--story', '-s', help='Only run actions for this story')
    p_run.add_argument('--auto', action='store_true', help='Keep running until done, gated or failed')
    p_run.add_argument('--continue', dest='resume', action='store_true', help='Resume from the last checkpoint')
    p_run.add_argument('--dry-run', action='store_true', help='List pending actions without running them')
    worktree_group = p_run.add_mutually_exclusive_group()
    worktree_group.add_argument('--worktree', dest='worktree', action='store_true',
                                help='Run the story in its own git worktree (requires --story)')
    worktree_group.add_argument('--no-worktree', dest='worktree', action='store_false',
                                help='Run in place (default)')
    p_run.set_defaults(func=cmd_run, worktree=False)

    # storyflow epic
    p_epic = subparsers.add_parser('epic', help='Run all stories of an epic in dependency order')
    p_epic.add_argument('epic_id', help='Epic ID (stories labelled epic-<id>)')
    p_epic.add_argument('--max-concurrent', '-j', type=int, help='Stories run at once (default: MAX_CONCURRENT)')
    failure_group = p_epic.add_mutually_exclusive_group()
    failure_group.add_argument('--continue-on-failure', dest='continue_on_failure', action='store_true',
                               default=None, help='Keep running later phases after a failure')
    failure_group.add_argument('--no-continue-on-failure', dest='continue_on_failure', action='store_false',
                               help='Stop after the first phase with a failure')
    p_epic.add_argument('--keep-worktrees', action='store_true', default=None, help='Do not remove worktrees')
    p_epic.add_argument('--merge', action='store_true', default=None, help='Wait for CI and merge each PR')
    p_epic.add_argument('--dry-run', action='store_true', help='Print the execution plan only')
    p_epic.set_defaults(func=cmd_epic)

    # storyflow unblock
    p_unblock = subparsers.add_parser('unblock', help='Release a blocked story')
    p_unblock.add_argument('id', help='Story ID')
    p_unblock.add_argument('--reset-retries', action='store_true', help='Also zero retry counters')
    p_unblock.set_defaults(func=cmd_unblock)

    # storyflow daemon
    p_daemon = subparsers.add_parser('daemon', help='Watch for stories and run them continuously')
    p_daemon.add_argument('--poll-interval', type=float, help='Seconds between rescans')
    p_daemon.set_defaults(func=cmd_daemon)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
