"""
storyflow daemon - Watch the story directory and keep stories moving.
"""

from pathlib import Path

from storyflow.lib.config import StoryflowConfig
from storyflow.pm.stories import JsonStoryRepository
from storyflow.workflow.daemon import Daemon
from storyflow.workflow.tasks import create_runner


def cmd_daemon(args, root: Path, config: StoryflowConfig) -> int:
    if args.poll_interval is not None:
        config.daemon.poll_interval = args.poll_interval

    daemon = Daemon(
        root,
        config,
        JsonStoryRepository(root),
        runner_factory=lambda story_id: create_runner(root, config, story_id),
    )
    return daemon.run_forever()
