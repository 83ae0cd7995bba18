"""
Per-story run logs.

Each story gets an append-only log directory under <root>/logs/<story_id>/.
Epic runs, workflow runs and the daemon all write here so a failed story can
be diagnosed after the fact without re-running it.
"""

from datetime import datetime
from pathlib import Path

from .constants import LOGS_DIRNAME


class StoryLog:
    """Append-only log file for one story."""

    def __init__(self, root: Path, story_id: str, name: str = "run"):
        self.story_id = story_id
        self.path = root / LOGS_DIRNAME / story_id / f"{name}.log"

    def log(self, message: str, level: str = "INFO"):
        """Append a timestamped line."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().isoformat()
        with open(self.path, "a") as f:
            f.write(f"[{timestamp}] [{level}] {message}\n")

    def log_output(self, label: str, exit_code: int, stdout: str, stderr: str, duration: float):
        """Append captured subprocess output in labelled sections."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().isoformat()
        with open(self.path, "a") as f:
            f.write(f"[{timestamp}] {label}: exit={exit_code} duration={duration:.2f}s\n")
            f.write("=== STDOUT ===\n")
            f.write(stdout or "")
            if stdout and not stdout.endswith("\n"):
                f.write("\n")
            f.write("=== STDERR ===\n")
            f.write(stderr or "")
            if stderr and not stderr.endswith("\n"):
                f.write("\n")
            f.write("\n")

    def tail(self, lines: int = 20) -> str:
        """Last N lines, for failure diagnostics."""
        if not self.path.exists():
            return ""
        return "\n".join(self.path.read_text().splitlines()[-lines:])
