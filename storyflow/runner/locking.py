"""
Lock management for storyflow runs.

Uses flock for per-story locking so two `storyflow run --story` invocations
(e.g. a manual run racing an epic) never drive the same story at once.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


def lock_path(root: Path, story_id: str) -> Path:
    return root / "locks" / "stories" / f"{story_id}.lock"


def is_story_locked(root: Path, story_id: str) -> bool:
    """True if another process currently holds the story's lock."""
    lock_file = lock_path(root, story_id)
    if not lock_file.exists():
        return False
    with open(lock_file, "r") as fd:
        try:
            # Got lock - means no one else has it, release immediately
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        except BlockingIOError:
            return True


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str, poll_interval: float = 1.0):
    """
    Internal helper to acquire a file lock.

    Lock files are never deleted: removing one lets two processes hold
    "exclusive" locks on different inodes with the same path.
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, "a+")
    start = time.time()

    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.time() - start >= timeout:
                    raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
                time.sleep(poll_interval)

        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        fd.close()


@contextmanager
def story_lock(root: Path, story_id: str, timeout: float = 0):
    """
    Acquire the per-story lock, yield, release on exit.

    With the default timeout of 0 a busy story fails immediately.
    """
    with _acquire_lock(lock_path(root, story_id), timeout, f"lock for story {story_id}"):
        yield
