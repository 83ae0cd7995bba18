"""
Daemon mode: keep every active story moving without a human re-running it.

Stories are discovered two ways: a Ticker rescans the repository every
poll_interval, and a watchdog observer on <root>/stories/ enqueues story
files as they appear. Discovered ids go into one queue that is drained by a
single worker at a time; each story is run until it has no next action.

Ctrl+C stops taking new work and waits up to shutdown_timeout for the story
in flight. A second Ctrl+C within FORCE_QUIT_WINDOW seconds quits at once.
"""

import logging
import os
import signal
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from storyflow.lib.config import StoryflowConfig
from storyflow.lib.constants import STATUS_DONE, STORIES_DIRNAME, STORY_ID_PATTERN
from storyflow.pm.stories import StoryRepository
from storyflow.workflow.fsm import ACTIVE_STATES
from storyflow.workflow.runner import WorkflowRunner

logger = logging.getLogger(__name__)

FORCE_QUIT_WINDOW = 2.0  # Seconds between two SIGINTs that force a quit

RunnerFactory = Callable[[str], WorkflowRunner]


class Ticker:
    """Calls a function every interval seconds on a background thread.

    stop() is the cancellation token: it wakes the thread immediately and no
    further calls start after it. poke() runs the next call early.
    """

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "storyflow-ticker"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stopped = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self):
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def _loop(self):
        while not self._stopped.is_set():
            try:
                self.callback()
            except Exception:
                logger.exception("[Daemon] Tick failed")
            self._wake.wait(self.interval)
            self._wake.clear()

    def poke(self):
        self._wake.set()

    def stop(self):
        self._stopped.set()
        self._wake.set()


def story_id_from_path(path: str) -> Optional[str]:
    """Story id for a story file path, or None for anything else in stories/."""
    name = os.path.basename(path)
    if not name.endswith(".json") or name.endswith(".workflow-state.json"):
        return None
    story_id = name[:-len(".json")]
    return story_id if STORY_ID_PATTERN.match(story_id) else None


class StoryFileWatcher(FileSystemEventHandler):
    """Watchdog handler that enqueues new or replaced story files."""

    def __init__(self, daemon: "Daemon"):
        super().__init__()
        self.daemon = daemon

    def _enqueue(self, path: str):
        story_id = story_id_from_path(path)
        if story_id and self.daemon.enqueue(story_id):
            logger.debug(f"[Daemon] File event queued {story_id}")
            self.daemon.ticker.poke()

    def on_created(self, event):
        if not event.is_directory:
            self._enqueue(event.src_path)

    def on_moved(self, event):
        # Atomic writes land as a rename onto the story file
        if not event.is_directory:
            self._enqueue(event.dest_path)


class Daemon:
    """Queue and single-flight worker over a WorkflowRunner per story."""

    def __init__(self, root: Path, config: StoryflowConfig, repository: StoryRepository,
                 runner_factory: RunnerFactory):
        self.root = root
        self.config = config
        self.repository = repository
        self.runner_factory = runner_factory

        self.queue: deque[str] = deque()
        self.queued: set[str] = set()
        self.completed: set[str] = set()
        self.active: Optional[str] = None
        self.shutting_down = False

        self._lock = threading.Lock()
        self._processing = False
        self._idle = threading.Event()
        self._idle.set()

        self.ticker = Ticker(config.daemon.poll_interval, self.tick)
        self.observer: Optional[Observer] = None

    # --- Queue ----------------------------------------------------------

    def enqueue(self, story_id: str) -> bool:
        """Queue a story. Returns False if it is completed, active, queued, or we are stopping."""
        with self._lock:
            if self.shutting_down:
                return False
            if story_id in self.completed or story_id in self.queued or story_id == self.active:
                return False
            self.queue.append(story_id)
            self.queued.add(story_id)
            return True

    def scan(self) -> int:
        """Enqueue every active story. Returns how many were newly queued."""
        added = 0
        for story in self.repository.list_all():
            if story.status in ACTIVE_STATES and self.enqueue(story.id):
                added += 1
        if added:
            logger.info(f"[Daemon] Scan queued {added} stor{'y' if added == 1 else 'ies'}")
        return added

    def tick(self):
        if self.shutting_down:
            return
        self.scan()
        self.process_queue()

    def process_queue(self) -> int:
        """Drain the queue. Only one drain runs at a time; others return 0 at once."""
        with self._lock:
            if self._processing:
                return 0
            self._processing = True
            self._idle.clear()

        processed = 0
        try:
            while True:
                with self._lock:
                    if self.shutting_down or not self.queue:
                        break
                    story_id = self.queue.popleft()
                    self.queued.discard(story_id)
                    self.active = story_id
                try:
                    self.process_story(story_id)
                except Exception:
                    logger.exception(f"[Daemon] Error processing {story_id}")
                finally:
                    with self._lock:
                        self.active = None
                        self.completed.add(story_id)
                processed += 1
        finally:
            with self._lock:
                self._processing = False
                self._idle.set()
        return processed

    # --- Per-story loop -------------------------------------------------

    def process_story(self, story_id: str) -> int:
        """Run a story's actions until none remain. Returns actions executed."""
        runner = self.runner_factory(story_id)
        runner.auto = True
        executed = 0
        for _ in range(self.config.daemon.max_iterations):
            if self.shutting_down:
                logger.info(f"[Daemon] Shutdown requested; leaving {story_id} after {executed} action(s)")
                break

            pending = runner.pending_actions()
            if not pending:
                story = self.repository.load(story_id)
                if story is not None and story.status == STATUS_DONE:
                    print(f"[daemon] {story_id} done")
                break

            action = pending[0]
            gate = runner.blocking_gate(action)
            if gate:
                print(f"[daemon] {story_id} waiting at stage gate '{gate}'")
                break

            print(f"[daemon] {story_id}: {action.kind.value} ({action.reason})")
            outcome = runner.execute_action(action)
            executed += 1
            if outcome.blocked:
                print(f"[daemon] {story_id} blocked: {outcome.message}")
                break
            if not outcome.success:
                print(f"[daemon] {story_id} failed: {outcome.message}")
                break
        else:
            logger.warning(f"[Daemon] {story_id} hit the {self.config.daemon.max_iterations}-iteration limit")
        return executed

    # --- Lifecycle ------------------------------------------------------

    def start(self):
        stories_dir = self.root / STORIES_DIRNAME
        stories_dir.mkdir(parents=True, exist_ok=True)

        self.observer = Observer()
        self.observer.schedule(StoryFileWatcher(self), str(stories_dir), recursive=False)
        self.observer.start()
        self.ticker.start()
        logger.info(f"[Daemon] Watching {stories_dir}, rescanning every {self.config.daemon.poll_interval}s")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop taking work and wait for the story in flight.

        Returns False if it did not finish within the timeout.
        """
        if timeout is None:
            timeout = self.config.daemon.shutdown_timeout
        with self._lock:
            self.shutting_down = True
            in_flight = self.active

        self.ticker.stop()
        if self.observer is not None:
            self.observer.stop()
            self.observer.join(timeout=5)

        if in_flight:
            print(f"Waiting up to {timeout:.0f}s for {in_flight} to finish its current action...")
        finished = self._idle.wait(timeout)
        if not finished:
            logger.warning(f"[Daemon] {in_flight or 'worker'} still running after {timeout}s")
        return finished

    def run_forever(self) -> int:
        """Run until SIGINT/SIGTERM. Returns the process exit code."""
        stop_requested = threading.Event()
        last_signal = [0.0]

        def handle_signal(signum, frame):
            now = time.monotonic()
            if stop_requested.is_set() and now - last_signal[0] < FORCE_QUIT_WINDOW:
                print("\nForce quit.")
                os._exit(130)
            last_signal[0] = now
            stop_requested.set()
            print("\nStopping... (Ctrl+C again to force quit)")

        original_sigint = signal.signal(signal.SIGINT, handle_signal)
        original_sigterm = signal.signal(signal.SIGTERM, handle_signal)
        try:
            self.start()
            print(f"storyflow daemon running on {self.root} (Ctrl+C to stop)")
            while not stop_requested.wait(1.0):
                pass
            return 0 if self.stop() else 1
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
