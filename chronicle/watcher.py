"""Live watch of the Claude Code projects directory.

Uses watchdog to monitor the projects root and every project directory
under it for new or growing .jsonl transcripts. Events are queued by the
observer threads and handled by one background thread, which also picks
up project directories created after the watch started.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .constants import TRANSCRIPT_SUFFIX

logger = logging.getLogger(__name__)


class WatcherError(Exception):
    """The watch could not be started."""


class WatchState(Enum):
    STOPPED = "stopped"
    WATCHING = "watching"


class TranscriptHandler(FileSystemEventHandler):
    """Forwards created/modified/moved paths to the watch loop."""

    def __init__(self, events: queue.Queue):
        self.events = events

    def on_created(self, event):
        self.events.put((event.src_path, event.is_directory))

    def on_modified(self, event):
        if not event.is_directory:
            self.events.put((event.src_path, False))

    def on_moved(self, event):
        self.events.put((event.dest_path, event.is_directory))


@dataclass
class _WatchRun:
    """State owned by one start()..stop() cycle."""
    stop_event: threading.Event = field(default_factory=threading.Event)
    ready: threading.Event = field(default_factory=threading.Event)
    events: queue.Queue = field(default_factory=queue.Queue)
    watched: set[Path] = field(default_factory=set)
    error: Exception | None = None

    def request_stop(self):
        self.stop_event.set()
        # Wakes a loop blocked on the queue
        self.events.put(None)


class TranscriptWatcher:
    """Calls `on_change(path)` whenever a transcript is created or appended to."""

    def __init__(self, projects_dir: Path, on_change, poll_interval: float = 1.0,
                 start_timeout: float = 10.0):
        self.projects_dir = Path(projects_dir).absolute()
        self.on_change = on_change
        self.poll_interval = poll_interval
        self.start_timeout = start_timeout

        self._lock = threading.Lock()
        self._state = WatchState.STOPPED
        self._thread: threading.Thread | None = None
        self._run_state: _WatchRun | None = None

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def is_watching(self) -> bool:
        return self._state == WatchState.WATCHING

    @property
    def _watched(self) -> set[Path]:
        run = self._run_state
        return run.watched if run else set()

    def start(self) -> bool:
        """Start the background watch. Returns False if already watching.

        Raises WatcherError when the projects directory is missing or the
        OS refuses the watch.
        """
        with self._lock:
            if self._state == WatchState.WATCHING:
                return False
            if not self.projects_dir.is_dir():
                raise WatcherError(f"Projects directory not found: {self.projects_dir}")

            run = _WatchRun()
            thread = threading.Thread(target=self._run, args=(run,),
                                      name="chronicle-watcher", daemon=True)
            thread.start()

            started = run.ready.wait(self.start_timeout)
            if started and run.error is None:
                self._thread = thread
                self._run_state = run
                self._state = WatchState.WATCHING
                logger.info("Watching %s (%d directories)",
                            self.projects_dir, len(run.watched))
                return True

        # Joined outside the lock, which _finish takes
        run.request_stop()
        thread.join()
        if run.error is not None:
            raise WatcherError(
                f"Cannot watch {self.projects_dir}: {run.error}") from run.error
        raise WatcherError("Timed out registering filesystem watches")

    def stop(self):
        """Stop watching and wait for the loop to exit. Safe to call repeatedly."""
        with self._lock:
            thread = self._thread
            run = self._run_state
            self._thread = None
            self._run_state = None
            self._state = WatchState.STOPPED
            if run is not None:
                run.request_stop()
        if thread is not None:
            thread.join()
            logger.info("Stopped watching %s", self.projects_dir)

    # ── Watch loop ────────────────────────────────────────────

    def _run(self, run: _WatchRun):
        observer = Observer()
        handler = TranscriptHandler(run.events)
        try:
            self._schedule(observer, handler, run.watched, self.projects_dir)
            for project_dir in sorted(self.projects_dir.iterdir()):
                if project_dir.is_dir():
                    self._schedule(observer, handler, run.watched, project_dir)
            observer.start()
        except Exception as e:
            run.error = e
            self._release(observer)
            return
        finally:
            run.ready.set()

        try:
            while not run.stop_event.is_set():
                if not observer.is_alive():
                    logger.error("Filesystem observer for %s died", self.projects_dir)
                    break
                try:
                    item = run.events.get(timeout=self.poll_interval)
                except queue.Empty:
                    continue
                if item is None:
                    continue
                path, is_directory = item
                self._dispatch(observer, handler, run.watched, Path(path), is_directory)
        except Exception:
            logger.exception("Watch loop for %s failed", self.projects_dir)
        finally:
            self._release(observer)
            self._finish(run)

    @staticmethod
    def _release(observer):
        observer.stop()
        if observer.is_alive():
            observer.join()

    def _finish(self, run: _WatchRun):
        """Drop to STOPPED when the current run's loop exits on its own."""
        with self._lock:
            if self._run_state is not run:
                return
            self._state = WatchState.STOPPED
            self._thread = None
            self._run_state = None
        logger.warning("Stopped watching %s after a watch failure", self.projects_dir)

    def _schedule(self, observer, handler, watched: set[Path], directory: Path):
        observer.schedule(handler, str(directory), recursive=False)
        watched.add(directory)

    def _dispatch(self, observer, handler, watched: set[Path], path: Path,
                  is_directory: bool):
        if is_directory:
            if path.parent == self.projects_dir and path not in watched:
                try:
                    self._schedule(observer, handler, watched, path)
                except OSError as e:
                    logger.warning("Cannot watch new project %s: %s", path, e)
                    return
                logger.info("Watching new project directory %s", path.name)
                for transcript in sorted(path.glob(f"*{TRANSCRIPT_SUFFIX}")):
                    self._notify(transcript)
            return

        if path.suffix == TRANSCRIPT_SUFFIX and path.parent.parent == self.projects_dir:
            self._notify(path)

    def _notify(self, path: Path):
        try:
            self.on_change(path)
        except Exception:
            logger.exception("Error handling change to %s", path)
