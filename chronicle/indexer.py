"""Ingestion: keeps the store in sync with transcript files on disk.

Each file is read incrementally from the byte offset committed last time,
so a full scan over an unchanged corpus inserts nothing. The natural key
(session_id, line_number) makes any re-read harmless as well.
"""

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from .constants import MAX_FILE_SIZE
from .db import HistoryDB
from .models import IndexingResult
from .transcript import (
    decode_project_path, find_conversation_files, read_new_records, session_id_for,
)
from .validation import ValidationError, validate_file
from .watcher import TranscriptWatcher

logger = logging.getLogger(__name__)


class IndexingService:
    def __init__(self, db: HistoryDB, projects_dir: Path,
                 max_file_size: int = MAX_FILE_SIZE, workers: int = 4,
                 poll_interval: float = 1.0):
        self.db = db
        self.projects_dir = Path(projects_dir)
        self.max_file_size = max_file_size
        self.workers = max(1, workers)
        self.watcher = TranscriptWatcher(self.projects_dir, self._on_file_changed,
                                         poll_interval=poll_interval)
        self._file_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._file_locks.setdefault(key, threading.Lock())

    # ── Full scan ─────────────────────────────────────────────

    def index_all_conversations(self) -> IndexingResult:
        """Index every transcript under the projects directory.

        Files run concurrently. Failures are counted in the result, never raised.
        """
        files = find_conversation_files(self.projects_dir)
        result = IndexingResult()
        if not files:
            logger.info("No transcripts found under %s", self.projects_dir)
            return result

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            for file_result in pool.map(lambda f: self.index_file(*f), files):
                result.merge(file_result)

        logger.info("Indexed %d files: %d new, %d failed, %d already indexed",
                    len(files), result.indexed, result.failed, result.skipped)
        return result

    # ── Single file ───────────────────────────────────────────

    def index_file(self, path: Path, project_path: str | None = None) -> IndexingResult:
        """Insert whatever was appended to one transcript since the last run."""
        path = Path(path)
        if project_path is None:
            project_path = decode_project_path(path.parent.name)
        key = str(path.resolve())

        with self._lock_for(key):
            try:
                validate_file(path, self.max_file_size)
                offset, line_count = self.db.get_file_state(key)
                size = path.stat().st_size
                if size < offset:
                    logger.info("%s shrank below its indexed offset, re-reading", path.name)
                    offset = line_count = 0
                if size == offset:
                    return IndexingResult()
                chunk = read_new_records(path, project_path, offset, line_count)
                outcomes = self.db.insert_messages(chunk.messages)
            except (ValidationError, OSError, sqlite3.Error) as e:
                logger.warning("Failed to index %s: %s", path, e)
                return IndexingResult(failed=1)
            except Exception:
                logger.exception("Unexpected error indexing %s", path)
                return IndexingResult(failed=1)

            result = IndexingResult()
            for outcome in outcomes:
                if isinstance(outcome, Exception):
                    result.failed += 1
                elif outcome is None:
                    result.skipped += 1
                else:
                    result.indexed += 1

            if result.failed:
                logger.warning("%d records from %s failed, offset left at %d",
                               result.failed, path.name, offset)
            else:
                try:
                    self.db.set_file_state(key, session_id_for(path),
                                           chunk.offset, chunk.line_count)
                except sqlite3.Error as e:
                    logger.warning("Could not record offset for %s: %s", path.name, e)
            if chunk.skipped_lines:
                logger.debug("Skipped %d non-message lines in %s",
                             chunk.skipped_lines, path.name)
            return result

    # ── Watching ──────────────────────────────────────────────

    def _on_file_changed(self, path: Path):
        result = self.index_file(path)
        if result.indexed or result.failed:
            logger.info("Indexed %d new messages from %s (%d failed)",
                        result.indexed, path.name, result.failed)

    def start_watching(self) -> bool:
        return self.watcher.start()

    def stop_watching(self):
        self.watcher.stop()

    @property
    def is_watching(self) -> bool:
        return self.watcher.is_watching

    def shutdown(self):
        self.stop_watching()
