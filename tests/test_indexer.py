"""Tests for full-scan and incremental ingestion."""

import json
import sqlite3
from unittest.mock import patch

import pytest

from chronicle.indexer import IndexingService
from chronicle.models import IndexingResult
from chronicle.transcript import read_new_records

from conftest import PROJECT_DIR_NAME, PROJECT_PATH, event, write_jsonl


@pytest.fixture
def indexer(db, projects_dir):
    service = IndexingService(db, projects_dir, workers=2, poll_interval=0.05)
    yield service
    service.shutdown()


def _session(projects_dir, name, *contents, project=PROJECT_DIR_NAME):
    entries = [event("user", text, minutes=i) for i, text in enumerate(contents)]
    return write_jsonl(projects_dir / project / f"{name}.jsonl", entries)


class TestIndexAll:

    def test_indexes_every_project(self, db, indexer, projects_dir, sample_transcript):
        _session(projects_dir, "other", "Deploy notes for ops", project="-srv-ops")
        result = indexer.index_all_conversations()

        assert result == IndexingResult(indexed=4, failed=0, skipped=0)
        assert db.get_all_projects() == [PROJECT_PATH, "/srv/ops"]
        assert [m.line_number for m in db.get_by_session("abc-123")] == [0, 1, 3]

    def test_second_run_changes_nothing(self, db, indexer, sample_transcript):
        indexer.index_all_conversations()
        count = db.count_messages()
        again = indexer.index_all_conversations()
        assert again == IndexingResult()
        assert db.count_messages() == count

    def test_one_bad_file_counts_one_failure(self, db, projects_dir):
        _session(projects_dir, "a-first", "First session message")
        big = _session(projects_dir, "b-second", "Second session message " + "x" * 400)
        _session(projects_dir, "c-third", "Third session message")
        service = IndexingService(db, projects_dir, max_file_size=300)
        assert big.stat().st_size > 300

        result = service.index_all_conversations()

        assert result.indexed == 2
        assert result.failed == 1
        assert db.get_by_session("b-second") == []
        assert len(db.get_by_session("a-first")) == 1
        assert len(db.get_by_session("c-third")) == 1

    def test_many_files_with_concurrent_workers(self, db, projects_dir):
        for n in range(40):
            _session(projects_dir, f"s{n:02d}",
                     *[f"message {i} of session {n}" for i in range(30)],
                     project=f"-srv-proj{n % 4}")
        service = IndexingService(db, projects_dir, workers=4)

        result = service.index_all_conversations()

        assert result == IndexingResult(indexed=1200)
        assert db.count_messages() == 1200
        assert service.index_all_conversations() == IndexingResult()

    def test_odd_block_values_do_not_abort_scan(self, db, projects_dir):
        _session(projects_dir, "a", "First session message")
        write_jsonl(projects_dir / PROJECT_DIR_NAME / "b.jsonl", [
            event("assistant", [{"type": "text", "text": 123},
                                {"type": "text", "text": "readable part"}]),
            event("user", [{"type": "tool_result",
                            "content": [{"type": "text", "text": ["not", "text"]}]}],
                  minutes=1),
            event("user", "broken \ud83d emoji", minutes=2),
        ])
        _session(projects_dir, "c", "Third session message")

        result = IndexingService(db, projects_dir, workers=3).index_all_conversations()

        assert result == IndexingResult(indexed=5)
        assert [m.content for m in db.get_by_session("b")] == [
            "readable part", "", "broken ? emoji"]

    def test_unexpected_error_counts_one_failure(self, db, projects_dir):
        for name in ("a", "b", "c"):
            _session(projects_dir, name, f"Session {name} message")

        def read(path, *args):
            if path.name == "b.jsonl":
                raise TypeError("unexpected block shape")
            return read_new_records(path, *args)

        with patch("chronicle.indexer.read_new_records", side_effect=read):
            result = IndexingService(db, projects_dir).index_all_conversations()

        assert result == IndexingResult(indexed=2, failed=1)
        assert db.get_by_session("b") == []

    def test_empty_projects_dir(self, db, tmp_path):
        service = IndexingService(db, tmp_path / "missing")
        assert service.index_all_conversations() == IndexingResult()


class TestIndexFile:

    def test_appended_lines_only(self, db, indexer, projects_dir):
        path = _session(projects_dir, "live", "one message here", "two message here")
        assert indexer.index_file(path).indexed == 2

        with open(path, "a") as f:
            f.write(json.dumps(event("assistant", "three message here", minutes=5)) + "\n")
        result = indexer.index_file(path)

        assert result == IndexingResult(indexed=1)
        assert [m.line_number for m in db.get_by_session("live")] == [0, 1, 2]

    def test_project_path_from_directory(self, db, indexer, projects_dir):
        path = _session(projects_dir, "s", "a message to index")
        indexer.index_file(path)
        assert db.get_by_session("s")[0].project_path == PROJECT_PATH

    def test_unchanged_file_is_not_reread(self, indexer, projects_dir):
        path = _session(projects_dir, "s", "a message to index")
        indexer.index_file(path)
        with patch("chronicle.indexer.read_new_records") as read:
            assert indexer.index_file(path) == IndexingResult()
        read.assert_not_called()

    def test_truncated_file_is_reread(self, db, indexer, projects_dir):
        path = _session(projects_dir, "s", "first version of a long line", "second line")
        indexer.index_file(path)
        _session(projects_dir, "s", "short")

        result = indexer.index_file(path)
        # Line 0 already exists under the natural key
        assert result == IndexingResult(skipped=1)
        assert db.count_messages() == 2

    def test_missing_file_fails(self, indexer, projects_dir):
        result = indexer.index_file(projects_dir / PROJECT_DIR_NAME / "gone.jsonl")
        assert result == IndexingResult(failed=1)

    def test_failed_insert_keeps_offset(self, db, indexer, projects_dir):
        path = _session(projects_dir, "s", "a message to index", "another message")
        real_insert = db.insert_messages

        def flaky(messages):
            outcomes = real_insert(messages[:1])
            return outcomes + [sqlite3.OperationalError("disk I/O error")]

        with patch.object(db, "insert_messages", side_effect=flaky):
            result = indexer.index_file(path)
        assert result == IndexingResult(indexed=1, failed=1)
        assert db.get_file_state(str(path.resolve())) == (0, 0)

        retry = indexer.index_file(path)
        assert retry == IndexingResult(indexed=1, skipped=1)
        assert db.count_messages() == 2

    def test_store_error_is_a_file_failure(self, db, indexer, projects_dir):
        path = _session(projects_dir, "s", "a message to index")
        with patch.object(db, "insert_messages", side_effect=sqlite3.OperationalError("locked")):
            assert indexer.index_file(path) == IndexingResult(failed=1)


class TestWatching:

    def test_delegates_to_watcher(self, indexer):
        assert not indexer.is_watching
        assert indexer.start_watching() is True
        assert indexer.is_watching
        assert indexer.start_watching() is False
        indexer.stop_watching()
        assert not indexer.is_watching
        indexer.stop_watching()

    def test_change_callback_indexes_file(self, db, indexer, projects_dir):
        path = _session(projects_dir, "s", "a message to index")
        indexer._on_file_changed(path)
        assert db.count_messages() == 1
