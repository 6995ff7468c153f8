"""SQLite store for Chronicle.

Stores: messages (one row per transcript line that parsed), a full-text
index over them kept in sync by triggers, model-tagged embeddings, and
per-file ingest offsets for incremental indexing.

Every public method opens its own short-lived connection, so one
HistoryDB can be shared by the indexer threads, the watcher and search.
"""

import json
import logging
import re
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from .models import (
    ConversationStatistics, Message, MessageMetadata, MessageRole, SearchFilters,
)
from .vectors import from_bytes, to_bytes

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".chronicle" / "chronicle.db"

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _rows_to_dicts(cursor) -> list[dict]:
    """Convert cursor results to list of dicts using cursor.description."""
    if not cursor.description:
        return []
    cols = [d[0] for d in cursor.description]
    return [dict(zip(cols, row)) for row in cursor.fetchall()]


def _row_to_dict(cursor) -> dict | None:
    """Fetch one row as a dict."""
    if not cursor.description:
        return None
    cols = [d[0] for d in cursor.description]
    row = cursor.fetchone()
    return dict(zip(cols, row)) if row else None


def _to_millis(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


def _from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def query_terms(query: str) -> list[str]:
    return _TOKEN_RE.findall(query or "")


def build_match_query(query: str) -> str:
    """Turn free text into an FTS5 MATCH expression of quoted terms.

    Every term must match. Quoting keeps FTS5 operators and punctuation
    in user input from being interpreted as query syntax.
    """
    return " ".join(f'"{t}"' for t in query_terms(query))


def row_to_message(row: dict) -> Message:
    metadata = None
    if row.get("metadata"):
        metadata = MessageMetadata.from_dict(json.loads(row["metadata"]))
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        project_path=row["project_path"],
        timestamp=_from_millis(row["timestamp"]),
        role=MessageRole(row["role"]),
        content=row["content"],
        line_number=row["line_number"],
        metadata=metadata,
    )


class HistoryDB:
    def __init__(self, db_path: Path = DEFAULT_DB_PATH, busy_timeout_ms: int = 5000,
                 wal_mode: bool = True, synchronous: str = "NORMAL"):
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self.synchronous = synchronous
        self._write_lock = threading.Lock()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout_ms / 1000)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _execute(self, callback):
        """Run a callback in a transaction: commit on success, roll back on error.

        Writers in this process take turns; other processes are waited out
        through busy_timeout.
        """
        with self._write_lock:
            conn = self._connect()
            try:
                result = callback(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _query(self, callback):
        conn = self._connect()
        try:
            return callback(conn)
        finally:
            conn.close()

    def _init_schema(self):
        def init(conn):
            conn.executescript(SCHEMA)
        self._execute(init)

    # ── Messages ──────────────────────────────────────────────

    def insert_messages(self, messages: list[Message]) -> list[int | None | Exception]:
        """Insert messages in order, one outcome per message.

        An outcome is the new row id, None for a duplicate (same session and
        line), or the exception that made that single insert fail. Failed
        rows do not prevent the others from being committed.
        """
        def do(conn):
            outcomes = []
            conn.execute("BEGIN IMMEDIATE")
            for message in messages:
                conn.execute("SAVEPOINT msg")
                try:
                    cur = conn.execute(
                        """INSERT OR IGNORE INTO messages
                           (session_id, line_number, project_path, timestamp, role,
                            content, language, file_path, model, metadata)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (message.session_id, message.line_number, message.project_path,
                         _to_millis(message.timestamp), message.role.value,
                         message.content, message.language, message.file_path,
                         message.model,
                         json.dumps(message.metadata.to_dict()) if message.metadata else None)
                    )
                    conn.execute("RELEASE SAVEPOINT msg")
                    outcomes.append(cur.lastrowid if cur.rowcount else None)
                except (sqlite3.Error, UnicodeError) as e:
                    conn.execute("ROLLBACK TO SAVEPOINT msg")
                    conn.execute("RELEASE SAVEPOINT msg")
                    logger.warning("Failed to insert %s:%d: %s",
                                   message.session_id, message.line_number, e)
                    outcomes.append(e)
            return outcomes
        return self._execute(do)

    def insert_message(self, message: Message) -> int | None:
        outcome = self.insert_messages([message])[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get_message(self, message_id: int) -> Message | None:
        def do(conn):
            cur = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
            row = _row_to_dict(cur)
            return row_to_message(row) if row else None
        return self._query(do)

    def get_by_session(self, session_id: str) -> list[Message]:
        def do(conn):
            cur = conn.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY line_number",
                (session_id,)
            )
            return [row_to_message(r) for r in _rows_to_dicts(cur)]
        return self._query(do)

    def get_latest_by_project(self, project_path: str, limit: int = 1) -> list[Message]:
        def do(conn):
            cur = conn.execute(
                """SELECT * FROM messages WHERE project_path = ?
                   ORDER BY timestamp DESC, id DESC LIMIT ?""",
                (project_path, limit)
            )
            return [row_to_message(r) for r in _rows_to_dicts(cur)]
        return self._query(do)

    def delete_message(self, message_id: int) -> bool:
        def do(conn):
            cur = conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            return cur.rowcount > 0
        return self._execute(do)

    def delete_session(self, session_id: str) -> int:
        def do(conn):
            cur = conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM ingest_state WHERE session_id = ?", (session_id,))
            return cur.rowcount
        return self._execute(do)

    def count_messages(self) -> int:
        def do(conn):
            return conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
        return self._query(do)

    # ── Search ────────────────────────────────────────────────

    def _filter_clauses(self, filters: SearchFilters | None,
                        alias: str = "m") -> tuple[list[str], list]:
        clauses, params = [], []
        if not filters:
            return clauses, params
        if filters.project_path is not None:
            clauses.append(f"{alias}.project_path LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.project_path)}%")
        if filters.session_id is not None:
            clauses.append(f"{alias}.session_id = ?")
            params.append(filters.session_id)
        if filters.role is not None:
            clauses.append(f"{alias}.role = ?")
            params.append(MessageRole(filters.role).value)
        if filters.language is not None:
            clauses.append(f"{alias}.language = ?")
            params.append(filters.language)
        if filters.model is not None:
            clauses.append(f"{alias}.model = ?")
            params.append(filters.model)
        if filters.file_path is not None:
            clauses.append(f"{alias}.file_path LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.file_path)}%")
        if filters.date_from is not None:
            clauses.append(f"{alias}.timestamp >= ?")
            params.append(_to_millis(filters.date_from))
        if filters.date_to is not None:
            clauses.append(f"{alias}.timestamp <= ?")
            params.append(_to_millis(filters.date_to))
        return clauses, params

    def search_keyword(self, query: str, filters: SearchFilters | None = None,
                       limit: int = 100) -> list[tuple[Message, float]]:
        """Full-text search. Returns (message, score) with higher scores better."""
        match = build_match_query(query)
        if not match:
            return []
        clauses, params = self._filter_clauses(filters)
        where = " AND ".join(["messages_fts MATCH ?"] + clauses)

        def do(conn):
            cur = conn.execute(
                f"""SELECT m.*, messages_fts.rank AS rank
                    FROM messages_fts
                    JOIN messages m ON m.id = messages_fts.rowid
                    WHERE {where}
                    ORDER BY messages_fts.rank, m.timestamp DESC
                    LIMIT ?""",
                [match] + params + [limit]
            )
            return [(row_to_message(r), -r["rank"]) for r in _rows_to_dicts(cur)]
        return self._query(do)

    def get_by_filters(self, filters: SearchFilters | None,
                       limit: int = 100) -> list[Message]:
        clauses, params = self._filter_clauses(filters)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        def do(conn):
            cur = conn.execute(
                f"""SELECT m.* FROM messages m {where}
                    ORDER BY m.timestamp DESC, m.id DESC LIMIT ?""",
                params + [limit]
            )
            return [row_to_message(r) for r in _rows_to_dicts(cur)]
        return self._query(do)

    def get_by_date_range(self, date_from: datetime, date_to: datetime,
                          limit: int = 100) -> list[Message]:
        return self.get_by_filters(
            SearchFilters(date_from=date_from, date_to=date_to), limit)

    def rebuild_search_index(self):
        def do(conn):
            conn.execute("INSERT INTO messages_fts(messages_fts) VALUES ('rebuild')")
        self._execute(do)
        logger.info("Rebuilt full-text index")

    # ── Embeddings ────────────────────────────────────────────

    def store_embedding(self, message_id: int, vector, model: str):
        blob = to_bytes(vector)

        def do(conn):
            conn.execute(
                """INSERT OR REPLACE INTO embeddings
                   (message_id, model, dimensions, embedding, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (message_id, model, len(vector), blob, time.time())
            )
        self._execute(do)

    def has_embedding(self, message_id: int, model: str) -> bool:
        def do(conn):
            cur = conn.execute(
                "SELECT 1 FROM embeddings WHERE message_id = ? AND model = ?",
                (message_id, model)
            )
            return cur.fetchone() is not None
        return self._query(do)

    def get_embedding(self, message_id: int, model: str) -> list[float] | None:
        def do(conn):
            cur = conn.execute(
                "SELECT embedding FROM embeddings WHERE message_id = ? AND model = ?",
                (message_id, model)
            )
            row = cur.fetchone()
            return from_bytes(row[0]) if row else None
        return self._query(do)

    def messages_without_embeddings(self, model: str) -> list[tuple[int, str]]:
        def do(conn):
            cur = conn.execute(
                """SELECT m.id, m.content FROM messages m
                   WHERE NOT EXISTS (
                       SELECT 1 FROM embeddings e
                       WHERE e.message_id = m.id AND e.model = ?)
                   ORDER BY m.id""",
                (model,)
            )
            return [(row[0], row[1]) for row in cur.fetchall()]
        return self._query(do)

    def iter_embeddings(self, model: str, filters: SearchFilters | None = None):
        """All (message, vector) pairs for a model that pass the filters."""
        clauses, params = self._filter_clauses(filters)
        where = " AND ".join(["e.model = ?"] + clauses)

        def do(conn):
            cur = conn.execute(
                f"""SELECT m.*, e.embedding AS embedding
                    FROM embeddings e JOIN messages m ON m.id = e.message_id
                    WHERE {where}""",
                [model] + params
            )
            return [(row_to_message(r), from_bytes(r["embedding"]))
                    for r in _rows_to_dicts(cur)]
        return self._query(do)

    def count_embeddings(self, model: str) -> int:
        def do(conn):
            return conn.execute(
                "SELECT COUNT(*) FROM embeddings WHERE model = ?", (model,)
            ).fetchone()[0]
        return self._query(do)

    # ── Ingest state ──────────────────────────────────────────

    def get_file_state(self, source_path: str) -> tuple[int, int]:
        """Committed (byte_offset, line_count) for a transcript file."""
        def do(conn):
            cur = conn.execute(
                "SELECT byte_offset, line_count FROM ingest_state WHERE source_path = ?",
                (source_path,)
            )
            row = cur.fetchone()
            return (row[0], row[1]) if row else (0, 0)
        return self._query(do)

    def set_file_state(self, source_path: str, session_id: str,
                       byte_offset: int, line_count: int):
        def do(conn):
            conn.execute(
                """INSERT INTO ingest_state
                   (source_path, session_id, byte_offset, line_count, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(source_path) DO UPDATE SET
                       byte_offset = excluded.byte_offset,
                       line_count = excluded.line_count,
                       updated_at = excluded.updated_at""",
                (source_path, session_id, byte_offset, line_count, time.time())
            )
        self._execute(do)

    # ── Listings & stats ──────────────────────────────────────

    def _distinct(self, column: str) -> list[str]:
        def do(conn):
            cur = conn.execute(
                f"SELECT DISTINCT {column} FROM messages "
                f"WHERE {column} IS NOT NULL ORDER BY {column}"
            )
            return [row[0] for row in cur.fetchall()]
        return self._query(do)

    def get_all_projects(self) -> list[str]:
        return self._distinct("project_path")

    def get_all_languages(self) -> list[str]:
        return self._distinct("language")

    def get_all_models(self) -> list[str]:
        return self._distinct("model")

    def get_statistics(self) -> ConversationStatistics:
        def do(conn):
            total, oldest, newest = conn.execute(
                "SELECT COUNT(*), MIN(timestamp), MAX(timestamp) FROM messages"
            ).fetchone()
            by_role = {r[0]: r[1] for r in conn.execute(
                "SELECT role, COUNT(*) FROM messages GROUP BY role")}
            by_model = {r[0]: r[1] for r in conn.execute(
                "SELECT model, COUNT(*) FROM messages "
                "WHERE model IS NOT NULL GROUP BY model")}
            tokens = conn.execute(
                """SELECT
                     COALESCE(SUM(json_extract(metadata, '$.usage.input_tokens')), 0),
                     COALESCE(SUM(json_extract(metadata, '$.usage.output_tokens')), 0),
                     COALESCE(SUM(json_extract(metadata, '$.usage.cache_creation_input_tokens')), 0),
                     COALESCE(SUM(json_extract(metadata, '$.usage.cache_read_input_tokens')), 0)
                   FROM messages WHERE metadata IS NOT NULL"""
            ).fetchone()
            return ConversationStatistics(
                total_messages=total,
                messages_by_role=by_role,
                messages_by_model=by_model,
                oldest_message=_from_millis(oldest) if oldest is not None else None,
                newest_message=_from_millis(newest) if newest is not None else None,
                total_input_tokens=tokens[0],
                total_output_tokens=tokens[1],
                total_cache_creation_tokens=tokens[2],
                total_cache_read_tokens=tokens[3],
            )
        return self._query(do)


# ── Schema ────────────────────────────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    line_number INTEGER NOT NULL,
    project_path TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    language TEXT,
    file_path TEXT,
    model TEXT,
    metadata TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(session_id, line_number)
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id);
CREATE INDEX IF NOT EXISTS idx_messages_project ON messages(project_path);
CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_role ON messages(role);
CREATE INDEX IF NOT EXISTS idx_messages_language ON messages(language);

CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    content, project_path, file_path,
    content='messages', content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
    INSERT INTO messages_fts(rowid, content, project_path, file_path)
    VALUES (new.id, new.content, new.project_path, new.file_path);
END;

CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
    INSERT INTO messages_fts(messages_fts, rowid, content, project_path, file_path)
    VALUES ('delete', old.id, old.content, old.project_path, old.file_path);
END;

CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE ON messages BEGIN
    INSERT INTO messages_fts(messages_fts, rowid, content, project_path, file_path)
    VALUES ('delete', old.id, old.content, old.project_path, old.file_path);
    INSERT INTO messages_fts(rowid, content, project_path, file_path)
    VALUES (new.id, new.content, new.project_path, new.file_path);
END;

CREATE TABLE IF NOT EXISTS embeddings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    model TEXT NOT NULL,
    dimensions INTEGER NOT NULL,
    embedding BLOB NOT NULL,
    created_at REAL NOT NULL,
    UNIQUE(message_id, model)
);

CREATE INDEX IF NOT EXISTS idx_embeddings_model ON embeddings(model);

CREATE TABLE IF NOT EXISTS ingest_state (
    source_path TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    byte_offset INTEGER NOT NULL DEFAULT 0,
    line_count INTEGER NOT NULL DEFAULT 0,
    updated_at REAL NOT NULL
);
"""
