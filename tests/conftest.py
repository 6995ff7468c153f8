"""Shared pytest fixtures for Chronicle tests."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from chronicle.db import HistoryDB
from chronicle.embeddings import EmbeddingService
from chronicle.models import Message, MessageMetadata, MessageRole
from chronicle.ollama import ProviderUnavailableError
from chronicle.search import SearchService
from chronicle.validation import validate_embedding_text

BASE_TIME = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
PROJECT_DIR_NAME = "-Users-dev-app"
PROJECT_PATH = "/Users/dev/app"


def event(role: str, content, minutes: int = 0, **message_fields) -> dict:
    """One transcript line as Claude Code writes it."""
    return {
        "type": role,
        "timestamp": (BASE_TIME + timedelta(minutes=minutes)).isoformat().replace("+00:00", "Z"),
        "message": {"role": role, "content": content, **message_fields},
    }


def write_jsonl(path: Path, entries, raw_lines=None):
    """Write entries one JSON document per line; raw_lines are {index: text} inserts."""
    lines = [json.dumps(e) for e in entries]
    for index, text in sorted((raw_lines or {}).items()):
        lines.insert(index, text)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(line + "\n" for line in lines))
    return path


class FakeEmbeddingClient:
    """Deterministic stand-in for OllamaClient.

    Vectors count a few topic words, so texts about the same topic end up
    close together. Set `fail` to simulate an unreachable provider.
    """

    TOPICS = ("kotlin", "python", "database", "test", "deploy")

    def __init__(self, model: str = "fake-embed", fail: bool = False):
        self.model = model
        self.fail = fail
        self.calls = []

    def generate_embedding(self, text: str) -> list[float]:
        text = validate_embedding_text(text)
        self.calls.append(text)
        if self.fail:
            raise ProviderUnavailableError("Ollama connection failed (simulated)")
        lowered = text.lower()
        return [float(lowered.count(t)) for t in self.TOPICS] + [0.1]

    def is_available(self) -> bool:
        return not self.fail

    def close(self):
        pass


def make_message(content: str, session_id: str = "session-1", line_number: int = 0,
                 role: MessageRole = MessageRole.USER, minutes: int = 0,
                 project_path: str = PROJECT_PATH, language: str | None = None,
                 model: str | None = None, file_path: str | None = None) -> Message:
    metadata = None
    if language or model or file_path:
        metadata = MessageMetadata(
            file_paths=[file_path] if file_path else [],
            language=language,
            model=model,
        )
    return Message(
        session_id=session_id,
        project_path=project_path,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        role=role,
        content=content,
        line_number=line_number,
        metadata=metadata,
    )


@pytest.fixture
def db(tmp_path):
    return HistoryDB(tmp_path / "chronicle.db")


@pytest.fixture
def fake_client():
    return FakeEmbeddingClient()


@pytest.fixture
def embedding_service(db, fake_client):
    return EmbeddingService(fake_client, db, batch_size=10, batch_delay=0)


@pytest.fixture
def search_service(db, embedding_service):
    return SearchService(db, embedding_service)


@pytest.fixture
def projects_dir(tmp_path):
    root = tmp_path / "projects"
    (root / PROJECT_DIR_NAME).mkdir(parents=True)
    return root


@pytest.fixture
def sample_transcript(projects_dir):
    """A session with plain text, a tool call, usage counters and noise.

    Contains:
    - A user message (string content)
    - An assistant message with text and a Read tool_use on a Kotlin file
    - A user tool_result message (no text)
    - A summary entry with no message (skipped)
    - A malformed line (skipped)
    """
    entries = [
        event("user", "How do I learn Kotlin coroutines?", minutes=0),
        event("assistant", [
            {"type": "text", "text": "Let me look at your coroutine code."},
            {"type": "tool_use", "id": "tool_001", "name": "Read",
             "input": {"file_path": "/Users/dev/app/src/Main.kt", "limit": 50}},
        ], minutes=1, model="claude-sonnet-4-20250514",
            usage={"input_tokens": 1200, "output_tokens": 300,
                   "cache_read_input_tokens": 5000}),
        event("user", [
            {"type": "tool_result", "tool_use_id": "tool_001",
             "content": "fun main() = runBlocking { launch { delay(100) } }"},
        ], minutes=2),
        {"type": "summary", "summary": "Kotlin coroutines help"},
    ]
    path = projects_dir / PROJECT_DIR_NAME / "abc-123.jsonl"
    return write_jsonl(path, entries, raw_lines={2: '{"type": "assistant", "message": {'})
