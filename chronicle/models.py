"""Record types shared across Chronicle.

Messages are parsed once from transcript lines and never mutated after
they are stored. Everything else here is a read model built from the store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .constants import (
    PRICE_CACHE_READ, PRICE_CACHE_WRITE, PRICE_INPUT, PRICE_OUTPUT,
)
from .validation import ValidationError


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value) -> "MessageRole | None":
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class SearchMode(str, Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class ToolUse:
    tool_name: str
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (self.input_tokens + self.output_tokens
                + self.cache_creation_input_tokens + self.cache_read_input_tokens)

    @property
    def estimated_cost(self) -> float:
        return estimate_cost(self.input_tokens, self.output_tokens,
                             self.cache_creation_input_tokens,
                             self.cache_read_input_tokens)

    @property
    def is_empty(self) -> bool:
        return self.total_tokens == 0

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
        }


def estimate_cost(input_tokens: int, output_tokens: int,
                  cache_write_tokens: int, cache_read_tokens: int) -> float:
    """Approximate USD cost from token counters (per million token pricing)."""
    return (input_tokens * PRICE_INPUT
            + output_tokens * PRICE_OUTPUT
            + cache_write_tokens * PRICE_CACHE_WRITE
            + cache_read_tokens * PRICE_CACHE_READ) / 1_000_000


@dataclass(frozen=True)
class MessageMetadata:
    tool_uses: list[ToolUse] = field(default_factory=list)
    file_paths: list[str] = field(default_factory=list)
    language: str | None = None
    model: str | None = None
    usage: TokenUsage | None = None

    def to_dict(self) -> dict:
        return {
            "tool_uses": [{"tool_name": t.tool_name, "parameters": t.parameters}
                          for t in self.tool_uses],
            "file_paths": list(self.file_paths),
            "language": self.language,
            "model": self.model,
            "usage": self.usage.to_dict() if self.usage else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MessageMetadata":
        usage = data.get("usage")
        return cls(
            tool_uses=[ToolUse(t["tool_name"], dict(t.get("parameters") or {}))
                       for t in data.get("tool_uses") or []],
            file_paths=list(data.get("file_paths") or []),
            language=data.get("language"),
            model=data.get("model"),
            usage=TokenUsage(**usage) if usage else None,
        )


@dataclass(frozen=True)
class Message:
    session_id: str
    project_path: str
    timestamp: datetime
    role: MessageRole
    content: str
    line_number: int = 0
    metadata: MessageMetadata | None = None
    id: int | None = None

    @property
    def language(self) -> str | None:
        return self.metadata.language if self.metadata else None

    @property
    def model(self) -> str | None:
        return self.metadata.model if self.metadata else None

    @property
    def file_path(self) -> str | None:
        if self.metadata and self.metadata.file_paths:
            return self.metadata.file_paths[0]
        return None


@dataclass
class SearchFilters:
    """Optional constraints applied to every search mode.

    Dates are inclusive on both ends. file_path is a substring match.
    """
    project_path: str | None = None
    session_id: str | None = None
    role: MessageRole | None = None
    language: str | None = None
    model: str | None = None
    file_path: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def has_active_filters(self) -> bool:
        return any(v is not None for v in (
            self.project_path, self.session_id, self.role, self.language,
            self.model, self.file_path, self.date_from, self.date_to,
        ))

    def validate(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("date_from must not be later than date_to")


@dataclass(frozen=True)
class SearchResult:
    message: Message
    snippet: str
    score: float


@dataclass
class IndexingResult:
    indexed: int = 0
    failed: int = 0
    skipped: int = 0

    def merge(self, other: "IndexingResult"):
        self.indexed += other.indexed
        self.failed += other.failed
        self.skipped += other.skipped


@dataclass(frozen=True)
class EmbeddingStats:
    total_messages: int
    messages_with_embeddings: int
    model: str

    @property
    def without_embeddings(self) -> int:
        return max(0, self.total_messages - self.messages_with_embeddings)

    @property
    def percentage_complete(self) -> float:
        if self.total_messages == 0:
            return 0.0
        return self.messages_with_embeddings * 100.0 / self.total_messages


@dataclass(frozen=True)
class ConversationStatistics:
    total_messages: int = 0
    messages_by_role: dict[str, int] = field(default_factory=dict)
    messages_by_model: dict[str, int] = field(default_factory=dict)
    oldest_message: datetime | None = None
    newest_message: datetime | None = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_creation_tokens: int = 0
    total_cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (self.total_input_tokens + self.total_output_tokens
                + self.total_cache_creation_tokens + self.total_cache_read_tokens)

    @property
    def estimated_total_cost(self) -> float:
        return estimate_cost(self.total_input_tokens, self.total_output_tokens,
                             self.total_cache_creation_tokens,
                             self.total_cache_read_tokens)
