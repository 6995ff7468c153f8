"""Input validation for files, queries, paths and embedding text."""

import re
from pathlib import Path

from .constants import (
    MAX_CONTENT_LENGTH, MAX_EMBED_CHARS, MAX_FILE_SIZE, MAX_LINE_LENGTH,
    MAX_PROJECT_PATH_LENGTH, MAX_SEARCH_QUERY_LENGTH, MAX_SESSION_ID_LENGTH,
)

_SESSION_ID_RE = re.compile(r"^[a-zA-Z0-9_\-]+$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class ValidationError(ValueError):
    """Raised when caller input is outside the accepted bounds."""


def validate_file(path: Path, max_size: int = MAX_FILE_SIZE) -> Path:
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"File does not exist: {path}")
    if not path.is_file():
        raise ValidationError(f"Not a regular file: {path}")
    try:
        size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Cannot stat {path}: {e}") from e
    if size > max_size:
        raise ValidationError(
            f"File too large: {path} ({size} bytes, limit {max_size})")
    return path


def validate_search_query(query: str) -> str:
    """Strip control characters and surrounding whitespace from a query."""
    if query is None:
        return ""
    if len(query) > MAX_SEARCH_QUERY_LENGTH:
        raise ValidationError(
            f"Search query too long ({len(query)} chars, limit {MAX_SEARCH_QUERY_LENGTH})")
    return _CONTROL_CHARS_RE.sub("", query).strip()


def validate_project_path(project_path: str) -> str:
    if not project_path or not project_path.strip():
        raise ValidationError("Project path must not be blank")
    if len(project_path) > MAX_PROJECT_PATH_LENGTH:
        raise ValidationError(
            f"Project path too long ({len(project_path)} chars)")
    if "\x00" in project_path:
        raise ValidationError("Project path contains a null byte")
    return project_path


def validate_session_id(session_id: str) -> str:
    if not session_id:
        raise ValidationError("Session id must not be blank")
    if len(session_id) > MAX_SESSION_ID_LENGTH:
        raise ValidationError(f"Session id too long ({len(session_id)} chars)")
    if not _SESSION_ID_RE.match(session_id):
        raise ValidationError(f"Invalid session id: {session_id!r}")
    return session_id


def validate_content_length(content: str) -> str:
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"Content too long ({len(content)} chars)")
    return content


def validate_embedding_text(text: str, min_length: int = 1) -> str:
    """Return the trimmed text, or raise if it cannot be embedded.

    The provider only needs non-blank input; callers deciding whether
    message content is worth embedding pass MIN_EMBED_CHARS.
    """
    trimmed = (text or "").strip()
    if len(trimmed) < min_length:
        raise ValidationError(
            f"Text too short to embed ({len(trimmed)} chars, minimum {min_length})")
    if len(trimmed) > MAX_EMBED_CHARS:
        raise ValidationError(
            f"Text too long to embed ({len(trimmed)} chars, maximum {MAX_EMBED_CHARS})")
    return trimmed


def validate_line_length(line: str, line_number: int = 0) -> str:
    if len(line) > MAX_LINE_LENGTH:
        raise ValidationError(
            f"Line {line_number} too long ({len(line)} chars, limit {MAX_LINE_LENGTH})")
    return line


def sanitize_file_path(file_path: str) -> str:
    """Drop null bytes and parent-directory segments from a display path."""
    cleaned = file_path.replace("\x00", "")
    parts = [p for p in cleaned.split("/") if p != ".."]
    return "/".join(parts)


def validate_range(value, low, high, name: str):
    if value < low or value > high:
        raise ValidationError(f"{name} must be between {low} and {high}, got {value}")
    return value


def validate_positive(value, name: str):
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")
    return value
