"""Record parser for Claude Code JSONL transcripts.

Each line of a session file is one event. A line becomes at most one
Message; malformed or irrelevant lines are logged and skipped. Message
content is resolved once into typed blocks and flattened to text, with
tool activity collected into MessageMetadata.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .constants import (
    EXTENSION_LANGUAGES, FILE_PATH_KEYS, MAX_LINE_LENGTH, TRANSCRIPT_SUFFIX,
)
from .models import Message, MessageMetadata, MessageRole, TokenUsage, ToolUse

logger = logging.getLogger(__name__)


# ── Content blocks ───────────────────────────────────────────

@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    content: str


def parse_blocks(content) -> list:
    """Resolve string-or-list message content into typed blocks."""
    if isinstance(content, str):
        return [TextBlock(content)]
    if not isinstance(content, list):
        return []

    blocks = []
    for block in content:
        if isinstance(block, str):
            blocks.append(TextBlock(block))
            continue
        if not isinstance(block, dict):
            continue
        block_type = block.get("type", "")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str):
                blocks.append(TextBlock(text))
        elif block_type == "tool_use":
            tool_input = block.get("input")
            name = block.get("name")
            blocks.append(ToolUseBlock(
                name=name if isinstance(name, str) and name else "unknown",
                input=tool_input if isinstance(tool_input, dict) else {},
            ))
        elif block_type == "tool_result":
            result = block.get("content", "")
            if isinstance(result, list):
                result = "\n".join(
                    b["text"] for b in result
                    if isinstance(b, dict) and b.get("type") == "text"
                    and isinstance(b.get("text"), str)
                )
            blocks.append(ToolResultBlock(str(result or "")))
    return blocks


def _scrub(value):
    """Replace lone surrogates (from escapes like \\ud83d) that SQLite cannot encode."""
    if isinstance(value, str):
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            return value.encode("utf-8", "replace").decode("utf-8")
        return value
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    if isinstance(value, dict):
        return {_scrub(k): _scrub(v) for k, v in value.items()}
    return value


def _flatten_params(tool_input: dict) -> dict[str, str]:
    params = {}
    for key, value in tool_input.items():
        if isinstance(value, str):
            params[key] = value
        elif value is None or isinstance(value, (bool, int, float)):
            params[key] = json.dumps(value)
        else:
            params[key] = json.dumps(value, sort_keys=True)
    return params


def _tool_file_path(tool_input: dict) -> str | None:
    for key in FILE_PATH_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def detect_language(file_path: str) -> str | None:
    """Best-effort language name from a file extension."""
    name = Path(file_path).name
    if "." not in name:
        return None
    return EXTENSION_LANGUAGES.get(name.rsplit(".", 1)[1].lower())


# ── Line parsing ─────────────────────────────────────────────

def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 string or epoch seconds/milliseconds to UTC."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _as_count(value) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return 0


def _parse_usage(usage) -> TokenUsage | None:
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        input_tokens=_as_count(usage.get("input_tokens")),
        output_tokens=_as_count(usage.get("output_tokens")),
        cache_creation_input_tokens=_as_count(usage.get("cache_creation_input_tokens")),
        cache_read_input_tokens=_as_count(usage.get("cache_read_input_tokens")),
    )


def parse_line(line: str, session_id: str, project_path: str,
               line_number: int = 0) -> Message | None:
    """Parse one transcript line into a Message, or None if it should be skipped."""
    if not line or not line.strip():
        return None
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed line %d in session %s", line_number, session_id)
        return None
    if not isinstance(entry, dict):
        return None

    msg = entry.get("message")
    if not isinstance(msg, dict) or "timestamp" not in entry:
        return None
    msg = _scrub(msg)

    raw_role = msg.get("role")
    role = MessageRole.parse(raw_role)
    if role is None:
        if raw_role is not None:
            logger.warning("Unknown role %r at line %d in session %s",
                           raw_role, line_number, session_id)
        return None

    timestamp = parse_timestamp(entry.get("timestamp"))
    if timestamp is None:
        logger.warning("Unparseable timestamp at line %d in session %s",
                       line_number, session_id)
        return None

    texts = []
    tool_uses = []
    file_paths = []
    language = None

    for block in parse_blocks(msg.get("content")):
        if isinstance(block, TextBlock):
            texts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            tool_uses.append(ToolUse(block.name, _flatten_params(block.input)))
            path = _tool_file_path(block.input)
            if path:
                texts.append(f"[Tool: {block.name}] {path}")
                if path not in file_paths:
                    file_paths.append(path)
                if language is None and len(file_paths) == 1:
                    language = detect_language(path)
            else:
                texts.append(f"[Tool: {block.name}]")

    model = msg.get("model") if isinstance(msg.get("model"), str) else None
    usage = _parse_usage(msg.get("usage"))

    metadata = None
    if tool_uses or file_paths or language or model or usage:
        metadata = MessageMetadata(
            tool_uses=tool_uses,
            file_paths=file_paths,
            language=language,
            model=model,
            usage=usage,
        )

    return Message(
        session_id=session_id,
        project_path=project_path,
        timestamp=timestamp,
        role=role,
        content="\n".join(texts).strip(),
        line_number=line_number,
        metadata=metadata,
    )


# ── Files and projects ───────────────────────────────────────

def session_id_for(path: Path) -> str:
    name = Path(path).name
    if name.endswith(TRANSCRIPT_SUFFIX):
        return name[:-len(TRANSCRIPT_SUFFIX)]
    return name


def decode_project_path(dir_name: str) -> str:
    """'-Users-me-proj' -> '/Users/me/proj'."""
    return "/" + dir_name.lstrip("-").replace("-", "/")


def encode_project_path(project_path: str) -> str:
    return project_path.replace("/", "-")


def find_conversation_files(projects_dir: Path) -> list[tuple[Path, str]]:
    """Return (file, project_path) for every transcript directly under a project dir."""
    projects_dir = Path(projects_dir)
    if not projects_dir.is_dir():
        return []
    found = []
    for project_dir in sorted(p for p in projects_dir.iterdir() if p.is_dir()):
        project_path = decode_project_path(project_dir.name)
        for path in sorted(project_dir.glob(f"*{TRANSCRIPT_SUFFIX}")):
            if path.is_file():
                found.append((path, project_path))
    return found


@dataclass
class ParsedChunk:
    messages: list[Message]
    offset: int
    line_count: int
    skipped_lines: int = 0


def _is_complete_json(raw: bytes) -> bool:
    try:
        json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return False
    return True


def read_new_records(path: Path, project_path: str, offset: int = 0,
                     line_count: int = 0) -> ParsedChunk:
    """Parse the lines appended to a transcript since `offset`.

    Only complete lines are consumed. An unterminated last line is taken
    only when it already holds a full JSON document; otherwise it is left
    for the next read.
    """
    path = Path(path)
    session_id = session_id_for(path)
    with open(path, "rb") as f:
        prev = b"\n"
        if offset > 0:
            f.seek(offset - 1)
            prev = f.read(1)
        f.seek(offset)
        data = f.read()

    # An unterminated line taken last time has had its newline appended since
    skip = 1 if prev != b"\n" and data.startswith(b"\n") else 0
    data = data[skip:]

    pieces = data.split(b"\n")
    tail = pieces.pop()
    consumed = len(data) - len(tail)
    if tail.strip() and _is_complete_json(tail):
        pieces.append(tail)
        consumed = len(data)

    messages = []
    skipped = 0
    line_number = line_count
    for raw in pieces:
        current = line_number
        line_number += 1
        if len(raw) > MAX_LINE_LENGTH:
            logger.warning("Skipping oversized line %d in %s (%d bytes)",
                           current, path, len(raw))
            skipped += 1
            continue
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Skipping undecodable line %d in %s", current, path)
            skipped += 1
            continue
        if not line.strip():
            continue
        message = parse_line(line, session_id, project_path, current)
        if message is None:
            skipped += 1
            continue
        messages.append(message)

    return ParsedChunk(messages, offset + skip + consumed, line_number, skipped)


def parse_conversation_file(path: Path, project_path: str) -> list[Message]:
    return read_new_records(path, project_path).messages
