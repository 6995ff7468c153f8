"""Shared constants for Chronicle."""

TRANSCRIPT_SUFFIX = ".jsonl"

# File extension -> language name, used when a tool touches a file
EXTENSION_LANGUAGES = {
    "kt": "kotlin", "kts": "kotlin",
    "java": "java",
    "py": "python",
    "js": "javascript", "jsx": "javascript",
    "ts": "typescript", "tsx": "typescript",
    "rs": "rust",
    "go": "go",
    "rb": "ruby",
    "php": "php",
    "c": "c", "h": "c",
    "cpp": "cpp", "cc": "cpp", "cxx": "cpp", "hpp": "cpp",
    "cs": "csharp",
    "swift": "swift",
    "m": "objective-c", "mm": "objective-c",
    "sh": "bash", "bash": "bash",
    "sql": "sql",
    "md": "markdown",
    "html": "html", "htm": "html",
    "css": "css",
    "json": "json",
    "xml": "xml",
    "yaml": "yaml", "yml": "yaml",
}

# Tool input keys that name a file
FILE_PATH_KEYS = ("file_path", "path", "notebook_path")

# Reciprocal Rank Fusion
RRF_K = 60
CANDIDATE_LIMIT = 50

SNIPPET_LENGTH = 200
ELLIPSIS = "..."

# Embedding text bounds (characters, after trimming)
MIN_EMBED_CHARS = 10
MAX_EMBED_CHARS = 8192

# Validation limits
MAX_FILE_SIZE = 100 * 1024 * 1024
MAX_LINE_LENGTH = 1_000_000
MAX_SEARCH_QUERY_LENGTH = 1000
MAX_PROJECT_PATH_LENGTH = 500
MAX_SESSION_ID_LENGTH = 200
MAX_CONTENT_LENGTH = 10_000_000

# USD per million tokens
PRICE_INPUT = 3.00
PRICE_OUTPUT = 15.00
PRICE_CACHE_WRITE = 3.75
PRICE_CACHE_READ = 0.30
