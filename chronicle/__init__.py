"""Chronicle: searchable index of Claude Code conversation history."""

__version__ = "0.3.0"
