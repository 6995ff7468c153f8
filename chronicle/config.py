"""Configuration for Chronicle.

Reads from ~/.chronicle/config.json with sensible defaults. Any key can
be overridden from the environment as CHRONICLE_<KEY>, e.g.
CHRONICLE_OLLAMA_MODEL=mxbai-embed-large.
"""

import json
import os
from pathlib import Path

DEFAULT_CONFIG_PATH = Path.home() / ".chronicle" / "config.json"
ENV_PREFIX = "CHRONICLE_"

DEFAULTS = {
    # Paths
    "projects_dir": str(Path.home() / ".claude" / "projects"),
    "db_path": str(Path.home() / ".chronicle" / "chronicle.db"),
    "log_dir": str(Path.home() / ".chronicle"),

    # SQLite
    "busy_timeout_ms": 5000,
    "wal_mode": True,
    "synchronous": "NORMAL",

    # Ollama embeddings
    "ollama_enabled": True,
    "ollama_url": "http://localhost:11434",
    "ollama_model": "nomic-embed-text",
    "ollama_timeout": 30,
    "ollama_max_retries": 3,
    "ollama_retry_delay_ms": 1000,

    # Embedding backfill pacing
    "embedding_batch_size": 10,
    "embedding_batch_delay_ms": 100,
    "auto_embed": False,  # backfill embeddings after each --index run

    # Search
    "default_search_limit": 100,
    "max_search_limit": 1000,
    "candidate_limit": 50,
    "snippet_length": 200,

    # Indexing
    "index_workers": 4,
    "max_file_size_mb": 100,
    "poll_interval": 1.0,

    "debug": False,
}

_SYNCHRONOUS_MODES = {"OFF", "NORMAL", "FULL", "EXTRA"}


class ConfigError(ValueError):
    """A configuration value is missing, malformed or out of range."""


def _coerce(raw: str, default):
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ConfigError(f"Expected a boolean, got {raw!r}")
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as e:
        raise ConfigError(f"Expected a number, got {raw!r}") from e
    return raw


class Config:
    def __init__(self, config_path: Path = DEFAULT_CONFIG_PATH, environ=None):
        self.config_path = Path(config_path)
        self._data = dict(DEFAULTS)
        self._load()
        self._apply_env(os.environ if environ is None else environ)

    def _load(self):
        if self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    user_config = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {self.config_path}: {e}") from e
            if not isinstance(user_config, dict):
                raise ConfigError(f"{self.config_path} must hold a JSON object")
            self._data.update(user_config)

    def _apply_env(self, environ):
        for key, default in DEFAULTS.items():
            raw = environ.get(ENV_PREFIX + key.upper())
            if raw is not None:
                try:
                    self._data[key] = _coerce(raw, default)
                except ConfigError as e:
                    raise ConfigError(f"{ENV_PREFIX}{key.upper()}: {e}") from e

    def validate(self) -> "Config":
        """Range-check settings. Raises ConfigError on the first bad value."""
        def need(key, ok, what):
            if not ok(self._data.get(key)):
                raise ConfigError(f"{key} must be {what}, got {self._data.get(key)!r}")

        positive = lambda v: isinstance(v, (int, float)) and not isinstance(v, bool) and v > 0
        non_negative = lambda v: isinstance(v, (int, float)) and not isinstance(v, bool) and v >= 0

        need("projects_dir", lambda v: isinstance(v, str) and v.strip(), "a path")
        need("db_path", lambda v: isinstance(v, str) and v.strip(), "a path")
        need("ollama_url", lambda v: isinstance(v, str) and v.startswith(("http://", "https://")),
             "an http(s) URL")
        need("ollama_model", lambda v: isinstance(v, str) and v.strip(), "a model name")
        need("synchronous", lambda v: str(v).upper() in _SYNCHRONOUS_MODES,
             f"one of {sorted(_SYNCHRONOUS_MODES)}")
        for key in ("busy_timeout_ms", "ollama_timeout", "embedding_batch_size",
                    "default_search_limit", "max_search_limit", "candidate_limit",
                    "snippet_length", "index_workers", "max_file_size_mb", "poll_interval"):
            need(key, positive, "positive")
        for key in ("ollama_max_retries", "ollama_retry_delay_ms", "embedding_batch_delay_ms"):
            need(key, non_negative, "zero or more")
        if self._data["default_search_limit"] > self._data["max_search_limit"]:
            raise ConfigError("default_search_limit cannot exceed max_search_limit")
        return self

    def save(self):
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        self._data[key] = value

    def __getitem__(self, key):
        return self._data[key]

    def as_dict(self) -> dict:
        return dict(self._data)
