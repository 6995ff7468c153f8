"""Embedding coordinator: decides when to call the provider and persists results.

Provider failures never propagate from here. Generation reports a bool,
query embedding returns None, and callers pick their own fallback.
"""

import logging
import sqlite3
import time

from .constants import MAX_EMBED_CHARS, MIN_EMBED_CHARS
from .db import HistoryDB
from .models import EmbeddingStats
from .ollama import DEFAULT_MODEL, EmbeddingError
from .validation import ValidationError
from .vectors import normalize

logger = logging.getLogger(__name__)


class EmbeddingService:
    def __init__(self, client, db: HistoryDB, batch_size: int = 10,
                 batch_delay: float = 0.1):
        self.client = client
        self.db = db
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    @property
    def model(self) -> str:
        return self.client.model if self.client else DEFAULT_MODEL

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def is_available(self) -> bool:
        return self.enabled and self.client.is_available()

    def _embed(self, text: str) -> list[float]:
        return normalize(self.client.generate_embedding(text[:MAX_EMBED_CHARS]))

    def generate_and_store(self, message_id: int, content: str) -> bool:
        """Make sure a message has an embedding for the active model.

        Near-empty content counts as done without a provider call, as does
        a message that already has one.
        """
        if not content or len(content.strip()) < MIN_EMBED_CHARS:
            return True
        if not self.enabled:
            return False
        try:
            if self.db.has_embedding(message_id, self.model):
                return True
            vector = self._embed(content)
            self.db.store_embedding(message_id, vector, self.model)
            return True
        except (EmbeddingError, ValidationError) as e:
            logger.warning("Embedding failed for message %d: %s", message_id, e)
            return False
        except sqlite3.Error as e:
            logger.warning("Could not store embedding for message %d: %s", message_id, e)
            return False

    def generate_missing_embeddings(self, progress_callback=None) -> int:
        """Backfill embeddings for every message that lacks one. Returns successes."""
        pending = self.db.messages_without_embeddings(self.model)
        total = len(pending)
        if not total:
            return 0
        logger.info("Generating embeddings for %d messages with %s", total, self.model)

        succeeded = failed = 0
        for index, (message_id, content) in enumerate(pending, start=1):
            if self.generate_and_store(message_id, content):
                succeeded += 1
            else:
                failed += 1
            if progress_callback:
                progress_callback(index, total)
            if index % self.batch_size == 0 and index < total and self.batch_delay > 0:
                time.sleep(self.batch_delay)

        if failed:
            logger.warning("Embedding backfill: %d succeeded, %d failed", succeeded, failed)
        else:
            logger.info("Embedding backfill: %d succeeded", succeeded)
        return succeeded

    def generate_query_embedding(self, query: str) -> list[float] | None:
        """Normalized vector for a search query, or None if it cannot be made."""
        if not self.enabled:
            return None
        try:
            return self._embed(query)
        except (EmbeddingError, ValidationError) as e:
            logger.info("Query embedding unavailable: %s", e)
            return None

    def get_embedding(self, message_id: int) -> list[float] | None:
        return self.db.get_embedding(message_id, self.model)

    def has_embedding(self, message_id: int) -> bool:
        return self.db.has_embedding(message_id, self.model)

    def get_embedding_stats(self) -> EmbeddingStats:
        return EmbeddingStats(
            total_messages=self.db.count_messages(),
            messages_with_embeddings=self.db.count_embeddings(self.model),
            model=self.model,
        )
