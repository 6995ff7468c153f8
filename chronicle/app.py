"""Chronicle facade: builds the store, embedding client and services from a Config."""

import logging
from pathlib import Path

from .config import Config
from .db import HistoryDB
from .embeddings import EmbeddingService
from .indexer import IndexingService
from .models import (
    ConversationStatistics, EmbeddingStats, IndexingResult, SearchFilters, SearchMode,
    SearchResult,
)
from .ollama import OllamaClient
from .search import SearchService

logger = logging.getLogger(__name__)


class Chronicle:
    def __init__(self, config: Config | None = None, client=None):
        self.config = config or Config()
        cfg = self.config

        self.db = HistoryDB(
            Path(cfg["db_path"]).expanduser(),
            busy_timeout_ms=cfg["busy_timeout_ms"],
            wal_mode=cfg["wal_mode"],
            synchronous=str(cfg["synchronous"]).upper(),
        )
        if client is None and cfg["ollama_enabled"]:
            client = OllamaClient(
                base_url=cfg["ollama_url"],
                model=cfg["ollama_model"],
                timeout=cfg["ollama_timeout"],
                max_retries=cfg["ollama_max_retries"],
                retry_delay=cfg["ollama_retry_delay_ms"] / 1000,
            )
        self.client = client
        self.embeddings = EmbeddingService(
            client, self.db,
            batch_size=cfg["embedding_batch_size"],
            batch_delay=cfg["embedding_batch_delay_ms"] / 1000,
        )
        self.search_service = SearchService(
            self.db, self.embeddings,
            candidate_limit=cfg["candidate_limit"],
            snippet_length=cfg["snippet_length"],
            max_limit=cfg["max_search_limit"],
        )
        self.indexer = IndexingService(
            self.db, Path(cfg["projects_dir"]).expanduser(),
            max_file_size=int(cfg["max_file_size_mb"] * 1024 * 1024),
            workers=cfg["index_workers"],
            poll_interval=cfg["poll_interval"],
        )

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.indexer.shutdown()
        if self.client is not None and hasattr(self.client, "close"):
            self.client.close()

    def search(self, query: str, filters: SearchFilters | None = None,
               mode: SearchMode = SearchMode.HYBRID,
               limit: int | None = None) -> list[SearchResult]:
        if limit is None:
            limit = self.config["default_search_limit"]
        return self.search_service.search(query, filters, mode, limit)

    def find_similar(self, message_id: int, limit: int = 10,
                     filters: SearchFilters | None = None) -> list[SearchResult]:
        return self.search_service.find_similar(message_id, limit, filters)

    def index_all(self) -> IndexingResult:
        result = self.indexer.index_all_conversations()
        if self.config["auto_embed"] and result.indexed and self.embeddings.is_available():
            self.embeddings.generate_missing_embeddings()
        return result

    def start_watching(self) -> bool:
        return self.indexer.start_watching()

    def stop_watching(self):
        self.indexer.stop_watching()

    @property
    def is_watching(self) -> bool:
        return self.indexer.is_watching

    def generate_missing_embeddings(self, progress_callback=None) -> int:
        return self.embeddings.generate_missing_embeddings(progress_callback)

    def embedding_stats(self) -> EmbeddingStats:
        return self.embeddings.get_embedding_stats()

    def embeddings_available(self) -> bool:
        return self.embeddings.is_available()

    def statistics(self) -> ConversationStatistics:
        return self.search_service.get_statistics()
