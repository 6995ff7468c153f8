"""Hybrid search over indexed conversation history.

Keyword search runs on the SQLite FTS5 index. Semantic search compares a
query embedding with every stored message embedding. Hybrid search fuses
the two rankings with Reciprocal Rank Fusion. Whenever a query embedding
cannot be produced, semantic and hybrid search quietly return the keyword
results instead.
"""

import logging
from datetime import datetime

from .constants import CANDIDATE_LIMIT, ELLIPSIS, RRF_K, SNIPPET_LENGTH
from .db import HistoryDB, query_terms
from .embeddings import EmbeddingService
from .models import (
    ConversationStatistics, Message, SearchFilters, SearchMode, SearchResult,
)
from .validation import validate_range, validate_search_query
from .vectors import cosine_similarity

logger = logging.getLogger(__name__)


def make_snippet(content: str, query: str = "", length: int = SNIPPET_LENGTH) -> str:
    """Window of `length` chars around the first query term found in content."""
    if not content:
        return ""
    lowered = content.lower()
    positions = [lowered.find(term.lower()) for term in query_terms(query)]
    positions = [p for p in positions if p >= 0]

    start = max(0, min(positions) - length // 2) if positions else 0
    end = min(len(content), start + length)
    snippet = content[start:end]
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(content):
        snippet = snippet + ELLIPSIS
    return snippet


def rrf_fuse(ranked_lists: list[list[SearchResult]], k: int = RRF_K,
             limit: int | None = None) -> list[SearchResult]:
    """Reciprocal Rank Fusion of several rankings.

    Each list contributes 1 / (k + rank) for every message it holds, with
    1-based ranks. The snippet comes from the first list that had the message.
    """
    scores: dict[int, float] = {}
    first_seen: dict[int, SearchResult] = {}
    for results in ranked_lists:
        for rank, result in enumerate(results, start=1):
            key = result.message.id
            scores[key] = scores.get(key, 0.0) + 1.0 / (k + rank)
            first_seen.setdefault(key, result)

    fused = [
        SearchResult(first_seen[key].message, first_seen[key].snippet, score)
        for key, score in scores.items()
    ]
    fused.sort(key=lambda r: r.score, reverse=True)
    return fused[:limit] if limit is not None else fused


class SearchService:
    def __init__(self, db: HistoryDB, embeddings: EmbeddingService,
                 candidate_limit: int = CANDIDATE_LIMIT,
                 snippet_length: int = SNIPPET_LENGTH,
                 max_limit: int = 1000, rrf_k: int = RRF_K):
        self.db = db
        self.embeddings = embeddings
        self.candidate_limit = candidate_limit
        self.snippet_length = snippet_length
        self.max_limit = max_limit
        self.rrf_k = rrf_k

    def search(self, query: str, filters: SearchFilters | None = None,
               mode: SearchMode = SearchMode.HYBRID,
               limit: int = 100) -> list[SearchResult]:
        """Search messages.

        Raises ValidationError for an over-long query, an out-of-range limit
        or an inverted date range. Provider problems never raise.
        """
        query = validate_search_query(query)
        validate_range(limit, 1, self.max_limit, "limit")
        if filters:
            filters.validate()
        mode = SearchMode(mode)

        if not query:
            if filters and filters.has_active_filters():
                return self._filter_only(filters, limit)
            return []

        if mode == SearchMode.KEYWORD:
            return self.keyword_search(query, filters, limit)
        if mode == SearchMode.SEMANTIC:
            return self.semantic_search(query, filters, limit)
        return self.hybrid_search(query, filters, limit)

    def keyword_search(self, query: str, filters: SearchFilters | None = None,
                       limit: int = 100) -> list[SearchResult]:
        return [
            SearchResult(message, make_snippet(message.content, query, self.snippet_length), score)
            for message, score in self.db.search_keyword(query, filters, limit)
        ]

    def semantic_search(self, query: str, filters: SearchFilters | None = None,
                        limit: int = 100) -> list[SearchResult]:
        vector = self.embeddings.generate_query_embedding(query)
        if vector is None:
            logger.info("Semantic search falling back to keyword search")
            return self.keyword_search(query, filters, limit)
        return self._vector_search(vector, filters, limit)

    def hybrid_search(self, query: str, filters: SearchFilters | None = None,
                      limit: int = 100) -> list[SearchResult]:
        vector = self.embeddings.generate_query_embedding(query)
        if vector is None:
            logger.info("Hybrid search falling back to keyword search")
            return self.keyword_search(query, filters, limit)

        keyword = self.keyword_search(query, filters, self.candidate_limit)
        semantic = self._vector_search(vector, filters, self.candidate_limit)
        return rrf_fuse([keyword, semantic], self.rrf_k, limit)

    def find_similar(self, message_id: int, limit: int = 10,
                     filters: SearchFilters | None = None) -> list[SearchResult]:
        """Messages closest to an existing one. Empty on any failure."""
        try:
            vector = self.embeddings.get_embedding(message_id)
            if vector is None:
                message = self.db.get_message(message_id)
                if message is None:
                    return []
                if not self.embeddings.generate_and_store(message_id, message.content):
                    return []
                vector = self.embeddings.get_embedding(message_id)
                if vector is None:
                    return []
            return self._vector_search(vector, filters, limit, exclude_id=message_id)
        except Exception as e:
            logger.warning("find_similar(%d) failed: %s", message_id, e)
            return []

    def _vector_search(self, vector, filters: SearchFilters | None, limit: int,
                       exclude_id: int | None = None) -> list[SearchResult]:
        scored = []
        for message, stored in self.db.iter_embeddings(self.embeddings.model, filters):
            if message.id == exclude_id or len(stored) != len(vector):
                continue
            scored.append((cosine_similarity(vector, stored), message))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [SearchResult(message, self._leading_snippet(message.content), score)
                for score, message in scored[:limit]]

    def _filter_only(self, filters: SearchFilters, limit: int) -> list[SearchResult]:
        return [SearchResult(m, self._leading_snippet(m.content), 1.0)
                for m in self.db.get_by_filters(filters, limit)]

    def _leading_snippet(self, content: str) -> str:
        if len(content) <= self.snippet_length:
            return content
        return content[:self.snippet_length] + ELLIPSIS

    # ── Read models ───────────────────────────────────────────

    def get_session(self, session_id: str) -> list[Message]:
        return self.db.get_by_session(session_id)

    def get_latest_by_project(self, project_path: str) -> Message | None:
        latest = self.db.get_latest_by_project(project_path, limit=1)
        return latest[0] if latest else None

    def get_by_date_range(self, date_from: datetime, date_to: datetime,
                          limit: int = 100) -> list[Message]:
        return self.db.get_by_date_range(date_from, date_to, limit)

    def get_all_projects(self) -> list[str]:
        return self.db.get_all_projects()

    def get_all_languages(self) -> list[str]:
        return self.db.get_all_languages()

    def get_all_models(self) -> list[str]:
        return self.db.get_all_models()

    def get_statistics(self) -> ConversationStatistics:
        return self.db.get_statistics()
