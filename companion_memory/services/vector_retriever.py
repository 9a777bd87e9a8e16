"""
Vector Retriever: best-effort long-term recall for a companion.
"""

from typing import List, Optional, Protocol

from ..models.core import SearchResult
from ..utils.logging_config import get_logger
from .embedding_cache import EmbeddingCache

logger = get_logger(__name__)


class VectorIndex(Protocol):

    def query_similar(self, query_vector: List[float], k: int, file_name: Optional[str] = None) -> List[SearchResult]:
        ...


def _is_text(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


class VectorRetriever:
    """Embeds recent context and finds similar passages scoped to one companion.

    Retrieval only enriches the prompt, so every failure degrades to an empty
    result instead of raising.
    """

    def __init__(self, embedding_cache: EmbeddingCache, index: VectorIndex, default_k: int = 3):
        self.embedding_cache = embedding_cache
        self.index = index
        self.default_k = default_k

    def search(self, context_text: str, entity_scope_id: str, k: Optional[int] = None) -> List[SearchResult]:
        """
        Find the passages most similar to ``context_text``.

        Args:
            context_text: Recent conversation text
            entity_scope_id: Companion file the search is restricted to
            k: Maximum number of results

        Returns:
            Up to k results ordered by descending score, possibly empty
        """
        if not _is_text(context_text):
            logger.warning('Invalid context text for vector search, skipping retrieval')
            return []
        if not _is_text(entity_scope_id):
            logger.warning('Invalid entity scope for vector search, skipping retrieval')
            return []

        if k is None:
            k = self.default_k
        if k < 0:
            raise ValueError(f'k must not be negative, got {k}')
        if k == 0:
            return []

        try:
            vector = self.embedding_cache.embed(entity_scope_id, context_text)
        except Exception as e:
            logger.error(f'Could not embed context for {entity_scope_id}: {e}')
            return []

        try:
            results = self.index.query_similar(vector, k, file_name=entity_scope_id)
        except Exception as e:
            logger.warning(f'Filtered vector search failed, trying without filter: {e}')
            try:
                results = self.index.query_similar(vector, k)
            except Exception as fallback_error:
                logger.error(f'Unfiltered vector search failed: {fallback_error}')
                return []

        if not isinstance(results, list):
            logger.warning('Unexpected response format from similarity search')
            return []

        return sorted(results, key=lambda r: r.score, reverse=True)[:k]
