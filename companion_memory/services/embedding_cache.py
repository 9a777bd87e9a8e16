"""
Embedding Cache: content-addressed cache of context embeddings.
"""

import hashlib
import json
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Union

import redis

from ..utils.config import EmbeddingCacheConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class EmbeddingCacheError(Exception):
    """Raised when no embedding could be produced for the text."""
    pass


class EmbeddingProvider(Protocol):

    def embed_query(self, text: str) -> List[float]:
        ...


@dataclass
class CachedVector:
    vector: List[float]


@dataclass
class CacheMiss:
    reason: Optional[str] = None  # set when a cached payload was unusable


def decode_embedding(raw: Optional[str]) -> Union[CachedVector, CacheMiss]:
    """Decode a cached payload into a vector, or a miss describing why it was rejected."""
    if raw is None:
        return CacheMiss()

    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        return CacheMiss(reason=f'invalid JSON: {e}')

    if not isinstance(parsed, list) or not parsed:
        return CacheMiss(reason='payload is not a non-empty array')
    # bool is a subclass of int but never a valid component
    if not all(isinstance(n, (int, float)) and not isinstance(n, bool) for n in parsed):
        return CacheMiss(reason='array contains non-numeric values')

    return CachedVector(vector=[float(n) for n in parsed])


def cache_key(entity_file_id: str, text: str, prefix: str = 'embed') -> str:
    digest = hashlib.sha256(f'{entity_file_id}:{text}'.encode('utf-8')).hexdigest()
    return f'{prefix}:{digest}'


class EmbeddingCache:
    """Caches provider embeddings in Redis and coalesces concurrent identical requests."""

    def __init__(self, client: redis.Redis, provider: EmbeddingProvider, config: EmbeddingCacheConfig):
        self.redis = client
        self.provider = provider
        self.config = config

        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def embed(self, entity_file_id: str, text: str) -> List[float]:
        """
        Return the embedding for ``text`` in the scope of ``entity_file_id``.

        Concurrent callers asking for the same key wait on the first caller's
        computation instead of calling the provider again.

        Raises:
            EmbeddingCacheError: If the provider fails twice
        """
        key = cache_key(entity_file_id, text, self.config.key_prefix)

        with self._lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            logger.debug(f'Joining in-flight embedding for {key}')
            return future.result()

        try:
            vector = self._lookup_or_compute(key, text)
            future.set_result(vector)
            return vector
        except Exception as e:
            future.set_exception(e)
            raise
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def _lookup_or_compute(self, key: str, text: str) -> List[float]:
        try:
            lookup = decode_embedding(self.redis.get(key))
            if isinstance(lookup, CachedVector):
                logger.debug(f'Embedding cache HIT: {key}')
                return lookup.vector

            if lookup.reason:
                logger.warning(f'Discarding cached embedding {key}: {lookup.reason}')
                self.redis.delete(key)

            logger.debug(f'Embedding cache MISS: {key}')
            vector = self.provider.embed_query(text)
        except redis.RedisError as e:
            logger.error(f'Embedding cache unavailable, computing directly: {e}')
            return self._compute_direct(text, attempts=2)
        except Exception as e:
            logger.error(f'Error in embedding process: {e}')
            return self._compute_direct(text, attempts=1)

        self._store(key, vector)
        return vector

    def _compute_direct(self, text: str, attempts: int) -> List[float]:
        for attempt in range(attempts):
            try:
                return self.provider.embed_query(text)
            except Exception as e:
                logger.error(f'Direct embedding attempt {attempt + 1}/{attempts} failed: {e}')
                last_error = e
        raise EmbeddingCacheError(f'Embedding failed: {last_error}')

    def _store(self, key: str, vector: List[float]) -> None:
        try:
            self.redis.setex(key, self.config.ttl_seconds, json.dumps(vector))
            logger.debug(f'Embedding cache SET: {key} (TTL: {self.config.ttl_seconds}s)')
        except redis.RedisError as e:
            logger.error(f'Failed to cache embedding {key}: {e}')
