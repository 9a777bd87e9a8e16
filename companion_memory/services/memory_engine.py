"""
Memory engine assembly: builds and wires the history store, embedding cache,
vector retriever and rate limiter from configuration.
"""

from dataclasses import replace
from typing import Optional

import redis

from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, validate_config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.redis_client import create_redis_client
from .chat_turn import ChatTurnService, MessageSink
from .embedding_cache import EmbeddingCache
from .history_store import HistoryStore
from .rate_limiter import RateLimiter
from .vector_retriever import VectorRetriever

logger = get_logger(__name__)


class MemoryEngine:
    """Holds one explicitly constructed instance of every engine component.

    Build it once at startup with ``from_config`` and pass it to request
    handlers; nothing here is module-global.
    """

    def __init__(self,
                 config: AppConfig,
                 redis_client: redis.Redis,
                 embedder: BedrockEmbed,
                 index: OpenSearchClient,
                 llm: Optional[BedrockLLM] = None,
                 limiter_client: Optional[redis.Redis] = None):
        self.config = config
        self.redis = redis_client
        self.embedder = embedder
        self.index = index
        self.llm = llm
        self.limiter_redis = limiter_client if limiter_client is not None else redis_client

        self.history = HistoryStore(redis_client, config.history)
        self.embedding_cache = EmbeddingCache(redis_client, embedder, config.embedding_cache)
        self.retriever = VectorRetriever(self.embedding_cache, index, default_k=config.retrieval.top_k)
        self.rate_limiter = RateLimiter(self.limiter_redis, config.rate_limit)

        logger.info('Initialized MemoryEngine')

    @classmethod
    def from_config(cls, config: AppConfig, ensure_index: bool = True) -> 'MemoryEngine':
        """
        Validate configuration and connect every backend.

        Raises:
            ConfigurationError: If required settings are missing
        """
        validate_config(config)

        redis_client = create_redis_client(config.redis)
        # A blocked limiter socket must give up before the check times out
        limiter_timeout = min(config.redis.socket_timeout, config.rate_limit.timeout_seconds)
        limiter_client = create_redis_client(replace(config.redis, socket_timeout=limiter_timeout))
        embedder = BedrockEmbed(config.bedrock_embed)
        index = OpenSearchClient(config.opensearch)
        llm = BedrockLLM(config.bedrock_llm)

        if ensure_index:
            try:
                index.create_index_if_not_exists()
            except OpenSearchError as e:
                logger.warning(f'Failed to create OpenSearch index: {e}')

        return cls(config, redis_client, embedder, index, llm, limiter_client=limiter_client)

    def chat_service(self, sink: Optional[MessageSink] = None) -> ChatTurnService:
        """Create a chat turn service over this engine's components."""
        if self.llm is None:
            raise ValueError('MemoryEngine was built without an LLM client')
        return ChatTurnService(history=self.history,
                               retriever=self.retriever,
                               rate_limiter=self.rate_limiter,
                               llm=self.llm,
                               model_name=self.config.history.model_name,
                               sink=sink)

    def close(self) -> None:
        self.rate_limiter.close()
        if self.limiter_redis is not self.redis:
            self.limiter_redis.close()
        self.redis.close()
