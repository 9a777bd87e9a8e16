"""
Configuration management for backing services and memory engine settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


@dataclass
class RedisConfig:
    """Configuration for the Redis store backing history, cache and counters."""
    url: str
    max_connections: int
    socket_timeout: float


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    service: str


@dataclass
class HistoryConfig:
    """Retention windows for conversation history."""
    read_window: int
    trim_size: int
    model_name: str


@dataclass
class EmbeddingCacheConfig:
    """Configuration for the embedding cache."""
    ttl_seconds: int
    key_prefix: str


@dataclass
class RetrievalConfig:
    """Configuration for vector retrieval."""
    top_k: int


@dataclass
class RateLimitConfig:
    """Configuration for sliding-window rate limiting."""
    max_requests: int
    window_seconds: float
    local_cache_ttl: float
    timeout_seconds: float
    slow_threshold_seconds: float
    fail_open: bool
    key_prefix: str


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    redis: RedisConfig
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    history: HistoryConfig
    embedding_cache: EmbeddingCacheConfig
    retrieval: RetrievalConfig
    rate_limit: RateLimitConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    redis_config = RedisConfig(url=os.getenv('REDIS_URL', ''),
                               max_connections=int(os.getenv('REDIS_MAX_CONNECTIONS', '50')),
                               socket_timeout=float(os.getenv('REDIS_SOCKET_TIMEOUT', '5.0')))

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.7')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', ''),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'companion_passages'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'))

    history_config = HistoryConfig(read_window=int(os.getenv('HISTORY_READ_WINDOW', '30')),
                                   trim_size=int(os.getenv('HISTORY_TRIM_SIZE', '30')),
                                   model_name=os.getenv('HISTORY_MODEL_NAME', bedrock_llm_config.model_id))

    embedding_cache_config = EmbeddingCacheConfig(ttl_seconds=int(os.getenv('EMBEDDING_CACHE_TTL', '3600')),
                                                  key_prefix=os.getenv('EMBEDDING_CACHE_PREFIX', 'embed'))

    retrieval_config = RetrievalConfig(top_k=int(os.getenv('RETRIEVAL_TOP_K', '3')))

    rate_limit_config = RateLimitConfig(max_requests=int(os.getenv('RATE_LIMIT_MAX_REQUESTS', '10')),
                                        window_seconds=float(os.getenv('RATE_LIMIT_WINDOW_SECONDS', '3')),
                                        local_cache_ttl=float(os.getenv('RATE_LIMIT_LOCAL_CACHE_TTL', '5')),
                                        timeout_seconds=float(os.getenv('RATE_LIMIT_TIMEOUT_SECONDS', '0.5')),
                                        slow_threshold_seconds=float(os.getenv('RATE_LIMIT_SLOW_THRESHOLD_SECONDS', '0.3')),
                                        fail_open=_env_bool('RATE_LIMIT_FAIL_OPEN', 'true'),
                                        key_prefix=os.getenv('RATE_LIMIT_PREFIX', 'ratelimit'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     redis=redis_config,
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     history=history_config,
                     embedding_cache=embedding_cache_config,
                     retrieval=retrieval_config,
                     rate_limit=rate_limit_config,
                     mcp=mcp_config)


def validate_config(config: AppConfig) -> None:
    """Check that everything the engine needs at startup is present.

    Raises:
        ConfigurationError: Listing every missing or invalid setting
    """
    problems = []
    if not config.redis.url:
        problems.append('REDIS_URL is not set')
    if not config.opensearch.endpoint:
        problems.append('OPENSEARCH_ENDPOINT is not set')
    if not config.bedrock_embed.model_id:
        problems.append('BEDROCK_EMBED_MODEL_ID is not set')
    if not config.bedrock_llm.model_id:
        problems.append('BEDROCK_LLM_MODEL_ID is not set')
    if config.history.read_window <= 0 or config.history.trim_size <= 0:
        problems.append('HISTORY_READ_WINDOW and HISTORY_TRIM_SIZE must be positive')
    if config.rate_limit.max_requests <= 0 or config.rate_limit.window_seconds <= 0:
        problems.append('RATE_LIMIT_MAX_REQUESTS and RATE_LIMIT_WINDOW_SECONDS must be positive')

    if problems:
        raise ConfigurationError('; '.join(problems))
