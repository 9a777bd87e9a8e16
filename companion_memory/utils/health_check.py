"""
Health check utilities for the memory engine's backends.
"""

from typing import TYPE_CHECKING, Any, Dict

import redis

from .logging_config import get_logger

if TYPE_CHECKING:
    from ..services.memory_engine import MemoryEngine

logger = get_logger(__name__)


def check_health(engine: 'MemoryEngine') -> bool:
    """Check the health of all engine backends.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(engine)

    all_healthy = all(status.get('healthy', False) for status in health_status.values())
    if all_healthy:
        logger.info('All engine components are healthy')
    else:
        logger.warning('Some engine components are unhealthy')

    return all_healthy


def get_health_status(engine: 'MemoryEngine') -> Dict[str, Any]:
    """Get detailed health status of each backend.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    try:
        health_status['redis'] = {'healthy': bool(engine.redis.ping()), 'service': 'Redis'}
    except redis.RedisError as e:
        health_status['redis'] = {'healthy': False, 'service': 'Redis', 'error': str(e)}

    health_status['bedrock_embed'] = {
        'healthy': engine.embedder.health_check(),
        'service': 'Amazon Bedrock Embed',
        'model': engine.config.bedrock_embed.model_id
    }

    health_status['opensearch'] = {
        'healthy': engine.index.health_check(),
        'service': 'Amazon OpenSearch',
        'endpoint': engine.config.opensearch.endpoint
    }

    if engine.llm is not None:
        health_status['bedrock_llm'] = {
            'healthy': engine.llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': engine.config.bedrock_llm.model_id
        }

    return health_status
