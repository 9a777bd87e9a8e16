"""Shared fixtures for the memory engine tests."""

import fakeredis
import pytest

from companion_memory.models.core import ConversationKey
from companion_memory.utils.config import (EmbeddingCacheConfig, HistoryConfig, RateLimitConfig)


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def history_config():
    return HistoryConfig(read_window=30, trim_size=10, model_name='test-model')


@pytest.fixture
def cache_config():
    return EmbeddingCacheConfig(ttl_seconds=3600, key_prefix='embed')


@pytest.fixture
def rate_limit_config():
    return RateLimitConfig(max_requests=5,
                           window_seconds=60,
                           local_cache_ttl=0,
                           timeout_seconds=0.5,
                           slow_threshold_seconds=0.3,
                           fail_open=True,
                           key_prefix='ratelimit')


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conversation():
    return ConversationKey(entity_id='companion-1', model_name='test-model', user_id='user-1')
