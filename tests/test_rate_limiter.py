"""Tests for the sliding-window rate limiter."""

import logging
import threading
import time
from dataclasses import replace
from unittest import mock

import pytest
import redis

from companion_memory.services.rate_limiter import FailMode, RateLimiter, make_identifier
from companion_memory.utils.config import load_config


@pytest.fixture
def limiter(redis_client, rate_limit_config, clock):
    limiter = RateLimiter(redis_client, rate_limit_config, clock=clock)
    yield limiter
    limiter.close()


def _failing_client(error=None):
    client = mock.MagicMock()
    client.pipeline.side_effect = error or redis.ConnectionError('connection refused')
    return client


def test_sixth_request_in_window_is_denied(limiter, clock):
    decisions = []
    for _ in range(6):
        decisions.append(limiter.check('/api/chat-user-1'))
        clock.advance(1)

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0, 0]


def test_requests_admitted_again_after_window(limiter, clock):
    for _ in range(5):
        limiter.check('/api/chat-user-1')
    assert limiter.check('/api/chat-user-1').allowed is False

    clock.advance(61)

    assert limiter.check('/api/chat-user-1').allowed is True


def test_window_slides_rather_than_resetting(limiter, clock):
    limiter.check('/api/chat-user-1')
    clock.advance(30)
    for _ in range(4):
        limiter.check('/api/chat-user-1')
    assert limiter.check('/api/chat-user-1').allowed is False

    # Only the first admission has aged out
    clock.advance(31)
    assert limiter.check('/api/chat-user-1').allowed is True
    assert limiter.check('/api/chat-user-1').allowed is False


def test_identifiers_are_counted_separately(limiter):
    for _ in range(5):
        limiter.check('/api/chat-user-1')

    assert limiter.check('/api/chat-user-1').allowed is False
    assert limiter.check('/api/chat-user-2').allowed is True


def test_reset_at_is_end_of_window_for_oldest_request(limiter, clock):
    first = limiter.check('/api/chat-user-1')

    assert first.reset_at == int(clock.now * 1000) + 60_000


def test_local_cache_skips_remote_counter(redis_client, rate_limit_config, clock):
    config = replace(rate_limit_config, local_cache_ttl=5)
    limiter = RateLimiter(redis_client, config, clock=clock)

    first = limiter.check('/api/chat-user-1')
    clock.advance(2)
    second = limiter.check('/api/chat-user-1')

    assert first.cached is False
    assert second.cached is True
    assert second.allowed is True
    assert second.remaining == first.remaining - 1
    assert redis_client.zcard('ratelimit:/api/chat-user-1') == 1

    # The cached admission is written along with the next remote check
    clock.advance(4)
    assert limiter.check('/api/chat-user-1').cached is False
    assert redis_client.zcard('ratelimit:/api/chat-user-1') == 3
    limiter.close()


def test_fails_open_when_store_unreachable(rate_limit_config, clock):
    limiter = RateLimiter(_failing_client(), rate_limit_config, clock=clock)

    decision = limiter.check('/api/chat-user-1')

    assert decision.allowed is True
    assert decision.remaining == 1
    limiter.close()


def test_fails_closed_when_configured(rate_limit_config, clock):
    limiter = RateLimiter(_failing_client(), rate_limit_config, clock=clock, fail_mode=FailMode.CLOSED)

    decision = limiter.check('/api/chat-user-1')

    assert decision.allowed is False
    assert decision.remaining == 0
    limiter.close()


def test_failure_decisions_are_not_cached(rate_limit_config, clock):
    client = _failing_client()
    limiter = RateLimiter(client, replace(rate_limit_config, local_cache_ttl=5), clock=clock)

    limiter.check('/api/chat-user-1')
    limiter.check('/api/chat-user-1')

    assert client.pipeline.call_count == 2
    limiter.close()


def test_remote_timeout_fails_open(rate_limit_config, clock):
    client = mock.MagicMock()

    def slow_pipeline(*args, **kwargs):
        time.sleep(0.3)
        raise redis.TimeoutError('too slow')

    client.pipeline.side_effect = slow_pipeline
    limiter = RateLimiter(client, replace(rate_limit_config, timeout_seconds=0.05), clock=clock)

    started = time.monotonic()
    decision = limiter.check('/api/chat-user-1')

    assert decision.allowed is True
    assert time.monotonic() - started < 0.25
    limiter.close()


def test_make_identifier_strips_query_string():
    assert make_identifier('https://app.example.com/api/chat/abc?x=1', 'user-1') == \
        'https://app.example.com/api/chat/abc-user-1'


def test_default_settings_hold_the_configured_rate(monkeypatch, redis_client, clock):
    for name in ('RATE_LIMIT_MAX_REQUESTS', 'RATE_LIMIT_WINDOW_SECONDS', 'RATE_LIMIT_LOCAL_CACHE_TTL'):
        monkeypatch.delenv(name, raising=False)
    config = load_config().rate_limit
    limiter = RateLimiter(redis_client, config, clock=clock)
    start = clock.now

    # 10 requests per second for 30 seconds against 10 per 3s
    admitted = []
    for i in range(300):
        clock.now = start + i / 10
        if limiter.check('/api/chat-user-1').allowed:
            admitted.append(int(clock.now * 1000))
    limiter.close()

    assert 80 <= len(admitted) <= 100
    window_ms = int(config.window_seconds * 1000)
    for at in admitted:
        in_window = [t for t in admitted if at - window_ms < t <= at]
        assert len(in_window) <= config.max_requests


def test_cached_denial_lasts_until_a_slot_frees(redis_client, rate_limit_config, clock):
    config = replace(rate_limit_config, window_seconds=10, local_cache_ttl=30)
    limiter = RateLimiter(redis_client, config, clock=clock)

    for _ in range(5):
        limiter.check('/api/chat-user-1')
        clock.advance(1)
    denied = limiter.check('/api/chat-user-1')
    clock.advance(1)
    repeated = limiter.check('/api/chat-user-1')

    assert denied.allowed is False
    assert (repeated.allowed, repeated.cached) == (False, True)

    clock.now = denied.reset_at / 1000
    assert limiter.check('/api/chat-user-1').allowed is True
    limiter.close()


def test_cache_ttl_never_exceeds_window(redis_client, rate_limit_config):
    limiter = RateLimiter(redis_client, replace(rate_limit_config, window_seconds=3, local_cache_ttl=5))

    assert limiter.cache_ttl == 3
    limiter.close()


def _pipeline_client(execute):
    client = mock.MagicMock()
    pipe = mock.MagicMock()
    pipe.execute.side_effect = execute
    client.pipeline.return_value.__enter__.return_value = pipe
    return client


def test_slow_check_is_logged_and_honored(rate_limit_config, clock, caplog):
    now_ms = int(clock.now * 1000)

    def slow_execute():
        time.sleep(0.1)
        return [0, 1, 1, [('member', float(now_ms))], 1]

    config = replace(rate_limit_config, timeout_seconds=0.5, slow_threshold_seconds=0.05)
    limiter = RateLimiter(_pipeline_client(slow_execute), config, clock=clock)

    with caplog.at_level(logging.WARNING, logger='companion_memory.services.rate_limiter'):
        decision = limiter.check('/api/chat-user-1')
    limiter.close()

    assert 'Slow rate limit check' in caplog.text
    assert decision.allowed is True
    assert decision.remaining == 4


def test_stuck_checks_do_not_pile_up(rate_limit_config, clock):
    release = threading.Event()

    def blocked_execute():
        release.wait(5)
        return [0, 1, 1, [], 1]

    client = _pipeline_client(blocked_execute)
    limiter = RateLimiter(client, replace(rate_limit_config, timeout_seconds=0.05), clock=clock, max_inflight=1)

    try:
        first = limiter.check('/api/chat-user-1')
        second = limiter.check('/api/chat-user-1')
    finally:
        release.set()
        limiter.close()

    assert first.allowed is True
    assert second.allowed is True
    assert client.pipeline.call_count == 1
