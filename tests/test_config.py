"""Tests for configuration loading and validation."""

import pytest

from companion_memory.utils.config import ConfigurationError, load_config, validate_config


@pytest.fixture
def configured_env(monkeypatch):
    monkeypatch.setenv('REDIS_URL', 'redis://localhost:6379/0')
    monkeypatch.setenv('OPENSEARCH_ENDPOINT', 'https://search.example.com')


def test_defaults(configured_env):
    config = load_config()

    assert config.history.read_window == 30
    assert config.embedding_cache.ttl_seconds == 3600
    assert config.retrieval.top_k == 3
    assert config.rate_limit.max_requests == 10
    assert config.rate_limit.window_seconds == 3
    assert config.rate_limit.local_cache_ttl == 5
    assert config.rate_limit.timeout_seconds == 0.5
    assert config.rate_limit.fail_open is True
    validate_config(config)


def test_environment_overrides(configured_env, monkeypatch):
    monkeypatch.setenv('HISTORY_TRIM_SIZE', '10')
    monkeypatch.setenv('RATE_LIMIT_FAIL_OPEN', 'false')

    config = load_config()

    assert config.history.trim_size == 10
    assert config.rate_limit.fail_open is False


def test_missing_backends_are_reported(monkeypatch):
    monkeypatch.setenv('REDIS_URL', '')
    monkeypatch.setenv('OPENSEARCH_ENDPOINT', '')

    with pytest.raises(ConfigurationError) as excinfo:
        validate_config(load_config())

    assert 'REDIS_URL' in str(excinfo.value)
    assert 'OPENSEARCH_ENDPOINT' in str(excinfo.value)


def test_non_positive_windows_are_rejected(configured_env, monkeypatch):
    monkeypatch.setenv('HISTORY_READ_WINDOW', '0')

    with pytest.raises(ConfigurationError):
        validate_config(load_config())
