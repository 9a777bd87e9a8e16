"""
Rate Limiter: sliding-window admission control shared across service instances.

Admissions are logged in a Redis sorted set per identifier (score = request
time in ms). A short-lived local decision cache sits in front of Redis:

- an allow carries the remaining budget from the last remote check; cached
  allows spend that budget and are written to Redis with the next remote
  check, so the window still sees every admission;
- a denial is reused until the window frees a slot.

Neither is trusted longer than ``min(local_cache_ttl, window_seconds)``, so a
caller may see a verdict that stale.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

import redis

from ..models.core import RateLimitDecision
from ..utils.config import RateLimitConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_millis

logger = get_logger(__name__)


class FailMode(Enum):
    """What to answer when the counter store is unavailable."""
    OPEN = 'open'
    CLOSED = 'closed'


def make_identifier(route: str, user_id: str) -> str:
    """Build the limiter identifier for a route and caller."""
    return f"{route.split('?', 1)[0]}-{user_id}"


@dataclass
class _LocalEntry:
    decision: RateLimitDecision
    expires_at: float


class RateLimiter:
    """Sliding-window limiter over Redis with a local decision cache."""

    def __init__(self,
                 client: redis.Redis,
                 config: RateLimitConfig,
                 clock: Callable[[], float] = time.time,
                 fail_mode: Optional[FailMode] = None,
                 max_inflight: int = 8):
        """
        Initialize the rate limiter.

        Args:
            client: Redis client holding the shared counters; its socket timeout
                should not exceed ``config.timeout_seconds``
            config: RateLimitConfig with window, limit and timeouts
            clock: Returns the current time in seconds
            fail_mode: Overrides the fail-open setting from config
            max_inflight: Remote checks allowed to run at once; further checks
                are answered with the failure decision
        """
        self.redis = client
        self.config = config
        self.clock = clock
        self.fail_mode = fail_mode or (FailMode.OPEN if config.fail_open else FailMode.CLOSED)
        self.cache_ttl = min(config.local_cache_ttl, config.window_seconds)

        self._local: Dict[str, _LocalEntry] = {}
        self._pending: Dict[str, List[int]] = {}
        self._lock = threading.Lock()
        self._max_inflight = max_inflight
        self._inflight = 0
        self._executor = ThreadPoolExecutor(max_workers=max_inflight, thread_name_prefix='ratelimit')

    def check(self, identifier: str) -> RateLimitDecision:
        """
        Decide whether one more request from ``identifier`` is admitted.

        Args:
            identifier: Route-and-user identifier, see make_identifier

        Returns:
            RateLimitDecision; cached=True when served locally
        """
        now = self.clock()

        cached = self._cached_decision(identifier, now)
        if cached is not None:
            return cached

        with self._lock:
            if self._inflight >= self._max_inflight:
                saturated = True
            else:
                saturated = False
                self._inflight += 1
                pending = self._pending.pop(identifier, [])
        if saturated:
            logger.error(f'Too many rate limit checks in flight, skipping remote check for {identifier}')
            return self._failure_decision(identifier, now)

        started = time.monotonic()
        try:
            future = self._executor.submit(self._remote_check, identifier, now, pending)
            future.add_done_callback(self._release_slot)
            decision = future.result(timeout=self.config.timeout_seconds)
        except FuturesTimeoutError:
            logger.error(f'Rate limit check for {identifier} timed out after {self.config.timeout_seconds}s')
            return self._failure_decision(identifier, now)
        except redis.RedisError as e:
            logger.error(f'Rate limit error for {identifier}: {e}')
            return self._failure_decision(identifier, now)

        elapsed = time.monotonic() - started
        if elapsed > self.config.slow_threshold_seconds:
            logger.warning(f'Slow rate limit check for {identifier}: {elapsed * 1000:.0f}ms')

        expires_at = now + self.cache_ttl
        if not decision.allowed:
            expires_at = min(expires_at, decision.reset_at / 1000)
        with self._lock:
            self._local[identifier] = _LocalEntry(decision=decision, expires_at=expires_at)
        return decision

    def _release_slot(self, _future) -> None:
        with self._lock:
            self._inflight -= 1

    def _cached_decision(self, identifier: str, now: float) -> Optional[RateLimitDecision]:
        with self._lock:
            entry = self._local.get(identifier)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._local[identifier]
                return None

            decision = entry.decision
            if decision.allowed:
                if decision.remaining <= 0:
                    # Budget spent, only Redis can say whether a slot freed up
                    del self._local[identifier]
                    return None
                decision = replace(decision, remaining=decision.remaining - 1)
                entry.decision = decision
                self._pending.setdefault(identifier, []).append(to_millis(now))
        return replace(decision, cached=True)

    def _remote_check(self, identifier: str, now: float, pending: List[int]) -> RateLimitDecision:
        key = f'{self.config.key_prefix}:{identifier}'
        now_ms = to_millis(now)
        window_ms = int(self.config.window_seconds * 1000)
        member = f'{now_ms}-{uuid.uuid4().hex}'

        admissions = {f'{ts}-{uuid.uuid4().hex}': ts for ts in pending if ts > now_ms - window_ms}
        admissions[member] = now_ms

        with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zadd(key, admissions)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.pexpire(key, window_ms)
            _, _, count, oldest, _ = pipe.execute()

        allowed = count <= self.config.max_requests
        if not allowed:
            # Denied requests do not occupy the window
            self.redis.zrem(key, member)
            count -= 1

        oldest_ms = int(oldest[0][1]) if oldest else now_ms
        return RateLimitDecision(identifier=identifier,
                                 allowed=allowed,
                                 remaining=max(0, self.config.max_requests - count),
                                 reset_at=oldest_ms + window_ms)

    def _failure_decision(self, identifier: str, now: float) -> RateLimitDecision:
        reset_at = to_millis(now) + int(self.config.window_seconds * 1000)
        if self.fail_mode is FailMode.OPEN:
            logger.warning(f'Counter store unavailable, failing open for {identifier}')
            return RateLimitDecision(identifier=identifier, allowed=True, remaining=1, reset_at=reset_at)

        logger.warning(f'Counter store unavailable, failing closed for {identifier}')
        return RateLimitDecision(identifier=identifier, allowed=False, remaining=0, reset_at=reset_at)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
