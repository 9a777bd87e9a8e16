"""
History Store: ranked, trimmed dialogue log per conversation.

Each conversation lives in a Redis sorted set. Ranks come from a per-partition
counter (``<key>:seq``) so entries written by concurrent turns never share a
rank. Members are stored as ``<rank>|<line>`` which keeps repeated lines
(e.g. two identical prompts) as distinct entries.
"""

from typing import List, Optional

import redis

from ..models.core import ConversationKey, HistoryEntry
from ..utils.config import HistoryConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

MEMBER_SEPARATOR = '|'


class HistoryStoreError(Exception):
    """Raised when the history backend cannot be reached or rejects a write."""
    pass


def _encode_member(rank: int, line: str) -> str:
    return f'{rank}{MEMBER_SEPARATOR}{line}'


def _decode_member(member: str, score: float) -> HistoryEntry:
    prefix, sep, line = member.partition(MEMBER_SEPARATOR)
    if not sep or not prefix.isdigit():
        # Entry written without a rank prefix
        return HistoryEntry(rank=int(score), line=member)
    return HistoryEntry(rank=int(score), line=line)


class HistoryStore:
    """Short-term conversation memory backed by Redis sorted sets."""

    def __init__(self, client: redis.Redis, config: HistoryConfig):
        """
        Initialize the history store.

        Args:
            client: Redis client (decode_responses=True)
            config: HistoryConfig with read window and trim size
        """
        self.redis = client
        self.config = config

    @staticmethod
    def _seq_key(key: str) -> str:
        return f'{key}:seq'

    def append(self, conversation: ConversationKey, line: str) -> bool:
        """
        Append one line to the conversation.

        Args:
            conversation: Conversation partition
            line: Role-prefixed dialogue line

        Returns:
            True when written, False when the conversation has no user

        Raises:
            HistoryStoreError: If Redis fails
        """
        if not conversation.has_user:
            logger.debug('Skipping history write for conversation without user id')
            return False

        key = conversation.storage_key()
        try:
            rank = self.redis.incr(self._seq_key(key))
            self.redis.zadd(key, {_encode_member(rank, line): rank})
        except redis.RedisError as e:
            logger.error(f'Failed to append history for {key}: {e}')
            raise HistoryStoreError(f'History append failed: {e}')

        return True

    def read_entries(self, conversation: ConversationKey, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Return the last ``limit`` entries, oldest first."""
        if limit is None:
            limit = self.config.read_window
        if limit < 0:
            raise ValueError(f'limit must not be negative, got {limit}')
        # zrange(key, -0, -1) would return the whole partition
        if limit == 0 or not conversation.has_user:
            return []

        key = conversation.storage_key()
        try:
            members = self.redis.zrange(key, -limit, -1, withscores=True)
        except redis.RedisError as e:
            logger.error(f'Failed to read history for {key}: {e}')
            raise HistoryStoreError(f'History read failed: {e}')

        return [_decode_member(member, score) for member, score in members]

    def read_recent(self, conversation: ConversationKey, limit: Optional[int] = None) -> str:
        """
        Read the most recent lines joined by newline.

        Args:
            conversation: Conversation partition
            limit: Window size (defaults to the configured read window)

        Returns:
            Newline-joined lines oldest first, or '' if there are none
        """
        return '\n'.join(entry.line for entry in self.read_entries(conversation, limit))

    def seed_if_empty(self, conversation: ConversationKey, seed_text: str, delimiter: str = '\n') -> bool:
        """
        Write the companion's seed dialogue into an empty conversation.

        The emptiness check and the writes run in one WATCH/MULTI transaction;
        if another writer touches the partition in between, the seed is dropped
        rather than duplicated.

        Returns:
            True if the seed was written
        """
        if not seed_text:
            return False

        key = conversation.storage_key()
        seq_key = self._seq_key(key)
        lines = [line for line in seed_text.split(delimiter) if line.strip()]
        if not lines:
            return False

        try:
            with self.redis.pipeline() as pipe:
                try:
                    pipe.watch(key, seq_key)
                    if pipe.exists(key):
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.zadd(key, {_encode_member(rank, line): rank for rank, line in enumerate(lines)})
                    pipe.set(seq_key, len(lines) - 1)
                    pipe.execute()
                except redis.WatchError:
                    logger.info(f'Concurrent write during seed of {key}, skipping seed')
                    return False
        except redis.RedisError as e:
            logger.error(f'Failed to seed history for {key}: {e}')
            raise HistoryStoreError(f'History seed failed: {e}')

        logger.debug(f'Seeded {len(lines)} lines into {key}')
        return True

    def trim_to(self, conversation: ConversationKey, max_items: Optional[int] = None) -> None:
        """Drop everything but the newest ``max_items`` entries; 0 clears the conversation."""
        if max_items is None:
            max_items = self.config.trim_size
        if max_items < 0:
            raise ValueError(f'max_items must not be negative, got {max_items}')
        key = conversation.storage_key()
        try:
            self.redis.zremrangebyrank(key, 0, -max_items - 1)
        except redis.RedisError as e:
            logger.error(f'Failed to trim history for {key}: {e}')
            raise HistoryStoreError(f'History trim failed: {e}')
