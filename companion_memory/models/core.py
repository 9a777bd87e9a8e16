"""
Core data models for the conversational memory engine.
"""

from dataclasses import dataclass, field
from typing import Any, Dict
from urllib.parse import quote

USER_PREFIX = 'User:'
AI_PREFIX = 'AI:'

KEY_SEPARATOR = ':'


@dataclass(frozen=True)
class ConversationKey:
    """Identifies one user's memory partition with one companion under one model.

    Field values are percent-encoded when the storage key is built, so a
    separator inside a field can never make two keys collide.
    """
    entity_id: str
    model_name: str
    user_id: str

    def storage_key(self, prefix: str = 'history') -> str:
        parts = [prefix] + [quote(value or '', safe='') for value in (self.entity_id, self.model_name, self.user_id)]
        return KEY_SEPARATOR.join(parts)

    @property
    def has_user(self) -> bool:
        return bool(self.user_id and self.user_id.strip())


@dataclass
class HistoryEntry:
    """A single ranked dialogue line, e.g. 'User: hello'."""
    rank: int
    line: str


@dataclass
class Companion:
    """Companion metadata supplied by the external metadata store."""
    id: str
    name: str
    instruction: str
    seed: str

    @property
    def scope_id(self) -> str:
        # Ingested companion files are tagged with '<id>.txt'
        return f'{self.id}.txt'


@dataclass
class SearchResult:
    """A passage returned by similarity search."""
    content: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RateLimitDecision:
    """Admission verdict for one caller-and-route identifier."""
    identifier: str
    allowed: bool
    remaining: int
    reset_at: int  # epoch milliseconds
    cached: bool = False
