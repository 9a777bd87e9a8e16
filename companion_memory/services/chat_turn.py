"""
Chat turn orchestration: rate limit, memory, retrieval and reply generation for one prompt.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from ..models.core import AI_PREFIX, USER_PREFIX, Companion, ConversationKey, RateLimitDecision, SearchResult
from ..utils.logging_config import get_logger
from .history_store import HistoryStore
from .rate_limiter import RateLimiter, make_identifier
from .vector_retriever import VectorRetriever

logger = get_logger(__name__)

SEED_DELIMITER = '\n\n'
NO_CONTEXT = 'No additional context available.'

SYSTEM_PROMPT_TEMPLATE = """You are {name}.
{instruction}

Your persona and conversational style are critical. Maintain a consistent tone as described in your instructions.
Always respond in {language}.

Here is relevant context from past conversations or knowledge base:
{context}

Remember to keep responses natural, engaging, and aligned with your persona."""


class ChatTurnError(Exception):
    """Base class for failures that abort a chat turn."""
    status = 500


class InvalidRequestError(ChatTurnError):
    status = 400


class UnauthorizedError(ChatTurnError):
    status = 401


class RateLimitExceededError(ChatTurnError):
    status = 429

    def __init__(self, decision: RateLimitDecision):
        super().__init__(f'Rate limit exceeded for {decision.identifier}')
        self.decision = decision


class ReplyGenerator(Protocol):

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          on_token: Optional[Callable[[str], None]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        ...


class MessageSink(Protocol):
    """Receives message rows for display history (persisted elsewhere)."""

    def record(self, user_id: str, companion_id: str, role: str, content: str) -> None:
        ...


@dataclass
class ChatTurnResult:
    reply: str
    context: List[SearchResult] = field(default_factory=list)
    rate_limit: Optional[RateLimitDecision] = None


def friendly_error_message(error: Exception) -> Tuple[int, str]:
    """Map a failure to an HTTP status and a short message safe to show the user."""
    status = getattr(error, 'status', None)
    if not isinstance(status, int):
        status = 500

    if status == 503:
        return status, "I'm a bit overwhelmed right now. Please try asking again in a minute."
    if status == 429:
        return status, "You're sending too many messages. Please wait a moment before trying again."
    if status == 401:
        return status, 'Please sign in to continue the conversation.'
    if 400 <= status < 500:
        return status, 'There was a problem with your request. Please check your input and try again.'
    return status, "I'm having trouble connecting to my brain. Please try again soon!"


def history_to_messages(history: str) -> List[Dict[str, Any]]:
    """Convert 'User:'/'AI:' lines into Bedrock Converse messages.

    Unprefixed lines continue the previous message, consecutive lines from the
    same role are merged and the conversation always starts with the user.
    """
    messages: List[Dict[str, Any]] = []
    for line in history.split('\n'):
        if not line.strip():
            continue
        if line.startswith(USER_PREFIX):
            role, text = 'user', line[len(USER_PREFIX):].strip()
        elif line.startswith(AI_PREFIX):
            role, text = 'assistant', line[len(AI_PREFIX):].strip()
        elif messages:
            role, text = messages[-1]['role'], line.strip()
        else:
            continue

        if messages and messages[-1]['role'] == role:
            messages[-1]['content'][0]['text'] += '\n' + text
        else:
            messages.append({'role': role, 'content': [{'text': text}]})

    while messages and messages[0]['role'] != 'user':
        messages.pop(0)
    return messages


def build_system_prompt(companion: Companion, context: List[SearchResult], language: str = 'English') -> str:
    relevant = '\n'.join(result.content for result in context)
    return SYSTEM_PROMPT_TEMPLATE.format(name=companion.name,
                                         instruction=companion.instruction,
                                         language=language,
                                         context=relevant or NO_CONTEXT)


class ChatTurnService:
    """Runs one chat turn against the memory engine and the reply generator."""

    def __init__(self,
                 history: HistoryStore,
                 retriever: VectorRetriever,
                 rate_limiter: RateLimiter,
                 llm: ReplyGenerator,
                 model_name: str,
                 sink: Optional[MessageSink] = None):
        self.history = history
        self.retriever = retriever
        self.rate_limiter = rate_limiter
        self.llm = llm
        self.model_name = model_name
        self.sink = sink

    def run(self,
            route: str,
            user_id: str,
            companion: Companion,
            prompt: str,
            language: str = 'English',
            on_token: Optional[Callable[[str], None]] = None) -> ChatTurnResult:
        """
        Answer ``prompt`` as ``companion`` for ``user_id``.

        Raises:
            InvalidRequestError: If the prompt is blank
            UnauthorizedError: If there is no user id
            RateLimitExceededError: If the caller is throttled
            HistoryStoreError: If conversation memory cannot be read or written
            BedrockLLMError: If reply generation fails
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidRequestError('Invalid prompt')
        if not user_id or not user_id.strip():
            raise UnauthorizedError('Unauthorized')
        prompt = prompt.strip()

        decision = self.rate_limiter.check(make_identifier(route, user_id))
        if not decision.allowed:
            raise RateLimitExceededError(decision)

        key = ConversationKey(entity_id=companion.id, model_name=self.model_name, user_id=user_id)

        if not self.history.read_recent(key):
            self.history.seed_if_empty(key, companion.seed, SEED_DELIMITER)

        self.history.append(key, f'{USER_PREFIX} {prompt}')
        self._record(user_id, companion, 'user', prompt)

        recent = self.history.read_recent(key)
        context = self.retriever.search(recent, companion.scope_id)
        logger.debug(f'Retrieved {len(context)} passages for {companion.id}')

        reply, _ = self.llm.generate_response(messages=history_to_messages(recent),
                                              system_prompt=build_system_prompt(companion, context, language),
                                              on_token=on_token)
        reply = reply.strip()

        self.history.append(key, f'{AI_PREFIX} {reply}')
        self.history.trim_to(key)
        self._record(user_id, companion, 'system', reply)

        return ChatTurnResult(reply=reply, context=context, rate_limit=decision)

    def _record(self, user_id: str, companion: Companion, role: str, content: str) -> None:
        if self.sink is not None:
            self.sink.record(user_id, companion.id, role, content)
