"""
MCP interface layer using fastmcp to expose the memory engine.
"""
from typing import Any, Dict, List, Tuple

from fastmcp import FastMCP

from .models.core import Companion, ConversationKey
from .services.chat_turn import ChatTurnError, friendly_error_message
from .services.history_store import HistoryStoreError
from .services.memory_engine import MemoryEngine
from .utils.bedrock_llm import BedrockLLMError
from .utils.config import load_config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger

logger = get_logger(__name__)

CHAT_ROUTE = '/mcp/chat'


def create_server(engine: MemoryEngine) -> FastMCP:
    """Build the MCP server around an already constructed engine."""
    mcp = FastMCP('Companion Memory')
    chat_service = engine.chat_service()

    @mcp.tool()
    def chat(user_id: str,
             companion_id: str,
             companion_name: str,
             instruction: str,
             seed: str,
             prompt: str,
             language: str = 'English') -> Dict[str, Any]:
        """Send a prompt to a companion and get its reply.

        Args:
            user_id: Authenticated user ID
            companion_id: Companion ID
            companion_name: Companion display name
            instruction: Companion persona instruction
            seed: Seed dialogue used for a new conversation
            prompt: User message
            language: Language the companion should reply in

        Returns:
            Dict with 'status' and either 'reply' or 'error'
        """
        companion = Companion(id=companion_id, name=companion_name, instruction=instruction, seed=seed)
        try:
            result = chat_service.run(CHAT_ROUTE, user_id, companion, prompt, language=language)
            return {'status': 200, 'reply': result.reply}
        except (ChatTurnError, HistoryStoreError, BedrockLLMError) as e:
            logger.error(f'Chat turn failed for user {user_id}: {e}')
            status, message = friendly_error_message(e)
            return {'status': status, 'error': message}

    @mcp.tool()
    def search_companion_memories(companion_id: str, context: str, top_k: int = 3) -> List[Tuple[str, float]]:
        """Search a companion's knowledge for passages similar to the context.

        Args:
            companion_id: Companion ID
            context: Natural language context
            top_k: Maximum number of results to return (default: 3)

        Returns:
            List of tuples (content, score)
        """
        scope = Companion(id=companion_id, name='', instruction='', seed='').scope_id
        results = engine.retriever.search(context, scope, top_k)
        logger.debug(f'MCP search returned {len(results)} passages for companion {companion_id}')
        return [(result.content, result.score) for result in results]

    @mcp.tool()
    def read_conversation_history(user_id: str, companion_id: str, limit: int = 30) -> str:
        """Read the most recent lines of a conversation, oldest first."""
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')
        key = ConversationKey(entity_id=companion_id, model_name=engine.config.history.model_name, user_id=user_id)
        return engine.history.read_recent(key, limit)

    @mcp.tool()
    def health() -> Dict[str, Any]:
        """Report the health of every backend."""
        return get_health_status(engine)

    return mcp


if __name__ == '__main__':
    config = load_config()
    server = create_server(MemoryEngine.from_config(config))
    server.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
