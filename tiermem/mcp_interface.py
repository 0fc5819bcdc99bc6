"""
MCP Interface Layer exposing the memory engine as fastmcp tools.
"""
import threading
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .models.core import FusionWeights, RetrievalQuery, new_turn
from .services.memory_controller import MemoryController, MemoryControllerError, build_memory_controller
from .utils.config import ConfigurationError, config
from .utils.json_utils import to_jsonable
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Tiered Memory')

_controller: Optional[MemoryController] = None
_controller_lock = threading.Lock()


def get_controller() -> MemoryController:
    """Return the process-wide controller, connecting to the stores on first use."""
    global _controller
    with _controller_lock:
        if _controller is None:
            _controller = build_memory_controller(config)
        return _controller


def set_controller(controller: Optional[MemoryController]) -> None:
    global _controller
    with _controller_lock:
        _controller = controller


def _weights(w_l1: Optional[float], w_l2: Optional[float], w_l3: Optional[float]) -> Optional[FusionWeights]:
    if w_l1 is None and w_l2 is None and w_l3 is None:
        return None
    if w_l1 is None or w_l2 is None or w_l3 is None:
        raise ToolError('Provide all three fusion weights or none')
    return FusionWeights(w_L1=w_l1, w_L2=w_l2, w_L3=w_l3)


def _require(value: str, name: str) -> str:
    if not value or not value.strip():
        raise ToolError(f'{name} is required')
    return value


@mcp.tool()
def ingest_turn(session_id: str,
                role: str,
                content: str,
                character_id: Optional[str] = None,
                token_count: Optional[int] = None) -> Dict[str, Any]:
    """Ingest a conversation turn into memory.

    Args:
        session_id: Conversation session ID
        role: user, assistant or system
        content: Turn text
        character_id: Optional owning character
        token_count: Token count (estimated from the text if omitted)

    Returns:
        Ingestion result with significance score and operations performed
    """
    _require(session_id, 'Session ID')
    try:
        turn = new_turn(role, content, token_count=token_count, character_id=character_id)
    except ValueError as e:
        raise ToolError(str(e))

    result = get_controller().ingest_conversation_turn(turn, session_id=session_id)
    logger.debug(f'MCP ingest for session {session_id}: success={result.success}, '
                 f'score={result.significance_score:.2f}')
    return to_jsonable(result)


@mcp.tool()
def retrieve_context(session_id: str,
                     query: str,
                     w_l1: Optional[float] = None,
                     w_l2: Optional[float] = None,
                     w_l3: Optional[float] = None,
                     max_tokens: Optional[int] = None,
                     min_relevance_threshold: Optional[float] = None,
                     character_id: Optional[str] = None,
                     auto_weights: bool = False) -> Dict[str, Any]:
    """Retrieve fused context from all memory tiers.

    Args:
        session_id: Conversation session ID
        query: Natural language query
        w_l1, w_l2, w_l3: Fusion weights (configured defaults if omitted)
        max_tokens: Token budget for the returned context
        min_relevance_threshold: Drop tiers scoring below this relevance
        character_id: Narrow graph and vector results to one character
        auto_weights: Pick weights from the query wording instead of the defaults

    Returns:
        Fused retrieval result
    """
    _require(session_id, 'Session ID')
    controller = get_controller()
    weights = _weights(w_l1, w_l2, w_l3)
    if weights is None and auto_weights:
        weights = controller.suggest_fusion_weights(query)

    try:
        result = controller.retrieve_relevant_context(
            RetrievalQuery(query_text=query,
                           session_id=session_id,
                           fusion_weights=weights,
                           max_tokens=max_tokens,
                           min_relevance_threshold=min_relevance_threshold,
                           character_id=character_id))
    except ConfigurationError as e:
        raise ToolError(f'Invalid retrieval request: {e}')
    return to_jsonable(result, exclude={'embedding'})


@mcp.tool()
def get_chat_history(session_id: str) -> List[Dict[str, Any]]:
    """Turns currently held in working memory for a session, oldest first."""
    return to_jsonable(get_controller().get_chat_history(_require(session_id, 'Session ID')))


@mcp.tool()
def list_sessions() -> List[Dict[str, Any]]:
    """Active sessions, most recent first."""
    return to_jsonable(get_controller().get_all_sessions())


@mcp.tool()
def get_all_characters() -> List[Dict[str, Any]]:
    """All characters in graph memory with their emotional state."""
    try:
        return to_jsonable(get_controller().get_all_characters())
    except MemoryControllerError as e:
        logger.error(f'Memory error in MCP get_all_characters: {e}')
        raise ToolError(f'Character listing failed: {e}')


@mcp.tool()
def get_fact_with_history(fact_id: str) -> Optional[Dict[str, Any]]:
    """A fact and its recorded value history, or null when unknown."""
    try:
        return to_jsonable(get_controller().get_fact_with_history(_require(fact_id, 'Fact ID')))
    except MemoryControllerError as e:
        logger.error(f'Memory error in MCP get_fact_with_history: {e}')
        raise ToolError(f'Fact lookup failed: {e}')


@mcp.tool()
def inspect_memory() -> Dict[str, Any]:
    """Per-tier snapshot plus the active configuration."""
    return to_jsonable(get_controller().inspect_memory_state())


@mcp.tool()
def memory_statistics() -> Dict[str, Any]:
    """Aggregate counts for every tier."""
    return to_jsonable(get_controller().get_memory_statistics())


@mcp.tool()
def prune_memory(max_fragments: Optional[int] = None) -> Dict[str, int]:
    """Prune the vector archive down to max_fragments (configured cap by default)."""
    try:
        return get_controller().prune_memory(max_fragments)
    except (ConfigurationError, MemoryControllerError) as e:
        raise ToolError(f'Prune failed: {e}')


@mcp.tool()
def estimate_token_cost(session_id: str,
                        query: str,
                        w_l1: Optional[float] = None,
                        w_l2: Optional[float] = None,
                        w_l3: Optional[float] = None) -> Dict[str, Any]:
    """Tokens and cost the retrieved context for a query would add to a prompt."""
    _require(session_id, 'Session ID')
    try:
        cost = get_controller().estimate_token_cost(
            RetrievalQuery(query_text=query, session_id=session_id, fusion_weights=_weights(w_l1, w_l2, w_l3)))
    except ConfigurationError as e:
        raise ToolError(f'Invalid estimate request: {e}')
    return to_jsonable(cost)


@mcp.tool()
def update_fusion_weights(w_l1: float, w_l2: float, w_l3: float) -> Dict[str, Any]:
    """Replace the default fusion weights."""
    try:
        updated = get_controller().update_fusion_weights(FusionWeights(w_L1=w_l1, w_L2=w_l2, w_L3=w_l3))
    except ConfigurationError as e:
        raise ToolError(f'Invalid fusion weights: {e}')
    return {'version': updated.version, 'default_fusion_weights': to_jsonable(updated.default_fusion_weights)}


@mcp.tool()
def update_significance_threshold(threshold: float) -> Dict[str, Any]:
    """Replace the L2 significance threshold (0-10)."""
    try:
        updated = get_controller().update_significance_threshold(threshold)
    except ConfigurationError as e:
        raise ToolError(f'Invalid significance threshold: {e}')
    return {'version': updated.version, 'l2_significance_threshold': updated.l2_significance_threshold}


@mcp.tool()
def health() -> Dict[str, Any]:
    """Health of the graph store, vector index and embedding function."""
    return get_controller().health()


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
