"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.

Stores the L2 graph: Character, Fact, Session and Turn vertices plus
RELATIONSHIP and HAS_TURN edges. Text matching uses lower-cased shadow
properties because Gremlin's TextP predicates are case-sensitive.
"""

import json
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Iterator, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import GraphTraversalSource, __
from gremlin_python.process.traversal import Cardinality, Order, TextP

from ..models.core import Character, FactNode, FactVersion, RelationshipEdge, Turn, VADState
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import to_datetime, to_seconds_str

logger = get_logger(__name__)


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _first(data: Dict[Any, Any], key: str, default: Any = None) -> Any:
    """Unwrap a value_map entry, which is a single-element list for vertex properties."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def _timestamp(data: Dict[Any, Any], key: str, fallback: Optional[datetime] = None) -> datetime:
    value = _first(data, key)
    if value in (None, ''):
        return fallback or datetime.fromtimestamp(0)
    return to_datetime(value)


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        headers = {}
        if self.config.use_iam_auth:
            credentials = Session().get_credentials()
            if credentials is None:
                raise NeptuneError('No AWS credentials found')
            creds = credentials.get_frozen_credentials()
            region = Session().region_name or self.config.region or 'us-east-1'

            # Signed request headers for the WebSocket handshake
            request = AWSRequest(method='GET', url=conn_string, data=None)
            SigV4Auth(creds, 'neptune-db', region).add_auth(request)
            headers = dict(request.headers.items())

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=headers,
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    @contextmanager
    def transaction(self) -> Iterator[GraphTraversalSource]:
        """Run several writes atomically.

        Yields a transaction-bound traversal source. The transaction commits
        when the block exits normally and rolls back on any exception.

        Raises:
            NeptuneError: If any statement or the commit fails
        """
        tx = self.g.tx()
        gtx = tx.begin()
        try:
            yield gtx
            tx.commit()
        except Exception as e:
            try:
                tx.rollback()
            except Exception as rollback_e:
                logger.error(f'Neptune rollback failed: {rollback_e}')
            logger.error(f'Neptune transaction rolled back: {e}')
            if isinstance(e, NeptuneError):
                raise
            raise NeptuneError(f'Transaction failed: {e}')

    def upsert_character(self, g: GraphTraversalSource, character_id: str, name: str, vad: VADState) -> None:
        """Create the Character vertex if missing and overwrite its emotional state (last write wins)."""
        now = to_seconds_str()
        g.V().has('Character', 'id', character_id).fold()\
            .coalesce(__.unfold(),
                      __.add_v('Character').property('id', character_id)
                      .property('name', name)
                      .property('name_lc', name.lower())
                      .property('created_at', now))\
            .property(Cardinality.single, 'valence', vad.valence)\
            .property(Cardinality.single, 'arousal', vad.arousal)\
            .property(Cardinality.single, 'dominance', vad.dominance)\
            .property(Cardinality.single, 'last_updated', now)\
            .next()
        logger.debug(f'Upserted character vertex: {character_id}')

    def create_fact(self, g: GraphTraversalSource, fact: FactNode, session_id: str, turn_id: str) -> None:
        history = [{'value': v.value, 'timestamp': to_seconds_str(v.timestamp), 'confidence': v.confidence} for v in fact.history]
        g.add_v('Fact').property('id', fact.id)\
            .property('entity', fact.entity)\
            .property('entity_lc', fact.entity.lower())\
            .property('attribute', fact.attribute)\
            .property('attribute_lc', fact.attribute.lower())\
            .property('current_value', fact.current_value)\
            .property('value_lc', fact.current_value.lower())\
            .property('history_json', json.dumps(history))\
            .property('importance_score', fact.importance_score)\
            .property('session_id', session_id)\
            .property('turn_id', turn_id)\
            .property('created_at', to_seconds_str(fact.created_at))\
            .property('last_updated', to_seconds_str(fact.last_updated))\
            .next()
        logger.debug(f'Created fact vertex: {fact.id}')

    def create_relationship(self, g: GraphTraversalSource, relationship: RelationshipEdge, session_id: str,
                            turn_id: str) -> bool:
        """Create a RELATIONSHIP edge between two existing Character vertices.

        Returns:
            True if the edge was created, False if either endpoint is missing
        """
        created = g.V().has('Character', 'id', relationship.from_entity).as_('from')\
            .V().has('Character', 'id', relationship.to_entity)\
            .add_e('RELATIONSHIP').from_('from')\
            .property('id', relationship.id)\
            .property('relationship_type', relationship.relationship_type)\
            .property('strength', relationship.strength)\
            .property('session_id', session_id)\
            .property('turn_id', turn_id)\
            .property('created_at', to_seconds_str(relationship.created_at))\
            .property('last_updated', to_seconds_str(relationship.last_updated))\
            .to_list()
        if created:
            logger.debug(f'Created relationship edge: {relationship.id}')
        return bool(created)

    def store_turn(self, g: GraphTraversalSource, turn: Turn, session_id: str, significance_score: float) -> None:
        """Store a Turn vertex and link it to its (upserted) Session vertex."""
        now = to_seconds_str()
        g.V().has('Session', 'id', session_id).fold()\
            .coalesce(__.unfold(), __.add_v('Session').property('id', session_id).property('created_at', now))\
            .property(Cardinality.single, 'last_updated', now).as_('s')\
            .add_v('Turn').property('id', turn.id)\
            .property('role', turn.role)\
            .property('content', turn.content)\
            .property('timestamp', to_seconds_str(turn.timestamp))\
            .property('tokens', turn.token_count)\
            .property('significance_score', significance_score)\
            .property('session_id', session_id).as_('t')\
            .add_e('HAS_TURN').from_('s').to('t')\
            .iterate()
        logger.debug(f'Stored turn vertex: {turn.id}')

    @retry_on_connection_error
    def find_characters(self, query_text: str, limit: int = 10) -> List[Character]:
        """Characters whose name contains the query text, most recently updated first."""
        rows = self.g.V().has_label('Character')\
            .has('name_lc', TextP.containing(query_text.lower()))\
            .order().by('last_updated', Order.desc)\
            .limit(limit)\
            .value_map(True).to_list()
        return [self._to_character(row) for row in rows]

    @retry_on_connection_error
    def find_facts(self, query_text: str, limit: int = 25) -> List[FactNode]:
        """Facts whose attribute, value or entity contains the query text."""
        needle = query_text.lower()
        rows = self.g.V().has_label('Fact')\
            .or_(__.has('attribute_lc', TextP.containing(needle)),
                 __.has('value_lc', TextP.containing(needle)),
                 __.has('entity_lc', TextP.containing(needle)))\
            .order().by('last_updated', Order.desc)\
            .limit(limit)\
            .value_map(True).to_list()
        return [self._to_fact(row) for row in rows]

    @retry_on_connection_error
    def find_relationships(self, query_text: str, limit: int = 10) -> List[RelationshipEdge]:
        """Relationships whose type or endpoint names contain the query text, strongest first."""
        needle = query_text.lower()
        rows = self.g.E().has_label('RELATIONSHIP')\
            .where(__.or_(__.has('relationship_type', TextP.containing(needle)),
                          __.out_v().has('name_lc', TextP.containing(needle)),
                          __.in_v().has('name_lc', TextP.containing(needle))))\
            .order().by('strength', Order.desc).by('last_updated', Order.desc)\
            .limit(limit)\
            .project('r', 'from_id', 'to_id')\
            .by(__.value_map(True))\
            .by(__.out_v().values('id'))\
            .by(__.in_v().values('id'))\
            .to_list()
        return [self._to_relationship(row['r'], row['from_id'], row['to_id']) for row in rows]

    @retry_on_connection_error
    def get_fact(self, fact_id: str) -> Optional[FactNode]:
        rows = self.g.V().has('Fact', 'id', fact_id).value_map(True).to_list()
        return self._to_fact(rows[0]) if rows else None

    @retry_on_connection_error
    def get_all_characters(self) -> List[Character]:
        rows = self.g.V().has_label('Character').order().by('name').value_map(True).to_list()
        return [self._to_character(row) for row in rows]

    @retry_on_connection_error
    def count_elements(self) -> Dict[str, int]:
        """Counts of characters, facts, relationships and stored turns."""
        return {
            'characters': int(self.g.V().has_label('Character').count().next()),
            'facts': int(self.g.V().has_label('Fact').count().next()),
            'relationships': int(self.g.E().has_label('RELATIONSHIP').count().next()),
            'conversation_turns': int(self.g.V().has_label('Turn').count().next())
        }

    @retry_on_connection_error
    def cleanup(self) -> bool:
        """
        Clean up all data from Neptune (vertices and edges).

        Returns:
            True if cleanup was successful
        """
        logger.info('Deleting all edges from Neptune...')
        self.g.E().drop().iterate()
        logger.info('Deleting all vertices from Neptune...')
        self.g.V().drop().iterate()
        return True

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy
        """
        self.g.V().limit(1).count().next()
        return True

    @staticmethod
    def _to_character(data: Dict[Any, Any]) -> Character:
        created_at = _timestamp(data, 'created_at')
        return Character(id=_first(data, 'id', ''),
                         name=_first(data, 'name', ''),
                         emotional_state=VADState(valence=float(_first(data, 'valence', 0.0)),
                                                  arousal=float(_first(data, 'arousal', 0.0)),
                                                  dominance=float(_first(data, 'dominance', 0.0))),
                         created_at=created_at,
                         last_updated=_timestamp(data, 'last_updated', created_at))

    @staticmethod
    def _to_fact(data: Dict[Any, Any]) -> FactNode:
        created_at = _timestamp(data, 'created_at')
        history = [
            FactVersion(value=entry['value'], timestamp=to_datetime(entry['timestamp']), confidence=entry.get('confidence'))
            for entry in json.loads(_first(data, 'history_json', '[]'))
        ]
        return FactNode(id=_first(data, 'id', ''),
                        entity=_first(data, 'entity', ''),
                        attribute=_first(data, 'attribute', ''),
                        current_value=_first(data, 'current_value', ''),
                        history=history,
                        importance_score=float(_first(data, 'importance_score', 0.0)),
                        created_at=created_at,
                        last_updated=_timestamp(data, 'last_updated', created_at))

    @staticmethod
    def _to_relationship(data: Dict[Any, Any], from_id: str, to_id: str) -> RelationshipEdge:
        created_at = _timestamp(data, 'created_at')
        return RelationshipEdge(id=_first(data, 'id', ''),
                                from_entity=from_id,
                                to_entity=to_id,
                                relationship_type=_first(data, 'relationship_type', ''),
                                strength=float(_first(data, 'strength', 0.0)),
                                created_at=created_at,
                                last_updated=_timestamp(data, 'last_updated', created_at))
