"""
L2 Graph Memory: durable characters, facts, relationships and turn records.
"""

import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, List, Optional

from ..models.core import (Character, DetectedEvent, EventDetectionResult, FactNode, FactVersion, GraphIngestionResult,
                           L2RetrievalResult, MemoryOperation, RelationshipEdge, RetrievalQuery, Turn)
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneError
from .significance_scorer import character_id_for

logger = get_logger(__name__)

CHARACTER_LIMIT = 10
FACT_LIMIT = 25
RELATIONSHIP_LIMIT = 10

# Fixed per-item token costs
CHARACTER_TOKENS = 50
FACT_TOKENS = 30
RELATIONSHIP_TOKENS = 25


class GraphMemoryError(Exception):
    """Raised when the graph store rejects a read or write."""
    pass


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class GraphMemory:
    """Structured memory backed by a graph store adapter such as NeptuneClient."""

    def __init__(self, client, executor: Optional[ThreadPoolExecutor] = None):
        """
        Initialize graph memory.

        Args:
            client: Graph store adapter exposing transaction() and the find_* reads
            executor: Pool for the concurrent reads (a private one is created if None)
        """
        self.client = client
        self._executor = executor or ThreadPoolExecutor(max_workers=3, thread_name_prefix='tiermem-l2')

    def ingest_turn(self, turn: Turn, detection: EventDetectionResult, session_id: str) -> GraphIngestionResult:
        """Write the turn's characters, facts, relationships and turn record in one transaction.

        Args:
            turn: Significant turn being promoted
            detection: Scorer output for the turn
            session_id: Session that produced the turn

        Returns:
            GraphIngestionResult with one operation per write

        Raises:
            GraphMemoryError: If the transaction fails (nothing is committed)
        """
        result = GraphIngestionResult()
        names = {character_id_for(entity.text): entity.text for entity in detection.named_entities}

        try:
            with self.client.transaction() as gtx:
                for change in detection.emotional_changes:
                    start = time.perf_counter()
                    name = names.get(change.character_id, change.character_id.split(':', 1)[-1])
                    self.client.upsert_character(gtx, change.character_id, name, change.new_vad)
                    result.operations.append(
                        MemoryOperation(kind='update',
                                        tier='L2',
                                        operation_name='updateCharacterEmotion',
                                        details={
                                            'character_id': change.character_id,
                                            'vad_state': {
                                                'valence': change.new_vad.valence,
                                                'arousal': change.new_vad.arousal,
                                                'dominance': change.new_vad.dominance
                                            },
                                            'delta_magnitude': change.delta_magnitude
                                        },
                                        duration_ms=_elapsed_ms(start)))

                for event in detection.detected_events:
                    if event.type == 'fact_assertion':
                        self._create_fact(gtx, event, turn, session_id, result)
                    elif event.type == 'relationship_change':
                        self._create_relationship(gtx, event, turn, session_id, result)

                start = time.perf_counter()
                self.client.store_turn(gtx, turn, session_id, detection.significance_score)
                result.operations.append(
                    MemoryOperation(kind='write',
                                    tier='L2',
                                    operation_name='storeTurn',
                                    details={
                                        'turn_id': turn.id,
                                        'session_id': session_id
                                    },
                                    duration_ms=_elapsed_ms(start)))
        except NeptuneError as e:
            raise GraphMemoryError(f'Graph ingestion failed for turn {turn.id}: {e}')

        logger.debug(f'L2 ingested turn {turn.id}: {len(result.facts_updated)} facts, '
                     f'{len(result.relationships_modified)} relationships')
        return result

    def _create_fact(self, gtx, event: DetectedEvent, turn: Turn, session_id: str, result: GraphIngestionResult) -> None:
        start = time.perf_counter()
        now = datetime.now()
        value = event.value or event.description
        fact = FactNode(id=f'fact:{uuid.uuid4()}',
                        entity=event.entities_involved[0] if event.entities_involved else 'unknown',
                        attribute=event.attribute or 'description',
                        current_value=value,
                        history=[FactVersion(value=value, timestamp=turn.timestamp, confidence=event.confidence)],
                        importance_score=min(10.0, event.confidence * 10),
                        created_at=now,
                        last_updated=now)
        self.client.create_fact(gtx, fact, session_id, turn.id)
        result.facts_updated.append(fact.id)
        result.operations.append(
            MemoryOperation(kind='write',
                            tier='L2',
                            operation_name='createFact',
                            details={'fact_id': fact.id},
                            duration_ms=_elapsed_ms(start)))

    def _create_relationship(self, gtx, event: DetectedEvent, turn: Turn, session_id: str,
                             result: GraphIngestionResult) -> None:
        if len(event.entities_involved) < 2:
            return

        start = time.perf_counter()
        now = datetime.now()
        relationship = RelationshipEdge(id=f'rel:{uuid.uuid4()}',
                                        from_entity=character_id_for(event.entities_involved[0]),
                                        to_entity=character_id_for(event.entities_involved[1]),
                                        relationship_type=event.type,
                                        strength=event.confidence,
                                        created_at=now,
                                        last_updated=now)
        if not self.client.create_relationship(gtx, relationship, session_id, turn.id):
            logger.debug(f'Skipped relationship {relationship.from_entity} -> {relationship.to_entity}: '
                         f'endpoint not found')
            return

        result.relationships_modified.append(relationship.id)
        result.operations.append(
            MemoryOperation(kind='write',
                            tier='L2',
                            operation_name='createRelationship',
                            details={'relationship_id': relationship.id},
                            duration_ms=_elapsed_ms(start)))

    def retrieve(self, query: RetrievalQuery) -> L2RetrievalResult:
        """Run the character, fact and relationship reads concurrently and score the matches.

        Raises:
            GraphMemoryError: If any of the three reads fails
        """
        text = query.query_text
        futures = [
            self._executor.submit(self.client.find_characters, text, CHARACTER_LIMIT),
            self._executor.submit(self.client.find_facts, text, FACT_LIMIT),
            self._executor.submit(self.client.find_relationships, text, RELATIONSHIP_LIMIT)
        ]
        try:
            characters, facts, relationships = [future.result() for future in futures]
        except NeptuneError as e:
            raise GraphMemoryError(f'Graph retrieval failed: {e}')

        if query.character_id and query.character_id.strip():
            characters, facts, relationships = self._scope(query.character_id, characters, facts, relationships)

        return L2RetrievalResult(characters=characters,
                                 facts=facts,
                                 relationships=relationships,
                                 relevance_score=self.calculate_relevance_score(characters, facts, relationships),
                                 token_count=self.estimate_token_count(characters, facts, relationships))

    @staticmethod
    def _scope(character_id: str, characters: List[Character], facts: List[FactNode],
               relationships: List[RelationshipEdge]):
        """Keep only items that mention the given character id or name."""
        cid = character_id.strip().lower()
        name = cid.split(':', 1)[-1]
        characters = [c for c in characters if cid in c.id.lower() or name in c.name.lower()]
        facts = [f for f in facts if name in f.entity.lower()]
        relationships = [r for r in relationships if cid in r.from_entity.lower() or cid in r.to_entity.lower()]
        return characters, facts, relationships

    @staticmethod
    def calculate_relevance_score(characters: List[Character], facts: List[FactNode],
                                  relationships: List[RelationshipEdge]) -> float:
        return min(1.0, (len(characters) + len(facts) + len(relationships)) / 10)

    @staticmethod
    def estimate_token_count(characters: List[Character], facts: List[FactNode],
                             relationships: List[RelationshipEdge]) -> int:
        return len(characters) * CHARACTER_TOKENS + len(facts) * FACT_TOKENS + len(relationships) * RELATIONSHIP_TOKENS

    def get_fact_with_history(self, fact_id: str) -> Optional[FactNode]:
        try:
            return self.client.get_fact(fact_id)
        except NeptuneError as e:
            raise GraphMemoryError(f'Failed to load fact {fact_id}: {e}')

    def get_all_characters(self) -> List[Character]:
        try:
            return self.client.get_all_characters()
        except NeptuneError as e:
            raise GraphMemoryError(f'Failed to list characters: {e}')

    def inspect(self) -> Dict[str, int]:
        """Element counts per kind."""
        try:
            return self.client.count_elements()
        except NeptuneError as e:
            raise GraphMemoryError(f'Failed to inspect graph: {e}')

    def get_statistics(self) -> Dict[str, int]:
        counts = self.inspect()
        counts['total_nodes'] = counts['characters'] + counts['facts'] + counts['conversation_turns']
        return counts

    def close(self) -> None:
        self._executor.shutdown(wait=False)
