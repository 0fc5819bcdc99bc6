"""
L3 Vector Memory: semantic archive of short turn summaries.

Fragments live in a list whose positions match the ids of the pluggable
nearest-neighbour index, so every removal is followed by an index rebuild.
"""

import dataclasses
import math
import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..models.core import (EventDetectionResult, FragmentMetadata, L3RetrievalResult, MemoryOperation, RetrievalQuery, Turn,
                           VectorFragment)
from ..utils.config import MemoryControllerConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import DAY_SECONDS, age_seconds

logger = get_logger(__name__)

MAX_RESULTS = 10
SUMMARY_EXCERPT_CHARS = 200
CHARS_PER_TOKEN = 4


class VectorMemoryError(Exception):
    """Raised when embedding or the vector index fails."""
    pass


class VectorMemory:
    """Semantic memory built from an embedding function and a vector index."""

    def __init__(self, embedder, index, config_provider: Callable[[], MemoryControllerConfig]):
        """
        Initialize vector memory.

        Args:
            embedder: Object with embed_document(text) and embed_query(text)
            index: VectorIndex implementation (add, search, size, reset)
            config_provider: Callable returning the current configuration snapshot
        """
        self.embedder = embedder
        self.index = index
        self._config_provider = config_provider
        self._fragments: List[VectorFragment] = []
        self._lock = threading.RLock()

        # Fragments live only in this process, so vectors left by an earlier run
        # would shift every slot; start from an empty index.
        stale = self.index.size()
        if stale:
            logger.warning(f'Vector index holds {stale} vectors without fragments; resetting it')
            self.index.reset()

    def ingest_turn(self, turn: Turn, detection: EventDetectionResult, session_id: str) -> List[MemoryOperation]:
        """Summarise, embed and archive a very significant turn.

        Args:
            turn: Turn being archived
            detection: Scorer output for the turn
            session_id: Session that produced the turn

        Returns:
            The addVectorFragment operation

        Raises:
            VectorMemoryError: If embedding or indexing fails
        """
        start = time.perf_counter()
        cfg = self._config_provider()
        summary = self.generate_summary(turn, detection)

        try:
            embedding = list(self.embedder.embed_document(summary))
        except Exception as e:
            logger.error(f'Embedding failed for turn {turn.id}: {e}')
            raise VectorMemoryError(f'Failed to embed fragment: {e}')

        now = datetime.now()
        fragment = VectorFragment(id=f'vec:{uuid.uuid4()}',
                                  embedding=embedding,
                                  content=summary,
                                  metadata=FragmentMetadata(doc_id=f'doc:{uuid.uuid4()}',
                                                            source_session_id=session_id,
                                                            content_type=self.determine_content_type(detection, cfg),
                                                            tags=self.extract_tags(turn, detection),
                                                            importance_score=detection.significance_score,
                                                            created_at=now,
                                                            last_updated=now,
                                                            last_accessed=now,
                                                            access_count=0))

        with self._lock:
            try:
                self.index.add([embedding])
            except Exception as e:
                logger.error(f'Vector index add failed for turn {turn.id}: {e}')
                raise VectorMemoryError(f'Failed to index fragment: {e}')
            self._fragments.append(fragment)

        return [
            MemoryOperation(kind='write',
                            tier='L3',
                            operation_name='addVectorFragment',
                            details={
                                'fragment_id': fragment.id,
                                'content_type': fragment.metadata.content_type,
                                'importance_score': fragment.metadata.importance_score
                            },
                            duration_ms=(time.perf_counter() - start) * 1000)
        ]

    def retrieve(self, query: RetrievalQuery) -> L3RetrievalResult:
        """Nearest fragments to the query, most similar first.

        Every returned fragment has its access statistics bumped, including
        ones later dropped by the character scope.

        Raises:
            VectorMemoryError: If embedding or search fails
        """
        with self._lock:
            if not self._fragments:
                return L3RetrievalResult()

        try:
            query_embedding = self.embedder.embed_query(query.query_text)
        except Exception as e:
            raise VectorMemoryError(f'Failed to embed query: {e}')

        hits = []
        with self._lock:
            k = min(MAX_RESULTS, len(self._fragments))
            try:
                distances, ids = self.index.search(query_embedding, k)
            except Exception as e:
                raise VectorMemoryError(f'Vector search failed: {e}')

            now = datetime.now()
            for distance, position in zip(distances, ids):
                if 0 <= position < len(self._fragments):
                    fragment = self._fragments[position]
                    fragment.metadata.last_accessed = now
                    fragment.metadata.access_count += 1
                    hits.append(
                        dataclasses.replace(fragment,
                                            metadata=dataclasses.replace(fragment.metadata,
                                                                        tags=list(fragment.metadata.tags)),
                                            similarity_score=max(0.0, 1 - distance / 2)))

        hits.sort(key=lambda f: f.similarity_score, reverse=True)

        if query.character_id and query.character_id.strip():
            tag = query.character_id.strip().lower()
            hits = [f for f in hits if any(tag in t.lower() for t in f.metadata.tags)]

        if not hits:
            return L3RetrievalResult()

        return L3RetrievalResult(fragments=hits,
                                 relevance_score=sum(f.similarity_score for f in hits) / len(hits),
                                 token_count=self.estimate_token_count(hits))

    @staticmethod
    def generate_summary(turn: Turn, detection: EventDetectionResult) -> str:
        summary = f'[{turn.role.upper()}] '
        if detection.detected_events:
            event = detection.detected_events[0]
            summary += f'{event.type}: {event.description}'
        elif len(turn.content) > SUMMARY_EXCERPT_CHARS:
            summary += turn.content[:SUMMARY_EXCERPT_CHARS] + '...'
        else:
            summary += turn.content

        if detection.emotional_changes:
            emotions = '; '.join(f'{change.character_id}: {change.trigger}' for change in detection.emotional_changes)
            summary += f' [Emotions: {emotions}]'
        return summary

    @staticmethod
    def determine_content_type(detection: EventDetectionResult, cfg: MemoryControllerConfig) -> str:
        if detection.detected_events:
            return 'event'
        if detection.significance_score > cfg.l3_promotion_threshold:
            return 'insight'
        return 'summary'

    @staticmethod
    def extract_tags(turn: Turn, detection: EventDetectionResult) -> List[str]:
        """Role, event types, changed character ids and entity-type labels, de-duplicated in order."""
        tags = [turn.role]
        tags.extend(event.type for event in detection.detected_events)
        tags.extend(change.character_id for change in detection.emotional_changes)
        tags.extend(entity.type.lower() for entity in detection.named_entities)
        return list(dict.fromkeys(tags))

    @staticmethod
    def estimate_token_count(fragments: List[VectorFragment]) -> int:
        return sum(math.ceil(len(f.content) / CHARS_PER_TOKEN) for f in fragments)

    @staticmethod
    def calculate_composite_score(fragment: VectorFragment, now: Optional[datetime] = None) -> float:
        """Pruning rank mixing importance, age, recent access and access frequency."""
        now = now or datetime.now()
        metadata = fragment.metadata
        age_factor = max(0.0, 1 - age_seconds(metadata.created_at, now) / (30 * DAY_SECONDS))
        recent_access_factor = max(0.0, 1 - age_seconds(metadata.last_accessed, now) / (7 * DAY_SECONDS))
        return (metadata.importance_score * 0.4 + age_factor * 10 * 0.3 + recent_access_factor * 10 * 0.2 +
                math.log(metadata.access_count + 1) * 0.1)

    def prune_fragments(self, max_fragments: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Keep only the max_fragments highest composite-score fragments.

        Args:
            max_fragments: Cap to enforce (defaults to l3_max_fragments)
            now: Reference time for the age factors

        Returns:
            Number of fragments removed
        """
        if max_fragments is None:
            max_fragments = self._config_provider().l3_max_fragments
        now = now or datetime.now()

        with self._lock:
            if len(self._fragments) <= max_fragments:
                return 0

            ranked = sorted(self._fragments, key=lambda f: self.calculate_composite_score(f, now), reverse=True)
            kept = ranked[:max_fragments]
            removed = len(self._fragments) - len(kept)

            try:
                self.index.reset()
                if kept:
                    self.index.add([f.embedding for f in kept])
            except Exception as e:
                logger.error(f'Vector index rebuild failed during prune: {e}')
                raise VectorMemoryError(f'Failed to rebuild vector index: {e}')
            self._fragments = kept

        logger.info(f'Pruned {removed} fragments from vector memory ({len(kept)} kept)')
        return removed

    def count(self) -> int:
        # Lock-free so ingestion can check the cap while a prune holds the lock.
        return len(self._fragments)

    def get_fragments(self) -> List[VectorFragment]:
        with self._lock:
            return list(self._fragments)

    def inspect(self) -> Dict[str, object]:
        with self._lock:
            fragments = list(self._fragments)
            index_size = self.index.size()

        content_types = {content_type: 0 for content_type in ('summary', 'insight', 'event')}
        for fragment in fragments:
            content_types[fragment.metadata.content_type] += 1

        importances = [f.metadata.importance_score for f in fragments]
        return {
            'total_fragments': len(fragments),
            'index_size': index_size,
            'content_type_distribution': content_types,
            'importance_statistics': {
                'min': min(importances) if importances else 0,
                'max': max(importances) if importances else 0,
                'avg': sum(importances) / len(importances) if importances else 0
            },
            'dimension': self._config_provider().l3_vector_dimension
        }

    def get_statistics(self) -> Dict[str, object]:
        return self.inspect()
