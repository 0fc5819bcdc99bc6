"""
Memory Controller orchestrating the write path (L1 always, L2/L3 when
significant) and the read path (parallel fan-out to all tiers, then fusion).
"""

import concurrent.futures
import dataclasses
import math
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..models.core import (Character, ChatSession, FactNode, FusionWeights, L1RetrievalResult, L2RetrievalResult,
                           L3RetrievalResult, MemoryIngestionResult, MemoryOperation, MemoryRetrievalResult, RetrievalQuery,
                           TokenCost, Turn)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import (AppConfig, ConfigStore, ConfigurationError, MemoryControllerConfig, validate_fusion_weights)
from ..utils.hash_embed import HashEmbed
from ..utils.health_check import get_health_status
from ..utils.logging_config import get_logger, log_operation
from ..utils.neptune_client import NeptuneClient
from ..utils.opensearch_client import OpenSearchClient
from ..utils.token_counter import estimate_cost
from ..utils.vector_index import InMemoryVectorIndex
from .graph_memory import FACT_TOKENS, CHARACTER_TOKENS, RELATIONSHIP_TOKENS, GraphMemory, GraphMemoryError
from .significance_scorer import SignificanceScorer
from .vector_memory import VectorMemory, VectorMemoryError
from .weighted_fusion import WeightedFusion
from .working_memory import SessionReaper, WorkingMemory

logger = get_logger(__name__)

SEARCH_SESSION_ID = 'search'
SEARCH_TOKENS_PER_RESULT = 100


class MemoryControllerError(Exception):
    """Raised by maintenance operations when a backing tier is unavailable."""
    pass


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _failed_operation(kind: str, tier: str, operation_name: str, error: BaseException, start: float,
                      **details) -> MemoryOperation:
    reason = 'timeout' if isinstance(error, concurrent.futures.TimeoutError) else str(error)
    return MemoryOperation(kind=kind,
                           tier=tier,
                           operation_name=operation_name,
                           details={
                               'status': 'failed',
                               'error': reason,
                               **details
                           },
                           duration_ms=_elapsed_ms(start))


class MemoryController:
    """Entry point of the memory engine. Safe to share between threads."""

    def __init__(self,
                 graph_memory: GraphMemory,
                 vector_memory: VectorMemory,
                 config: Union[MemoryControllerConfig, ConfigStore],
                 working_memory: Optional[WorkingMemory] = None,
                 store_workers: int = 8,
                 operation_log_size: int = 10000):
        """
        Initialize the memory controller.

        Args:
            graph_memory: L2 tier
            vector_memory: L3 tier
            config: Engine configuration, or a ConfigStore shared with the tiers
            working_memory: L1 tier (created from the config store if None)
            store_workers: Threads per store pool. L2 and L3 calls run in separate pools so a
                hung store cannot starve the other tier; L1 runs on the calling thread
            operation_log_size: Number of audit records retained in memory
        """
        self.config_store = config if isinstance(config, ConfigStore) else ConfigStore(config)
        self.l1 = working_memory or WorkingMemory(self.config_store.current)
        self.l2 = graph_memory
        self.l3 = vector_memory
        self._pools = {
            'L2': ThreadPoolExecutor(max_workers=store_workers, thread_name_prefix='tiermem-l2'),
            'L3': ThreadPoolExecutor(max_workers=store_workers, thread_name_prefix='tiermem-l3')
        }
        self._prune_lock = threading.Lock()
        self._operation_log = deque(maxlen=operation_log_size)
        self._log_lock = threading.Lock()
        self._reaper: Optional[SessionReaper] = None

        logger.info(f'Memory controller initialized (config version {self.config_store.current().version})')

    @property
    def config(self) -> MemoryControllerConfig:
        return self.config_store.current()

    def _record(self, operations: Sequence[MemoryOperation]) -> None:
        with self._log_lock:
            self._operation_log.extend(operations)
        for operation in operations:
            log_operation(logger, operation)

    def _call_with_timeout(self, tier: str, timeout: float, func, *args):
        future = self._pools[tier].submit(func, *args)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    # Write path

    def ingest_conversation_turn(self,
                                 turn: Turn,
                                 context: Optional[Sequence[Turn]] = None,
                                 session_id: str = 'default') -> MemoryIngestionResult:
        """Ingest one turn: L1 always, L2 when significant, L3 when very significant.

        L2/L3 failures and timeouts are recorded as failed operations and do not
        fail the ingestion. Never raises.

        Args:
            turn: New turn
            context: Prior turns of the session, oldest first (current L1 history if None)
            session_id: Owning session

        Returns:
            MemoryIngestionResult with the operations performed
        """
        cfg = self.config_store.current()
        operations: List[MemoryOperation] = []
        try:
            if context is None:
                context = self.l1.get_history(session_id)

            start = time.perf_counter()
            evicted = self.l1.add_turn(session_id, turn)
            operations.append(
                MemoryOperation(kind='write',
                                tier='L1',
                                operation_name='addTurn',
                                details={
                                    'turn_id': turn.id,
                                    'session_id': session_id,
                                    'evicted_turns': len(evicted)
                                },
                                duration_ms=_elapsed_ms(start)))

            detection = SignificanceScorer(cfg).detect_events(turn, context)
            facts_updated: List[str] = []
            relationships_modified: List[str] = []

            if detection.is_significant:
                start = time.perf_counter()
                try:
                    l2_result = self._call_with_timeout('L2', cfg.store_timeout_seconds, self.l2.ingest_turn, turn,
                                                        detection, session_id)
                    operations.extend(l2_result.operations)
                    facts_updated = l2_result.facts_updated
                    relationships_modified = l2_result.relationships_modified
                except (GraphMemoryError, concurrent.futures.TimeoutError) as e:
                    operations.append(_failed_operation('write', 'L2', 'ingestTurn', e, start, turn_id=turn.id))

                if detection.significance_score >= cfg.l3_promotion_threshold:
                    start = time.perf_counter()
                    try:
                        operations.extend(
                            self._call_with_timeout('L3', cfg.store_timeout_seconds, self.l3.ingest_turn, turn,
                                                    detection, session_id))
                    except (VectorMemoryError, concurrent.futures.TimeoutError) as e:
                        operations.append(_failed_operation('write', 'L3', 'addVectorFragment', e, start, turn_id=turn.id))

            operations.extend(self._manage_memory_state(cfg))

            self._record(operations)
            return MemoryIngestionResult(success=True,
                                         operations_performed=operations,
                                         significance_score=detection.significance_score,
                                         events_detected=detection.detected_events,
                                         emotional_changes=detection.emotional_changes,
                                         facts_updated=facts_updated,
                                         relationships_modified=relationships_modified)

        except Exception as e:
            logger.error(f'Memory ingestion failed for session {session_id}: {e}', exc_info=True)
            self._record(operations)
            return MemoryIngestionResult(success=False, operations_performed=operations)

    def _manage_memory_state(self, cfg: MemoryControllerConfig) -> List[MemoryOperation]:
        """Prune L3 back to its cap once it has grown past it.

        Skipped while an earlier prune is still rebuilding the index.
        """
        if self.l3.count() <= cfg.l3_max_fragments:
            return []
        if not self._prune_lock.acquire(blocking=False):
            logger.debug('L3 prune already in progress, skipping')
            return []

        start = time.perf_counter()
        try:
            removed = self._prune_with_timeout(cfg.l3_max_fragments, cfg.store_timeout_seconds)
        except (VectorMemoryError, concurrent.futures.TimeoutError) as e:
            return [_failed_operation('delete', 'L3', 'pruneFragments', e, start)]
        return [
            MemoryOperation(kind='delete',
                            tier='L3',
                            operation_name='pruneFragments',
                            details={
                                'removed': removed,
                                'max_fragments': cfg.l3_max_fragments
                            },
                            duration_ms=_elapsed_ms(start))
        ]

    def _prune_with_timeout(self, max_fragments: int, timeout: float) -> int:
        """Prune L3 in its pool; the caller holds _prune_lock, released when the rebuild ends.

        A rebuild that outlives the timeout keeps the lock until it finishes.
        """

        def locked_prune():
            try:
                return self.l3.prune_fragments(max_fragments)
            finally:
                self._prune_lock.release()

        future = self._pools['L3'].submit(locked_prune)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            if future.cancel():
                self._prune_lock.release()
            raise

    # Read path

    def retrieve_relevant_context(self, query: RetrievalQuery) -> MemoryRetrievalResult:
        """Query all three tiers in parallel and fuse the results.

        L1 is read on the calling thread while the L2 and L3 reads run in their
        own pools. A store tier that times out is treated as empty. A tier that
        fails is treated as empty under the 'degrade' policy, while 'fail_closed'
        returns an all-zero result instead.

        Args:
            query: Retrieval request

        Returns:
            Fused MemoryRetrievalResult, trimmed to query.max_tokens when given

        Raises:
            ConfigurationError: If the query's fusion weights are invalid
        """
        cfg = self.config_store.current()
        weights = validate_fusion_weights(query.fusion_weights or cfg.default_fusion_weights)
        if query.max_tokens is not None and query.max_tokens < 0:
            raise ConfigurationError(f'max_tokens must be non-negative, got {query.max_tokens}')

        timeout = query.timeout_seconds or cfg.store_timeout_seconds
        deadline = time.monotonic() + timeout
        start = time.perf_counter()
        futures = {
            'L2': self._pools['L2'].submit(self.l2.retrieve, query),
            'L3': self._pools['L3'].submit(self.l3.retrieve, query)
        }
        empty = {'L1': L1RetrievalResult(), 'L2': L2RetrievalResult(), 'L3': L3RetrievalResult()}

        results = {}
        failures = []
        tier_failed = False
        try:
            results['L1'] = self.l1.retrieve(query)
        except Exception as e:
            logger.error(f'L1 retrieval failed: {e}')
            failures.append(_failed_operation('read', 'L1', 'retrieve', e, start))
            results['L1'] = empty['L1']
            tier_failed = True

        for tier, future in futures.items():
            try:
                results[tier] = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except concurrent.futures.TimeoutError as e:
                future.cancel()
                failures.append(_failed_operation('read', tier, 'retrieve', e, start))
                results[tier] = empty[tier]
            except Exception as e:
                logger.error(f'{tier} retrieval failed: {e}')
                failures.append(_failed_operation('read', tier, 'retrieve', e, start))
                results[tier] = empty[tier]
                tier_failed = True

        if failures:
            self._record(failures)
        if tier_failed and cfg.tier_failure_policy == 'fail_closed':
            return MemoryRetrievalResult(l1=L1RetrievalResult(),
                                         l2=L2RetrievalResult(),
                                         l3=L3RetrievalResult(),
                                         fusion_weights=weights,
                                         final_score=0.0,
                                         total_tokens=0)

        if query.min_relevance_threshold is not None:
            for tier in results:
                if results[tier].relevance_score < query.min_relevance_threshold:
                    results[tier] = empty[tier]

        fused = WeightedFusion(cfg).combine_results(results['L1'], results['L2'], results['L3'], weights)
        if query.max_tokens is not None:
            fused = self._apply_token_budget(fused, query.max_tokens)
        return fused

    @staticmethod
    def _apply_token_budget(result: MemoryRetrievalResult, max_tokens: int) -> MemoryRetrievalResult:
        """Drop items until the result fits the budget; scores stay as computed.

        Order: least similar L3 fragments, then L2 relationships, facts and
        characters (least recent first), then the oldest L1 turns.
        """
        if result.total_tokens <= max_tokens:
            return result

        fragments = list(result.l3.fragments)
        relationships = list(result.l2.relationships)
        facts = list(result.l2.facts)
        characters = list(result.l2.characters)
        turns = list(result.l1.turns)
        l1_tokens = result.l1.token_count
        l3_tokens = result.l3.token_count
        total = result.total_tokens

        while total > max_tokens and fragments:
            tokens = math.ceil(len(fragments.pop().content) / 4)
            l3_tokens -= tokens
            total -= tokens
        for items, cost in ((relationships, RELATIONSHIP_TOKENS), (facts, FACT_TOKENS), (characters, CHARACTER_TOKENS)):
            while total > max_tokens and items:
                items.pop()
                total -= cost
        while total > max_tokens and turns:
            tokens = turns.pop(0).token_count
            l1_tokens -= tokens
            total -= tokens

        l2 = dataclasses.replace(result.l2,
                                 characters=characters,
                                 facts=facts,
                                 relationships=relationships,
                                 token_count=GraphMemory.estimate_token_count(characters, facts, relationships))
        return dataclasses.replace(result,
                                   l1=dataclasses.replace(result.l1, turns=turns, token_count=l1_tokens),
                                   l2=l2,
                                   l3=dataclasses.replace(result.l3, fragments=fragments, token_count=l3_tokens),
                                   total_tokens=total)

    def search_memory(self, query_text: str, limit: int = 10) -> MemoryRetrievalResult:
        """Search with the default weights and a budget of `limit` results' worth of tokens."""
        return self.retrieve_relevant_context(
            RetrievalQuery(query_text=query_text,
                           session_id=SEARCH_SESSION_ID,
                           fusion_weights=self.config_store.current().default_fusion_weights,
                           max_tokens=limit * SEARCH_TOKENS_PER_RESULT))

    def estimate_token_cost(self, query: RetrievalQuery) -> TokenCost:
        """Run retrieval and price the tokens it would add to a prompt."""
        result = self.retrieve_relevant_context(query)
        return TokenCost(total_tokens=result.total_tokens,
                         l1_tokens=result.l1.token_count,
                         l2_tokens=result.l2.token_count,
                         l3_tokens=result.l3.token_count,
                         estimated_cost=estimate_cost(result.total_tokens, self.config_store.current().token_price))

    def estimate_token_cost_for_counts(self,
                                       l1_count: int,
                                       l2_count: int,
                                       l3_count: int,
                                       weights: Optional[FusionWeights] = None) -> int:
        """Token estimate for hypothetical item counts, without retrieval."""
        cfg = self.config_store.current()
        weights = validate_fusion_weights(weights or cfg.default_fusion_weights)
        return WeightedFusion(cfg).estimate_token_cost(l1_count, l2_count, l3_count, weights)

    def suggest_fusion_weights(self, query_text: str) -> FusionWeights:
        """Default weights re-biased for the query's archetype (recent, factual or semantic)."""
        cfg = self.config_store.current()
        fusion = WeightedFusion(cfg)
        return fusion.optimize_weights(fusion.analyze_query(query_text), cfg.default_fusion_weights)

    # Maintenance and introspection

    def get_chat_history(self, session_id: str) -> List[Turn]:
        return self.l1.get_history(session_id)

    def get_all_sessions(self) -> List[ChatSession]:
        return self.l1.get_all_sessions()

    def get_all_characters(self) -> List[Character]:
        try:
            return self.l2.get_all_characters()
        except GraphMemoryError as e:
            raise MemoryControllerError(str(e))

    def get_fact_with_history(self, fact_id: str) -> Optional[FactNode]:
        try:
            return self.l2.get_fact_with_history(fact_id)
        except GraphMemoryError as e:
            raise MemoryControllerError(str(e))

    def _gather(self, calls: Dict[str, Tuple[str, Callable[[], Any]]]) -> Dict[str, Any]:
        """Run introspection calls, store tiers in their pools; a failing tier reports its error instead."""
        timeout = self.config_store.current().store_timeout_seconds
        futures = {name: self._pools[tier].submit(func) for name, (tier, func) in calls.items() if tier != 'L1'}
        snapshot = {}
        for name, (tier, func) in calls.items():
            try:
                snapshot[name] = func() if tier == 'L1' else futures[name].result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                futures[name].cancel()
                snapshot[name] = {'status': 'unavailable', 'error': 'timeout'}
            except Exception as e:
                logger.error(f'Failed to inspect {name}: {e}')
                snapshot[name] = {'status': 'unavailable', 'error': str(e)}
        return snapshot

    def inspect_memory_state(self) -> Dict[str, Any]:
        cfg = self.config_store.current()
        snapshot = self._gather({
            'l1_working_memory': ('L1', self.l1.inspect),
            'l2_graph_memory': ('L2', self.l2.inspect),
            'l3_vector_memory': ('L3', self.l3.inspect)
        })
        snapshot['config'] = dict(dataclasses.asdict(cfg), l3_promotion_threshold=cfg.l3_promotion_threshold)
        snapshot['timestamp'] = datetime.now()
        return snapshot

    def get_memory_statistics(self) -> Dict[str, Any]:
        stats = self._gather({
            'l1_stats': ('L1', self.l1.get_statistics),
            'l2_stats': ('L2', self.l2.get_statistics),
            'l3_stats': ('L3', self.l3.get_statistics)
        })
        stats['total_sessions'] = stats['l1_stats'].get('total_sessions', 0)
        stats['timestamp'] = datetime.now()
        return stats

    def prune_memory(self, max_fragments: Optional[int] = None) -> Dict[str, int]:
        """Prune L3 down to max_fragments (the configured cap by default).

        Raises:
            MemoryControllerError: If a prune is already running, or the index
                rebuild failed or did not finish within store_timeout_seconds
        """
        cfg = self.config_store.current()
        max_fragments = cfg.l3_max_fragments if max_fragments is None else max_fragments
        if max_fragments < 0:
            raise ConfigurationError(f'max_fragments must be non-negative, got {max_fragments}')

        if not self._prune_lock.acquire(blocking=False):
            raise MemoryControllerError('A prune is already in progress')

        start = time.perf_counter()
        try:
            removed = self._prune_with_timeout(max_fragments, cfg.store_timeout_seconds)
        except (VectorMemoryError, concurrent.futures.TimeoutError) as e:
            failed = _failed_operation('delete', 'L3', 'pruneFragments', e, start)
            self._record([failed])
            raise MemoryControllerError(f"Prune failed: {failed.details['error']}")

        self._record([
            MemoryOperation(kind='delete',
                            tier='L3',
                            operation_name='pruneFragments',
                            details={
                                'removed': removed,
                                'max_fragments': max_fragments
                            },
                            duration_ms=_elapsed_ms(start))
        ])
        return {'removed': removed, 'remaining': self.l3.count()}

    def get_operation_log(self, limit: Optional[int] = None) -> List[MemoryOperation]:
        """Most recent audit records, oldest first."""
        with self._log_lock:
            operations = list(self._operation_log)
        return operations[-limit:] if limit else operations

    def clear_old_sessions(self, max_age: timedelta = timedelta(hours=24)) -> int:
        return self.l1.clear_old_sessions(max_age)

    def start_session_reaper(self, max_age: timedelta, interval: timedelta) -> SessionReaper:
        if self._reaper is None:
            self._reaper = SessionReaper(self.l1, max_age, interval)
        self._reaper.start()
        return self._reaper

    def health(self) -> Dict[str, Any]:
        """Probe the live stores behind L2 and L3."""
        index_name = 'opensearch' if isinstance(self.l3.index, OpenSearchClient) else 'memory_index'
        embedder_name = 'bedrock_embed' if isinstance(self.l3.embedder, BedrockEmbed) else 'hash_embed'
        return get_health_status({'neptune': self.l2.client, index_name: self.l3.index, embedder_name: self.l3.embedder})

    # Configuration updates

    def update_fusion_weights(self, weights: FusionWeights) -> MemoryControllerConfig:
        """Publish new default fusion weights. In-flight requests keep their snapshot."""
        validate_fusion_weights(weights)
        updated = self.config_store.update(default_fusion_weights=weights)
        logger.info(f'Default fusion weights updated to {weights} (config version {updated.version})')
        return updated

    def update_significance_threshold(self, threshold: float) -> MemoryControllerConfig:
        updated = self.config_store.update(l2_significance_threshold=threshold)
        logger.info(f'Significance threshold updated to {threshold} (config version {updated.version})')
        return updated

    def close(self) -> None:
        if self._reaper is not None:
            self._reaper.stop()
        for pool in self._pools.values():
            pool.shutdown(wait=False)
        self.l2.close()


def build_memory_controller(app_config: Optional[AppConfig] = None) -> MemoryController:
    """Wire a controller to the stores selected in the application config.

    Raises:
        ConfigurationError: If a backend name or the vector dimensions are invalid
    """
    if app_config is None:
        from ..utils.config import config as default_config
        app_config = default_config

    store = ConfigStore(app_config.controller)

    if app_config.embedding_backend == 'hash':
        embedder = HashEmbed(app_config.controller.l3_vector_dimension)
    elif app_config.embedding_backend == 'bedrock':
        embedder = BedrockEmbed(app_config.bedrock_embed)
    else:
        raise ConfigurationError(f'Unknown embedding backend: {app_config.embedding_backend}')

    if app_config.vector_backend == 'memory':
        index = InMemoryVectorIndex(embedder.dimension)
    elif app_config.vector_backend == 'opensearch':
        if app_config.opensearch.dimension != embedder.dimension:
            raise ConfigurationError(f'OpenSearch dimension {app_config.opensearch.dimension} does not match '
                                     f'embedding dimension {embedder.dimension}')
        index = OpenSearchClient(app_config.opensearch)
    else:
        raise ConfigurationError(f'Unknown vector backend: {app_config.vector_backend}')

    controller = MemoryController(graph_memory=GraphMemory(NeptuneClient(app_config.neptune)),
                                  vector_memory=VectorMemory(embedder, index, store.current),
                                  config=store)
    controller.start_session_reaper(max_age=timedelta(hours=app_config.memory.session_max_age_hours),
                                    interval=timedelta(hours=app_config.memory.cleanup_interval_hours))
    return controller
