"""Tests for weighted fusion scoring, decay and weight heuristics."""

import itertools
from datetime import datetime, timedelta

import pytest

from tiermem.models.core import (FactNode, FragmentMetadata, FusionWeights, L1RetrievalResult, L2RetrievalResult,
                                 L3RetrievalResult, Turn, VectorFragment)
from tiermem.services.weighted_fusion import WeightedFusion
from tiermem.utils.config import MemoryControllerConfig

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def fusion():
    return WeightedFusion(MemoryControllerConfig())


def turn(age=timedelta(0)):
    return Turn(id='t', role='user', content='hello', timestamp=NOW - age, token_count=5)


def fact(importance=7.0, age=timedelta(0)):
    return FactNode(id='fact:1',
                    entity='Alice',
                    attribute='residence',
                    current_value='Paris',
                    history=[],
                    importance_score=importance,
                    created_at=NOW - age,
                    last_updated=NOW - age)


def fragment(importance=8.0, age=timedelta(0), access_count=0, accessed=timedelta(0)):
    return VectorFragment(id='vec:1',
                          embedding=[0.0],
                          content='summary',
                          metadata=FragmentMetadata(doc_id='doc:1',
                                                    source_session_id='s1',
                                                    content_type='summary',
                                                    tags=[],
                                                    importance_score=importance,
                                                    created_at=NOW - age,
                                                    last_updated=NOW - age,
                                                    last_accessed=NOW - accessed,
                                                    access_count=access_count))


def test_empty_input_scores_zero(fusion):
    """Fusing three empty tiers is zero."""
    result = fusion.combine_results(L1RetrievalResult(), L2RetrievalResult(), L3RetrievalResult(),
                                    FusionWeights(0.4, 0.4, 0.2), now=NOW)

    assert result.final_score == 0
    assert result.total_tokens == 0


def test_final_score_is_bounded(fusion):
    """Every valid weight triple and relevance combination stays in [0, 1]."""
    grid = [0.0, 0.25, 0.5, 1.0]
    weight_triples = [FusionWeights(a, b, round(1 - a - b, 2)) for a, b in itertools.product(grid, grid) if a + b <= 1]
    for weights, r1, r2, r3 in itertools.product(weight_triples, grid, grid, grid):
        result = fusion.combine_results(L1RetrievalResult([turn()], r1, 5),
                                        L2RetrievalResult(facts=[fact(10.0)], relevance_score=r2, token_count=30),
                                        L3RetrievalResult([fragment(10.0)], r3, 2),
                                        weights,
                                        now=NOW)
        assert 0.0 <= result.final_score <= 1.0


def test_l1_only_weights_ignore_other_tier_relevance(fusion):
    """With weights (1, 0, 0) the score tracks L1 relevance alone."""
    weights = FusionWeights(1.0, 0.0, 0.0)
    l1 = L1RetrievalResult([turn()], 0.5, 5)

    low = fusion.combine_results(l1, L2RetrievalResult(facts=[fact()], relevance_score=0.0),
                                 L3RetrievalResult([fragment()], 0.0, 2), weights, now=NOW)
    high = fusion.combine_results(l1, L2RetrievalResult(facts=[fact()], relevance_score=1.0),
                                  L3RetrievalResult([fragment()], 1.0, 2), weights, now=NOW)

    importance = fusion.calculate_importance_factor(low.l1, low.l2, low.l3)
    decay = fusion.calculate_decay_factor(low.l1, low.l2, low.l3, now=NOW)
    assert low.final_score == high.final_score == pytest.approx(min(1.0, 0.5 * importance * decay))


def test_importance_factor(fusion):
    """Average of L1 baseline, fact and fragment importances, floored at 0.3."""
    l1 = L1RetrievalResult([turn()], 0.0, 0)
    l2 = L2RetrievalResult(facts=[fact(6.0)])
    l3 = L3RetrievalResult([fragment(20.0)])

    assert fusion.calculate_importance_factor(l1, l2, l3) == pytest.approx((0.8 + 0.6 + 1.0) / 3)
    assert fusion.calculate_importance_factor(L1RetrievalResult(), L2RetrievalResult(), L3RetrievalResult()) == 0.3
    assert fusion.calculate_importance_factor(L1RetrievalResult(), L2RetrievalResult(facts=[fact(1.0)]),
                                              L3RetrievalResult()) == 0.3


def test_decay_defaults_and_floors(fusion):
    """No items decays to 0.5; very old items hit their tier floor."""
    empty = fusion.calculate_decay_factor(L1RetrievalResult(), L2RetrievalResult(), L3RetrievalResult(), now=NOW)
    old_turn = fusion.calculate_decay_factor(L1RetrievalResult([turn(timedelta(days=30))]), L2RetrievalResult(),
                                             L3RetrievalResult(), now=NOW)
    old_fact = fusion.calculate_decay_factor(L1RetrievalResult(), L2RetrievalResult(facts=[fact(age=timedelta(days=365))]),
                                             L3RetrievalResult(), now=NOW)

    assert empty == 0.5
    assert old_turn == pytest.approx(0.5)
    assert old_fact == pytest.approx(0.2)


def test_decay_is_monotone_in_age(fusion):
    """An older item never decays less than a newer one."""
    for tier in ('l1', 'l2', 'l3'):
        previous = None
        for days in (0, 0.05, 0.5, 1, 3, 10, 60, 400):
            age = timedelta(days=days)
            l1 = L1RetrievalResult([turn(age)]) if tier == 'l1' else L1RetrievalResult()
            l2 = L2RetrievalResult(facts=[fact(age=age)]) if tier == 'l2' else L2RetrievalResult()
            l3 = L3RetrievalResult([fragment(age=age, accessed=timedelta(days=30))]) if tier == 'l3' else L3RetrievalResult()
            decay = fusion.calculate_decay_factor(l1, l2, l3, now=NOW)
            if previous is not None:
                assert decay <= previous
            previous = decay


def test_l3_recent_access_boosts_decay(fusion):
    """Fragments accessed within a week decay less."""
    stale = fragment(age=timedelta(days=1), accessed=timedelta(days=10))
    fresh = fragment(age=timedelta(days=1), accessed=timedelta(days=1))

    stale_decay = fusion.calculate_decay_factor(L1RetrievalResult(), L2RetrievalResult(), L3RetrievalResult([stale]), NOW)
    fresh_decay = fusion.calculate_decay_factor(L1RetrievalResult(), L2RetrievalResult(), L3RetrievalResult([fresh]), NOW)

    assert fresh_decay > stale_decay


def test_estimate_token_cost():
    """Per-item costs 50/35/100 scaled by weights, rounded up."""
    assert WeightedFusion.estimate_token_cost(2, 3, 4, FusionWeights(0.5, 0.25, 0.25)) == 177


@pytest.mark.parametrize('query, expected', [
    ('what did Alice just say', 'recent'),
    ('who is Alice', 'factual'),
    ('stories similar to this one', 'semantic'),
    ('dragons', 'factual'),
])
def test_analyze_query(query, expected):
    """Keyword rules pick the query archetype."""
    assert WeightedFusion.analyze_query(query) == expected


def test_optimize_weights():
    """Each archetype boosts its tier and damps the rest."""
    base = FusionWeights(0.4, 0.4, 0.2)

    recent = WeightedFusion.optimize_weights('recent', base)
    factual = WeightedFusion.optimize_weights('factual', base)
    semantic = WeightedFusion.optimize_weights('semantic', base)

    assert (recent.w_L1, recent.w_L2, recent.w_L3) == pytest.approx((0.6, 0.32, 0.14))
    assert (factual.w_L1, factual.w_L2, factual.w_L3) == pytest.approx((0.28, 0.56, 0.18))
    assert (semantic.w_L1, semantic.w_L2, semantic.w_L3) == pytest.approx((0.24, 0.36, 0.32))
    assert WeightedFusion.optimize_weights('unknown', base) is base
    assert WeightedFusion.optimize_weights('recent', FusionWeights(0.9, 0.1, 0.0)).w_L1 == 1.0
