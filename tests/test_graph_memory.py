"""Tests for L2 graph memory ingestion, retrieval and introspection."""

import pytest

from tiermem.models.core import DetectedEvent, EmotionalChange, EventDetectionResult, NamedEntity, RetrievalQuery, VADState
from tiermem.services.graph_memory import GraphMemory, GraphMemoryError

from conftest import make_turn

NEUTRAL = VADState()


def change(name, valence=0.6):
    return EmotionalChange(character_id=f'character:{name.lower()}',
                           previous_vad=NEUTRAL,
                           new_vad=VADState(valence=valence),
                           delta_magnitude=abs(valence),
                           trigger=f'{name} trigger')


def entity(name):
    return NamedEntity(text=name, type='PERSON', confidence=0.8, start_pos=0, end_pos=len(name))


def detection(events=(), changes=(), entities=(), score=7.0):
    return EventDetectionResult(is_significant=True,
                                significance_score=score,
                                detected_events=list(events),
                                emotional_changes=list(changes),
                                named_entities=list(entities))


def test_ingest_upserts_characters_and_stores_turn(graph_memory, graph_client):
    """Emotional changes upsert characters; the turn is always stored."""
    turn = make_turn('Alice, I love you so much, this is wonderful!')

    result = graph_memory.ingest_turn(turn, detection(changes=[change('Alice')], entities=[entity('Alice')]), 's1')

    assert [op.operation_name for op in result.operations] == ['updateCharacterEmotion', 'storeTurn']
    assert result.operations[0].kind == 'update'
    alice = graph_client.state['characters']['character:alice']
    assert alice.name == 'Alice'
    assert alice.emotional_state.valence == pytest.approx(0.6)
    assert graph_client.state['turns'][turn.id][0] == 's1'


def test_character_upsert_is_last_write_wins(graph_memory, graph_client):
    """A second change overwrites the stored emotional state."""
    graph_memory.ingest_turn(make_turn('a'), detection(changes=[change('Alice', 0.6)]), 's1')
    graph_memory.ingest_turn(make_turn('b'), detection(changes=[change('Alice', -0.3)]), 's1')

    assert len(graph_client.state['characters']) == 1
    assert graph_client.state['characters']['character:alice'].emotional_state.valence == pytest.approx(-0.3)


def test_fact_assertion_creates_fact_with_first_version(graph_memory):
    """Facts record their initial value in the history."""
    event = DetectedEvent(type='fact_assertion',
                          confidence=0.7,
                          description='Alice residence: Paris',
                          entities_involved=['Alice'],
                          attribute='residence',
                          value='Paris')

    result = graph_memory.ingest_turn(make_turn('Alice lives in Paris.'), detection(events=[event]), 's1')

    assert len(result.facts_updated) == 1
    fact = graph_memory.get_fact_with_history(result.facts_updated[0])
    assert (fact.entity, fact.attribute, fact.current_value) == ('Alice', 'residence', 'Paris')
    assert [v.value for v in fact.history] == ['Paris']
    assert fact.importance_score == pytest.approx(7.0)


def test_relationship_requires_both_characters(graph_memory, graph_client):
    """The edge is only created when both endpoints exist."""
    event = DetectedEvent(type='relationship_change',
                          confidence=0.7,
                          description='Detected relationship_change event: "friend"',
                          entities_involved=['Alice', 'Bob'])

    missing = graph_memory.ingest_turn(make_turn('x'), detection(events=[event]), 's1')
    present = graph_memory.ingest_turn(make_turn('y'), detection(events=[event], changes=[change('Alice'), change('Bob')]),
                                       's1')

    assert missing.relationships_modified == []
    assert len(present.relationships_modified) == 1
    edge = graph_client.state['relationships'][present.relationships_modified[0]]
    assert (edge.from_entity, edge.to_entity, edge.relationship_type) == ('character:alice', 'character:bob',
                                                                          'relationship_change')
    assert 'createRelationship' in [op.operation_name for op in present.operations]


def test_relationship_with_one_entity_is_a_no_op(graph_memory, graph_client):
    """Fewer than two entities never touches the graph edges."""
    event = DetectedEvent(type='relationship_change', confidence=0.7, description='love', entities_involved=['Alice'])

    result = graph_memory.ingest_turn(make_turn('x'), detection(events=[event], changes=[change('Alice')]), 's1')

    assert result.relationships_modified == []
    assert graph_client.state['relationships'] == {}


def test_failed_transaction_rolls_everything_back(graph_memory, graph_client):
    """A failure on the last statement leaves no partial writes."""
    graph_client.fail_on = {'store_turn'}

    with pytest.raises(GraphMemoryError):
        graph_memory.ingest_turn(make_turn('x'), detection(changes=[change('Alice')]), 's1')

    assert graph_client.state['characters'] == {}
    assert graph_client.state['turns'] == {}


def test_retrieve_scores_and_estimates_tokens(graph_memory):
    """Relevance is items/10 and tokens follow the per-item costs."""
    graph_memory.ingest_turn(make_turn('x'), detection(changes=[change('Alice'), change('Alicia')]), 's1')

    result = graph_memory.retrieve(RetrievalQuery(query_text='ali', session_id='s1'))

    assert len(result.characters) == 2
    assert result.relevance_score == pytest.approx(0.2)
    assert result.token_count == 100


def test_retrieve_relevance_caps_at_one():
    """More than ten matches still score 1."""
    assert GraphMemory.calculate_relevance_score([object()] * 6, [object()] * 6, []) == 1.0
    assert GraphMemory.estimate_token_count([object()], [object()] * 2, [object()] * 3) == 50 + 60 + 75


def test_retrieve_character_scope(graph_memory):
    """A character scope filters out other characters."""
    graph_memory.ingest_turn(make_turn('x'), detection(changes=[change('Alice'), change('Alicia')]), 's1')

    result = graph_memory.retrieve(RetrievalQuery(query_text='ali', session_id='s1', character_id='character:alicia'))

    assert [c.id for c in result.characters] == ['character:alicia']


def test_retrieve_failure_is_typed(graph_memory, graph_client):
    """Adapter errors surface as GraphMemoryError."""
    graph_client.fail_on = {'find_facts'}

    with pytest.raises(GraphMemoryError):
        graph_memory.retrieve(RetrievalQuery(query_text='x', session_id='s1'))


def test_inspect_and_statistics(graph_memory):
    """Counts cover every element kind."""
    graph_memory.ingest_turn(make_turn('x'), detection(changes=[change('Alice')]), 's1')

    stats = graph_memory.get_statistics()

    assert stats['characters'] == 1
    assert stats['conversation_turns'] == 1
    assert stats['total_nodes'] == 2
    assert [c.id for c in graph_memory.get_all_characters()] == ['character:alice']
