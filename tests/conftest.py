"""Shared fixtures: an in-memory transactional graph store and a fully wired controller."""

import copy
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import List, Optional

import pytest

from tiermem.models.core import Character, RelationshipEdge, Turn, new_turn
from tiermem.services.graph_memory import GraphMemory
from tiermem.services.memory_controller import MemoryController
from tiermem.services.vector_memory import VectorMemory
from tiermem.utils.config import ConfigStore, MemoryControllerConfig
from tiermem.utils.hash_embed import HashEmbed
from tiermem.utils.neptune_client import NeptuneError
from tiermem.utils.vector_index import InMemoryVectorIndex

DIMENSION = 64


class FakeGraphClient:
    """Same surface as NeptuneClient, backed by dicts; transactions stage a deep copy."""

    def __init__(self):
        self.state = {'characters': {}, 'facts': {}, 'relationships': {}, 'turns': {}}
        self.fail_on = set()
        self.delay = 0.0
        self.commits = 0

    def _check(self, name: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        if name in self.fail_on:
            raise NeptuneError(f'Injected failure in {name}')

    @contextmanager
    def transaction(self):
        staged = copy.deepcopy(self.state)
        try:
            yield staged
        except NeptuneError:
            raise
        except Exception as e:
            raise NeptuneError(f'Transaction failed: {e}')
        self.state = staged
        self.commits += 1

    def upsert_character(self, g, character_id, name, vad):
        self._check('upsert_character')
        now = datetime.now()
        existing = g['characters'].get(character_id)
        if existing is None:
            g['characters'][character_id] = Character(id=character_id,
                                                      name=name,
                                                      emotional_state=vad,
                                                      created_at=now,
                                                      last_updated=now)
        else:
            existing.emotional_state = vad
            existing.last_updated = now

    def create_fact(self, g, fact, session_id, turn_id):
        self._check('create_fact')
        g['facts'][fact.id] = fact

    def create_relationship(self, g, relationship: RelationshipEdge, session_id, turn_id) -> bool:
        self._check('create_relationship')
        if relationship.from_entity not in g['characters'] or relationship.to_entity not in g['characters']:
            return False
        g['relationships'][relationship.id] = relationship
        return True

    def store_turn(self, g, turn: Turn, session_id, significance_score):
        self._check('store_turn')
        g['turns'][turn.id] = (session_id, turn, significance_score)

    def find_characters(self, query_text: str, limit: int = 10) -> List[Character]:
        self._check('find_characters')
        needle = query_text.lower()
        matches = [c for c in self.state['characters'].values() if needle in c.name.lower()]
        return sorted(matches, key=lambda c: c.last_updated, reverse=True)[:limit]

    def find_facts(self, query_text: str, limit: int = 25):
        self._check('find_facts')
        needle = query_text.lower()
        matches = [
            f for f in self.state['facts'].values()
            if needle in f.attribute.lower() or needle in f.current_value.lower() or needle in f.entity.lower()
        ]
        return sorted(matches, key=lambda f: f.last_updated, reverse=True)[:limit]

    def find_relationships(self, query_text: str, limit: int = 10):
        self._check('find_relationships')
        needle = query_text.lower()
        characters = self.state['characters']
        matches = []
        for r in self.state['relationships'].values():
            names = [characters[r.from_entity].name.lower(), characters[r.to_entity].name.lower()]
            if needle in r.relationship_type or any(needle in name for name in names):
                matches.append(r)
        return sorted(matches, key=lambda r: r.strength, reverse=True)[:limit]

    def get_fact(self, fact_id: str):
        self._check('get_fact')
        return self.state['facts'].get(fact_id)

    def get_all_characters(self):
        self._check('get_all_characters')
        return sorted(self.state['characters'].values(), key=lambda c: c.name)

    def count_elements(self):
        self._check('count_elements')
        return {
            'characters': len(self.state['characters']),
            'facts': len(self.state['facts']),
            'relationships': len(self.state['relationships']),
            'conversation_turns': len(self.state['turns'])
        }

    def health_check(self) -> bool:
        return True

    def close(self):
        pass


def make_turn(content: str, role: str = 'user', token_count: Optional[int] = None, age: timedelta = timedelta(0)) -> Turn:
    return new_turn(role, content, token_count=token_count, timestamp=datetime.now() - age)


@pytest.fixture
def config():
    return MemoryControllerConfig(l3_vector_dimension=DIMENSION, store_timeout_seconds=2.0)


@pytest.fixture
def config_store(config):
    return ConfigStore(config)


@pytest.fixture
def graph_client():
    return FakeGraphClient()


@pytest.fixture
def graph_memory(graph_client):
    memory = GraphMemory(graph_client)
    yield memory
    memory.close()


@pytest.fixture
def vector_memory(config_store):
    return VectorMemory(HashEmbed(DIMENSION), InMemoryVectorIndex(DIMENSION), config_store.current)


@pytest.fixture
def controller(graph_memory, vector_memory, config_store):
    memory_controller = MemoryController(graph_memory, vector_memory, config_store)
    yield memory_controller
    memory_controller.close()
