"""
Core data models for the tiered conversational memory engine.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..utils.token_counter import estimate_tokens

ROLES = ('user', 'assistant', 'system')
OPERATION_KINDS = ('read', 'write', 'update', 'delete')
TIERS = ('L1', 'L2', 'L3')
CONTENT_TYPES = ('summary', 'insight', 'event')


@dataclass(frozen=True)
class Turn:
    """A single conversational turn. Immutable once created."""
    id: str
    role: str  # user | assistant | system
    content: str
    timestamp: datetime
    token_count: int
    character_id: Optional[str] = None  # Owning entity, if the turn belongs to a character

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f'Invalid turn role: {self.role}')
        if self.token_count < 0:
            raise ValueError('Turn token_count must be non-negative')


@dataclass(frozen=True)
class VADState:
    """Valence/Arousal/Dominance emotional state."""
    valence: float = 0.0  # -1 to 1
    arousal: float = 0.0  # 0 to 1
    dominance: float = 0.0  # 0 to 1

    def clamped(self) -> 'VADState':
        return VADState(valence=max(-1.0, min(1.0, self.valence)),
                        arousal=max(0.0, min(1.0, self.arousal)),
                        dominance=max(0.0, min(1.0, self.dominance)))


@dataclass
class Character:
    """Graph vertex for a character, upserted by id."""
    id: str
    name: str
    emotional_state: VADState
    created_at: datetime
    last_updated: datetime


@dataclass
class FactVersion:
    value: str
    timestamp: datetime
    confidence: Optional[float] = None


@dataclass
class FactNode:
    """Graph vertex for a fact about an entity."""
    id: str
    entity: str
    attribute: str
    current_value: str
    history: List[FactVersion]
    importance_score: float  # 0-10
    created_at: datetime
    last_updated: datetime


@dataclass
class RelationshipEdge:
    """Graph edge between two characters."""
    id: str
    from_entity: str
    to_entity: str
    relationship_type: str
    strength: float  # 0-1
    created_at: datetime
    last_updated: datetime


@dataclass
class FragmentMetadata:
    doc_id: str
    source_session_id: str
    content_type: str  # summary | insight | event
    tags: List[str]
    importance_score: float
    created_at: datetime
    last_updated: datetime
    last_accessed: datetime
    access_count: int = 0


@dataclass
class VectorFragment:
    """A short summary stored in the semantic archive together with its embedding."""
    id: str
    embedding: List[float]
    content: str
    metadata: FragmentMetadata
    similarity_score: Optional[float] = None


@dataclass(frozen=True)
class MemoryOperation:
    """Append-only audit record for a side-effecting memory action."""
    kind: str  # read | write | update | delete
    tier: str  # L1 | L2 | L3
    operation_name: str
    details: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def failed(self) -> bool:
        return self.details.get('status') == 'failed'


@dataclass(frozen=True)
class NamedEntity:
    text: str
    type: str  # PERSON | PLACE | OBJECT
    confidence: float
    start_pos: int
    end_pos: int


@dataclass(frozen=True)
class DetectedEvent:
    type: str
    confidence: float
    description: str
    entities_involved: List[str]
    attribute: Optional[str] = None  # Only set for fact assertions
    value: Optional[str] = None


@dataclass(frozen=True)
class EmotionalChange:
    character_id: str
    previous_vad: VADState
    new_vad: VADState
    delta_magnitude: float
    trigger: str


@dataclass(frozen=True)
class EventDetectionResult:
    is_significant: bool
    significance_score: float
    detected_events: List[DetectedEvent]
    emotional_changes: List[EmotionalChange]
    named_entities: List[NamedEntity]


@dataclass(frozen=True)
class FusionWeights:
    """Per-tier contribution to the fused relevance score."""
    w_L1: float
    w_L2: float
    w_L3: float


@dataclass
class RetrievalQuery:
    query_text: str
    session_id: str
    fusion_weights: Optional[FusionWeights] = None  # Falls back to configured defaults
    max_tokens: Optional[int] = None
    min_relevance_threshold: Optional[float] = None
    character_id: Optional[str] = None  # Optional entity scope for L2/L3
    timeout_seconds: Optional[float] = None


@dataclass
class L1RetrievalResult:
    turns: List[Turn] = field(default_factory=list)
    relevance_score: float = 0.0
    token_count: int = 0


@dataclass
class L2RetrievalResult:
    characters: List[Character] = field(default_factory=list)
    facts: List[FactNode] = field(default_factory=list)
    relationships: List[RelationshipEdge] = field(default_factory=list)
    relevance_score: float = 0.0
    token_count: int = 0


@dataclass
class L3RetrievalResult:
    fragments: List[VectorFragment] = field(default_factory=list)
    relevance_score: float = 0.0
    token_count: int = 0


@dataclass
class MemoryRetrievalResult:
    l1: L1RetrievalResult
    l2: L2RetrievalResult
    l3: L3RetrievalResult
    fusion_weights: FusionWeights
    final_score: float
    total_tokens: int


@dataclass
class GraphIngestionResult:
    operations: List[MemoryOperation] = field(default_factory=list)
    facts_updated: List[str] = field(default_factory=list)
    relationships_modified: List[str] = field(default_factory=list)


@dataclass
class MemoryIngestionResult:
    success: bool
    operations_performed: List[MemoryOperation]
    significance_score: float = 0.0
    events_detected: List[DetectedEvent] = field(default_factory=list)
    emotional_changes: List[EmotionalChange] = field(default_factory=list)
    facts_updated: List[str] = field(default_factory=list)
    relationships_modified: List[str] = field(default_factory=list)


@dataclass
class ChatSession:
    id: str
    turns: List[Turn]
    created_at: datetime
    last_updated: datetime
    total_tokens: int


@dataclass(frozen=True)
class TokenCost:
    total_tokens: int
    l1_tokens: int
    l2_tokens: int
    l3_tokens: int
    estimated_cost: float


def new_turn(role: str,
             content: str,
             token_count: Optional[int] = None,
             timestamp: Optional[datetime] = None,
             character_id: Optional[str] = None) -> Turn:
    """Build a Turn with a fresh id, estimating tokens when not supplied."""
    if token_count is None:
        token_count = estimate_tokens(content)
    return Turn(id=str(uuid.uuid4()),
                role=role,
                content=content,
                timestamp=timestamp or datetime.now(),
                token_count=token_count,
                character_id=character_id)
