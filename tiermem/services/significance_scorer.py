"""
Significance Scorer deciding which conversation turns are worth remembering.

Scores combine length, emotional/event keywords, intensity heuristics,
punctuation, inherited significance from the previous speaker and named
entities. Everything here is a pure function of (turn, context, config).
"""

import math
import re
from typing import Dict, List, Optional, Sequence

from ..models.core import (DetectedEvent, EmotionalChange, EventDetectionResult, NamedEntity, Turn, VADState)
from ..utils.config import MemoryControllerConfig

EMOTIONAL_KEYWORDS: Dict[str, List[str]] = {
    'high_valence': ['happy', 'joy', 'excited', 'love', 'wonderful', 'amazing', 'fantastic'],
    'low_valence': ['sad', 'angry', 'hate', 'terrible', 'awful', 'depressed', 'frustrated'],
    'high_arousal': ['excited', 'energetic', 'thrilled', 'panicked', 'furious', 'ecstatic'],
    'high_dominance': ['powerful', 'confident', 'strong', 'control', 'command', 'dominant'],
}

SIGNIFICANT_EVENTS: Dict[str, List[str]] = {
    'relationship_change': ['friend', 'enemy', 'love', 'hate', 'marry', 'divorce', 'meet', 'leave'],
    'conflict': ['fight', 'argue', 'conflict', 'war', 'battle', 'dispute', 'disagree'],
    'resolution': ['resolve', 'agree', 'peace', 'solution', 'compromise', 'reconcile'],
    'achievement': ['win', 'success', 'accomplish', 'achieve', 'complete', 'victory'],
    'loss': ['lose', 'fail', 'death', 'end', 'defeat', 'failure'],
}

EXTREME_WORDS = ['absolutely', 'completely', 'totally', 'extremely', 'incredibly', 'unbelievably']
PERSON_INDICATORS = ['said', 'told', 'asked', 'replied', 'thinks', 'feels', 'went']
PLACE_INDICATORS = ['in', 'at', 'to', 'from', 'near', 'city', 'town', 'country']

# "<Name> is a ...", "<Name> lives in ...", "<Name>'s favorite color is ..."
FACT_PATTERNS = [
    (re.compile(r"\b([A-Z][a-z]+)'s favou?rite (\w+) is ([^.!?\n]+)"), None),
    (re.compile(r'\b([A-Z][a-z]+) lives in ([^.!?\n]+)'), 'residence'),
    (re.compile(r'\b([A-Z][a-z]+) works (?:as|at) ([^.!?\n]+)'), 'occupation'),
    (re.compile(r'\b([A-Z][a-z]+) is (?:a|an) ([^.!?\n]+)'), 'description'),
]

_PROPER_NOUN = re.compile(r'\b[A-Z][a-z]+\b')
_QUOTED = re.compile(r'"([^"]+)"')
_CAPS_WORD = re.compile(r'\b[A-Z]{2,}\b')
_REPEATED_PUNCT = re.compile(r'[!?]{2,}|\.{3,}')

EVENT_CONFIDENCE = 0.7
ENTITY_WINDOW = 50
NEUTRAL_VAD = VADState(valence=0.0, arousal=0.0, dominance=0.0)


def calculate_vad_delta(current: VADState, previous: VADState) -> float:
    """Euclidean distance between two VAD states."""
    return math.sqrt((current.valence - previous.valence)**2 + (current.arousal - previous.arousal)**2 +
                     (current.dominance - previous.dominance)**2)


def estimate_vad(content: str) -> VADState:
    """Estimate a VAD snapshot from keyword polarity in text."""
    lower_content = content.lower()
    valence = 0.3 * sum(1 for word in EMOTIONAL_KEYWORDS['high_valence'] if word in lower_content)
    valence -= 0.3 * sum(1 for word in EMOTIONAL_KEYWORDS['low_valence'] if word in lower_content)
    arousal = 0.3 * sum(1 for word in EMOTIONAL_KEYWORDS['high_arousal'] if word in lower_content)
    dominance = 0.3 * sum(1 for word in EMOTIONAL_KEYWORDS['high_dominance'] if word in lower_content)
    return VADState(valence=valence, arousal=arousal, dominance=dominance).clamped()


def character_id_for(name: str) -> str:
    return f'character:{name.lower()}'


class SignificanceScorer:
    """Heuristic significance scoring, event detection and entity extraction."""

    def __init__(self, config: MemoryControllerConfig):
        self.config = config

    def score_conversation_turn(self, turn: Turn, context: Sequence[Turn]) -> float:
        """Score a conversation turn for significance on a 0-10 scale.

        Args:
            turn: Turn being scored
            context: Prior turns of the same session, oldest first

        Returns:
            Significance score clamped to 10
        """
        # The inherited bonus chains back through alternating speakers, so
        # score that chain oldest-first instead of recursing.
        chain = [turn]
        remaining = list(context)
        while remaining and remaining[-1].role != chain[-1].role:
            chain.append(remaining.pop())

        previous_score: Optional[float] = None
        for current in reversed(chain):
            score = self._intrinsic_score(current.content)
            if previous_score is not None:
                score += min(1.0, previous_score * 0.2)
            previous_score = min(10.0, score)
        return previous_score

    def detect_events(self, turn: Turn, context: Sequence[Turn]) -> EventDetectionResult:
        """Score a turn and extract events, emotional changes and named entities.

        Args:
            turn: Turn being analysed
            context: Prior turns of the same session, oldest first

        Returns:
            EventDetectionResult for the turn
        """
        significance_score = self.score_conversation_turn(turn, context)
        return EventDetectionResult(is_significant=significance_score >= self.config.l2_significance_threshold,
                                    significance_score=significance_score,
                                    detected_events=self.extract_events(turn.content),
                                    emotional_changes=self.detect_emotional_changes(turn.content, context),
                                    named_entities=self.extract_named_entities(turn.content))

    def _intrinsic_score(self, content: str) -> float:
        score = 1.0
        score += min(2.0, len(content.split()) / 50)
        score += self.score_keywords(content)
        score += self.score_emotional_intensity(content)
        score += min(1.0, (content.count('?') + content.count('!')) * 0.3)
        score += min(1.0, len(self.extract_named_entities(content)) * 0.2)
        return score

    def score_keywords(self, content: str) -> float:
        lower_content = content.lower()
        score = 0.0
        for keywords in EMOTIONAL_KEYWORDS.values():
            score += 0.5 * sum(1 for keyword in keywords if keyword in lower_content)
        for keywords in SIGNIFICANT_EVENTS.values():
            score += 0.8 * sum(1 for keyword in keywords if keyword in lower_content)
        return min(3.0, score)

    def score_emotional_intensity(self, content: str) -> float:
        intensity = min(1.0, len(_CAPS_WORD.findall(content)) * 0.3)
        intensity += min(1.0, len(_REPEATED_PUNCT.findall(content)) * 0.4)
        lower_content = content.lower()
        intensity += 0.3 * sum(1 for word in EXTREME_WORDS if word in lower_content)
        return min(2.0, intensity)

    def extract_events(self, content: str) -> List[DetectedEvent]:
        """Detect keyword-category events and fact assertions in text."""
        events = []
        lower_content = content.lower()
        for event_type, keywords in SIGNIFICANT_EVENTS.items():
            for keyword in keywords:
                if keyword in lower_content:
                    events.append(
                        DetectedEvent(type=event_type,
                                      confidence=EVENT_CONFIDENCE,
                                      description=f'Detected {event_type} event: "{keyword}"',
                                      entities_involved=self.find_nearby_entities(content, keyword)))
        events.extend(self.extract_fact_assertions(content))
        return events

    def extract_fact_assertions(self, content: str) -> List[DetectedEvent]:
        facts = []
        claimed = set()
        for pattern, attribute in FACT_PATTERNS:
            for match in pattern.finditer(content):
                if match.start() in claimed:
                    continue
                claimed.add(match.start())
                entity = match.group(1)
                if attribute is None:
                    fact_attribute, value = f'favorite_{match.group(2).lower()}', match.group(3)
                else:
                    fact_attribute, value = attribute, match.group(2)
                value = value.strip()
                facts.append(
                    DetectedEvent(type='fact_assertion',
                                  confidence=EVENT_CONFIDENCE,
                                  description=f'{entity} {fact_attribute}: {value}',
                                  entities_involved=[entity],
                                  attribute=fact_attribute,
                                  value=value))
        return facts

    def detect_emotional_changes(self, content: str, context: Sequence[Turn]) -> List[EmotionalChange]:
        """Emit an EmotionalChange for each person whose estimated VAD moved past the threshold."""
        changes = []
        current_vad = estimate_vad(content)
        seen = set()
        for entity in self.extract_named_entities(content):
            if entity.type != 'PERSON' or entity.text in seen:
                continue
            seen.add(entity.text)
            previous_vad = self.find_previous_vad(entity.text, context) or NEUTRAL_VAD
            delta = calculate_vad_delta(current_vad, previous_vad)
            if delta >= self.config.l2_emotional_delta_threshold:
                changes.append(
                    EmotionalChange(character_id=character_id_for(entity.text),
                                    previous_vad=previous_vad,
                                    new_vad=current_vad,
                                    delta_magnitude=delta,
                                    trigger=content[max(0, entity.start_pos - 20):entity.end_pos + 20]))
        return changes

    def extract_named_entities(self, content: str) -> List[NamedEntity]:
        """Capitalised words become PERSON/PLACE entities, quoted strings become OBJECTs."""
        entities = []
        for match in _PROPER_NOUN.finditer(content):
            noun = match.group(0)
            start_pos = content.find(noun)
            entities.append(
                NamedEntity(text=noun,
                            type=self.classify_entity(noun, content),
                            confidence=0.8,
                            start_pos=start_pos,
                            end_pos=start_pos + len(noun)))
        for match in _QUOTED.finditer(content):
            entities.append(
                NamedEntity(text=match.group(1), type='OBJECT', confidence=0.6, start_pos=match.start(), end_pos=match.end()))
        return entities

    @staticmethod
    def classify_entity(entity: str, content: str) -> str:
        lower_entity = entity.lower()
        lower_content = content.lower()
        if any(f'{lower_entity} {word}' in lower_content or f'{word} {lower_entity}' in lower_content
               for word in PERSON_INDICATORS):
            return 'PERSON'
        if any(f'{word} {lower_entity}' in lower_content or f'{lower_entity} {word}' in lower_content
               for word in PLACE_INDICATORS):
            return 'PLACE'
        return 'PERSON'

    @staticmethod
    def find_nearby_entities(content: str, keyword: str) -> List[str]:
        """Distinct proper nouns within ENTITY_WINDOW characters of the first keyword hit."""
        keyword_index = content.lower().find(keyword.lower())
        if keyword_index == -1:
            return []
        start = max(0, keyword_index - ENTITY_WINDOW)
        end = min(len(content), keyword_index + len(keyword) + ENTITY_WINDOW)
        return list(dict.fromkeys(_PROPER_NOUN.findall(content[start:end])))

    @staticmethod
    def find_previous_vad(entity_name: str, context: Sequence[Turn]) -> Optional[VADState]:
        """VAD estimate from the most recent prior turn mentioning the entity."""
        lower_name = entity_name.lower()
        for turn in reversed(context):
            if lower_name in turn.content.lower():
                return estimate_vad(turn.content)
        return None
