"""
L1 Working Memory: per-session sliding window of recent turns.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..models.core import ChatSession, L1RetrievalResult, RetrievalQuery, Turn
from ..utils.config import MemoryControllerConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class SessionBuffer:
    """Turn buffer for one session. Mutations happen under its own lock.

    A closed buffer has been removed from the session map and must not take new turns.
    """
    turns: List[Turn] = field(default_factory=list)
    total_tokens: int = 0
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class WorkingMemory:
    """Ephemeral session buffers keyed by session id. Nothing here is persisted."""

    def __init__(self, config_provider: Callable[[], MemoryControllerConfig]):
        """
        Initialize working memory.

        Args:
            config_provider: Callable returning the current configuration snapshot
        """
        self._config_provider = config_provider
        self._sessions: Dict[str, SessionBuffer] = {}
        self._sessions_lock = threading.Lock()

    def _get_or_create(self, session_id: str) -> SessionBuffer:
        with self._sessions_lock:
            buffer = self._sessions.get(session_id)
            if buffer is None:
                buffer = SessionBuffer()
                self._sessions[session_id] = buffer
                logger.debug(f'Created working memory session {session_id}')
            return buffer

    def add_turn(self, session_id: str, turn: Turn) -> List[Turn]:
        """Append a turn and evict the oldest turns beyond the configured limits.

        At least one turn always survives, even if it alone exceeds the token budget.

        Args:
            session_id: Session owning the turn
            turn: Turn to append

        Returns:
            Turns evicted by this call, oldest first
        """
        cfg = self._config_provider()
        evicted = []
        while True:
            buffer = self._get_or_create(session_id)
            with buffer.lock:
                # Reaped between lookup and lock; retry against a fresh buffer.
                if buffer.closed:
                    continue
                buffer.turns.append(turn)
                buffer.total_tokens += turn.token_count

                while len(buffer.turns) > cfg.l1_max_turns:
                    removed = buffer.turns.pop(0)
                    buffer.total_tokens -= removed.token_count
                    evicted.append(removed)

                while buffer.total_tokens > cfg.l1_max_tokens and len(buffer.turns) > 1:
                    removed = buffer.turns.pop(0)
                    buffer.total_tokens -= removed.token_count
                    evicted.append(removed)
                break

        if evicted:
            logger.debug(f'Evicted {len(evicted)} turns from session {session_id}')
        return evicted

    def retrieve(self, query: RetrievalQuery) -> L1RetrievalResult:
        """Return every buffered turn of the session with a recency-weighted keyword relevance."""
        buffer = self._sessions.get(query.session_id)
        if buffer is None:
            return L1RetrievalResult()

        with buffer.lock:
            turns = list(buffer.turns)
            total_tokens = buffer.total_tokens

        if not turns:
            return L1RetrievalResult()

        return L1RetrievalResult(turns=turns,
                                 relevance_score=self.calculate_relevance_score(turns, query.query_text),
                                 token_count=total_tokens)

    @staticmethod
    def calculate_relevance_score(turns: List[Turn], query_text: str) -> float:
        """Keyword overlap between query and turns, weighted towards recent turns, in [0, 1]."""
        query_words = query_text.lower().split()
        if not turns or not query_words:
            return 0.0

        total_relevance = 0.0
        for index, turn in enumerate(turns):
            content = turn.content.lower()
            matches = sum(1 for word in query_words if word in content)
            total_relevance += matches * (index + 1) / len(turns)

        return min(1.0, total_relevance / (len(turns) * len(query_words)))

    def get_history(self, session_id: str) -> List[Turn]:
        buffer = self._sessions.get(session_id)
        if buffer is None:
            return []
        with buffer.lock:
            return list(buffer.turns)

    def get_all_sessions(self) -> List[ChatSession]:
        """Non-empty sessions, most recently active first."""
        with self._sessions_lock:
            items = list(self._sessions.items())

        sessions = []
        for session_id, buffer in items:
            with buffer.lock:
                turns = list(buffer.turns)
                total_tokens = buffer.total_tokens
            if turns:
                sessions.append(
                    ChatSession(id=session_id,
                                turns=turns,
                                created_at=turns[0].timestamp,
                                last_updated=turns[-1].timestamp,
                                total_tokens=total_tokens))

        sessions.sort(key=lambda s: s.last_updated, reverse=True)
        return sessions

    def clear_old_sessions(self, max_age: timedelta = timedelta(hours=24), now: Optional[datetime] = None) -> int:
        """Remove sessions whose most recent turn is older than max_age.

        Args:
            max_age: Maximum idle time to keep a session
            now: Reference time (defaults to the current time)

        Returns:
            Number of sessions removed
        """
        now = now or datetime.now()
        with self._sessions_lock:
            stale = []
            for session_id, buffer in self._sessions.items():
                with buffer.lock:
                    if not buffer.turns or now - buffer.turns[-1].timestamp > max_age:
                        buffer.closed = True
                        stale.append(session_id)
            for session_id in stale:
                del self._sessions[session_id]

        if stale:
            logger.info(f'Cleared {len(stale)} idle working memory sessions')
        return len(stale)

    def inspect(self) -> dict:
        cfg = self._config_provider()
        with self._sessions_lock:
            items = list(self._sessions.items())

        active_sessions = []
        for session_id, buffer in items:
            with buffer.lock:
                active_sessions.append({
                    'session_id': session_id,
                    'turn_count': len(buffer.turns),
                    'total_tokens': buffer.total_tokens,
                    'recent_activity': buffer.turns[-1].timestamp if buffer.turns else None
                })

        return {
            'total_sessions': len(items),
            'active_sessions': active_sessions,
            'config': {
                'max_turns': cfg.l1_max_turns,
                'max_tokens': cfg.l1_max_tokens
            }
        }

    def get_statistics(self) -> dict:
        with self._sessions_lock:
            buffers = list(self._sessions.values())

        total_turns = 0
        total_tokens = 0
        for buffer in buffers:
            with buffer.lock:
                total_turns += len(buffer.turns)
                total_tokens += buffer.total_tokens

        session_count = len(buffers)
        return {
            'total_sessions': session_count,
            'total_turns': total_turns,
            'total_tokens': total_tokens,
            'avg_turns_per_session': total_turns / session_count if session_count else 0,
            'avg_tokens_per_session': total_tokens / session_count if session_count else 0
        }


class SessionReaper:
    """Background thread that periodically clears idle working memory sessions."""

    def __init__(self, working_memory: WorkingMemory, max_age: timedelta, interval: timedelta):
        self.working_memory = working_memory
        self.max_age = max_age
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='tiermem-session-reaper', daemon=True)
        self._thread.start()
        logger.info(f'Session reaper started (interval={self.interval}, max_age={self.max_age})')

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> int:
        return self.working_memory.clear_old_sessions(self.max_age)

    def _run(self) -> None:
        while not self._stop.wait(self.interval.total_seconds()):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f'Session reaper pass failed: {e}')
