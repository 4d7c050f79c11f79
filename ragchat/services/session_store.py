"""
SESSION STORE MODULE
====================

In-memory conversation state: session id -> ordered message history plus
timestamps, and a separate per-session RAG on/off flag.

LIFECYCLE OF A SESSION:
  absent -> active (created lazily by get_or_create, seeded with the system prompt)
  active -> gone   (clear(), TTL expiry, or capacity eviction by sweep())
  Every get_or_create() touches the session and re-arms its TTL.

EVICTION:
  start() launches one daemon thread that calls sweep() every
  sweep_interval_seconds. A sweep drops sessions idle longer than ttl_seconds,
  then, while more than max_sessions remain, drops the least recently used.
  Entries are removed one key at a time; a session touched while the sweep runs
  is re-checked right before removal and survives. shutdown() stops the thread.

CONCURRENCY:
  The session and flag dicts are shared by request threads. Creation of a
  session id is guarded (double-checked) so concurrent first access creates it
  once; everything else is single-key dict operations. Two concurrent requests
  on the same session are not ordered against each other.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from ragchat.models import ChatMessage

logger = logging.getLogger("ragchat")

Clock = Callable[[], float]


# ==============================================================================
# SESSION
# ==============================================================================

@dataclass
class Session:
    session_id: str
    messages: List[ChatMessage]
    created_at: float
    last_access_at: float = field(default=0.0)

    def touch(self, now: float) -> None:
        self.last_access_at = now

    def is_expired(self, ttl_seconds: float, now: float) -> bool:
        return now - self.last_access_at > ttl_seconds


# ==============================================================================
# SESSION STORE CLASS
# ==============================================================================

class SessionStore:
    """
    Owns every Session and RAG flag. Nothing outside this class holds a
    reference to the underlying dicts.
    """

    def __init__(
        self,
        system_prompt: str,
        max_history: int = 20,
        ttl_seconds: float = 30 * 60,
        max_sessions: int = 1000,
        sweep_interval_seconds: float = 5 * 60,
        clock: Clock = time.monotonic,
    ):
        if max_history < 2:
            raise ValueError("max_history must leave room for the system prompt and one message")
        self.system_prompt = system_prompt
        self.max_history = max_history
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._sessions: Dict[str, Session] = {}
        self._rag_enabled: Dict[str, bool] = {}
        self._create_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    # ------------------------------------------------------------------------------
    # SESSION ACCESS
    # ------------------------------------------------------------------------------

    def get_or_create(self, session_id: str) -> Session:
        """Return the session for session_id, creating it on first use, and touch it."""
        session = self._sessions.get(session_id)
        if session is None:
            with self._create_lock:
                session = self._sessions.get(session_id)
                if session is None:
                    session = self._create(session_id)
                    self._sessions[session_id] = session
        session.touch(self._clock())
        return session

    def _create(self, session_id: str) -> Session:
        logger.info("Creating new session: %s", session_id)
        now = self._clock()
        return Session(
            session_id=session_id,
            messages=[ChatMessage(role="system", content=self.system_prompt)],
            created_at=now,
            last_access_at=now,
        )

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def append(self, session: Session, message: ChatMessage) -> None:
        session.messages.append(message)

    def trim(self, session: Session) -> None:
        """Keep the system prompt plus the most recent max_history - 1 messages."""
        messages = session.messages
        if len(messages) > self.max_history:
            session.messages = [messages[0]] + messages[-(self.max_history - 1):]

    def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    def session_ids(self) -> Set[str]:
        return set(self._sessions.keys())

    def count(self) -> int:
        return len(self._sessions)

    def clear(self, session_id: str) -> None:
        """Remove the session and its RAG flag. Clearing an unknown id is a no-op."""
        logger.info("Clearing session: %s", session_id)
        self._sessions.pop(session_id, None)
        self._rag_enabled.pop(session_id, None)

    # ------------------------------------------------------------------------------
    # RAG FLAG
    # ------------------------------------------------------------------------------

    def set_rag_enabled(self, session_id: str, enabled: bool) -> None:
        self._rag_enabled[session_id] = enabled
        logger.info("Session %s RAG %s", session_id, "enabled" if enabled else "disabled")

    def is_rag_enabled(self, session_id: str) -> bool:
        return self._rag_enabled.get(session_id, True)

    # ------------------------------------------------------------------------------
    # EVICTION
    # ------------------------------------------------------------------------------

    def sweep(self) -> int:
        """Evict expired sessions, then the least recently used above max_sessions. Returns evictions."""
        before = self.count()
        now = self._clock()

        for session_id, session in list(self._sessions.items()):
            if session.is_expired(self.ttl_seconds, now):
                self._evict_if(session_id, lambda s: s.is_expired(self.ttl_seconds, self._clock()))

        overflow = self.count() - self.max_sessions
        if overflow > 0:
            oldest = sorted(self._sessions.items(), key=lambda item: item[1].last_access_at)
            for session_id, session in oldest[:overflow]:
                seen = session.last_access_at
                self._evict_if(session_id, lambda s: s.last_access_at == seen)

        evicted = before - self.count()
        if evicted > 0:
            logger.info("Session sweep: %d -> %d (evicted %d)", before, self.count(), evicted)
        return evicted

    def _evict_if(self, session_id: str, still_eligible: Callable[[Session], bool]) -> None:
        session = self._sessions.get(session_id)
        if session is None or not still_eligible(session):
            return
        self._sessions.pop(session_id, None)
        self._rag_enabled.pop(session_id, None)
        logger.debug("Evicted session: %s", session_id)

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    def start(self) -> None:
        """Start the background sweeper. Calling it again while running does nothing."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="session-sweeper", daemon=True)
        self._sweeper.start()
        logger.info(
            "Session sweeper started: interval %ss, ttl %ss, max sessions %d",
            self.sweep_interval_seconds, self.ttl_seconds, self.max_sessions,
        )

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the sweeper and wait for it to exit."""
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            if self._sweeper.is_alive():
                logger.warning("Session sweeper did not stop within %.1fs", timeout)
            self._sweeper = None
        logger.info("Session store shut down with %d live sessions", self.count())
