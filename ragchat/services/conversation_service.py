"""
CONVERSATION SERVICE MODULE
===========================

Runs one chat turn end to end:

  1. get or create the session (touches its TTL)
  2. RAG: replace the input with an augmented prompt when the session has RAG
     on and a knowledge service is configured (any retrieval error -> raw input)
  3. append the user message and trim history to MAX_HISTORY
  4. call the completion capability with the whole history
  5. append the assistant reply, trim again and return it

chat() returns an apology text instead of raising when the model call fails.
stream_chat() pushes partial text to a sink and ends with exactly one terminal
signal: complete() after the reply is stored, or error() with nothing stored.
GuardedSink enforces that even if a capability misbehaves.

Collaborators are plain constructor arguments; streaming and knowledge are
optional and checked where they are used.
"""

import asyncio
import logging
import threading
from typing import AsyncIterator, List, Optional, Protocol, Set, Tuple

from ragchat.models import ChatMessage
from ragchat.services.session_store import Session, SessionStore

logger = logging.getLogger("ragchat")

APOLOGY_MESSAGE = "Sorry, I ran into a problem while processing your request: {error}"


# ==============================================================================
# CAPABILITY CONTRACTS
# ==============================================================================

class CompletionCapability(Protocol):
    def complete(self, messages: List[ChatMessage]) -> str: ...


class StreamHandler(Protocol):
    def on_partial(self, text: str) -> None: ...

    def on_complete(self, text: str) -> None: ...

    def on_error(self, error: BaseException) -> None: ...


class StreamingCapability(Protocol):
    def stream(self, messages: List[ChatMessage], handler: StreamHandler) -> object: ...


class AugmentingCapability(Protocol):
    def build_augmented_prompt(self, query: str) -> str: ...


class StreamSink(Protocol):
    def send(self, chunk: str) -> None: ...

    def complete(self) -> None: ...

    def error(self, error: BaseException) -> None: ...


# ==============================================================================
# SINKS
# ==============================================================================

class GuardedSink:
    """
    Wraps a sink so it sees zero or more chunks followed by exactly one terminal
    signal. Anything arriving after the terminal signal is dropped and logged.
    """

    def __init__(self, sink: StreamSink, session_id: str = ""):
        self._sink = sink
        self._session_id = session_id
        self._lock = threading.Lock()
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def send(self, chunk: str) -> None:
        with self._lock:
            if self._terminated:
                logger.warning("Dropping chunk after end of stream (session %s)", self._session_id)
                return
            self._sink.send(chunk)

    def complete(self) -> None:
        with self._lock:
            if self._terminated:
                logger.warning("Dropping duplicate completion (session %s)", self._session_id)
                return
            self._terminated = True
            self._sink.complete()

    def error(self, error: BaseException) -> None:
        with self._lock:
            if self._terminated:
                logger.warning("Dropping error after end of stream (session %s): %s", self._session_id, error)
                return
            self._terminated = True
            self._sink.error(error)


class QueueSink:
    """
    Bridges a producer thread to an asyncio consumer. Chunks are queued with
    call_soon_threadsafe; events() yields ("data", chunk) items in arrival order
    and finishes after one ("done", None) or ("error", exc) item.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: "asyncio.Queue[Tuple[str, object]]" = asyncio.Queue()

    def _put(self, item: Tuple[str, object]) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def send(self, chunk: str) -> None:
        self._put(("data", chunk))

    def complete(self) -> None:
        self._put(("done", None))

    def error(self, error: BaseException) -> None:
        self._put(("error", error))

    async def events(self) -> AsyncIterator[Tuple[str, object]]:
        while True:
            kind, payload = await self._queue.get()
            yield kind, payload
            if kind != "data":
                return


class _SessionStreamHandler:
    """Forwards streaming callbacks to the sink and stores the reply on completion."""

    def __init__(self, store: SessionStore, session: Session, sink: GuardedSink):
        self._store = store
        self._session = session
        self._sink = sink
        self._length = 0

    def on_partial(self, text: str) -> None:
        self._length += len(text)
        self._sink.send(text)

    def on_complete(self, text: str) -> None:
        if self._sink.terminated:
            logger.warning("Completion after end of stream ignored (session %s)", self._session.session_id)
            return
        self._store.append(self._session, ChatMessage(role="assistant", content=text))
        self._store.trim(self._session)
        self._sink.complete()
        logger.info("Session %s stream finished, %d characters", self._session.session_id, self._length)

    def on_error(self, error: BaseException) -> None:
        logger.error("Session %s stream failed: %s", self._session.session_id, error)
        self._sink.error(error)


# ==============================================================================
# CONVERSATION SERVICE CLASS
# ==============================================================================

class ConversationService:
    """Multi-turn chat with per-session memory and optional knowledge augmentation."""

    def __init__(
        self,
        session_store: SessionStore,
        completion: CompletionCapability,
        knowledge_service: Optional[AugmentingCapability] = None,
        streaming: Optional[StreamingCapability] = None,
    ):
        self.session_store = session_store
        self.completion = completion
        self.knowledge_service = knowledge_service
        self.streaming = streaming

    # ------------------------------------------------------------------------------
    # CHAT TURNS
    # ------------------------------------------------------------------------------

    def augment(self, session_id: str, text: str) -> str:
        """Return the RAG-augmented input, or text unchanged when RAG is off or fails."""
        if self.knowledge_service is None or not self.session_store.is_rag_enabled(session_id):
            return text
        try:
            augmented = self.knowledge_service.build_augmented_prompt(text)
        except Exception as e:
            logger.warning("RAG augmentation failed for session %s, using original input: %s", session_id, e)
            return text
        if augmented != text:
            logger.info("Applied RAG augmentation, session %s", session_id)
        return augmented

    def _prepare(self, session_id: str, text: str) -> Session:
        session = self.session_store.get_or_create(session_id)
        processed = self.augment(session_id, text)
        self.session_store.append(session, ChatMessage(role="user", content=processed))
        self.session_store.trim(session)
        return session

    def chat(self, session_id: str, text: str) -> str:
        """One synchronous turn. Model failures come back as an apology text and no reply is stored."""
        logger.info("Session %s received message (%d characters)", session_id, len(text))
        try:
            session = self._prepare(session_id, text)
            reply = self.completion.complete(list(session.messages))
        except Exception as e:
            logger.error("Session %s failed: %s", session_id, e, exc_info=True)
            return APOLOGY_MESSAGE.format(error=e)

        self.session_store.append(session, ChatMessage(role="assistant", content=reply))
        self.session_store.trim(session)
        logger.info("Session %s replied", session_id)
        return reply

    def stream_chat(self, session_id: str, text: str, sink: StreamSink) -> None:
        """
        One streaming turn. Returns once the stream has been started; chunks and
        the terminal signal reach the sink from the capability's thread.
        """
        logger.info("Session %s received streaming message (%d characters)", session_id, len(text))
        guarded = GuardedSink(sink, session_id)

        if self.streaming is None:
            reply = self.chat(session_id, text)
            guarded.send(reply)
            guarded.complete()
            return

        try:
            session = self._prepare(session_id, text)
            self.streaming.stream(
                list(session.messages),
                _SessionStreamHandler(self.session_store, session, guarded),
            )
        except Exception as e:
            logger.error("Session %s could not start stream: %s", session_id, e, exc_info=True)
            guarded.error(e)

    # ------------------------------------------------------------------------------
    # SESSION MANAGEMENT
    # ------------------------------------------------------------------------------

    def set_rag_enabled(self, session_id: str, enabled: bool) -> None:
        self.session_store.set_rag_enabled(session_id, enabled)

    def is_rag_enabled(self, session_id: str) -> bool:
        return self.session_store.is_rag_enabled(session_id)

    def clear_session(self, session_id: str) -> None:
        self.session_store.clear(session_id)

    def session_exists(self, session_id: str) -> bool:
        return self.session_store.exists(session_id)

    def session_ids(self) -> Set[str]:
        return self.session_store.session_ids()

    def session_count(self) -> int:
        return self.session_store.count()

    def get_history(self, session_id: str) -> List[ChatMessage]:
        """Messages of a session, system prompt first; [] if the session doesn't exist."""
        session = self.session_store.get(session_id)
        return list(session.messages) if session else []
