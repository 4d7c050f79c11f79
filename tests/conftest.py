# tests/conftest.py
import logging
from typing import List

import pytest

from ragchat.models import ChatMessage
from ragchat.services.conversation_service import ConversationService
from ragchat.services.knowledge_service import KnowledgeService
from ragchat.services.session_store import SessionStore
from ragchat.services.vector_store import VectorMatch

SYSTEM_PROMPT = "You are a test assistant."


@pytest.fixture(scope="session", autouse=True)
def initialize_test_logger():
    """Test logger setup."""
    logger = logging.getLogger("ragchat")
    logger.setLevel("DEBUG")


# === Fakes ===
class ManualClock:
    """Clock that only moves when the test says so."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCompletion:
    """Echoes the last user message; records every message list it was called with."""

    def __init__(self, reply: str = None, error: Exception = None):
        self.reply = reply
        self.error = error
        self.calls: List[List[ChatMessage]] = []

    def complete(self, messages):
        self.calls.append(list(messages))
        if self.error:
            raise self.error
        return self.reply if self.reply is not None else f"echo: {messages[-1].content}"


class FakeStreaming:
    """Calls the handler synchronously: one on_partial per chunk, then complete or error."""

    def __init__(self, chunks=("Hel", "lo"), error: Exception = None):
        self.chunks = list(chunks)
        self.error = error
        self.calls: List[List[ChatMessage]] = []

    def stream(self, messages, handler):
        self.calls.append(list(messages))
        for chunk in self.chunks:
            handler.on_partial(chunk)
        if self.error:
            handler.on_error(self.error)
        else:
            handler.on_complete("".join(self.chunks))


class ListSink:
    """Stream sink that records every signal in order."""

    def __init__(self):
        self.events = []

    def send(self, chunk):
        self.events.append(("data", chunk))

    def complete(self):
        self.events.append(("done", None))

    def error(self, error):
        self.events.append(("error", error))

    @property
    def chunks(self):
        return [payload for kind, payload in self.events if kind == "data"]

    @property
    def terminals(self):
        return [kind for kind, _ in self.events if kind != "data"]


class FakeVectorStore:
    """
    In-memory stand-in for VectorStoreService. Relevance is the share of query
    words found in the segment, so tests can reason about which segments match.
    """

    def __init__(self, fail_on_store: bool = False, fail_on_search: bool = False):
        self.fail_on_store = fail_on_store
        self.fail_on_search = fail_on_search
        self.documents: List[VectorMatch] = []

    def embed_and_store(self, texts, metadatas):
        if self.fail_on_store:
            raise RuntimeError("embedding service unavailable")
        ids = []
        for text, metadata in zip(texts, metadatas):
            ids.append(f"seg-{len(self.documents)}")
            self.documents.append(VectorMatch(text=text, score=1.0, metadata=dict(metadata)))
        return ids

    def search(self, query, max_results, min_score):
        if self.fail_on_search:
            raise RuntimeError("vector index unavailable")
        words = query.lower().split()
        scored = []
        for doc in self.documents:
            hits = sum(1 for w in words if w in doc.text.lower())
            score = hits / len(words) if words else 0.0
            if score >= min_score:
                scored.append(VectorMatch(text=doc.text, score=score, metadata=doc.metadata))
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:max_results]

    def get_all_documents(self, limit=1000):
        return list(self.documents[:limit])

    def count(self):
        return len(self.documents)

    def model_info(self):
        return "fake-embeddings"


# === Fixtures ===
@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def session_store(clock):
    return SessionStore(system_prompt=SYSTEM_PROMPT, max_history=20, ttl_seconds=1800, max_sessions=1000, clock=clock)


@pytest.fixture
def fake_vector_store():
    return FakeVectorStore()


@pytest.fixture
def knowledge_service(fake_vector_store):
    return KnowledgeService(fake_vector_store, segment_size=500, segment_overlap=50, min_score=0.3, max_results=3)


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def conversation_service(session_store, completion, knowledge_service):
    return ConversationService(session_store, completion, knowledge_service=knowledge_service)
