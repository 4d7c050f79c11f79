"""
GROQ SERVICE MODULE
===================

Completion capability backed by Groq through LangChain's ChatGroq. It does not
know about sessions or RAG: it takes the full message list of a session and
returns (or streams) the assistant's reply.

ROUND-ROBIN API KEYS:
  - One ChatGroq client per configured key (GROQ_API_KEY, GROQ_API_KEY_2, ...).
  - Each request starts at the next key in rotation (shared class-level counter).
  - complete(): if a key fails after its retries, the next key is tried.
  - stream(): uses the next key only; once tokens have been sent there is no
    safe way to restart the answer on another key.
  - Keys are only ever logged masked.

STREAMING:
  stream() returns immediately. The answer is produced on a worker thread that
  calls handler.on_partial(text) per token chunk, then exactly one of
  handler.on_complete(full_text) or handler.on_error(exc).
"""

import logging
import threading
from typing import List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_groq import ChatGroq

from ragchat.exceptions import CompletionException
from ragchat.models import ChatMessage
from ragchat.utils.retry import with_retry

logger = logging.getLogger("ragchat")


def _mask_key(key: str) -> str:
    """Show only the last 4 characters of an API key."""
    return f"...{key[-4:]}" if len(key) > 4 else "****"


def to_langchain_messages(messages: List[ChatMessage]) -> List[BaseMessage]:
    """Convert stored chat messages to LangChain message objects."""
    converted: List[BaseMessage] = []
    for msg in messages:
        if msg.role == "system":
            converted.append(SystemMessage(content=msg.content))
        elif msg.role == "user":
            converted.append(HumanMessage(content=msg.content))
        else:
            converted.append(AIMessage(content=msg.content))
    return converted


# ==============================================================================
# GROQ SERVICE CLASS
# ==============================================================================

class GroqService:
    """Plain and streaming chat completions over one or more Groq API keys."""

    _shared_key_index = 0
    _key_lock = threading.Lock()

    def __init__(
        self,
        api_keys: List[str],
        model: str,
        temperature: float = 0.7,
        max_retries: int = 2,
        llms: Optional[List[ChatGroq]] = None,
    ):
        """Create one ChatGroq client per key. `llms` replaces the clients (used by tests)."""
        if llms is None:
            if not api_keys:
                raise ValueError("GROQ_API_KEY is not set. Add it to your .env file.")
            llms = [ChatGroq(api_key=key, model=model, temperature=temperature) for key in api_keys]
        self.api_keys = list(api_keys)
        self.model = model
        self.max_retries = max_retries
        self.llms = llms
        logger.info("Groq service ready: model=%s, %d API key(s)", model, len(self.llms))

    def _key_order(self) -> List[int]:
        """Indices of all clients, starting at the next one in the rotation."""
        with GroqService._key_lock:
            start = GroqService._shared_key_index % len(self.llms)
            GroqService._shared_key_index += 1
        return [(start + i) % len(self.llms) for i in range(len(self.llms))]

    def _key_label(self, index: int) -> str:
        if index < len(self.api_keys):
            return _mask_key(self.api_keys[index])
        return f"#{index + 1}"

    # ------------------------------------------------------------------------------
    # PLAIN COMPLETION
    # ------------------------------------------------------------------------------

    def complete(self, messages: List[ChatMessage]) -> str:
        """Return the assistant reply for the given history. Raises CompletionException if every key fails."""
        lc_messages = to_langchain_messages(messages)
        last_error: Optional[Exception] = None

        for index in self._key_order():
            llm = self.llms[index]
            try:
                logger.info("Calling Groq with key %s (%d messages)", self._key_label(index), len(lc_messages))
                response = with_retry(lambda: llm.invoke(lc_messages), max_retries=self.max_retries, initial_delay=0.5)
                return response.content
            except Exception as e:
                last_error = e
                logger.warning("Groq key %s failed: %s", self._key_label(index), e)

        raise CompletionException(f"All Groq API keys failed: {last_error}") from last_error

    # ------------------------------------------------------------------------------
    # STREAMING COMPLETION
    # ------------------------------------------------------------------------------

    def stream(self, messages: List[ChatMessage], handler) -> threading.Thread:
        """Start streaming the reply on a worker thread; returns the thread (already started)."""
        lc_messages = to_langchain_messages(messages)
        index = self._key_order()[0]
        worker = threading.Thread(
            target=self._run_stream,
            args=(self.llms[index], lc_messages, handler, self._key_label(index)),
            name="groq-stream",
            daemon=True,
        )
        worker.start()
        return worker

    def _run_stream(self, llm: ChatGroq, lc_messages: List[BaseMessage], handler, key_label: str) -> None:
        parts: List[str] = []
        try:
            logger.info("Streaming from Groq with key %s", key_label)
            for chunk in llm.stream(lc_messages):
                text = chunk.content
                if text:
                    parts.append(text)
                    handler.on_partial(text)
        except Exception as e:
            logger.error("Groq streaming failed with key %s: %s", key_label, e)
            handler.on_error(e)
            return
        handler.on_complete("".join(parts))
