# tests/test_groq_service.py
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from ragchat.exceptions import CompletionException
from ragchat.models import ChatMessage
from ragchat.services.groq_service import GroqService, _mask_key, to_langchain_messages
from ragchat.utils.retry import with_retry

from tests.conftest import ListSink

MESSAGES = [
    ChatMessage(role="system", content="be brief"),
    ChatMessage(role="user", content="hi"),
]


def make_llm(reply=None, error=None, chunks=None):
    llm = MagicMock()
    if error:
        llm.invoke.side_effect = error
        llm.stream.side_effect = error
    else:
        llm.invoke.return_value = AIMessage(content=reply or "")
        llm.stream.return_value = iter(AIMessageChunk(content=c) for c in (chunks or []))
    return llm


class RecordingHandler:
    def __init__(self):
        self.sink = ListSink()

    def on_partial(self, text):
        self.sink.send(text)

    def on_complete(self, text):
        self.sink.events.append(("done", text))

    def on_error(self, error):
        self.sink.error(error)


class TestMessageConversion:

    def test_roles_map_to_langchain_types(self):
        converted = to_langchain_messages(MESSAGES + [ChatMessage(role="assistant", content="hello")])

        assert [type(m) for m in converted] == [SystemMessage, HumanMessage, AIMessage]

    def test_mask_key(self):
        assert _mask_key("gsk_abcdef1234") == "...1234"
        assert _mask_key("abc") == "****"


class TestComplete:

    def test_no_keys_is_rejected(self):
        with pytest.raises(ValueError):
            GroqService([], "model")

    def test_falls_over_to_next_key(self):
        # given
        failing = make_llm(error=RuntimeError("rate limited"))
        service = GroqService(["k1", "k2"], "model", max_retries=1, llms=[failing, make_llm(reply="from second")])

        # when
        replies = {service.complete(MESSAGES) for _ in range(2)}

        # then
        assert replies == {"from second"}
        assert failing.invoke.call_count >= 1

    def test_all_keys_failing_raises(self):
        service = GroqService(["k1"], "model", max_retries=1, llms=[make_llm(error=RuntimeError("down"))])

        with pytest.raises(CompletionException):
            service.complete(MESSAGES)


class TestStream:

    def test_chunks_then_complete(self):
        # given
        service = GroqService(["k1"], "model", llms=[make_llm(chunks=["Hel", "", "lo"])])
        handler = RecordingHandler()

        # when
        service.stream(MESSAGES, handler).join(timeout=5)

        # then
        assert handler.sink.events == [("data", "Hel"), ("data", "lo"), ("done", "Hello")]

    def test_error_is_reported_once(self):
        service = GroqService(["k1"], "model", llms=[make_llm(error=RuntimeError("boom"))])
        handler = RecordingHandler()

        service.stream(MESSAGES, handler).join(timeout=5)

        assert handler.sink.terminals == ["error"]


class TestRetry:

    def test_retries_with_doubling_delay(self):
        # given
        delays = []
        attempts = iter([RuntimeError("1"), RuntimeError("2"), "ok"])

        def flaky():
            result = next(attempts)
            if isinstance(result, Exception):
                raise result
            return result

        # when
        result = with_retry(flaky, max_retries=3, initial_delay=0.5, sleep=delays.append)

        # then
        assert result == "ok"
        assert delays == [0.5, 1.0]

    def test_reraises_last_error(self):
        def always_fails():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError, match="nope"):
            with_retry(always_fails, max_retries=2, initial_delay=0, sleep=lambda _: None)
