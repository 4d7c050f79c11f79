# tests/test_api.py
import pytest
from fastapi.testclient import TestClient

import config
from ragchat import main
from ragchat.services.conversation_service import ConversationService
from ragchat.services.rate_limiter import RateLimiter

from tests.conftest import FakeStreaming, ManualClock


@pytest.fixture
def limiter_clock():
    return ManualClock()


@pytest.fixture
def client(monkeypatch, session_store, completion, knowledge_service, limiter_clock):
    """App with in-memory services; the lifespan is not run."""
    service = ConversationService(
        session_store, completion, knowledge_service=knowledge_service, streaming=FakeStreaming(["Hel", "lo"])
    )
    monkeypatch.setattr(main, "session_store", session_store)
    monkeypatch.setattr(main, "knowledge_service", knowledge_service)
    monkeypatch.setattr(main, "conversation_service", service)
    monkeypatch.setattr(main, "rate_limiter", RateLimiter(clock=limiter_clock))
    return TestClient(main.app)


class TestChatEndpoints:

    def test_chat_uses_default_session(self, client: TestClient):
        # when
        response = client.post("/chat", json={"message": "hello"})

        # then
        assert response.status_code == 200
        assert response.json() == {"response": "echo: hello", "session_id": config.DEFAULT_SESSION_ID}

    def test_empty_message_is_rejected(self, client: TestClient):
        assert client.post("/chat", json={"message": ""}).status_code == 422

    def test_blank_message_is_client_error(self, client: TestClient):
        response = client.post("/chat", json={"message": "   "})

        assert response.status_code == 400
        assert response.json()["code"] == "InvalidRequestException"

    def test_history_and_clear(self, client: TestClient):
        # given
        client.post("/chat", json={"message": "hello", "session_id": "s1"})

        # when
        history = client.get("/chat/history/s1").json()

        # then
        assert [m["role"] for m in history["messages"]] == ["system", "user", "assistant"]
        assert client.get("/chat/s1").json() == {"session_id": "s1", "exists": True}

        assert client.delete("/chat/s1").status_code == 200
        assert client.delete("/chat/s1").status_code == 200
        assert client.get("/chat/s1").json()["exists"] is False
        assert client.get("/chat/history/s1").json()["messages"] == []

    def test_sessions_listing(self, client: TestClient):
        client.post("/chat", json={"message": "a", "session_id": "one"})
        client.post("/chat", json={"message": "b", "session_id": "two"})

        body = client.get("/sessions").json()

        assert body == {"total": 2, "sessions": ["one", "two"]}

    def test_rag_toggle(self, client: TestClient):
        assert client.get("/chat/s1/rag").json()["enabled"] is True

        client.put("/chat/s1/rag", json={"enabled": False})

        assert client.get("/chat/s1/rag").json() == {"session_id": "s1", "enabled": False}

    def test_stream_emits_chunks_then_done(self, client: TestClient):
        # when
        response = client.post("/chat/stream", json={"message": "hi", "session_id": "s1"})

        # then
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text == "data: Hel\n\ndata: lo\n\nevent: done\ndata: [DONE]\n\n"

    def test_stream_error_event(self, client: TestClient, session_store, completion, monkeypatch):
        broken = ConversationService(
            session_store, completion, streaming=FakeStreaming(["par"], error=RuntimeError("cut off"))
        )
        monkeypatch.setattr(main, "conversation_service", broken)

        response = client.post("/chat/stream", json={"message": "hi"})

        assert response.text == "data: par\n\nevent: error\ndata: cut off\n\n"


class TestRateLimiting:

    def test_chat_is_limited_per_client(self, client: TestClient):
        # given
        for _ in range(main.CHAT_LIMIT.requests_per_minute):
            assert client.post("/chat", json={"message": "hi"}).status_code == 200

        # when
        response = client.post("/chat", json={"message": "hi"})

        # then
        assert response.status_code == 429
        assert response.json()["code"] == "RateLimitExceeded"
        assert int(response.headers["Retry-After"]) >= 1

        other = client.post("/chat", json={"message": "hi"}, headers={"X-Forwarded-For": "203.0.113.7"})
        assert other.status_code == 200

    def test_refills_after_a_minute(self, client: TestClient, limiter_clock: ManualClock):
        for _ in range(main.CHAT_LIMIT.requests_per_minute):
            client.post("/chat", json={"message": "hi"})
        assert client.post("/chat", json={"message": "hi"}).status_code == 429

        limiter_clock.advance(60)

        assert client.post("/chat", json={"message": "hi"}).status_code == 200


class TestKnowledgeEndpoints:

    def test_add_list_detail_delete(self, client: TestClient):
        # given
        created = client.post("/knowledge", json={"title": "Returns", "content": "Returns are accepted within 30 days."})
        entry_id = created.json()["id"]

        # when
        listing = client.get("/knowledge").json()
        detail = client.get(f"/knowledge/{entry_id}").json()["data"]
        stats = client.get("/knowledge/stats").json()["data"]

        # then
        assert listing["total"] == 1
        assert listing["data"][0]["title"] == "Returns"
        assert detail["segments"] == ["Returns are accepted within 30 days."]
        assert stats["total_entries"] == 1

        assert client.delete(f"/knowledge/{entry_id}").json()["success"] is True
        assert client.delete(f"/knowledge/{entry_id}").json()["success"] is False

    @pytest.mark.parametrize("path, body", [
        ("/knowledge", {"title": "", "content": "content"}),
        ("/knowledge", {"title": "t" * 201, "content": "content"}),
        ("/knowledge", {"title": "Doc", "content": ""}),
        ("/knowledge/search", {"query": ""}),
        ("/knowledge/search", {"query": "returns", "max_results": 0}),
        ("/knowledge/search", {"query": "returns", "max_results": 51}),
    ])
    def test_documented_request_bounds(self, client: TestClient, path, body):
        assert client.post(path, json=body).status_code == 422

    def test_rag_toggle_requires_flag(self, client: TestClient):
        assert client.put("/chat/s1/rag", json={}).status_code == 422
        assert client.put("/chat/s1/rag", json={"enabled": False}).status_code == 200

    def test_unknown_entry_is_404(self, client: TestClient):
        response = client.get("/knowledge/nope")

        assert response.status_code == 404
        assert response.json()["code"] == "KnowledgeNotFoundException"

    def test_store_failure_is_500(self, client: TestClient, fake_vector_store):
        fake_vector_store.fail_on_store = True

        response = client.post("/knowledge", json={"title": "Doc", "content": "content"})

        assert response.status_code == 500
        assert response.json()["code"] == "KnowledgeStoreException"
        assert client.get("/knowledge").json()["total"] == 0

    def test_search(self, client: TestClient):
        client.post("/knowledge", json={"title": "Returns", "content": "Returns are accepted within 30 days."})

        body = client.post("/knowledge/search", json={"query": "returns accepted", "max_results": 2}).json()

        assert body["total"] == 1
        assert body["data"][0]["content"] == "Returns are accepted within 30 days."


class TestInfoEndpoints:

    def test_root_and_health(self, client: TestClient):
        assert "endpoints" in client.get("/").json()
        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["conversation_service"] is True
