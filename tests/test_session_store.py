# tests/test_session_store.py
import logging
import threading
import time

import pytest

from ragchat.models import ChatMessage
from ragchat.services.session_store import SessionStore

from tests.conftest import SYSTEM_PROMPT, ManualClock


def user(text):
    return ChatMessage(role="user", content=text)


class TestSessionAccess:

    def test_new_session_holds_only_system_prompt(self, session_store: SessionStore):
        # when
        session = session_store.get_or_create("s1")

        # then
        assert session.messages == [ChatMessage(role="system", content=SYSTEM_PROMPT)]
        assert session_store.exists("s1")

    def test_get_or_create_returns_same_session(self, session_store: SessionStore):
        first = session_store.get_or_create("s1")
        second = session_store.get_or_create("s1")

        assert first is second
        assert session_store.count() == 1

    def test_trim_keeps_system_prompt_and_latest(self, session_store: SessionStore):
        # given
        session = session_store.get_or_create("s1")

        # when
        for i in range(1, 26):
            session_store.append(session, user(f"message {i}"))
            session_store.trim(session)

        # then
        assert len(session.messages) == 20
        assert session.messages[0].role == "system"
        assert session.messages[1].content == "message 7"
        assert session.messages[-1].content == "message 25"

    def test_sessions_are_isolated(self, session_store: SessionStore):
        a = session_store.get_or_create("a")
        b = session_store.get_or_create("b")

        session_store.append(a, user("only for a"))

        assert all(m.content != "only for a" for m in b.messages)
        assert len(b.messages) == 1

    def test_clear_is_idempotent(self, session_store: SessionStore):
        # given
        session = session_store.get_or_create("s1")
        session_store.append(session, user("hello"))

        # when
        session_store.clear("s1")
        session_store.clear("s1")
        session_store.clear("never-existed")

        # then
        assert not session_store.exists("s1")
        assert len(session_store.get_or_create("s1").messages) == 1

    def test_concurrent_first_access_creates_once(self, session_store: SessionStore, caplog, monkeypatch):
        # given
        workers = 20
        barrier = threading.Barrier(workers)
        create = session_store._create
        created = []

        def slow_create(session_id):
            created.append(session_id)
            time.sleep(0.01)
            return create(session_id)

        monkeypatch.setattr(session_store, "_create", slow_create)
        results = []

        def first_access():
            barrier.wait()
            results.append(session_store.get_or_create("s"))

        # when
        with caplog.at_level(logging.INFO, logger="ragchat"):
            threads = [threading.Thread(target=first_access) for _ in range(workers)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=5)

        # then
        assert len(results) == workers
        assert len({id(session) for session in results}) == 1
        assert session_store.count() == 1
        assert created == ["s"]
        assert sum("Creating new session" in r.getMessage() for r in caplog.records) == 1

    def test_max_history_below_two_is_rejected(self):
        with pytest.raises(ValueError):
            SessionStore(system_prompt=SYSTEM_PROMPT, max_history=1)


class TestRagFlag:

    def test_defaults_to_enabled(self, session_store: SessionStore):
        assert session_store.is_rag_enabled("anything") is True

    def test_clear_resets_flag(self, session_store: SessionStore):
        session_store.get_or_create("s1")
        session_store.set_rag_enabled("s1", False)
        assert session_store.is_rag_enabled("s1") is False

        session_store.clear("s1")

        assert session_store.is_rag_enabled("s1") is True


class TestEviction:

    def test_idle_session_expires(self, session_store: SessionStore, clock: ManualClock):
        # given
        session_store.get_or_create("idle")
        session_store.set_rag_enabled("idle", False)

        # when
        clock.advance(31 * 60)
        evicted = session_store.sweep()

        # then
        assert evicted == 1
        assert not session_store.exists("idle")
        assert session_store.is_rag_enabled("idle") is True

    def test_touch_rearms_ttl(self, session_store: SessionStore, clock: ManualClock):
        # given
        session_store.get_or_create("active")
        session_store.get_or_create("idle")

        # when
        clock.advance(20 * 60)
        session_store.get_or_create("active")
        clock.advance(15 * 60)
        session_store.sweep()

        # then
        assert session_store.exists("active")
        assert not session_store.exists("idle")

    def test_capacity_evicts_least_recently_used(self, clock: ManualClock):
        # given
        store = SessionStore(system_prompt=SYSTEM_PROMPT, max_sessions=2, clock=clock)
        for session_id in ("a", "b", "c"):
            store.get_or_create(session_id)
            clock.advance(1)
        store.get_or_create("a")

        # when
        evicted = store.sweep()

        # then
        assert evicted == 1
        assert store.session_ids() == {"a", "c"}

    def test_sweep_without_pressure_evicts_nothing(self, session_store: SessionStore, clock: ManualClock):
        session_store.get_or_create("s1")
        clock.advance(60)

        assert session_store.sweep() == 0
        assert session_store.exists("s1")

    def test_background_sweeper_start_and_shutdown(self):
        # given
        store = SessionStore(system_prompt=SYSTEM_PROMPT, ttl_seconds=0, sweep_interval_seconds=0.01)
        store.get_or_create("short-lived")

        # when
        store.start()
        store.start()
        deadline = time.monotonic() + 2.0
        while store.exists("short-lived") and time.monotonic() < deadline:
            time.sleep(0.01)
        store.shutdown()

        # then
        assert not store.exists("short-lived")
