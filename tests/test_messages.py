"""
Tests for the message tracker.

Ids group consecutive same-role chunks; system messages always stand alone;
persistence happens in emission order on a background worker.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from genstack.database.retry import RetryConfig
from genstack.generation.messages import MessageTracker

from conftest import InMemoryStore, RecordingPublisher


class TestMessageIds:
    """Test id grouping"""

    @pytest.mark.unit
    def test_same_role_shares_id(self):
        tracker = MessageTracker()
        first = tracker.message_id_for("s1", "assistant")
        second = tracker.message_id_for("s1", "assistant")
        assert first == second
        assert first.startswith("msg-")

    @pytest.mark.unit
    def test_system_between_assistant_messages(self):
        tracker = MessageTracker()
        ids = [
            tracker.message_id_for("s1", "assistant"),
            tracker.message_id_for("s1", "system"),
            tracker.message_id_for("s1", "assistant"),
        ]
        assert len(set(ids)) == 3

    @pytest.mark.unit
    def test_consecutive_system_messages_are_distinct(self):
        tracker = MessageTracker()
        assert tracker.message_id_for("s1", "system") != tracker.message_id_for("s1", "system")

    @pytest.mark.unit
    def test_role_change_starts_new_message(self):
        tracker = MessageTracker()
        user = tracker.message_id_for("s1", "user")
        assistant = tracker.message_id_for("s1", "assistant")
        assert user != assistant

    @pytest.mark.unit
    def test_reset_forces_new_id(self):
        tracker = MessageTracker()
        first = tracker.message_id_for("s1", "assistant")
        tracker.reset("s1")
        assert tracker.message_id_for("s1", "assistant") != first

    @pytest.mark.unit
    def test_sessions_are_independent(self):
        tracker = MessageTracker()
        assert tracker.message_id_for("a", "assistant") != tracker.message_id_for("b", "assistant")


class TestEmit:
    """Test publishing and persistence"""

    @pytest.mark.asyncio
    async def test_publishes_llm_message(self):
        publisher = RecordingPublisher()
        tracker = MessageTracker(publisher)

        message_id = await tracker.emit("s1", "assistant", "Hello")

        session_id, event_type, data = publisher.events[0]
        assert (session_id, event_type) == ("s1", "llm_message")
        assert data["id"] == message_id
        assert data["role"] == "assistant"
        assert data["content"] == "Hello"
        assert isinstance(data["timestamp"], int)

    @pytest.mark.asyncio
    async def test_chunks_accumulate_in_store(self):
        store = InMemoryStore()
        tracker = MessageTracker(RecordingPublisher(), store)

        await tracker.emit("s1", "assistant", "Hel")
        await tracker.emit("s1", "assistant", "lo")
        await tracker.emit("s1", "system", "Stage done")
        await tracker.cleanup("s1")

        messages = await store.get_messages("s1")
        assert [(m["role"], m["content"]) for m in messages] == [
            ("assistant", "Hello"),
            ("system", "Stage done"),
        ]

    @pytest.mark.asyncio
    async def test_persistence_keeps_order_with_slow_store(self):
        order = []

        async def slow_upsert(session_id, message_id, role, content, timestamp):
            await asyncio.sleep(0.01 if content == "first" else 0)
            order.append(content)

        store = InMemoryStore()
        store.upsert_message = slow_upsert
        tracker = MessageTracker(None, store)

        await tracker.emit("s1", "system", "first")
        await tracker.emit("s1", "system", "second")
        await tracker.cleanup("s1")

        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_transient_store_failure_retried(self):
        store = InMemoryStore()
        store.upsert_message = AsyncMock(side_effect=[ConnectionError("connection reset"), None])
        tracker = MessageTracker(None, store, RetryConfig(max_retries=3, base_delay=0.001, jitter=False))

        await tracker.emit("s1", "assistant", "text")
        await tracker.cleanup("s1")

        assert store.upsert_message.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_failure_is_logged_not_raised(self, caplog):
        store = InMemoryStore()
        store.upsert_message = AsyncMock(side_effect=ValueError("bad row"))
        tracker = MessageTracker(None, store)

        await tracker.emit("s1", "assistant", "text")
        await tracker.cleanup("s1")

        assert any("Failed to persist message" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self):
        tracker = MessageTracker(RecordingPublisher(), InMemoryStore())
        await tracker.emit("s1", "assistant", "x")
        await tracker.cleanup("s1")
        await tracker.cleanup("s1")
        await tracker.cleanup("never-seen")
