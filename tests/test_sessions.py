"""
Tests for the in-memory session store.
"""

import asyncio

import pytest

from src.relay.errors import InvalidMode, SessionNotFound
from src.relay.sessions import InMemorySessionStore, SessionStats


class TestCreateAndGet:
    """Tests for session creation and retrieval."""

    def test_create_initial_state(self, store, clock):
        session = store.create("call-1", "dental", {"ip": "10.0.0.1"})

        assert session.id == "call-1"
        assert session.mode == "dental"
        assert session.messages == ()
        assert session.stats.message_count == 0
        assert session.started_at == clock.now
        assert session.last_active_at == clock.now
        assert session.metadata["ip"] == "10.0.0.1"
        assert "call-1" in store

    def test_create_invalid_mode(self, store):
        with pytest.raises(InvalidMode):
            store.create("call-1", "astrology")

        assert len(store) == 0

    def test_create_replaces_existing(self, store):
        store.create("call-1", "dental")
        store.append_message("call-1", "user", "salut")

        session = store.create("call-1", "tarot")

        assert session.mode == "tarot"
        assert session.messages == ()
        assert len(store) == 1

    def test_get_touches(self, store, clock):
        store.create("call-1", "dental")
        clock.advance(60)

        session = store.get("call-1")

        assert session.last_active_at == clock.now
        assert session.started_at == clock.now - 60

    def test_peek_does_not_touch(self, store, clock):
        store.create("call-1", "dental")
        clock.advance(60)

        session = store.peek("call-1")

        assert session.last_active_at == clock.now - 60

    def test_get_missing(self, store):
        assert store.get("missing") is None
        assert store.peek("missing") is None

    def test_metadata_is_read_only(self, store):
        session = store.create("call-1", "dental", {"ip": "1.2.3.4"})

        with pytest.raises(TypeError):
            session.metadata["ip"] = "5.6.7.8"


class TestMessages:
    """Tests for append-only history."""

    def test_append_in_order(self, store, clock):
        store.create("call-1", "dental")
        store.append_message("call-1", "user", "Bună ziua")
        clock.advance(1)
        store.append_message("call-1", "assistant", "Cu ce vă pot ajuta?", {"model": "m"})

        session = store.peek("call-1")
        assert [m.role for m in session.messages] == ["user", "assistant"]
        assert session.messages[1].annotations["model"] == "m"
        assert session.messages[0].timestamp < session.messages[1].timestamp
        assert session.stats.message_count == 2
        assert session.last_active_at == clock.now

    def test_messages_view_is_immutable(self, store):
        store.create("call-1", "dental")
        store.append_message("call-1", "user", "salut")

        messages = store.peek("call-1").messages
        assert isinstance(messages, tuple)
        with pytest.raises(AttributeError):
            messages[0].content = "altceva"

    def test_append_to_missing_session(self, store):
        with pytest.raises(SessionNotFound) as exc_info:
            store.append_message("missing", "user", "salut")

        assert exc_info.value.call_id == "missing"

    def test_append_rejects_unknown_role(self, store):
        store.create("call-1", "dental")

        with pytest.raises(ValueError):
            store.append_message("call-1", "system", "nope")


class TestStats:
    """Tests for additive stats."""

    def test_update_is_additive(self, store):
        store.create("call-1", "dental")
        store.update_stats("call-1", total_duration_ms=100.0, audio_processing_ms=40.0)
        store.update_stats("call-1", total_duration_ms=50.0, audio_processing_ms=10.0)

        stats = store.peek("call-1").stats
        assert stats.total_duration_ms == 150.0
        assert stats.audio_processing_ms == 50.0

    def test_negative_delta_ignored(self):
        stats = SessionStats()
        stats.add(total_duration_ms=10.0)
        stats.add(total_duration_ms=-5.0)

        assert stats.total_duration_ms == 10.0

    def test_unknown_stat_rejected(self):
        with pytest.raises(AttributeError):
            SessionStats().add(bogus=1.0)

    def test_update_missing_session_is_noop(self, store):
        store.update_stats("missing", total_duration_ms=5.0)
        assert len(store) == 0


class TestEnding:
    """Tests for ending sessions and archival."""

    def test_end_removes_and_archives(self, store):
        archived = []
        store.subscribe(lambda snapshot, reason: archived.append((snapshot, reason)))
        store.create("call-1", "tarot")
        store.append_message("call-1", "user", "Ce îmi rezervă viitorul?")

        assert store.end("call-1", "completed") is True
        assert store.get("call-1") is None

        snapshot, reason = archived[0]
        assert reason == "completed"
        assert snapshot["reason"] == "completed"
        assert snapshot["mode"] == "tarot"
        assert snapshot["messages"][0]["content"] == "Ce îmi rezervă viitorul?"

    def test_end_is_idempotent(self, store):
        archived = []
        store.subscribe(lambda snapshot, reason: archived.append(reason))
        store.create("call-1", "dental")

        assert store.end("call-1", "reset") is True
        assert store.end("call-1", "reset") is False
        assert archived == ["reset"]

    def test_end_rejects_unknown_reason(self, store):
        store.create("call-1", "dental")

        with pytest.raises(ValueError):
            store.end("call-1", "bored")

    def test_failing_listener_does_not_block_end(self, store):
        def broken(snapshot, reason):
            raise RuntimeError("listener down")

        store.subscribe(broken)
        store.create("call-1", "dental")

        assert store.end("call-1", "completed") is True
        assert "call-1" not in store


class TestSweep:
    """Tests for idle eviction."""

    def test_sweep_evicts_only_idle(self, store, clock):
        reasons = []
        store.subscribe(lambda snapshot, reason: reasons.append((snapshot["id"], reason)))
        store.create("old", "dental")
        clock.advance(20 * 60)
        store.create("fresh", "tarot")
        clock.advance(11 * 60)

        assert store.sweep() == 1
        assert "old" not in store
        assert "fresh" in store
        assert reasons == [("old", "timeout")]

    def test_touch_prevents_eviction(self, store, clock):
        store.create("call-1", "dental")
        clock.advance(25 * 60)
        store.get("call-1")
        clock.advance(25 * 60)

        assert store.sweep() == 0
        assert "call-1" in store

    def test_exact_threshold_is_kept(self, store, clock):
        store.create("call-1", "dental")
        clock.advance(30 * 60)

        assert store.sweep() == 0

    @pytest.mark.asyncio
    async def test_background_sweeper(self, registry, clock):
        store = InMemorySessionStore(
            registry,
            max_idle_seconds=10,
            sweep_interval_seconds=0.01,
            clock=clock,
        )
        store.create("call-1", "dental")
        clock.advance(11)

        await store.start()
        try:
            for _ in range(100):
                if "call-1" not in store:
                    break
                await asyncio.sleep(0.01)
        finally:
            await store.stop()

        assert "call-1" not in store


def test_summary(store):
    store.create("a", "dental")
    store.create("b", "dental")
    store.create("c", "tarot")

    summary = store.summary()

    assert summary["active_sessions"] == 3
    assert summary["mode_distribution"] == {"dental": 2, "tarot": 1}
    assert "timestamp" in summary


def test_snapshot_without_messages(store):
    store.create("a", "dental")
    store.append_message("a", "user", "salut")

    snapshot = store.peek("a").snapshot(include_messages=False)

    assert snapshot["message_count"] == 1
    assert snapshot["stats"]["message_count"] == 1
    assert "messages" not in snapshot


def test_list_sessions(store):
    store.create("a", "dental", {"ip": "1.1.1.1"})
    store.create("b", "teleshopping")

    listing = store.list_sessions()

    assert [entry["id"] for entry in listing] == ["a", "b"]
    assert listing[0]["metadata"] == {"ip": "1.1.1.1"}
    assert all("messages" not in entry for entry in listing)
