"""
Tests for the HTTP surface.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from src.relay.config import get_config
from src.relay.llm import GenerationAdapter
from src.relay.pipeline import TurnOrchestrator

from fakes import FakeCompletionClient, FakeSynthesizer, FakeTranscriber


@pytest.fixture
def server_orchestrator(registry, store):
    generator = GenerationAdapter(
        FakeCompletionClient(replies=["Bună ziua! Cu ce vă pot ajuta?", "Sigur."]),
        registry,
    )
    return TurnOrchestrator(
        registry,
        store,
        generator,
        FakeTranscriber(["Vreau o consultație pe 5 martie"]),
        FakeSynthesizer(),
        end_grace_seconds=0.05,
    )


@pytest.fixture
def client(server_orchestrator):
    from server.app import create_app

    with TestClient(create_app(server_orchestrator)) as test_client:
        yield test_client


class TestChat:
    """Tests for POST /api/chat."""

    def test_first_turn(self, client, store):
        response = client.post("/api/chat", data={"call_id": "call-1", "mode": "dental"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["transcript"] is None
        assert body["response"] == "Bună ziua! Cu ce vă pot ajuta?"
        assert body["audio_url"] == "/uploads/responses/response_call-1_test.mp3"
        assert body["conversation_ending"] is False
        assert set(body["processing_time"]) == {"total", "stt", "ai", "tts"}
        assert store.peek("call-1").metadata["user_agent"] == "testclient"

    def test_turn_with_audio(self, client, sample_wav_audio):
        client.post("/api/chat", data={"call_id": "call-1", "mode": "dental"})
        response = client.post(
            "/api/chat",
            data={"call_id": "call-1", "mode": "dental"},
            files={"audio": ("speech.wav", sample_wav_audio, "audio/wav")},
        )

        assert response.status_code == 200
        assert response.json()["transcript"] == "Vreau o consultație pe 5 martie"

    def test_missing_call_id(self, client):
        response = client.post("/api/chat", data={"mode": "dental"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_missing_mode(self, client):
        response = client.post("/api/chat", data={"call_id": "call-1"})
        assert response.status_code == 400

    def test_invalid_mode(self, client, store):
        response = client.post("/api/chat", data={"call_id": "call-1", "mode": "astrology"})

        assert response.status_code == 400
        assert "dental" in response.json()["error"]
        assert len(store) == 0

    def test_rejects_non_audio_upload(self, client):
        response = client.post(
            "/api/chat",
            data={"call_id": "call-1", "mode": "dental"},
            files={"audio": ("notes.txt", b"hello", "text/plain")},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Only audio files are allowed"

    def test_rejects_oversized_upload(self, server_orchestrator, monkeypatch):
        from server.app import create_app

        monkeypatch.setenv("MAX_AUDIO_BYTES", "16")
        get_config.cache_clear()

        with TestClient(create_app(server_orchestrator)) as small_client:
            response = small_client.post(
                "/api/chat",
                data={"call_id": "call-1", "mode": "dental"},
                files={"audio": ("speech.wav", b"RIFF" + b"\x00" * 64, "audio/wav")},
            )

        assert response.status_code == 400
        assert "too large" in response.json()["error"]

    def test_upload_at_limit_is_accepted(self, server_orchestrator, sample_wav_audio, monkeypatch):
        from server.app import create_app

        monkeypatch.setenv("MAX_AUDIO_BYTES", str(len(sample_wav_audio)))
        get_config.cache_clear()

        with TestClient(create_app(server_orchestrator)) as small_client:
            response = small_client.post(
                "/api/chat",
                data={"call_id": "call-1", "mode": "dental"},
                files={"audio": ("speech.wav", sample_wav_audio, "audio/wav")},
            )

        assert response.status_code == 200
        assert response.json()["transcript"] == "Vreau o consultație pe 5 martie"

    def test_empty_speech_is_not_a_server_error(self, client, server_orchestrator, sample_wav_audio):
        server_orchestrator.transcriber.transcripts = [""]

        response = client.post(
            "/api/chat",
            data={"call_id": "call-1", "mode": "dental"},
            files={"audio": ("speech.wav", sample_wav_audio, "audio/wav")},
        )

        assert response.status_code == 200
        assert response.json()["success"] is False


class TestSessionEndpoints:
    """Tests for reset, stats and info."""

    def test_reset(self, client, store):
        client.post("/api/chat", data={"call_id": "call-1", "mode": "dental"})

        response = client.post("/api/chat/reset", json={"call_id": "call-1"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert "call-1" not in store

    def test_reset_requires_call_id(self, client):
        response = client.post("/api/chat/reset", json={})
        assert response.status_code == 400

    def test_stats(self, client):
        client.post("/api/chat", data={"call_id": "call-1", "mode": "tarot"})

        response = client.get("/api/chat/stats/call-1")

        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["mode"] == "tarot"
        assert stats["message_count"] == 1

    def test_stats_unknown_call(self, client):
        response = client.get("/api/chat/stats/missing")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_info(self, client):
        client.post("/api/chat", data={"call_id": "a", "mode": "dental"})
        client.post("/api/chat", data={"call_id": "b", "mode": "tarot"})

        info = client.get("/api/chat/info").json()["info"]

        assert info["active_sessions"] == 2
        assert info["mode_distribution"] == {"dental": 1, "tarot": 1}
        assert info["available_modes"] == ["dental", "teleshopping", "tarot"]
        assert "uptime_seconds" in info


def test_health(client):
    client.post("/api/chat", data={"call_id": "call-1", "mode": "dental"})

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["active_sessions"] == 1


@pytest.mark.asyncio
async def test_call_locks_release():
    from server.app import CallLocks

    locks = CallLocks()
    async with locks.hold("call-1"):
        assert len(locks) == 1
    assert len(locks) == 0


async def _record_hold(locks, call_id, name, events):
    async with locks.hold(call_id):
        events.append(f"{name}-in")
        await asyncio.sleep(0.02)
        events.append(f"{name}-out")


@pytest.mark.asyncio
async def test_call_locks_serialize_same_call():
    from server.app import CallLocks

    locks = CallLocks()
    events = []

    await asyncio.gather(
        _record_hold(locks, "call-1", "a", events),
        _record_hold(locks, "call-1", "b", events),
    )

    assert events == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_call_locks_independent_calls_overlap():
    from server.app import CallLocks

    locks = CallLocks()
    events = []

    await asyncio.gather(
        _record_hold(locks, "call-1", "a", events),
        _record_hold(locks, "call-2", "b", events),
    )

    assert events[:2] == ["a-in", "b-in"]
    assert len(locks) == 0
