"""
Pytest configuration and fixtures.
"""

import pytest
import os
from unittest.mock import patch

from src.relay.llm import GenerationAdapter
from src.relay.personas import build_default_registry
from src.relay.pipeline import TurnOrchestrator
from src.relay.sessions import InMemorySessionStore

from fakes import FakeClock, FakeCompletionClient, FakeSynthesizer, FakeTranscriber


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "LLM_PROVIDER": "openrouter",
        "OPENROUTER_API_KEY": "test_openrouter_key",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "OUTPUT_DIR": str(tmp_path / "responses"),
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(registry, clock):
    return InMemorySessionStore(
        registry,
        max_idle_seconds=30 * 60,
        sweep_interval_seconds=10 * 60,
        clock=clock,
    )


@pytest.fixture
def completion_client():
    return FakeCompletionClient()


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def orchestrator(registry, store, completion_client, transcriber, synthesizer):
    generator = GenerationAdapter(completion_client, registry, max_messages=20, timeout_seconds=1.0)
    return TurnOrchestrator(
        registry,
        store,
        generator,
        transcriber,
        synthesizer,
        end_grace_seconds=0.05,
    )


@pytest.fixture
def sample_wav_audio():
    """Minimal RIFF header followed by silence."""
    return b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * 32
