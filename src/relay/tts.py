"""
Text-to-speech capability.

The core only needs "synthesize text -> audio reference". The concrete
adapter renders MP3 through the OpenAI speech API and stores it under the
public responses directory.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog

from src.relay.config import get_config
from src.relay.errors import SynthesisFailed

logger = structlog.get_logger(__name__)

PUBLIC_AUDIO_PREFIX = "/uploads/responses"


@dataclass
class Synthesis:
    """A synthesized reply stored on disk."""
    audio_ref: str
    path: Optional[str] = None
    size_bytes: int = 0
    latency_ms: float = 0.0


class Synthesizer(ABC):
    @abstractmethod
    async def synthesize(self, text: str, *, call_id: Optional[str] = None) -> Synthesis:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAISynthesizer(Synthesizer):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Writes `response_<call_id>_<uuid>.mp3` and returns its public URL.
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self.output_dir = Path(self.config.output_dir)

    async def _generate_mp3(self, text: str) -> bytes:
        from openai import OpenAI  # Local import to keep module import light

        client = OpenAI(api_key=self.config.openai_api_key)

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="mp3",
            )
            # SDKs have varied over time; handle several shapes.
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            read = getattr(resp, "read", None)
            if callable(read):
                return read()
            return bytes(resp)

        return await asyncio.to_thread(_call)

    async def synthesize(self, text: str, *, call_id: Optional[str] = None) -> Synthesis:
        if not text or not text.strip():
            raise SynthesisFailed("Nothing to synthesize")

        start_time = time.time()
        logger.info("TTS started", call_id=call_id, text=text[:50])

        try:
            audio = await self._generate_mp3(text)
            filename = f"response_{call_id or 'anon'}_{uuid.uuid4()}.mp3"
            path = self.output_dir / filename
            await asyncio.to_thread(_write_file, path, audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "OpenAI TTS failed",
                call_id=call_id,
                error=str(e),
                text_length=len(text),
            )
            raise SynthesisFailed(str(e)) from e

        latency_ms = (time.time() - start_time) * 1000
        logger.info(
            "TTS succeeded",
            call_id=call_id,
            file=filename,
            size_bytes=len(audio),
            latency_ms=round(latency_ms, 2),
        )

        return Synthesis(
            audio_ref=f"{PUBLIC_AUDIO_PREFIX}/{filename}",
            path=str(path),
            size_bytes=len(audio),
            latency_ms=latency_ms,
        )


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def cleanup_old_files(directory: str | Path, max_age_seconds: float, now: Optional[float] = None) -> int:
    """Delete generated audio files older than `max_age_seconds`."""
    root = Path(directory)
    if not root.is_dir():
        return 0

    now = time.time() if now is None else now
    deleted = 0
    for path in root.iterdir():
        if not path.is_file():
            continue
        try:
            if now - path.stat().st_mtime > max_age_seconds:
                path.unlink()
                deleted += 1
        except OSError as e:
            logger.warning("Failed to delete old audio file", file=str(path), error=str(e))

    if deleted:
        logger.info("Old audio files deleted", deleted=deleted, directory=str(root))
    return deleted
