"""
Speech-to-text capability.

The core only needs "transcribe audio -> text". The concrete adapter sends a
complete uploaded utterance to Deepgram's pre-recorded endpoint.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog

from src.relay.config import Config, get_config
from src.relay.errors import TranscriptionFailed

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"


@dataclass
class Transcription:
    """Result from STT. Empty `text` means no usable speech."""
    text: str
    confidence: float = 0.0
    latency_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)


def detect_audio_mimetype(audio: bytes) -> str:
    """Guess the container from the first bytes of an upload."""
    header = audio[:12]

    if b"webm" in header.lower() or header.startswith(b"\x1a\x45\xdf\xa3"):
        return "audio/webm"
    if header.startswith(b"RIFF"):
        return "audio/wav"
    if header.startswith(b"OggS"):
        return "audio/ogg"
    if header.startswith(b"ID3"):
        return "audio/mpeg"
    if len(audio) >= 2 and audio[0] == 0xFF and (audio[1] & 0xE0) == 0xE0:
        return "audio/mpeg"

    logger.warning("Unknown audio encoding, defaulting to webm", header=header[:4].hex())
    return "audio/webm"


class Transcriber(ABC):
    @abstractmethod
    async def transcribe(self, audio: bytes, *, call_id: Optional[str] = None) -> Transcription:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class DeepgramTranscriber(Transcriber):
    """Deepgram pre-recorded transcription over HTTPS."""

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        if config is None:
            config = get_config()

        self.config: Config = config
        self._client = client or httpx.AsyncClient(timeout=config.stt_timeout_seconds)

    async def transcribe(self, audio: bytes, *, call_id: Optional[str] = None) -> Transcription:
        start_time = time.time()
        mimetype = detect_audio_mimetype(audio)

        logger.info("STT started", call_id=call_id, size_bytes=len(audio), mimetype=mimetype)

        try:
            response = await self._client.post(
                DEEPGRAM_LISTEN_URL,
                params={
                    "model": self.config.deepgram_model,
                    "language": self.config.audio_language_code,
                    "punctuate": "true",
                    "smart_format": "true",
                },
                headers={
                    "Authorization": f"Token {self.config.deepgram_api_key}",
                    "Content-Type": mimetype,
                },
                content=audio,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            latency_ms = (time.time() - start_time) * 1000
            logger.error(
                "STT request failed",
                call_id=call_id,
                error=str(e),
                latency_ms=round(latency_ms, 2),
                size_bytes=len(audio),
            )
            raise TranscriptionFailed(str(e)) from e

        latency_ms = (time.time() - start_time) * 1000
        text, confidence = _parse_deepgram_response(data)

        if text:
            logger.info("STT succeeded", call_id=call_id, transcript=text, latency_ms=round(latency_ms, 2))
        else:
            logger.info("STT found no speech", call_id=call_id, latency_ms=round(latency_ms, 2))

        return Transcription(text=text, confidence=confidence, latency_ms=latency_ms)

    async def close(self) -> None:
        await self._client.aclose()


def _parse_deepgram_response(data: dict) -> tuple[str, float]:
    """Join channel transcripts; confidence comes from the first alternative."""
    channels = (data.get("results") or {}).get("channels") or []
    parts = []
    confidence = 0.0

    for index, channel in enumerate(channels):
        alternatives = channel.get("alternatives") or []
        if not alternatives:
            continue
        best = alternatives[0]
        if best.get("transcript"):
            parts.append(best["transcript"])
        if index == 0:
            confidence = float(best.get("confidence") or 0.0)

    return " ".join(parts).strip(), confidence
