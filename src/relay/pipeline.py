"""Turn pipeline orchestration.

Drives one request/response cycle for a call:
(optional) audio -> STT -> user message -> generation -> assistant message ->
TTS -> stats -> ending detection -> outcome extraction -> result

Features:
- Session resolution (created on first contact with a call id)
- Empty/failed transcription short-circuits without touching the dialogue
- Generation failures already arrive as fallback text
- Synthesis failure degrades the turn to text-only
- Deferred session teardown after a conversation-ending reply
- Session evicted mid-turn: the result is still returned, untracked
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import structlog

from src.relay.config import Config, get_config
from src.relay.errors import SessionNotFound, TranscriptionEmpty
from src.relay.extract import detect_ending, extract_outcome
from src.relay.llm import GenerationAdapter, Reply, create_completion_client
from src.relay.personas import PersonaRegistry, build_default_registry
from src.relay.sessions import InMemorySessionStore, Message, Session, SessionStore
from src.relay.stt import DeepgramTranscriber, Transcriber, Transcription
from src.relay.tts import OpenAISynthesizer, Synthesis, Synthesizer

logger = structlog.get_logger(__name__)

REPEAT_PROMPT = "Nu am detectat vorbire clară. Vă rog să încercați din nou."
INTERNAL_ERROR_MESSAGE = "Eroare internă de server. Vă rog să încercați din nou."


@dataclass
class TurnTimings:
    """Per-stage latency breakdown for a single turn."""
    total_ms: float = 0.0
    transcribe_ms: float = 0.0
    generate_ms: float = 0.0
    synthesize_ms: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "total": round(self.total_ms, 2),
            "stt": round(self.transcribe_ms, 2),
            "ai": round(self.generate_ms, 2),
            "tts": round(self.synthesize_ms, 2),
        }


@dataclass
class TurnResult:
    """Everything the boundary layer needs to answer a turn request."""
    ok: bool
    transcript: Optional[str] = None
    reply: Optional[str] = None
    audio_ref: Optional[str] = None
    ended: bool = False
    timings: TurnTimings = field(default_factory=TurnTimings)
    outcome: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    # False when the session was evicted while the turn was in flight.
    tracked: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.ok,
            "transcript": self.transcript,
            "response": self.reply,
            "audio_url": self.audio_ref,
            "conversation_ending": self.ended,
            "processing_time": self.timings.to_dict(),
        }
        if self.outcome is not None:
            data["outcome"] = self.outcome
        if self.error:
            data["error"] = self.error
        return data


class TurnOrchestrator:
    """
    Sole entry point for turns.

    All collaborators are injected. Callers must not issue overlapping turns
    for the same call id; turns for different ids are independent.
    """

    def __init__(
        self,
        registry: PersonaRegistry,
        store: SessionStore,
        generator: GenerationAdapter,
        transcriber: Transcriber,
        synthesizer: Synthesizer,
        *,
        end_grace_seconds: float = 5.0,
    ):
        self.registry = registry
        self.store = store
        self.generator = generator
        self.transcriber = transcriber
        self.synthesizer = synthesizer
        self.end_grace_seconds = end_grace_seconds
        self._pending_ends: Dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        await self.store.start()
        logger.info("Turn orchestrator started", modes=self.registry.modes())

    async def stop(self) -> None:
        """Cancel deferred teardowns and the idle sweep."""
        pending = [task for task in self._pending_ends.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending_ends.clear()

        await self.store.stop()
        await self.generator.close()
        await self.transcriber.close()
        await self.synthesizer.close()
        logger.info("Turn orchestrator stopped")

    async def handle_turn(
        self,
        call_id: str,
        mode: str,
        audio: Optional[bytes] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TurnResult:
        """
        Run one turn for `call_id`.

        Raises InvalidMode for an unknown mode (caller error). Every other
        failure is reported through the returned TurnResult.
        """
        start_time = time.time()
        self.registry.get(mode)

        logger.info("Turn started", call_id=call_id, mode=mode, has_audio=audio is not None)

        session = self._resolve_session(call_id, mode, metadata)
        timings = TurnTimings()

        try:
            return await self._run_turn(session, audio, timings, start_time)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            timings.total_ms = (time.time() - start_time) * 1000
            logger.exception(
                "Turn failed",
                call_id=call_id,
                mode=session.mode,
                has_audio=audio is not None,
                duration_ms=round(timings.total_ms, 2),
                error=str(e),
            )
            return TurnResult(ok=False, timings=timings, error=INTERNAL_ERROR_MESSAGE)

    def _resolve_session(
        self,
        call_id: str,
        mode: str,
        metadata: Optional[Mapping[str, Any]],
    ) -> Session:
        session = self.store.get(call_id)
        if session is None:
            return self.store.create(call_id, mode, metadata)

        if session.mode != mode:
            logger.warning(
                "Mode mismatch for existing session; keeping original mode",
                call_id=call_id,
                session_mode=session.mode,
                requested_mode=mode,
            )
        return session

    async def _run_turn(
        self,
        session: Session,
        audio: Optional[bytes],
        timings: TurnTimings,
        start_time: float,
    ) -> TurnResult:
        call_id = session.id
        tracked = True
        transcript: Optional[str] = None

        # 1. Transcription
        transcription: Optional[Transcription] = None
        if audio is not None:
            try:
                transcription = await self._transcribe(audio, call_id)
            except TranscriptionEmpty as e:
                timings.total_ms = (time.time() - start_time) * 1000
                logger.info("Turn short-circuited: no speech", call_id=call_id, reason=str(e))
                return TurnResult(ok=False, timings=timings, error=REPEAT_PROMPT)

            timings.transcribe_ms = transcription.latency_ms
            transcript = transcription.text

            tracked &= self._append(
                call_id,
                "user",
                transcript,
                {
                    "confidence": transcription.confidence,
                    "latency_ms": round(transcription.latency_ms, 2),
                },
            ) is not None

        # 2. Generation (never raises for remote errors)
        current = self.store.peek(call_id) or session
        reply = await self.generator.generate(current)
        timings.generate_ms = reply.latency_ms

        tracked &= self._append(call_id, "assistant", reply.text, _reply_annotations(reply)) is not None

        # 3. Synthesis
        synthesis = await self._synthesize(reply.text, call_id)
        if synthesis is not None:
            timings.synthesize_ms = synthesis.latency_ms

        # 4. Stats
        timings.total_ms = (time.time() - start_time) * 1000
        self.store.update_stats(
            call_id,
            total_duration_ms=timings.total_ms,
            audio_processing_ms=timings.transcribe_ms + timings.synthesize_ms,
        )

        # 5. Ending detection + outcome
        ended = detect_ending(reply.text, self.registry)
        outcome = None
        if ended:
            final = self.store.peek(call_id) or session
            details = extract_outcome(final, self.registry.get(final.mode))
            if details is not None:
                outcome = details.model_dump()
            if tracked:
                self._schedule_end(call_id, final)

        logger.info(
            "Turn completed",
            call_id=call_id,
            ended=ended,
            fallback=reply.fallback,
            tracked=tracked,
            has_audio=synthesis is not None,
            duration_ms=round(timings.total_ms, 2),
        )

        return TurnResult(
            ok=True,
            transcript=transcript,
            reply=reply.text,
            audio_ref=synthesis.audio_ref if synthesis else None,
            ended=ended,
            timings=timings,
            outcome=outcome,
            tracked=tracked,
        )

    async def _transcribe(self, audio: bytes, call_id: str) -> Transcription:
        """Transcribe, folding provider failures and silence into TranscriptionEmpty."""
        if not audio:
            raise TranscriptionEmpty("Empty audio payload")

        try:
            transcription = await self.transcriber.transcribe(audio, call_id=call_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Transcription failed", call_id=call_id, error=str(e))
            raise TranscriptionEmpty(str(e)) from e

        if not (transcription.text or "").strip():
            raise TranscriptionEmpty("No speech detected")

        transcription.text = transcription.text.strip()
        return transcription

    async def _synthesize(self, text: str, call_id: str) -> Optional[Synthesis]:
        try:
            return await self.synthesizer.synthesize(text, call_id=call_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Synthesis failed, returning text only", call_id=call_id, error=str(e))
            return None

    def _append(
        self,
        call_id: str,
        role: str,
        content: str,
        annotations: Mapping[str, Any],
    ) -> Optional[Message]:
        try:
            return self.store.append_message(call_id, role, content, annotations)
        except SessionNotFound:
            logger.warning(
                "Session evicted during turn; result returned untracked",
                call_id=call_id,
                role=role,
            )
            return None

    def _schedule_end(self, call_id: str, session: Session) -> None:
        """Tear the session down after the grace delay (reason "completed")."""
        existing = self._pending_ends.get(call_id)
        if existing and not existing.done():
            return

        task = asyncio.create_task(self._end_after_grace(call_id, session))
        self._pending_ends[call_id] = task
        logger.info("Session end scheduled", call_id=call_id, grace_s=self.end_grace_seconds)

    async def _end_after_grace(self, call_id: str, session: Session) -> None:
        try:
            await asyncio.sleep(self.end_grace_seconds)
            # Only the session this was scheduled for; a newer one under the same id survives.
            if self.store.peek(call_id) is session:
                self.store.end(call_id, "completed")
        except asyncio.CancelledError:
            pass
        finally:
            if self._pending_ends.get(call_id) is asyncio.current_task():
                del self._pending_ends[call_id]

    def reset(self, call_id: str) -> bool:
        """End the session now; the next turn for this id starts empty."""
        pending = self._pending_ends.pop(call_id, None)
        if pending and not pending.done():
            pending.cancel()

        ended = self.store.end(call_id, "reset")
        logger.info("Session reset", call_id=call_id, existed=ended)
        return ended

    def session_stats(self, call_id: str) -> Optional[Dict[str, Any]]:
        session = self.store.get(call_id)
        if session is None:
            return None
        return session.snapshot(include_messages=False)

    def info(self) -> Dict[str, Any]:
        summary = self.store.summary()
        summary["available_modes"] = self.registry.modes()
        return summary


def _reply_annotations(reply: Reply) -> Dict[str, Any]:
    if reply.fallback:
        return {
            "fallback": True,
            "failure": reply.failure,
            "original_error": reply.error,
            "latency_ms": round(reply.latency_ms, 2),
        }
    return {
        "model": reply.model,
        "latency_ms": round(reply.latency_ms, 2),
        "usage": reply.usage,
    }


def create_orchestrator(config: Optional[Config] = None) -> TurnOrchestrator:
    """
    Wire the production orchestrator from configuration.

    Returns:
        TurnOrchestrator backed by the in-memory store and the configured
        Deepgram/OpenRouter/OpenAI adapters
    """
    if config is None:
        config = get_config()

    registry = build_default_registry()
    store = InMemorySessionStore(
        registry,
        max_idle_seconds=config.session_max_idle_seconds,
        sweep_interval_seconds=config.session_sweep_interval_seconds,
    )
    generator = GenerationAdapter(
        create_completion_client(config),
        registry,
        max_messages=config.max_context_messages,
        timeout_seconds=config.llm_timeout_seconds,
    )

    return TurnOrchestrator(
        registry,
        store,
        generator,
        DeepgramTranscriber(config),
        OpenAISynthesizer(config),
        end_grace_seconds=config.end_grace_seconds,
    )
