"""
Text-generation adapter.

Provides:
- OpenAI-compatible completion client (OpenRouter, Groq or OpenAI)
- Instruction list building with a sliding context window
- Failure classification and persona-specific fallback replies

Generation failure is recoverable: `GenerationAdapter.generate` never raises
for remote errors, it returns fallback text instead.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from src.relay.config import Config, get_config
from src.relay.errors import RemoteUnavailable
from src.relay.personas import Persona, PersonaRegistry
from src.relay.sessions import Message, Session

logger = structlog.get_logger(__name__)

START_MARKER = "START_CONVERSATIE"


@dataclass
class Completion:
    """Raw result of one completion call."""
    text: str
    model: str
    usage: Optional[Dict[str, Any]] = None


@dataclass
class Reply:
    """Reply produced for one turn (model output or fallback text)."""
    text: str
    model: Optional[str] = None
    latency_ms: float = 0.0
    usage: Optional[Dict[str, Any]] = None
    fallback: bool = False
    failure: Optional[str] = None
    error: Optional[str] = None


class CompletionClient(ABC):
    """Abstract "given an ordered message list, produce a reply" capability."""

    @abstractmethod
    async def complete(self, messages: List[Dict[str, str]]) -> Completion:
        raise NotImplementedError

    async def check_connection(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class OpenAICompatibleClient(CompletionClient):
    """
    Chat-completions client for any OpenAI-compatible endpoint.

    Uses the OpenAI SDK with the provider's base URL. SDK retries are disabled:
    one attempt per turn.
    """

    def __init__(self, config: Optional[Config] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.llm_model

        self._client = AsyncOpenAI(
            api_key=config.llm_api_key,
            base_url=config.llm_base_url,
            timeout=config.llm_timeout_seconds,
            max_retries=0,
            default_headers={
                "HTTP-Referer": config.app_url,
                "X-Title": "AI Voice Assistant",
            },
        )

    async def complete(self, messages: List[Dict[str, str]]) -> Completion:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.config.llm_max_tokens,
            temperature=self.config.llm_temperature,
            top_p=1,
            frequency_penalty=0,
            presence_penalty=0,
        )

        text = ""
        if response.choices and response.choices[0].message.content:
            text = response.choices[0].message.content

        usage = response.usage.model_dump() if response.usage else None
        return Completion(text=text, model=response.model or self.model, usage=usage)

    async def check_connection(self) -> bool:
        """Send a tiny prompt to verify credentials and model; never raises."""
        try:
            await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are a helpful assistant."},
                    {"role": "user", "content": "Hello, this is a test."},
                ],
                max_tokens=10,
            )
            logger.info("LLM connection test succeeded", model=self.model)
            return True
        except Exception as e:
            logger.error("LLM connection test failed", model=self.model, error=str(e))
            return False

    async def close(self) -> None:
        await self._client.close()


def build_messages(
    persona: Persona,
    history: Sequence[Message],
    max_messages: int = 20,
) -> List[Dict[str, str]]:
    """
    Build the ordered instruction list for the model.

    System instructions first, then the dialogue. An empty dialogue becomes a
    single synthetic start marker so the model always has a turn to react to.
    When over `max_messages` (system prompt included), keep the system prompt
    and the most recent `max_messages - 1` messages.
    """
    system = {"role": "system", "content": persona.instructions}

    if history:
        turns = [{"role": m.role, "content": m.content} for m in history]
    else:
        turns = [{"role": "user", "content": START_MARKER}]

    if len(turns) + 1 > max_messages:
        turns = turns[-(max_messages - 1):]

    return [system, *turns]


def classify_failure(
    error: BaseException,
    latency_ms: float = 0.0,
    timeout_ms: Optional[float] = None,
) -> str:
    """Map a generation failure onto "timeout", "rate_limited" or "other"."""
    if isinstance(error, RemoteUnavailable):
        return error.kind

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, openai.APITimeoutError)):
        return RemoteUnavailable.TIMEOUT
    if "timeout" in str(error).lower() or "timed out" in str(error).lower():
        return RemoteUnavailable.TIMEOUT
    if timeout_ms is not None and latency_ms >= timeout_ms:
        return RemoteUnavailable.TIMEOUT

    if isinstance(error, openai.RateLimitError):
        return RemoteUnavailable.RATE_LIMITED
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if status == 429:
        return RemoteUnavailable.RATE_LIMITED

    return RemoteUnavailable.OTHER


class GenerationAdapter:
    """
    Turns session state into one bounded completion call.

    Never retries internally; a caller wanting resilience wraps the client.
    """

    def __init__(
        self,
        client: CompletionClient,
        registry: PersonaRegistry,
        *,
        max_messages: int = 20,
        timeout_seconds: float = 30.0,
    ):
        if max_messages < 2:
            raise ValueError("max_messages must be at least 2")
        self._client = client
        self._registry = registry
        self.max_messages = max_messages
        self.timeout_seconds = timeout_seconds

    @property
    def client(self) -> CompletionClient:
        return self._client

    async def close(self) -> None:
        await self._client.close()

    async def generate(self, session: Session) -> Reply:
        persona = self._registry.get(session.mode)
        messages = build_messages(persona, session.messages, self.max_messages)

        logger.info(
            "Generation started",
            call_id=session.id,
            mode=session.mode,
            messages=len(session.messages),
            sent=len(messages),
        )

        start_time = time.time()
        try:
            completion = await asyncio.wait_for(
                self._client.complete(messages),
                timeout=self.timeout_seconds,
            )
            if not (completion.text or "").strip():
                raise RemoteUnavailable(RemoteUnavailable.OTHER, "Empty completion")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            kind = classify_failure(e, latency_ms, self.timeout_seconds * 1000)

            logger.error(
                "Generation failed",
                call_id=session.id,
                mode=session.mode,
                failure=kind,
                error=str(e) or type(e).__name__,
                status_code=getattr(e, "status_code", None),
                latency_ms=round(latency_ms, 2),
            )

            return Reply(
                text=persona.fallback_for(kind),
                latency_ms=latency_ms,
                fallback=True,
                failure=kind,
                error=str(e) or type(e).__name__,
            )

        latency_ms = (time.time() - start_time) * 1000
        usage = completion.usage or {}
        logger.info(
            "Generation succeeded",
            call_id=session.id,
            model=completion.model,
            response=completion.text[:100],
            latency_ms=round(latency_ms, 2),
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
        )

        return Reply(
            text=completion.text,
            model=completion.model,
            latency_ms=latency_ms,
            usage=completion.usage,
        )


def create_completion_client(config: Optional[Config] = None) -> OpenAICompatibleClient:
    """Create the completion client for the configured provider."""
    return OpenAICompatibleClient(config or get_config())
