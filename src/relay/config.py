"""
Configuration management for the voice relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"

LLM_PROVIDERS = ("openrouter", "groq", "openai")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 3000
    log_level: str = "INFO"
    app_url: str = "http://localhost:3000"
    max_audio_bytes: int = 10 * 1024 * 1024

    # LLM Provider (OpenRouter/Groq/OpenAI, all OpenAI-compatible)
    llm_provider: str = "openrouter"  # "openrouter" | "groq" | "openai"
    openrouter_api_key: str = ""
    openrouter_model: str = "microsoft/mai-ds-r1:free"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 30.0
    llm_max_tokens: int = 500
    llm_temperature: float = 0.7
    # System prompt + 19 conversation messages
    max_context_messages: int = 20

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    audio_language_code: str = "ro"
    stt_timeout_seconds: float = 15.0

    # OpenAI (TTS)
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "nova"
    output_dir: str = "uploads/responses"
    audio_max_age_hours: float = 24.0
    audio_cleanup_interval_seconds: float = 6 * 60 * 60

    # Sessions
    session_max_idle_seconds: float = 30 * 60
    session_sweep_interval_seconds: float = 10 * 60
    end_grace_seconds: float = 5.0

    @property
    def llm_base_url(self) -> str:
        """Base URL for the configured OpenAI-compatible provider."""
        provider = (self.llm_provider or "openrouter").strip().lower()
        if provider == "groq":
            return GROQ_BASE_URL
        if provider == "openai":
            return "https://api.openai.com/v1"
        return OPENROUTER_BASE_URL

    @property
    def llm_api_key(self) -> str:
        provider = (self.llm_provider or "openrouter").strip().lower()
        if provider == "groq":
            return self.groq_api_key
        if provider == "openai":
            return self.openai_api_key
        return self.openrouter_api_key

    @property
    def llm_model(self) -> str:
        provider = (self.llm_provider or "openrouter").strip().lower()
        if provider == "groq":
            return self.groq_model
        if provider == "openai":
            return self.openai_model
        return self.openrouter_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        provider = (self.llm_provider or "openrouter").strip().lower()
        if provider not in LLM_PROVIDERS:
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. "
                f"Expected one of: {', '.join(LLM_PROVIDERS)}."
            )

        if provider == "openrouter" and not self.openrouter_api_key:
            missing.append("OPENROUTER_API_KEY")
        if provider == "groq" and not self.groq_api_key:
            missing.append("GROQ_API_KEY")
        if not self.llm_model:
            missing.append(f"{provider.upper()}_MODEL")

        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        # OpenAI key is needed for TTS regardless of the LLM provider.
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if self.max_context_messages < 2:
            raise ConfigError("MAX_CONTEXT_MESSAGES must be at least 2")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            app_url=self.app_url,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            llm_timeout_seconds=self.llm_timeout_seconds,
            max_context_messages=self.max_context_messages,
            deepgram_model=self.deepgram_model,
            audio_language_code=self.audio_language_code,
            openai_tts_model=self.openai_tts_model,
            openai_tts_voice=self.openai_tts_voice,
            output_dir=self.output_dir,
            session_max_idle_seconds=self.session_max_idle_seconds,
            session_sweep_interval_seconds=self.session_sweep_interval_seconds,
            end_grace_seconds=self.end_grace_seconds,
            openrouter_key_set=bool(self.openrouter_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
            deepgram_key_set=bool(self.deepgram_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        app_url=os.getenv("APP_URL", "http://localhost:3000"),
        max_audio_bytes=_get_int("MAX_AUDIO_BYTES", 10 * 1024 * 1024),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "openrouter").strip().lower(),
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY", ""),
        openrouter_model=os.getenv("OPENROUTER_MODEL", "microsoft/mai-ds-r1:free"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 30.0),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 500),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        max_context_messages=_get_int("MAX_CONTEXT_MESSAGES", 20),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        audio_language_code=os.getenv("AUDIO_LANGUAGE_CODE", "ro"),
        stt_timeout_seconds=_get_float("STT_TIMEOUT_SECONDS", 15.0),

        # OpenAI TTS
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "nova"),
        output_dir=os.getenv("OUTPUT_DIR", "uploads/responses"),
        audio_max_age_hours=_get_float("AUDIO_MAX_AGE_HOURS", 24.0),
        audio_cleanup_interval_seconds=_get_float("AUDIO_CLEANUP_INTERVAL_SECONDS", 6 * 60 * 60),

        # Sessions
        session_max_idle_seconds=_get_float("SESSION_MAX_IDLE_SECONDS", 30 * 60),
        session_sweep_interval_seconds=_get_float("SESSION_SWEEP_INTERVAL_SECONDS", 10 * 60),
        end_grace_seconds=_get_float("END_GRACE_SECONDS", 5.0),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
