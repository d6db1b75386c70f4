"""
Error taxonomy for the relay core.

Nothing here is fatal to the process: every error is scoped to a single turn
or a single session.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""
    pass


class InvalidMode(RelayError):
    """Raised when a persona/mode identifier is not registered."""

    def __init__(self, mode: str, available: Optional[list[str]] = None):
        self.mode = mode
        self.available = list(available or [])
        message = f"Unknown mode '{mode}'"
        if self.available:
            message += f". Available modes: {', '.join(self.available)}"
        super().__init__(message)


class SessionNotFound(RelayError):
    """Raised when mutating a session that does not exist (or was evicted)."""

    def __init__(self, call_id: str):
        self.call_id = call_id
        super().__init__(f"Session '{call_id}' does not exist")


class TranscriptionEmpty(RelayError):
    """No usable speech was detected in the uploaded audio."""
    pass


class TranscriptionFailed(RelayError):
    """The speech-to-text provider failed."""
    pass


class RemoteUnavailable(RelayError):
    """
    The text-generation provider failed.

    `kind` is one of "timeout", "rate_limited", "other".
    """

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    OTHER = "other"

    def __init__(self, kind: str, message: str = ""):
        self.kind = kind
        super().__init__(message or kind)


class SynthesisFailed(RelayError):
    """The text-to-speech provider failed."""
    pass
