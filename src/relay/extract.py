"""
Outcome extraction from accumulated dialogue text.

Provides:
- Ending detection: any persona's closing phrase ends the call
- Appointment extraction (dental domain): date, time, service, confirmation

Extraction rules are pure functions `text -> AppointmentDetails | None` so new
domains can register their own rule on a persona.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable, Optional

import structlog
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from src.relay.personas import Persona, PersonaRegistry
    from src.relay.sessions import Session

logger = structlog.get_logger(__name__)

_MONTHS = (
    "ianuarie|februarie|martie|aprilie|mai|iunie|iulie|august|"
    "septembrie|octombrie|noiembrie|decembrie"
)

_DATE_RE = re.compile(rf"\b(\d{{1,2}})\s*({_MONTHS})\b", re.IGNORECASE)
_TIME_RE = re.compile(r"\bora?\s*(\d{1,2}):?(\d{2})?\b", re.IGNORECASE)
_SERVICE_RE = re.compile(r"(consultație|detartraj|plombă|extracție|control)", re.IGNORECASE)
_CONFIRMATION_WORDS = ("programat", "confirmat")

DEFAULT_SERVICE = "Consultație generală"

# Legacy cedilla forms still produced by some keyboards and STT engines.
_CEDILLA_MAP = str.maketrans({"ş": "ș", "ţ": "ț", "Ş": "Ș", "Ţ": "Ț"})


class AppointmentDetails(BaseModel):
    """Structured appointment extracted from a dental conversation."""

    date: Optional[str] = Field(
        default=None,
        description="Day and month, e.g. '5 martie'"
    )

    time: Optional[str] = Field(
        default=None,
        description="Time of day as HH:MM"
    )

    service: str = Field(
        default=DEFAULT_SERVICE,
        description="Requested dental service"
    )

    confirmed: bool = Field(
        default=False,
        description="Whether confirmation vocabulary appears in the dialogue"
    )


def normalize_text(text: str) -> str:
    """Lowercase and fold cedilla diacritics into their comma-below forms."""
    return (text or "").translate(_CEDILLA_MAP).lower()


def contains_any(text: str, phrases: Iterable[str]) -> bool:
    """Case-insensitive substring test against a set of phrases."""
    normalized = normalize_text(text)
    if not normalized:
        return False
    return any(normalize_text(phrase) in normalized for phrase in phrases)


def detect_ending(text: str, registry: "PersonaRegistry") -> bool:
    """
    True if `text` contains a closing phrase from any registered persona.

    Domain-agnostic: a teleshopping closing phrase ends a dental
    call just the same.
    """
    return contains_any(text, registry.ending_phrases())


def extract_appointment(text: str) -> Optional[AppointmentDetails]:
    """
    Pattern-match appointment details in free Romanian text.

    Returns a record only if a date or a time was found.
    """
    combined = normalize_text(text)

    date_match = _DATE_RE.search(combined)
    time_match = _TIME_RE.search(combined)
    service_match = _SERVICE_RE.search(combined)

    if not date_match and not time_match:
        return None

    return AppointmentDetails(
        date=f"{date_match.group(1)} {date_match.group(2)}" if date_match else None,
        time=f"{time_match.group(1)}:{time_match.group(2) or '00'}" if time_match else None,
        service=service_match.group(1) if service_match else DEFAULT_SERVICE,
        confirmed=any(word in combined for word in _CONFIRMATION_WORDS),
    )


def dialogue_text(session: "Session") -> str:
    """All message contents of a session, joined in chronological order."""
    return "\n".join(message.content for message in session.messages)


def extract_outcome(session: "Session", persona: "Persona") -> Optional[AppointmentDetails]:
    """
    Run the persona's extraction rule over the whole dialogue.

    Returns None for personas without a rule or when nothing was found.
    """
    if persona.extractor is None:
        return None

    outcome = persona.extractor(dialogue_text(session))
    if outcome is not None:
        logger.info(
            "Outcome extracted",
            call_id=session.id,
            mode=session.mode,
            outcome=outcome.model_dump(),
        )
    return outcome
