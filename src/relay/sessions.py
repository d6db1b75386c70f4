"""
Per-call conversation state.

Owns the mapping from call identifier to Session and provides creation,
retrieval-with-touch, append-only message history, additive stats, explicit
ending with an archival event, and a background idle sweep.
"""

from __future__ import annotations

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from src.relay.errors import SessionNotFound
from src.relay.personas import PersonaRegistry

logger = structlog.get_logger(__name__)

ROLES = ("user", "assistant")

END_REASONS = ("completed", "reset", "timeout")

ArchiveListener = Callable[[Dict[str, Any], str], None]


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _preview(text: str, limit: int = 100) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass(frozen=True)
class Message:
    """A single immutable dialogue message."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)
    # Diagnostic only (confidence, latency, fallback flag, model).
    annotations: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": _iso(self.timestamp),
            "annotations": dict(self.annotations),
        }


@dataclass
class SessionStats:
    """Monotonic per-session counters."""
    message_count: int = 0
    audio_processing_ms: float = 0.0
    total_duration_ms: float = 0.0

    def add(self, **deltas: float) -> None:
        for name, value in deltas.items():
            if not hasattr(self, name):
                raise AttributeError(f"Unknown session stat '{name}'")
            if value is None or value < 0:
                continue
            setattr(self, name, getattr(self, name) + value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_count": self.message_count,
            "audio_processing_ms": round(self.audio_processing_ms, 2),
            "total_duration_ms": round(self.total_duration_ms, 2),
        }


@dataclass
class Session:
    """Accumulated state of one conversation, keyed by call identifier."""
    id: str
    mode: str
    started_at: float
    last_active_at: float
    metadata: Mapping[str, Any] = field(default_factory=dict)
    stats: SessionStats = field(default_factory=SessionStats)
    _messages: List[Message] = field(default_factory=list, repr=False)

    @property
    def messages(self) -> Tuple[Message, ...]:
        """Chronological, read-only view of the history."""
        return tuple(self._messages)

    def idle_seconds(self, now: float) -> float:
        return now - self.last_active_at

    def snapshot(self, *, include_messages: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "mode": self.mode,
            "message_count": len(self._messages),
            "started_at": _iso(self.started_at),
            "last_active_at": _iso(self.last_active_at),
            "stats": self.stats.to_dict(),
            "metadata": dict(self.metadata),
        }
        if include_messages:
            data["messages"] = [m.to_dict() for m in self._messages]
        return data


class SessionStore(ABC):
    """Interface for session storage; the orchestrator depends only on this."""

    @abstractmethod
    def create(self, call_id: str, mode: str, metadata: Optional[Mapping[str, Any]] = None) -> Session:
        raise NotImplementedError

    @abstractmethod
    def get(self, call_id: str) -> Optional[Session]:
        raise NotImplementedError

    @abstractmethod
    def peek(self, call_id: str) -> Optional[Session]:
        raise NotImplementedError

    @abstractmethod
    def append_message(
        self,
        call_id: str,
        role: str,
        content: str,
        annotations: Optional[Mapping[str, Any]] = None,
    ) -> Message:
        raise NotImplementedError

    @abstractmethod
    def update_stats(self, call_id: str, **deltas: float) -> None:
        raise NotImplementedError

    @abstractmethod
    def end(self, call_id: str, reason: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def sweep(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def summary(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """
    Process-local session store.

    All map access goes through a lock so concurrent work on different call
    ids never corrupts unrelated entries. `end` is pop-if-present, so the idle
    sweep and an explicit end for the same id race harmlessly.
    """

    def __init__(
        self,
        registry: PersonaRegistry,
        *,
        max_idle_seconds: float = 30 * 60,
        sweep_interval_seconds: float = 10 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self.max_idle_seconds = max_idle_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.RLock()
        self._listeners: List[ArchiveListener] = []
        self._sweep_task: Optional[asyncio.Task] = None

    def subscribe(self, listener: ArchiveListener) -> None:
        """Register a listener for archival events: listener(snapshot, reason)."""
        self._listeners.append(listener)

    def create(self, call_id: str, mode: str, metadata: Optional[Mapping[str, Any]] = None) -> Session:
        self._registry.get(mode)  # raises InvalidMode

        now = self._clock()
        session = Session(
            id=call_id,
            mode=mode,
            started_at=now,
            last_active_at=now,
            metadata=MappingProxyType(dict(metadata or {})),
        )

        with self._lock:
            replaced = call_id in self._sessions
            self._sessions[call_id] = session

        logger.info(
            "Session created",
            call_id=call_id,
            mode=mode,
            ip=session.metadata.get("ip", "unknown"),
            replaced=replaced,
        )
        return session

    def get(self, call_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(call_id)
            if session is not None:
                session.last_active_at = self._clock()
            return session

    def peek(self, call_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(call_id)

    def append_message(
        self,
        call_id: str,
        role: str,
        content: str,
        annotations: Optional[Mapping[str, Any]] = None,
    ) -> Message:
        if role not in ROLES:
            raise ValueError(f"Invalid message role '{role}'")

        with self._lock:
            session = self._sessions.get(call_id)
            if session is None:
                raise SessionNotFound(call_id)

            now = self._clock()
            message = Message(
                role=role,
                content=content,
                timestamp=now,
                annotations=MappingProxyType(dict(annotations or {})),
            )
            session._messages.append(message)
            session.stats.message_count += 1
            session.last_active_at = now

        logger.info(
            "Message appended",
            call_id=call_id,
            role=role,
            content=_preview(content),
        )
        return message

    def update_stats(self, call_id: str, **deltas: float) -> None:
        with self._lock:
            session = self._sessions.get(call_id)
            if session is None:
                return
            session.stats.add(**deltas)
            session.last_active_at = self._clock()

    def end(self, call_id: str, reason: str) -> bool:
        if reason not in END_REASONS:
            raise ValueError(f"Invalid end reason '{reason}'")

        with self._lock:
            session = self._sessions.pop(call_id, None)

        if session is None:
            return False

        duration_s = self._clock() - session.started_at
        logger.info(
            "Session ended",
            call_id=call_id,
            mode=session.mode,
            reason=reason,
            duration_s=round(duration_s),
            messages=session.stats.message_count,
        )
        self._archive(session, reason)
        return True

    def _archive(self, session: Session, reason: str) -> None:
        snapshot = session.snapshot()
        snapshot["reason"] = reason
        logger.info(
            "Session archived",
            call_id=session.id,
            reason=reason,
            messages=len(snapshot["messages"]),
        )

        for listener in list(self._listeners):
            try:
                listener(snapshot, reason)
            except Exception as e:
                logger.error("Archive listener failed", call_id=session.id, error=str(e))

    def sweep(self) -> int:
        """End every session idle for longer than max_idle_seconds."""
        now = self._clock()
        with self._lock:
            expired = [
                call_id
                for call_id, session in self._sessions.items()
                if session.idle_seconds(now) > self.max_idle_seconds
            ]

        cleaned = sum(1 for call_id in expired if self.end(call_id, "timeout"))

        if cleaned:
            logger.info("Idle sessions swept", cleaned=cleaned, remaining=len(self))
        return cleaned

    async def _sweeper(self) -> None:
        """Background task running sweep() on a fixed period."""
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_seconds)
                try:
                    self.sweep()
                except Exception as e:
                    logger.error("Session sweep failed", error=str(e))
        except asyncio.CancelledError:
            pass

    async def start(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweeper())
        logger.info(
            "Session sweeper started",
            interval_s=self.sweep_interval_seconds,
            max_idle_s=self.max_idle_seconds,
        )

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Session sweeper stopped")

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            sessions = list(self._sessions.values())

        modes: Dict[str, int] = {}
        for session in sessions:
            modes[session.mode] = modes.get(session.mode, 0) + 1

        return {
            "active_sessions": len(sessions),
            "mode_distribution": modes,
            "timestamp": _iso(self._clock()),
        }

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Brief listing of live sessions for monitoring."""
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.snapshot(include_messages=False) for s in sessions]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._sessions
