"""
FastAPI server for the voice relay.

Endpoints:
- GET /health: Health check
- POST /api/chat: One conversation turn (multipart: call_id, mode, optional audio)
- POST /api/chat/reset: Drop a call's session
- GET /api/chat/stats/{call_id}: Session metadata
- GET /api/chat/info: Live sessions and mode distribution
- /uploads/responses/*: Synthesized reply audio
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional
import logging

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
import structlog
import uvicorn

from src.relay.config import get_config, init_config, ConfigError
from src.relay.errors import InvalidMode
from src.relay.pipeline import INTERNAL_ERROR_MESSAGE, TurnOrchestrator, create_orchestrator
from src.relay.tts import PUBLIC_AUDIO_PREFIX, cleanup_old_files


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False) if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


class ResetRequest(BaseModel):
    call_id: Optional[str] = None


class CallLocks:
    """One in-flight turn per call id; the core relies on the boundary for this."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, call_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        self._holders[call_id] = self._holders.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[call_id] -= 1
            if self._holders[call_id] == 0:
                del self._holders[call_id]
                del self._locks[call_id]

    def __len__(self) -> int:
        return len(self._locks)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _audio_cleanup_loop(directory: str, max_age_seconds: float, interval_seconds: float) -> None:
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(cleanup_old_files, directory, max_age_seconds)
            except Exception as e:
                logger.error("Audio cleanup failed", error=str(e))
    except asyncio.CancelledError:
        pass


def create_app(orchestrator: Optional[TurnOrchestrator] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        orchestrator: Optional pre-wired orchestrator (tests); when omitted the
            production one is created from configuration at startup.
    """
    config = get_config()
    started_at = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting voice relay server...")
        cleanup_task: Optional[asyncio.Task] = None

        try:
            if orchestrator is None:
                cfg = init_config()
                configure_logging(cfg.log_level)
                app.state.orchestrator = create_orchestrator(cfg)
                await app.state.orchestrator.generator.client.check_connection()
            else:
                cfg = config
                app.state.orchestrator = orchestrator

            Path(cfg.output_dir).mkdir(parents=True, exist_ok=True)
            await app.state.orchestrator.start()
            cleanup_task = asyncio.create_task(
                _audio_cleanup_loop(
                    cfg.output_dir,
                    cfg.audio_max_age_hours * 3600,
                    cfg.audio_cleanup_interval_seconds,
                )
            )

            logger.info("Server ready", port=cfg.port, modes=app.state.orchestrator.registry.modes())

        except ConfigError as e:
            logger.error("Configuration error", error=str(e))
            sys.exit(1)

        yield

        # Shutdown
        logger.info("Shutting down server...")
        if cleanup_task:
            cleanup_task.cancel()
            await asyncio.gather(cleanup_task, return_exceptions=True)
        await app.state.orchestrator.stop()

    app = FastAPI(
        title="Voice Relay",
        description="Voice-driven conversational relay with per-call personas",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.call_locks = CallLocks()
    app.mount(
        PUBLIC_AUDIO_PREFIX,
        StaticFiles(directory=config.output_dir, check_dir=False),
        name="responses",
    )

    @app.get("/health")
    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(
            content={
                "status": "healthy",
                "timestamp": time.time(),
                "active_sessions": len(request.app.state.orchestrator.store),
            }
        )

    @app.post("/api/chat")
    async def chat(
        request: Request,
        call_id: Optional[str] = Form(None),
        mode: Optional[str] = Form(None),
        audio: Optional[UploadFile] = File(None),
    ) -> JSONResponse:
        """Run one conversation turn."""
        orch: TurnOrchestrator = request.app.state.orchestrator

        if not call_id:
            return _error(400, "call_id is required")
        if not mode:
            return _error(400, "mode is required")
        if mode not in orch.registry:
            return _error(400, f"Invalid mode. Available modes: {', '.join(orch.registry.modes())}")

        audio_bytes: Optional[bytes] = None
        if audio is not None:
            content_type = (audio.content_type or "").lower()
            if not (content_type.startswith("audio/") or content_type == "application/octet-stream"):
                return _error(400, "Only audio files are allowed")
            # Read at most one byte past the limit.
            audio_bytes = await audio.read(config.max_audio_bytes + 1)
            if len(audio_bytes) > config.max_audio_bytes:
                return _error(400, f"Audio file is too large (max {config.max_audio_bytes // (1024 * 1024)}MB)")

        metadata = {
            "ip": request.client.host if request.client else "",
            "user_agent": request.headers.get("user-agent", ""),
        }

        logger.info(
            "Chat request",
            call_id=call_id,
            mode=mode,
            has_audio=audio_bytes is not None,
            ip=metadata["ip"],
        )

        try:
            async with request.app.state.call_locks.hold(call_id):
                result = await orch.handle_turn(call_id, mode, audio_bytes, metadata)
        except InvalidMode as e:
            return _error(400, str(e))

        status_code = 500 if result.error == INTERNAL_ERROR_MESSAGE else 200
        logger.info(
            "Chat response",
            call_id=call_id,
            success=result.ok,
            duration_ms=round(result.timings.total_ms, 2),
        )
        return JSONResponse(status_code=status_code, content=result.to_dict())

    @app.post("/api/chat/reset")
    async def reset(request: Request, body: ResetRequest) -> JSONResponse:
        """Drop the session so the next turn starts from an empty history."""
        if not body.call_id:
            return _error(400, "call_id is required")

        request.app.state.orchestrator.reset(body.call_id)
        return JSONResponse(content={"success": True, "message": "Conversation reset"})

    @app.get("/api/chat/stats/{call_id}")
    async def stats(request: Request, call_id: str) -> JSONResponse:
        """Session metadata for a live call."""
        snapshot = request.app.state.orchestrator.session_stats(call_id)
        if snapshot is None:
            return _error(404, "Conversation not found")
        return JSONResponse(content={"success": True, "stats": snapshot})

    @app.get("/api/chat/info")
    async def info(request: Request) -> JSONResponse:
        """System information."""
        summary = request.app.state.orchestrator.info()
        summary["server_time"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        summary["uptime_seconds"] = round(time.time() - started_at, 2)
        return JSONResponse(content={"success": True, "info": summary})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            error=str(exc),
        )
        return _error(500, "Internal server error")

    return app


app = create_app()


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
