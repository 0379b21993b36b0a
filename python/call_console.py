"""
Voice Call Console Service

Local control surface for test calls with a voice agent. Drives the call
lifecycle controller and streams transcript/readiness updates to the
dashboard UI.

Endpoints:
    POST /call/start             - Start a test call with an agent
    POST /call/exit              - End the active call (finalizes once)
    POST /call/mute              - Mute/unmute the local microphone
    POST /call/transcript/clear  - Clear the on-screen transcript
    GET  /call/status            - Phase, readiness and error string
    GET  /call/transcript        - Current ordered transcript
    GET  /call/events            - Server-sent event stream of updates
    GET  /health                 - Health check
    GET  /stats                  - Statistics

Internal binding: configured by CONSOLE_HOST/CONSOLE_PORT (default 127.0.0.1:8790)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, AsyncIterator, Coroutine, TypedDict

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from voice_session import __version__
from voice_session.backend import CallRecordClient
from voice_session.config import RuntimeConfig, load_runtime_config
from voice_session.controller import CallLifecycleController
from voice_session.errors import StartCancelled, StartError
from voice_session.livekit_transport import LiveKitTransportSession
from voice_session.models import (
    CallOutcomeReport,
    CallStatus,
    ReadinessState,
    TranscriptItem,
    WelcomeConfig,
)
from voice_session.output import MirrorReadError, MirrorWriteError, TranscriptMirrorWriter
from voice_session.pubsub import SessionUpdatePublisher, UpdateType
from voice_session.transport import TransportFactory

# =============================================================================
# Logging Configuration
# =============================================================================

RUNTIME_CONFIG = load_runtime_config()

logging.basicConfig(
    level=RUNTIME_CONFIG.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


SERVICE_NAME = "Voice Call Console"

# Seconds between SSE keep-alive comments when no update is pending
SSE_KEEPALIVE_SECONDS = 15.0

# CORS configuration - modify for production
CORS_ORIGINS: list[str] = [
    "http://localhost:5173",  # Vite dev server (dashboard)
    "http://localhost:3000",
]


# =============================================================================
# Request Models
# =============================================================================


class CallStartRequest(BaseModel):
    """Request to start a test call."""

    agent_id: str = Field(..., min_length=1, description="Backend agent id")
    welcome: WelcomeConfig | None = Field(
        default=None, description="Optional greeting behaviour"
    )


class MuteRequest(BaseModel):
    """Request to change local microphone state."""

    muted: bool = Field(..., description="True to mute, False to unmute")


# =============================================================================
# Response Models
# =============================================================================


class BaseResponse(BaseModel):
    """Base response model with common fields."""

    ok: bool = Field(..., description="Whether the operation succeeded")
    message: str | None = Field(default=None, description="Optional status message")


class ErrorResponse(BaseModel):
    """Standard error response."""

    ok: bool = Field(default=False)
    error: str = Field(..., description="Error description")
    error_code: str | None = Field(default=None, description="Machine-readable error code")


class CallStartResponse(BaseResponse):
    """Response for call start."""

    session_id: str
    call_id: str
    room_name: str
    agent_name: str | None = None
    started_at: str


class CallExitResponse(BaseResponse):
    """Response for call exit."""

    outcome: CallOutcomeReport | None = Field(
        default=None, description="Outcome report of the finalized call"
    )


class MuteResponse(BaseResponse):
    """Response for mute toggle."""

    muted: bool


class TranscriptResponse(BaseModel):
    """Current ordered transcript."""

    items: list[TranscriptItem] = Field(default_factory=list)
    render_tick: int = 0


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    timestamp: str
    call_active: bool
    api_base: str


class StatsResponse(BaseModel):
    """Statistics response."""

    stats: dict[str, Any]
    subscribers: int
    mirror_directory: str
    unsynced_calls: list[str] = Field(default_factory=list)


class HistoryResponse(BaseModel):
    """Recently published session updates, oldest first."""

    updates: list[dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Application State (Type-safe Lifespan State)
# =============================================================================


class AppStats(TypedDict):
    """Application statistics tracking."""

    calls_started: int
    start_failures: int
    calls_finalized: int
    finalize_sync_failures: int
    join_timeouts: int
    started_at: str


class AppState(TypedDict):
    """Type-safe application state managed by lifespan."""

    controller: CallLifecycleController
    backend: CallRecordClient
    publisher: SessionUpdatePublisher
    mirror_writer: TranscriptMirrorWriter
    stats: AppStats


def get_initial_stats() -> AppStats:
    """Create initial statistics dictionary."""
    return AppStats(
        calls_started=0,
        start_failures=0,
        calls_finalized=0,
        finalize_sync_failures=0,
        join_timeouts=0,
        started_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )


# =============================================================================
# Custom Exceptions
# =============================================================================


class ConsoleServiceError(Exception):
    """Base exception for console service errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class SessionNotActiveError(ConsoleServiceError):
    """Raised when operation requires an active call."""

    def __init__(self, message: str = "No active call. Start a call first.") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="SESSION_NOT_ACTIVE",
        )


class CallStartFailedError(ConsoleServiceError):
    """Raised when the call could not be opened."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="START_FAILED",
        )


class CallStartCancelledError(ConsoleServiceError):
    """Raised when the call was exited or closed before it became active."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="START_CANCELLED",
        )


class MirrorNotFoundError(ConsoleServiceError):
    """Raised when no local mirror exists for a call."""

    def __init__(self, call_id: str) -> None:
        super().__init__(
            message=f"No mirrored transcript for call {call_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="MIRROR_NOT_FOUND",
        )


async def console_service_error_handler(
    request: Request, exc: ConsoleServiceError
) -> JSONResponse:
    """Handle ConsoleServiceError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            ok=False,
            error=exc.message,
            error_code=exc.error_code,
        ).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            ok=False,
            error="Internal server error",
            error_code="INTERNAL_ERROR",
        ).model_dump(),
    )


# =============================================================================
# Dependencies
# =============================================================================


def get_app_state(request: Request) -> AppState:
    """
    Dependency to retrieve application state from request.

    Raises:
        RuntimeError: If state is not properly initialized.
    """
    state = getattr(request, "state", None)
    if state is None:
        raise RuntimeError("Application state not initialized")
    return AppState(
        controller=state.controller,
        backend=state.backend,
        publisher=state.publisher,
        mirror_writer=state.mirror_writer,
        stats=state.stats,
    )


# Type alias for dependency injection
AppStateDep = Annotated[AppState, Depends(get_app_state)]


# =============================================================================
# Controller -> UI bridge
# =============================================================================


class _UpdateBridge:
    """
    Forwards synchronous controller notifications to the async publisher
    and the transcript mirror.

    Tasks are spawned on the running loop in notification order.
    """

    def __init__(
        self,
        publisher: SessionUpdatePublisher,
        mirror_writer: TranscriptMirrorWriter,
        stats: AppStats,
    ) -> None:
        self._publisher = publisher
        self._mirror_writer = mirror_writer
        self._stats = stats
        self._last_error: str | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    def attach(self, controller: CallLifecycleController) -> None:
        controller.on_state_changed(self.on_status)
        controller.on_transcript_changed(self.on_transcript)
        controller.on_finalized(self.on_finalized)

    def on_status(self, call_status: CallStatus) -> None:
        self._spawn(self._publisher.publish_status(call_status))
        if call_status.error and call_status.error != self._last_error:
            if call_status.readiness == ReadinessState.TIMED_OUT:
                self._stats["join_timeouts"] += 1
            self._spawn(self._publisher.publish_error(call_status.error))
        self._last_error = call_status.error

    def on_transcript(self, items: list[TranscriptItem]) -> None:
        self._spawn(self._publisher.publish_transcript(items))

    def on_finalized(self, report: CallOutcomeReport) -> None:
        self._stats["calls_finalized"] += 1
        if not report.synced:
            self._stats["finalize_sync_failures"] += 1
        self._spawn(self._mirror_and_publish(report))

    async def _mirror_and_publish(self, report: CallOutcomeReport) -> None:
        try:
            await self._mirror_writer.write_report(report)
        except MirrorWriteError as e:
            logger.error("Failed to mirror call %s: %s", report.call_id, e)
        await self._publisher.publish_finalized(report)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight publish/mirror tasks."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# =============================================================================
# FastAPI Application
# =============================================================================


def create_app(
    config: RuntimeConfig,
    *,
    backend: CallRecordClient | None = None,
    transport_factory: TransportFactory | None = None,
) -> FastAPI:
    """
    Build the console app.

    Args:
        config: Runtime configuration.
        backend: Call-record client; built from ``config.api_base`` if None.
        transport_factory: Transport constructor; LiveKit if None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[dict[str, Any]]:
        """Initialize shared resources on startup and clean up on shutdown."""
        logger.info("Starting %s v%s", SERVICE_NAME, __version__)
        logger.info(
            "Runtime: api_base=%s join_timeout=%.1fs agent_prefix=%s",
            config.api_base,
            config.join_timeout_seconds,
            config.agent_identity_prefix,
        )

        client = backend or CallRecordClient(
            config.api_base, timeout_seconds=config.backend_timeout_seconds
        )
        mirror_writer = TranscriptMirrorWriter(config.mirror_dir)
        logger.info("Transcript mirror directory: %s", config.mirror_dir)

        publisher = SessionUpdatePublisher()
        stats = get_initial_stats()
        controller = CallLifecycleController(
            client,
            transport_factory or LiveKitTransportSession,
            join_timeout_seconds=config.join_timeout_seconds,
            agent_prefix=config.agent_identity_prefix,
        )
        bridge = _UpdateBridge(publisher, mirror_writer, stats)
        bridge.attach(controller)

        yield {
            "controller": controller,
            "backend": client,
            "publisher": publisher,
            "mirror_writer": mirror_writer,
            "stats": stats,
        }

        # Shutdown
        logger.info("Shutting down...")
        if controller.is_active:
            await controller.exit()
        await bridge.drain()
        await client.aclose()

    app = FastAPI(
        title=SERVICE_NAME,
        version=__version__,
        description="Runs test calls with voice agents and streams their transcripts",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        max_age=3600,
    )

    app.add_exception_handler(ConsoleServiceError, console_service_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # =========================================================================
    # Endpoints
    # =========================================================================

    @app.post("/call/start", response_model=CallStartResponse)
    async def start_call(request: CallStartRequest, state: AppStateDep) -> CallStartResponse:
        """
        Start a test call.

        Any active call is exited (and finalized) first.

        Raises:
            CallStartFailedError: If credentials or transport connection fail.
            CallStartCancelledError: If the call was exited while starting.
        """
        controller = state["controller"]
        stats = state["stats"]
        publisher = state["publisher"]

        try:
            session = await controller.start(request.agent_id, request.welcome)
        except StartCancelled as e:
            raise CallStartCancelledError(e.message) from e
        except StartError as e:
            # The error itself reaches subscribers through the status bridge
            stats["start_failures"] += 1
            raise CallStartFailedError(e.message) from e

        stats["calls_started"] += 1
        await publisher.publish_system(
            f"Call started with {session.agent_name or session.agent_id} in {session.room_name}"
        )
        return CallStartResponse(
            ok=True,
            message="Session started",
            session_id=session.session_id,
            call_id=session.call_id,
            room_name=session.room_name,
            agent_name=session.agent_name,
            started_at=session.started_at,
        )

    @app.post("/call/exit", response_model=CallExitResponse)
    async def exit_call(state: AppStateDep) -> CallExitResponse:
        """
        End the active call.

        Always succeeds: backend sync failures are reported in the outcome,
        not as an HTTP error.
        """
        controller = state["controller"]
        was_active = controller.is_active
        was_starting = controller.is_starting
        report = await controller.exit()
        if not was_active:
            message = "Call start cancelled" if was_starting else "No active call"
            return CallExitResponse(ok=True, message=message, outcome=report)

        message = "Call ended"
        if report is not None and not report.synced:
            message = "Call ended locally; call record sync failed"
        await state["publisher"].publish_system(message)
        return CallExitResponse(ok=True, message=message, outcome=report)

    @app.post("/call/mute", response_model=MuteResponse)
    async def mute_call(request: MuteRequest, state: AppStateDep) -> MuteResponse:
        """
        Mute or unmute the local microphone.

        Raises:
            SessionNotActiveError: If no call is active.
        """
        controller = state["controller"]
        if not controller.is_active:
            raise SessionNotActiveError()
        applied = await controller.set_muted(request.muted)
        return MuteResponse(
            ok=applied,
            message=None if applied else "Microphone state could not be changed",
            muted=controller.status().muted,
        )

    @app.post("/call/transcript/clear", response_model=BaseResponse)
    async def clear_transcript(state: AppStateDep) -> BaseResponse:
        """Clear the on-screen transcript of the active call."""
        controller = state["controller"]
        if not controller.is_active:
            raise SessionNotActiveError()
        controller.clear_transcript()
        return BaseResponse(ok=True, message="Transcript cleared")

    @app.get("/call/status", response_model=CallStatus)
    async def get_call_status(state: AppStateDep) -> CallStatus:
        """Current phase, readiness and error string."""
        return state["controller"].status()

    @app.get("/call/transcript", response_model=TranscriptResponse)
    async def get_transcript(state: AppStateDep) -> TranscriptResponse:
        """Current ordered transcript of the active call."""
        controller = state["controller"]
        return TranscriptResponse(
            items=controller.transcript,
            render_tick=controller.status().render_tick,
        )

    @app.get("/call/events")
    async def stream_events(request: Request, state: AppStateDep) -> StreamingResponse:
        """Server-sent event stream of session updates."""
        publisher = state["publisher"]

        async def event_stream() -> AsyncIterator[str]:
            queue = await publisher.subscribe()
            try:
                while True:
                    try:
                        update = await asyncio.wait_for(
                            queue.get(), timeout=SSE_KEEPALIVE_SECONDS
                        )
                    except asyncio.TimeoutError:
                        if await request.is_disconnected():
                            break
                        yield ": keep-alive\n\n"
                        continue
                    yield f"event: {update.update_type.value}\ndata: {update.to_json()}\n\n"
            finally:
                await publisher.unsubscribe(queue)

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    @app.get("/call/history", response_model=HistoryResponse)
    async def get_history(
        state: AppStateDep,
        limit: int = Query(default=50, ge=1, le=500),
        update_type: UpdateType | None = None,
    ) -> HistoryResponse:
        """Recent session updates, for a dashboard that connects mid-call."""
        updates = await state["publisher"].recent_updates(limit=limit, update_type=update_type)
        return HistoryResponse(updates=[u.to_dict() for u in updates])

    @app.get("/calls/{call_id}/mirror", response_model=CallOutcomeReport)
    async def get_mirrored_call(call_id: str, state: AppStateDep) -> CallOutcomeReport:
        """
        Locally mirrored outcome of a finished call.

        Raises:
            MirrorNotFoundError: If the call was never mirrored here.
        """
        try:
            report = state["mirror_writer"].load_report(call_id)
        except MirrorReadError as e:
            raise ConsoleServiceError(
                message=str(e),
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                error_code="MIRROR_UNREADABLE",
            ) from e
        if report is None:
            raise MirrorNotFoundError(call_id)
        return report

    @app.get("/health", response_model=HealthResponse)
    async def health(state: AppStateDep) -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            service=SERVICE_NAME,
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            call_active=state["controller"].is_active,
            api_base=config.api_base,
        )

    @app.get("/stats", response_model=StatsResponse)
    async def get_stats(state: AppStateDep) -> StatsResponse:
        """Get current statistics."""
        return StatsResponse(
            stats=dict(state["stats"]),
            subscribers=state["publisher"].subscriber_count,
            mirror_directory=str(state["mirror_writer"].output_dir),
            unsynced_calls=state["mirror_writer"].list_unsynced(),
        )

    return app


app = create_app(RUNTIME_CONFIG)
