"""
Call Lifecycle Controller.

Owns session start, user exit, transport close handling and the
at-most-once finalization of the backend call record.

Each started call gets its own ``_ActiveCall`` holding the transport, the
transcript reconciler, the readiness watchdog and the finalize guard, so
nothing leaks between consecutive calls.

Finalization:
    ``exit()`` and ``on_transport_closed()`` can fire in the same loop turn
    (user clicks exit, then the disconnect it causes is reported). Both go
    through ``finalize()``, which sets the guard flag before its first await,
    so only one of them ever reaches the backend. A failed end-call request
    is logged and recorded on the outcome report; it never prevents the
    session from closing locally.

Thread Safety:
    Not thread-safe. All methods must run on the event loop that delivers
    transport callbacks.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from voice_session.backend import CallRecordClient
from voice_session.config import (
    DEFAULT_AGENT_IDENTITY_PREFIX,
    DEFAULT_JOIN_TIMEOUT_SECONDS,
)
from voice_session.errors import (
    BackendError,
    FinalizeSyncFailure,
    JoinTimeout,
    StartCancelled,
    StartError,
)
from voice_session.models import (
    CallOutcome,
    CallOutcomeReport,
    CallPhase,
    CallStatus,
    ReadinessState,
    RemoteParticipant,
    Session,
    TranscriptItem,
    TranscriptSegment,
    WelcomeConfig,
)
from voice_session.transcript import TranscriptListener, TranscriptReconciler
from voice_session.transport import TransportEvent, TransportFactory, TransportSession
from voice_session.watchdog import ReadinessWatchdog


__all__ = ["CallLifecycleController"]


logger = logging.getLogger(__name__)


StatusListener = Callable[[CallStatus], None]
FinalizedListener = Callable[[CallOutcomeReport], None]


def _new_session_id() -> str:
    timestamp = datetime.now(timezone.utc)
    return f"call_{timestamp.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


@dataclass
class _ActiveCall:
    """Per-call state owned by the controller."""

    session: Session
    transport: TransportSession
    reconciler: TranscriptReconciler
    watchdog: ReadinessWatchdog
    finalized: bool = False
    closing: bool = False
    muted: bool = False
    handlers: dict[TransportEvent, Callable[..., Any]] = field(default_factory=dict)


@dataclass
class _PendingStart:
    """A start() in flight; cancelled by exit() or a newer start()."""

    agent_id: str
    cancelled: bool = False


class CallLifecycleController:
    """
    Drives one call at a time against a transport and the call-record backend.

    Example:
        >>> controller = CallLifecycleController(client, LiveKitTransportSession)
        >>> controller.on_state_changed(lambda status: print(status.ready))
        >>> session = await controller.start("agt_123")
        >>> ...
        >>> await controller.exit()
        >>> controller.last_outcome.synced
        True
    """

    def __init__(
        self,
        backend: CallRecordClient,
        transport_factory: TransportFactory,
        *,
        join_timeout_seconds: float = DEFAULT_JOIN_TIMEOUT_SECONDS,
        agent_prefix: str = DEFAULT_AGENT_IDENTITY_PREFIX,
    ) -> None:
        self._backend = backend
        self._transport_factory = transport_factory
        self._join_timeout_seconds = join_timeout_seconds
        self._agent_prefix = agent_prefix

        self._call: _ActiveCall | None = None
        self._pending_start: _PendingStart | None = None
        self._phase = CallPhase.IDLE
        self._error: str | None = None
        self._last_outcome: CallOutcomeReport | None = None
        self._close_tasks: set[asyncio.Task[None]] = set()

        self._status_listeners: list[StatusListener] = []
        self._transcript_listeners: list[TranscriptListener] = []
        self._finalized_listeners: list[FinalizedListener] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def phase(self) -> CallPhase:
        return self._phase

    @property
    def session(self) -> Session | None:
        return self._call.session if self._call else None

    @property
    def is_active(self) -> bool:
        return self._call is not None and not self._call.closing

    @property
    def is_starting(self) -> bool:
        return self._pending_start is not None

    @property
    def is_ready(self) -> bool:
        return self._call is not None and self._call.watchdog.is_ready

    @property
    def error(self) -> str | None:
        """User-visible error: start failure or join timeout diagnostic."""
        return self._error

    @property
    def transcript(self) -> list[TranscriptItem]:
        return self._call.reconciler.items if self._call else []

    @property
    def last_outcome(self) -> CallOutcomeReport | None:
        return self._last_outcome

    def status(self) -> CallStatus:
        call = self._call
        if call is None:
            return CallStatus(phase=self._phase, error=self._error)
        return CallStatus(
            phase=self._phase,
            readiness=call.watchdog.state,
            ready=call.watchdog.is_ready,
            error=self._error,
            room_name=call.session.room_name,
            call_id=call.session.call_id,
            muted=call.muted,
            transcript_size=len(call.reconciler),
            render_tick=call.reconciler.render_tick,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_state_changed(self, listener: StatusListener) -> Callable[[], None]:
        return self._subscribe(self._status_listeners, listener)

    def on_transcript_changed(self, listener: TranscriptListener) -> Callable[[], None]:
        return self._subscribe(self._transcript_listeners, listener)

    def on_finalized(self, listener: FinalizedListener) -> Callable[[], None]:
        return self._subscribe(self._finalized_listeners, listener)

    @staticmethod
    def _subscribe(listeners: list, listener: Callable) -> Callable[[], None]:
        listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(
        self,
        agent_id: str,
        welcome: WelcomeConfig | None = None,
    ) -> Session:
        """
        Open a new call session for an agent.

        Any call still active is exited first. The start is abandoned if
        ``exit()``, a transport close or a newer ``start()`` arrives while
        it is waiting for credentials or for the connection.

        Args:
            agent_id: Backend agent id.
            welcome: Optional greeting behaviour for the agent.

        Returns:
            The new Session.

        Raises:
            StartCancelled: If the call was ended before it became active.
            StartError: If credentials cannot be obtained or the transport
                fails to connect.
        """
        if not agent_id or not agent_id.strip():
            raise StartError("agent_id is required to start a call")

        if self._pending_start is not None:
            self._pending_start.cancelled = True
        pending = _PendingStart(agent_id=agent_id)
        self._pending_start = pending
        try:
            return await self._start(pending, welcome)
        finally:
            if self._pending_start is pending:
                self._pending_start = None

    async def _start(self, pending: _PendingStart, welcome: WelcomeConfig | None) -> Session:
        agent_id = pending.agent_id
        if self._call is not None:
            logger.info("Exiting active call before starting a new one")
            await self._exit_active()
        if pending.cancelled:
            raise StartCancelled(f"Start of call with agent {agent_id} was cancelled")

        self._error = None
        self._set_phase(CallPhase.STARTING)

        try:
            credentials = await self._backend.start_session(agent_id, welcome)
        except BackendError as exc:
            if pending.cancelled:
                raise StartCancelled(
                    f"Start of call with agent {agent_id} was cancelled", exc
                ) from exc
            self._fail_start(f"Failed to start session: {exc.detail}")
            raise StartError(self._error, exc) from exc

        if pending.cancelled:
            # The backend already opened a call record; close it out
            logger.info("Call %s was exited while requesting credentials", credentials.call_id)
            await self._close_out(credentials.call_id, CallOutcome.CLOSED, [])
            raise StartCancelled(f"Call {credentials.call_id} was exited before it started")

        session = Session(
            session_id=_new_session_id(),
            agent_id=agent_id,
            transport_url=credentials.transport_url,
            auth_token=credentials.token,
            room_name=credentials.room_name,
            call_id=credentials.call_id,
            expected_agent_identity=credentials.expected_agent_identity,
            agent_name=credentials.agent.name if credentials.agent else None,
        )

        transport = self._transport_factory()
        reconciler = TranscriptReconciler(
            transport,
            agent_name=session.agent_name,
            agent_prefix=self._agent_prefix,
        )
        watchdog = ReadinessWatchdog(
            transport,
            room_name=session.room_name,
            expected_agent_identity=session.expected_agent_identity,
            timeout_seconds=self._join_timeout_seconds,
            agent_prefix=self._agent_prefix,
            on_ready=self._notify_status,
            on_timeout=self._handle_join_timeout,
        )
        call = _ActiveCall(
            session=session,
            transport=transport,
            reconciler=reconciler,
            watchdog=watchdog,
        )
        reconciler.on_transcript_changed(self._notify_transcript)
        self._call = call
        # Subscribe before connecting so early participant events are seen
        self._wire(call)

        try:
            await transport.connect(session.transport_url, session.auth_token)
        except Exception as exc:  # noqa: BLE001 - any connect failure is a start failure
            if self._superseded(pending, call):
                await self._abandon(call)
                raise StartCancelled(
                    f"Call {session.call_id} was closed while connecting", exc
                ) from exc
            logger.error("Transport connect failed for room %s: %s", session.room_name, exc)
            await self.finalize(CallOutcome.ERROR)
            await self._disconnect(call)
            self._release(call)
            self._fail_start(f"Failed to connect to room {session.room_name}: {exc}")
            raise StartError(self._error, exc) from exc

        if self._superseded(pending, call):
            logger.info("Call %s was closed while connecting", session.call_id)
            await self._abandon(call)
            raise StartCancelled(f"Call {session.call_id} was closed while connecting")

        watchdog.arm()
        self._set_phase(CallPhase.ACTIVE)
        # The agent may have joined before our subscriptions saw it
        watchdog.observe()

        logger.info(
            "Call session %s started (room=%s, call=%s)",
            session.session_id,
            session.room_name,
            session.call_id,
        )
        return session

    async def exit(self) -> CallOutcomeReport | None:
        """
        User-initiated termination.

        Finalizes once, requests transport disconnect and clears local
        state. A start still in flight is cancelled. Safe to call
        repeatedly and when nothing is active.

        Returns:
            The outcome report of the most recent finalization, if any.
        """
        pending = self._pending_start
        if pending is not None and not pending.cancelled:
            pending.cancelled = True
            logger.info("Cancelling call start for agent %s", pending.agent_id)
            if self._call is None:
                self._set_phase(CallPhase.CLOSED)
        return await self._exit_active()

    async def _exit_active(self) -> CallOutcomeReport | None:
        call = self._call
        if call is None or call.closing:
            return self._last_outcome

        call.closing = True
        call.watchdog.cancel()
        self._set_phase(CallPhase.CLOSED)
        try:
            await self.finalize(self._outcome_for(call, CallOutcome.CLOSED))
        finally:
            await self._disconnect(call)
            self._release(call)

        logger.info("Call session %s exited", call.session.session_id)
        return self._last_outcome

    async def on_transport_closed(self, reason: str | None = None) -> None:
        """
        Handle the transport's session-closed notification.

        Covers network drops, remote hang-up and page unload.
        """
        call = self._call
        if call is None:
            return
        await self._close_from_transport(call, reason)

    async def _close_from_transport(self, call: _ActiveCall, reason: str | None) -> None:
        if call is not self._call:
            return

        logger.info(
            "Transport closed for room %s (reason=%s)", call.session.room_name, reason
        )
        call.watchdog.cancel()
        if not call.closing:
            call.closing = True
            self._set_phase(CallPhase.CLOSED)
        await self.finalize(self._outcome_for(call, CallOutcome.ENDED))
        self._release(call)

    async def finalize(self, outcome: CallOutcome | str) -> bool:
        """
        Close out the backend call record exactly once per session.

        The guard is set before the first await so that concurrent exit and
        close triggers cannot both run the body. Backend failures are logged
        and swallowed.

        Args:
            outcome: Terminal classification of the call.

        Returns:
            True if this invocation performed the finalization.
        """
        call = self._call
        if call is None or call.finalized:
            return False
        call.finalized = True

        await self._close_out(
            call.session.call_id,
            CallOutcome(outcome),
            call.reconciler.snapshot(),
        )
        return True

    async def _close_out(
        self,
        call_id: str,
        outcome: CallOutcome,
        transcript: list[TranscriptItem],
    ) -> CallOutcomeReport:
        report = CallOutcomeReport(
            call_id=call_id,
            outcome=outcome,
            transcript=transcript,
        )

        try:
            await self._backend.end_call(call_id, outcome, transcript)
            report.synced = True
            logger.info(
                "Finalized call %s (outcome=%s, %d transcript items)",
                call_id,
                outcome.value,
                len(transcript),
            )
        except Exception as exc:  # noqa: BLE001 - finalize must never throw
            failure = FinalizeSyncFailure(call_id, exc)
            report.sync_error = str(failure)
            logger.warning("%s", failure)

        self._last_outcome = report
        for listener in list(self._finalized_listeners):
            try:
                listener(report)
            except Exception as exc:  # noqa: BLE001 - listeners must not break finalize
                logger.warning("Finalize listener failed: %s", exc, exc_info=True)
        return report

    def _superseded(self, pending: _PendingStart, call: _ActiveCall) -> bool:
        return pending.cancelled or call is not self._call or call.closing

    async def _abandon(self, call: _ActiveCall) -> None:
        """Tear down a call that was ended before it became active."""
        if call is self._call and not call.closing:
            call.closing = True
            call.watchdog.cancel()
            self._set_phase(CallPhase.CLOSED)
            await self.finalize(CallOutcome.CLOSED)
        await self._disconnect(call)
        self._release(call)

    async def set_muted(self, muted: bool) -> bool:
        """
        Mute or unmute the local microphone.

        Returns:
            True if the transport applied the change.
        """
        call = self._call
        if call is None or call.closing:
            return False
        try:
            applied = await call.transport.set_microphone_enabled(not muted)
        except Exception as exc:  # noqa: BLE001 - mute failure is reported as False
            logger.warning("Mute toggle failed: %s", exc)
            return False
        if applied:
            call.muted = muted
            self._notify_status()
        return applied

    def clear_transcript(self) -> None:
        """Clear the on-screen transcript of the active call."""
        if self._call is not None:
            self._call.reconciler.clear()

    # ------------------------------------------------------------------
    # Transport wiring
    # ------------------------------------------------------------------

    def _wire(self, call: _ActiveCall) -> None:
        def _on_participant(participant: RemoteParticipant) -> None:
            self._guarded("participant", self._handle_participant, call, participant)

        def _on_segments(
            segments: list[TranscriptSegment], participant_identity: str | None = None
        ) -> None:
            self._guarded(
                "transcription", self._handle_segments, call, segments, participant_identity
            )

        def _on_closed(reason: str | None = None) -> None:
            self._guarded("session-closed", self._schedule_close, call, reason)

        call.handlers = {
            TransportEvent.PARTICIPANT_JOINED: _on_participant,
            TransportEvent.PARTICIPANT_LEFT: _on_participant,
            TransportEvent.TRANSCRIPTION_SEGMENT: _on_segments,
            TransportEvent.SESSION_CLOSED: _on_closed,
        }
        for event, handler in call.handlers.items():
            call.transport.on(event, handler)

    def _unwire(self, call: _ActiveCall) -> None:
        for event, handler in call.handlers.items():
            call.transport.off(event, handler)
        call.handlers = {}

    @staticmethod
    def _guarded(name: str, handler: Callable[..., None], *args: Any) -> None:
        try:
            handler(*args)
        except Exception as exc:  # noqa: BLE001 - event handlers must never throw
            logger.warning("Error handling %s event: %s", name, exc, exc_info=True)

    def _handle_participant(self, call: _ActiveCall, participant: RemoteParticipant) -> None:
        if call is not self._call:
            return
        logger.debug("Participant event: %s", participant.identity)
        call.watchdog.observe()
        self._notify_status()

    def _handle_segments(
        self,
        call: _ActiveCall,
        segments: list[TranscriptSegment],
        participant_identity: str | None,
    ) -> None:
        if call is not self._call:
            return
        call.reconciler.apply_segments(segments, participant_identity)
        call.watchdog.observe()

    def _schedule_close(self, call: _ActiveCall, reason: str | None) -> None:
        if call is not self._call:
            return
        task = asyncio.get_running_loop().create_task(self._close_from_transport(call, reason))
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)

    async def _disconnect(self, call: _ActiveCall) -> None:
        try:
            await call.transport.disconnect()
        except Exception as exc:  # noqa: BLE001 - local close must still complete
            logger.warning("Transport disconnect failed: %s", exc)

    def _release(self, call: _ActiveCall) -> None:
        call.watchdog.cancel()
        self._unwire(call)
        if self._call is call:
            self._call = None
            if self._phase != CallPhase.IDLE:
                self._set_phase(CallPhase.CLOSED)

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _outcome_for(call: _ActiveCall, default: CallOutcome) -> CallOutcome:
        if call.watchdog.state == ReadinessState.TIMED_OUT:
            return CallOutcome.TIMEOUT
        return default

    def _fail_start(self, message: str) -> None:
        self._error = message
        logger.error("%s", message)
        self._set_phase(CallPhase.IDLE)

    def _handle_join_timeout(self, error: JoinTimeout) -> None:
        self._error = str(error)
        self._notify_status()

    def _set_phase(self, phase: CallPhase) -> None:
        if self._phase == phase:
            return
        self._phase = phase
        self._notify_status()

    def _notify_status(self) -> None:
        status = self.status()
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as exc:  # noqa: BLE001 - listeners must not break state changes
                logger.warning("Status listener failed: %s", exc, exc_info=True)

    def _notify_transcript(self, items: list[TranscriptItem]) -> None:
        for listener in list(self._transcript_listeners):
            try:
                listener(items)
            except Exception as exc:  # noqa: BLE001 - listeners must not break ingestion
                logger.warning("Transcript listener failed: %s", exc, exc_info=True)
