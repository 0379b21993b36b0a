"""
Voice Call Session Package.

Real-time session core for test calls between a dashboard user and a
remote voice agent.

Components:
    - CallLifecycleController: Starts sessions, handles exit/transport close,
      finalizes the backend call record exactly once
    - TranscriptReconciler: Merges revised, out-of-order transcription
      segments into one ordered transcript
    - ReadinessWatchdog: Detects the agent joining and reports join timeouts
    - resolve_role: Classifies speakers as agent or user
    - CallRecordClient: httpx client for the call-record backend
    - LiveKitTransportSession: Transport adapter on the LiveKit SDK
    - SessionUpdatePublisher: Pub/sub fan-out of updates to UI streams
    - TranscriptMirrorWriter: Local JSON mirror of finalized calls

Example:
    >>> from voice_session import CallLifecycleController, CallRecordClient
    >>> from voice_session.livekit_transport import LiveKitTransportSession
    >>>
    >>> controller = CallLifecycleController(
    ...     CallRecordClient("http://localhost:8787/api"),
    ...     LiveKitTransportSession,
    ... )
    >>> session = await controller.start("agt_123")
    >>> controller.on_transcript_changed(lambda items: print(items[-1].text))
    >>> await controller.exit()
"""

from .models import (
    CallOutcome,
    CallOutcomeReport,
    CallPhase,
    CallStatus,
    ParticipantRole,
    ReadinessState,
    RemoteParticipant,
    Session,
    SessionCredentials,
    TranscriptItem,
    TranscriptSegment,
    WelcomeConfig,
)

from .errors import (
    BackendError,
    FinalizeSyncFailure,
    JoinTimeout,
    SegmentDropped,
    StartCancelled,
    StartError,
    VoiceSessionError,
)

from .roles import (
    AGENT_STATE_ATTRIBUTE,
    is_agent_participant,
    resolve_role,
    resolve_speaker_label,
)

from .transcript import TranscriptReconciler

from .watchdog import ReadinessWatchdog

from .transport import TransportEvent, TransportEventEmitter, TransportSession

from .backend import CallRecordClient

from .controller import CallLifecycleController

from .pubsub import SessionUpdate, SessionUpdatePublisher, UpdateType

from .output import TranscriptMirrorWriter


__all__ = [
    # Models
    "CallOutcome",
    "CallOutcomeReport",
    "CallPhase",
    "CallStatus",
    "ParticipantRole",
    "ReadinessState",
    "RemoteParticipant",
    "Session",
    "SessionCredentials",
    "TranscriptItem",
    "TranscriptSegment",
    "WelcomeConfig",
    # Errors
    "BackendError",
    "FinalizeSyncFailure",
    "JoinTimeout",
    "SegmentDropped",
    "StartError",
    "StartCancelled",
    "VoiceSessionError",
    # Roles
    "AGENT_STATE_ATTRIBUTE",
    "is_agent_participant",
    "resolve_role",
    "resolve_speaker_label",
    # Core
    "TranscriptReconciler",
    "ReadinessWatchdog",
    "CallLifecycleController",
    # Transport
    "TransportEvent",
    "TransportEventEmitter",
    "TransportSession",
    # Backend
    "CallRecordClient",
    # Pub/Sub
    "SessionUpdate",
    "SessionUpdatePublisher",
    "UpdateType",
    # Output
    "TranscriptMirrorWriter",
]

__version__ = "0.1.0"
