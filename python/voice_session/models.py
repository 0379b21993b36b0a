"""
Pydantic models for the voice call session core.

Defines the session, transcript segment and transcript item shapes, the
backend request/response payloads, and the UI-facing status snapshot.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field


def utc_timestamp() -> str:
    """Return current UTC timestamp as ISO 8601 string with 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ParticipantRole(str, Enum):
    """Role of a participant in a call, derived per event."""

    AGENT = "agent"
    USER = "user"


class CallOutcome(str, Enum):
    """
    Terminal classification attached to a call record at finalization.

    Attributes:
        ENDED: Transport closed (network drop, remote close, page unload).
        CLOSED: User pressed exit.
        TIMEOUT: Call ended after the agent failed to join in time.
        ERROR: Transport could not be opened after credentials were issued.
    """

    ENDED = "ended"
    CLOSED = "closed"
    TIMEOUT = "timeout"
    ERROR = "error"


class RemoteParticipant(BaseModel):
    """
    A remote participant as currently known to the transport.

    The attribute bag is optional. The well-known key ``lk.agent.state``
    marks a participant as a voice agent.
    """

    identity: str = Field(..., description="Transport-level participant identity")
    name: Optional[str] = Field(default=None, description="Display name if set")
    attributes: dict[str, str] = Field(
        default_factory=dict,
        description="Participant attribute bag (may be empty)",
    )


class TranscriptSegment(BaseModel):
    """
    One unit of streamed speech recognition output.

    Segments sharing a ``segment_id`` are revisions of the same utterance.
    Id and timestamp are optional here so malformed events can be
    represented; the reconciler drops them.

    Example:
        >>> seg = TranscriptSegment(
        ...     segment_id="SG_1a2b",
        ...     text="Hello there",
        ...     is_final=False,
        ...     first_received_time_ms=1532.0,
        ... )
    """

    segment_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("segment_id", "segmentId", "id"),
        description="Stable utterance id reused across revisions",
    )
    participant_identity: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("participant_identity", "participantIdentity"),
        description="Identity of the speaking participant, if known",
    )
    text: str = Field(default="", description="Recognized text at this revision")
    is_final: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_final", "isFinal", "final"),
        description="False for interim results that may still change",
    )
    first_received_time_ms: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices(
            "first_received_time_ms", "firstReceivedTimeMs", "firstReceivedTime"
        ),
        description="Monotonic arrival timestamp used for ordering",
    )


class TranscriptItem(BaseModel):
    """
    One entry of the materialized transcript.

    Serializes to the call-record wire shape
    ``{speaker, role, text, final, firstReceivedTime}``.
    """

    segment_id: str = Field(..., description="Segment id this item materializes")
    speaker: str = Field(..., description="Display label of the speaker")
    role: ParticipantRole = Field(..., description="agent or user")
    text: str = Field(default="")
    final: bool = Field(default=False)
    first_received_time_ms: float = Field(
        ...,
        validation_alias=AliasChoices("first_received_time_ms", "firstReceivedTime"),
        serialization_alias="firstReceivedTime",
        description="Arrival timestamp used for ordering",
    )

    def to_wire(self) -> dict:
        """Return the backend call-record representation."""
        return self.model_dump(mode="json", by_alias=True, exclude={"segment_id"})


class WelcomeConfig(BaseModel):
    """Agent greeting behaviour requested for a test call."""

    model_config = {"populate_by_name": True}

    mode: Literal["ai", "user"] = Field(
        default="user", description="Who speaks first: the agent or the user"
    )
    ai_message_mode: Literal["dynamic", "custom"] = Field(
        default="dynamic", alias="aiMessageMode"
    )
    ai_message_text: str = Field(default="", alias="aiMessageText")
    ai_delay_seconds: float = Field(default=0, ge=0, alias="aiDelaySeconds")


class AgentInfo(BaseModel):
    """Agent summary echoed by the session start endpoint."""

    id: str
    name: Optional[str] = None


class SessionCredentials(BaseModel):
    """Response of the backend session start endpoint."""

    model_config = {"extra": "ignore"}

    transport_url: str = Field(
        ...,
        validation_alias=AliasChoices("transportUrl", "livekitUrl", "transport_url"),
    )
    token: str = Field(..., min_length=1)
    room_name: str = Field(..., validation_alias=AliasChoices("roomName", "room_name"))
    call_id: str = Field(..., validation_alias=AliasChoices("callId", "call_id"))
    expected_agent_identity: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("expectedAgentIdentity", "expected_agent_identity"),
    )
    agent: Optional[AgentInfo] = None


class Session(BaseModel):
    """
    One live call attempt.

    Created by the lifecycle controller when a start request succeeds and
    released when the transport closes or the user exits.
    """

    model_config = {"frozen": True}

    session_id: str = Field(..., description="Opaque session identifier")
    agent_id: str = Field(..., description="Agent the call was started for")
    transport_url: str
    auth_token: str
    room_name: str
    call_id: str = Field(..., description="Backend call record id")
    expected_agent_identity: Optional[str] = None
    agent_name: Optional[str] = Field(default=None, description="Agent display name")
    started_at: str = Field(default_factory=utc_timestamp)


class CallRecord(BaseModel):
    """Backend call record as returned by the end-call endpoint."""

    model_config = {"extra": "allow"}

    id: Optional[str] = None
    outcome: Optional[str] = None
    transcript: list[dict] = Field(default_factory=list)


class CallOutcomeReport(BaseModel):
    """
    Result of finalizing a call.

    ``synced`` is False when the backend end-call request failed; the
    transcript snapshot is still kept so the record can be reconciled later.
    """

    call_id: str
    outcome: CallOutcome
    transcript: list[TranscriptItem] = Field(default_factory=list)
    synced: bool = False
    sync_error: Optional[str] = None
    finalized_at: str = Field(default_factory=utc_timestamp)


class CallPhase(str, Enum):
    """Lifecycle phase of the controller."""

    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    CLOSED = "closed"


class ReadinessState(str, Enum):
    """Readiness watchdog states."""

    AWAITING_AGENT = "awaiting_agent"
    AGENT_READY = "agent_ready"
    TIMED_OUT = "timed_out"


class CallStatus(BaseModel):
    """UI-facing snapshot of the current call."""

    phase: CallPhase
    readiness: Optional[ReadinessState] = None
    ready: bool = False
    error: Optional[str] = None
    room_name: Optional[str] = None
    call_id: Optional[str] = None
    muted: bool = False
    transcript_size: int = 0
    render_tick: int = 0
