"""Transport session interfaces and shared event plumbing."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Protocol

from voice_session.models import RemoteParticipant


logger = logging.getLogger(__name__)


class TransportEvent(str, Enum):
    """
    Event kinds emitted by a transport session.

    Callback signatures:
        PARTICIPANT_JOINED: (participant: RemoteParticipant)
        PARTICIPANT_LEFT: (participant: RemoteParticipant)
        TRANSCRIPTION_SEGMENT: (segments: list[TranscriptSegment], participant_identity: str | None)
        SESSION_CLOSED: (reason: str | None)
    """

    PARTICIPANT_JOINED = "participant-joined"
    PARTICIPANT_LEFT = "participant-left"
    TRANSCRIPTION_SEGMENT = "transcription-segment"
    SESSION_CLOSED = "session-closed"


EventCallback = Callable[..., Any]


class TransportSession(Protocol):
    """Interface the call controller needs from a media room connection."""

    @property
    def local_identity(self) -> str | None:
        """Identity of the local participant once connected."""

    def on(self, event: TransportEvent, callback: EventCallback) -> None:
        """Subscribe a callback to one event kind."""

    def off(self, event: TransportEvent, callback: EventCallback) -> None:
        """Remove a previously subscribed callback."""

    def remote_participants(self) -> list[RemoteParticipant]:
        """Snapshot of currently known remote participants."""

    async def connect(self, url: str, token: str) -> None:
        """Open the room connection."""

    async def disconnect(self) -> None:
        """Close the connection. Idempotent; emits SESSION_CLOSED once."""

    async def set_microphone_enabled(self, enabled: bool) -> bool:
        """Mute or unmute the local microphone. Returns success."""


TransportFactory = Callable[[], TransportSession]


class TransportEventEmitter:
    """
    Subscription bookkeeping shared by transport implementations.

    Callbacks run in registration order. A failing callback is logged and
    never propagates back into the transport's delivery loop.
    """

    def __init__(self) -> None:
        self._listeners: dict[TransportEvent, list[EventCallback]] = {
            event: [] for event in TransportEvent
        }

    def on(self, event: TransportEvent, callback: EventCallback) -> None:
        self._listeners[TransportEvent(event)].append(callback)

    def off(self, event: TransportEvent, callback: EventCallback) -> None:
        listeners = self._listeners[TransportEvent(event)]
        if callback in listeners:
            listeners.remove(callback)

    def listener_count(self, event: TransportEvent) -> int:
        return len(self._listeners[TransportEvent(event)])

    def emit(self, event: TransportEvent, *args: Any) -> None:
        event = TransportEvent(event)
        # Copy so callbacks may unsubscribe while being dispatched
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as exc:  # noqa: BLE001 - delivery must never throw
                logger.warning(
                    "Transport listener for %s failed: %s",
                    event.value,
                    exc,
                    exc_info=True,
                )
