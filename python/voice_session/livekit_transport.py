"""LiveKit implementation of the transport session contract."""

from __future__ import annotations

import logging
import time
from typing import Any

from livekit import rtc

from voice_session.models import RemoteParticipant, TranscriptSegment
from voice_session.transport import TransportEvent, TransportEventEmitter


logger = logging.getLogger(__name__)


def _to_remote_participant(participant: Any) -> RemoteParticipant:
    return RemoteParticipant(
        identity=participant.identity,
        name=participant.name or None,
        attributes=dict(getattr(participant, "attributes", None) or {}),
    )


class LiveKitTransportSession(TransportEventEmitter):
    """
    Wraps an ``rtc.Room`` for a single call.

    LiveKit's Python SDK does not stamp arrival times on transcription
    segments, so the first monotonic arrival time of each segment id is
    recorded here and reused for every later revision of that id.
    """

    def __init__(self, room: rtc.Room | None = None) -> None:
        super().__init__()
        self._room = room or rtc.Room()
        self._first_seen_ms: dict[str, float] = {}
        self._connected = False
        self._closed = False

        self._room.on("participant_connected", self._on_participant_connected)
        self._room.on("participant_disconnected", self._on_participant_disconnected)
        self._room.on("transcription_received", self._on_transcription_received)
        self._room.on("disconnected", self._on_disconnected)

    @property
    def local_identity(self) -> str | None:
        if not self._connected:
            return None
        return self._room.local_participant.identity

    def remote_participants(self) -> list[RemoteParticipant]:
        return [_to_remote_participant(p) for p in self._room.remote_participants.values()]

    async def connect(self, url: str, token: str) -> None:
        await self._room.connect(url, token, options=rtc.RoomOptions(auto_subscribe=True))
        if self._closed:
            # disconnect() ran while the room was still connecting
            logger.info("Leaving LiveKit room %s closed during connect", self._room.name)
            await self._room.disconnect()
            return
        self._connected = True
        logger.info(
            "Connected to LiveKit room %s as %s",
            self._room.name,
            self._room.local_participant.identity,
        )

    async def disconnect(self) -> None:
        if self._closed:
            return
        if not self._connected:
            self._mark_closed("never connected")
            return
        await self._room.disconnect()
        # Some SDK versions do not emit "disconnected" for local disconnects
        self._mark_closed("client initiated")

    async def set_microphone_enabled(self, enabled: bool) -> bool:
        if not self._connected or self._closed:
            return False
        audio_tracks = [
            publication.track
            for publication in self._room.local_participant.track_publications.values()
            if publication.kind == rtc.TrackKind.KIND_AUDIO and publication.track is not None
        ]
        if not audio_tracks:
            logger.debug("No local audio track to %s", "unmute" if enabled else "mute")
            return False
        for track in audio_tracks:
            if enabled:
                track.unmute()
            else:
                track.mute()
        return True

    def _mark_closed(self, reason: str | None) -> None:
        if self._closed:
            return
        self._closed = True
        self._connected = False
        self.emit(TransportEvent.SESSION_CLOSED, reason)

    def _on_participant_connected(self, participant: rtc.RemoteParticipant) -> None:
        self.emit(TransportEvent.PARTICIPANT_JOINED, _to_remote_participant(participant))

    def _on_participant_disconnected(self, participant: rtc.RemoteParticipant) -> None:
        self.emit(TransportEvent.PARTICIPANT_LEFT, _to_remote_participant(participant))

    def _on_transcription_received(
        self,
        segments: list[rtc.TranscriptionSegment],
        participant: rtc.Participant | None = None,
        publication: rtc.TrackPublication | None = None,
    ) -> None:
        now_ms = time.monotonic() * 1000.0
        converted = []
        for segment in segments:
            first_seen = self._first_seen_ms.setdefault(segment.id, now_ms)
            converted.append(
                TranscriptSegment(
                    segment_id=segment.id,
                    text=segment.text,
                    is_final=segment.final,
                    first_received_time_ms=first_seen,
                )
            )
        identity = participant.identity if participant is not None else None
        self.emit(TransportEvent.TRANSCRIPTION_SEGMENT, converted, identity)

    def _on_disconnected(self, reason: Any = None) -> None:
        self._mark_closed(str(reason) if reason is not None else None)
