"""
Transcript Reconciler.

Merges a stream of transcription segment events into one ordered,
deduplicated transcript for a single call.

Segments are keyed by their stable ``segment_id``: a later event with the
same id replaces the stored value in place, so the map keeps first-insertion
order. The visible transcript is the map sorted by
``first_received_time_ms``; Python's sort is stable, so equal timestamps
keep insertion order across re-renders.

Final segments are terminal. Any event for an id that is already final is
ignored, whether interim or final.

Malformed segments (missing id or timestamp, or failing validation) are
dropped without touching existing state. Transcription is best-effort
supplementary data, so drops are only counted and logged at debug level.

Thread Safety:
    Not thread-safe. One instance per call, driven from a single event loop.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping, Union

from pydantic import ValidationError

from voice_session.config import DEFAULT_AGENT_IDENTITY_PREFIX
from voice_session.errors import SegmentDropped
from voice_session.models import TranscriptItem, TranscriptSegment
from voice_session.roles import (
    RoomState,
    find_participant,
    resolve_role,
    resolve_speaker_label,
)


__all__ = ["TranscriptReconciler", "TranscriptListener"]


logger = logging.getLogger(__name__)


TranscriptListener = Callable[[list[TranscriptItem]], None]
SegmentInput = Union[TranscriptSegment, Mapping[str, Any]]


class TranscriptReconciler:
    """
    Owns the segment map of one call and publishes ordered snapshots.

    Example:
        >>> reconciler = TranscriptReconciler(agent_name="Support Bot")
        >>> unsubscribe = reconciler.on_transcript_changed(render)
        >>> reconciler.apply_segments(
        ...     [TranscriptSegment(segment_id="a", text="Hi", is_final=True,
        ...                        first_received_time_ms=100)],
        ...     "agent-01",
        ... )
        True
    """

    def __init__(
        self,
        room: RoomState | None = None,
        *,
        agent_name: str | None = None,
        agent_prefix: str = DEFAULT_AGENT_IDENTITY_PREFIX,
    ) -> None:
        """
        Initialize an empty reconciler.

        Args:
            room: Live room view used to resolve roles on every batch.
                  None means no known participants (roles fall back to
                  the identity prefix).
            agent_name: Display name used for agent-role lines.
            agent_prefix: Reserved identity prefix of agent workers.
        """
        self._room = room
        self._agent_name = agent_name
        self._agent_prefix = agent_prefix
        self._segments: dict[str, TranscriptItem] = {}
        self._items: list[TranscriptItem] = []
        self._listeners: list[TranscriptListener] = []
        self._render_tick = 0
        self._dropped_count = 0

    @property
    def items(self) -> list[TranscriptItem]:
        """Ordered transcript (copy)."""
        return list(self._items)

    @property
    def render_tick(self) -> int:
        """Incremented on every published change; drives re-render and autoscroll."""
        return self._render_tick

    @property
    def dropped_count(self) -> int:
        """Number of malformed segments discarded so far."""
        return self._dropped_count

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> list[TranscriptItem]:
        """Return a copy of the ordered transcript for finalization."""
        return [item.model_copy() for item in self._items]

    def on_transcript_changed(self, listener: TranscriptListener) -> Callable[[], None]:
        """
        Subscribe to transcript changes.

        Returns:
            Callable that removes the listener.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def apply_segments(
        self,
        segments: Iterable[SegmentInput],
        source_participant_identity: str | None = None,
    ) -> bool:
        """
        Upsert a batch of segments from one participant.

        Args:
            segments: Segment models or raw mappings from the transport.
            source_participant_identity: Identity of the participant the batch
                was received for. A segment's own participant identity wins.

        Returns:
            True if the visible transcript changed.
        """
        participants = self._room.remote_participants() if self._room else []
        local_identity = self._room.local_identity if self._room else None

        changed = False
        for raw in segments:
            try:
                segment = self._validate(raw)
            except SegmentDropped as exc:
                self._dropped_count += 1
                logger.debug("Dropped transcript segment: %s", exc.reason)
                continue

            existing = self._segments.get(segment.segment_id)
            if existing is not None and existing.final:
                logger.debug(
                    "Ignoring revision of finalized segment %s", segment.segment_id
                )
                continue

            identity = segment.participant_identity or source_participant_identity
            role = resolve_role(
                identity,
                participants,
                local_identity=local_identity,
                agent_prefix=self._agent_prefix,
            )
            item = TranscriptItem(
                segment_id=segment.segment_id,
                speaker=resolve_speaker_label(
                    identity,
                    role,
                    find_participant(identity, participants),
                    self._agent_name,
                ),
                role=role,
                text=segment.text,
                final=segment.is_final,
                first_received_time_ms=segment.first_received_time_ms,
            )
            if existing is not None and existing == item:
                continue

            # Assigning to an existing key keeps its dict position
            self._segments[segment.segment_id] = item
            changed = True

        if changed:
            self._rebuild()
            self._publish()
        return changed

    def clear(self) -> None:
        """Drop all segments and notify listeners."""
        if not self._segments and not self._items:
            return
        self._segments.clear()
        self._items = []
        self._publish()
        logger.debug("Transcript cleared")

    def _validate(self, raw: SegmentInput) -> TranscriptSegment:
        if isinstance(raw, TranscriptSegment):
            segment = raw
        elif isinstance(raw, Mapping):
            try:
                segment = TranscriptSegment.model_validate(dict(raw))
            except ValidationError as exc:
                raise SegmentDropped(f"invalid segment: {exc.error_count()} errors", raw) from exc
        else:
            raise SegmentDropped(f"unsupported segment type {type(raw).__name__}", raw)

        if not segment.segment_id:
            raise SegmentDropped("missing segment id", raw)
        if segment.first_received_time_ms is None:
            raise SegmentDropped(f"segment {segment.segment_id} has no timestamp", raw)
        return segment

    def _rebuild(self) -> None:
        self._items = sorted(
            self._segments.values(),
            key=lambda item: item.first_received_time_ms,
        )

    def _publish(self) -> None:
        self._render_tick += 1
        for listener in list(self._listeners):
            try:
                listener(self.items)
            except Exception as exc:  # noqa: BLE001 - listeners must not break ingestion
                logger.warning("Transcript listener failed: %s", exc, exc_info=True)
