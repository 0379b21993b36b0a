"""
Real-time Pub/Sub for call session updates.

Fans transcript snapshots, status changes, errors and finalization reports
out to UI subscribers (the console's server-sent-event stream) through
asyncio queues.

Example usage:
    publisher = SessionUpdatePublisher()
    queue = await publisher.subscribe()
    await publisher.publish_status(controller.status())
    update = await queue.get()
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from voice_session.models import CallOutcomeReport, CallStatus, TranscriptItem

logger = logging.getLogger(__name__)


class UpdateType(str, Enum):
    """
    Types of session updates published to the stream.

    Attributes:
        TRANSCRIPT: Full ordered transcript after a change.
        STATUS: Phase/readiness/mute snapshot.
        ERROR: User-visible error (start failure, join timeout).
        SYSTEM: Informational messages (session started/ended).
        FINALIZED: Outcome report after the call record was closed.
    """

    TRANSCRIPT = "transcript"
    STATUS = "status"
    ERROR = "error"
    SYSTEM = "system"
    FINALIZED = "finalized"


def _get_utc_timestamp() -> str:
    """
    Get current UTC timestamp in ISO format.

    Returns:
        ISO-formatted UTC timestamp string.
    """
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class SessionUpdate:
    """
    A single update for UI subscribers.

    Attributes:
        update_type: Category of the update.
        content: Short human-readable summary.
        timestamp: UTC timestamp when the update was created.
        payload: JSON-serializable body (transcript items, status, report).
    """

    update_type: UpdateType
    content: str
    timestamp: str = field(default_factory=_get_utc_timestamp)
    payload: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """
        Convert update to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the update.
        """
        return {
            "update_type": self.update_type.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        """
        Convert update to JSON string.

        Returns:
            JSON string representation of the update.
        """
        return json.dumps(self.to_dict())


class SessionUpdatePublisher:
    """
    Publisher for call session updates.

    Manages multiple subscriber queues and broadcasts updates to all.
    New subscribers receive the retained history first.

    Attributes:
        max_history: Maximum number of updates to retain in history.
    """

    def __init__(self, max_history: int = 100) -> None:
        """
        Initialize the publisher.

        Args:
            max_history: Maximum number of updates to retain in history.
        """
        self._subscribers: list[asyncio.Queue[SessionUpdate]] = []
        self._history: list[SessionUpdate] = []
        self._max_history = max_history
        self._lock = asyncio.Lock()
        logger.info("SessionUpdatePublisher initialized with max_history=%d", max_history)

    async def subscribe(self) -> asyncio.Queue[SessionUpdate]:
        """
        Subscribe to session updates.

        Caller is responsible for calling unsubscribe when done.

        Returns:
            Queue that will receive published updates.
        """
        queue: asyncio.Queue[SessionUpdate] = asyncio.Queue()
        async with self._lock:
            self._subscribers.append(queue)
            for update in self._history:
                await queue.put(update)
        logger.debug("New subscriber added. Total: %d", len(self._subscribers))
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[SessionUpdate]) -> None:
        """
        Remove a subscriber.

        Args:
            queue: The queue to unsubscribe.
        """
        async with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)
        logger.debug("Subscriber removed. Total: %d", len(self._subscribers))

    async def publish(self, update: SessionUpdate) -> None:
        """
        Publish an update to all subscribers and store it in history.

        Args:
            update: The update to publish.
        """
        async with self._lock:
            self._history.append(update)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history :]

            for queue in self._subscribers:
                try:
                    await queue.put(update)
                except Exception as e:
                    logger.warning("Failed to publish to subscriber: %s", e)

        logger.debug("Published update: %s", update.update_type.value)

    async def publish_transcript(self, items: list[TranscriptItem]) -> None:
        """
        Publish the current ordered transcript.

        Args:
            items: Transcript snapshot from the reconciler.
        """
        await self.publish(
            SessionUpdate(
                update_type=UpdateType.TRANSCRIPT,
                content=f"{len(items)} transcript items",
                payload={"items": [item.model_dump(mode="json") for item in items]},
            )
        )

    async def publish_status(self, status: CallStatus) -> None:
        """
        Publish a status snapshot.

        Args:
            status: Current controller status.
        """
        await self.publish(
            SessionUpdate(
                update_type=UpdateType.STATUS,
                content=f"phase={status.phase.value} ready={status.ready}",
                payload=status.model_dump(mode="json"),
            )
        )

    async def publish_finalized(self, report: CallOutcomeReport) -> None:
        """
        Publish a finalization report.

        Args:
            report: Outcome report of the closed call.
        """
        await self.publish(
            SessionUpdate(
                update_type=UpdateType.FINALIZED,
                content=f"Call {report.call_id} finalized ({report.outcome.value})",
                payload=report.model_dump(mode="json"),
            )
        )

    async def publish_system(self, content: str) -> None:
        """
        Publish system message.

        Args:
            content: System message content.
        """
        await self.publish(SessionUpdate(update_type=UpdateType.SYSTEM, content=content))

    async def publish_error(self, content: str) -> None:
        """
        Publish error message.

        Args:
            content: Error message content.
        """
        await self.publish(SessionUpdate(update_type=UpdateType.ERROR, content=content))

    async def recent_updates(
        self,
        limit: int | None = None,
        update_type: UpdateType | None = None,
    ) -> list[SessionUpdate]:
        """
        Retained updates, oldest first.

        Args:
            limit: Keep only the newest ``limit`` matching updates.
            update_type: Only return updates of this type.
        """
        async with self._lock:
            updates = [
                u for u in self._history if update_type is None or u.update_type == update_type
            ]
        if limit is not None:
            updates = updates[-limit:] if limit > 0 else []
        return updates

    @property
    def subscriber_count(self) -> int:
        """
        Approximate number of active subscribers (not async-safe).

        Returns:
            Number of subscriber queues.
        """
        return len(self._subscribers)
