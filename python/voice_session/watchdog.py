"""
Readiness Watchdog.

Decides whether the remote voice agent has joined a call and surfaces a
diagnostic if it never does.

State machine:
    AWAITING_AGENT -> AGENT_READY   (terminal success)
    AWAITING_AGENT -> TIMED_OUT     (terminal failure)

A fresh watchdog is created per session; terminal states never revert.
Readiness is recomputed from the transport's current participant snapshot on
every participant or transcription event, so no incremental state is kept
beyond the state itself and the timer handle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from voice_session.config import (
    DEFAULT_AGENT_IDENTITY_PREFIX,
    DEFAULT_JOIN_TIMEOUT_SECONDS,
)
from voice_session.errors import JoinTimeout
from voice_session.models import ReadinessState
from voice_session.roles import RoomState, is_agent_participant


__all__ = ["ReadinessWatchdog"]


logger = logging.getLogger(__name__)


class ReadinessWatchdog:
    """
    One-shot join watchdog for a single call session.

    Example:
        >>> watchdog = ReadinessWatchdog(
        ...     transport,
        ...     room_name="call-4f2a",
        ...     on_timeout=lambda err: print(err),
        ... )
        >>> watchdog.arm()
        >>> watchdog.observe()  # after every participant/transcription event
    """

    def __init__(
        self,
        room: RoomState,
        *,
        room_name: str,
        expected_agent_identity: str | None = None,
        timeout_seconds: float = DEFAULT_JOIN_TIMEOUT_SECONDS,
        agent_prefix: str = DEFAULT_AGENT_IDENTITY_PREFIX,
        on_ready: Callable[[], None] | None = None,
        on_timeout: Callable[[JoinTimeout], None] | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive. Got: {timeout_seconds}")
        self._room = room
        self.room_name = room_name
        self.expected_agent_identity = expected_agent_identity
        self.timeout_seconds = timeout_seconds
        self._agent_prefix = agent_prefix
        self._on_ready = on_ready
        self._on_timeout = on_timeout
        self._state = ReadinessState.AWAITING_AGENT
        self._timer: asyncio.TimerHandle | None = None
        self._error: JoinTimeout | None = None

    @property
    def state(self) -> ReadinessState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == ReadinessState.AGENT_READY

    @property
    def is_armed(self) -> bool:
        return self._timer is not None

    @property
    def error(self) -> JoinTimeout | None:
        """Join timeout diagnostic, once the watchdog has fired."""
        return self._error

    def arm(self) -> None:
        """
        Start the join timer.

        Must be called from a running event loop. Re-arming an armed or
        terminal watchdog is a no-op.
        """
        if self._timer is not None or self._state != ReadinessState.AWAITING_AGENT:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.timeout_seconds, self._on_timer)
        logger.debug(
            "Join watchdog armed for room %s (%.1fs)", self.room_name, self.timeout_seconds
        )

    def cancel(self) -> None:
        """Disarm the timer without changing state."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def observe(self) -> ReadinessState:
        """
        Recompute readiness from the current room state.

        Returns:
            The (possibly updated) watchdog state.
        """
        if self._state != ReadinessState.AWAITING_AGENT:
            return self._state
        if not self._agent_present():
            return self._state

        self.cancel()
        self._state = ReadinessState.AGENT_READY
        logger.info("Agent ready in room %s", self.room_name)
        if self._on_ready is not None:
            try:
                self._on_ready()
            except Exception as exc:  # noqa: BLE001 - watchdog callbacks must never throw
                logger.warning("Readiness listener failed: %s", exc, exc_info=True)
        return self._state

    def _agent_present(self) -> bool:
        participants = self._room.remote_participants()
        agents = [p for p in participants if is_agent_participant(p, self._agent_prefix)]
        if agents:
            logger.debug("Agent participant(s) present: %s", [p.identity for p in agents])
        # Any remote participant counts, agent-marked or not
        return bool(participants)

    def _on_timer(self) -> None:
        self._timer = None
        if self._state != ReadinessState.AWAITING_AGENT:
            return

        self._state = ReadinessState.TIMED_OUT
        self._error = JoinTimeout(
            room_name=self.room_name,
            timeout_seconds=self.timeout_seconds,
            expected_agent_identity=self.expected_agent_identity,
        )
        logger.warning("%s", self._error)
        if self._on_timeout is not None:
            try:
                self._on_timeout(self._error)
            except Exception as exc:  # noqa: BLE001 - watchdog callbacks must never throw
                logger.warning("Timeout listener failed: %s", exc, exc_info=True)
