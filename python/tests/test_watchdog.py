"""
Tests for the readiness watchdog.

Timers use short timeouts and real sleeps on the running event loop.
"""

from __future__ import annotations

import asyncio

import pytest

from voice_session.errors import JoinTimeout
from voice_session.models import ReadinessState
from voice_session.roles import AGENT_STATE_ATTRIBUTE
from voice_session.watchdog import ReadinessWatchdog
from tests.mock_data import AGENT_IDENTITY, ROOM_NAME, FakeTransportSession


SHORT_TIMEOUT = 0.05


def _watchdog(room: FakeTransportSession, **kwargs) -> tuple[ReadinessWatchdog, dict]:
    events: dict = {"ready": 0, "timeouts": []}

    def _on_ready() -> None:
        events["ready"] += 1

    watchdog = ReadinessWatchdog(
        room,
        room_name=ROOM_NAME,
        timeout_seconds=kwargs.pop("timeout_seconds", SHORT_TIMEOUT),
        on_ready=_on_ready,
        on_timeout=events["timeouts"].append,
        **kwargs,
    )
    return watchdog, events


class TestReadiness:
    """Tests for the AwaitingAgent -> AgentReady transition."""

    def test_initial_state(self):
        watchdog, _ = _watchdog(FakeTransportSession())
        assert watchdog.state == ReadinessState.AWAITING_AGENT
        assert not watchdog.is_ready
        assert not watchdog.is_armed

    def test_invalid_timeout_rejected(self):
        with pytest.raises(ValueError):
            ReadinessWatchdog(FakeTransportSession(), room_name=ROOM_NAME, timeout_seconds=0)

    @pytest.mark.asyncio
    async def test_any_remote_participant_makes_ready(self):
        """An unmarked human participant also counts as present."""
        room = FakeTransportSession()
        watchdog, events = _watchdog(room)
        watchdog.arm()

        room.join("unexpected-human")
        assert watchdog.observe() == ReadinessState.AGENT_READY

        assert watchdog.is_ready
        assert not watchdog.is_armed
        assert events["ready"] == 1

    @pytest.mark.asyncio
    async def test_ready_cancels_timer(self):
        room = FakeTransportSession()
        watchdog, events = _watchdog(room)
        watchdog.arm()
        room.join(AGENT_IDENTITY, attributes={AGENT_STATE_ATTRIBUTE: "initializing"})
        watchdog.observe()

        await asyncio.sleep(SHORT_TIMEOUT * 3)

        assert watchdog.state == ReadinessState.AGENT_READY
        assert events["timeouts"] == []
        assert watchdog.error is None

    @pytest.mark.asyncio
    async def test_ready_never_reverts(self):
        room = FakeTransportSession()
        watchdog, events = _watchdog(room)
        watchdog.arm()
        room.join()
        watchdog.observe()

        room.leave()
        assert watchdog.observe() == ReadinessState.AGENT_READY
        assert events["ready"] == 1

    def test_observe_without_participants_keeps_waiting(self):
        watchdog, events = _watchdog(FakeTransportSession())
        assert watchdog.observe() == ReadinessState.AWAITING_AGENT
        assert events["ready"] == 0


class TestJoinTimeout:
    """Tests for the AwaitingAgent -> TimedOut transition."""

    @pytest.mark.asyncio
    async def test_times_out_exactly_once(self):
        watchdog, events = _watchdog(FakeTransportSession())
        watchdog.arm()
        watchdog.arm()  # re-arm is a no-op

        await asyncio.sleep(SHORT_TIMEOUT * 4)

        assert watchdog.state == ReadinessState.TIMED_OUT
        assert not watchdog.is_ready
        assert len(events["timeouts"]) == 1
        error = events["timeouts"][0]
        assert isinstance(error, JoinTimeout)
        assert ROOM_NAME in str(error)
        assert watchdog.error is error

    @pytest.mark.asyncio
    async def test_timed_out_is_terminal(self):
        room = FakeTransportSession()
        watchdog, events = _watchdog(room)
        watchdog.arm()
        await asyncio.sleep(SHORT_TIMEOUT * 3)

        room.join()
        assert watchdog.observe() == ReadinessState.TIMED_OUT
        watchdog.arm()
        await asyncio.sleep(SHORT_TIMEOUT * 3)

        assert events["ready"] == 0
        assert len(events["timeouts"]) == 1

    @pytest.mark.asyncio
    async def test_message_names_expected_identity(self):
        watchdog, events = _watchdog(
            FakeTransportSession(), expected_agent_identity="agent-expected"
        )
        watchdog.arm()
        await asyncio.sleep(SHORT_TIMEOUT * 3)

        message = str(events["timeouts"][0])
        assert ROOM_NAME in message
        assert "agent-expected" in message

    @pytest.mark.asyncio
    async def test_message_without_expected_identity_mentions_dispatch(self):
        watchdog, events = _watchdog(FakeTransportSession())
        watchdog.arm()
        await asyncio.sleep(SHORT_TIMEOUT * 3)

        assert "dispatch" in str(events["timeouts"][0])

    @pytest.mark.asyncio
    async def test_cancel_prevents_timeout(self):
        watchdog, events = _watchdog(FakeTransportSession())
        watchdog.arm()
        watchdog.cancel()

        await asyncio.sleep(SHORT_TIMEOUT * 3)

        assert watchdog.state == ReadinessState.AWAITING_AGENT
        assert events["timeouts"] == []

    @pytest.mark.asyncio
    async def test_failing_timeout_listener_is_contained(self):
        def _broken(error: JoinTimeout) -> None:
            raise RuntimeError("ui gone")

        watchdog = ReadinessWatchdog(
            FakeTransportSession(),
            room_name=ROOM_NAME,
            timeout_seconds=SHORT_TIMEOUT,
            on_timeout=_broken,
        )
        watchdog.arm()
        await asyncio.sleep(SHORT_TIMEOUT * 3)

        assert watchdog.state == ReadinessState.TIMED_OUT
