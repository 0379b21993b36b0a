"""
Tests for the call lifecycle controller.

Uses the fake transport and an httpx.MockTransport-backed call-record
backend from tests.mock_data.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import pytest
import pytest_asyncio

from voice_session.controller import CallLifecycleController
from voice_session.errors import StartCancelled, StartError
from voice_session.models import (
    CallOutcome,
    CallOutcomeReport,
    CallPhase,
    CallStatus,
    ReadinessState,
    RemoteParticipant,
    WelcomeConfig,
)
from tests.mock_data import (
    AGENT_IDENTITY,
    CALL_ID,
    ROOM_NAME,
    FakeCallRecordBackend,
    FakeTransportFactory,
    make_segment,
)


SHORT_TIMEOUT = 0.05


async def _settle(seconds: float = 0.05) -> None:
    """Let scheduled close tasks and mock HTTP round-trips complete."""
    await asyncio.sleep(seconds)


@pytest.fixture
def backend() -> FakeCallRecordBackend:
    return FakeCallRecordBackend()


@pytest.fixture
def factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest_asyncio.fixture
async def controller(
    backend: FakeCallRecordBackend, factory: FakeTransportFactory
) -> AsyncIterator[CallLifecycleController]:
    client = backend.client()
    controller = CallLifecycleController(client, factory, join_timeout_seconds=5.0)
    yield controller
    await client.aclose()


# =============================================================================
# Start
# =============================================================================


class TestStart:
    """Tests for session start."""

    @pytest.mark.asyncio
    async def test_start_success(self, controller, backend, factory):
        session = await controller.start("agt_123")

        assert session.call_id == CALL_ID
        assert session.room_name == ROOM_NAME
        assert session.agent_name == "Support Bot"
        assert session.session_id.startswith("call_")
        assert controller.phase == CallPhase.ACTIVE
        assert controller.is_active
        assert not controller.is_ready
        assert factory.last.connect_args == ("wss://media.test", "tok_test_123")
        assert backend.start_requests == [{"agentId": "agt_123"}]

    @pytest.mark.asyncio
    async def test_start_sends_welcome(self, controller, backend):
        welcome = WelcomeConfig(mode="ai", ai_message_mode="custom", ai_message_text="Hi!")
        await controller.start("agt_123", welcome)

        body = backend.start_requests[0]
        assert body["welcome"]["mode"] == "ai"
        assert body["welcome"]["aiMessageMode"] == "custom"
        assert body["welcome"]["aiMessageText"] == "Hi!"

    @pytest.mark.asyncio
    async def test_start_requires_agent_id(self, controller, backend):
        with pytest.raises(StartError):
            await controller.start("  ")
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_start_backend_error(self, controller, backend, factory):
        backend.start_status = 404

        with pytest.raises(StartError) as exc_info:
            await controller.start("agt_missing")

        assert "HTTP 404" in exc_info.value.message
        assert controller.phase == CallPhase.IDLE
        assert controller.error == exc_info.value.message
        assert not controller.is_active
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_start_malformed_credentials(self, controller, backend):
        backend.start_body = {"roomName": ROOM_NAME}

        with pytest.raises(StartError):
            await controller.start("agt_123")
        assert controller.phase == CallPhase.IDLE

    @pytest.mark.asyncio
    async def test_start_network_error(self, controller, backend):
        backend.network_error = True

        with pytest.raises(StartError) as exc_info:
            await controller.start("agt_123")
        assert "ConnectError" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connect_failure(self, backend):
        factory = FakeTransportFactory(connect_error=ConnectionError("ice failed"))
        client = backend.client()
        controller = CallLifecycleController(client, factory)
        try:
            with pytest.raises(StartError) as exc_info:
                await controller.start("agt_123")
        finally:
            await client.aclose()

        assert ROOM_NAME in exc_info.value.message
        assert controller.phase == CallPhase.IDLE
        assert not controller.is_active
        assert factory.last.disconnect_calls == 1
        # The issued call record is closed out once as an error
        assert [r["outcome"] for r in backend.end_requests] == ["error"]

    @pytest.mark.asyncio
    async def test_agent_present_before_connect_is_ready(self, backend):
        factory = FakeTransportFactory(participants=[RemoteParticipant(identity=AGENT_IDENTITY)])
        client = backend.client()
        controller = CallLifecycleController(client, factory)
        try:
            await controller.start("agt_123")
            assert controller.is_ready
            await controller.exit()
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_start_while_active_exits_previous(self, controller, backend, factory):
        await controller.start("agt_123")
        first = factory.last

        await controller.start("agt_456")

        assert len(factory.created) == 2
        assert first.disconnect_calls == 1
        assert [r["outcome"] for r in backend.end_requests] == ["closed"]
        assert controller.is_active
        assert controller.session.agent_id == "agt_456"


class TestStartInterrupted:
    """Tests for calls ended while start() is still awaiting."""

    @pytest.mark.asyncio
    async def test_exit_while_requesting_credentials(self, controller, backend, factory):
        backend.start_gate = asyncio.Event()
        starting = asyncio.create_task(controller.start("agt_123"))
        await _settle()
        assert controller.is_starting
        assert controller.phase == CallPhase.STARTING

        await controller.exit()
        backend.start_gate.set()

        with pytest.raises(StartCancelled):
            await starting
        assert factory.created == []
        assert [r["outcome"] for r in backend.end_requests] == ["closed"]
        assert controller.last_outcome.call_id == CALL_ID
        assert controller.phase == CallPhase.CLOSED
        assert controller.session is None
        assert controller.error is None
        assert not controller.is_starting

    @pytest.mark.asyncio
    async def test_exit_while_connecting(self, backend):
        gate = asyncio.Event()
        factory = FakeTransportFactory(connect_gate=gate)
        client = backend.client()
        controller = CallLifecycleController(
            client, factory, join_timeout_seconds=SHORT_TIMEOUT
        )
        try:
            starting = asyncio.create_task(controller.start("agt_123"))
            await _settle()
            assert controller.phase == CallPhase.STARTING

            report = await controller.exit()
            gate.set()

            with pytest.raises(StartCancelled):
                await starting
            # Past the join timeout: the watchdog must never have been armed
            await _settle(SHORT_TIMEOUT * 3)

            assert report.outcome == CallOutcome.CLOSED
            assert [r["outcome"] for r in backend.end_requests] == ["closed"]
            assert controller.phase == CallPhase.CLOSED
            assert controller.status().readiness is None
            assert controller.error is None
            assert not controller.is_active
            assert factory.last.connected is False
            assert factory.last.disconnect_calls >= 1
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_closed_while_connecting(self, backend):
        gate = asyncio.Event()
        factory = FakeTransportFactory(connect_gate=gate)
        client = backend.client()
        controller = CallLifecycleController(client, factory, join_timeout_seconds=5.0)
        try:
            starting = asyncio.create_task(controller.start("agt_123"))
            await _settle()

            factory.last.drop("remote hang-up")
            await _settle()
            gate.set()

            with pytest.raises(StartCancelled):
                await starting
            assert [r["outcome"] for r in backend.end_requests] == ["ended"]
            assert controller.phase == CallPhase.CLOSED
            assert controller.session is None
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_newer_start_supersedes_pending_one(self, controller, backend, factory):
        backend.start_gate = asyncio.Event()
        first = asyncio.create_task(controller.start("agt_123"))
        await _settle()
        second = asyncio.create_task(controller.start("agt_456"))
        await _settle()

        backend.start_gate.set()

        with pytest.raises(StartCancelled):
            await first
        session = await second
        assert session.agent_id == "agt_456"
        assert len(factory.created) == 1
        assert [r["outcome"] for r in backend.end_requests] == ["closed"]
        assert controller.phase == CallPhase.ACTIVE
        assert controller.is_active


# =============================================================================
# Readiness and transcript
# =============================================================================


class TestActiveCall:
    """Tests for event handling while a call is active."""

    @pytest.mark.asyncio
    async def test_agent_join_sets_ready(self, controller, factory):
        statuses: list[CallStatus] = []
        controller.on_state_changed(statuses.append)
        await controller.start("agt_123")

        factory.last.join(AGENT_IDENTITY)

        assert controller.is_ready
        assert statuses[-1].ready is True
        assert statuses[-1].readiness == ReadinessState.AGENT_READY

    @pytest.mark.asyncio
    async def test_transcript_flows_from_transport(self, controller, factory):
        received = []
        controller.on_transcript_changed(received.append)
        await controller.start("agt_123")
        transport = factory.last
        transport.join(AGENT_IDENTITY)

        transport.send_segments([make_segment("s2", "Hi, I need help", at_ms=200)], "dashboard-user-1")
        transport.send_segments([make_segment("s1", "Welcome!", at_ms=100, final=True)], AGENT_IDENTITY)

        items = controller.transcript
        assert [i.text for i in items] == ["Welcome!", "Hi, I need help"]
        assert items[0].speaker == "Support Bot"
        assert items[0].role.value == "agent"
        assert items[1].role.value == "user"
        assert len(received) == 2
        assert controller.status().transcript_size == 2

    @pytest.mark.asyncio
    async def test_transcription_marks_agent_ready(self, controller, factory):
        """A transcription event re-checks readiness from the room snapshot."""
        await controller.start("agt_123")
        transport = factory.last
        transport._participants[AGENT_IDENTITY] = RemoteParticipant(identity=AGENT_IDENTITY)

        transport.send_segments([make_segment("s1", "Hello", at_ms=1)], AGENT_IDENTITY)

        assert controller.is_ready

    @pytest.mark.asyncio
    async def test_mute_toggle(self, controller, factory):
        await controller.start("agt_123")

        assert await controller.set_muted(True) is True
        assert controller.status().muted is True
        assert await controller.set_muted(False) is True
        assert factory.last.mic_requests == [False, True]
        assert controller.status().muted is False

    @pytest.mark.asyncio
    async def test_mute_without_track(self, backend):
        factory = FakeTransportFactory(mic_available=False)
        client = backend.client()
        controller = CallLifecycleController(client, factory)
        try:
            await controller.start("agt_123")
            assert await controller.set_muted(True) is False
            assert controller.status().muted is False
            await controller.exit()
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_mute_when_idle(self, controller):
        assert await controller.set_muted(True) is False

    @pytest.mark.asyncio
    async def test_clear_transcript(self, controller, factory):
        await controller.start("agt_123")
        factory.last.send_segments([make_segment("s1", "Hello", at_ms=1)])

        controller.clear_transcript()

        assert controller.transcript == []


# =============================================================================
# Finalization
# =============================================================================


class TestFinalize:
    """Tests for exit, transport close and at-most-once finalization."""

    @pytest.mark.asyncio
    async def test_exit_finalizes_once(self, controller, backend, factory):
        await controller.start("agt_123")
        transport = factory.last
        transport.join(AGENT_IDENTITY)
        transport.send_segments([make_segment("s1", "Welcome!", at_ms=100, final=True)], AGENT_IDENTITY)

        report = await controller.exit()
        await _settle()

        assert len(backend.end_requests) == 1
        body = backend.end_requests[0]
        assert body["outcome"] == "closed"
        assert body["transcript"] == [
            {
                "speaker": "Support Bot",
                "role": "agent",
                "text": "Welcome!",
                "final": True,
                "firstReceivedTime": 100.0,
            }
        ]
        assert report is not None
        assert report.synced is True
        assert report.outcome == CallOutcome.CLOSED
        assert transport.disconnect_calls == 1
        assert controller.phase == CallPhase.CLOSED
        assert not controller.is_active
        assert not controller.is_ready

    @pytest.mark.asyncio
    async def test_exit_then_transport_closed(self, controller, backend, factory):
        await controller.start("agt_123")

        await controller.exit()
        await controller.on_transport_closed("late notification")
        await _settle()

        assert len(backend.end_requests) == 1

    @pytest.mark.asyncio
    async def test_transport_closed_then_exit(self, controller, backend, factory):
        await controller.start("agt_123")

        factory.last.drop("network lost")
        report = await controller.exit()
        await _settle()

        assert len(backend.end_requests) == 1
        assert report is not None

    @pytest.mark.asyncio
    async def test_transport_closed_alone_finalizes_ended(self, controller, backend, factory):
        finalized: list[CallOutcomeReport] = []
        controller.on_finalized(finalized.append)
        await controller.start("agt_123")

        factory.last.drop("remote hang-up")
        await _settle()

        assert [r["outcome"] for r in backend.end_requests] == ["ended"]
        assert len(finalized) == 1
        assert controller.phase == CallPhase.CLOSED
        assert not controller.is_active
        # A later exit is a no-op returning the same report
        assert await controller.exit() is finalized[0]
        assert len(backend.end_requests) == 1

    @pytest.mark.asyncio
    async def test_concurrent_exit_and_close(self, controller, backend):
        await controller.start("agt_123")

        await asyncio.gather(controller.exit(), controller.on_transport_closed())
        await _settle()

        assert len(backend.end_requests) == 1

    @pytest.mark.asyncio
    async def test_repeated_exit_is_noop(self, controller, backend):
        await controller.start("agt_123")

        first = await controller.exit()
        second = await controller.exit()

        assert first is second
        assert len(backend.end_requests) == 1

    @pytest.mark.asyncio
    async def test_exit_when_idle(self, controller, backend):
        assert await controller.exit() is None
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_end_call_500_still_closes(self, controller, backend):
        backend.end_status = 500
        await controller.start("agt_123")

        report = await controller.exit()

        assert controller.phase == CallPhase.CLOSED
        assert not controller.is_active
        assert report is not None
        assert report.synced is False
        assert "HTTP 500" in report.sync_error

    @pytest.mark.asyncio
    async def test_end_call_network_error_still_closes(self, controller, backend):
        await controller.start("agt_123")
        backend.network_error = True

        report = await controller.exit()

        assert report is not None
        assert report.synced is False
        assert controller.phase == CallPhase.CLOSED

    @pytest.mark.asyncio
    async def test_events_after_exit_are_ignored(self, controller, factory):
        await controller.start("agt_123")
        transport = factory.last
        await controller.exit()

        transport.send_segments([make_segment("late", "too late", at_ms=1)])

        assert controller.transcript == []
        assert controller.last_outcome.transcript == []

    @pytest.mark.asyncio
    async def test_failing_finalize_listener_is_contained(self, controller, backend):
        def _broken(report: CallOutcomeReport) -> None:
            raise RuntimeError("listener failed")

        controller.on_finalized(_broken)
        await controller.start("agt_123")

        report = await controller.exit()

        assert report is not None
        assert report.synced is True


# =============================================================================
# Join timeout
# =============================================================================


class TestJoinTimeoutFlow:
    """Tests for the no-agent-joins scenario."""

    @pytest.mark.asyncio
    async def test_timeout_keeps_session_open(self, backend):
        factory = FakeTransportFactory()
        client = backend.client()
        controller = CallLifecycleController(
            client, factory, join_timeout_seconds=SHORT_TIMEOUT
        )
        statuses: list[CallStatus] = []
        controller.on_state_changed(statuses.append)
        try:
            await controller.start("agt_123")
            await asyncio.sleep(SHORT_TIMEOUT * 4)

            timeouts = [s for s in statuses if s.readiness == ReadinessState.TIMED_OUT]
            assert len(timeouts) == 1
            assert ROOM_NAME in controller.error
            assert not controller.is_ready
            assert controller.is_active
            assert factory.last.connected is True
            assert factory.last.disconnect_calls == 0
            assert backend.end_requests == []

            report = await controller.exit()
            assert report.outcome == CallOutcome.TIMEOUT
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_exit_cancels_watchdog(self, backend):
        factory = FakeTransportFactory()
        client = backend.client()
        controller = CallLifecycleController(
            client, factory, join_timeout_seconds=SHORT_TIMEOUT
        )
        try:
            await controller.start("agt_123")
            await controller.exit()
            await asyncio.sleep(SHORT_TIMEOUT * 3)

            assert controller.error is None
            assert backend.end_requests[0]["outcome"] == "closed"
        finally:
            await client.aclose()
