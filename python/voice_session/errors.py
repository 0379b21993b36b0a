"""
Error taxonomy for the call session core.

StartError and JoinTimeout are user-visible. SegmentDropped and
FinalizeSyncFailure stay local and are only logged.
"""

from typing import Any, Optional


__all__ = [
    "VoiceSessionError",
    "BackendError",
    "StartError",
    "StartCancelled",
    "JoinTimeout",
    "SegmentDropped",
    "FinalizeSyncFailure",
]


class VoiceSessionError(Exception):
    """Base exception for call session errors."""


class BackendError(VoiceSessionError):
    """Raised when a call-record backend request fails."""

    def __init__(
        self,
        operation: str,
        detail: str,
        status_code: Optional[int] = None,
    ) -> None:
        self.operation = operation
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{operation} failed: {detail}")


class StartError(VoiceSessionError):
    """Raised when a call session cannot be opened."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class StartCancelled(StartError):
    """
    The call was exited or closed while it was still starting.

    The issued call record is closed out before this is raised, so the
    caller only has to report it.
    """


class JoinTimeout(VoiceSessionError):
    """
    The remote agent did not join before the watchdog fired.

    Delivered to listeners as a diagnostic, never raised: the session stays
    open and the user can still exit manually.
    """

    def __init__(
        self,
        room_name: str,
        timeout_seconds: float,
        expected_agent_identity: Optional[str] = None,
    ) -> None:
        self.room_name = room_name
        self.timeout_seconds = timeout_seconds
        self.expected_agent_identity = expected_agent_identity
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        base = (
            f"Agent did not join room '{self.room_name}' "
            f"within {self.timeout_seconds:g}s."
        )
        if self.expected_agent_identity:
            return f"{base} Expected participant '{self.expected_agent_identity}'."
        return (
            f"{base} No agent was dispatched; check that an agent dispatch rule "
            f"exists for the room name prefix of '{self.room_name}'."
        )


class SegmentDropped(VoiceSessionError):
    """A malformed transcription segment was discarded."""

    def __init__(self, reason: str, raw: Any = None) -> None:
        self.reason = reason
        self.raw = raw
        super().__init__(reason)


class FinalizeSyncFailure(VoiceSessionError):
    """The backend end-call request failed during finalization."""

    def __init__(self, call_id: str, cause: Exception) -> None:
        self.call_id = call_id
        self.cause = cause
        super().__init__(f"Failed to sync call {call_id}: {cause}")
