"""
Participant role resolution.

Classifies a transcript speaker as the voice agent or a human user from the
current room state. Everything here is pure: callers pass a fresh snapshot
of remote participants on every call instead of caching roles.

Precedence:
    1. The local participant is always a user.
    2. A remote participant carrying the ``lk.agent.state`` attribute is an
       agent.
    3. An identity starting with the agent prefix (default ``agent-``) is an
       agent.
    4. Everything else, including unknown identities, is a user.

The attribute marker only ever adds evidence, so a prefixed identity without
the attribute still counts as an agent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Protocol

from voice_session.config import DEFAULT_AGENT_IDENTITY_PREFIX
from voice_session.models import ParticipantRole, RemoteParticipant

if TYPE_CHECKING:
    from collections.abc import Mapping


__all__ = [
    "AGENT_STATE_ATTRIBUTE",
    "RoomState",
    "find_participant",
    "is_agent_participant",
    "resolve_role",
    "resolve_speaker_label",
]


AGENT_STATE_ATTRIBUTE = "lk.agent.state"

DEFAULT_AGENT_LABEL = "Agent"
DEFAULT_USER_LABEL = "User"


class RoomState(Protocol):
    """Read-only view of a room, satisfied by any TransportSession."""

    @property
    def local_identity(self) -> str | None: ...

    def remote_participants(self) -> list[RemoteParticipant]: ...


def find_participant(
    identity: str | None,
    participants: Iterable[RemoteParticipant],
) -> RemoteParticipant | None:
    """Return the participant with ``identity`` from a snapshot, if present."""
    if not identity:
        return None
    return next((p for p in participants if p.identity == identity), None)


def is_agent_participant(
    participant: RemoteParticipant,
    agent_prefix: str = DEFAULT_AGENT_IDENTITY_PREFIX,
) -> bool:
    """Check the agent marker attribute, then the identity naming convention."""
    attributes: Mapping[str, str] = participant.attributes or {}
    if AGENT_STATE_ATTRIBUTE in attributes:
        return True
    return bool(agent_prefix) and participant.identity.startswith(agent_prefix)


def resolve_role(
    identity: str | None,
    known_remote_participants: Iterable[RemoteParticipant],
    local_identity: str | None = None,
    agent_prefix: str = DEFAULT_AGENT_IDENTITY_PREFIX,
) -> ParticipantRole:
    """
    Classify a speaker identity as agent or user.

    Args:
        identity: Identity of the participant that emitted the event.
        known_remote_participants: Current remote participant snapshot.
        local_identity: Identity of the local participant, if connected.
        agent_prefix: Reserved identity prefix used by agent workers.

    Returns:
        ParticipantRole.AGENT or ParticipantRole.USER.

    Example:
        >>> resolve_role("agent-7f3a", [])
        <ParticipantRole.AGENT: 'agent'>
        >>> resolve_role("caller", [], local_identity="caller")
        <ParticipantRole.USER: 'user'>
    """
    if not identity:
        return ParticipantRole.USER
    if local_identity is not None and identity == local_identity:
        return ParticipantRole.USER

    participant = find_participant(identity, known_remote_participants)
    if participant is None:
        participant = RemoteParticipant(identity=identity)

    if is_agent_participant(participant, agent_prefix):
        return ParticipantRole.AGENT
    return ParticipantRole.USER


def resolve_speaker_label(
    identity: str | None,
    role: ParticipantRole,
    participant: RemoteParticipant | None = None,
    agent_name: str | None = None,
) -> str:
    """Display label for a transcript line."""
    participant_name = participant.name if participant is not None else None
    if role == ParticipantRole.AGENT:
        return agent_name or participant_name or DEFAULT_AGENT_LABEL
    return participant_name or identity or DEFAULT_USER_LABEL
