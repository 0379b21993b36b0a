"""Call-record backend client."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from voice_session.config import DEFAULT_BACKEND_TIMEOUT_SECONDS
from voice_session.errors import BackendError
from voice_session.models import (
    CallOutcome,
    CallRecord,
    SessionCredentials,
    TranscriptItem,
    WelcomeConfig,
)


__all__ = ["CallRecordClient"]


logger = logging.getLogger(__name__)


def _read_error(response: httpx.Response) -> str:
    """Response body as error detail, falling back to the status code."""
    text = response.text.strip()
    return text[:500] if text else str(response.status_code)


class CallRecordClient:
    """
    Talks to the dashboard backend that issues session credentials and
    stores call records.

    Example:
        >>> client = CallRecordClient("http://localhost:8787/api")
        >>> creds = await client.start_session("agt_123")
        >>> await client.end_call(creds.call_id, CallOutcome.CLOSED, [])
        >>> await client.aclose()
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_BACKEND_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start_session(
        self,
        agent_id: str,
        welcome: WelcomeConfig | None = None,
    ) -> SessionCredentials:
        """
        Request transport credentials for a new test call.

        Raises:
            BackendError: On network failure, HTTP error, or a malformed body.
        """
        payload: dict[str, Any] = {"agentId": agent_id}
        if welcome is not None:
            payload["welcome"] = welcome.model_dump(by_alias=True)

        data = await self._post_json("start_session", "/sessions", payload)
        try:
            return SessionCredentials.model_validate(data)
        except ValidationError as exc:
            raise BackendError(
                "start_session", f"malformed response: {exc.error_count()} errors"
            ) from exc

    async def end_call(
        self,
        call_id: str,
        outcome: CallOutcome,
        transcript: list[TranscriptItem],
    ) -> CallRecord:
        """
        Close a call record with its outcome and transcript.

        Raises:
            BackendError: On network failure or HTTP error.
        """
        payload = {
            "outcome": CallOutcome(outcome).value,
            "transcript": [item.to_wire() for item in transcript],
        }
        data = await self._post_json(
            "end_call", f"/calls/{quote(call_id, safe='')}/end", payload
        )
        record = data.get("call", data) if isinstance(data, dict) else {}
        try:
            return CallRecord.model_validate(record)
        except ValidationError as exc:
            raise BackendError(
                "end_call", f"malformed response: {exc.error_count()} errors"
            ) from exc

    async def _post_json(self, operation: str, path: str, payload: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.RequestError as exc:
            raise BackendError(operation, f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise BackendError(
                operation,
                f"HTTP {response.status_code}: {_read_error(response)}",
                status_code=response.status_code,
            )

        logger.debug("%s -> HTTP %d", operation, response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(operation, "response is not valid JSON") from exc
