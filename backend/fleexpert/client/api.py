"""Async client for the fleexpert REST API (the submission endpoint).

Used by both the conversation sync service and the offline proof
portfolio. Every transport or HTTP failure surfaces as ``ApiError`` so
callers can decide between falling back to local state and giving up.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from fleexpert import __version__
from fleexpert.config import ClientSettings
from fleexpert.db.models import Conversation, Message, Proof, ProofDraft

_conversations = TypeAdapter(list[Conversation])
_messages = TypeAdapter(list[Message])
_proofs = TypeAdapter(list[Proof])


class ApiError(Exception):
    """Raised when a call to the fleexpert API fails.

    ``status_code`` is None when the server was never reached.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """True for connectivity problems and server errors, False for rejections."""
        return self.status_code is None or self.status_code >= 500


class FleExpertAPI:
    """Async client for the messaging and proof endpoints.

    Parameters
    ----------
    token : str
        Bearer credential of the signed-in user.
    base_url : str
        Base URL of the API (default: http://localhost:3333).
    timeout : float
        Request timeout in seconds (default: 30.0).
    transport : httpx.AsyncBaseTransport | None
        Optional transport, e.g. ``httpx.ASGITransport`` to talk to an
        in-process app.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "http://localhost:3333",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not token or not token.strip():
            raise ApiError("API token must be a non-empty string")
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: ClientSettings, token: str) -> "FleExpertAPI":
        return cls(token, base_url=settings.API_URL, timeout=settings.REQUEST_TIMEOUT)

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazily create and return the underlying httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "User-Agent": f"fleexpert/{__version__}",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FleExpertAPI":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the parsed JSON body.

        Raises
        ------
        ApiError
            On HTTP errors, connection failures, or invalid JSON responses.
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ApiError(
                f"API HTTP {exc.response.status_code} on {method} {path}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.TimeoutException as exc:
            raise ApiError(f"API request timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            raise ApiError(f"API connection error: {exc}") from exc
        except httpx.RequestError as exc:
            raise ApiError(f"API request error: {exc}") from exc

        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise ApiError(
                f"API returned non-JSON payload on {method} {path}",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _parse(adapter: TypeAdapter[Any] | type[BaseModel], data: Any) -> Any:
        try:
            if isinstance(adapter, TypeAdapter):
                return adapter.validate_python(data)
            return adapter.model_validate(data)
        except ValidationError as exc:
            raise ApiError(f"API returned an unexpected payload: {exc.error_count()} errors") from exc

    # -- Messaging -------------------------------------------------------------

    async def list_conversations(self) -> list[Conversation]:
        """Fetch the caller's conversation summaries."""
        data = await self._request("GET", "/messaging/conversations")
        return self._parse(_conversations, data)

    async def get_history(self, partner_id: str) -> list[Message]:
        """Fetch the message history with a partner, oldest first."""
        data = await self._request("GET", f"/messaging/conversations/{partner_id}")
        return self._parse(_messages, data)

    async def send_message(
        self, recipient_id: str, content: str, message_type: str = "text",
    ) -> Message:
        """Send a message and return the server-confirmed record."""
        data = await self._request("POST", "/messaging/send", {
            "recipient_id": recipient_id,
            "content": content,
            "type": message_type,
        })
        return self._parse(Message, data)

    async def mark_read(self, partner_id: str) -> None:
        """Acknowledge every message received from a partner."""
        await self._request("POST", f"/messaging/mark-read/{partner_id}")

    async def unread_count(self) -> int:
        data = await self._request("GET", "/messaging/unread-count")
        return int(data.get("unread_count", 0))

    # -- Proofs ----------------------------------------------------------------

    async def create_proof(self, organization_id: str, draft: ProofDraft) -> Proof:
        """Write a proof to the server; it comes back with status PENDING."""
        data = await self._request("POST", "/proofs", {
            "organization_id": organization_id,
            **draft.model_dump(mode="json"),
        })
        return self._parse(Proof, data)

    async def list_my_proofs(self) -> list[Proof]:
        """Fetch the caller's server-confirmed proofs, newest first."""
        data = await self._request("GET", "/proofs/mine")
        return self._parse(_proofs, data)

    async def ping(self) -> bool:
        """Return True if the API answers its health check. Never raises."""
        try:
            data = await self._request("GET", "/health")
        except ApiError:
            return False
        return isinstance(data, dict) and data.get("status") == "ok"
