"""Live channel client: a WebSocket delivering push events.

A LiveChannel is an explicitly owned resource. Whoever opens it (usually
a ConversationSync) is responsible for closing it; there is no shared
module-level connection.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Union

import aiohttp

from fleexpert.config import ClientSettings

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Union[Awaitable[None], None]]


class ChannelError(Exception):
    """Raised when the live channel cannot be used."""


class LiveChannel:
    """Bearer-authenticated WebSocket connection with named-event dispatch.

    Parameters
    ----------
    url : str
        ws:// or wss:// URL of the gateway.
    token : str
        Bearer credential sent in the handshake.
    heartbeat : float
        Ping interval in seconds, handled by aiohttp.
    """

    def __init__(self, url: str, token: str, heartbeat: float = 20.0) -> None:
        self.url = url
        self.token = token
        self.heartbeat = heartbeat
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @classmethod
    def from_settings(cls, settings: ClientSettings, token: str) -> "LiveChannel":
        return cls(settings.channel_url, token, heartbeat=settings.WS_HEARTBEAT)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def on(self, event: str, handler: Handler) -> None:
        """Register a handler (plain or coroutine function) for a named event."""
        self._handlers[event].append(handler)

    async def connect(self) -> None:
        if self.connected:
            return
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.url,
                headers={"Authorization": f"Bearer {self.token}"},
                heartbeat=self.heartbeat,
            )
        except aiohttp.ClientError as exc:
            await self._session.close()
            self._session = None
            raise ChannelError(f"Live channel connection failed: {exc}") from exc
        logger.info("Live channel connected to %s", self.url)

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        """Send a named event to the server."""
        if not self.connected:
            raise ChannelError("Live channel is not connected")
        await self._ws.send_json({"event": event, "data": data})  # type: ignore[union-attr]

    async def dispatch(self, raw: str) -> None:
        """Decode one frame and run the handlers registered for its event.

        Malformed frames are logged and dropped. A failing handler does not
        prevent the others from running.
        """
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON live frame")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            logger.warning("Ignoring live frame without an event name")
            return

        event = frame["event"]
        data = frame.get("data") or {}
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Live channel handler for %r failed", event)

    async def listen(self) -> None:
        """Dispatch incoming frames until the connection closes."""
        if not self.connected:
            raise ChannelError("Live channel is not connected")
        async for msg in self._ws:  # type: ignore[union-attr]
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self.dispatch(msg.data)
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break
        logger.info("Live channel to %s closed", self.url)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "LiveChannel":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
