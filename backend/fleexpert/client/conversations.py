"""Conversation sync service.

Keeps the conversation summaries, the open conversation's timeline and
the partner's typing indicator up to date from two sources: REST fetches
and the live channel. Timeline entries are merged by message id. Live
events are appended, so the chronological order of a history fetch wins
over arrival order.

Sends are optimistic. The entry shows up at once as PENDING under a local
id, becomes CONFIRMED in place when the server answers, or FAILED (and
retryable) when it does not.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import ValidationError

from fleexpert.client.api import ApiError, FleExpertAPI
from fleexpert.client.channel import ChannelError, LiveChannel
from fleexpert.db.models import Conversation, Message, TypingSignal

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"


class ConversationError(Exception):
    """Raised for invalid messaging actions (empty content, nothing open, bad retry)."""


class DeliveryState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class TimelineEntry:
    """One message in the open conversation, with its delivery state.

    ``id`` is the server id once confirmed and the local id before that.
    """

    id: str
    content: str
    created_at: datetime
    is_from_me: bool
    type: str = "text"
    read: bool = False
    delivery: DeliveryState = DeliveryState.CONFIRMED
    local_id: str | None = None

    @classmethod
    def from_message(cls, message: Message) -> "TimelineEntry":
        return cls(
            id=message.id,
            content=message.content,
            created_at=message.created_at,
            is_from_me=message.is_from_me,
            type=message.type,
            read=message.read,
        )

    def confirm(self, message: Message) -> None:
        self.id = message.id
        self.content = message.content
        self.created_at = message.created_at
        self.type = message.type
        self.read = message.read
        self.delivery = DeliveryState.CONFIRMED


class ConversationSync:
    """Client-side state of the messaging panel for one signed-in user.

    Parameters
    ----------
    api : FleExpertAPI
        REST client, owned by this service and closed with it.
    channel : LiveChannel | None
        Live channel, owned by this service. Without one the service still
        works on fetches alone.
    initial_partner_id : str | None
        Conversation to open automatically once it shows up in the summaries.

    Use as an async context manager to connect the channel and start
    listening::

        async with ConversationSync(api, channel) as sync:
            await sync.open_conversation(partner_id)
            await sync.send_message(partner_id, "Bonjour")
    """

    def __init__(
        self,
        api: FleExpertAPI,
        channel: LiveChannel | None = None,
        initial_partner_id: str | None = None,
    ) -> None:
        self._api = api
        self._channel = channel
        self._initial_partner_id = initial_partner_id
        self._listen_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()

        self.conversations: list[Conversation] = []
        self.selected: Conversation | None = None
        self.timeline: list[TimelineEntry] = []
        self.partner_typing = False

        if channel is not None:
            channel.on("new_message", self.handle_new_message)
            channel.on("user_typing", self.handle_user_typing)

    # -- Lifecycle -------------------------------------------------------------

    async def __aenter__(self) -> "ConversationSync":
        if self._channel is not None:
            await self._channel.connect()
            self._listen_task = asyncio.create_task(self._channel.listen())
        await self.list_conversations()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop listening, wait for pending acknowledgements, release connections."""
        try:
            if self._listen_task is not None:
                self._listen_task.cancel()
                try:
                    with contextlib.suppress(asyncio.CancelledError):
                        await self._listen_task
                finally:
                    self._listen_task = None
            await self.drain()
        finally:
            try:
                if self._channel is not None:
                    await self._channel.close()
            finally:
                await self._api.close()

    async def drain(self) -> None:
        """Wait for fire-and-forget calls (read acknowledgements) to finish."""
        while self._background:
            pending = list(self._background)
            await asyncio.gather(*pending)
            self._background.difference_update(pending)

    # -- Derived state ---------------------------------------------------------

    @property
    def selected_id(self) -> str | None:
        return self.selected.id if self.selected is not None else None

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self.conversations)

    def search(self, query: str) -> list[Conversation]:
        """Filter conversations by counterpart name or email, case-insensitive."""
        needle = query.strip().lower()
        if not needle:
            return list(self.conversations)
        return [
            c for c in self.conversations
            if needle in c.name.lower() or needle in c.email.lower()
        ]

    # -- Summaries -------------------------------------------------------------

    def _merge_summaries(self, fetched: list[Conversation]) -> list[Conversation]:
        merged: list[Conversation] = []
        for conv in fetched:
            if conv.id == self.selected_id:
                # The open conversation is being read; its counter stays at zero
                # even before the server has processed the acknowledgement.
                conv = conv.model_copy(update={"unread_count": 0})
                self.selected = conv
            merged.append(conv)
        if self.selected is not None and all(c.id != self.selected.id for c in merged):
            merged.insert(0, self.selected)
        return merged

    async def list_conversations(self) -> list[Conversation]:
        """Refresh the conversation summaries.

        On failure the previous list is kept and returned.
        """
        try:
            fetched = await self._api.list_conversations()
        except ApiError as exc:
            logger.warning("Could not refresh conversations: %s", exc)
            return self.conversations

        self.conversations = self._merge_summaries(fetched)

        if self.selected is None and self._initial_partner_id is not None:
            target = next((c for c in self.conversations if c.id == self._initial_partner_id), None)
            if target is not None:
                self._initial_partner_id = None
                await self.open_conversation(target)

        return self.conversations

    # -- Open / close ----------------------------------------------------------

    async def open_conversation(self, counterpart: str | Conversation) -> list[TimelineEntry]:
        """Select a conversation, load its history and acknowledge unread messages.

        Accepts a counterpart id from the summaries, or a Conversation for a
        counterpart that has no messages yet.
        """
        if isinstance(counterpart, Conversation):
            conversation = counterpart
        else:
            conversation = next((c for c in self.conversations if c.id == counterpart), None)
            if conversation is None:
                raise ConversationError(f"Unknown conversation: {counterpart}")

        partner_id = conversation.id
        had_unread = conversation.unread_count > 0
        if partner_id != self.selected_id:
            self.timeline = []
        self.selected = conversation.model_copy(update={"unread_count": 0})
        self.partner_typing = False
        self.conversations = [
            self.selected if c.id == partner_id else c for c in self.conversations
        ]

        try:
            history = await self._api.get_history(partner_id)
        except ApiError as exc:
            logger.warning("Could not load history with %s: %s", partner_id, exc)
            return self.timeline

        if self.selected_id != partner_id:
            # Another conversation was opened while this fetch was in flight.
            return self.timeline

        known = {m.id for m in history}
        self.timeline = [TimelineEntry.from_message(m) for m in history] + [
            e for e in self.timeline if e.id not in known
        ]

        if had_unread or any(not m.is_from_me and not m.read for m in history):
            self._acknowledge(partner_id)

        await self.list_conversations()
        return self.timeline

    def close_conversation(self) -> None:
        self.selected = None
        self.timeline = []
        self.partner_typing = False

    def _acknowledge(self, partner_id: str) -> None:
        task = asyncio.create_task(self._mark_read(partner_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _mark_read(self, partner_id: str) -> None:
        try:
            await self._api.mark_read(partner_id)
        except ApiError as exc:
            logger.warning("Read acknowledgement for %s failed: %s", partner_id, exc)

    # -- Sending ---------------------------------------------------------------

    async def send_message(self, counterpart_id: str, content: str) -> TimelineEntry:
        """Send a message to the open conversation.

        Returns the timeline entry, whose ``delivery`` tells how it ended.
        """
        text = content.strip()
        if not text:
            raise ConversationError("Message content cannot be empty")
        if self.selected_id is None or self.selected_id != counterpart_id:
            raise ConversationError("Conversation is not open")

        local_id = f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"
        entry = TimelineEntry(
            id=local_id,
            local_id=local_id,
            content=text,
            created_at=datetime.now(timezone.utc),
            is_from_me=True,
            delivery=DeliveryState.PENDING,
        )
        self.timeline.append(entry)
        await self._deliver(counterpart_id, entry)
        return entry

    async def retry_message(self, local_id: str) -> TimelineEntry:
        """Resend a FAILED entry of the open conversation in place."""
        entry = next((e for e in self.timeline if e.local_id == local_id), None)
        if entry is None or entry.delivery is not DeliveryState.FAILED:
            raise ConversationError(f"No failed message {local_id} in the open conversation")
        entry.delivery = DeliveryState.PENDING
        await self._deliver(self.selected_id, entry)  # type: ignore[arg-type]
        return entry

    async def _deliver(self, counterpart_id: str, entry: TimelineEntry) -> None:
        try:
            message = await self._api.send_message(counterpart_id, entry.content)
        except ApiError as exc:
            entry.delivery = DeliveryState.FAILED
            logger.warning("Sending message to %s failed: %s", counterpart_id, exc)
            return

        # A live echo of this very message may have been appended already.
        self.timeline = [e for e in self.timeline if e is entry or e.id != message.id]
        entry.confirm(message)
        await self.list_conversations()

    async def notify_typing(self, draft: str) -> None:
        """Tell the open conversation's partner whether a draft is being typed."""
        if self._channel is None or self.selected is None or not self._channel.connected:
            return
        try:
            await self._channel.emit("typing", {
                "recipient_id": self.selected.id,
                "is_typing": len(draft) > 0,
            })
        except ChannelError as exc:
            logger.debug("Typing signal not sent: %s", exc)

    # -- Live events -----------------------------------------------------------

    @staticmethod
    def _partner_of(data: dict[str, Any], message: Message) -> str | None:
        if message.is_from_me:
            return data.get("recipient_id")
        return data.get("sender_id")

    async def handle_new_message(self, data: dict[str, Any]) -> None:
        """Merge a pushed message into the open timeline and refresh summaries."""
        try:
            message = Message.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring malformed new_message event")
            return

        partner_id = self._partner_of(data, message)
        belongs_to_open = self.selected is not None and (
            partner_id is None or partner_id == self.selected.id
        )
        if belongs_to_open and all(e.id != message.id for e in self.timeline):
            self.timeline.append(TimelineEntry.from_message(message))
            if not message.is_from_me:
                self._acknowledge(self.selected.id)  # type: ignore[union-attr]

        await self.list_conversations()

    def handle_user_typing(self, data: dict[str, Any]) -> None:
        """Apply a typing signal if it comes from the open conversation's partner."""
        try:
            signal = TypingSignal.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring malformed user_typing event")
            return
        if self.selected is not None and signal.sender_id == self.selected.id:
            self.partner_typing = signal.is_typing
