"""Conversation reconciliation: REST history, real-time events and optimistic sends"""
import asyncio
import itertools
import logging
import time
from typing import Any, Awaitable, Callable

from chat.conversation_list import ConversationList
from chat.presence import TypingTracker
from config import Settings
from domain.constants import (
    DELIVERY_DELIVERED,
    DELIVERY_SEEN,
    DELIVERY_SENT,
    EMIT_JOIN_CONVERSATION,
    EMIT_LEAVE_CONVERSATION,
    EMIT_MARK_READ,
    EMIT_SEND_MESSAGE,
    EVENT_CONNECT,
    MAX_MESSAGE_LENGTH,
    MESSAGE_TYPE_TEXT,
    ROLE_PRIMARY,
    MessageType,
)
from domain.errors import ConversationNotOpenError, InvalidMessageError
from domain.models import Message, conversation_id_for, parse_timestamp
from realtime.channel import ChannelError, RealtimeChannel
from rest.chat_api import ChatApiClient, ChatApiError
from session.provider import SessionProvider

logger = logging.getLogger(__name__)


class ConversationEngine:
    """Single time-ordered transcript for the open conversation

    Messages live in a list (display order) plus an index by id. Optimistic
    sends are tracked in an outbox keyed by their temporary id until the
    server assigns the real one; the same Message object is then re-keyed in
    place.

    Every load captures a generation number at call start and applies its
    result only if no open()/close() happened in between.
    """

    def __init__(
        self,
        settings: Settings,
        session: SessionProvider,
        api: ChatApiClient,
        channel: RealtimeChannel,
        typing: TypingTracker | None = None,
        conversations: ConversationList | None = None,
    ) -> None:
        self.settings = settings
        self.session = session
        self.api = api
        self.channel = channel
        self.typing = typing
        self.conversations = conversations

        self.actor_id: str | None = None
        self.partner_id: str | None = None
        self.conversation_id: str | None = None
        self.error: str | None = None

        self._messages: list[Message] = []
        self._by_id: dict[str, Message] = {}
        self._outbox: dict[str, Message] = {}
        self._loading: set[str] = set()
        self._generation = 0
        self._temp_seq = itertools.count()
        self._unsubscribers: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def is_loading(self) -> bool:
        return self.conversation_id in self._loading

    async def open(self, partner_id: str) -> bool:
        """Open the conversation with partner_id; False when nobody is signed in"""
        if self.conversation_id is not None:
            await self.close()

        actor_id = await self.session.get_current_actor_id()
        if not actor_id:
            logger.info("No signed-in actor; not opening conversation with %s", partner_id)
            return False

        self._generation += 1
        self.actor_id = actor_id
        self.partner_id = partner_id
        self.conversation_id = conversation_id_for(actor_id, partner_id)
        self.error = None
        self._messages = []
        self._by_id = {}
        if self.conversations is not None:
            self.conversations.open_conversation(self.conversation_id)

        self._unsubscribers = [
            self.channel.on_new_message(self.on_inbound_message),
            self.channel.on_messages_read(self.on_read_receipt),
            self.channel.on(EVENT_CONNECT, self._on_channel_connect),
        ]
        await self.channel.connect()
        if self.channel.is_connected:
            await self._emit_quietly(EMIT_JOIN_CONVERSATION, self.conversation_id)

        await self.mark_read()
        await self.load_history(partner_id)
        return True

    async def close(self) -> None:
        """Tear down subscriptions; late results for this conversation are discarded"""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        conversation_id, partner_id = self.conversation_id, self.partner_id
        for task in list(self._tasks):
            task.cancel()
        if (
            self.conversations is not None
            and conversation_id is not None
            and self.conversations.open_conversation_id == conversation_id
        ):
            self.conversations.close_conversation()
        self._generation += 1
        self.conversation_id = None
        self.partner_id = None
        self._messages = []
        self._by_id = {}
        self._outbox = {}
        self._loading.clear()

        if conversation_id is None or partner_id is None:
            return
        if self.typing is not None:
            await self.typing.stop_typing(conversation_id, partner_id)
        if self.channel.is_connected:
            await self._emit_quietly(EMIT_LEAVE_CONVERSATION, conversation_id)

    async def load_history(self, partner_id: str | None = None) -> None:
        """Replace the transcript with the server's history

        No-op while a load for the same conversation is in flight. On failure
        the current transcript is kept and error is set.
        """
        partner_id = partner_id or self.partner_id
        conversation_id = self.conversation_id
        if conversation_id is None or partner_id != self.partner_id:
            return
        if conversation_id in self._loading:
            return

        generation = self._generation
        before = {id(m) for m in self._messages}
        self._loading.add(conversation_id)
        try:
            response = await self.api.get_conversation(partner_id)
        except ChatApiError as exc:
            logger.warning("Loading history for %s failed: %s", conversation_id, exc)
            if generation == self._generation:
                self.error = str(exc)
            return
        finally:
            self._loading.discard(conversation_id)

        if generation != self._generation:
            logger.debug("Discarding stale history for %s", conversation_id)
            return
        if not response.success:
            self.error = response.message or "Could not load messages"
            return

        history = [
            Message.from_payload(
                item,
                self.actor_id or "",
                self.settings.counterparty_model,
                conversation_id,
            )
            for item in response.items()
            if isinstance(item, dict)
        ]
        self._replace(history, before)
        self.error = None

    def _replace(self, history: list[Message], before: set[int]) -> None:
        # Keep sends still waiting for an ack and anything that arrived while
        # the load was in flight; the server copy wins for duplicates
        history_by_id = {m.id: m for m in history if m.id}
        in_flight = {id(m) for m in self._outbox.values()}
        tail = []
        for message in self._messages:
            if id(message) not in in_flight and id(message) in before:
                continue
            server_copy = history_by_id.get(message.id)
            if server_copy is not None:
                server_copy.advance(message.delivery_state)
                continue
            tail.append(message)
        self._messages = history + tail
        self._by_id = {m.id: m for m in self._messages if m.id}

    def _new_temp_id(self) -> str:
        return f"local-{time.time_ns()}-{next(self._temp_seq)}"

    async def send_message(
        self,
        partner_id: str,
        body: str,
        message_type: MessageType = MESSAGE_TYPE_TEXT,
    ) -> Message:
        """Append a pending message immediately, then deliver it

        Delivery goes over the channel when connected and falls back to REST.
        If both fail the message stays in the transcript as sent.
        """
        text = (body or "").strip()
        if not text:
            raise InvalidMessageError("Message body is empty")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise InvalidMessageError(f"Message body exceeds {MAX_MESSAGE_LENGTH} characters")
        if self.conversation_id is None or partner_id != self.partner_id:
            raise ConversationNotOpenError(f"No open conversation with {partner_id}")

        conversation_id = self.conversation_id
        generation = self._generation
        message = Message(
            id=self._new_temp_id(),
            conversation_id=conversation_id,
            sender_role=ROLE_PRIMARY,
            body=text,
            sender_id=self.actor_id,
            message_type=message_type,
        )
        temp_id = message.id
        self._messages.append(message)
        self._by_id[temp_id] = message
        self._outbox[temp_id] = message

        try:
            if self.typing is not None:
                await self.typing.stop_typing(conversation_id, partner_id)
            confirmed = await self._deliver(partner_id, text, message_type)
        finally:
            self._outbox.pop(temp_id, None)

        if confirmed is None:
            message.advance(DELIVERY_SENT)
        else:
            self._confirm(message, confirmed, reindex=generation == self._generation)
        return message

    async def _deliver(self, partner_id: str, text: str, message_type: MessageType) -> dict | None:
        """Server copy of the message, or None when neither transport confirmed it"""
        payload = {"receiverId": partner_id, "message": text, "messageType": message_type}

        if self.channel.is_connected:
            try:
                ack = await self.channel.emit(EMIT_SEND_MESSAGE, payload)
            except ChannelError as exc:
                logger.warning("Channel send failed, falling back to REST: %s", exc)
            else:
                if isinstance(ack, dict) and ack.get("success") and isinstance(ack.get("data"), dict):
                    return ack["data"]
                logger.warning(
                    "Channel rejected message, falling back to REST: %s",
                    ack.get("error") if isinstance(ack, dict) else ack,
                )

        try:
            response = await self.api.send_message(partner_id, text, message_type)
        except ChatApiError as exc:
            logger.warning("REST send failed: %s", exc)
            return None
        if response.success and isinstance(response.data, dict):
            return response.data
        logger.warning("REST send rejected: %s", response.message)
        return None

    def _confirm(self, message: Message, confirmed: dict, reindex: bool = True) -> None:
        # reindex is False once the conversation was closed or switched mid-send
        server_id = str(confirmed.get("_id") or confirmed.get("id") or "")
        if server_id and reindex:
            echo = self._by_id.get(server_id)
            if echo is not None and echo is not message:
                # Our own new_message echo beat the acknowledgement
                self._messages = [m for m in self._messages if m is not echo]
                message.advance(echo.delivery_state)
            if self._by_id.get(message.id) is message:
                del self._by_id[message.id]
                self._by_id[server_id] = message
        if server_id:
            message.id = server_id

        created_at = parse_timestamp(confirmed.get("createdAt"))
        if created_at is not None:
            message.created_at = created_at
        message.advance(DELIVERY_DELIVERED)
        if confirmed.get("isRead"):
            message.advance(DELIVERY_SEEN)

    async def on_inbound_message(self, payload: Any) -> None:
        """new_message handler: append messages for the open conversation"""
        if self.conversation_id is None or not isinstance(payload, dict):
            return
        if payload.get("conversationId") != self.conversation_id:
            return

        message = Message.from_payload(
            payload,
            self.actor_id or "",
            self.settings.counterparty_model,
            self.conversation_id,
        )
        existing = self._by_id.get(message.id) if message.id else None
        if existing is not None:
            existing.advance(message.delivery_state)
            return

        self._messages.append(message)
        if message.id:
            self._by_id[message.id] = message
        if message.is_counterparty:
            self._spawn(self.mark_read())

    async def on_read_receipt(self, payload: Any) -> None:
        """messages_read handler: our sent/delivered messages become seen"""
        if self.conversation_id is None or not isinstance(payload, dict):
            return
        if payload.get("conversationId") != self.conversation_id:
            return
        if payload.get("readBy") and payload.get("readBy") == self.actor_id:
            return

        for message in self._messages:
            if message.sender_role == ROLE_PRIMARY and message.delivery_state in (
                DELIVERY_SENT,
                DELIVERY_DELIVERED,
            ):
                message.advance(DELIVERY_SEEN)

    async def mark_read(self) -> None:
        """Tell the server the open conversation has been read"""
        conversation_id, partner_id = self.conversation_id, self.partner_id
        if conversation_id is None:
            return

        if self.channel.is_connected:
            try:
                await self.channel.emit(
                    EMIT_MARK_READ,
                    {"conversationId": conversation_id, "senderId": partner_id},
                )
                return
            except ChannelError as exc:
                logger.warning("Channel mark_read failed, falling back to REST: %s", exc)

        try:
            response = await self.api.mark_read(conversation_id)
        except ChatApiError as exc:
            logger.warning("Marking %s read failed: %s", conversation_id, exc)
            return
        if not response.success:
            logger.warning("Marking %s read rejected: %s", conversation_id, response.message)

    async def delete_message(self, message_id: str) -> bool:
        """Delete a persisted message and drop it from the transcript"""
        message = self._by_id.get(message_id)
        if message is None or message_id in self._outbox:
            return False
        try:
            response = await self.api.delete_message(message_id)
        except ChatApiError as exc:
            logger.warning("Deleting message %s failed: %s", message_id, exc)
            self.error = str(exc)
            return False
        if not response.success:
            self.error = response.message or "Could not delete message"
            return False

        self._by_id.pop(message_id, None)
        self._messages = [m for m in self._messages if m is not message]
        return True

    async def _on_channel_connect(self, _payload: Any = None) -> None:
        if self.conversation_id is None:
            return
        self._spawn(self._rejoin())

    async def _rejoin(self) -> None:
        # (Re)connected while open: rejoin the room and catch up on read state
        if self.conversation_id is None:
            return
        await self._emit_quietly(EMIT_JOIN_CONVERSATION, self.conversation_id)
        await self.mark_read()

    def _spawn(self, coro: Awaitable[None]) -> None:
        # Handlers run on the channel's dispatch task and must not wait on acks
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for read receipts and rejoins scheduled by event handlers"""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _emit_quietly(self, event_name: str, payload: Any) -> None:
        try:
            await self.channel.emit(event_name, payload)
        except ChannelError as exc:
            logger.debug("%s not acknowledged: %s", event_name, exc)
