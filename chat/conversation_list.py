"""Live conversation list with per-conversation and total unread counts"""
import logging
from typing import Any, Callable

from config import Settings
from domain.models import Conversation, Message, parse_timestamp, truncate_snippet, utcnow
from realtime.channel import RealtimeChannel
from rest.chat_api import ChatApiClient, ChatApiError
from session.provider import SessionProvider

logger = logging.getLogger(__name__)


class ConversationList:
    """Most-recent-first conversation list kept live by new_message events

    total_unread is maintained incrementally: every change to a
    conversation's unread_count goes through _adjust_unread(), and full loads
    recompute it from scratch.
    """

    def __init__(
        self,
        settings: Settings,
        session: SessionProvider,
        api: ChatApiClient,
        channel: RealtimeChannel,
    ) -> None:
        self.settings = settings
        self.session = session
        self.api = api
        self.channel = channel

        self.actor_id: str | None = None
        self.open_conversation_id: str | None = None
        self.total_unread = 0
        self.error: str | None = None
        self.is_loading = False

        self._conversations: list[Conversation] = []
        self._index: dict[str, Conversation] = {}
        self._generation = 0
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def conversations(self) -> list[Conversation]:
        return list(self._conversations)

    def get(self, conversation_id: str) -> Conversation | None:
        return self._index.get(conversation_id)

    def attach(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [self.channel.on_new_message(self.on_inbound_message)]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def load_conversations(self) -> None:
        """Fetch the list; only the most recent call's result is applied"""
        self._generation += 1
        generation = self._generation

        actor_id = await self.session.get_current_actor_id()
        if generation != self._generation:
            return
        if not actor_id:
            self.actor_id = None
            self._set([])
            return
        self.actor_id = actor_id

        self.is_loading = True
        try:
            response = await self.api.get_conversations()
        except ChatApiError as exc:
            logger.warning("Loading conversations failed: %s", exc)
            if generation == self._generation:
                self.error = str(exc)
            return
        finally:
            if generation == self._generation:
                self.is_loading = False

        if generation != self._generation:
            logger.debug("Discarding superseded conversation list")
            return
        if not response.success:
            self.error = response.message or "Could not load conversations"
            return

        conversations = [
            Conversation.from_payload(item)
            for item in response.items()
            if isinstance(item, dict)
        ]
        # Conversations without a partner or without any message are not shown
        visible = [
            c for c in conversations
            if c.conversation_id and c.partner is not None and c.last_message_snippet
        ]
        for conversation in visible:
            if conversation.conversation_id == self.open_conversation_id:
                conversation.unread_count = 0
        self._set(visible)
        self.error = None

    def _set(self, conversations: list[Conversation]) -> None:
        self._conversations = conversations
        self._index = {c.conversation_id: c for c in conversations}
        self.total_unread = sum(c.unread_count for c in conversations)

    def _adjust_unread(self, conversation: Conversation, delta: int) -> None:
        updated = max(0, conversation.unread_count + delta)
        self.total_unread += updated - conversation.unread_count
        conversation.unread_count = updated

    def _move_to_front(self, conversation: Conversation) -> None:
        self._conversations = [conversation] + [
            c for c in self._conversations if c is not conversation
        ]

    async def on_inbound_message(self, payload: Any) -> None:
        """new_message handler: update in place, or refetch for an unknown conversation"""
        if not isinstance(payload, dict) or not payload.get("conversationId"):
            return
        conversation = self._index.get(payload["conversationId"])
        if conversation is None:
            await self.load_conversations()
            return

        conversation.last_message_snippet = truncate_snippet(payload.get("message") or "")
        conversation.last_message_timestamp = parse_timestamp(payload.get("createdAt")) or utcnow()

        message = Message.from_payload(
            payload,
            self.actor_id or "",
            self.settings.counterparty_model,
        )
        if message.is_counterparty and conversation.conversation_id != self.open_conversation_id:
            self._adjust_unread(conversation, 1)
        self._move_to_front(conversation)

    def open_conversation(self, conversation_id: str) -> None:
        """Mark a conversation as open locally; its unread count drops to zero at once"""
        self.open_conversation_id = conversation_id
        conversation = self._index.get(conversation_id)
        if conversation is not None and conversation.unread_count:
            self._adjust_unread(conversation, -conversation.unread_count)

    def close_conversation(self) -> None:
        self.open_conversation_id = None

    async def delete_conversation(self, conversation_id: str) -> bool:
        conversation = self._index.get(conversation_id)
        if conversation is None or conversation.partner is None:
            return False
        try:
            response = await self.api.delete_conversation(conversation.partner.id)
        except ChatApiError as exc:
            logger.warning("Deleting conversation %s failed: %s", conversation_id, exc)
            self.error = str(exc)
            return False
        if not response.success:
            self.error = response.message or "Could not delete conversation"
            return False

        self._adjust_unread(conversation, -conversation.unread_count)
        self._index.pop(conversation_id, None)
        self._conversations = [c for c in self._conversations if c is not conversation]
        return True
