"""Composition root: builds the chat services once and tears them down together"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from chat.conversation_list import ConversationList
from chat.presence import PresenceTracker, TypingTracker
from chat.reconciliation import ConversationEngine
from config import Settings
from database.token_store import TokenStore
from realtime.channel import Connector, RealtimeChannel
from rest.chat_api import ChatApiClient
from session.provider import SessionProvider

logger = logging.getLogger(__name__)


@dataclass
class ChatServices:
    """Process-wide services shared by every chat screen"""
    settings: Settings
    store: TokenStore
    session: SessionProvider
    api: ChatApiClient
    channel: RealtimeChannel
    presence: PresenceTracker
    typing: TypingTracker
    conversations: ConversationList

    def conversation(self) -> ConversationEngine:
        """New engine for one conversation screen; call close() on it when leaving"""
        return ConversationEngine(
            self.settings,
            self.session,
            self.api,
            self.channel,
            typing=self.typing,
            conversations=self.conversations,
        )


@asynccontextmanager
async def chat_services(
    settings: Settings | None = None,
    *,
    http: httpx.AsyncClient | None = None,
    connector: Connector | None = None,
) -> AsyncIterator[ChatServices]:
    """Startup: open the token store and wire the services. Shutdown: release them."""
    settings = settings or Settings()

    store = TokenStore(settings.token_db_path)
    await store.init()
    session = SessionProvider(store)
    api = ChatApiClient(settings, session, http=http)
    channel = RealtimeChannel(settings, session, connector=connector)

    services = ChatServices(
        settings=settings,
        store=store,
        session=session,
        api=api,
        channel=channel,
        presence=PresenceTracker(channel, api),
        typing=TypingTracker(settings, channel),
        conversations=ConversationList(settings, session, api, channel),
    )
    services.presence.attach()
    services.typing.attach()
    services.conversations.attach()
    logger.info("Chat services started")

    try:
        yield services
    finally:
        services.conversations.detach()
        services.typing.detach()
        services.presence.detach()
        await channel.disconnect()
        await api.aclose()
        await store.close()
        logger.info("Chat services shut down")
