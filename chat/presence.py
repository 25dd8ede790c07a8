"""Online presence and typing indicators driven by real-time events"""
import asyncio
import logging
from typing import Any, Awaitable, Callable

from config import Settings
from domain.constants import EMIT_TYPING_START, EMIT_TYPING_STOP
from domain.models import TypingUser
from realtime.channel import ChannelError, RealtimeChannel
from rest.chat_api import ChatApiClient, ChatApiError

logger = logging.getLogger(__name__)


def _actor_id(payload: Any) -> str | None:
    """Events carry {"userId": ...}; direct calls may pass the id itself"""
    if isinstance(payload, dict):
        payload = payload.get("userId")
    return str(payload) if payload else None


class PresenceTracker:
    """Set of actor ids currently known to be online

    Only explicit online/offline events (or an explicit refresh) change the
    set; nothing expires on its own.
    """

    def __init__(self, channel: RealtimeChannel, api: ChatApiClient | None = None) -> None:
        self.channel = channel
        self.api = api
        self.online: set[str] = set()
        self._unsubscribers: list[Callable[[], None]] = []

    def attach(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.channel.on_user_online(self.on_user_online),
            self.channel.on_user_offline(self.on_user_offline),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def on_user_online(self, payload: Any) -> None:
        actor_id = _actor_id(payload)
        if actor_id:
            self.online.add(actor_id)

    def on_user_offline(self, payload: Any) -> None:
        actor_id = _actor_id(payload)
        if actor_id:
            self.online.discard(actor_id)

    def is_online(self, actor_id: str) -> bool:
        return actor_id in self.online

    async def refresh(self, actor_id: str) -> bool | None:
        """Seed one actor's state from the REST status endpoint; None if unknown"""
        if self.api is None:
            return None
        try:
            response = await self.api.get_online_status(actor_id)
        except ChatApiError as exc:
            logger.warning("Online status lookup for %s failed: %s", actor_id, exc)
            return None
        if not response.success or not isinstance(response.data, dict):
            return None

        is_online = bool(response.data.get("isOnline"))
        if is_online:
            self.online.add(actor_id)
        else:
            self.online.discard(actor_id)
        return is_online


class TypingTracker:
    """Local typing sessions (outbound) and counterparty typing flags (inbound)

    A local session emits typing_start once, then typing_stop either when
    stop_typing() is called or after typing_stop_delay seconds without another
    start_typing() call. Received indicators are dropped after
    typing_stale_after seconds if no typing_stopped arrives.
    """

    def __init__(self, settings: Settings, channel: RealtimeChannel) -> None:
        self.settings = settings
        self.channel = channel
        self.typing: dict[str, TypingUser] = {}
        self._local: dict[str, asyncio.TimerHandle] = {}
        self._stale: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribers: list[Callable[[], None]] = []

    def attach(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.channel.on_typing_started(self.on_typing_started),
            self.channel.on_typing_stopped(self.on_typing_stopped),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        for timer in [*self._local.values(), *self._stale.values()]:
            timer.cancel()
        self._local.clear()
        self._stale.clear()
        self.typing.clear()

    def is_local_typing(self, conversation_id: str) -> bool:
        return conversation_id in self._local

    async def start_typing(self, conversation_id: str, partner_id: str) -> None:
        """Call on every keystroke; emits typing_start only for the first one"""
        if not self.channel.is_connected:
            return

        timer = self._local.get(conversation_id)
        first_keystroke = timer is None
        if timer is not None:
            timer.cancel()
        self._local[conversation_id] = asyncio.get_running_loop().call_later(
            self.settings.typing_stop_delay,
            self._auto_stop,
            conversation_id,
            partner_id,
        )
        if first_keystroke:
            await self._emit(EMIT_TYPING_START, conversation_id, partner_id)

    async def stop_typing(self, conversation_id: str, partner_id: str) -> None:
        timer = self._local.pop(conversation_id, None)
        if timer is None:
            return
        timer.cancel()
        await self._emit(EMIT_TYPING_STOP, conversation_id, partner_id)

    def _auto_stop(self, conversation_id: str, partner_id: str) -> None:
        self._local.pop(conversation_id, None)
        self._spawn(self._emit(EMIT_TYPING_STOP, conversation_id, partner_id))

    async def _emit(self, event_name: str, conversation_id: str, partner_id: str) -> None:
        try:
            await self.channel.emit(
                event_name,
                {"conversationId": conversation_id, "receiverId": partner_id},
            )
        except ChannelError as exc:
            logger.debug("%s for %s not delivered: %s", event_name, conversation_id, exc)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def on_typing_started(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("conversationId"):
            return
        conversation_id = str(payload["conversationId"])
        self.typing[conversation_id] = TypingUser(
            user_id=str(payload.get("userId") or ""),
            user_name=payload.get("userName") or "",
        )
        stale = self._stale.pop(conversation_id, None)
        if stale is not None:
            stale.cancel()
        self._stale[conversation_id] = asyncio.get_running_loop().call_later(
            self.settings.typing_stale_after,
            self._expire,
            conversation_id,
        )

    def on_typing_stopped(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("conversationId"):
            return
        self._expire(str(payload["conversationId"]))

    def _expire(self, conversation_id: str) -> None:
        self.typing.pop(conversation_id, None)
        stale = self._stale.pop(conversation_id, None)
        if stale is not None:
            stale.cancel()

    def typing_user(self, conversation_id: str) -> TypingUser | None:
        return self.typing.get(conversation_id)
