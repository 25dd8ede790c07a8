"""Pytest configuration and shared fixtures for all tests"""
import asyncio
import inspect
import json
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock

import pytest

from config import Settings
from database.token_store import TokenStore
from domain.constants import (
    EVENT_MESSAGES_READ,
    EVENT_NEW_MESSAGE,
    EVENT_TYPING_STARTED,
    EVENT_TYPING_STOPPED,
    EVENT_USER_OFFLINE,
    EVENT_USER_ONLINE,
    TOKEN_KEY,
    USER_KEY,
)
from domain.models import ApiResponse
from events.dispatcher import EventDispatcher
from realtime.channel import ChannelNotConnectedError
from rest.chat_api import ChatApiClient
from session.provider import SessionProvider

pytest_plugins = ("pytest_asyncio",)

API_BASE_URL = "https://api.chat.test/api"


class FakeChannel:
    """In-process stand-in for RealtimeChannel

    responses maps an emitted event name to the ack value, an exception to
    raise, or a callable (sync or async) taking the payload.
    """

    def __init__(self, connected: bool = True) -> None:
        self.dispatcher = EventDispatcher()
        self.is_connected = connected
        self.emitted: list[tuple[str, Any]] = []
        self.responses: dict[str, Any] = {}
        self.connect_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1

    async def emit(self, event_name: str, payload: Any = None, *, timeout: float | None = None) -> Any:
        if not self.is_connected:
            raise ChannelNotConnectedError(event_name)
        self.emitted.append((event_name, payload))
        response = self.responses.get(event_name, {"success": True})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            result = response(payload)
            if inspect.isawaitable(result):
                result = await result
            return result
        return response

    def emitted_names(self) -> list[str]:
        return [name for name, _ in self.emitted]

    def on(self, event_name, handler):
        return self.dispatcher.subscribe(event_name, handler)

    def on_new_message(self, handler):
        return self.on(EVENT_NEW_MESSAGE, handler)

    def on_messages_read(self, handler):
        return self.on(EVENT_MESSAGES_READ, handler)

    def on_user_online(self, handler):
        return self.on(EVENT_USER_ONLINE, handler)

    def on_user_offline(self, handler):
        return self.on(EVENT_USER_OFFLINE, handler)

    def on_typing_started(self, handler):
        return self.on(EVENT_TYPING_STARTED, handler)

    def on_typing_stopped(self, handler):
        return self.on(EVENT_TYPING_STOPPED, handler)

    async def push(self, event_name: str, payload: Any = None) -> None:
        """Simulate a server push"""
        await self.dispatcher.dispatch(event_name, payload)


class FakeWebSocket:
    """Websocket double: frames pushed into incoming are yielded by iteration

    responder receives each sent frame and returns the ack data, or None to
    leave the emit unacknowledged.
    """

    def __init__(self, responder=None) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.responder = responder
        self.closed = False

    async def send(self, raw: str) -> None:
        frame = json.loads(raw)
        self.sent.append(frame)
        if self.responder is not None:
            result = self.responder(frame)
            if result is not None:
                self.incoming.put_nowait(json.dumps({"ack": frame["id"], "data": result}))

    def push(self, event_name: str, data: Any = None) -> None:
        self.incoming.put_nowait(json.dumps({"event": event_name, "data": data}))

    def push_raw(self, raw: str) -> None:
        self.incoming.put_nowait(raw)

    def drop(self) -> None:
        """Server closes the connection"""
        self.incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        raw = await self.incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


class FakeConnector:
    """Connector double handing out queued sockets; fails the first `failures` attempts"""

    def __init__(self, sockets: list[FakeWebSocket] | None = None, failures: int = 0) -> None:
        self.sockets = list(sockets or [])
        self.failures = failures
        self.urls: list[str] = []
        self.opened: list[FakeWebSocket] = []

    def __call__(self, url: str):
        self.urls.append(url)
        return self._open()

    @asynccontextmanager
    async def _open(self):
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        ws = self.sockets.pop(0) if self.sockets else FakeWebSocket()
        self.opened.append(ws)
        yield ws


@pytest.fixture
def settings():
    """Settings with short timers so timing tests stay fast"""
    return Settings(
        api_base_url=API_BASE_URL,
        token_db_path=":memory:",
        ack_timeout=0.1,
        reconnect_attempts=2,
        reconnect_delay=0.01,
        typing_stop_delay=0.05,
        typing_stale_after=0.1,
    )


@pytest.fixture
async def token_store():
    """Create an in-memory SQLite token store for testing"""
    store = TokenStore(":memory:")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
async def signed_in_store(token_store):
    """Token store holding a session for actor u1"""
    await token_store.set(TOKEN_KEY, "token-u1")
    await token_store.set(USER_KEY, json.dumps({"id": "u1", "name": "Asha"}))
    return token_store


@pytest.fixture
def session(signed_in_store):
    return SessionProvider(signed_in_store)


@pytest.fixture
def anonymous_session(token_store):
    return SessionProvider(token_store)


@pytest.fixture
def fake_channel():
    return FakeChannel(connected=True)


@pytest.fixture
def offline_channel():
    return FakeChannel(connected=False)


@pytest.fixture
def mock_api():
    """ChatApiClient double with every endpoint succeeding and returning no data"""
    api = AsyncMock(spec=ChatApiClient)
    api.get_conversation.return_value = ApiResponse(success=True, data=[])
    api.get_conversations.return_value = ApiResponse(success=True, data=[])
    api.send_message.return_value = ApiResponse(success=False, message="not configured")
    api.mark_read.return_value = ApiResponse(success=True)
    api.delete_message.return_value = ApiResponse(success=True)
    api.delete_conversation.return_value = ApiResponse(success=True)
    api.get_online_status.return_value = ApiResponse(success=True, data={"isOnline": False})
    return api


@pytest.fixture
def make_socket():
    """Factory for FakeWebSocket instances"""
    return FakeWebSocket


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def make_connector():
    """Factory for FakeConnector instances"""
    return FakeConnector
