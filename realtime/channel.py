"""Real-time channel client: connection lifecycle, subscriptions and acknowledged emits"""
import asyncio
import contextlib
import itertools
import logging
from typing import Any, AsyncContextManager, Callable
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import WebSocketException

from config import Settings
from domain.constants import (
    EVENT_CONNECT,
    EVENT_DISCONNECT,
    EVENT_MESSAGES_READ,
    EVENT_NEW_MESSAGE,
    EVENT_TYPING_STARTED,
    EVENT_TYPING_STOPPED,
    EVENT_USER_OFFLINE,
    EVENT_USER_ONLINE,
)
from events.dispatcher import EventDispatcher, Handler
from realtime.protocol import AckFrame, ProtocolError, decode_frame, encode_emit
from session.provider import SessionProvider

Connector = Callable[[str], AsyncContextManager[Any]]

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """Base error for channel operations."""


class ChannelNotConnectedError(ChannelError):
    """Raised when emitting while no connection is open."""


class ChannelTimeoutError(ChannelError):
    """Raised when an acknowledgement does not arrive in time."""


class RealtimeChannel:
    """Shared persistent connection with a subscription registry

    One instance per process. connect() may be called by any number of
    consumers; only the first call while disconnected opens a connection.
    Subscriptions live in the dispatcher and survive reconnects; emits that
    are waiting for an ack when the connection drops fail with ChannelError.
    """

    def __init__(
        self,
        settings: Settings,
        session: SessionProvider,
        connector: Connector | None = None,
    ) -> None:
        self.settings = settings
        self.session = session
        self.dispatcher = EventDispatcher()
        self._connector = connector or self._open_websocket
        self._ws: Any = None
        self._run_task: asyncio.Task | None = None
        self._consumer_task: asyncio.Task | None = None
        self._events: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._connected = asyncio.Event()
        self._connecting = False
        self._closing = False
        self._ack_ids = itertools.count(1)
        self._pending_acks: dict[int, asyncio.Future] = {}

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def _open_websocket(self, url: str) -> AsyncContextManager[Any]:
        return ws_connect(url, open_timeout=self.settings.request_timeout)

    async def connect(self) -> None:
        """Start the connection loop unless it is already running or starting"""
        if self._connecting or self.is_connected:
            return
        if self._run_task is not None and not self._run_task.done():
            return

        self._connecting = True
        try:
            token = await self.session.get_token()
            if not token:
                logger.info("No token available for channel connection")
                return

            url = f"{self.settings.resolved_socket_url()}?{urlencode({'token': token})}"
            self._closing = False
            if self._consumer_task is None or self._consumer_task.done():
                self._consumer_task = asyncio.create_task(self._consume())
            self._run_task = asyncio.create_task(self._run(url))
        finally:
            self._connecting = False

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting"""
        self._closing = True
        run_task, self._run_task = self._run_task, None
        if self._ws is not None:
            with contextlib.suppress(OSError, WebSocketException):
                await self._ws.close()
        if run_task is not None:
            run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await run_task
        if self._ws is not None:
            self._handle_close()
        await self.drain()

        consumer_task, self._consumer_task = self._consumer_task, None
        if consumer_task is not None:
            consumer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer_task

    async def drain(self) -> None:
        """Wait until every received event has been dispatched"""
        if self._consumer_task is not None and not self._consumer_task.done():
            await self._events.join()

    async def _run(self, url: str) -> None:
        """Connection loop with bounded reconnection"""
        failures = 0
        while not self._closing:
            try:
                async with self._connector(url) as ws:
                    failures = 0
                    self._handle_open(ws)
                    async for raw in ws:
                        self._handle_raw(raw)
                logger.info("Channel closed by server")
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                failures += 1
                logger.warning("Channel connection error: %s", exc)
            finally:
                if self._ws is not None:
                    self._handle_close()

            if self._closing:
                break
            if failures >= self.settings.reconnect_attempts:
                logger.warning("Channel giving up after %d failed attempts", failures)
                break
            await asyncio.sleep(self.settings.reconnect_delay)

    def _handle_open(self, ws: Any) -> None:
        self._ws = ws
        self._connected.set()
        logger.info("Channel connected")
        self._events.put_nowait((EVENT_CONNECT, None))

    def _handle_close(self) -> None:
        self._ws = None
        self._connected.clear()
        logger.info("Channel disconnected")
        pending, self._pending_acks = self._pending_acks, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ChannelError("connection lost before acknowledgement"))
        self._events.put_nowait((EVENT_DISCONNECT, None))

    def _handle_raw(self, raw: str | bytes) -> None:
        try:
            frame = decode_frame(raw)
        except ProtocolError as exc:
            logger.warning("Dropping channel frame: %s", exc)
            return

        if isinstance(frame, AckFrame):
            future = self._pending_acks.pop(frame.ack_id, None)
            if future is not None and not future.done():
                future.set_result(frame.data)
            return

        logger.debug("Channel event %s", frame.event)
        self._events.put_nowait((frame.event, frame.data))

    async def _consume(self) -> None:
        """Dispatch events in arrival order, off the socket reader"""
        while True:
            event_name, payload = await self._events.get()
            try:
                await self.dispatcher.dispatch(event_name, payload)
            finally:
                self._events.task_done()

    async def emit(self, event_name: str, payload: Any = None, *, timeout: float | None = None) -> Any:
        """Send an event and wait (bounded) for the server's acknowledgement"""
        ws = self._ws
        if ws is None:
            raise ChannelNotConnectedError(f"cannot emit {event_name}: not connected")

        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending_acks[ack_id] = future
        wait = timeout if timeout is not None else self.settings.ack_timeout
        try:
            await ws.send(encode_emit(event_name, payload, ack_id))
            return await asyncio.wait_for(future, wait)
        except asyncio.TimeoutError as exc:
            raise ChannelTimeoutError(f"no acknowledgement for {event_name} after {wait}s") from exc
        except (OSError, WebSocketException) as exc:
            raise ChannelError(f"emit {event_name} failed: {exc}") from exc
        finally:
            self._pending_acks.pop(ack_id, None)
            # A drop during send fails the future nobody awaits any more
            if future.done() and not future.cancelled():
                future.exception()

    def on(self, event_name: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to a server event; the caller must call the returned function to unsubscribe"""
        return self.dispatcher.subscribe(event_name, handler)

    def on_new_message(self, handler: Handler) -> Callable[[], None]:
        return self.on(EVENT_NEW_MESSAGE, handler)

    def on_messages_read(self, handler: Handler) -> Callable[[], None]:
        return self.on(EVENT_MESSAGES_READ, handler)

    def on_user_online(self, handler: Handler) -> Callable[[], None]:
        return self.on(EVENT_USER_ONLINE, handler)

    def on_user_offline(self, handler: Handler) -> Callable[[], None]:
        return self.on(EVENT_USER_OFFLINE, handler)

    def on_typing_started(self, handler: Handler) -> Callable[[], None]:
        return self.on(EVENT_TYPING_STARTED, handler)

    def on_typing_stopped(self, handler: Handler) -> Callable[[], None]:
        return self.on(EVENT_TYPING_STOPPED, handler)
