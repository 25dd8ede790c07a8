"""Event subscription registry for the real-time channel"""
import inspect
import logging
from typing import Any, Awaitable, Callable

Handler = Callable[[Any], Awaitable[None] | None]

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Routes named events to registered handlers

    Handlers may be plain functions or coroutines. The registry is owned by
    the channel and outlives any single connection.
    """

    def __init__(self) -> None:
        self.handlers: dict[str, list[Handler]] = {}

    def subscribe(self, event_name: str, handler: Handler) -> Callable[[], None]:
        """Register a handler and return the function that removes it"""
        self.handlers.setdefault(event_name, []).append(handler)

        def unsubscribe() -> None:
            handlers = self.handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self.handlers.pop(event_name, None)

        return unsubscribe

    def handler_count(self, event_name: str | None = None) -> int:
        if event_name is not None:
            return len(self.handlers.get(event_name, []))
        return sum(len(handlers) for handlers in self.handlers.values())

    async def dispatch(self, event_name: str, payload: Any = None) -> None:
        """Invoke every handler for the event; one failing handler does not stop the rest"""
        # Copy: handlers may unsubscribe while being dispatched
        for handler in list(self.handlers.get(event_name, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", event_name)
