"""Observer registry used for the public event surface.

The same emitter class backs three surfaces:

* the listener's public events (``server:connected``, ``mail``, ...),
* the transport's lifecycle and change notifications (``ready``,
  ``new-message``, ...),
* the parser's incremental attachment notifications.

Handlers may be plain callables or coroutine functions.  Coroutine
handlers are scheduled as tasks on the running loop and tracked so they
can be awaited with :meth:`EventEmitter.drain`.  A handler that raises is
logged and never interrupts delivery to the remaining handlers.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger()

Handler = Callable[..., Any]

# Public listener events
SERVER_CONNECTED = "server:connected"
SERVER_DISCONNECTED = "server:disconnected"
ERROR = "error"
MAIL = "mail"
ATTACHMENT = "attachment"

# Transport events
READY = "ready"
CLOSE = "close"
NEW_MESSAGE = "new-message"
MAILBOX_UPDATED = "mailbox-updated"

# Parser events
ATTACHMENT_FOUND = "attachment-found"
ATTACHMENT_ERROR = "attachment-error"


class EventEmitter:
    """Named-event observer registry."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event: str, handler: Handler) -> Handler:
        """Register *handler* for *event* and return it."""
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        """Deliver *args* to every handler registered for *event*.

        Returns ``True`` if at least one handler was registered.
        """
        if self._closed:
            logger.debug("event_suppressed", event_name=event)
            return False

        handlers = list(self._handlers.get(event, ()))
        if not handlers:
            if event == ERROR:
                error = args[0] if args else None
                logger.error(
                    "unhandled_error_event",
                    error=str(error),
                    error_type=type(error).__name__,
                )
            return False

        for handler in handlers:
            try:
                result = handler(*args)
            except Exception:
                logger.exception("event_handler_failed", event_name=event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._handler_done)
        return True

    def _handler_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("event_handler_failed", error=str(exc), exc_info=exc)

    async def drain(self) -> None:
        """Wait until every coroutine handler scheduled so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Suppress all further emissions."""
        self._closed = True
