"""Bridges transport lifecycle and change notifications to the coordinator."""

from __future__ import annotations

import structlog

from .config import ListenerConfig
from .coordinator import ProcessingCoordinator
from .events import (
    CLOSE,
    ERROR,
    MAILBOX_UPDATED,
    NEW_MESSAGE,
    READY,
    SERVER_CONNECTED,
    SERVER_DISCONNECTED,
    EventEmitter,
)
from .interface import MailboxTransport
from .models import MailboxInfo

logger = structlog.get_logger()


class MailboxWatcher:
    """Selects the mailbox on every (re)connect and forwards change signals.

    Change subscriptions are registered once, on the first successful
    select, and survive reconnects.  Transport errors are forwarded to the
    public ``error`` channel unchanged.
    """

    def __init__(
        self,
        transport: MailboxTransport,
        coordinator: ProcessingCoordinator,
        config: ListenerConfig,
        events: EventEmitter,
    ) -> None:
        self._transport = transport
        self._coordinator = coordinator
        self._config = config
        self._events = events
        self._attached = False
        self._subscribed = False
        self.connected = False
        self.mailbox: MailboxInfo | None = None

    def attach(self) -> None:
        if self._attached:
            return
        self._transport.on(READY, self._on_ready)
        self._transport.on(CLOSE, self._on_close)
        self._transport.on(ERROR, self._on_error)
        self._attached = True

    async def _on_ready(self) -> None:
        try:
            self.mailbox = await self._transport.select_mailbox(self._config.mailbox)
        except Exception as exc:
            logger.warning("mailbox_select_failed", mailbox=self._config.mailbox, error=str(exc))
            self._events.emit(ERROR, exc)
            return

        self.connected = True
        logger.info(
            "mailbox_selected",
            mailbox=self.mailbox.name,
            exists=self.mailbox.exists,
            unseen=self.mailbox.unseen,
        )
        self._events.emit(SERVER_CONNECTED)

        if not self._subscribed:
            self._transport.on(NEW_MESSAGE, self._on_change)
            self._transport.on(MAILBOX_UPDATED, self._on_change)
            self._subscribed = True

        if self._config.fetch_unread_on_start:
            self._coordinator.start()

    def _on_change(self, *args: object) -> None:
        logger.debug("mailbox_changed", details=args or None)
        self._coordinator.notify_changed()

    def _on_close(self) -> None:
        self.connected = False
        logger.info("mailbox_disconnected", mailbox=self._config.mailbox)
        self._events.emit(SERVER_DISCONNECTED)

    def _on_error(self, error: BaseException) -> None:
        self._events.emit(ERROR, error)
