"""MailListener: the public entry point for one mailbox subscription."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from .attachments import AttachmentExtractor
from .config import ImapConfig, ListenerConfig
from .coordinator import ProcessingCoordinator
from .events import EventEmitter, Handler
from .imap_client import AsyncImapClient
from .interface import MailboxTransport
from .parser import MimeParser
from .processor import MessageProcessor, ParserFactory
from .store import AttachmentStore
from .watcher import MailboxWatcher

logger = structlog.get_logger()


class MailListener:
    """Watches one mailbox and emits parsed mail.

    Wires the transport, watcher, coordinator, processor, and attachment
    extractor together.  Consumers register handlers with :meth:`on`::

        listener = MailListener.from_config(imap_config, listener_config)
        listener.on("mail", handle_mail)
        listener.on("error", handle_error)
        await listener.start()

    Events: ``server:connected``, ``server:disconnected``, ``error(err)``,
    ``mail(parsed_mail, message_id, attributes)``, ``attachment(attachment)``.
    """

    def __init__(
        self,
        config: ListenerConfig,
        transport: MailboxTransport,
        *,
        store: AttachmentStore | None = None,
        parser_factory: ParserFactory | None = None,
    ) -> None:
        self.config = config
        self.events = EventEmitter()
        self.transport = transport

        self._store = store or AttachmentStore(config.attachments.directory)
        self._extractor = AttachmentExtractor(
            self._store, self.events, streaming=config.streaming_attachments
        )
        self._processor = MessageProcessor(
            transport,
            config,
            self.events,
            self._extractor,
            parser_factory or self._default_parser,
        )
        self.coordinator = ProcessingCoordinator(transport, self._processor, config, self.events)
        self.watcher = MailboxWatcher(transport, self.coordinator, config, self.events)
        self.watcher.attach()

    @classmethod
    def from_config(cls, imap: ImapConfig, config: ListenerConfig) -> MailListener:
        return cls(config, AsyncImapClient(imap))

    def _default_parser(self) -> MimeParser:
        store = self._store if self.config.streaming_attachments else None
        return MimeParser(self.config.parser, store=store)

    def on(self, event: str, handler: Handler) -> Handler:
        return self.events.on(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        self.events.off(event, handler)

    @property
    def connected(self) -> bool:
        return self.watcher.connected

    async def start(self) -> None:
        """Connect the transport; the mailbox is selected once it is ready."""
        logger.info("listener_starting", mailbox=self.config.mailbox)
        await self.transport.connect()

    async def stop(self, *, drain: bool = True, timeout: float | None = None) -> None:
        """Stop processing and disconnect.

        With *drain* the in-flight pass is allowed to finish (bounded by
        *timeout*); without it, the pass is cancelled and no further events
        are emitted.
        """
        if drain:
            try:
                await asyncio.wait_for(self.coordinator.drain(), timeout)
            except asyncio.TimeoutError:
                logger.warning("listener_drain_timeout", timeout_seconds=timeout)
                self.coordinator.abandon()
        else:
            self.coordinator.abandon()
        await self.coordinator.wait_stopped()

        await self.transport.disconnect()
        await self.events.drain()
        logger.info("listener_stopped", mailbox=self.config.mailbox)

    def health_details(self) -> dict[str, Any]:
        mailbox = self.watcher.mailbox
        last_pass = self.coordinator.history[-1] if self.coordinator.history else None
        return {
            "connected": self.watcher.connected,
            "mailbox": self.config.mailbox,
            "exists": mailbox.exists if mailbox else None,
            "coordinator_state": self.coordinator.state.value,
            "passes_completed": self.coordinator.passes_completed,
            "messages_processed": self._processor.processed,
            "messages_failed": self._processor.failed,
            "last_pass_matched": len(last_pass.message_ids) if last_pass else None,
        }
