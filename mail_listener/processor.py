"""Drives one message from fetch to the public ``mail`` event.

fetch → :class:`MessageAssembler` → parser → :class:`AttachmentExtractor`
→ ``mail(parsed_mail, message_id, attributes)``

Failures are reported per message on the ``error`` channel and never
propagate to the pass that scheduled the message.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from .assembler import MessageAssembler
from .attachments import AttachmentExtractor
from .config import ListenerConfig
from .errors import FetchError, ParseError
from .events import ATTACHMENT_ERROR, ATTACHMENT_FOUND, ERROR, MAIL, EventEmitter
from .interface import MailboxTransport
from .models import (
    AttributesReceived,
    AttributesRecord,
    BodyChunk,
    BodyEnd,
    FetchEvent,
    MessageEnd,
    ParsedMail,
)
from .parser import MimeParser

logger = structlog.get_logger()

ParserFactory = Callable[[], MimeParser]


class MessageProcessor:
    def __init__(
        self,
        transport: MailboxTransport,
        config: ListenerConfig,
        events: EventEmitter,
        extractor: AttachmentExtractor,
        parser_factory: ParserFactory,
    ) -> None:
        self._transport = transport
        self._config = config
        self._events = events
        self._extractor = extractor
        self._parser_factory = parser_factory
        self.processed = 0
        self.failed = 0

    async def process(self, message_id: int) -> bool:
        """Process one message; return whether its ``mail`` event was emitted."""
        try:
            raw, attributes = await self._fetch(message_id)
            mail = await self._parse(message_id, raw)
        except (FetchError, ParseError) as err:
            self.failed += 1
            logger.warning(
                "message_failed",
                message_id=message_id,
                error_type=type(err).__name__,
                error=str(err),
            )
            self._events.emit(ERROR, err)
            return False

        if self._config.attachments.enabled:
            await self._extractor.extract(mail, message_id)

        mail.eml = raw.decode("utf-8", errors="replace")
        self.processed += 1
        logger.info(
            "mail_processed",
            message_id=message_id,
            subject=mail.subject,
            attachments=len(mail.attachments),
            has_attributes=attributes is not None,
        )
        self._events.emit(MAIL, mail, message_id, attributes)
        return True

    # ------------------------------------------------------------------
    # Fetch + assembly
    # ------------------------------------------------------------------

    async def _fetch(self, message_id: int) -> tuple[bytes, AttributesRecord | None]:
        assembler = MessageAssembler(message_id)
        pump = asyncio.create_task(self._pump(assembler), name=f"fetch-{message_id}")
        try:
            result = await assembler.wait()
        except BaseException:
            if not pump.done():
                pump.cancel()
            raise

        late_error = await pump
        if late_error is not None:
            # The message was already complete; report the violation anyway.
            self._events.emit(ERROR, late_error)
        return result

    async def _pump(self, assembler: MessageAssembler) -> FetchError | None:
        """Feed the fetch stream into *assembler*.

        Failures are routed into the assembler so ``wait()`` raises them.
        A failure that happens after the buffer was already complete is
        returned instead.
        """
        try:
            await self._consume(assembler)
        except FetchError as err:
            if assembler.abort(err):
                return None
            return err
        return None

    async def _consume(self, assembler: MessageAssembler) -> None:
        message_id = assembler.message_id
        stream = self._transport.fetch(
            message_id,
            include_body=True,
            mark_seen=self._config.mark_seen,
        )
        try:
            async for event in stream:
                _apply(assembler, event)
        except FetchError:
            raise
        except Exception as exc:
            raise FetchError(message_id, str(exc)) from exc

        if not assembler.complete:
            raise FetchError(message_id, "fetch stream ended before the message was complete")

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    async def _parse(self, message_id: int, raw: bytes) -> ParsedMail:
        parser = self._parser_factory()
        if self._extractor.streaming:
            parser.on(ATTACHMENT_FOUND, self._extractor.relay)
            parser.on(ATTACHMENT_ERROR, self._extractor.relay_error)
        try:
            parser.feed(raw)
            return await parser.finish()
        except Exception as exc:
            raise ParseError(message_id, str(exc)) from exc


def _apply(assembler: MessageAssembler, event: FetchEvent) -> None:
    if isinstance(event, BodyChunk):
        assembler.append_body_chunk(event.data)
    elif isinstance(event, BodyEnd):
        assembler.body_stream_ended()
    elif isinstance(event, AttributesReceived):
        assembler.attributes_received(event.record)
    elif isinstance(event, MessageEnd):
        assembler.message_ended()
    else:
        raise TypeError(f"unexpected fetch event: {event!r}")
