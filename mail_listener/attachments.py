"""Persistence and notification of parsed attachments."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from .errors import PersistenceError
from .events import ATTACHMENT, ERROR, EventEmitter
from .models import Attachment, ParsedMail
from .store import AttachmentStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class ExtractionSummary:
    saved: int = 0
    failed: int = 0


class AttachmentExtractor:
    """Writes each attachment of a parsed mail and announces it.

    Attachments are written concurrently.  A failed write is reported on
    the ``error`` channel as a :class:`PersistenceError` and does not affect
    the remaining attachments.  In streaming mode the parser has already
    written the files, so :meth:`extract` does nothing and :meth:`relay` /
    :meth:`relay_error` forward the parser's notifications instead.
    """

    def __init__(
        self,
        store: AttachmentStore,
        events: EventEmitter,
        *,
        streaming: bool = False,
    ) -> None:
        self._store = store
        self._events = events
        self._streaming = streaming

    @property
    def streaming(self) -> bool:
        return self._streaming

    async def extract(self, mail: ParsedMail, message_id: int) -> ExtractionSummary:
        if self._streaming or not mail.attachments:
            return ExtractionSummary()

        results = await asyncio.gather(
            *(self._persist(attachment, message_id) for attachment in mail.attachments)
        )
        summary = ExtractionSummary(saved=sum(results), failed=len(results) - sum(results))
        logger.info(
            "attachments_extracted",
            message_id=message_id,
            saved=summary.saved,
            failed=summary.failed,
        )
        return summary

    async def _persist(self, attachment: Attachment, message_id: int) -> bool:
        try:
            path = await self._store.write(attachment.generated_file_name, attachment.content or b"")
        except Exception as exc:
            error = PersistenceError(
                attachment, self._store.resolve(attachment.generated_file_name), str(exc)
            )
            error.__cause__ = exc
            logger.warning(
                "attachment_persist_failed",
                message_id=message_id,
                file_name=attachment.generated_file_name,
                error=str(exc),
            )
            self._events.emit(ERROR, error)
            return False

        attachment.path = path
        self._events.emit(ATTACHMENT, attachment)
        return True

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------

    def relay(self, attachment: Attachment) -> None:
        self._events.emit(ATTACHMENT, attachment)

    def relay_error(self, error: PersistenceError) -> None:
        logger.warning(
            "attachment_stream_failed",
            file_name=error.attachment.generated_file_name,
            error=error.reason,
        )
        self._events.emit(ERROR, error)
