"""Reassembly of one message from an interleaved fetch stream.

A fetch delivers body chunks, an attributes record, a body-stream-end
signal, and a message-end signal in no guaranteed order.  The assembler
accumulates them into a :class:`MessageContext` and releases the finalized
buffer exactly once, after *both* end signals have been observed.  The
barrier is an explicit join of two futures rather than a pair of flags
checked by whichever callback happens to run last.
"""

from __future__ import annotations

import asyncio

import structlog

from .errors import AssemblyError
from .models import AttributesRecord, MessageContext

logger = structlog.get_logger()


class MessageAssembler:
    def __init__(self, message_id: int) -> None:
        loop = asyncio.get_running_loop()
        self.context = MessageContext(message_id=message_id)
        self._body_done: asyncio.Future[None] = loop.create_future()
        self._message_done: asyncio.Future[None] = loop.create_future()
        self._released = False

    @property
    def message_id(self) -> int:
        return self.context.message_id

    @property
    def complete(self) -> bool:
        return self.context.body_stream_ended and self.context.message_ended

    @property
    def released(self) -> bool:
        return self._released

    def append_body_chunk(self, chunk: bytes) -> None:
        if self.context.body_stream_ended:
            raise AssemblyError(self.message_id, "body chunk received after the body stream ended")
        self.context.buffer.extend(chunk)

    def body_stream_ended(self) -> None:
        if self.context.body_stream_ended:
            logger.warning("duplicate_body_end", message_id=self.message_id)
            return
        self.context.body_stream_ended = True
        _resolve(self._body_done)

    def attributes_received(self, record: AttributesRecord) -> None:
        if self._released:
            # Already handed to the parser with whatever was known at the time.
            logger.warning("late_attributes_ignored", message_id=self.message_id)
            return
        self.context.attributes = record

    def message_ended(self) -> None:
        if self.context.message_ended:
            logger.warning("duplicate_message_end", message_id=self.message_id)
            return
        self.context.message_ended = True
        _resolve(self._message_done)

    def abort(self, error: BaseException) -> bool:
        """Fail a pending :meth:`wait` with *error*.

        Returns ``False`` if the buffer was already complete, in which case
        *error* is not delivered through :meth:`wait`.
        """
        if self.complete:
            return False
        for future in (self._body_done, self._message_done):
            if not future.done():
                future.set_exception(error)
        return True

    async def wait(self) -> tuple[bytes, AttributesRecord | None]:
        """Block until both end signals arrived and return (buffer, attributes)."""
        results = await asyncio.gather(self._body_done, self._message_done, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        if self._released:
            raise AssemblyError(self.message_id, "buffer already released")
        self._released = True
        return bytes(self.context.buffer), self.context.attributes


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)
