"""Incremental MIME parser: raw RFC 822 bytes → :class:`ParsedMail`.

Bytes are pushed with :meth:`MimeParser.feed` as they become available and
the structured result is produced by :meth:`MimeParser.finish`.  The parser
walks the whole message to extract body text, HTML, headers, and
attachments.

When constructed with an :class:`AttachmentStore` the parser runs in
streaming mode: each attachment is written to the store in chunks while the
message is walked, its in-memory content is dropped, and an
``attachment-found`` event is raised for it.  Write failures raise an
``attachment-error`` event carrying a :class:`PersistenceError` and do not
stop the walk.
"""

from __future__ import annotations

import email.policy
import email.utils
import hashlib
import mimetypes
from collections.abc import Iterator
from datetime import datetime
from email.message import EmailMessage
from email.parser import BytesFeedParser
from pathlib import Path

import structlog

from .config import ParserConfig
from .errors import PersistenceError
from .events import ATTACHMENT_ERROR, ATTACHMENT_FOUND, EventEmitter, Handler
from .models import Attachment, ParsedMail
from .store import AttachmentStore, sanitize_filename

logger = structlog.get_logger()


class MimeParser:
    def __init__(
        self,
        config: ParserConfig | None = None,
        *,
        store: AttachmentStore | None = None,
    ) -> None:
        self._config = config or ParserConfig()
        self._store = store
        self._feed_parser = BytesFeedParser(policy=email.policy.default)
        self._finished = False
        self.events = EventEmitter()

    @property
    def streaming(self) -> bool:
        return self._store is not None

    def on(self, event: str, handler: Handler) -> Handler:
        return self.events.on(event, handler)

    def feed(self, data: bytes) -> None:
        if self._finished:
            raise RuntimeError("feed() called after finish()")
        self._feed_parser.feed(data)

    async def finish(self) -> ParsedMail:
        """Close the input and return the parsed mail."""
        if self._finished:
            raise RuntimeError("finish() called twice")
        self._finished = True
        msg = self._feed_parser.close()

        text, html = self._extract_bodies(msg)
        to_addresses = _address_list(msg.get("To"))
        from_list = _address_list(msg.get("From"))

        mail = ParsedMail(
            message_id=str(msg.get("Message-ID", "")).strip(),
            subject=str(msg.get("Subject", "")),
            from_address=from_list[0] if from_list else str(msg.get("From", "")),
            to_addresses=to_addresses,
            cc_addresses=_address_list(msg.get("Cc")),
            bcc_addresses=_address_list(msg.get("Bcc")),
            reply_to=_address_list(msg.get("Reply-To")),
            date=_parse_date(msg.get("Date")),
            in_reply_to=str(msg["In-Reply-To"]).strip() if msg["In-Reply-To"] else None,
            references=str(msg.get("References", "")).split(),
            text=text,
            html=html,
            headers={k: str(v) for k, v in msg.items()},
        )

        used_names: set[str] = set()
        for part in self._leaf_parts(msg):
            if not self._is_attachment(part):
                continue
            attachment = self._build_attachment(part, used_names)
            if self._store is not None:
                await self._stream(attachment)
            mail.attachments.append(attachment)

        logger.debug(
            "mail_parsed",
            mail_message_id=mail.message_id,
            attachments=len(mail.attachments),
        )
        return mail

    # ------------------------------------------------------------------
    # Body extraction
    # ------------------------------------------------------------------

    def _extract_bodies(self, msg: EmailMessage) -> tuple[str | None, str | None]:
        """Return the first plain-text and first HTML body found."""
        body_text: str | None = None
        body_html: str | None = None

        for part in self._leaf_parts(msg):
            if self._is_attachment(part):
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and body_text is None:
                body_text = self._decode_text(part)
            elif content_type == "text/html" and body_html is None:
                body_html = self._decode_text(part)

        return body_text, body_html

    def _decode_text(self, part: EmailMessage) -> str | None:
        try:
            content = part.get_content()
        except (LookupError, UnicodeError):
            # Unknown or wrong charset declared by the sender
            payload = part.get_payload(decode=True) or b""
            return payload.decode(self._config.default_charset, errors="replace")
        return content if isinstance(content, str) else None

    # ------------------------------------------------------------------
    # Attachment extraction
    # ------------------------------------------------------------------

    def _leaf_parts(self, part: EmailMessage) -> Iterator[EmailMessage]:
        """Yield non-multipart parts depth-first; attached messages are leaves."""
        if part.get_content_maintype() == "multipart" and part.is_multipart():
            for sub in part.iter_parts():
                yield from self._leaf_parts(sub)
        else:
            yield part

    def _is_attachment(self, part: EmailMessage) -> bool:
        if part.get_content_type() == "message/rfc822":
            return True
        disposition = part.get_content_disposition()
        if disposition == "attachment":
            return True
        if part.get_filename():
            return disposition != "inline" or self._config.include_inline
        return False

    def _build_attachment(self, part: EmailMessage, used_names: set[str]) -> Attachment:
        content_type = part.get_content_type()
        file_name = part.get_filename()

        if content_type == "message/rfc822":
            inner = part.get_content()
            payload = inner.as_bytes() if isinstance(inner, EmailMessage) else b""
        else:
            payload = part.get_payload(decode=True) or b""

        content_id = part.get("Content-ID")
        return Attachment(
            file_name=file_name,
            generated_file_name=_generate_file_name(file_name, content_type, used_names),
            content_type=content_type,
            content=payload,
            size=len(payload),
            checksum=hashlib.md5(payload, usedforsecurity=False).hexdigest(),
            content_id=str(content_id).strip() if content_id else None,
            content_disposition=part.get_content_disposition(),
        )

    async def _stream(self, attachment: Attachment) -> None:
        assert self._store is not None
        content = attachment.content or b""
        step = self._config.stream_chunk_size
        chunks = (content[i : i + step] for i in range(0, len(content), step))
        try:
            path = await self._store.write_chunks(attachment.generated_file_name, chunks)
        except Exception as exc:
            error = PersistenceError(
                attachment, self._store.resolve(attachment.generated_file_name), str(exc)
            )
            error.__cause__ = exc
            self.events.emit(ATTACHMENT_ERROR, error)
            return
        attachment.path = path
        attachment.content = None
        self.events.emit(ATTACHMENT_FOUND, attachment)


# ------------------------------------------------------------------
# Header helpers
# ------------------------------------------------------------------


def _address_list(header_value: object) -> list[str]:
    if not header_value:
        return []
    return [addr for _, addr in email.utils.getaddresses([str(header_value)]) if addr]


def _parse_date(header_value: object) -> datetime | None:
    if not header_value:
        return None
    try:
        return email.utils.parsedate_to_datetime(str(header_value))
    except (TypeError, ValueError):
        return None


def _generate_file_name(file_name: str | None, content_type: str, used_names: set[str]) -> str:
    """Return a sanitized file name that is unique within one message."""
    if file_name:
        base = sanitize_filename(file_name)
    else:
        base = "attachment" + (mimetypes.guess_extension(content_type) or ".bin")

    stem, suffix = Path(base).stem, Path(base).suffix
    candidate = base
    counter = 1
    while candidate.lower() in used_names:
        candidate = f"{stem}-{counter}{suffix}"
        counter += 1
    used_names.add(candidate.lower())
    return candidate
