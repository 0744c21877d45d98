"""Shared test fixtures for the mail listener test suite."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import AsyncIterator, Sequence
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import pytest

from mail_listener.config import (
    AttachmentConfig,
    ImapConfig,
    ListenerConfig,
    RetryConfig,
    ServiceConfig,
)
from mail_listener.events import CLOSE, READY, EventEmitter
from mail_listener.interface import MailboxTransport
from mail_listener.models import (
    AttributesReceived,
    AttributesRecord,
    BodyChunk,
    BodyEnd,
    FetchEvent,
    MailboxInfo,
    MessageEnd,
)


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        noop_interval_seconds=3600.0,
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.1,
        multiplier=2.0,
    )


@pytest.fixture
def listener_config() -> ListenerConfig:
    return ListenerConfig(mailbox="INBOX", search_filter=["UNSEEN"])


@pytest.fixture
def attachment_listener_config(tmp_path) -> ListenerConfig:
    return ListenerConfig(
        mailbox="INBOX",
        attachments=AttachmentConfig(enabled=True, directory=tmp_path),
    )


@pytest.fixture
def service_config(
    imap_config: ImapConfig,
    listener_config: ListenerConfig,
    retry_config: RetryConfig,
) -> ServiceConfig:
    return ServiceConfig(
        name="mail-listener-test",
        health_port=18080,
        health_enabled=False,
        log_json=True,
        imap=imap_config,
        listener=listener_config,
        retry=retry_config,
    )


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "sender@example.com",
    to_addr: str = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str = "<test-001@example.com>",
    cc: str | None = None,
    bcc: str | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"
    if cc:
        msg["Cc"] = cc
    if bcc:
        msg["Bcc"] = bcc
    return msg.as_bytes()


def _build_html_email(*, body_html: str = "<p>Hello</p>") -> bytes:
    msg = MIMEText(body_html, "html")
    msg["Subject"] = "HTML Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<html-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str | None, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments.

    An attachment with a ``None`` file name is added without a filename
    parameter.
    """
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "Sender Name <sender@example.com>"
    msg["To"] = "recipient@example.com, other@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        if filename is None:
            part.add_header("Content-Disposition", "attachment")
        else:
            part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def html_eml_bytes() -> bytes:
    return _build_html_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )


# ------------------------------------------------------------------
# Fetch scripts and a scripted transport
# ------------------------------------------------------------------


def _fetch_events(
    raw: bytes,
    *,
    uid: int = 1,
    attributes_first: bool = True,
    chunk_size: int = 16,
    flags: tuple[str, ...] = (),
) -> list[FetchEvent]:
    """Fetch events for one message, with the body split into small chunks."""
    record = AttributesRecord(uid=uid, seqno=uid, flags=flags, size=len(raw))
    chunks: list[FetchEvent] = [
        BodyChunk(raw[i : i + chunk_size]) for i in range(0, len(raw), chunk_size)
    ]
    if attributes_first:
        return [AttributesReceived(record), *chunks, BodyEnd(), MessageEnd()]
    return [*chunks, BodyEnd(), AttributesReceived(record), MessageEnd()]


class FakeTransport(MailboxTransport):
    """In-memory transport driven by scripted search results and fetch streams.

    ``search_results`` is consumed one entry per search; an entry may be a
    list of identifiers or an exception to raise.  ``messages`` maps an
    identifier to its fetch events, or to an exception raised on fetch.
    Setting ``search_gate`` makes every search wait for that event.
    """

    def __init__(
        self,
        *,
        search_results: Sequence[Any] = (),
        messages: dict[int, Any] | None = None,
    ) -> None:
        super().__init__()
        self.search_results = list(search_results)
        self.messages: dict[int, Any] = dict(messages or {})
        self.search_gate: asyncio.Event | None = None
        self.select_error: BaseException | None = None
        self.flag_error: BaseException | None = None
        self.search_calls: list[list[str]] = []
        self.fetch_calls: list[tuple[int, bool]] = []
        self.flag_calls: list[tuple[list[int], list[str]]] = []
        self.selected: list[str] = []
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        self.events.emit(READY)

    async def disconnect(self) -> None:
        if self._connected:
            self._connected = False
            self.events.emit(CLOSE)

    async def select_mailbox(self, name: str) -> MailboxInfo:
        if self.select_error is not None:
            raise self.select_error
        self.selected.append(name)
        return MailboxInfo(name=name, exists=len(self.messages))

    async def search(self, criteria: Sequence[str]) -> list[int]:
        self.search_calls.append(list(criteria))
        if self.search_gate is not None:
            await self.search_gate.wait()
        result = self.search_results.pop(0) if self.search_results else []
        if isinstance(result, BaseException):
            raise result
        return list(result)

    async def set_flags(self, message_ids: Sequence[int], flags: Sequence[str]) -> None:
        self.flag_calls.append((list(message_ids), list(flags)))
        if self.flag_error is not None:
            raise self.flag_error

    async def fetch(
        self,
        message_id: int,
        *,
        include_body: bool = True,
        mark_seen: bool = False,
    ) -> AsyncIterator[FetchEvent]:
        self.fetch_calls.append((message_id, mark_seen))
        script = self.messages[message_id]
        if isinstance(script, BaseException):
            raise script
        for event in script:
            await asyncio.sleep(0)
            yield event


class EventRecorder:
    """Records every emission of the given events, in order."""

    def __init__(self, emitter: EventEmitter, *names: str) -> None:
        self.events: list[tuple[str, tuple[Any, ...]]] = []
        for name in names:
            emitter.on(name, functools.partial(self._record, name))

    def _record(self, name: str, *args: Any) -> None:
        self.events.append((name, args))

    def of(self, name: str) -> list[tuple[Any, ...]]:
        return [args for event, args in self.events if event == name]

    @property
    def names(self) -> list[str]:
        return [event for event, _ in self.events]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
