"""Async IMAP transport built on aioimaplib.

One authenticated connection carries both the commands issued by the
listener core (select, UID SEARCH, UID STORE, UID FETCH) and the change
monitoring that drives it:

* When the server advertises IDLE, a monitor task keeps an IDLE command
  open (renewed every ``idle_renewal_seconds``) and turns server pushes
  into transport events.
* Otherwise the monitor issues NOOP every ``noop_interval_seconds`` and
  inspects the untagged responses instead.

``EXISTS`` growth emits ``new-message`` and untagged ``FETCH`` emits
``mailbox-updated``.  Commands are serialized with a lock; a pending command
ends the current IDLE so it can run.
"""

from __future__ import annotations

import asyncio
import re
import ssl
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator, Sequence
from datetime import datetime
from typing import Any

import structlog
from aioimaplib import aioimaplib

from .config import ImapConfig
from .errors import AuthenticationError, ImapError, MailboxConnectionError
from .events import CLOSE, ERROR, MAILBOX_UPDATED, NEW_MESSAGE, READY
from .interface import MailboxTransport
from .models import (
    AttributesReceived,
    AttributesRecord,
    BodyChunk,
    BodyEnd,
    FetchEvent,
    MailboxInfo,
    MessageEnd,
)

logger = structlog.get_logger()

INTERNALDATE_FORMAT = "%d-%b-%Y %H:%M:%S %z"
IDLE_GRACE_SECONDS = 60.0

_FETCH_START = re.compile(r"^(\d+)\s+FETCH\s*\(", re.IGNORECASE)
_LITERAL_MARKER = re.compile(r"\{(\d+)\}\s*$")
_UID = re.compile(r"\bUID\s+(\d+)", re.IGNORECASE)
_FLAGS = re.compile(r"\bFLAGS\s+\(([^)]*)\)", re.IGNORECASE)
_INTERNALDATE = re.compile(r'\bINTERNALDATE\s+"([^"]+)"', re.IGNORECASE)
_SIZE = re.compile(r"\bRFC822\.SIZE\s+(\d+)", re.IGNORECASE)
_UNTAGGED = re.compile(r"^\*?\s*(\d+)\s+(EXISTS|RECENT|EXPUNGE|FETCH)\b", re.IGNORECASE)
_RESPONSE_CODE = re.compile(r"\[(UNSEEN|UIDVALIDITY|UIDNEXT)\s+(\d+)\]", re.IGNORECASE)

_CONNECTION_ERRORS = (aioimaplib.Abort, aioimaplib.CommandTimeout, asyncio.TimeoutError, OSError)


# ------------------------------------------------------------------
# Response decoding
# ------------------------------------------------------------------


def _text(line: Any) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def parse_attributes(text: str, seqno: int | None = None) -> AttributesRecord:
    """Build an :class:`AttributesRecord` from FETCH attribute text."""
    uid = _UID.search(text)
    flags = _FLAGS.search(text)
    internal_date = _INTERNALDATE.search(text)
    size = _SIZE.search(text)

    parsed_date: datetime | None = None
    if internal_date:
        try:
            parsed_date = datetime.strptime(internal_date.group(1).strip(), INTERNALDATE_FORMAT)
        except ValueError:
            logger.debug("internaldate_unparseable", value=internal_date.group(1))

    return AttributesRecord(
        uid=int(uid.group(1)) if uid else None,
        seqno=seqno,
        flags=tuple(flags.group(1).split()) if flags else (),
        internal_date=parsed_date,
        size=int(size.group(1)) if size else None,
        raw=text.strip(),
    )


class _FetchGroup:
    """Text and literal pieces of one ``N FETCH (...)`` response, in wire order."""

    def __init__(self, seqno: int, text: str) -> None:
        self.seqno = seqno
        self.before_literal: list[str] = [text]
        self.after_literal: list[str] = []
        self.literal: bytes | None = None

    def add_text(self, text: str) -> None:
        if self.literal is None:
            self.before_literal.append(text)
        else:
            self.after_literal.append(text)

    @property
    def attribute_text(self) -> str:
        return " ".join(self.before_literal + self.after_literal)


def _group_fetch_lines(lines: Sequence[Any]) -> list[_FetchGroup]:
    groups: list[_FetchGroup] = []
    current: _FetchGroup | None = None
    expect_literal = False

    for item in lines:
        if current is not None and (expect_literal or isinstance(item, bytearray)):
            if current.literal is None:
                current.literal = bytes(item)
            expect_literal = False
            continue

        text = _text(item)
        start = _FETCH_START.match(text)
        if start:
            current = _FetchGroup(int(start.group(1)), text)
            groups.append(current)
        elif current is not None:
            current.add_text(text)
        expect_literal = current is not None and bool(_LITERAL_MARKER.search(text))

    return groups


def decode_fetch_response(
    lines: Sequence[Any],
    uid: int,
    *,
    include_body: bool = True,
    chunk_size: int = 64 * 1024,
) -> Iterator[FetchEvent]:
    """Turn the response of a single-UID FETCH into fetch events.

    The attributes record is placed before or after the body depending on
    where the server put the attribute items relative to the body literal.
    Unsolicited FETCH responses for other messages are skipped.
    """
    match: _FetchGroup | None = None
    for group in _group_fetch_lines(lines):
        record = parse_attributes(group.attribute_text, group.seqno)
        if record.uid == uid:
            match = group
            break
    if match is None:
        raise ImapError(f"no FETCH data returned for UID {uid}")

    record = parse_attributes(match.attribute_text, match.seqno)
    attributes_last = bool(_UID.search(" ".join(match.after_literal)))

    if not attributes_last:
        yield AttributesReceived(record)

    if include_body:
        body = match.literal or b""
        for start in range(0, len(body), chunk_size):
            yield BodyChunk(body[start : start + chunk_size])
        yield BodyEnd()

    if attributes_last:
        yield AttributesReceived(record)

    yield MessageEnd()


def parse_mailbox_info(name: str, lines: Sequence[Any], *, read_only: bool = False) -> MailboxInfo:
    """Extract counts and response codes from a SELECT response."""
    exists = recent = 0
    codes: dict[str, int] = {}
    flags: tuple[str, ...] = ()

    for item in lines:
        text = _text(item)
        untagged = _UNTAGGED.match(text)
        if untagged:
            kind = untagged.group(2).upper()
            if kind == "EXISTS":
                exists = int(untagged.group(1))
            elif kind == "RECENT":
                recent = int(untagged.group(1))
            continue
        code = _RESPONSE_CODE.search(text)
        if code:
            codes[code.group(1).upper()] = int(code.group(2))
            continue
        if text.upper().startswith("FLAGS"):
            found = _FLAGS.search(text)
            if found:
                flags = tuple(found.group(1).split())
        if "[READ-ONLY]" in text.upper():
            read_only = True

    return MailboxInfo(
        name=name,
        exists=exists,
        recent=recent,
        unseen=codes.get("UNSEEN"),
        uidvalidity=codes.get("UIDVALIDITY"),
        uidnext=codes.get("UIDNEXT"),
        flags=flags,
        read_only=read_only,
    )


def parse_search_response(lines: Sequence[Any]) -> list[int]:
    ids: list[int] = []
    for item in lines:
        text = _text(item).strip()
        if text.upper().startswith("SEARCH"):
            text = text[len("SEARCH") :]
        tokens = text.split()
        if tokens and all(token.isdigit() for token in tokens):
            ids.extend(int(token) for token in tokens)
    return ids


def _fetch_items(include_body: bool, mark_seen: bool) -> str:
    items = ["UID", "FLAGS", "INTERNALDATE", "RFC822.SIZE"]
    if include_body:
        items.append("BODY[]" if mark_seen else "BODY.PEEK[]")
    return "(" + " ".join(items) + ")"


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------


class AsyncImapClient(MailboxTransport):
    """aioimaplib-backed :class:`MailboxTransport`."""

    def __init__(self, config: ImapConfig) -> None:
        super().__init__()
        self._config = config
        self._client: aioimaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()
        self._quiet = asyncio.Event()
        self._quiet.set()
        self._pending = 0
        self._monitor_task: asyncio.Task[None] | None = None
        self._supports_idle = False
        self._exists: int | None = None
        self._mailbox: str | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def supports_idle(self) -> bool:
        return self._supports_idle

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=self._config.tls_ca_file)
        if not self._config.tls_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def connect(self) -> None:
        """Open the connection, authenticate, and emit ``ready``."""
        if self._client is not None:
            return

        cfg = self._config
        logger.info("imap_connecting", host=cfg.host, port=cfg.port, ssl=cfg.use_ssl)
        try:
            if cfg.use_ssl:
                client = aioimaplib.IMAP4_SSL(
                    host=cfg.host,
                    port=cfg.port,
                    timeout=cfg.connect_timeout_seconds,
                    ssl_context=self._ssl_context(),
                )
            else:
                client = aioimaplib.IMAP4(
                    host=cfg.host,
                    port=cfg.port,
                    timeout=cfg.connect_timeout_seconds,
                )
            await asyncio.wait_for(client.wait_hello_from_server(), cfg.connect_timeout_seconds)
            await asyncio.wait_for(self._authenticate(client), cfg.auth_timeout_seconds)
        except MailboxConnectionError as err:
            self.events.emit(ERROR, err)
            raise
        except _CONNECTION_ERRORS as exc:
            err = MailboxConnectionError(f"could not connect to {cfg.host}:{cfg.port}: {exc!r}")
            err.__cause__ = exc
            self.events.emit(ERROR, err)
            raise err from exc

        self._client = client
        self._supports_idle = client.has_capability("IDLE")
        logger.info("imap_connected", host=cfg.host, idle=self._supports_idle)
        self.events.emit(READY)

    async def _authenticate(self, client: aioimaplib.IMAP4) -> None:
        cfg = self._config
        if cfg.xoauth2_token is not None:
            response = await client.xoauth2(cfg.username, cfg.xoauth2_token.get_secret_value())
        else:
            assert cfg.password is not None
            response = await client.login(cfg.username, cfg.password.get_secret_value())
        if response.result != "OK":
            detail = _text(response.lines[-1]) if response.lines else response.result
            raise AuthenticationError(f"authentication failed for {cfg.username}: {detail}")

    async def disconnect(self) -> None:
        """Stop monitoring, log out, and emit ``close``."""
        client = self._client
        if client is None:
            return
        await self._stop_monitor()
        try:
            await asyncio.wait_for(client.logout(), self._config.connect_timeout_seconds)
        except (*_CONNECTION_ERRORS, ImapError) as exc:
            logger.warning("imap_logout_failed", error=str(exc))
        self._mark_closed()

    def _mark_closed(self) -> None:
        if self._client is None:
            return
        self._client = None
        self._exists = None
        logger.info("imap_closed", host=self._config.host)
        self.events.emit(CLOSE)

    def _connection_lost(self, exc: BaseException) -> None:
        err = MailboxConnectionError(f"connection to {self._config.host} lost: {exc!r}")
        err.__cause__ = exc
        logger.warning("imap_connection_lost", error=str(exc))
        self.events.emit(ERROR, err)
        self._mark_closed()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _require_client(self) -> aioimaplib.IMAP4:
        if self._client is None:
            raise MailboxConnectionError("not connected")
        return self._client

    async def _command(self, name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one command, ending IDLE first and holding the connection lock."""
        client = self._require_client()
        self._pending += 1
        self._quiet.clear()
        if client.has_pending_idle():
            client.idle_done()
        try:
            async with self._lock:
                response = await call()
        except _CONNECTION_ERRORS as exc:
            raise ImapError(f"{name} failed: {exc!r}") from exc
        finally:
            self._pending -= 1
            if not self._pending:
                self._quiet.set()

        if response.result != "OK":
            detail = _text(response.lines[-1]) if response.lines else ""
            raise ImapError(f"{name} failed: {response.result} {detail}".strip())
        return response

    async def select_mailbox(self, name: str) -> MailboxInfo:
        client = self._require_client()
        response = await self._command("SELECT", lambda: client.select(name))
        info = parse_mailbox_info(name, response.lines)
        self._mailbox = name
        self._exists = info.exists
        logger.info("imap_mailbox_selected", mailbox=name, exists=info.exists)
        self._start_monitor()
        return info

    async def search(self, criteria: Sequence[str]) -> list[int]:
        client = self._require_client()
        terms = list(criteria) or ["ALL"]
        response = await self._command("UID SEARCH", lambda: client.uid_search(*terms))
        ids = parse_search_response(response.lines)
        logger.debug("imap_search", criteria=terms, matched=len(ids))
        return ids

    async def set_flags(self, message_ids: Sequence[int], flags: Sequence[str]) -> None:
        if not message_ids:
            return
        client = self._require_client()
        id_set = ",".join(str(message_id) for message_id in message_ids)
        flag_list = "(" + " ".join(flags) + ")"
        await self._command("UID STORE", lambda: client.uid("store", id_set, "+FLAGS", flag_list))
        logger.debug("imap_flags_added", count=len(message_ids), flags=list(flags))

    async def fetch(
        self,
        message_id: int,
        *,
        include_body: bool = True,
        mark_seen: bool = False,
    ) -> AsyncIterator[FetchEvent]:
        client = self._require_client()
        items = _fetch_items(include_body, mark_seen)
        response = await self._command(
            "UID FETCH", lambda: client.uid("fetch", str(message_id), items)
        )
        for event in decode_fetch_response(
            response.lines,
            message_id,
            include_body=include_body,
            chunk_size=self._config.fetch_chunk_size,
        ):
            yield event

    # ------------------------------------------------------------------
    # Change monitoring
    # ------------------------------------------------------------------

    def _start_monitor(self) -> None:
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._monitor(), name="imap-monitor")

    async def _stop_monitor(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is None or task.done():
            return
        client = self._client
        if client is not None and client.has_pending_idle():
            client.idle_done()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _monitor(self) -> None:
        logger.info("imap_monitor_started", mailbox=self._mailbox, idle=self._supports_idle)
        try:
            while self._client is not None:
                await self._quiet.wait()
                client = self._client
                if client is None:
                    break
                async with self._lock:
                    if self._pending:
                        continue
                    if self._supports_idle:
                        await self._idle_once(client)
                    else:
                        await self._poll_once(client)
                if not self._supports_idle:
                    await asyncio.sleep(self._config.noop_interval_seconds)
        except asyncio.CancelledError:
            raise
        except (*_CONNECTION_ERRORS, ImapError) as exc:
            self._connection_lost(exc)

    async def _idle_once(self, client: aioimaplib.IMAP4) -> None:
        renewal = self._config.idle_renewal_seconds
        idle = await client.idle_start(timeout=renewal)
        try:
            if self._pending:
                client.idle_done()
            while client.has_pending_idle():
                push = await client.wait_server_push(timeout=renewal + IDLE_GRACE_SECONDS)
                if push == aioimaplib.STOP_WAIT_SERVER_PUSH:
                    break
                self._dispatch_untagged(push)
        finally:
            if client.has_pending_idle():
                client.idle_done()
        response = await asyncio.wait_for(idle, IDLE_GRACE_SECONDS)
        if response.result != "OK":
            raise ImapError(f"IDLE failed: {response.result}")

    async def _poll_once(self, client: aioimaplib.IMAP4) -> None:
        response = await client.noop()
        if response.result != "OK":
            raise ImapError(f"NOOP failed: {response.result}")
        self._dispatch_untagged(response.lines)

    def _dispatch_untagged(self, push: Any) -> None:
        lines = push if isinstance(push, list) else [push]
        for item in lines:
            match = _UNTAGGED.match(_text(item))
            if not match:
                continue
            number, kind = int(match.group(1)), match.group(2).upper()
            if kind == "EXISTS":
                previous = self._exists
                self._exists = number
                if previous is None or number > previous:
                    added = number - previous if previous is not None else number
                    logger.debug("imap_push_exists", exists=number, added=added)
                    self.events.emit(NEW_MESSAGE, added)
            elif kind == "EXPUNGE":
                if self._exists:
                    self._exists -= 1
            elif kind == "FETCH":
                logger.debug("imap_push_fetch", seqno=number)
                self.events.emit(MAILBOX_UPDATED, number)
