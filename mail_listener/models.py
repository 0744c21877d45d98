"""Data models for the mail listener pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class ListenerStatus(str, Enum):
    """Runtime status of a listener service."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(BaseModel):
    """Response model for the /health probe endpoint."""

    name: str = Field(description="Name of the listener service")
    status: ListenerStatus = Field(description="Current service status")
    uptime_seconds: float = Field(description="Seconds since the service started")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Listener health details (connection, coordinator state, counters)",
    )


# ------------------------------------------------------------------
# Mailbox metadata
# ------------------------------------------------------------------


@dataclass(frozen=True)
class AttributesRecord:
    """Per-message metadata delivered alongside the body by a fetch."""

    uid: int | None = None
    seqno: int | None = None
    flags: tuple[str, ...] = ()
    internal_date: datetime | None = None
    size: int | None = None
    raw: str = ""

    @property
    def seen(self) -> bool:
        return "\\Seen" in self.flags


@dataclass(frozen=True)
class MailboxInfo:
    """State reported by the server when a mailbox is selected."""

    name: str
    exists: int = 0
    recent: int = 0
    unseen: int | None = None
    uidvalidity: int | None = None
    uidnext: int | None = None
    flags: tuple[str, ...] = ()
    read_only: bool = False


# ------------------------------------------------------------------
# Fetch stream events
# ------------------------------------------------------------------


@dataclass(frozen=True)
class BodyChunk:
    data: bytes


@dataclass(frozen=True)
class BodyEnd:
    pass


@dataclass(frozen=True)
class AttributesReceived:
    record: AttributesRecord


@dataclass(frozen=True)
class MessageEnd:
    pass


FetchEvent = BodyChunk | BodyEnd | AttributesReceived | MessageEnd


# ------------------------------------------------------------------
# Assembly and parse results
# ------------------------------------------------------------------


@dataclass
class MessageContext:
    """Mutable state of one in-flight message, owned by its processor."""

    message_id: int
    buffer: bytearray = field(default_factory=bytearray)
    attributes: AttributesRecord | None = None
    body_stream_ended: bool = False
    message_ended: bool = False


@dataclass
class Attachment:
    """A single attachment found in a parsed mail.

    ``content`` is ``None`` once the attachment has been streamed to disk;
    ``path`` is set once it has been persisted.
    """

    file_name: str | None
    generated_file_name: str
    content_type: str
    content: bytes | None
    size: int
    checksum: str
    content_id: str | None = None
    content_disposition: str | None = None
    path: Path | None = None


@dataclass
class ParsedMail:
    """Structured representation of one parsed message."""

    message_id: str
    subject: str
    from_address: str
    to_addresses: list[str]
    cc_addresses: list[str]
    bcc_addresses: list[str]
    reply_to: list[str]
    date: datetime | None
    in_reply_to: str | None
    references: list[str]
    text: str | None
    html: str | None
    headers: dict[str, str]
    attachments: list[Attachment] = field(default_factory=list)
    eml: str = ""


@dataclass(frozen=True)
class PassReport:
    """Outcome of one processing pass."""

    number: int
    message_ids: tuple[int, ...]
    succeeded: int
    failed: int
    started_at: float
    finished_at: float
    search_failed: bool = False

    @property
    def duration_seconds(self) -> float:
        return self.finished_at - self.started_at
