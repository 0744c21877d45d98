"""Error taxonomy for the mail listener.

Every failure the pipeline reports is delivered on the public ``error``
event as one of these types, with the underlying exception chained as
``__cause__``.  None of them escape a processing pass.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Attachment


class MailListenerError(Exception):
    """Base class for all mail listener errors."""


class MailboxConnectionError(MailListenerError):
    """Connecting, authenticating, selecting, or keeping the connection failed."""


class AuthenticationError(MailboxConnectionError):
    """The server rejected the configured credentials."""


class ImapError(MailListenerError):
    """An IMAP command completed with a non-OK status or could not be sent."""


class SearchError(MailListenerError):
    """The search step of a processing pass failed."""


class FetchError(MailListenerError):
    """Retrieving one message failed."""

    def __init__(self, message_id: int, reason: str) -> None:
        super().__init__(f"fetch of message {message_id} failed: {reason}")
        self.message_id = message_id
        self.reason = reason


class AssemblyError(FetchError):
    """The fetch stream violated the chunk/attributes/end protocol."""


class ParseError(MailListenerError):
    """The parser rejected a message's raw bytes."""

    def __init__(self, message_id: int, reason: str) -> None:
        super().__init__(f"parse of message {message_id} failed: {reason}")
        self.message_id = message_id
        self.reason = reason


class PersistenceError(MailListenerError):
    """Writing one attachment to its target path failed."""

    def __init__(self, attachment: Attachment, path: Path | None, reason: str) -> None:
        super().__init__(
            f"could not persist attachment {attachment.generated_file_name!r} to {path}: {reason}"
        )
        self.attachment = attachment
        self.path = path
        self.reason = reason
