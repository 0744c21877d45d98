"""Mail listener: watches an IMAP mailbox and emits parsed mail and attachments."""

from .attachments import AttachmentExtractor
from .assembler import MessageAssembler
from .config import (
    AttachmentConfig,
    ImapConfig,
    ListenerConfig,
    ParserConfig,
    RetryConfig,
    ServiceConfig,
)
from .coordinator import CoordinatorState, ProcessingCoordinator
from .errors import (
    AssemblyError,
    AuthenticationError,
    FetchError,
    ImapError,
    MailboxConnectionError,
    MailListenerError,
    ParseError,
    PersistenceError,
    SearchError,
)
from .events import EventEmitter
from .imap_client import AsyncImapClient
from .interface import MailboxTransport
from .listener import MailListener
from .models import Attachment, AttributesRecord, MailboxInfo, ParsedMail
from .parser import MimeParser
from .processor import MessageProcessor
from .service import ListenerService
from .store import AttachmentStore
from .watcher import MailboxWatcher

__all__ = [
    "AssemblyError",
    "AuthenticationError",
    "AsyncImapClient",
    "Attachment",
    "AttachmentConfig",
    "AttachmentExtractor",
    "AttachmentStore",
    "AttributesRecord",
    "CoordinatorState",
    "EventEmitter",
    "FetchError",
    "ImapConfig",
    "ImapError",
    "ListenerConfig",
    "ListenerService",
    "MailListener",
    "MailListenerError",
    "MailboxConnectionError",
    "MailboxInfo",
    "MailboxTransport",
    "MailboxWatcher",
    "MessageAssembler",
    "MessageProcessor",
    "MimeParser",
    "ParseError",
    "ParsedMail",
    "ParserConfig",
    "PersistenceError",
    "ProcessingCoordinator",
    "RetryConfig",
    "SearchError",
    "ServiceConfig",
]
