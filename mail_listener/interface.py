"""Abstract mailbox transport consumed by the listener core."""

from __future__ import annotations

import abc
from collections.abc import AsyncIterator, Sequence

from .events import EventEmitter, Handler
from .models import FetchEvent, MailboxInfo


class MailboxTransport(abc.ABC):
    """Contract between the listener core and a mailbox protocol client.

    Implementations emit these events on :attr:`events`:

    * ``ready``: the session is authenticated.
    * ``close``: the session ended (emitted once per session).
    * ``error``: a transport-level failure, forwarded verbatim to consumers.
    * ``new-message``: the mailbox gained messages.
    * ``mailbox-updated``: existing messages changed (e.g. flags).
    """

    def __init__(self) -> None:
        self.events = EventEmitter()

    def on(self, event: str, handler: Handler) -> Handler:
        return self.events.on(event, handler)

    @property
    @abc.abstractmethod
    def connected(self) -> bool: ...

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open and authenticate the session, then emit ``ready``."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """End the session and emit ``close``."""

    @abc.abstractmethod
    async def select_mailbox(self, name: str) -> MailboxInfo:
        """Open *name* for reading and begin change monitoring."""

    @abc.abstractmethod
    async def search(self, criteria: Sequence[str]) -> list[int]:
        """Return identifiers of messages matching *criteria*."""

    @abc.abstractmethod
    async def set_flags(self, message_ids: Sequence[int], flags: Sequence[str]) -> None:
        """Add *flags* to every message in *message_ids*."""

    @abc.abstractmethod
    def fetch(
        self,
        message_id: int,
        *,
        include_body: bool = True,
        mark_seen: bool = False,
    ) -> AsyncIterator[FetchEvent]:
        """Stream body chunks, attributes, and end signals for one message.

        Attributes may arrive before, between, or after the body chunks,
        and the two end signals may arrive in either order.
        """
