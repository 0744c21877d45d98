"""Single-flight scheduling of processing passes with coalescing.

Change notifications arrive at arbitrary times and rates.  The coordinator
guarantees that at most one pass runs at a time, that no notification is
lost, and that any number of notifications arriving during a pass collapse
into exactly one follow-up pass:

=======================  ============================  ==========================
state                    notify_changed()              pass completes
=======================  ============================  ==========================
idle                     → running, start a pass       n/a
running                  → running_with_pending        → idle
running_with_pending     stays                         → running, start a pass
=======================  ============================  ==========================

Every transition is a single table lookup executed synchronously on the
event loop thread, so no notification can slip in between reading and
writing the state.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from enum import Enum

import structlog

from .config import ListenerConfig
from .errors import ImapError, SearchError
from .events import ERROR, EventEmitter
from .interface import MailboxTransport
from .models import PassReport
from .processor import MessageProcessor

logger = structlog.get_logger()

SEEN_FLAG = "\\Seen"


class CoordinatorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RUNNING_WITH_PENDING = "running_with_pending"


_ON_CHANGE = {
    CoordinatorState.IDLE: CoordinatorState.RUNNING,
    CoordinatorState.RUNNING: CoordinatorState.RUNNING_WITH_PENDING,
    CoordinatorState.RUNNING_WITH_PENDING: CoordinatorState.RUNNING_WITH_PENDING,
}

_ON_PASS_COMPLETE = {
    CoordinatorState.RUNNING: CoordinatorState.IDLE,
    CoordinatorState.RUNNING_WITH_PENDING: CoordinatorState.RUNNING,
}


class ProcessingCoordinator:
    """Owns the coalescing state machine and runs processing passes.

    A pass searches the mailbox with the configured filter, optionally
    flags every match ``\\Seen``, then processes all matches concurrently
    and joins them before the pass is considered complete.
    """

    HISTORY_SIZE = 50

    def __init__(
        self,
        transport: MailboxTransport,
        processor: MessageProcessor,
        config: ListenerConfig,
        events: EventEmitter,
    ) -> None:
        self._transport = transport
        self._processor = processor
        self._config = config
        self._events = events
        self._state = CoordinatorState.IDLE
        self._runner: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._accepting = True
        self._pass_count = 0
        self.history: deque[PassReport] = deque(maxlen=self.HISTORY_SIZE)

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def passes_completed(self) -> int:
        return self._pass_count

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def notify_changed(self, *_: object) -> None:
        """Record that the mailbox changed; start a pass if none is running."""
        if not self._accepting:
            logger.debug("change_ignored_shutting_down")
            return

        previous = self._state
        self._state = _ON_CHANGE[previous]

        if previous is CoordinatorState.IDLE:
            self._loop = asyncio.get_running_loop()
            self._runner = self._loop.create_task(self._run(), name="processing-passes")
        else:
            logger.debug("change_coalesced", state=self._state.value)

    def start(self) -> None:
        """Run one pass now, as if a change had been reported."""
        self.notify_changed()

    def notify_changed_threadsafe(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Schedule :meth:`notify_changed` on the coordinator's loop from another thread."""
        target = loop or self._loop
        if target is None:
            raise RuntimeError("no event loop known; pass the loop explicitly")
        target.call_soon_threadsafe(self.notify_changed)

    # ------------------------------------------------------------------
    # Pass loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await self._run_pass()
                except Exception as exc:
                    logger.exception("pass_crashed", pass_number=self._pass_count)
                    self._events.emit(ERROR, exc)
                if not self._accepting:
                    self._state = CoordinatorState.IDLE
                    return
                self._state = _ON_PASS_COMPLETE[self._state]
                if self._state is CoordinatorState.IDLE:
                    return
                logger.info("rescan_after_pending_change")
        except asyncio.CancelledError:
            self._state = CoordinatorState.IDLE
            raise

    async def _run_pass(self) -> None:
        self._pass_count += 1
        number = self._pass_count
        log = logger.bind(pass_number=number)
        started = time.monotonic()

        search_failed = False
        try:
            message_ids = await self._search()
        except SearchError as err:
            log.warning("search_failed", error=str(err))
            self._events.emit(ERROR, err)
            message_ids = []
            search_failed = True

        if message_ids and self._config.mark_seen_on_search:
            await self._flag_seen(message_ids)

        results = await self._fan_out(message_ids)
        succeeded = sum(results)
        report = PassReport(
            number=number,
            message_ids=tuple(message_ids),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            started_at=started,
            finished_at=time.monotonic(),
            search_failed=search_failed,
        )
        self.history.append(report)
        log.info(
            "pass_completed",
            matched=len(message_ids),
            succeeded=report.succeeded,
            failed=report.failed,
            duration_seconds=round(report.duration_seconds, 3),
        )

    async def _search(self) -> list[int]:
        criteria = list(self._config.search_filter)
        try:
            return await self._transport.search(criteria)
        except Exception as exc:
            raise SearchError(f"search {criteria} failed: {exc}") from exc

    async def _flag_seen(self, message_ids: list[int]) -> None:
        try:
            await self._transport.set_flags(message_ids, [SEEN_FLAG])
        except Exception as exc:
            error = ImapError(f"could not flag {len(message_ids)} messages as seen: {exc}")
            error.__cause__ = exc
            logger.warning("flag_seen_failed", error=str(exc))
            self._events.emit(ERROR, error)

    async def _fan_out(self, message_ids: list[int]) -> list[bool]:
        if not message_ids:
            return []

        limit = self._config.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None

        async def _one(message_id: int) -> bool:
            if semaphore is None:
                return await self._process_isolated(message_id)
            async with semaphore:
                return await self._process_isolated(message_id)

        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(_one(message_id)) for message_id in message_ids]
        return [task.result() for task in tasks]

    async def _process_isolated(self, message_id: int) -> bool:
        try:
            return await self._processor.process(message_id)
        except Exception as exc:
            logger.exception("message_processing_crashed", message_id=message_id)
            self._events.emit(ERROR, exc)
            return False

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until the current chain of passes (if any) has finished."""
        runner = self._runner
        if runner is not None and not runner.done():
            await asyncio.shield(runner)

    async def drain(self) -> None:
        """Stop accepting notifications and let the in-flight pass finish.

        A pending follow-up pass is not started.
        """
        self._accepting = False
        await self.wait_idle()

    def abandon(self) -> None:
        """Stop accepting notifications, silence the event surface, and cancel."""
        self._accepting = False
        self._events.close()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()

    async def wait_stopped(self) -> None:
        """Wait until the runner task has exited, including by cancellation."""
        runner = self._runner
        if runner is not None and not runner.done():
            await asyncio.wait([runner])
