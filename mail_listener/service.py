"""ListenerService: runs a MailListener as a long-lived process."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable

import structlog
import uvicorn

from .config import ServiceConfig
from .events import SERVER_DISCONNECTED
from .health import create_health_app
from .listener import MailListener
from .logging import setup_logging
from .models import ListenerStatus
from .retry import with_retry
from .shutdown import install_signal_handlers

logger = structlog.get_logger()


class ListenerService:
    """Process runtime around one :class:`MailListener`.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the connection loop: connect with retry, wait for a disconnect or a
      shutdown signal, reconnect
    * the FastAPI health server (when enabled)

    On shutdown the in-flight pass is drained for at most
    ``drain_timeout_seconds`` before the connection is closed.
    """

    def __init__(self, config: ServiceConfig, listener: MailListener | None = None) -> None:
        self.config = config
        self.listener = listener or MailListener.from_config(config.imap, config.listener)
        self.status: ListenerStatus = ListenerStatus.STARTING
        self.start_time: float = time.monotonic()

        self._shutdown_event = asyncio.Event()
        self._disconnected = asyncio.Event()
        self.listener.on(SERVER_DISCONNECTED, self._disconnected.set)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        @with_retry(self.config.retry)
        async def _start_listener() -> None:
            await self.listener.start()

        await _start_listener()

    async def _run_connection_loop(self) -> None:
        logger.info("connection_loop_started", service=self.config.name)
        try:
            while not self._shutdown_event.is_set():
                self._disconnected.clear()
                await self._connect()
                self.status = ListenerStatus.RUNNING

                await _first_of(self._disconnected.wait(), self._shutdown_event.wait())
                if self._shutdown_event.is_set():
                    break

                self.status = ListenerStatus.DEGRADED
                if not self.config.reconnect:
                    logger.warning("connection_closed_not_reconnecting", service=self.config.name)
                    self._shutdown_event.set()
                    break
                logger.warning("connection_closed_reconnecting", service=self.config.name)
        except Exception:
            self.status = ListenerStatus.DEGRADED
            logger.exception("connection_loop_error", service=self.config.name)
            self._shutdown_event.set()
            raise
        finally:
            logger.info("connection_loop_stopped", service=self.config.name)

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until SIGTERM/SIGINT (or a fatal connection failure).

        Call as::

            asyncio.run(service.run())
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level, service=self.config.name)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()

        logger.info("service_starting", service=self.config.name, mailbox=self.config.listener.mailbox)

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_connection_loop())
                if self.config.health_enabled:
                    tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            self.status = ListenerStatus.STOPPING
            await self.listener.stop(timeout=self.config.drain_timeout_seconds)
            self.status = ListenerStatus.STOPPED
            logger.info("service_stopped", service=self.config.name)


async def _first_of(*aws: Awaitable[object]) -> None:
    """Wait until any of *aws* completes and cancel the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
