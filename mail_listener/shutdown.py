"""Graceful shutdown handling via SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import signal

import structlog

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(shutdown_event: asyncio.Event) -> list[signal.Signals]:
    """Register SIGTERM and SIGINT handlers that set *shutdown_event*.

    Call this once from the running event loop.  A second signal while
    shutdown is already in progress is logged and otherwise ignored, so
    the in-flight pass can still drain.

    Returns the signals a handler was installed for; platforms without
    ``loop.add_signal_handler`` support get none.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.warning("shutdown_already_in_progress", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    installed: list[signal.Signals] = []
    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, _handle, sig)
        except NotImplementedError:
            logger.warning("signal_handler_unsupported", signal=sig.name)
            continue
        installed.append(sig)
    return installed
