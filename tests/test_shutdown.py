"""Tests for mail_listener.shutdown."""

from __future__ import annotations

import asyncio
import os
import signal

import pytest

from mail_listener.shutdown import install_signal_handlers


class TestInstallSignalHandlers:
    @pytest.mark.asyncio
    async def test_sigterm_sets_event(self):
        event = asyncio.Event()
        install_signal_handlers(event)

        assert not event.is_set()
        os.kill(os.getpid(), signal.SIGTERM)
        # The loop needs an I/O poll cycle to read the signal self-pipe.
        await asyncio.sleep(0.05)
        assert event.is_set()

    @pytest.mark.asyncio
    async def test_second_signal_is_ignored(self):
        event = asyncio.Event()
        install_signal_handlers(event)

        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.sleep(0.05)
        assert event.is_set()
        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.sleep(0.05)
        assert event.is_set()

    @pytest.mark.asyncio
    async def test_returns_installed_signals(self):
        event = asyncio.Event()
        installed = install_signal_handlers(event)
        assert set(installed) == {signal.SIGTERM, signal.SIGINT}

        loop = asyncio.get_running_loop()
        assert loop.remove_signal_handler(signal.SIGTERM) is True
        assert loop.remove_signal_handler(signal.SIGINT) is True

    @pytest.mark.asyncio
    async def test_unsupported_platform_installs_nothing(self, monkeypatch):
        loop = asyncio.get_running_loop()

        def _unsupported(*args, **kwargs):
            raise NotImplementedError

        monkeypatch.setattr(loop, "add_signal_handler", _unsupported)
        assert install_signal_handlers(asyncio.Event()) == []
