"""End-to-end tests for mail_listener.listener with a scripted transport."""

from __future__ import annotations

import asyncio

import pytest

from tests.conftest import (
    EventRecorder,
    FakeTransport,
    _build_multipart_email,
    _build_plain_email,
    _fetch_events,
)

from mail_listener.config import AttachmentConfig, ImapConfig, ListenerConfig
from mail_listener.coordinator import CoordinatorState
from mail_listener.events import (
    ATTACHMENT,
    ERROR,
    MAIL,
    NEW_MESSAGE,
    SERVER_CONNECTED,
    SERVER_DISCONNECTED,
)
from mail_listener.imap_client import AsyncImapClient
from mail_listener.listener import MailListener

ALL_EVENTS = (SERVER_CONNECTED, SERVER_DISCONNECTED, MAIL, ATTACHMENT, ERROR)


async def _started(listener: MailListener, transport: FakeTransport) -> None:
    await listener.start()
    await transport.events.drain()


class TestMailListener:
    @pytest.mark.asyncio
    async def test_start_selects_and_reports_connected(self, transport, listener_config):
        listener = MailListener(listener_config, transport)
        recorder = EventRecorder(listener.events, *ALL_EVENTS)

        await _started(listener, transport)

        assert listener.connected
        assert transport.selected == ["INBOX"]
        assert recorder.names == [SERVER_CONNECTED]

    @pytest.mark.asyncio
    async def test_new_mail_is_emitted(self, listener_config):
        raw = _build_plain_email(subject="Invoice 42")
        transport = FakeTransport(search_results=[[11]], messages={11: _fetch_events(raw, uid=11)})
        listener = MailListener(listener_config, transport)
        recorder = EventRecorder(listener.events, *ALL_EVENTS)

        await _started(listener, transport)
        transport.events.emit(NEW_MESSAGE, 1)
        await listener.coordinator.wait_idle()

        (mail, message_id, attributes) = recorder.of(MAIL)[0]
        assert mail.subject == "Invoice 42"
        assert message_id == 11
        assert attributes.uid == 11
        assert transport.search_calls == [["UNSEEN"]]

    @pytest.mark.asyncio
    async def test_unread_mail_fetched_on_start(self):
        config = ListenerConfig(fetch_unread_on_start=True)
        raw = _build_plain_email()
        transport = FakeTransport(search_results=[[1]], messages={1: _fetch_events(raw)})
        listener = MailListener(config, transport)
        recorder = EventRecorder(listener.events, MAIL)

        await _started(listener, transport)
        await listener.coordinator.wait_idle()

        assert len(recorder.of(MAIL)) == 1

    @pytest.mark.asyncio
    async def test_attachments_saved_before_mail(self, tmp_path):
        config = ListenerConfig(
            fetch_unread_on_start=True,
            attachments=AttachmentConfig(enabled=True, directory=tmp_path),
        )
        raw = _build_multipart_email(attachments=[("notes.txt", "text/plain", b"remember")])
        transport = FakeTransport(search_results=[[3]], messages={3: _fetch_events(raw, uid=3)})
        listener = MailListener(config, transport)
        recorder = EventRecorder(listener.events, ATTACHMENT, MAIL)

        await _started(listener, transport)
        await listener.coordinator.wait_idle()

        assert recorder.names == [ATTACHMENT, MAIL]
        assert (tmp_path / "notes.txt").read_bytes() == b"remember"

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_pass(self, listener_config):
        transport = FakeTransport(
            search_results=[[1]], messages={1: _fetch_events(_build_plain_email())}
        )
        transport.search_gate = asyncio.Event()
        listener = MailListener(listener_config, transport)
        recorder = EventRecorder(listener.events, *ALL_EVENTS)

        await _started(listener, transport)
        transport.events.emit(NEW_MESSAGE, 1)
        await asyncio.sleep(0)

        stopping = asyncio.create_task(listener.stop())
        await asyncio.sleep(0)
        transport.search_gate.set()
        await stopping

        assert recorder.names == [SERVER_CONNECTED, MAIL, SERVER_DISCONNECTED]
        assert not listener.connected
        assert listener.coordinator.state is CoordinatorState.IDLE

    @pytest.mark.asyncio
    async def test_stop_without_drain_suppresses_events(self, listener_config):
        transport = FakeTransport(
            search_results=[[1]], messages={1: _fetch_events(_build_plain_email())}
        )
        transport.search_gate = asyncio.Event()
        listener = MailListener(listener_config, transport)
        recorder = EventRecorder(listener.events, *ALL_EVENTS)

        await _started(listener, transport)
        transport.events.emit(NEW_MESSAGE, 1)
        await asyncio.sleep(0)

        await listener.stop(drain=False)
        # The cancelled pass has fully unwound before stop() returns.
        assert listener.coordinator.state is CoordinatorState.IDLE
        transport.search_gate.set()
        await asyncio.sleep(0)

        assert recorder.names == [SERVER_CONNECTED]
        assert transport.fetch_calls == []

    @pytest.mark.asyncio
    async def test_drain_timeout_abandons_pass(self, listener_config):
        transport = FakeTransport(search_results=[[1]])
        transport.search_gate = asyncio.Event()
        listener = MailListener(listener_config, transport)

        await _started(listener, transport)
        transport.events.emit(NEW_MESSAGE, 1)
        await asyncio.sleep(0)

        await listener.stop(timeout=0.05)

        assert listener.coordinator.state is CoordinatorState.IDLE
        assert listener.coordinator._runner.done()
        assert not transport.connected

    @pytest.mark.asyncio
    async def test_health_details(self, listener_config):
        transport = FakeTransport(
            search_results=[[1, 2]],
            messages={1: _fetch_events(_build_plain_email()), 2: OSError("gone")},
        )
        listener = MailListener(listener_config, transport)

        await _started(listener, transport)
        transport.events.emit(NEW_MESSAGE, 2)
        await listener.coordinator.wait_idle()

        details = listener.health_details()
        assert details == {
            "connected": True,
            "mailbox": "INBOX",
            "exists": 2,
            "coordinator_state": "idle",
            "passes_completed": 1,
            "messages_processed": 1,
            "messages_failed": 1,
            "last_pass_matched": 2,
        }

    @pytest.mark.asyncio
    async def test_off_removes_handler(self, listener_config):
        raw = _build_plain_email()
        transport = FakeTransport(
            search_results=[[1], [1]], messages={1: _fetch_events(raw)}
        )
        listener = MailListener(listener_config, transport)
        received = []
        handler = listener.on(MAIL, lambda mail, message_id, attrs: received.append(message_id))

        await _started(listener, transport)
        transport.events.emit(NEW_MESSAGE, 1)
        await listener.coordinator.wait_idle()
        listener.off(MAIL, handler)
        transport.events.emit(NEW_MESSAGE, 1)
        await listener.coordinator.wait_idle()

        assert received == [1]

    def test_from_config_builds_imap_transport(self, imap_config: ImapConfig, listener_config):
        listener = MailListener.from_config(imap_config, listener_config)
        assert isinstance(listener.transport, AsyncImapClient)
        assert not listener.connected
