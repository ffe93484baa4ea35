from __future__ import annotations

import pytest

from deepfocus_sync.messages import (
    DISABLE_FOCUS_MODE,
    ENABLE_FOCUS_MODE,
    LocalHub,
    MalformedMessage,
    MessageBusAdapter,
    decode_message,
    focus_command,
)
from deepfocus_sync.models import ExtensionFocusStateChanged, RecordOverrideSession


def test_decode_extension_state():
    msg = decode_message(
        {
            "type": "EXTENSION_FOCUS_STATE_CHANGED",
            "extensionId": "ext-1",
            "payload": {"isActive": True, "blockedSites": ["youtube.com", "reddit.com"]},
        }
    )
    assert isinstance(msg, ExtensionFocusStateChanged)
    assert msg.payload.isActive is True
    assert msg.payload.blockedSites == ["youtube.com", "reddit.com"]


def test_decode_extension_state_defaults_blocked_sites():
    msg = decode_message({"type": "EXTENSION_FOCUS_STATE_CHANGED", "extensionId": "ext-1", "payload": {"isActive": False}})
    assert isinstance(msg, ExtensionFocusStateChanged)
    assert msg.payload.blockedSites == []


def test_decode_override_and_dedup_key():
    msg = decode_message(
        {
            "type": "RECORD_OVERRIDE_SESSION",
            "source": "make10000hours-extension",
            "payload": {"domain": "youtube.com", "duration": 300, "timestamp": 1000, "extensionTimestamp": 999},
        }
    )
    assert isinstance(msg, RecordOverrideSession)
    assert msg.dedup_key == "youtube.com_300.0_999.0"


def test_dedup_key_falls_back_to_timestamp():
    msg = decode_message(
        {
            "type": "RECORD_OVERRIDE_SESSION",
            "source": "extension",
            "payload": {"domain": "x.com", "duration": 1.5, "timestamp": 1700000000123},
        }
    )
    assert msg.dedup_key == "x.com_1.5_1700000000123.0"


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "ENABLE",
        [],
        {},
        {"type": "SOMETHING_ELSE"},
        {"type": "EXTENSION_FOCUS_STATE_CHANGED", "extensionId": "ext", "payload": {"isActive": "true"}},
        {"type": "EXTENSION_FOCUS_STATE_CHANGED", "extensionId": "", "payload": {"isActive": True}},
        {"type": "EXTENSION_FOCUS_STATE_CHANGED", "extensionId": "ext", "payload": {"isActive": True, "blockedSites": [1]}},
        {"type": "RECORD_OVERRIDE_SESSION", "source": "extension", "payload": {"domain": "x.com", "timestamp": 1}},
        {"type": "RECORD_OVERRIDE_SESSION", "source": "extension", "payload": {"domain": "x.com", "duration": 0, "timestamp": 1}},
        {"type": "RECORD_OVERRIDE_SESSION", "source": "extension", "payload": {"domain": "x.com", "duration": "5", "timestamp": 1}},
    ],
)
def test_decode_rejects_malformed(raw):
    assert isinstance(decode_message(raw), MalformedMessage)


def test_focus_command():
    assert focus_command(True) == {"type": ENABLE_FOCUS_MODE}
    assert focus_command(False) == {"type": DISABLE_FOCUS_MODE}


@pytest.mark.asyncio
class TestMessageBusAdapter:
    async def _adapter(self):
        hub = LocalHub()
        adapter = MessageBusAdapter([hub.join("tab")])
        forwarded = []

        async def handler(message):
            forwarded.append(message)

        adapter.set_handler(handler)
        return hub, adapter, forwarded

    async def test_forwards_known_messages(self):
        _, adapter, forwarded = await self._adapter()
        ok = await adapter.receive(
            {"type": "EXTENSION_FOCUS_STATE_CHANGED", "extensionId": "ext", "payload": {"isActive": True}}
        )
        assert ok is True
        assert len(forwarded) == 1

    async def test_ignores_own_outbound_commands(self):
        _, adapter, forwarded = await self._adapter()
        assert await adapter.receive({"type": ENABLE_FOCUS_MODE}) is False
        assert await adapter.receive({"type": DISABLE_FOCUS_MODE}) is False
        assert forwarded == []

    async def test_drops_untrusted_override(self):
        _, adapter, forwarded = await self._adapter()
        ok = await adapter.receive(
            {
                "type": "RECORD_OVERRIDE_SESSION",
                "source": "evil-page",
                "payload": {"domain": "x.com", "duration": 5, "timestamp": 1},
            }
        )
        assert ok is False
        assert forwarded == []

    async def test_broadcast_reaches_peers_but_not_sender(self):
        hub, adapter, forwarded = await self._adapter()
        peer = hub.join("extension")
        received = []

        async def record(payload):
            received.append(payload)

        peer.on_message(record)
        await adapter.broadcast(focus_command(True))

        assert received == [{"type": ENABLE_FOCUS_MODE}]
        assert forwarded == []

    async def test_broadcast_survives_failing_transport(self):
        hub, adapter, _ = await self._adapter()

        class Broken:
            def on_message(self, handler):
                pass

            async def send(self, payload):
                raise ConnectionError("socket closed")

        adapter.attach(Broken())
        peer = hub.join("extension")
        received = []

        async def record(payload):
            received.append(payload)

        peer.on_message(record)
        await adapter.broadcast(focus_command(False))

        assert received == [{"type": DISABLE_FOCUS_MODE}]

    async def test_detach_stops_broadcasts(self):
        hub, adapter, _ = await self._adapter()
        transport = adapter.transports[0]
        adapter.detach(transport)
        peer = hub.join("extension")
        received = []

        async def record(payload):
            received.append(payload)

        peer.on_message(record)
        await adapter.broadcast(focus_command(True))

        assert received == []

    async def test_no_handler_drops(self):
        adapter = MessageBusAdapter()
        ok = await adapter.receive(
            {"type": "EXTENSION_FOCUS_STATE_CHANGED", "extensionId": "ext", "payload": {"isActive": True}}
        )
        assert ok is False
