"""Tests for the socket transport channel."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from socketio.exceptions import BadNamespaceError
from socketio.exceptions import ConnectionError as SocketConnectionError

from scribe_app._types import TranscriptFragment
from scribe_app.errors import TransportError
from scribe_app.transport import INBOUND_EVENTS, TransportChannel


@pytest.fixture
def client():
    client = MagicMock()
    client.connected = True
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.emit = AsyncMock()
    return client


@pytest.fixture
def channel(client):
    return TransportChannel("http://relay:8000", client=client)


def _handler(client, event):
    for call in client.on.call_args_list:
        if call.args[0] == event:
            return call.args[1]
    raise AssertionError(f"No handler registered for {event}")


class TestConnection:
    """Tests for connect and disconnect."""

    def test_registers_all_inbound_events(self, client, channel):
        registered = [call.args[0] for call in client.on.call_args_list]
        assert registered == list(INBOUND_EVENTS)

    @pytest.mark.asyncio
    async def test_connect(self, client):
        """Test connection parameters are passed to the client."""
        client.connected = False
        channel = TransportChannel("http://relay:8000", connect_timeout=3.0, client=client)

        await channel.connect()

        client.connect.assert_awaited_once_with(
            "http://relay:8000", socketio_path="socket.io", wait_timeout=3.0
        )

    @pytest.mark.asyncio
    async def test_connect_failure(self, client):
        """Test an unreachable relay raises TransportError."""
        client.connected = False
        client.connect.side_effect = SocketConnectionError("refused")
        channel = TransportChannel("http://relay:8000", client=client)

        with pytest.raises(TransportError, match="Cannot connect to relay"):
            await channel.connect()

    @pytest.mark.asyncio
    async def test_connect_when_connected_is_noop(self, client, channel):
        await channel.connect()
        client.connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnect(self, client, channel):
        await channel.disconnect()
        client.disconnect.assert_awaited_once()


class TestEmit:
    """Tests for outbound events."""

    @pytest.mark.asyncio
    async def test_recording_control_events(self, client, channel):
        await channel.start_recording()
        await channel.stop_recording()

        assert [c.args for c in client.emit.await_args_list] == [
            ("start-recording",),
            ("stop-recording",),
        ]

    @pytest.mark.asyncio
    async def test_send_audio_is_binary(self, client, channel):
        await channel.send_audio(b"\x01\x02")
        client.emit.assert_awaited_once_with("audio-chunk", b"\x01\x02")

    @pytest.mark.asyncio
    async def test_emit_when_disconnected(self, client, channel):
        """Test emitting without a connection raises TransportError."""
        client.connected = False

        with pytest.raises(TransportError, match="not connected"):
            await channel.send_audio(b"\x00")

        client.emit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_emit_failure_wrapped(self, client, channel):
        client.emit.side_effect = BadNamespaceError("/ is not a connected namespace.")

        with pytest.raises(TransportError, match="start-recording"):
            await channel.start_recording()


class TestDispatch:
    """Tests for inbound event dispatch."""

    @pytest.mark.asyncio
    async def test_transcription_becomes_fragment(self, client, channel):
        received = []
        channel.add_listener("transcription", received.append)

        await _handler(client, "transcription")({"text": "hi", "isFinal": True, "speaker": "Me"})

        assert received == [TranscriptFragment("hi", True, "Me")]

    @pytest.mark.asyncio
    async def test_malformed_transcription_ignored(self, client, channel):
        listener = MagicMock()
        channel.add_listener("transcription", listener)

        await _handler(client, "transcription")("not a dict")

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_error_payload_is_string(self, client, channel):
        listener = MagicMock()
        channel.add_listener("error", listener)

        await _handler(client, "error")("Failed to start transcription")

        listener.assert_called_once_with("Failed to start transcription")

    @pytest.mark.asyncio
    async def test_disconnect_listener_takes_no_args(self, client, channel):
        """Test events without payload call listeners with no arguments."""
        listener = MagicMock()
        channel.add_listener("disconnect", listener)

        await _handler(client, "disconnect")("transport close")

        listener.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, client, channel):
        second = MagicMock()
        channel.add_listener("recording-started", MagicMock(side_effect=RuntimeError("boom")))
        channel.add_listener("recording-started", second)

        await _handler(client, "recording-started")()

        second.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self, client, channel):
        listener = MagicMock()
        channel.add_listener("error", listener)
        channel.remove_listener("error", listener)
        channel.remove_listener("error", listener)

        await _handler(client, "error")("boom")

        listener.assert_not_called()

    def test_unknown_event_rejected(self, channel):
        with pytest.raises(ValueError):
            channel.add_listener("audio-chunk", MagicMock())
