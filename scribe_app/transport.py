"""Socket.IO transport between the recording client and the relay."""

import logging
from collections import defaultdict
from collections.abc import Callable

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError
from socketio.exceptions import SocketIOError

from scribe_app._types import TranscriptFragment
from scribe_app.errors import TransportError

logger = logging.getLogger(__name__)

INBOUND_EVENTS = ("transcription", "error", "recording-started", "recording-stopped", "disconnect")


class TransportChannel:
    """Explicitly owned socket connection to the relay.

    Outbound: `start-recording`, `audio-chunk` (fire-and-forget binary PCM),
    `stop-recording`. Inbound events are dispatched to listeners registered
    with `add_listener`; `transcription` payloads arrive as TranscriptFragment.
    """

    def __init__(
        self,
        server_url: str,
        socketio_path: str = "socket.io",
        connect_timeout: float = 10.0,
        client: socketio.AsyncClient | None = None,
    ):
        self.server_url = server_url
        self.socketio_path = socketio_path
        self.connect_timeout = connect_timeout
        self._client = client or socketio.AsyncClient(reconnection=True)
        self._listeners: dict[str, list[Callable]] = defaultdict(list)

        for event in INBOUND_EVENTS:
            self._client.on(event, self._make_dispatcher(event))

    @property
    def connected(self) -> bool:
        return bool(self._client.connected)

    async def connect(self) -> None:
        """Open the socket connection.

        Raises:
            TransportError: If the relay cannot be reached
        """
        if self.connected:
            return
        try:
            await self._client.connect(
                self.server_url,
                socketio_path=self.socketio_path,
                wait_timeout=self.connect_timeout,
            )
        except SocketConnectionError as e:
            raise TransportError(f"Cannot connect to relay at {self.server_url}: {e}") from e
        logger.info("Connected to relay at %s", self.server_url)

    async def disconnect(self) -> None:
        if not self.connected:
            return
        await self._client.disconnect()
        logger.info("Disconnected from relay")

    def add_listener(self, event: str, listener: Callable) -> None:
        if event not in INBOUND_EVENTS:
            raise ValueError(f"Unknown transport event: {event}")
        self._listeners[event].append(listener)

    def remove_listener(self, event: str, listener: Callable) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    async def start_recording(self) -> None:
        await self._emit("start-recording")

    async def stop_recording(self) -> None:
        await self._emit("stop-recording")

    async def send_audio(self, frame: bytes) -> None:
        await self._emit("audio-chunk", frame)

    async def _emit(self, event: str, data=None) -> None:
        if not self.connected:
            raise TransportError(f"Cannot emit '{event}': not connected")
        try:
            if data is None:
                await self._client.emit(event)
            else:
                await self._client.emit(event, data)
        except SocketIOError as e:
            raise TransportError(f"Emit '{event}' failed: {e}") from e

    def _make_dispatcher(self, event: str):
        async def _dispatch(*args) -> None:
            payload = args[0] if args else None
            if event == "transcription":
                if not isinstance(payload, dict):
                    logger.warning("Ignoring malformed transcription payload: %r", payload)
                    return
                payload = TranscriptFragment.from_payload(payload)
            elif event == "error":
                payload = str(payload)

            for listener in list(self._listeners[event]):
                try:
                    if event in ("transcription", "error"):
                        listener(payload)
                    else:
                        listener()
                except Exception as e:
                    logger.error("Listener for '%s' failed: %s", event, e, exc_info=True)

        return _dispatch
