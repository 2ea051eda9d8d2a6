"""Streaming transcription via the Deepgram live API."""

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class ProviderResult:
    """One transcription result for one audio channel."""

    text: str
    is_final: bool
    channel: int = 0


ResultHandler = Callable[[ProviderResult], Awaitable[None]]
ErrorHandler = Callable[[str], Awaitable[None]]


def parse_result(message) -> ProviderResult | None:
    """Extract a ProviderResult from a Deepgram live message.

    Returns None for non-result messages (metadata, utterance end, speech
    started) and for results with an empty transcript.
    """
    if getattr(message, "type", None) != "Results":
        return None

    channel = getattr(message, "channel", None)
    alternatives = getattr(channel, "alternatives", None) or []
    if not alternatives:
        return None

    text = (getattr(alternatives[0], "transcript", "") or "").strip()
    if not text:
        return None

    channel_index = getattr(message, "channel_index", None) or [0]
    return ProviderResult(
        text=text,
        is_final=bool(getattr(message, "is_final", False)),
        channel=int(channel_index[0]),
    )


class DeepgramStreamingProvider:
    """One live Deepgram connection for one recording.

    Sends interleaved linear16 PCM with `multichannel` enabled so each
    channel is transcribed (and labelled) separately. Results and errors are
    delivered through the async handlers given at construction.
    """

    def __init__(
        self,
        api_key: str,
        on_result: ResultHandler,
        on_error: ErrorHandler,
        model: str = "nova-3",
        language: str = "en",
        sample_rate: int = 16000,
        channels: int = 2,
        punctuate: bool = True,
        smart_format: bool = True,
        interim_results: bool = True,
        close_timeout: float = 2.0,
    ):
        """Initialize the provider.

        Args:
            api_key: Deepgram API key
            on_result: Awaited for every non-empty result
            on_error: Awaited with a message when the stream fails
            model: Deepgram model (nova-3, nova-2, ...)
            language: Language code
            sample_rate: PCM sample rate in Hz
            channels: Interleaved channel count
            punctuate: Auto-add punctuation
            smart_format: Enable smart formatting
            interim_results: Deliver provisional results
            close_timeout: Seconds to wait for final results on finish
        """
        self.api_key = api_key
        self.on_result = on_result
        self.on_error = on_error
        self.model = model
        self.language = language
        self.sample_rate = sample_rate
        self.channels = channels
        self.punctuate = punctuate
        self.smart_format = smart_format
        self.interim_results = interim_results
        self.close_timeout = close_timeout

        self._stack: contextlib.AsyncExitStack | None = None
        self._connection = None
        self._listen_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def connect_options(self) -> dict:
        """Query options for the live listen endpoint."""
        return {
            "model": self.model,
            "language": self.language,
            "encoding": "linear16",
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channels),
            "multichannel": "true" if self.channels > 1 else "false",
            "punctuate": str(self.punctuate).lower(),
            "smart_format": str(self.smart_format).lower(),
            "interim_results": str(self.interim_results).lower(),
        }

    async def start(self) -> None:
        """Open the live connection.

        Raises:
            RuntimeError: If the connection cannot be opened
        """
        from deepgram import AsyncDeepgramClient
        from deepgram.core.events import EventType

        start_time = time.perf_counter()
        stack = contextlib.AsyncExitStack()
        try:
            client = AsyncDeepgramClient(api_key=self.api_key)
            connection = await stack.enter_async_context(
                client.listen.v1.connect(**self.connect_options())
            )
        except Exception as e:
            await stack.aclose()
            logger.error("Failed to open Deepgram stream: %s", e)
            raise RuntimeError(f"Failed to open Deepgram stream: {e}") from e

        connection.on(EventType.MESSAGE, self._handle_message)
        connection.on(EventType.ERROR, self._handle_error)
        self._stack = stack
        self._connection = connection
        self._listen_task = asyncio.create_task(connection.start_listening())
        logger.info(
            "Deepgram stream opened in %.3f seconds (model=%s, channels=%d)",
            time.perf_counter() - start_time,
            self.model,
            self.channels,
        )

    async def send(self, frame: bytes) -> None:
        if self._connection is None:
            raise RuntimeError("Deepgram stream is not open")
        await self._connection.send_media(frame)

    async def finish(self) -> None:
        """Flush and close the connection, then stop listening. Safe to call repeatedly.

        CloseStream asks Deepgram to emit the results for audio it already
        holds; those are still delivered while the listener drains, for up
        to `close_timeout` seconds.
        """
        stack, self._stack = self._stack, None
        connection, self._connection = self._connection, None
        listen_task, self._listen_task = self._listen_task, None

        if connection is not None:
            try:
                await _send_close_stream(connection)
                logger.debug("Sent CloseStream to Deepgram")
            except Exception as e:
                logger.warning("Could not send CloseStream to Deepgram: %s", e)

        if listen_task is not None and not listen_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(listen_task), timeout=self.close_timeout)
            except asyncio.TimeoutError:
                logger.debug("Deepgram listener still running after %.1fs", self.close_timeout)
            except Exception as e:
                logger.warning("Deepgram listener failed: %s", e)

        if stack is not None:
            try:
                await stack.aclose()
            except Exception as e:
                logger.warning("Error closing Deepgram stream: %s", e)

        if listen_task is not None and not listen_task.done():
            listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listen_task

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info("Deepgram stream closed")

    def _handle_message(self, message) -> None:
        result = parse_result(message)
        if result is not None:
            self._spawn(self.on_result(result))

    def _handle_error(self, error) -> None:
        logger.error("Deepgram stream error: %s", error)
        self._spawn(self.on_error(f"Transcription provider error: {error}"))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


async def _send_close_stream(connection) -> None:
    # Newer SDK releases expose a dedicated method; 5.0 only has send_control.
    if hasattr(connection, "send_close_stream"):
        await connection.send_close_stream()
        return
    from deepgram.extensions.types.sockets import ListenV1ControlMessage

    await connection.send_control(ListenV1ControlMessage(type="CloseStream"))
