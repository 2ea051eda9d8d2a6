"""Recording session lifecycle: capture, stream, accumulate, persist."""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from scribe_app._types import SessionState, TranscriptFragment
from scribe_app.api import StorageClient
from scribe_app.capture import AudioGraph
from scribe_app.config import PersistenceConfig
from scribe_app.errors import CaptureError, RecorderStateError, StorageError, TransportError
from scribe_app.framer import FrameQueue
from scribe_app.persistence import ChunkScheduler
from scribe_app.transcript import TranscriptAccumulator
from scribe_app.transport import TransportChannel

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    """Controller lifecycle state."""

    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"


class RecordingController:
    """Coordinates the audio graph, transport, transcript and chunk saving.

    IDLE -> RECORDING on `start()`, RECORDING -> STOPPING -> IDLE on `stop()`.
    `stop()` is idempotent; callers arriving while a stop is in progress wait
    for it instead of starting another. A transport `error` event or a
    capture source ending on its own stops the recording.
    """

    def __init__(
        self,
        session_id: str,
        transport: TransportChannel,
        graph: AudioGraph,
        storage: StorageClient,
        persistence: PersistenceConfig | None = None,
        frame_queue_size: int = 64,
        clock: Callable[[], float] = time.monotonic,
        on_transcript: Callable[[TranscriptFragment], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        """Initialize controller with injected collaborators.

        Args:
            session_id: Server-side recording session id
            transport: Connected (or connectable) socket channel to the relay
            graph: Audio graph producing PCM frames
            storage: Storage/session API client
            persistence: Chunk interval and retry settings
            frame_queue_size: Frames buffered between audio thread and sender
            clock: Monotonic clock in seconds
            on_transcript: Called for every fragment received
            on_error: Called with user-facing error messages
        """
        self.session_id = session_id
        self.transport = transport
        self.graph = graph
        self.storage = storage
        self.persistence = persistence or PersistenceConfig()
        self.frame_queue_size = frame_queue_size
        self.clock = clock
        self.on_transcript = on_transcript
        self.on_error = on_error

        self.state = ControllerState.IDLE
        self.accumulator = TranscriptAccumulator()
        self.scheduler: ChunkScheduler | None = None
        self.last_error: str | None = None
        self.frames_sent = 0
        self.stopped = asyncio.Event()

        self._frames: FrameQueue | None = None
        self._pump_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._started_at: float | None = None
        self._listeners = {
            "transcription": self._on_fragment,
            "error": self._on_transport_error,
            "recording-started": self._on_recording_started,
            "recording-stopped": self._on_recording_stopped,
            "disconnect": self._on_disconnect,
        }

        logger.info("RecordingController initialized for session %s", session_id)

    @property
    def transcript(self) -> str:
        return self.accumulator.transcript

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.clock() - self._started_at

    async def start(self) -> None:
        """Acquire audio, begin streaming and arm chunk auto-save.

        Raises:
            RecorderStateError: If not idle
            CaptureError: If audio sources cannot be acquired
            TransportError: If the start event cannot be sent
        """
        if self.state != ControllerState.IDLE:
            raise RecorderStateError(f"Cannot start recording: controller is {self.state.value}")

        loop = asyncio.get_running_loop()
        self._frames = FrameQueue(loop, maxsize=self.frame_queue_size)
        self.last_error = None
        self.scheduler = None
        self._started_at = None

        try:
            self.graph.start(
                self._frames,
                on_ended=lambda: loop.call_soon_threadsafe(self._on_capture_ended),
            )
        except CaptureError as e:
            self._frames = None
            self._report_error(str(e))
            raise

        logger.info("State transition: IDLE -> RECORDING")
        self.state = ControllerState.RECORDING
        self.stopped.clear()

        try:
            for event, listener in self._listeners.items():
                self.transport.add_listener(event, listener)
            self._pump_task = asyncio.create_task(self._pump_frames())

            await self.transport.start_recording()
            self._started_at = self.clock()
            self.accumulator.reset()

            self.scheduler = ChunkScheduler(
                storage=self.storage,
                session_id=self.session_id,
                accumulator=self.accumulator,
                interval=self.persistence.chunk_interval,
                max_retries=self.persistence.max_retries,
                backoff_base=self.persistence.backoff_base,
                clock=self.clock,
                on_error=self._report_error,
            )
            await self.scheduler.bootstrap()
            if self.state != ControllerState.RECORDING:
                logger.info("Recording stopped during start, not arming auto-save")
                return
            self.scheduler.arm(started_at=self._started_at)
        except Exception as e:
            logger.error("Failed to start recording: %s", e, exc_info=True)
            self._report_error(f"Failed to start recording: {e}")
            await self._teardown()
            raise

        logger.info("Recording started for session %s", self.session_id)

    async def stop(self) -> None:
        """Stop streaming, flush the last chunk, complete the session, release audio.

        Teardown always runs, even if persistence or the session update fails.
        """
        if self.state == ControllerState.IDLE:
            logger.debug("Stop requested while idle, ignoring")
            return
        if self.state == ControllerState.STOPPING:
            logger.debug("Stop already in progress, waiting for it")
            await self.stopped.wait()
            return

        logger.info("State transition: RECORDING -> STOPPING")
        self.state = ControllerState.STOPPING

        try:
            try:
                await self.transport.stop_recording()
            except TransportError as e:
                logger.warning("Could not send stop-recording: %s", e)

            if self.scheduler is not None:
                try:
                    saved = await self.scheduler.stop()
                except Exception as e:
                    logger.debug("Final chunk save raised", exc_info=True)
                    self._report_error(f"Failed to save final chunk: {e}")
                    saved = False
                logger.info("Final chunk %s", "saved" if saved else "not saved")

            await self._mark_completed()
        finally:
            await self._teardown()

    def request_stop(self) -> None:
        """Schedule `stop()` from a callback that cannot await."""
        if self.state != ControllerState.RECORDING:
            return
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.create_task(self.stop())

    async def _mark_completed(self) -> None:
        if self._started_at is None:
            return
        duration_sec = int(self.elapsed())
        try:
            await self.storage.update_session(
                self.session_id,
                SessionState.COMPLETED,
                duration_sec,
                datetime.now(timezone.utc),
            )
            logger.info("Session %s marked as COMPLETED (%ds)", self.session_id, duration_sec)
        except StorageError as e:
            self._report_error(f"Failed to update session state: {e}")

    async def _teardown(self) -> None:
        for event, listener in self._listeners.items():
            self.transport.remove_listener(event, listener)

        pump, self._pump_task = self._pump_task, None
        if pump is not None and not pump.done():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass

        try:
            self.graph.stop()
        except Exception as e:
            logger.warning("Error stopping audio graph: %s", e)

        if self.scheduler is not None and self.scheduler.is_armed:
            await self.scheduler.disarm()

        self._frames = None
        if self.state != ControllerState.IDLE:
            logger.info("State transition: %s -> IDLE", self.state.value.upper())
        self.state = ControllerState.IDLE
        self.stopped.set()

    async def _pump_frames(self) -> None:
        frames = self._frames
        while frames is not None:
            frame = await frames.get()
            try:
                await self.transport.send_audio(frame)
                self.frames_sent += 1
            except TransportError as e:
                logger.debug("Dropping audio frame: %s", e)

    def _on_fragment(self, fragment: TranscriptFragment) -> None:
        if self.state == ControllerState.IDLE:
            return
        self.accumulator.add(fragment)
        if self.on_transcript is not None:
            self.on_transcript(fragment)

    def _on_transport_error(self, message: str) -> None:
        self._report_error(f"Server error: {message}")
        self.request_stop()

    def _on_disconnect(self) -> None:
        if self.state == ControllerState.RECORDING:
            self._report_error("Connection to relay lost")
            self.request_stop()

    def _on_capture_ended(self) -> None:
        if self.state == ControllerState.RECORDING:
            logger.warning("Capture source ended, stopping recording")
            self.request_stop()

    @staticmethod
    def _on_recording_started() -> None:
        logger.info("Recording started on server")

    @staticmethod
    def _on_recording_stopped() -> None:
        logger.info("Recording stopped on server")

    def _report_error(self, message: str) -> None:
        self.last_error = message
        logger.error(message)
        if self.on_error is not None:
            self.on_error(message)
