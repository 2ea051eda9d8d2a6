"""Fixed-size PCM framing on the audio callback thread."""

import asyncio
import logging
from collections.abc import Callable

import numpy as np

logger = logging.getLogger(__name__)

FrameSink = Callable[[bytes], None]


def quantize(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1.0, 1.0] to little-endian int16.

    Negative samples scale by 32768, non-negative by 32767, then round to
    nearest. Out-of-range input is clamped first.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return np.rint(scaled).astype("<i2")


class PCMFramer:
    """Accumulates interleaved samples and emits full frames.

    Runs inside the PortAudio callback. `process` never blocks: the frame
    sink must return immediately, and a sink failure drops the frame.
    A trailing partial frame is discarded on `reset`.
    """

    def __init__(
        self,
        frame_size: int = 2048,
        channels: int = 2,
        on_frame: FrameSink | None = None,
    ):
        if frame_size <= 0:
            raise ValueError("frame_size must be positive")
        if channels <= 0:
            raise ValueError("channels must be positive")

        self.frame_size = frame_size
        self.channels = channels
        self.on_frame = on_frame
        self._buffer = np.zeros(frame_size * channels, dtype=np.float32)
        self._index = 0
        self.frames_emitted = 0
        self.frames_dropped = 0

    @property
    def capacity(self) -> int:
        """Samples per frame across all channels."""
        return self._buffer.size

    @property
    def pending_samples(self) -> int:
        """Samples buffered toward the next frame."""
        return self._index

    def process(self, block: np.ndarray) -> None:
        """Interleave one block of shape (frames, channels) into the ring buffer.

        Missing channels are filled with silence; extra channels are ignored.
        """
        block = np.asarray(block, dtype=np.float32)
        if block.ndim == 1:
            block = block.reshape(-1, 1)

        if block.shape[1] < self.channels:
            padding = np.zeros((block.shape[0], self.channels - block.shape[1]), dtype=np.float32)
            block = np.hstack([block, padding])

        samples = block[:, : self.channels].reshape(-1)
        offset = 0
        while offset < samples.size:
            take = min(self.capacity - self._index, samples.size - offset)
            self._buffer[self._index : self._index + take] = samples[offset : offset + take]
            self._index += take
            offset += take

            if self._index >= self.capacity:
                self._emit()
                self._index = 0

    def reset(self) -> None:
        """Discard any partial frame."""
        if self._index:
            logger.debug("Discarding %d samples of partial frame", self._index)
        self._index = 0

    def _emit(self) -> None:
        frame = quantize(self._buffer).tobytes()
        if self.on_frame is None:
            self.frames_dropped += 1
            return
        try:
            self.on_frame(frame)
            self.frames_emitted += 1
        except Exception as e:
            self.frames_dropped += 1
            logger.warning("Frame handoff failed, dropping frame: %s", e)


class FrameQueue:
    """Thread-safe handoff of frames from the audio thread to an asyncio loop.

    Calling the instance schedules a non-blocking enqueue on the loop. When
    the queue is full or the loop is gone the frame is dropped.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 64):
        self._loop = loop
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, frame: bytes) -> None:
        try:
            self._loop.call_soon_threadsafe(self._offer, frame)
        except RuntimeError:
            # loop closed
            self.dropped += 1

    def _offer(self, frame: bytes) -> None:
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Frame queue full, dropped frame (total dropped: %d)", self.dropped)

    async def get(self) -> bytes:
        """Wait for the next frame."""
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()
