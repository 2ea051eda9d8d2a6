"""Periodic chunk persistence with bounded retry."""

import asyncio
import logging
import time
from collections.abc import Callable

from scribe_app._types import Chunk
from scribe_app.api import StorageClient, get_next_chunk_sequence
from scribe_app.errors import StorageError
from scribe_app.transcript import TranscriptAccumulator

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """Format elapsed seconds as HH:MM:SS, flooring fractions."""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class ChunkScheduler:
    """Flushes the pending transcript to storage on a fixed interval.

    Only one save is ever in flight: ticks and explicit flushes serialize on
    a lock. A failed save keeps the pending text and sequence number and is
    retried with exponential backoff (backoff_base * 2**attempt seconds) up
    to max_retries times; after that the error is surfaced and the next tick
    tries again under the same sequence number. Disarming stops future ticks
    and aborts any pending backoff, but lets an in-flight request finish.
    """

    def __init__(
        self,
        storage: StorageClient,
        session_id: str,
        accumulator: TranscriptAccumulator,
        interval: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        on_error: Callable[[str], None] | None = None,
    ):
        self.storage = storage
        self.session_id = session_id
        self.accumulator = accumulator
        self.interval = interval
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.clock = clock
        self.on_error = on_error

        self.seq = 0
        self.chunk_start = format_duration(0)
        self.last_error: str | None = None
        self._started_at: float | None = None
        self._lock = asyncio.Lock()
        self._disarmed = asyncio.Event()
        self._timer_task: asyncio.Task | None = None

    @property
    def is_armed(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def elapsed(self) -> float:
        """Seconds since the recording started (0 before `arm`)."""
        if self._started_at is None:
            return 0.0
        return self.clock() - self._started_at

    async def bootstrap(self) -> int:
        """Set the starting sequence number from already persisted chunks."""
        self.seq = await get_next_chunk_sequence(self.storage, self.session_id)
        return self.seq

    def arm(self, started_at: float | None = None) -> None:
        """Start the periodic flush timer.

        Args:
            started_at: Clock reading at recording start (defaults to now)
        """
        if self.is_armed:
            logger.warning("Chunk timer already armed")
            return
        self._started_at = self.clock() if started_at is None else started_at
        self.chunk_start = format_duration(0)
        self._disarmed.clear()
        self._timer_task = asyncio.create_task(self._run_timer())
        logger.info("Chunk auto-save armed (interval=%.1fs, seq=%d)", self.interval, self.seq)

    async def disarm(self) -> None:
        """Stop ticking. Waits for an in-flight save to complete."""
        self._disarmed.set()
        task, self._timer_task = self._timer_task, None
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Chunk timer failed: %s", e, exc_info=True)
        logger.info("Chunk auto-save disarmed")

    async def stop(self) -> bool:
        """Disarm, then make one final flush attempt."""
        await self.disarm()
        return await self.flush()

    async def flush(self) -> bool:
        """Save the pending buffer as the next chunk.

        Returns:
            True if the buffer was saved or there was nothing to save
        """
        async with self._lock:
            return await self._flush_locked()

    async def _flush_locked(self) -> bool:
        attempt = 0
        while True:
            snapshot = self.accumulator.pending
            text = snapshot.strip()
            if not text:
                logger.debug("Skipping chunk save - no text to save")
                return True

            chunk = Chunk(
                seq=self.seq,
                text=text,
                start_time=self.chunk_start,
                end_time=format_duration(self.elapsed()),
            )
            try:
                logger.debug("Saving chunk %d (%d chars, attempt %d)", chunk.seq, len(text), attempt + 1)
                await self.storage.save_chunk(self.session_id, chunk)
            except StorageError as e:
                if attempt >= self.max_retries:
                    self._surface(
                        f"Failed to save chunk {chunk.seq} after {self.max_retries} retries: {e}"
                    )
                    return False

                delay = self.backoff_base * (2**attempt)
                attempt += 1
                logger.warning(
                    "Saving chunk %d failed (%s); retry %d/%d in %.1fs",
                    chunk.seq,
                    e,
                    attempt,
                    self.max_retries,
                    delay,
                )
                if await self._wait_backoff(delay):
                    self._surface(f"Failed to save chunk {chunk.seq}: {e}")
                    return False
                continue

            self.accumulator.consume(snapshot)
            self.seq = chunk.seq + 1
            self.chunk_start = chunk.end_time
            self.last_error = None
            logger.info("Chunk %d saved (%s - %s)", chunk.seq, chunk.start_time, chunk.end_time)
            return True

    async def _run_timer(self) -> None:
        # Ticks stay on a fixed grid from arm time; a tick that overruns skips
        # the grid points it missed instead of firing them back to back.
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval
        while not self._disarmed.is_set():
            if await self._wait_disarmed(max(0.0, next_tick - loop.time())):
                break
            logger.debug("Chunk interval elapsed, saving chunk")
            try:
                await self.flush()
            except Exception as e:
                logger.debug("Chunk save tick failed", exc_info=True)
                self._surface(f"Failed to save chunk {self.seq}: {e}")

            next_tick += self.interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // self.interval) + 1
                logger.warning("Chunk save overran %d interval(s)", missed)
                next_tick += missed * self.interval

    async def _wait_backoff(self, delay: float) -> bool:
        """Sleep before a retry. Returns True if disarmed meanwhile."""
        return await self._wait_disarmed(delay)

    async def _wait_disarmed(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._disarmed.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _surface(self, message: str) -> None:
        self.last_error = message
        if self.on_error is not None:
            self.on_error(message)
        else:
            logger.error(message)
