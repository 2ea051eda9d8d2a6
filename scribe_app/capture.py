"""Audio capture and two-source mixing.

The graph acquires a microphone and a system-audio (loopback) source and
merges them into one stereo stream: channel 0 is always the microphone,
channel 1 always the system audio. Downstream speaker labelling relies on
that order.
"""

import functools
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np
import sounddevice

from scribe_app.errors import CaptureError, NoAudioTrack, PermissionDenied
from scribe_app.framer import FrameSink, PCMFramer

logger = logging.getLogger(__name__)

MICROPHONE_CHANNEL = 0
SYSTEM_CHANNEL = 1


@dataclass
class CaptureConstraints:
    """Requested capture properties for one source."""

    sample_rate: int
    echo_cancellation: bool
    noise_suppression: bool
    channel_count: int = 1


def microphone_constraints(sample_rate: int) -> CaptureConstraints:
    return CaptureConstraints(
        sample_rate=sample_rate,
        echo_cancellation=True,
        noise_suppression=True,
    )


def system_constraints(sample_rate: int) -> CaptureConstraints:
    # Source fidelity is preserved for the shared audio.
    return CaptureConstraints(
        sample_rate=sample_rate,
        echo_cancellation=False,
        noise_suppression=False,
    )


class SoundDeviceTrack:
    """One live audio input backed by a sounddevice InputStream.

    Blocks arrive on the PortAudio thread and are forwarded as mono float32
    arrays to the connected consumer. `on_ended` fires if the stream finishes
    without `stop()` having been called.
    """

    kind = "audio"

    def __init__(self, label: str, device: int | None, constraints: CaptureConstraints):
        self.label = label
        self.device = device
        self.constraints = constraints
        self.on_ended: Callable[["SoundDeviceTrack"], None] | None = None
        self._consumer: Callable[[np.ndarray], None] | None = None
        self._stopped = False
        self._stream = sounddevice.InputStream(
            device=device,
            samplerate=constraints.sample_rate,
            channels=constraints.channel_count,
            dtype="float32",
            callback=self._callback,
            finished_callback=self._finished,
        )

    @property
    def ready_state(self) -> str:
        return "ended" if self._stopped else "live"

    def connect(self, consumer: Callable[[np.ndarray], None]) -> None:
        self._consumer = consumer

    def disconnect(self) -> None:
        self._consumer = None

    def start(self) -> None:
        self._stream.start()

    def stop(self) -> None:
        """Stop and close the stream. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        self._consumer = None
        try:
            self._stream.stop()
            self._stream.close()
        except Exception as e:
            logger.warning("Error closing %s stream: %s", self.label, e)

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.warning("%s stream status: %s", self.label, status)

        consumer = self._consumer
        if consumer is None:
            return
        try:
            consumer(indata[:, 0].copy())
        except Exception as e:
            logger.warning("%s consumer failed: %s", self.label, e)

    def _finished(self):
        if self._stopped:
            return
        self._stopped = True
        logger.warning("%s stream ended unexpectedly", self.label)
        if self.on_ended is not None:
            self.on_ended(self)


@dataclass
class MediaStream:
    """A set of tracks returned by one acquisition request."""

    tracks: list = field(default_factory=list)

    @property
    def audio_tracks(self) -> list:
        return [t for t in self.tracks if t.kind == "audio"]

    def stop(self) -> None:
        for track in self.tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning("Error stopping track %s: %s", getattr(track, "label", track), e)


class SoundDeviceMediaDevices:
    """Acquires microphone and system-audio streams through sounddevice."""

    def __init__(
        self,
        microphone_device: int | str | None = None,
        system_device: int | str | None = None,
    ):
        self.microphone_device = microphone_device
        self.system_device = system_device

    def get_user_media(self, constraints: CaptureConstraints) -> MediaStream:
        """Open the microphone.

        Raises:
            PermissionDenied: If the device refuses to open
        """
        device = resolve_device(self.microphone_device)
        return MediaStream([self._open_track("microphone", device, constraints)])

    def get_display_media(self, constraints: CaptureConstraints) -> MediaStream:
        """Open the system-audio device.

        Returns a stream without audio tracks when no loopback device is
        configured, found, or input-capable.

        Raises:
            PermissionDenied: If the device refuses to open
        """
        if self.system_device is None:
            logger.warning("No system audio device configured")
            return MediaStream()

        device = resolve_device(self.system_device)
        if device is None:
            return MediaStream()

        try:
            info = sounddevice.query_devices(device)
        except Exception as e:
            raise PermissionDenied(f"Cannot query system audio device {device}: {e}") from e

        if info.get("max_input_channels", 0) <= 0:
            logger.warning("System device %s has no input channels", info.get("name", device))
            return MediaStream()

        return MediaStream([self._open_track("system", device, constraints)])

    @staticmethod
    def _open_track(label: str, device: int | None, constraints: CaptureConstraints) -> SoundDeviceTrack:
        try:
            track = SoundDeviceTrack(label, device, constraints)
        except sounddevice.PortAudioError as e:
            raise PermissionDenied(f"Cannot open {label} device: {e}") from e
        logger.info(
            "Opened %s track (device=%s, sample_rate=%d, echo_cancellation=%s, noise_suppression=%s)",
            label,
            device if device is not None else "default",
            constraints.sample_rate,
            constraints.echo_cancellation,
            constraints.noise_suppression,
        )
        return track


class ChannelMerger:
    """Merges two mono sources into stereo blocks.

    The microphone channel drives the clock: each microphone block pulls the
    same number of samples of system audio, padding with silence when the
    system source has fallen behind. System audio that the microphone has not
    consumed is capped at `max_buffered` samples, oldest dropped first.
    """

    def __init__(self, on_block: Callable[[np.ndarray], None], max_buffered: int):
        self.on_block = on_block
        self.max_buffered = max_buffered
        self._pending: deque[np.ndarray] = deque()
        self._pending_len = 0
        self._lock = threading.Lock()
        self._connected = True

    def write(self, channel: int, block: np.ndarray) -> None:
        if not self._connected:
            return

        block = np.asarray(block, dtype=np.float32).reshape(-1)
        if channel == SYSTEM_CHANNEL:
            self._push(block)
        elif channel == MICROPHONE_CHANNEL:
            right = self._pull(block.size)
            self.on_block(np.column_stack([block, right]))
        else:
            raise ValueError(f"ChannelMerger has no input channel {channel}")

    def disconnect(self) -> None:
        self._connected = False
        with self._lock:
            self._pending.clear()
            self._pending_len = 0

    def _push(self, block: np.ndarray) -> None:
        with self._lock:
            self._pending.append(block)
            self._pending_len += block.size
            while self._pending_len > self.max_buffered and self._pending:
                excess = self._pending_len - self.max_buffered
                head = self._pending[0]
                if head.size <= excess:
                    self._pending.popleft()
                    self._pending_len -= head.size
                else:
                    self._pending[0] = head[excess:]
                    self._pending_len -= excess

    def _pull(self, count: int) -> np.ndarray:
        out = np.zeros(count, dtype=np.float32)
        filled = 0
        with self._lock:
            while filled < count and self._pending:
                head = self._pending[0]
                take = min(head.size, count - filled)
                out[filled : filled + take] = head[:take]
                filled += take
                if take == head.size:
                    self._pending.popleft()
                else:
                    self._pending[0] = head[take:]
                self._pending_len -= take
        return out


class AudioContext:
    """Realtime processing graph: merger feeding the PCM framer."""

    def __init__(self, sample_rate: int, frame_size: int, frame_sink: FrameSink):
        self.sample_rate = sample_rate
        self.framer = PCMFramer(frame_size=frame_size, channels=2, on_frame=frame_sink)
        self.merger = ChannelMerger(self.framer.process, max_buffered=sample_rate)
        self.state = "running"

    def connect_source(self, track, channel: int) -> None:
        track.connect(functools.partial(self.merger.write, channel))

    def close(self) -> None:
        if self.state == "closed":
            return
        self.state = "closed"
        self.merger.disconnect()
        self.framer.reset()


class AudioGraph:
    """Owns one audio context and every track backing it.

    `stop()` releases every track acquired by `start()`, on every exit path,
    and may be called any number of times.
    """

    def __init__(
        self,
        media_devices,
        sample_rate: int = 16000,
        frame_size: int = 2048,
        context_factory: Callable[[int, int, FrameSink], AudioContext] = AudioContext,
    ):
        self.media_devices = media_devices
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.context_factory = context_factory
        self._context: AudioContext | None = None
        self._tracks: list = []

    @property
    def is_active(self) -> bool:
        return self._context is not None

    @property
    def tracks(self) -> list:
        return list(self._tracks)

    def start(self, frame_sink: FrameSink, on_ended: Callable[[], None] | None = None) -> None:
        """Acquire both sources and start streaming frames into `frame_sink`.

        Args:
            frame_sink: Non-blocking callable receiving each PCM frame
            on_ended: Called from the audio thread if a source ends on its own

        Raises:
            PermissionDenied: If either source cannot be opened
            NoAudioTrack: If the system share has no audio track
            CaptureError: If the graph cannot be built
        """
        if self.is_active:
            raise CaptureError("Audio graph already active")

        mic_stream = self.media_devices.get_user_media(microphone_constraints(self.sample_rate))
        try:
            system_stream = self.media_devices.get_display_media(system_constraints(self.sample_rate))
        except Exception:
            mic_stream.stop()
            raise

        self._tracks = [*mic_stream.tracks, *system_stream.tracks]

        if not mic_stream.audio_tracks:
            self._release_tracks()
            raise NoAudioTrack("Microphone stream has no audio track")
        if not system_stream.audio_tracks:
            self._release_tracks()
            raise NoAudioTrack(
                "System audio share has no audio track. "
                "Select a loopback or monitor device with input channels."
            )

        try:
            context = self.context_factory(self.sample_rate, self.frame_size, frame_sink)
            self._context = context
            context.connect_source(mic_stream.audio_tracks[0], MICROPHONE_CHANNEL)
            context.connect_source(system_stream.audio_tracks[0], SYSTEM_CHANNEL)

            handler = self._ended_handler(on_ended)
            for track in self._tracks:
                track.on_ended = handler
            for track in self._tracks:
                track.start()
        except Exception as e:
            self.stop()
            if isinstance(e, CaptureError):
                raise
            raise CaptureError(f"Failed to build audio graph: {e}") from e

        logger.info(
            "Audio graph started (%d tracks, sample_rate=%d, frame_size=%d)",
            len(self._tracks),
            self.sample_rate,
            self.frame_size,
        )

    def stop(self) -> None:
        """Disconnect the graph, close the context and stop all tracks."""
        context, self._context = self._context, None
        if context is not None:
            try:
                context.close()
            except Exception as e:
                logger.warning("Error closing audio context: %s", e)
        released = self._release_tracks()
        if context is not None or released:
            logger.info("Audio graph stopped (%d tracks released)", released)

    def _release_tracks(self) -> int:
        tracks, self._tracks = self._tracks, []
        for track in tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning("Error stopping track %s: %s", getattr(track, "label", track), e)
        return len(tracks)

    @staticmethod
    def _ended_handler(on_ended: Callable[[], None] | None):
        def _handle(track) -> None:
            logger.warning("Capture source %s ended", getattr(track, "label", track))
            if on_ended is not None:
                on_ended()

        return _handle


def resolve_device(selection: int | str | None) -> int | None:
    """Resolve a configured device index or name to a sounddevice index.

    Names match exactly first, then by substring, case-insensitively.
    Returns None for the default device or when no match exists.
    """
    if selection is None or isinstance(selection, int):
        return selection

    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]
    except Exception as e:
        logger.warning("Unable to enumerate audio devices for '%s': %s", selection, e)
        return None

    target = selection.strip().lower()
    partial_matches: list[tuple[int, str]] = []
    available: list[str] = []

    for idx, dev_info in enumerate(device_list):
        if dev_info.get("max_input_channels", 0) <= 0:
            continue

        name = dev_info.get("name", f"Device {idx}")
        normalized = name.strip().lower()
        available.append(f"[{idx}] {name}")

        if normalized == target:
            logger.debug("Resolved audio device '%s' to index %d (exact match)", selection, idx)
            return idx

        if target in normalized:
            partial_matches.append((idx, name))

    if partial_matches:
        idx, name = partial_matches[0]
        logger.debug("Resolved audio device '%s' to index %d via partial match (%s)", selection, idx, name)
        return idx

    logger.warning(
        "Audio device '%s' not found. Available devices: %s",
        selection,
        "; ".join(available) if available else "none",
    )
    return None
