"""Tests for audio capture, mixing and graph lifecycle."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import sounddevice

from scribe_app.capture import (
    AudioContext,
    AudioGraph,
    CaptureConstraints,
    ChannelMerger,
    MediaStream,
    SoundDeviceMediaDevices,
    SoundDeviceTrack,
    resolve_device,
)
from scribe_app.errors import CaptureError, NoAudioTrack, PermissionDenied


class FakeTrack:
    """Stand-in for a live capture track."""

    def __init__(self, label, kind="audio"):
        self.label = label
        self.kind = kind
        self.consumer = None
        self.on_ended = None
        self.started = False
        self.stop_calls = 0

    def connect(self, consumer):
        self.consumer = consumer

    def start(self):
        self.started = True

    def stop(self):
        self.stop_calls += 1


class FakeMediaDevices:
    """Media devices returning preset tracks."""

    def __init__(self, mic_tracks=None, system_tracks=None, mic_error=None, system_error=None):
        self.mic_tracks = mic_tracks if mic_tracks is not None else [FakeTrack("microphone")]
        self.system_tracks = system_tracks if system_tracks is not None else [FakeTrack("system")]
        self.mic_error = mic_error
        self.system_error = system_error
        self.requests: list[tuple[str, CaptureConstraints]] = []

    def get_user_media(self, constraints):
        self.requests.append(("user", constraints))
        if self.mic_error:
            raise self.mic_error
        return MediaStream(list(self.mic_tracks))

    def get_display_media(self, constraints):
        self.requests.append(("display", constraints))
        if self.system_error:
            raise self.system_error
        return MediaStream(list(self.system_tracks))


def _decode(frame: bytes) -> list[int]:
    return np.frombuffer(frame, dtype="<i2").tolist()


class TestAudioGraphStart:
    """Tests for acquiring and wiring both sources."""

    def test_requests_constraints_per_source(self):
        """Test mic gets processing, system audio keeps source fidelity."""
        devices = FakeMediaDevices()
        graph = AudioGraph(devices, sample_rate=16000, frame_size=4)

        graph.start(MagicMock())

        (kind_a, mic), (kind_b, system) = devices.requests
        assert kind_a == "user" and kind_b == "display"
        assert mic.echo_cancellation is True and mic.noise_suppression is True
        assert system.echo_cancellation is False and system.noise_suppression is False
        assert mic.sample_rate == 16000 and mic.channel_count == 1
        graph.stop()

    def test_starts_all_tracks(self):
        """Test every acquired track is started."""
        devices = FakeMediaDevices()
        graph = AudioGraph(devices, frame_size=4)

        graph.start(MagicMock())

        assert graph.is_active
        assert all(t.started for t in devices.mic_tracks + devices.system_tracks)
        graph.stop()

    def test_channel_zero_is_microphone(self):
        """Test mic samples land on the left channel, system on the right."""
        devices = FakeMediaDevices()
        frames = []
        graph = AudioGraph(devices, frame_size=4)
        graph.start(frames.append)

        mic, system = devices.mic_tracks[0], devices.system_tracks[0]
        system.consumer(np.full(4, -0.5, dtype=np.float32))
        mic.consumer(np.full(4, 0.5, dtype=np.float32))

        assert len(frames) == 1
        assert _decode(frames[0]) == [16384, -16384] * 4
        graph.stop()

    def test_no_audio_track_releases_both_streams(self):
        """Test a share without audio releases every track and builds no context."""
        video = FakeTrack("screen", kind="video")
        devices = FakeMediaDevices(system_tracks=[video])
        context_factory = MagicMock()
        graph = AudioGraph(devices, context_factory=context_factory)

        with pytest.raises(NoAudioTrack):
            graph.start(MagicMock())

        assert devices.mic_tracks[0].stop_calls == 1
        assert video.stop_calls == 1
        context_factory.assert_not_called()
        assert not graph.is_active
        assert graph.tracks == []

    def test_system_permission_denied_releases_microphone(self):
        """Test a refused share does not leak the open microphone."""
        devices = FakeMediaDevices(system_error=PermissionDenied("denied"))
        graph = AudioGraph(devices)

        with pytest.raises(PermissionDenied):
            graph.start(MagicMock())

        assert devices.mic_tracks[0].stop_calls == 1
        assert not graph.is_active

    def test_microphone_permission_denied(self):
        """Test a refused microphone fails before the share is requested."""
        devices = FakeMediaDevices(mic_error=PermissionDenied("denied"))
        graph = AudioGraph(devices)

        with pytest.raises(PermissionDenied):
            graph.start(MagicMock())

        assert [kind for kind, _ in devices.requests] == ["user"]

    def test_context_failure_releases_tracks(self):
        """Test a graph build error stops every track and is wrapped."""
        devices = FakeMediaDevices()
        graph = AudioGraph(devices, context_factory=MagicMock(side_effect=ValueError("boom")))

        with pytest.raises(CaptureError, match="Failed to build audio graph"):
            graph.start(MagicMock())

        assert devices.mic_tracks[0].stop_calls == 1
        assert devices.system_tracks[0].stop_calls == 1

    def test_start_twice_raises(self):
        """Test only one live graph per recording."""
        graph = AudioGraph(FakeMediaDevices())
        graph.start(MagicMock())

        with pytest.raises(CaptureError, match="already active"):
            graph.start(MagicMock())
        graph.stop()

    def test_source_ended_invokes_callback(self):
        """Test a source ending on its own is reported."""
        devices = FakeMediaDevices()
        on_ended = MagicMock()
        graph = AudioGraph(devices)
        graph.start(MagicMock(), on_ended=on_ended)

        system = devices.system_tracks[0]
        system.on_ended(system)

        on_ended.assert_called_once()
        graph.stop()


class TestAudioGraphStop:
    """Tests for teardown."""

    def test_stop_releases_tracks_from_both_sources(self):
        """Test every track from both acquisitions is stopped."""
        extra = FakeTrack("system-video", kind="video")
        devices = FakeMediaDevices(system_tracks=[FakeTrack("system"), extra])
        graph = AudioGraph(devices)
        graph.start(MagicMock())

        graph.stop()

        assert devices.mic_tracks[0].stop_calls == 1
        assert devices.system_tracks[0].stop_calls == 1
        assert extra.stop_calls == 1
        assert not graph.is_active

    def test_stop_is_idempotent(self):
        """Test repeated stop does not touch released resources."""
        devices = FakeMediaDevices()
        graph = AudioGraph(devices)
        graph.start(MagicMock())

        graph.stop()
        graph.stop()

        assert devices.mic_tracks[0].stop_calls == 1

    def test_stop_before_start(self):
        """Test stop on a fresh graph is a no-op."""
        AudioGraph(FakeMediaDevices()).stop()

    def test_stop_continues_after_track_error(self):
        """Test one failing track does not prevent releasing the others."""
        devices = FakeMediaDevices()
        devices.mic_tracks[0].stop = MagicMock(side_effect=RuntimeError("stuck"))
        graph = AudioGraph(devices)
        graph.start(MagicMock())

        graph.stop()

        assert devices.system_tracks[0].stop_calls == 1

    def test_closed_context_ignores_late_blocks(self):
        """Test blocks arriving after close produce no frames."""
        frames = []
        context = AudioContext(sample_rate=16000, frame_size=2, frame_sink=frames.append)
        context.close()

        context.merger.write(0, np.ones(4, dtype=np.float32))

        assert frames == []
        assert context.state == "closed"


class TestChannelMerger:
    """Tests for stereo merging."""

    def test_missing_system_audio_is_silence(self):
        """Test the right channel is zero-filled when system audio lags."""
        blocks = []
        merger = ChannelMerger(blocks.append, max_buffered=16)

        merger.write(1, np.array([0.1, 0.2], dtype=np.float32))
        merger.write(0, np.array([1.0, 1.0, 1.0], dtype=np.float32))

        np.testing.assert_allclose(blocks[0][:, 1], [0.1, 0.2, 0.0])
        np.testing.assert_allclose(blocks[0][:, 0], [1.0, 1.0, 1.0])

    def test_system_audio_consumed_across_blocks(self):
        """Test buffered system samples are split across mic blocks in order."""
        blocks = []
        merger = ChannelMerger(blocks.append, max_buffered=16)

        merger.write(1, np.array([0.1, 0.2, 0.3], dtype=np.float32))
        merger.write(0, np.zeros(2, dtype=np.float32))
        merger.write(0, np.zeros(2, dtype=np.float32))

        np.testing.assert_allclose(blocks[0][:, 1], [0.1, 0.2])
        np.testing.assert_allclose(blocks[1][:, 1], [0.3, 0.0])

    def test_backlog_is_capped(self):
        """Test the oldest unconsumed system audio is dropped."""
        blocks = []
        merger = ChannelMerger(blocks.append, max_buffered=2)

        merger.write(1, np.array([0.1, 0.2, 0.3], dtype=np.float32))
        merger.write(0, np.zeros(2, dtype=np.float32))

        np.testing.assert_allclose(blocks[0][:, 1], [0.2, 0.3])

    def test_unknown_channel_rejected(self):
        """Test only two inputs exist."""
        merger = ChannelMerger(MagicMock(), max_buffered=2)
        with pytest.raises(ValueError):
            merger.write(2, np.zeros(1, dtype=np.float32))


class TestSoundDeviceTrack:
    """Tests for the sounddevice-backed track."""

    @patch("scribe_app.capture.sounddevice.InputStream")
    def test_opens_mono_float_stream(self, mock_input_stream):
        """Test stream parameters follow the constraints."""
        constraints = CaptureConstraints(sample_rate=16000, echo_cancellation=True, noise_suppression=True)
        track = SoundDeviceTrack("microphone", 3, constraints)

        kwargs = mock_input_stream.call_args[1]
        assert kwargs["device"] == 3
        assert kwargs["samplerate"] == 16000
        assert kwargs["channels"] == 1
        assert kwargs["dtype"] == "float32"
        assert kwargs["callback"] == track._callback

    @patch("scribe_app.capture.sounddevice.InputStream")
    def test_callback_forwards_first_channel(self, mock_input_stream):
        """Test blocks reach the consumer as 1-D arrays."""
        track = SoundDeviceTrack("microphone", None, CaptureConstraints(16000, True, True))
        received = []
        track.connect(received.append)

        track._callback(np.array([[0.1], [0.2]], dtype=np.float32), 2, None, None)

        np.testing.assert_allclose(received[0], [0.1, 0.2])

    @patch("scribe_app.capture.sounddevice.InputStream")
    def test_stop_is_idempotent(self, mock_input_stream):
        """Test the stream is closed exactly once."""
        stream = MagicMock()
        mock_input_stream.return_value = stream
        track = SoundDeviceTrack("microphone", None, CaptureConstraints(16000, True, True))

        track.stop()
        track.stop()

        stream.stop.assert_called_once()
        stream.close.assert_called_once()
        assert track.ready_state == "ended"

    @patch("scribe_app.capture.sounddevice.InputStream")
    def test_unexpected_finish_fires_on_ended(self, mock_input_stream):
        """Test a stream ending without stop() is reported."""
        track = SoundDeviceTrack("system", None, CaptureConstraints(16000, False, False))
        track.on_ended = MagicMock()

        track._finished()

        track.on_ended.assert_called_once_with(track)

    @patch("scribe_app.capture.sounddevice.InputStream")
    def test_finish_after_stop_is_silent(self, mock_input_stream):
        """Test a requested stop is not reported as an abnormal end."""
        track = SoundDeviceTrack("system", None, CaptureConstraints(16000, False, False))
        track.on_ended = MagicMock()

        track.stop()
        track._finished()

        track.on_ended.assert_not_called()


class TestSoundDeviceMediaDevices:
    """Tests for sounddevice acquisition."""

    @patch("scribe_app.capture.sounddevice.InputStream")
    def test_portaudio_error_is_permission_denied(self, mock_input_stream):
        """Test device open failures map to PermissionDenied."""
        mock_input_stream.side_effect = sounddevice.PortAudioError("Device unavailable")

        with pytest.raises(PermissionDenied, match="microphone"):
            SoundDeviceMediaDevices().get_user_media(CaptureConstraints(16000, True, True))

    def test_no_system_device_configured(self):
        """Test a missing loopback device yields a stream without audio."""
        stream = SoundDeviceMediaDevices().get_display_media(CaptureConstraints(16000, False, False))
        assert stream.audio_tracks == []

    @patch("scribe_app.capture.sounddevice.query_devices")
    def test_system_device_without_inputs(self, mock_query):
        """Test an output-only device yields a stream without audio."""
        mock_query.return_value = {"name": "Speakers", "max_input_channels": 0}

        devices = SoundDeviceMediaDevices(system_device=5)
        stream = devices.get_display_media(CaptureConstraints(16000, False, False))

        assert stream.audio_tracks == []

    @patch("scribe_app.capture.sounddevice.InputStream")
    @patch("scribe_app.capture.sounddevice.query_devices")
    def test_system_device_opened(self, mock_query, mock_input_stream):
        """Test a loopback device with inputs yields one audio track."""
        mock_query.return_value = {"name": "Monitor of Speakers", "max_input_channels": 2}

        devices = SoundDeviceMediaDevices(system_device=5)
        stream = devices.get_display_media(CaptureConstraints(16000, False, False))

        assert len(stream.audio_tracks) == 1
        assert stream.audio_tracks[0].device == 5


class TestResolveDevice:
    """Tests for device name resolution."""

    DEVICES = [
        {"name": "Built-in Microphone", "max_input_channels": 1},
        {"name": "Speakers", "max_input_channels": 0},
        {"name": "Monitor of Speakers", "max_input_channels": 2},
    ]

    def test_index_and_none_pass_through(self):
        """Test indices and default selection need no lookup."""
        assert resolve_device(None) is None
        assert resolve_device(4) == 4

    @patch("scribe_app.capture.sounddevice.query_devices")
    def test_exact_match(self, mock_query):
        """Test exact names win."""
        mock_query.return_value = self.DEVICES
        assert resolve_device("built-in microphone") == 0

    @patch("scribe_app.capture.sounddevice.query_devices")
    def test_partial_match_skips_output_devices(self, mock_query):
        """Test substring matches only consider input devices."""
        mock_query.return_value = self.DEVICES
        assert resolve_device("speakers") == 2

    @patch("scribe_app.capture.sounddevice.query_devices")
    def test_no_match(self, mock_query):
        """Test unknown names resolve to None."""
        mock_query.return_value = self.DEVICES
        assert resolve_device("usb headset") is None
