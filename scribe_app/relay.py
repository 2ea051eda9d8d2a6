"""Socket.IO relay between recording clients and the transcription provider."""

import functools
import logging
from collections.abc import Callable, Sequence

import socketio
from aiohttp import web

from scribe_app.provider_deepgram import DeepgramStreamingProvider, ProviderResult

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., DeepgramStreamingProvider]


class RelayServer:
    """Relays binary PCM from each client to its own provider stream.

    `start-recording` opens a provider stream for the connection,
    `audio-chunk` forwards a frame, `stop-recording` and `disconnect` close
    the stream. Results return to the same client as `transcription` events
    labelled by channel; failures return as `error` events.
    """

    def __init__(
        self,
        provider_factory: ProviderFactory,
        speaker_labels: Sequence[str] = ("Me", "Others"),
        sio: socketio.AsyncServer | None = None,
    ):
        self.provider_factory = provider_factory
        self.speaker_labels = list(speaker_labels)
        self.sio = sio or socketio.AsyncServer(async_mode="aiohttp", cors_allowed_origins="*")
        self._streams: dict[str, DeepgramStreamingProvider] = {}

        self.sio.on("connect", self.on_connect)
        self.sio.on("disconnect", self.on_disconnect)
        self.sio.on("start-recording", self.on_start_recording)
        self.sio.on("audio-chunk", self.on_audio_chunk)
        self.sio.on("stop-recording", self.on_stop_recording)

    @property
    def active_streams(self) -> int:
        return len(self._streams)

    def create_app(self) -> web.Application:
        app = web.Application()
        self.sio.attach(app)
        app.router.add_get("/health", self.health)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def on_connect(self, sid, environ, auth=None) -> None:
        logger.info("Client connected: %s", sid)

    async def on_disconnect(self, sid, reason=None) -> None:
        await self._close_stream(sid)
        logger.info("Client disconnected: %s", sid)

    async def on_start_recording(self, sid) -> None:
        logger.info("Recording started by: %s", sid)
        await self._close_stream(sid)

        provider = self.provider_factory(
            on_result=functools.partial(self._emit_result, sid),
            on_error=functools.partial(self._emit_error, sid),
        )
        try:
            await provider.start()
        except Exception as e:
            logger.error("Could not open provider stream for %s: %s", sid, e)
            await self.sio.emit("error", "Failed to start transcription", to=sid)
            return

        self._streams[sid] = provider
        await self.sio.emit("recording-started", to=sid)

    async def on_audio_chunk(self, sid, data) -> None:
        provider = self._streams.get(sid)
        if provider is None:
            logger.debug("Dropping audio from %s: no open stream", sid)
            return
        try:
            await provider.send(bytes(data))
        except Exception as e:
            logger.error("Forwarding audio for %s failed: %s", sid, e)
            await self._close_stream(sid)
            await self.sio.emit("error", "Transcription stream failed", to=sid)

    async def on_stop_recording(self, sid) -> None:
        logger.info("Recording stopped by: %s", sid)
        await self._close_stream(sid)
        await self.sio.emit("recording-stopped", to=sid)

    def speaker_for(self, channel: int) -> str | None:
        if 0 <= channel < len(self.speaker_labels):
            return self.speaker_labels[channel]
        return None

    async def _emit_result(self, sid: str, result: ProviderResult) -> None:
        payload = {"text": result.text, "isFinal": result.is_final}
        speaker = self.speaker_for(result.channel)
        if speaker:
            payload["speaker"] = speaker
        await self.sio.emit("transcription", payload, to=sid)

    async def _emit_error(self, sid: str, message: str) -> None:
        await self.sio.emit("error", message, to=sid)

    async def _close_stream(self, sid: str) -> None:
        provider = self._streams.pop(sid, None)
        if provider is None:
            return
        try:
            await provider.finish()
        except Exception as e:
            logger.warning("Error closing provider stream for %s: %s", sid, e)

    async def _on_shutdown(self, app: web.Application) -> None:
        for sid in list(self._streams):
            await self._close_stream(sid)


def deepgram_factory(deepgram_cfg, sample_rate: int) -> ProviderFactory:
    """Build a provider factory from DeepgramConfig."""

    def _factory(on_result, on_error) -> DeepgramStreamingProvider:
        return DeepgramStreamingProvider(
            api_key=deepgram_cfg.api_key,
            on_result=on_result,
            on_error=on_error,
            model=deepgram_cfg.model,
            language=deepgram_cfg.language,
            sample_rate=sample_rate,
            channels=2,
            punctuate=deepgram_cfg.punctuate,
            smart_format=deepgram_cfg.smart_format,
            interim_results=deepgram_cfg.interim_results,
        )

    return _factory
