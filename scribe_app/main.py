"""Typer CLI entrypoint for live-scribe."""

import asyncio
import json
import logging
import signal
from pathlib import Path

import typer
from aiohttp import web

from scribe_app._types import TranscriptFragment
from scribe_app.api import StorageClient
from scribe_app.capture import AudioGraph, SoundDeviceMediaDevices
from scribe_app.config import (
    Config,
    ConfigError,
    discover_audio_devices,
    load_config,
    validate_relay_config,
)
from scribe_app.errors import CaptureError, StorageError, TransportError
from scribe_app.relay import RelayServer, deepgram_factory
from scribe_app.session import RecordingController
from scribe_app.transport import TransportChannel

app = typer.Typer(help="Live meeting transcription: record, relay and persist transcripts")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _apply_logging_config(cfg: Config) -> None:
    """Raise the root log level when the config file asks for verbose output."""
    if cfg.general.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled from configuration")


def _merge_config_overrides(
    cfg: Config,
    *,
    server_url: str | None = None,
    api_url: str | None = None,
    microphone: str | None = None,
    system_device: str | None = None,
) -> Config:
    """Apply CLI overrides to configuration.

    Numeric device selections are treated as indices, anything else as a
    device name.
    """
    if server_url is not None:
        logger.debug("Overriding relay server URL to '%s'", server_url)
        cfg.transport.server_url = server_url
    if api_url is not None:
        logger.debug("Overriding storage API URL to '%s'", api_url)
        cfg.storage.api_url = api_url
    if microphone is not None:
        cfg.audio.microphone_device = _parse_device(microphone)
    if system_device is not None:
        cfg.audio.system_device = _parse_device(system_device)
    return cfg


def _parse_device(value: str) -> int | str:
    return int(value) if value.strip().isdigit() else value


def _print_fragment(fragment: TranscriptFragment) -> None:
    if fragment.is_final:
        typer.echo(fragment.labelled_text)


def _print_error(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)


async def _record(cfg: Config, session_id: str) -> None:
    transport = TransportChannel(
        cfg.transport.server_url,
        socketio_path=cfg.transport.socketio_path,
        connect_timeout=cfg.transport.connect_timeout,
    )
    storage = StorageClient(cfg.storage.api_url, timeout=cfg.storage.timeout)
    graph = AudioGraph(
        SoundDeviceMediaDevices(
            microphone_device=cfg.audio.microphone_device,
            system_device=cfg.audio.system_device,
        ),
        sample_rate=cfg.audio.sample_rate,
        frame_size=cfg.audio.frame_size,
    )
    controller = RecordingController(
        session_id=session_id,
        transport=transport,
        graph=graph,
        storage=storage,
        persistence=cfg.persistence,
        frame_queue_size=cfg.audio.frame_queue_size,
        on_transcript=_print_fragment,
        on_error=_print_error,
    )

    loop = asyncio.get_running_loop()
    try:
        await transport.connect()
        await controller.start()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, controller.request_stop)
        typer.echo("Recording... press Ctrl+C to stop")
        await controller.stopped.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await controller.stop()
        await transport.disconnect()
        await storage.aclose()


async def _fetch_transcript(cfg: Config, session_id: str) -> str:
    async with StorageClient(cfg.storage.api_url, timeout=cfg.storage.timeout) as storage:
        return await storage.fetch_transcript(session_id)


@app.command()
def record(
    session_id: str = typer.Option(..., "--session-id", "-s", help="Recording session id"),
    config: Path | None = typer.Option(None, "--config", help="Path to configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    server_url: str | None = typer.Option(None, "--server-url", help="Override relay server URL"),
    api_url: str | None = typer.Option(None, "--api-url", help="Override storage API URL"),
    microphone: str | None = typer.Option(
        None, "--microphone", "-m", help="Microphone device index or name"
    ),
    system_device: str | None = typer.Option(
        None, "--system-device", help="Loopback/monitor device index or name"
    ),
) -> None:
    """Record microphone and system audio into a session transcript."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        _apply_logging_config(cfg)
        cfg = _merge_config_overrides(
            cfg,
            server_url=server_url,
            api_url=api_url,
            microphone=microphone,
            system_device=system_device,
        )
        cfg.validate()
        asyncio.run(_record(cfg, session_id))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except (CaptureError, TransportError) as e:
        logger.error("Recording failed: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Recording interrupted by user")
        raise typer.Exit(0)


@app.command()
def relay(
    config: Path | None = typer.Option(None, "--config", help="Path to configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    host: str | None = typer.Option(None, "--host", help="Override bind host"),
    port: int | None = typer.Option(None, "--port", "-p", help="Override bind port"),
) -> None:
    """Serve the Socket.IO relay to the transcription provider."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        _apply_logging_config(cfg)
        if host is not None:
            cfg.relay.host = host
        if port is not None:
            cfg.relay.port = port
        validate_relay_config(cfg.relay, cfg.deepgram)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)

    server = RelayServer(
        deepgram_factory(cfg.deepgram, cfg.audio.sample_rate),
        speaker_labels=cfg.relay.speaker_labels,
    )
    logger.info("Starting relay on %s:%d", cfg.relay.host, cfg.relay.port)
    web.run_app(server.create_app(), host=cfg.relay.host, port=cfg.relay.port)


@app.command()
def transcript(
    session_id: str = typer.Option(..., "--session-id", "-s", help="Recording session id"),
    config: Path | None = typer.Option(None, "--config", help="Path to configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    api_url: str | None = typer.Option(None, "--api-url", help="Override storage API URL"),
) -> None:
    """Print the persisted transcript of a session."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        _apply_logging_config(cfg)
        cfg = _merge_config_overrides(cfg, api_url=api_url)
        text = asyncio.run(_fetch_transcript(cfg, session_id))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except StorageError as e:
        logger.error("Could not fetch transcript: %s", e)
        raise typer.Exit(1)

    if not text.strip():
        logger.warning("No transcript stored for session %s", session_id)
        return
    typer.echo(text.strip("\n"))


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio capture devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz)"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
