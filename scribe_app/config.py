"""Configuration loader and validation."""

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "AudioConfig",
    "TransportConfig",
    "StorageConfig",
    "PersistenceConfig",
    "DeepgramConfig",
    "RelayConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_audio_devices",
]

_SECTIONS = ("audio", "transport", "storage", "persistence", "deepgram", "relay", "general")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class AudioConfig:
    """Audio capture configuration.

    Channel 0 of every frame carries the microphone, channel 1 the system
    (loopback) device.
    """

    sample_rate: int = 16000
    frame_size: int = 2048
    microphone_device: int | str | None = None
    system_device: int | str | None = None
    frame_queue_size: int = 64


@dataclass
class TransportConfig:
    """Socket.IO transport settings."""

    server_url: str = "http://localhost:8000"
    socketio_path: str = "socket.io"
    connect_timeout: float = 10.0


@dataclass
class StorageConfig:
    """Storage/session HTTP API settings."""

    api_url: str = "http://localhost:8000/api"
    timeout: float = 10.0


@dataclass
class PersistenceConfig:
    """Chunk persistence scheduling."""

    chunk_interval: float = 30.0
    max_retries: int = 3
    backoff_base: float = 1.0


@dataclass
class DeepgramConfig:
    """Deepgram streaming settings (relay side)."""

    api_key: str | None = None
    model: str = "nova-3"
    language: str = "en"
    punctuate: bool = True
    smart_format: bool = True
    interim_results: bool = True


@dataclass
class RelayConfig:
    """Relay server settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    speaker_labels: list[str] = field(default_factory=lambda: ["Me", "Others"])


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False


@dataclass
class Config:
    """Main configuration container."""

    audio: AudioConfig = field(default_factory=AudioConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. SCRIBE_CONFIG env var
                  2. ./scribe.toml
                  3. ~/.config/scribe.toml
                  and falls back to built-in defaults when none exists.
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If an explicit config file is missing or values are invalid
        """
        if env is None:
            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path) if resolved_path else {}

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                audio=AudioConfig(**coerced["audio"]),
                transport=TransportConfig(**coerced["transport"]),
                storage=StorageConfig(**coerced["storage"]),
                persistence=PersistenceConfig(**coerced["persistence"]),
                deepgram=DeepgramConfig(**coerced["deepgram"]),
                relay=RelayConfig(**coerced["relay"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate client-side configuration.

        Raises:
            ConfigError: If any value is out of range
        """
        validate_audio_config(self.audio)
        validate_persistence_config(self.persistence)
        if self.storage.timeout <= 0:
            raise ConfigError(f"storage.timeout must be positive, got {self.storage.timeout}")
        if self.transport.connect_timeout <= 0:
            raise ConfigError(
                f"transport.connect_timeout must be positive, got {self.transport.connect_timeout}"
            )


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path | None:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. SCRIBE_CONFIG environment variable
    3. ./scribe.toml (current directory)
    4. ~/.config/scribe.toml (user config directory)

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("SCRIBE_CONFIG"):
        candidate = Path(env_path)
        if not candidate.exists():
            raise ConfigError(f"Config file from SCRIBE_CONFIG not found: {candidate}")
        logger.info("Using config file: %s", candidate.resolve())
        return candidate.resolve()

    for candidate in (Path("scribe.toml"), Path.home() / ".config" / "scribe.toml"):
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    logger.info("No config file found, using defaults")
    return None


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for overrides

    Returns:
        Coerced dictionary ready for dataclass instantiation
    """
    coerced = {}

    for section in _SECTIONS:
        section_data = raw_data.get(section, {})
        if not isinstance(section_data, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(section_data)

    deepgram_section = coerced["deepgram"]
    if not deepgram_section.get("api_key"):
        deepgram_section["api_key"] = env.get("DEEPGRAM_API_KEY")

    if api_url := env.get("SCRIBE_API_URL"):
        coerced["storage"]["api_url"] = api_url
    if server_url := env.get("SCRIBE_SERVER_URL"):
        coerced["transport"]["server_url"] = server_url

    labels = coerced["relay"].get("speaker_labels")
    if labels is not None:
        if not isinstance(labels, (list, tuple)) or not all(isinstance(x, str) for x in labels):
            raise ConfigError("relay.speaker_labels must be a list of strings")
        coerced["relay"]["speaker_labels"] = list(labels)

    return coerced


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio capture devices.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate
        Returns empty list if sounddevice unavailable or no devices found
    """
    try:
        import sounddevice
    except ImportError:
        logger.warning("sounddevice not available, cannot enumerate audio devices")
        return []

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": dev_info.get("name", f"Device {idx}"),
                        "channels": dev_info.get("max_input_channels", 0),
                        "sample_rate": dev_info.get("default_samplerate", 0),
                    }
                )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_audio_config(audio_cfg: AudioConfig) -> None:
    """Validate audio capture settings.

    Raises:
        ConfigError: If sample rate, frame size or queue size is invalid
    """
    if audio_cfg.sample_rate <= 0:
        raise ConfigError(f"audio.sample_rate must be positive, got {audio_cfg.sample_rate}")
    if audio_cfg.frame_size <= 0:
        raise ConfigError(f"audio.frame_size must be positive, got {audio_cfg.frame_size}")
    if audio_cfg.frame_queue_size <= 0:
        raise ConfigError(
            f"audio.frame_queue_size must be positive, got {audio_cfg.frame_queue_size}"
        )


def validate_persistence_config(persistence_cfg: PersistenceConfig) -> None:
    """Validate chunk persistence settings.

    Raises:
        ConfigError: If interval, retry ceiling or backoff base is invalid
    """
    if persistence_cfg.chunk_interval <= 0:
        raise ConfigError(
            f"persistence.chunk_interval must be positive, got {persistence_cfg.chunk_interval}"
        )
    if persistence_cfg.max_retries < 0:
        raise ConfigError(
            f"persistence.max_retries must be non-negative, got {persistence_cfg.max_retries}"
        )
    if persistence_cfg.backoff_base < 0:
        raise ConfigError(
            f"persistence.backoff_base must be non-negative, got {persistence_cfg.backoff_base}"
        )


def validate_relay_config(relay_cfg: RelayConfig, deepgram_cfg: DeepgramConfig) -> None:
    """Validate relay server settings.

    Raises:
        ConfigError: If Deepgram key is missing or speaker labels do not cover both channels
    """
    if not deepgram_cfg.api_key:
        raise ConfigError(
            "Deepgram API key is required to run the relay. "
            "Set it in config file or via DEEPGRAM_API_KEY environment variable."
        )
    if len(relay_cfg.speaker_labels) != 2:
        raise ConfigError(
            f"relay.speaker_labels must name exactly 2 channels, got {relay_cfg.speaker_labels}"
        )
    if not 0 < relay_cfg.port < 65536:
        raise ConfigError(f"relay.port out of range: {relay_cfg.port}")


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().
    """
    return Config.from_toml(path, env=env)
