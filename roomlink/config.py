"""Configuration management for roomlink.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (ROOMLINK_SIGNALING_WS, ROOMLINK_CALL_API_URL)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- roomlink.toml in current working directory
- ~/.roomlink/config.toml

Environment selection via ROOMLINK_ENV (development, staging, production).
Defaults to production if not set.

Example roomlink.toml::

    [environments.production]
    signaling_websocket = "ws://signal.example.org:8765"
    call_api_url = "https://calls.example.org"

    [discovery]
    initial_delay = 0.5
    interval = 1.5

    [negotiation]
    timeout = 30

    [[ice_servers]]
    urls = ["stun:stun.l.google.com:19302"]

    [media]
    video_device = "/dev/video0"
    audio_device = "default"
    format = "v4l2"
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger


@dataclass
class DiscoveryConfig:
    """Cadence of presence announcements.

    Attributes:
        initial_delay: Seconds between the first and second broadcast.
        interval: Seconds between subsequent broadcasts.
    """

    initial_delay: float = 0.5
    interval: float = 1.5

    def __post_init__(self):
        if self.initial_delay < 0:
            raise ValueError("Discovery initial_delay cannot be negative")
        if self.interval <= 0:
            raise ValueError("Discovery interval must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "DiscoveryConfig":
        return cls(
            initial_delay=float(data.get("initial_delay", cls.initial_delay)),
            interval=float(data.get("interval", cls.interval)),
        )


@dataclass
class NegotiationConfig:
    """Negotiation policy.

    Attributes:
        timeout: Seconds after which a pending initiation is abandoned when
            the peer announces itself again. None disables the timeout.
    """

    timeout: Optional[float] = None

    def __post_init__(self):
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("Negotiation timeout must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "NegotiationConfig":
        timeout = data.get("timeout")
        return cls(timeout=float(timeout) if timeout is not None else None)


@dataclass
class IceServerConfig:
    """A single STUN/TURN server entry."""

    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")

    def to_kwargs(self) -> dict:
        """Keyword arguments for ``aiortc.RTCIceServer``."""
        kwargs = {"urls": self.urls}
        if self.username:
            kwargs["username"] = self.username
        if self.credential:
            kwargs["credential"] = self.credential
        return kwargs


@dataclass
class MediaConfig:
    """Local capture devices passed to ``aiortc.contrib.media.MediaPlayer``.

    Attributes:
        video_device: Video device or file, None to skip video.
        audio_device: Audio device or file, None to skip audio.
        format: Input format for the devices (e.g. "v4l2", "avfoundation").
        options: Extra ffmpeg options.
    """

    video_device: Optional[str] = None
    audio_device: Optional[str] = None
    format: Optional[str] = None
    options: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        return cls(
            video_device=data.get("video_device"),
            audio_device=data.get("audio_device"),
            format=data.get("format"),
            options=dict(data.get("options", {})),
        )


# Default signaling server URLs
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8765"
DEFAULT_CALL_API_URL = "http://localhost:3001"

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for roomlink."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.call_api_url: str = DEFAULT_CALL_API_URL
        self.environment: str = "production"
        self.discovery = DiscoveryConfig()
        self.negotiation = NegotiationConfig()
        self.media = MediaConfig()
        self.ice_servers: List[IceServerConfig] = []
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (ROOMLINK_SIGNALING_WS, ROOMLINK_CALL_API_URL)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from ROOMLINK_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("ROOMLINK_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid ROOMLINK_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. roomlink.toml in current working directory
        2. ~/.roomlink/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "roomlink.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".roomlink" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Invalid sections are reported and left at their defaults.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

        if "call_api_url" in env_config:
            self.call_api_url = env_config["call_api_url"]
            logger.debug(f"Loaded call_api_url from config: {self.call_api_url}")

        try:
            self.discovery = DiscoveryConfig.from_dict(
                self._config_data.get("discovery", {})
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid [discovery] section: {e}. Using defaults.")

        try:
            self.negotiation = NegotiationConfig.from_dict(
                self._config_data.get("negotiation", {})
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid [negotiation] section: {e}. Using defaults.")

        self.media = MediaConfig.from_dict(self._config_data.get("media", {}))

        ice_servers = []
        for entry in self._config_data.get("ice_servers", []):
            if "urls" not in entry:
                logger.warning(f"Skipping ICE server entry without urls: {entry}")
                continue
            try:
                ice_servers.append(
                    IceServerConfig(
                        urls=entry["urls"],
                        username=entry.get("username"),
                        credential=entry.get("credential"),
                    )
                )
            except ValueError as e:
                logger.warning(f"Skipping invalid ICE server entry: {e}")
        self.ice_servers = ice_servers

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("ROOMLINK_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        api_override = os.getenv("ROOMLINK_CALL_API_URL")
        if api_override:
            self.call_api_url = api_override
            logger.info(f"Overriding call_api_url from env: {self.call_api_url}")

    def get_call_endpoint(self, call_id: str) -> str:
        """Get the call tracker endpoint for one call.

        Args:
            call_id: Identifier of the call record.

        Returns:
            Full endpoint URL.
        """
        return f"{self.call_api_url.rstrip('/')}/api/calls/{call_id}"


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
