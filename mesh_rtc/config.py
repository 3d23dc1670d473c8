"""Configuration management for mesh-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MESH_RTC_SIGNALING_WS, MESH_RTC_STUN_SERVER, MESH_RTC_PEER_TIMEOUT)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- mesh-rtc.toml in current working directory
- ~/.mesh-rtc/config.toml

Environment selection via MESH_RTC_ENV (development, staging, production).
Defaults to production if not set.
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from aiortc.rtcicetransport import parse_stun_turn_uri
from loguru import logger


# Default relay and connectivity-check endpoints
DEFAULT_SIGNALING_WEBSOCKET = "ws://127.0.0.1:9001"
DEFAULT_STUN_SERVER = "stun:127.0.0.1:3478"

# Seconds without activity before a peer is evicted
DEFAULT_PEER_TIMEOUT = 1.0

# Data channel settings (unordered, time-boxed retransmission)
DEFAULT_CHANNEL_LABEL = "mesh"
DEFAULT_MAX_PACKET_LIFETIME = 33  # milliseconds

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class ChannelOptions:
    """Options for the data channel each node opens toward a peer.

    Attributes:
        label: Data channel label.
        ordered: Whether delivery is ordered. Always False for the mesh.
        max_packet_lifetime: Retransmission window in milliseconds.
    """

    label: str = DEFAULT_CHANNEL_LABEL
    ordered: bool = False
    max_packet_lifetime: int = DEFAULT_MAX_PACKET_LIFETIME

    def __post_init__(self):
        """Validate channel options after initialization."""
        if not self.label:
            raise ValueError("Channel label cannot be empty")
        if self.max_packet_lifetime <= 0:
            raise ValueError("max_packet_lifetime must be positive")


class Config:
    """Configuration manager for mesh-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.stun_server: str = DEFAULT_STUN_SERVER
        self.peer_timeout: float = DEFAULT_PEER_TIMEOUT
        self.channel_label: str = DEFAULT_CHANNEL_LABEL
        self.max_packet_lifetime: int = DEFAULT_MAX_PACKET_LIFETIME
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from MESH_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("MESH_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid MESH_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. mesh-rtc.toml in current working directory
        2. ~/.mesh-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "mesh-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".mesh-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

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
            return

        self.apply(env_config)

    def apply(self, values: dict) -> None:
        """Apply a mapping of settings, skipping invalid entries.

        Args:
            values: Mapping of setting name to value, as found in an
                ``[environments.<env>]`` TOML section.
        """
        if "signaling_websocket" in values:
            self.signaling_websocket = str(values["signaling_websocket"])
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

        if "stun_server" in values:
            self._set_stun_server(values["stun_server"], source="config")

        if "peer_timeout" in values:
            self._set_peer_timeout(values["peer_timeout"], source="config")

        if "channel_label" in values and values["channel_label"]:
            self.channel_label = str(values["channel_label"])

        if "max_packet_lifetime" in values:
            try:
                lifetime = int(values["max_packet_lifetime"])
            except (TypeError, ValueError):
                lifetime = 0
            if lifetime > 0:
                self.max_packet_lifetime = lifetime
            else:
                logger.warning(
                    f"Ignoring invalid max_packet_lifetime: {values['max_packet_lifetime']!r}"
                )

    def _set_peer_timeout(self, value, source: str) -> None:
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            timeout = 0.0
        if timeout <= 0:
            logger.warning(f"Ignoring invalid peer_timeout from {source}: {value!r}")
            return
        self.peer_timeout = timeout
        logger.debug(f"Loaded peer_timeout from {source}: {self.peer_timeout}")

    def _set_stun_server(self, value, source: str) -> None:
        try:
            parse_stun_turn_uri(str(value))
        except ValueError as e:
            logger.warning(f"Ignoring invalid stun_server from {source}: {value!r} ({e})")
            return
        self.stun_server = str(value)
        logger.debug(f"Loaded stun_server from {source}: {self.stun_server}")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("MESH_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        stun_override = os.getenv("MESH_RTC_STUN_SERVER")
        if stun_override:
            self._set_stun_server(stun_override, source="env")

        timeout_override = os.getenv("MESH_RTC_PEER_TIMEOUT")
        if timeout_override:
            self._set_peer_timeout(timeout_override, source="env")

    def get_websocket_url(self, port: int = 9001) -> str:
        """Get the WebSocket relay URL.

        Args:
            port: Port number to use if not specified in URL (default: 9001).

        Returns:
            WebSocket URL with port.
        """
        url = self.signaling_websocket
        if "//" not in url:
            url = f"ws://{url}"
        if ":" not in url.split("//")[-1]:
            url = f"{url}:{port}"
        return url

    def get_channel_options(self) -> ChannelOptions:
        """Get data channel options from the loaded settings.

        Returns:
            ChannelOptions instance.
        """
        return ChannelOptions(
            label=self.channel_label,
            ordered=False,
            max_packet_lifetime=self.max_packet_lifetime,
        )


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
