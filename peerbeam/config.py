"""
Configuration management for PeerBeam.

Handles:
- Display name storage
- Signaling server address
- STUN servers and timeouts
- Relay server settings
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import logging

from .mesh.rtc import DEFAULT_ICE_SERVERS

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".peerbeam"

DEFAULT_SERVER_PORT = 9876
DEFAULT_SERVER_URL = f"ws://localhost:{DEFAULT_SERVER_PORT}"

# Environment overrides
ENV_SERVER_URL = "PEERBEAM_SERVER_URL"
ENV_NAME = "PEERBEAM_NAME"


@dataclass
class ServerConfig:
    """Configuration for the relay server."""
    host: str = "0.0.0.0"
    port: int = DEFAULT_SERVER_PORT
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "cors_origins": self.cors_origins,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        known_fields = {"host", "port", "cors_origins"}
        return cls(**{k: v for k, v in data.items() if k in known_fields})


@dataclass
class Config:
    """
    Main PeerBeam configuration.

    Stored at ~/.peerbeam/config.json
    """
    display_name: Optional[str] = None
    server_url: str = DEFAULT_SERVER_URL
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    connect_timeout: float = 5.0
    room_poll_interval: float = 3.0

    server: ServerConfig = field(default_factory=ServerConfig)

    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    def ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict:
        return {
            "display_name": self.display_name,
            "server_url": self.server_url,
            "ice_servers": self.ice_servers,
            "connect_timeout": self.connect_timeout,
            "room_poll_interval": self.room_poll_interval,
            "server": self.server.to_dict(),
        }

    def save(self) -> None:
        """Save configuration to disk."""
        self.ensure_data_dir()

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from disk, then apply environment overrides."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        config = cls(data_dir=data_dir)
        if config_path.exists():
            try:
                with open(config_path, 'r') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Ignoring unreadable config {config_path}: {e}")
                data = {}

            config.display_name = data.get("display_name")
            config.server_url = data.get("server_url", DEFAULT_SERVER_URL)
            config.ice_servers = data.get("ice_servers", list(DEFAULT_ICE_SERVERS))
            config.connect_timeout = float(data.get("connect_timeout", 5.0))
            config.room_poll_interval = float(data.get("room_poll_interval", 3.0))
            if "server" in data:
                config.server = ServerConfig.from_dict(data["server"])

        if os.getenv(ENV_SERVER_URL):
            config.server_url = os.environ[ENV_SERVER_URL]
        if os.getenv(ENV_NAME):
            config.display_name = os.environ[ENV_NAME]

        return config

    @classmethod
    def exists(cls, data_dir: Optional[Path] = None) -> bool:
        """Check if configuration exists."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        return (data_dir / "config.json").exists()


# Global config instance
_config: Optional[Config] = None


def get_config(data_dir: Optional[Path] = None) -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load(data_dir)
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
