"""
PeerDrop Configuration.

Provides sensible defaults with override capability.
"""

from pydantic import BaseModel, Field, ConfigDict
from pathlib import Path
from typing import Any, Optional
import json
import logging
import os

from .exceptions import ConfigError

# Protocol constants
CHUNK_SIZE = 16 * 1024  # 16KB, the largest single payload sent unchunked
CHUNK_DELAY = 0.1  # seconds between chunk sends

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class PeerDropConfig(BaseModel):
    """
    Configuration for a PeerDrop node.

    Paths default to the ~/.peerdrop/ directory.
    Environment variables override defaults (PEERDROP_* prefix).
    """

    # Identity
    name: str = "peerdrop"
    peer_id: Optional[str] = None  # None = use the advertised host:port

    # Network
    host: str = "0.0.0.0"
    port: int = 9000  # 0 = auto-assign
    advertise_host: str = "127.0.0.1"
    connect_timeout: float = 10.0
    handshake_timeout: float = 10.0
    max_frame_size: int = 16 * 1024 * 1024

    # Transfer
    chunk_size: int = CHUNK_SIZE
    chunk_delay: float = CHUNK_DELAY
    downloads_dir: Path = Field(default_factory=lambda: Path.home() / ".peerdrop" / "downloads")

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def model_post_init(self, __context):
        """Apply environment variable overrides and check bounds."""
        self._apply_env_overrides()
        self.check()

    def _apply_env_overrides(self):
        """Override config from environment variables."""
        env_map = {
            "PEERDROP_NAME": ("name", str),
            "PEERDROP_PEER_ID": ("peer_id", str),
            "PEERDROP_HOST": ("host", str),
            "PEERDROP_PORT": ("port", int),
            "PEERDROP_ADVERTISE_HOST": ("advertise_host", str),
            "PEERDROP_CHUNK_SIZE": ("chunk_size", int),
            "PEERDROP_CHUNK_DELAY": ("chunk_delay", float),
            "PEERDROP_DOWNLOADS_DIR": ("downloads_dir", Path),
            "PEERDROP_LOG_LEVEL": ("log_level", str),
        }

        for env_var, (attr, type_fn) in env_map.items():
            value = os.environ.get(env_var)
            if value is None:
                continue
            try:
                setattr(self, attr, type_fn(value))
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_var}: {value!r}") from e

    def check(self) -> None:
        """
        Validate value ranges.

        Raises:
            ConfigError: If a field is out of bounds
        """
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port must be between 0 and 65535, got {self.port}")
        if self.chunk_size < 1:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_delay < 0:
            raise ConfigError(f"chunk_delay cannot be negative, got {self.chunk_delay}")
        if self.connect_timeout <= 0 or self.handshake_timeout <= 0:
            raise ConfigError("timeouts must be positive")
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"Unknown log level: {self.log_level}")

    @property
    def log_level_value(self) -> int:
        """Numeric logging level."""
        return getattr(logging, self.log_level)

    def to_dict(self) -> dict[str, Any]:
        """Export config to dictionary."""
        return {
            "name": self.name,
            "peer_id": self.peer_id,
            "host": self.host,
            "port": self.port,
            "advertise_host": self.advertise_host,
            "connect_timeout": self.connect_timeout,
            "handshake_timeout": self.handshake_timeout,
            "max_frame_size": self.max_frame_size,
            "chunk_size": self.chunk_size,
            "chunk_delay": self.chunk_delay,
            "downloads_dir": str(self.downloads_dir),
            "log_level": self.log_level,
            "log_file": self.log_file,
        }

    def save(self, path: Path):
        """Save config to file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "PeerDropConfig":
        """Load config from file."""
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

        known = set(cls.model_fields)
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def development(cls) -> "PeerDropConfig":
        """Create development config: ephemeral port, no pacing, verbose logs."""
        return cls(
            name="dev-peer",
            port=0,
            chunk_delay=0.0,
            log_level="DEBUG",
        )

    @classmethod
    def production(cls) -> "PeerDropConfig":
        """Create production config with conservative logging."""
        return cls(
            name="peerdrop",
            log_level="WARNING",
        )
