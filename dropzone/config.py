"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from .exceptions import ConfigError


DEFAULT_ICE_SERVERS = ['stun:stun.l.google.com:19302']


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Config:
    """
    Dropzone Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (DROPZONE_*)
    2. Config file (config.json)
    3. Default values
    """
    # Signaling server
    host: str = '0.0.0.0'
    port: int = 8000
    trust_proxy: bool = True
    keepalive_interval: float = 30.0

    # Client
    server_url: str = 'ws://127.0.0.1:8000'
    direct_channel: bool = True
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    reconnect_delay: float = 5.0
    retry_delay: float = 1.0

    # Transfer
    chunk_size: int = 64000
    max_partition_size: int = 1000000
    output_dir: Path = field(default_factory=lambda: Path('./received'))

    # Logging
    log_level: str = 'INFO'

    def __post_init__(self):
        self.output_dir = Path(self.output_dir)
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_partition_size < self.chunk_size:
            raise ConfigError("max_partition_size must be at least chunk_size")
        if self.keepalive_interval <= 0:
            raise ConfigError("keepalive_interval must be positive")

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        defaults = cls()

        ice = os.getenv('DROPZONE_ICE_SERVERS', '')
        ice_servers = [s.strip() for s in ice.split(',') if s.strip()] or defaults.ice_servers

        output_dir = os.getenv('DROPZONE_OUTPUT_DIR')

        return cls(
            host=os.getenv('DROPZONE_HOST', defaults.host),
            port=_env_number('DROPZONE_PORT', defaults.port, int),
            trust_proxy=_env_flag('DROPZONE_TRUST_PROXY', defaults.trust_proxy),
            keepalive_interval=_env_number(
                'DROPZONE_KEEPALIVE_INTERVAL', defaults.keepalive_interval, float
            ),
            server_url=os.getenv('DROPZONE_SERVER_URL', defaults.server_url),
            direct_channel=_env_flag('DROPZONE_DIRECT_CHANNEL', defaults.direct_channel),
            ice_servers=ice_servers,
            reconnect_delay=_env_number(
                'DROPZONE_RECONNECT_DELAY', defaults.reconnect_delay, float
            ),
            retry_delay=_env_number('DROPZONE_RETRY_DELAY', defaults.retry_delay, float),
            chunk_size=_env_number('DROPZONE_CHUNK_SIZE', defaults.chunk_size, int),
            max_partition_size=_env_number(
                'DROPZONE_MAX_PARTITION_SIZE', defaults.max_partition_size, int
            ),
            output_dir=Path(output_dir) if output_dir else defaults.output_dir,
            log_level=os.getenv('DROPZONE_LOG_LEVEL', defaults.log_level),
        )

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            return cls()

        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid config file {path}: {e}")

        known = set(cls().to_dict())
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        return cls(**data)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'trust_proxy': self.trust_proxy,
            'keepalive_interval': self.keepalive_interval,
            'server_url': self.server_url,
            'direct_channel': self.direct_channel,
            'ice_servers': list(self.ice_servers),
            'reconnect_delay': self.reconnect_delay,
            'retry_delay': self.retry_delay,
            'chunk_size': self.chunk_size,
            'max_partition_size': self.max_partition_size,
            'output_dir': str(self.output_dir),
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    config = Config()

    if config_path and Path(config_path).exists():
        config = Config.from_file(config_path)

    env_config = Config.from_env()
    default_config = Config()

    # Merge (env takes precedence for non-default values)
    for key in config.to_dict():
        env_val = getattr(env_config, key)
        if env_val != getattr(default_config, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "port": 8000,
  "trust_proxy": true,
  "keepalive_interval": 30.0,
  "server_url": "ws://127.0.0.1:8000",
  "direct_channel": true,
  "ice_servers": ["stun:stun.l.google.com:19302"],
  "chunk_size": 64000,
  "max_partition_size": 1000000,
  "output_dir": "./received",
  "log_level": "INFO"
}
"""
