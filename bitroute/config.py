"""
BitRoute Configuration

Relay endpoints, ICE servers, timeouts and flow-control limits, read from
a JSON file and BITROUTE_* environment variables (a .env file is honored).
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
import json

from dotenv import load_dotenv

MIB = 1024 * 1024


def default_ice_servers() -> List[Dict[str, Any]]:
    """STUN always on, TURN with embedded credentials as last-resort relay."""
    return [
        {'urls': ['stun:stun.l.google.com:19302', 'stun:stun1.l.google.com:19302']},
        {
            'urls': ['turn:openrelay.metered.ca:80', 'turn:openrelay.metered.ca:443'],
            'username': 'openrelayproject',
            'credential': 'openrelayproject',
        },
    ]


@dataclass
class Config:
    """
    BitRoute Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (BITROUTE_*)
    2. Config file (config.json)
    3. Default values
    """
    # Signaling
    signaling_urls: List[str] = field(default_factory=lambda: ['ws://localhost:8765'])
    share_base_url: str = 'http://localhost:8080'

    # Peer connection
    ice_servers: List[Dict[str, Any]] = field(default_factory=default_ice_servers)

    # Timeouts (seconds)
    connect_timeout: float = 5.0
    room_timeout: float = 30.0

    # Retry
    max_retries: int = 3
    retry_delay: float = 1.0

    # Flow control
    high_water_mark: int = 8 * MIB
    buffer_poll_interval: float = 0.05
    speed_sample_interval: float = 0.5
    error_backoff: float = 1.0

    # Storage
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Signaling
        urls = os.getenv('BITROUTE_SIGNALING_URLS', '')
        if urls:
            config.signaling_urls = [u.strip() for u in urls.split(',') if u.strip()]
        config.share_base_url = os.getenv('BITROUTE_SHARE_URL', config.share_base_url)

        # TURN override replaces the built-in relay entry
        turn_url = os.getenv('BITROUTE_TURN_URL')
        if turn_url:
            config.ice_servers = [
                s for s in config.ice_servers if 'username' not in s
            ]
            config.ice_servers.append({
                'urls': [turn_url],
                'username': os.getenv('BITROUTE_TURN_USERNAME'),
                'credential': os.getenv('BITROUTE_TURN_CREDENTIAL'),
            })

        # Timeouts
        config.connect_timeout = float(
            os.getenv('BITROUTE_CONNECT_TIMEOUT', config.connect_timeout)
        )
        config.room_timeout = float(os.getenv('BITROUTE_ROOM_TIMEOUT', config.room_timeout))
        config.max_retries = int(os.getenv('BITROUTE_MAX_RETRIES', config.max_retries))

        # Flow control
        config.high_water_mark = int(
            os.getenv('BITROUTE_HIGH_WATER_MARK', config.high_water_mark)
        )

        # Storage
        download_dir = os.getenv('BITROUTE_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Logging
        config.log_level = os.getenv('BITROUTE_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Signaling
        config.signaling_urls = data.get('signaling_urls', config.signaling_urls)
        config.share_base_url = data.get('share_base_url', config.share_base_url)
        config.ice_servers = data.get('ice_servers', config.ice_servers)

        # Timeouts
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)
        config.room_timeout = data.get('room_timeout', config.room_timeout)
        config.max_retries = data.get('max_retries', config.max_retries)
        config.retry_delay = data.get('retry_delay', config.retry_delay)

        # Flow control
        config.high_water_mark = data.get('high_water_mark', config.high_water_mark)
        config.buffer_poll_interval = data.get(
            'buffer_poll_interval', config.buffer_poll_interval
        )
        config.speed_sample_interval = data.get(
            'speed_sample_interval', config.speed_sample_interval
        )
        config.error_backoff = data.get('error_backoff', config.error_backoff)

        # Storage
        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'signaling_urls': list(self.signaling_urls),
            'share_base_url': self.share_base_url,
            'ice_servers': self.ice_servers,
            'connect_timeout': self.connect_timeout,
            'room_timeout': self.room_timeout,
            'max_retries': self.max_retries,
            'retry_delay': self.retry_delay,
            'high_water_mark': self.high_water_mark,
            'buffer_poll_interval': self.buffer_poll_interval,
            'speed_sample_interval': self.speed_sample_interval,
            'error_backoff': self.error_backoff,
            'download_dir': str(self.download_dir),
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
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in ['signaling_urls', 'share_base_url', 'ice_servers', 'connect_timeout',
                'room_timeout', 'max_retries', 'high_water_mark', 'download_dir',
                'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "signaling_urls": [
    "wss://signal-1.example.org",
    "wss://signal-2.example.org"
  ],
  "share_base_url": "https://bitroute.example.org",
  "ice_servers": [
    {"urls": ["stun:stun.l.google.com:19302"]},
    {"urls": ["turn:turn.example.org:3478"], "username": "user", "credential": "secret"}
  ],
  "connect_timeout": 5.0,
  "room_timeout": 30.0,
  "max_retries": 3,
  "high_water_mark": 8388608,
  "download_dir": "./downloads",
  "log_level": "INFO"
}
"""
