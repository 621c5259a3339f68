"""
Market Connector - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the REST client and the stream layer.

SOURCES:
- Defaults (dataclass fields)
- Environment variables, optionally seeded from a .env file
  (ConnectorConfig.from_env)
- YAML file (ConnectorConfig.from_yaml)

Invalid values are rejected by validate() at construction
of a client, never at call time.

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from market_connector.exceptions import ConfigError
from market_connector.rate_limiter import RateBudget
from market_connector.retry import RetryPolicy


logger = logging.getLogger(__name__)


MAINNET_BASE_URL = "https://api.binance.com"
MAINNET_WS_URL = "wss://stream.binance.com:9443/ws"
TESTNET_BASE_URL = "https://testnet.binance.vision"
TESTNET_WS_URL = "wss://testnet.binance.vision/ws"


# ============================================================
# STREAM CONFIGURATION
# ============================================================

@dataclass
class StreamConfig:
    """
    Supervised stream configuration.

    Connection establishment retries exponentially and gives up
    after connect_max_attempts per cycle; the outer reconnect
    loop waits a fixed delay and never gives up.
    """

    channel_capacity: int = 100
    """Bounded output channel size per subscription."""

    connect_max_attempts: int = 5
    """Connect attempts per reconnect cycle."""

    connect_backoff_base_seconds: float = 1.0
    """Delay after failed connect attempt n is base * 2^(n-1)."""

    reconnect_delay_seconds: float = 5.0
    """Fixed delay between a lost connection and the next cycle."""

    idle_timeout_seconds: Optional[float] = None
    """Treat the connection as ended when no frame arrives in this window."""

    emit_connection_errors: bool = False
    """Also push connection-loss errors onto the output channel."""

    def validate(self) -> None:
        """Validate stream parameters."""
        if self.channel_capacity < 1:
            raise ConfigError("channel_capacity must be >= 1", config_key="channel_capacity")
        if self.connect_max_attempts < 1:
            raise ConfigError("connect_max_attempts must be >= 1", config_key="connect_max_attempts")
        if self.connect_backoff_base_seconds < 0:
            raise ConfigError(
                "connect_backoff_base_seconds must be >= 0",
                config_key="connect_backoff_base_seconds",
            )
        if self.reconnect_delay_seconds < 0:
            raise ConfigError("reconnect_delay_seconds must be >= 0", config_key="reconnect_delay_seconds")
        if self.idle_timeout_seconds is not None and self.idle_timeout_seconds <= 0:
            raise ConfigError("idle_timeout_seconds must be > 0", config_key="idle_timeout_seconds")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "channel_capacity": self.channel_capacity,
            "connect_max_attempts": self.connect_max_attempts,
            "connect_backoff_base_seconds": self.connect_backoff_base_seconds,
            "reconnect_delay_seconds": self.reconnect_delay_seconds,
            "idle_timeout_seconds": self.idle_timeout_seconds,
            "emit_connection_errors": self.emit_connection_errors,
        }


# ============================================================
# CONNECTOR CONFIGURATION
# ============================================================

@dataclass
class ConnectorConfig:
    """Configuration for MarketDataClient and MarketStreamClient."""

    api_key: Optional[str] = None
    secret_key: Optional[str] = None
    testnet: bool = False

    base_url: Optional[str] = None
    """REST base URL override."""

    ws_url: Optional[str] = None
    """WebSocket base URL override."""

    timeout_seconds: float = 10.0
    requests_per_minute: int = 1200
    enable_retries: bool = True
    max_retries: int = 3
    """Retries beyond the first attempt."""

    stream: StreamConfig = field(default_factory=StreamConfig)

    # --------------------------------------------------------
    # DERIVED VALUES
    # --------------------------------------------------------

    def get_base_url(self) -> str:
        """REST API base URL."""
        if self.base_url:
            return self.base_url
        return TESTNET_BASE_URL if self.testnet else MAINNET_BASE_URL

    def get_ws_url(self) -> str:
        """WebSocket base URL."""
        if self.ws_url:
            return self.ws_url
        return TESTNET_WS_URL if self.testnet else MAINNET_WS_URL

    def is_authenticated(self) -> bool:
        """Whether both API credentials are set."""
        return self.api_key is not None and self.secret_key is not None

    def rate_budget(self) -> RateBudget:
        """Default shared request budget."""
        return RateBudget.per_minute(self.requests_per_minute)

    def retry_policy(self) -> RetryPolicy:
        """Retry policy for one-shot requests."""
        return RetryPolicy.from_retries(self.max_retries, enabled=self.enable_retries)

    def validate(self) -> None:
        """
        Validate configuration.

        Raises:
            ConfigError: On any invalid value
        """
        if not self.timeout_seconds > 0:
            raise ConfigError("Timeout must be greater than 0", config_key="timeout_seconds")
        if self.requests_per_minute <= 0:
            raise ConfigError(
                "Requests per minute must be greater than 0",
                config_key="requests_per_minute",
            )
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0", config_key="max_retries")
        self.stream.validate()

    # --------------------------------------------------------
    # LOADERS
    # --------------------------------------------------------

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "ConnectorConfig":
        """
        Load configuration from environment variables.

        Args:
            env_file: Optional .env file loaded first; variables
                already set in the environment take precedence

        Expected env vars (all optional):
        - BINANCE_API_KEY / BINANCE_SECRET_KEY
        - BINANCE_TESTNET
        - BINANCE_BASE_URL / BINANCE_WS_URL
        - BINANCE_TIMEOUT_SECONDS
        - BINANCE_REQUESTS_PER_MINUTE
        - BINANCE_ENABLE_RETRIES
        - BINANCE_MAX_RETRIES
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)

        config = cls()

        config.api_key = os.getenv("BINANCE_API_KEY") or None
        config.secret_key = os.getenv("BINANCE_SECRET_KEY") or None
        config.base_url = os.getenv("BINANCE_BASE_URL") or None
        config.ws_url = os.getenv("BINANCE_WS_URL") or None

        config.testnet = _env_bool("BINANCE_TESTNET", config.testnet)
        config.enable_retries = _env_bool("BINANCE_ENABLE_RETRIES", config.enable_retries)
        config.timeout_seconds = _env_number("BINANCE_TIMEOUT_SECONDS", float, config.timeout_seconds)
        config.requests_per_minute = _env_number(
            "BINANCE_REQUESTS_PER_MINUTE", int, config.requests_per_minute
        )
        config.max_retries = _env_number("BINANCE_MAX_RETRIES", int, config.max_retries)

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "ConnectorConfig":
        """Load configuration from a YAML file."""
        import yaml

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectorConfig":
        """Create from dictionary; unknown keys are rejected."""
        data = dict(data)
        stream_data = data.pop("stream", None) or {}

        known = {
            "api_key", "secret_key", "testnet", "base_url", "ws_url",
            "timeout_seconds", "requests_per_minute", "enable_retries", "max_retries",
        }
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")

        stream_known = set(StreamConfig().to_dict())
        stream_unknown = set(stream_data) - stream_known
        if stream_unknown:
            raise ConfigError(f"Unknown stream configuration keys: {sorted(stream_unknown)}")

        return cls(stream=StreamConfig(**stream_data), **data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary. Secrets are masked."""
        return {
            "api_key": "***" if self.api_key else None,
            "secret_key": "***" if self.secret_key else None,
            "testnet": self.testnet,
            "base_url": self.get_base_url(),
            "ws_url": self.get_ws_url(),
            "timeout_seconds": self.timeout_seconds,
            "requests_per_minute": self.requests_per_minute,
            "enable_retries": self.enable_retries,
            "max_retries": self.max_retries,
            "stream": self.stream.to_dict(),
        }


# ============================================================
# ENV HELPERS
# ============================================================

def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    logger.warning(f"Ignoring unparseable {name}={raw!r}, using {default}")
    return default


def _env_number(name: str, cast, default):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring unparseable {name}={raw!r}, using {default}")
        return default
