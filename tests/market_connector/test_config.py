"""
Configuration Tests.

============================================================
PURPOSE
============================================================
Defaults, environment loading, YAML loading and validation.

============================================================
"""

import os

import pytest

from market_connector.config import (
    MAINNET_BASE_URL,
    MAINNET_WS_URL,
    TESTNET_WS_URL,
    ConnectorConfig,
    StreamConfig,
)
from market_connector.exceptions import ConfigError
from market_connector.rate_limiter import RateBudget


ENV_VARS = [
    "BINANCE_API_KEY",
    "BINANCE_SECRET_KEY",
    "BINANCE_TESTNET",
    "BINANCE_BASE_URL",
    "BINANCE_WS_URL",
    "BINANCE_TIMEOUT_SECONDS",
    "BINANCE_REQUESTS_PER_MINUTE",
    "BINANCE_ENABLE_RETRIES",
    "BINANCE_MAX_RETRIES",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    """Tests for default configuration."""

    def test_connector_defaults(self):
        config = ConnectorConfig()

        assert config.get_base_url() == MAINNET_BASE_URL
        assert config.get_ws_url() == MAINNET_WS_URL
        assert config.requests_per_minute == 1200
        assert config.max_retries == 3
        assert config.retry_policy().max_attempts == 4
        assert config.rate_budget() == RateBudget.per_minute(1200)
        assert not config.is_authenticated()

    def test_stream_defaults(self):
        stream = StreamConfig()

        assert stream.channel_capacity == 100
        assert stream.connect_max_attempts == 5
        assert stream.reconnect_delay_seconds == 5.0
        assert stream.idle_timeout_seconds is None

    def test_testnet_urls(self):
        config = ConnectorConfig(testnet=True)

        assert "testnet" in config.get_base_url()
        assert config.get_ws_url() == TESTNET_WS_URL

    def test_url_overrides(self):
        config = ConnectorConfig(testnet=True, base_url="http://localhost:8080")

        assert config.get_base_url() == "http://localhost:8080"

    def test_to_dict_masks_secrets(self):
        data = ConnectorConfig(api_key="key", secret_key="secret").to_dict()

        assert data["api_key"] == "***"
        assert data["secret_key"] == "***"


class TestValidation:
    """Tests for validate()."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"timeout_seconds": 0},
            {"requests_per_minute": 0},
            {"max_retries": -1},
            {"stream": StreamConfig(channel_capacity=0)},
            {"stream": StreamConfig(connect_max_attempts=0)},
            {"stream": StreamConfig(reconnect_delay_seconds=-1)},
            {"stream": StreamConfig(idle_timeout_seconds=0)},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigError):
            ConnectorConfig(**kwargs).validate()

    def test_valid_config(self):
        ConnectorConfig().validate()


class TestFromEnv:
    """Tests for ConnectorConfig.from_env."""

    def test_reads_environment(self, clean_env):
        clean_env.setenv("BINANCE_API_KEY", "k")
        clean_env.setenv("BINANCE_SECRET_KEY", "s")
        clean_env.setenv("BINANCE_TESTNET", "true")
        clean_env.setenv("BINANCE_TIMEOUT_SECONDS", "2.5")
        clean_env.setenv("BINANCE_REQUESTS_PER_MINUTE", "600")
        clean_env.setenv("BINANCE_ENABLE_RETRIES", "0")
        clean_env.setenv("BINANCE_MAX_RETRIES", "5")

        config = ConnectorConfig.from_env()

        assert config.is_authenticated()
        assert config.testnet is True
        assert config.timeout_seconds == 2.5
        assert config.requests_per_minute == 600
        assert config.enable_retries is False
        assert config.max_retries == 5

    def test_unparseable_values_fall_back(self, clean_env):
        clean_env.setenv("BINANCE_MAX_RETRIES", "many")
        clean_env.setenv("BINANCE_TESTNET", "perhaps")

        config = ConnectorConfig.from_env()

        assert config.max_retries == 3
        assert config.testnet is False

    def test_env_file_does_not_override_environment(self, clean_env, tmp_path):
        clean_env.setattr(os, "environ", dict(os.environ))
        clean_env.setenv("BINANCE_MAX_RETRIES", "7")
        env_file = tmp_path / ".env"
        env_file.write_text("BINANCE_MAX_RETRIES=1\nBINANCE_REQUESTS_PER_MINUTE=300\n")

        config = ConnectorConfig.from_env(env_file)

        assert config.max_retries == 7
        assert config.requests_per_minute == 300


class TestFromFile:
    """Tests for dictionary and YAML loading."""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "connector.yaml"
        path.write_text(
            "testnet: true\n"
            "requests_per_minute: 300\n"
            "stream:\n"
            "  channel_capacity: 10\n"
            "  reconnect_delay_seconds: 1.5\n"
        )

        config = ConnectorConfig.from_yaml(path)

        assert config.testnet is True
        assert config.requests_per_minute == 300
        assert config.stream.channel_capacity == 10
        assert config.stream.reconnect_delay_seconds == 1.5

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigError):
            ConnectorConfig.from_dict({"request_per_minute": 10})

        with pytest.raises(ConfigError):
            ConnectorConfig.from_dict({"stream": {"capacity": 10}})
