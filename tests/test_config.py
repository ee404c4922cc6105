"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for client and wait-strategy
settings.
"""

import os
import tempfile

import pytest
import yaml

from usage_billing.config.loader import (
    AppConfig,
    ClientConfig,
    ConsistencyConfig,
    load_config,
)
from usage_billing.core.consistency import FixedDelay, PollWithTimeout


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "client": {
                "base_url": "https://billing.test",
                "token_env": "BILLING_TOKEN",
                "request_timeout": 15,
            },
            "consistency": {
                "usage": {"strategy": "fixed", "delay": 5},
                "revenue": {"strategy": "poll", "delay": 10, "interval": 2, "timeout": 30},
            },
            "ledger_path": "state/ledger.db",
        })

        config = load_config(config_path, environ={"BILLING_TOKEN": "secret"})

        assert config.client.base_url == "https://billing.test"
        assert config.client.api_token == "secret"
        assert config.client.request_timeout == 15.0
        assert config.usage.to_strategy() == FixedDelay(5.0)
        assert config.revenue.to_strategy() == PollWithTimeout(
            interval=2.0, timeout=30.0, initial_delay=10.0
        )
        assert config.ledger_path == "state/ledger.db"

    def test_defaults_without_file(self):
        """Revenue is polled with a longer budget than usage by default."""
        config = load_config(environ={"USAGE_BILLING_API_TOKEN": "secret"})

        assert config.client.api_token == "secret"
        assert config.usage.to_strategy() == FixedDelay(60.0)
        assert config.revenue.to_strategy() == PollWithTimeout(
            interval=30.0, timeout=600.0, initial_delay=60.0
        )
        assert config == AppConfig(client=ClientConfig(api_token="secret"))

    def test_base_url_env_override(self):
        config_path = self._write_config({"client": {"base_url": "https://billing.test"}})
        config = load_config(config_path, environ={"USAGE_BILLING_BASE_URL": "http://localhost:8080"})
        assert config.client.base_url == "http://localhost:8080"

    def test_token_never_read_from_file(self):
        config_path = self._write_config({"client": {"api_token": "leaked"}})
        with pytest.raises(ValueError, match="Unknown keys in client"):
            load_config(config_path, environ={})

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_config(config_path)

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("client: [unclosed")
        with pytest.raises(yaml.YAMLError, match="Invalid YAML"):
            load_config(config_path)

    def test_unknown_top_level_key(self):
        config_path = self._write_config({"retries": 3})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(config_path)

    def test_unknown_consistency_key(self):
        config_path = self._write_config({"consistency": {"events": {"strategy": "fixed"}}})
        with pytest.raises(ValueError, match="Unknown consistency keys"):
            load_config(config_path)

    def test_strategy_required(self):
        config_path = self._write_config({"consistency": {"usage": {"delay": 5}}})
        with pytest.raises(ValueError, match="Missing required 'strategy' in consistency.usage"):
            load_config(config_path)

    def test_poll_needs_interval(self):
        config_path = self._write_config({"consistency": {"revenue": {"strategy": "poll", "timeout": 60}}})
        with pytest.raises(ValueError, match="Invalid consistency.revenue"):
            load_config(config_path)

    def test_negative_delay(self):
        config_path = self._write_config({"consistency": {"usage": {"strategy": "fixed", "delay": -1}}})
        with pytest.raises(ValueError, match="must be a number >= 0"):
            load_config(config_path)

    def test_non_positive_timeout(self):
        config_path = self._write_config({"client": {"request_timeout": 0}})
        with pytest.raises(ValueError, match="request_timeout"):
            load_config(config_path)


class TestConfigObjects:
    """Test direct construction of config dataclasses."""

    def test_base_url_must_be_http(self):
        with pytest.raises(ValueError, match="http"):
            ClientConfig(base_url="ftp://billing.test")

    def test_unknown_strategy(self):
        with pytest.raises(ValueError, match="strategy must be one of"):
            ConsistencyConfig(strategy="backoff")
