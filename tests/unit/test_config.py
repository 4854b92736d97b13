"""
Unit Tests for Service Bus Explorer Configuration

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import json

import pytest
from pydantic import ValidationError

from sbexplorer.config import ClientConfig, LogLevel, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SBX_LOG_LEVEL", "SBX_LOG_FILE", "SBX_LOG_FORMAT", "SBX_REQUEST_TIMEOUT",
                 "SBX_SEND_TIMEOUT", "SBX_TRANSPORT", "SBX_RETRY_TOTAL",
                 "SBX_PURGE_WORKERS", "SBX_PURGE_BATCH_SIZE", "SBX_PURGE_CREDIT",
                 "SBX_PURGE_USE_BATCH_DELETE", "SBX_MONITOR_ACTIVE_INTERVAL",
                 "SBX_MONITOR_IDLE_INTERVAL", "SBX_MONITOR_BACKOFF", "SBX_SEARCH_MAX_MATCHES"):
        monkeypatch.delenv(name, raising=False)


class TestClientConfig:
    """Tests for defaults and validation."""

    def test_defaults(self):
        """Test default values."""
        config = ClientConfig()

        assert config.timeouts.request == 10.0
        assert config.connection.websocket is True
        assert config.connection.retry_total == 3
        assert config.receive.inactivity_timeout == 0.5
        assert config.purge.batch_delete_size == 4000
        assert config.purge.workers == 4
        assert config.purge.use_batch_delete is True
        assert config.monitor.idle_interval == 2.0
        assert config.search.max_matches == 50
        assert config.logging.level == LogLevel.INFO

    def test_invalid_values(self):
        """Test out-of-range settings are rejected."""
        with pytest.raises(ValidationError):
            ClientConfig(timeouts={"request": 0})
        with pytest.raises(ValidationError):
            ClientConfig(connection={"retry_total": -1})
        with pytest.raises(ValidationError):
            ClientConfig(purge={"batch_delete_size": 5000})
        with pytest.raises(ValidationError):
            ClientConfig(purge={"workers": 0})


class TestLoadConfig:
    """Tests for file, environment and override layering."""

    def test_defaults_without_sources(self):
        """Test loading with no sources gives defaults."""
        assert load_config() == ClientConfig()

    def test_yaml_file(self, tmp_path):
        """Test YAML files are loaded."""
        path = tmp_path / "sbx.yaml"
        path.write_text("timeouts:\n  request: 15\npurge:\n  workers: 8\nlogging:\n  level: DEBUG\n")

        config = load_config(str(path))

        assert config.timeouts.request == 15
        assert config.timeouts.send == 5.0
        assert config.purge.workers == 8
        assert config.logging.level == LogLevel.DEBUG

    def test_json_file(self, tmp_path):
        """Test JSON files are loaded."""
        path = tmp_path / "sbx.json"
        path.write_text(json.dumps({"monitor": {"poll_count": 25}}))

        assert load_config(str(path)).monitor.poll_count == 25

    def test_empty_yaml_file(self, tmp_path):
        """Test an empty YAML file means defaults."""
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(str(path)) == ClientConfig()

    def test_missing_file(self, tmp_path):
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "absent.yaml"))

    def test_unsupported_format(self, tmp_path):
        """Test unknown file suffixes are refused."""
        path = tmp_path / "sbx.ini"
        path.write_text("[timeouts]")
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        """Test SBX_* variables take precedence over the file."""
        path = tmp_path / "sbx.yaml"
        path.write_text("purge:\n  workers: 8\n  credit_batch: 100\n")
        monkeypatch.setenv("SBX_PURGE_WORKERS", "2")
        monkeypatch.setenv("SBX_PURGE_USE_BATCH_DELETE", "false")
        monkeypatch.setenv("SBX_REQUEST_TIMEOUT", "3.5")
        monkeypatch.setenv("SBX_LOG_FORMAT", "text")
        monkeypatch.setenv("SBX_LOG_LEVEL", "warning")

        config = load_config(str(path))

        assert config.purge.workers == 2
        assert config.purge.credit_batch == 100
        assert config.purge.use_batch_delete is False
        assert config.timeouts.request == 3.5
        assert config.logging.json_format is False
        assert config.logging.level == LogLevel.WARNING

    def test_connection_environment(self, monkeypatch):
        """Test the transport and retry variables reach the connection settings."""
        monkeypatch.setenv("SBX_TRANSPORT", "amqp")
        monkeypatch.setenv("SBX_RETRY_TOTAL", "0")
        monkeypatch.setenv("SBX_SEARCH_MAX_MATCHES", "5")

        config = load_config()

        assert config.connection.websocket is False
        assert config.connection.retry_total == 0
        assert config.search.max_matches == 5

    def test_overrides_win(self, monkeypatch):
        """Test explicit overrides beat the environment."""
        monkeypatch.setenv("SBX_MONITOR_BACKOFF", "9")

        config = load_config(overrides={"monitor": {"error_backoff": 1}})

        assert config.monitor.error_backoff == 1

    def test_invalid_merged_config(self, monkeypatch):
        """Test invalid environment values fail validation."""
        monkeypatch.setenv("SBX_PURGE_WORKERS", "0")
        with pytest.raises(ValidationError):
            load_config()
