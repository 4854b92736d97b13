"""
Service Bus Explorer Configuration

Typed client settings with YAML/JSON file loading and SBX_* environment
overrides.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .logging_utils import StructuredLogger


logger = StructuredLogger('sbexplorer.config')


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class TimeoutSettings(BaseModel):
    """Bounded waits, all in seconds."""
    request: float = Field(default=10.0, gt=0, description="Peek, batch delete, sequence operations, settlement")
    send: float = Field(default=5.0, gt=0)


class ConnectionSettings(BaseModel):
    """Options handed to the azure-servicebus client."""
    websocket: bool = Field(default=True, description="AMQP over WebSocket (port 443) instead of AMQP on 5671")
    retry_total: int = Field(default=3, ge=0)
    retry_backoff_factor: float = Field(default=0.8, gt=0)
    retry_backoff_max: float = Field(default=120.0, gt=0)
    logging_enable: bool = Field(default=False, description="SDK frame-level logging")


class ReceiveSettings(BaseModel):
    """Peek-lock receive tuning."""
    inactivity_timeout: float = Field(default=0.5, gt=0)
    default_timeout: float = Field(default=5.0, gt=0)
    default_count: int = Field(default=10, ge=1)


class PurgeSettings(BaseModel):
    """Bulk deletion tuning."""
    batch_delete_size: int = Field(default=4000, ge=1, le=4000)
    workers: int = Field(default=4, ge=1)
    credit_batch: int = Field(default=2000, ge=1)
    initial_idle_timeout: float = Field(default=1.0, gt=0)
    empty_flush_idle_timeout: float = Field(default=1.5, gt=0)
    flowing_idle_timeout: float = Field(default=0.3, gt=0)
    max_empty_flushes: int = Field(default=3, ge=1)
    use_batch_delete: bool = True


class MonitorSettings(BaseModel):
    """Continuous peek polling tuning."""
    initial_peek_count: int = Field(default=100, ge=1)
    poll_count: int = Field(default=10, ge=1)
    active_interval: float = Field(default=0.5, ge=0)
    idle_interval: float = Field(default=2.0, ge=0)
    first_poll_delay: float = Field(default=0.1, ge=0)
    error_backoff: float = Field(default=5.0, ge=0)


class SearchSettings(BaseModel):
    """Filtered peek scans."""
    page_size: int = Field(default=100, ge=1)
    max_matches: int = Field(default=50, ge=1)
    max_messages: int = Field(default=1_000_000, ge=1)


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    json_format: bool = True
    file: Optional[str] = None


class ClientConfig(BaseModel):
    """Main Service Bus Explorer configuration schema."""

    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    receive: ReceiveSettings = Field(default_factory=ReceiveSettings)
    purge: PurgeSettings = Field(default_factory=PurgeSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = ConfigDict(use_enum_values=True)


def load_config(
    config_file: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> ClientConfig:
    """
    Load configuration from defaults, an optional file and the environment.

    Priority order:
    1. Explicit overrides (highest priority)
    2. Environment variables (SBX_*)
    3. Config file (if specified)
    4. Default values

    Environment Variables:
    - SBX_LOG_LEVEL, SBX_LOG_FILE, SBX_LOG_FORMAT ("json" or "text")
    - SBX_REQUEST_TIMEOUT, SBX_SEND_TIMEOUT
    - SBX_TRANSPORT ("websocket" or "amqp"), SBX_RETRY_TOTAL
    - SBX_PURGE_WORKERS, SBX_PURGE_BATCH_SIZE, SBX_PURGE_CREDIT
    - SBX_PURGE_USE_BATCH_DELETE ("true" or "false")
    - SBX_MONITOR_ACTIVE_INTERVAL, SBX_MONITOR_IDLE_INTERVAL, SBX_MONITOR_BACKOFF
    - SBX_SEARCH_MAX_MATCHES

    Example YAML:
        ```yaml
        timeouts:
          request: 15
        purge:
          workers: 8
        logging:
          level: DEBUG
        ```

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValidationError: If the merged configuration is invalid
    """
    config_dict: Dict[str, Any] = {}

    if config_file:
        config_dict = _load_from_file(config_file)

    env_config = _load_from_env()
    config_dict = _merge_configs(config_dict, env_config)

    if overrides:
        config_dict = _merge_configs(config_dict, overrides)

    try:
        config = ClientConfig(**config_dict)
    except ValidationError as e:
        logger.error("Configuration validation failed", error_message=str(e))
        raise

    logger.debug(
        "Configuration loaded",
        config_file=config_file,
        env_overrides=len(env_config) or None
    )
    return config


def _load_from_file(file_path: str) -> Dict[str, Any]:
    """Load configuration from YAML or JSON file."""
    path = Path(file_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with open(path, 'r') as f:
        if path.suffix in ['.yaml', '.yml']:
            return yaml.safe_load(f) or {}
        elif path.suffix == '.json':
            return json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")


def _env_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


def _load_from_env() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    # Logging
    if log_level := os.getenv("SBX_LOG_LEVEL"):
        config.setdefault("logging", {})["level"] = log_level.upper()
    if log_file := os.getenv("SBX_LOG_FILE"):
        config.setdefault("logging", {})["file"] = log_file
    if log_format := os.getenv("SBX_LOG_FORMAT"):
        config.setdefault("logging", {})["json_format"] = log_format.lower() == "json"

    # Timeouts
    if request_timeout := os.getenv("SBX_REQUEST_TIMEOUT"):
        config.setdefault("timeouts", {})["request"] = float(request_timeout)
    if send_timeout := os.getenv("SBX_SEND_TIMEOUT"):
        config.setdefault("timeouts", {})["send"] = float(send_timeout)

    # Connection
    if transport := os.getenv("SBX_TRANSPORT"):
        config.setdefault("connection", {})["websocket"] = transport.lower() != "amqp"
    if retry_total := os.getenv("SBX_RETRY_TOTAL"):
        config.setdefault("connection", {})["retry_total"] = int(retry_total)

    # Purge
    if workers := os.getenv("SBX_PURGE_WORKERS"):
        config.setdefault("purge", {})["workers"] = int(workers)
    if batch_size := os.getenv("SBX_PURGE_BATCH_SIZE"):
        config.setdefault("purge", {})["batch_delete_size"] = int(batch_size)
    if credit := os.getenv("SBX_PURGE_CREDIT"):
        config.setdefault("purge", {})["credit_batch"] = int(credit)
    if use_batch := os.getenv("SBX_PURGE_USE_BATCH_DELETE"):
        config.setdefault("purge", {})["use_batch_delete"] = _env_bool(use_batch)

    # Monitor
    if active := os.getenv("SBX_MONITOR_ACTIVE_INTERVAL"):
        config.setdefault("monitor", {})["active_interval"] = float(active)
    if idle := os.getenv("SBX_MONITOR_IDLE_INTERVAL"):
        config.setdefault("monitor", {})["idle_interval"] = float(idle)
    if backoff := os.getenv("SBX_MONITOR_BACKOFF"):
        config.setdefault("monitor", {})["error_backoff"] = float(backoff)

    # Search
    if max_matches := os.getenv("SBX_SEARCH_MAX_MATCHES"):
        config.setdefault("search", {})["max_matches"] = int(max_matches)

    return config


def _merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two configuration dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_configs(result[key], value)
        else:
            result[key] = value

    return result
