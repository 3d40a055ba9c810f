"""Configuration settings using Pydantic for validation."""

from typing import Any, Optional
import os
import re

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .. import __version__
from ..exceptions import ConfigError


CALLSIGN_PATTERN = re.compile(r'^[A-Z0-9]{1,9}(-[A-Z0-9]{1,2})?$')


class AprsIsConfig(BaseModel):
    """APRS-IS server and session configuration."""
    host: str = Field(default="rotate.aprs.net", description="APRS-IS server host")
    port: int = Field(default=10152, ge=1, le=65535, description="APRS-IS server port (10152 is the full feed)")
    callsign: str = Field(default="N0CALL", description="Station identifier used to log in")
    passcode: Optional[int] = Field(default=None, ge=-1, le=32767, description="APRS-IS passcode, -1 for receive-only")
    filter: Optional[str] = Field(default=None, description="Server-side filter expression")
    software_name: str = Field(default="aprs-firehose", description="Software name sent on login")
    software_version: str = Field(default=__version__, description="Software version sent on login")

    connect_timeout_seconds: float = Field(default=10.0, gt=0, description="TCP connect timeout")
    login_timeout_seconds: float = Field(default=15.0, gt=0, description="Time allowed for the server to answer the login")
    liveness_timeout_seconds: float = Field(default=60.0, gt=0, description="Maximum silence before the session is considered dead")
    read_chunk_size: int = Field(default=4096, ge=1, description="Bytes requested per socket read")
    max_line_length: int = Field(default=2048, ge=1, description="Longest accepted protocol line in bytes")
    max_startup_attempts: int = Field(default=5, ge=0, description="Connection attempts before the first session, 0 for unlimited")

    @field_validator('callsign')
    @classmethod
    def validate_callsign(cls, v):
        v = v.strip().upper()
        if not CALLSIGN_PATTERN.match(v):
            raise ValueError(f"Invalid callsign: {v!r}")
        return v

    @field_validator('filter')
    @classmethod
    def validate_filter(cls, v):
        if v is not None and ('\r' in v or '\n' in v):
            raise ValueError("Filter must not contain line breaks")
        return v or None


class ReconnectConfig(BaseModel):
    """Reconnection backoff configuration."""
    initial_backoff_seconds: float = Field(default=1.0, gt=0, description="First reconnect delay")
    max_backoff_seconds: float = Field(default=120.0, gt=0, description="Upper bound on the reconnect delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff multiplier")
    jitter_ratio: float = Field(default=0.25, ge=0, le=1.0, description="Random extra delay as a fraction of the base delay")
    stable_seconds: float = Field(default=60.0, ge=0, description="Streaming time after which the backoff resets")

    @model_validator(mode='after')
    def check_bounds(self):
        if self.max_backoff_seconds < self.initial_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= initial_backoff_seconds")
        return self


class DedupConfig(BaseModel):
    """Duplicate suppression configuration."""
    horizon_seconds: float = Field(default=30.0, gt=0, description="How long a report suppresses its copies")
    time_bucket_seconds: float = Field(default=3600.0, ge=0, description="Fingerprint time bucket width, 0 to disable")
    max_entries: int = Field(default=100000, ge=1, description="Hard cap on tracked fingerprints")


class DecodeHealthConfig(BaseModel):
    """Decode failure rate monitoring."""
    failure_threshold: int = Field(default=500, ge=1, description="Failures within the window that degrade health")
    window_seconds: float = Field(default=60.0, gt=0, description="Sliding window length")


class StorageConfig(BaseModel):
    """Batching and retry configuration for frame persistence."""
    batch_size: int = Field(default=100, ge=1, description="Frames per write batch")
    max_latency_seconds: float = Field(default=2.0, gt=0, description="Longest a frame waits for its batch to flush")
    queue_size: int = Field(default=10000, ge=1, description="Bounded queue between pipeline and sink")
    retry_attempts: int = Field(default=3, ge=0, description="Retries per batch, 0 makes storage failures fatal")
    retry_initial_backoff_seconds: float = Field(default=0.5, gt=0, description="First retry delay")
    retry_max_backoff_seconds: float = Field(default=10.0, gt=0, description="Maximum retry delay")


class DatabaseConfig(BaseModel):
    """PostgreSQL connection configuration."""
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    user: str = Field(default="aprs", description="Database user")
    password: str = Field(default="aprs", description="Database password")
    name: str = Field(default="aprs", description="Database name")
    table: str = Field(default="aprs_frames", description="Frame table name")
    min_pool_size: int = Field(default=1, ge=1, description="Minimum pool connections")
    max_pool_size: int = Field(default=5, ge=1, description="Maximum pool connections")
    command_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-statement timeout")

    @field_validator('table')
    @classmethod
    def validate_table(cls, v):
        if not re.match(r'^[A-Za-z_][A-Za-z0-9_]*$', v):
            raise ValueError(f"Invalid table name: {v!r}")
        return v


class PipelineConfig(BaseModel):
    """Pipeline queueing and shutdown configuration."""
    line_queue_size: int = Field(default=5000, ge=1, description="Bounded queue between transport and pipeline")
    shutdown_grace_seconds: float = Field(default=10.0, gt=0, description="Time allowed to drain and flush on shutdown")
    stats_interval_seconds: float = Field(default=60.0, gt=0, description="Interval of the periodic stats log")


class HealthConfig(BaseModel):
    """Health check service configuration."""
    enabled: bool = Field(default=False, description="Serve health endpoints")
    port: int = Field(default=8080, description="Health check server port")
    host: str = Field(default="0.0.0.0", description="Health check server host")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination: stdout, stderr or a file path")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        v = v.upper()
        if v not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError(f"Invalid log level: {v}")
        return v

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v not in ['json', 'text']:
            raise ValueError("Log format must be 'json' or 'text'")
        return v


class MetricsConfig(BaseModel):
    """Metrics configuration."""
    enable_prometheus: bool = Field(default=False, description="Enable Prometheus metrics")
    prometheus_port: int = Field(default=8081, description="Prometheus metrics port")


class FirehoseSettings(BaseSettings):
    """Main firehose service settings."""

    model_config = SettingsConfigDict(
        env_prefix="APRS_FIREHOSE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    service_name: str = Field(default="aprs-firehose", description="Service name")
    environment: str = Field(default="local", description="Environment: local, dev, prod")

    aprs_is: AprsIsConfig = Field(default_factory=AprsIsConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    decode_health: DecodeHealthConfig = Field(default_factory=DecodeHealthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in ['local', 'dev', 'prod']:
            raise ValueError("Environment must be 'local', 'dev', or 'prod'")
        return v


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)

            var_name = var_expr.strip()
            value = os.getenv(var_name)
            if value is None:
                raise ValueError(f"Required environment variable '{var_name}' is not set")
            return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None, **overrides: Any) -> FirehoseSettings:
    """
    Load settings from an optional YAML file and environment variables.

    The config file supports environment variable substitution using
    ${VAR_NAME} syntax. Values from the file win over APRS_FIREHOSE_*
    environment variables; ``overrides`` (top-level sections as dicts)
    are merged last.

    Raises:
        ConfigError: If the file is missing or unreadable, a required
            environment variable is unset, or validation fails
    """
    config_data: dict = {}

    if config_file:
        if not os.path.exists(config_file):
            raise ConfigError(f"Configuration file not found: {config_file}")
        try:
            with open(config_file, 'r') as f:
                raw_config = yaml.safe_load(f) or {}
            config_data = substitute_env_vars(raw_config)
        except (OSError, yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"Cannot load configuration from {config_file}: {e}") from e
        if not isinstance(config_data, dict):
            raise ConfigError(f"Configuration file {config_file} must contain a mapping")

    for section, values in overrides.items():
        if isinstance(values, dict):
            merged = dict(config_data.get(section) or {})
            merged.update(values)
            config_data[section] = merged
        else:
            config_data[section] = values

    try:
        return FirehoseSettings(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
