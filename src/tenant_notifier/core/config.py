"""Configuration management for the multi-tenant notifier.

This module handles YAML configuration loading, validation, environment
variable overrides and conversion of the raw sections into typed settings
objects with explicit defaults for each component.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import yaml


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


DEFAULT_ALLOWED_REGIONS = (
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "ca-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-central-1",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-northeast-1",
)

DEFAULT_PRIVILEGED_PATTERNS = ("admin", "root", "full", "poweruser", "*")


def _settings_from_dict(cls, section: Optional[Dict[str, Any]], name: str):
    """Build a settings dataclass from a raw mapping.

    Unknown keys are rejected and values are checked against the type of the
    field default, so misspelled or mistyped options fail at load time.

    Raises:
        ConfigurationError: When the section is malformed
    """
    if section is None:
        return cls()
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping")

    defaults = cls()
    known = {f.name: f for f in fields(cls)}
    values = {}

    for key, value in section.items():
        if key not in known:
            raise ConfigurationError(f"Unknown option '{name}.{key}'")
        default = getattr(defaults, key)
        values[key] = _coerce_value(f"{name}.{key}", value, default)

    return cls(**values)


def _coerce_value(path: str, value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigurationError(f"Field '{path}' must be a boolean")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"Field '{path}' must be a number")
        return float(value)
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"Field '{path}' must be an integer")
        return value
    if isinstance(default, tuple):
        if not isinstance(value, (list, tuple)):
            raise ConfigurationError(f"Field '{path}' must be a list")
        return tuple(str(item) for item in value)
    if isinstance(default, str) or default is None:
        if not isinstance(value, str):
            raise ConfigurationError(f"Field '{path}' must be a string")
        return value
    return value


@dataclass(frozen=True)
class CredentialSettings:
    """Role assumption and credential cache options."""

    session_name_prefix: str = "tenant-notifier"
    session_duration_seconds: int = 3600
    safety_margin_seconds: int = 300
    external_id: Optional[str] = None
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    verify_identity: bool = True

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> "CredentialSettings":
        settings = _settings_from_dict(cls, section, "credentials")
        if settings.session_duration_seconds < 900:
            raise ConfigurationError(
                "Field 'credentials.session_duration_seconds' must be at least 900"
            )
        if settings.safety_margin_seconds >= settings.session_duration_seconds:
            raise ConfigurationError(
                "Field 'credentials.safety_margin_seconds' must be shorter than the session duration"
            )
        return settings


@dataclass(frozen=True)
class IsolationSettings:
    """Isolation validator options."""

    report_ttl_seconds: float = 1800.0
    allowed_regions: Tuple[str, ...] = DEFAULT_ALLOWED_REGIONS
    privileged_role_patterns: Tuple[str, ...] = DEFAULT_PRIVILEGED_PATTERNS
    block_cross_tenant_access: bool = True
    max_parallel_validations: int = 4
    min_credential_lifetime_seconds: int = 300
    max_credential_lifetime_seconds: int = 7200

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> "IsolationSettings":
        return _settings_from_dict(cls, section, "isolation")


@dataclass(frozen=True)
class RetrySettings:
    """Exponential backoff options."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> "RetrySettings":
        settings = _settings_from_dict(cls, section, "resilience.retry")
        if settings.max_attempts < 1:
            raise ConfigurationError("Field 'resilience.retry.max_attempts' must be at least 1")
        if settings.multiplier < 1.0:
            raise ConfigurationError("Field 'resilience.retry.multiplier' must be at least 1.0")
        return settings


@dataclass(frozen=True)
class CircuitBreakerSettings:
    """Per-key circuit breaker options."""

    failure_threshold: int = 5
    cooldown_seconds: float = 30.0

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> "CircuitBreakerSettings":
        settings = _settings_from_dict(cls, section, "resilience.circuit_breaker")
        if settings.failure_threshold < 1:
            raise ConfigurationError(
                "Field 'resilience.circuit_breaker.failure_threshold' must be at least 1"
            )
        return settings


@dataclass(frozen=True)
class ProcessorSettings:
    """Queue ingestion pipeline options."""

    queue_url: str = ""
    dead_letter_queue_url: str = ""
    region: str = ""
    max_messages: int = 10
    visibility_timeout: int = 30
    wait_time_seconds: int = 20
    polling_interval: float = 5.0
    worker_pool_size: int = 10
    message_buffer_size: int = 100
    shutdown_timeout: float = 30.0
    metrics_interval: float = 30.0
    max_consecutive_poll_failures: int = 5
    processor_name: str = "tenant-notifier-processor"
    execution_retention_seconds: float = 86400.0

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> "ProcessorSettings":
        settings = _settings_from_dict(cls, section, "processor")
        if not 1 <= settings.max_messages <= 10:
            raise ConfigurationError("Field 'processor.max_messages' must be between 1 and 10")
        if not 0 <= settings.wait_time_seconds <= 20:
            raise ConfigurationError("Field 'processor.wait_time_seconds' must be between 0 and 20")
        if settings.worker_pool_size < 1:
            raise ConfigurationError("Field 'processor.worker_pool_size' must be at least 1")
        if settings.message_buffer_size < 1:
            raise ConfigurationError("Field 'processor.message_buffer_size' must be at least 1")
        if settings.execution_retention_seconds < 0:
            raise ConfigurationError(
                "Field 'processor.execution_retention_seconds' must not be negative"
            )
        return settings


class Configuration:
    """Configuration management with YAML loading and validation.

    This class handles loading configuration from YAML files, validating
    the structure, and supporting environment variable overrides.
    """

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        If None, auto-detects config.yaml in current directory.

        Raises:
            ConfigurationError: When configuration file is invalid
        """
        self._config: Dict[str, Any] = {}
        self._config_path = self._resolve_config_path(config_path)
        self._load_configuration()
        self._apply_environment_overrides()
        self._validate_configuration()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Configuration":
        """Build configuration from an in-memory mapping.

        Environment overrides are applied exactly as for file-based loading.
        """
        instance = cls.__new__(cls)
        instance._config = dict(data or {})
        instance._config_path = None
        instance._apply_environment_overrides()
        instance._validate_configuration()
        return instance

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path.

        Raises:
            ConfigurationError: When configuration file not found
        """
        if config_path:
            path = Path(config_path)
        else:
            path = Path("config.yaml")
            if not path.exists():
                path = Path("config/settings.yaml")

        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}. "
                "Please create a configuration file or specify a valid path."
            )

        return path

    def _load_configuration(self) -> None:
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: When YAML file is invalid
        """
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file {self._config_path}: {e}"
            )
        except IOError as e:
            raise ConfigurationError(
                f"Unable to read configuration file {self._config_path}: {e}"
            )

        if not isinstance(self._config, dict):
            raise ConfigurationError(
                f"Configuration file {self._config_path} must contain a mapping"
            )

    def _validate_configuration(self) -> None:
        """Validate configuration has required fields.

        Raises:
            ConfigurationError: When required fields are missing
        """
        if "aws" not in self._config:
            raise ConfigurationError("Required configuration section 'aws' is missing")

        aws_config = self._config["aws"]
        if not isinstance(aws_config, dict):
            raise ConfigurationError("Configuration section 'aws' must be a mapping")

        if "region" not in aws_config:
            raise ConfigurationError("Required field 'aws.region' is missing")

        region = aws_config["region"]
        if not isinstance(region, str) or not region:
            raise ConfigurationError("Field 'aws.region' must be a non-empty string")

        tenants = self._config.get("tenants", {})
        if not isinstance(tenants, dict):
            raise ConfigurationError("Configuration section 'tenants' must be a mapping")

        # Parse every typed section up front so errors surface at load time
        self.get_credential_settings()
        self.get_isolation_settings()
        self.get_retry_settings()
        self.get_circuit_breaker_settings()
        self.get_processor_settings()

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if "AWS_REGION" in os.environ:
            self._set_nested_value("aws.region", os.environ["AWS_REGION"])

        if "AWS_PROFILE" in os.environ:
            self._set_nested_value("aws.profile_name", os.environ["AWS_PROFILE"])

        if "NOTIFIER_QUEUE_URL" in os.environ:
            self._set_nested_value("processor.queue_url", os.environ["NOTIFIER_QUEUE_URL"])

        if "NOTIFIER_DEAD_LETTER_QUEUE_URL" in os.environ:
            self._set_nested_value(
                "processor.dead_letter_queue_url",
                os.environ["NOTIFIER_DEAD_LETTER_QUEUE_URL"],
            )

        if "NOTIFIER_WORKER_POOL_SIZE" in os.environ:
            raw = os.environ["NOTIFIER_WORKER_POOL_SIZE"]
            try:
                pool_size = int(raw)
            except ValueError:
                raise ConfigurationError(
                    f"NOTIFIER_WORKER_POOL_SIZE must be an integer, got {raw!r}"
                )
            self._set_nested_value("processor.worker_pool_size", pool_size)

    def _set_nested_value(self, key_path: str, value: Any) -> None:
        """Set nested configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.region')
            value: Value to set
        """
        keys = key_path.split(".")
        current = self._config

        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.region')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        current = self._config

        try:
            for key in keys:
                current = current[key]
            return current
        except (KeyError, TypeError):
            return default

    def get_region(self) -> str:
        """Get the control-plane AWS region."""
        return self.get("aws.region")

    def get_profile_name(self) -> Optional[str]:
        """Get the optional AWS profile name."""
        return self.get("aws.profile_name")

    def get_tenant_mappings(self) -> Dict[str, Dict[str, Any]]:
        """Get the raw tenant mapping keyed by tenant code."""
        return dict(self.get("tenants", {}) or {})

    def get_credential_settings(self) -> CredentialSettings:
        return CredentialSettings.from_dict(self.get("credentials"))

    def get_isolation_settings(self) -> IsolationSettings:
        return IsolationSettings.from_dict(self.get("isolation"))

    def get_retry_settings(self) -> RetrySettings:
        return RetrySettings.from_dict(self.get("resilience.retry"))

    def get_circuit_breaker_settings(self) -> CircuitBreakerSettings:
        return CircuitBreakerSettings.from_dict(self.get("resilience.circuit_breaker"))

    def get_processor_settings(self) -> ProcessorSettings:
        """Get pipeline settings, defaulting the queue region to aws.region."""
        settings = ProcessorSettings.from_dict(self.get("processor"))
        if not settings.region:
            values = {f.name: getattr(settings, f.name) for f in fields(settings)}
            values["region"] = self.get_region()
            settings = ProcessorSettings(**values)
        return settings

    def to_dict(self) -> Dict[str, Any]:
        """Get complete configuration as dictionary."""
        return self._config.copy()
