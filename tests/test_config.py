"""Unit tests for Configuration Management."""

import os
import tempfile
import pytest
import yaml

from tenant_notifier.core.config import (
    CircuitBreakerSettings,
    Configuration,
    ConfigurationError,
    CredentialSettings,
    ProcessorSettings,
    RetrySettings,
)


def _write_config(config_data):
    with tempfile.NamedTemporaryFile(
        mode="w", suffix=".yaml", delete=False
    ) as f:
        yaml.dump(config_data, f)
        return f.name


class TestConfiguration:
    """Test cases for Configuration class."""

    def test_load_valid_config(self):
        """Test loading valid configuration."""
        config_data = {
            "aws": {"region": "us-east-1", "profile_name": "notifier"},
            "processor": {
                "queue_url": "https://sqs.us-east-1.amazonaws.com/999999999999/changes",
                "worker_pool_size": 4,
            },
            "tenants": {
                "acme": {
                    "account_id": "111111111111",
                    "roles": {"notification": "arn:aws:iam::111111111111:role/acme-notifier-ses"},
                }
            },
        }
        config_path = _write_config(config_data)

        try:
            config = Configuration(config_path)
            assert config.get_region() == "us-east-1"
            assert config.get_profile_name() == "notifier"
            assert config.get_processor_settings().worker_pool_size == 4
            assert "acme" in config.get_tenant_mappings()
        finally:
            os.unlink(config_path)

    def test_missing_config_file(self):
        """Test handling of missing configuration file."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration("/nonexistent/config.yaml")

        assert "Configuration file not found" in str(exc_info.value)

    def test_invalid_yaml(self):
        """Test handling of invalid YAML."""
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".yaml", delete=False
        ) as f:
            f.write("invalid: yaml: content: [")
            config_path = f.name

        try:
            with pytest.raises(ConfigurationError) as exc_info:
                Configuration(config_path)

            assert "Invalid YAML" in str(exc_info.value)
        finally:
            os.unlink(config_path)

    def test_missing_required_section(self):
        """Test validation of missing required sections."""
        config_path = _write_config({"other": "value"})

        try:
            with pytest.raises(ConfigurationError) as exc_info:
                Configuration(config_path)

            assert "Required configuration section 'aws' is missing" in str(
                exc_info.value
            )
        finally:
            os.unlink(config_path)

    def test_missing_region(self):
        """Test validation of missing region."""
        config_path = _write_config({"aws": {}})

        try:
            with pytest.raises(ConfigurationError) as exc_info:
                Configuration(config_path)

            assert "Required field 'aws.region' is missing" in str(exc_info.value)
        finally:
            os.unlink(config_path)

    def test_invalid_region(self):
        """Test validation of empty region."""
        config_path = _write_config({"aws": {"region": ""}})

        try:
            with pytest.raises(ConfigurationError) as exc_info:
                Configuration(config_path)

            assert "must be a non-empty string" in str(exc_info.value)
        finally:
            os.unlink(config_path)

    def test_tenants_must_be_mapping(self):
        """Test that the tenants section must be a mapping."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration.from_dict({"aws": {"region": "us-east-1"}, "tenants": ["acme"]})

        assert "'tenants' must be a mapping" in str(exc_info.value)

    def test_environment_override_region(self):
        """Test environment variable override for region."""
        config_path = _write_config({"aws": {"region": "us-east-1"}})

        try:
            os.environ["AWS_REGION"] = "eu-west-1"

            config = Configuration(config_path)
            assert config.get_region() == "eu-west-1"
            assert config.get_processor_settings().region == "eu-west-1"
        finally:
            os.unlink(config_path)
            if "AWS_REGION" in os.environ:
                del os.environ["AWS_REGION"]

    def test_environment_override_profile(self):
        """Test environment variable override for profile."""
        config_path = _write_config({"aws": {"region": "us-east-1"}})

        try:
            os.environ["AWS_PROFILE"] = "test-profile"

            config = Configuration(config_path)
            assert config.get("aws.profile_name") == "test-profile"
        finally:
            os.unlink(config_path)
            if "AWS_PROFILE" in os.environ:
                del os.environ["AWS_PROFILE"]

    def test_environment_override_queue(self, monkeypatch):
        """Test environment variable overrides for the pipeline."""
        monkeypatch.setenv("NOTIFIER_QUEUE_URL", "https://queue")
        monkeypatch.setenv("NOTIFIER_DEAD_LETTER_QUEUE_URL", "https://dlq")
        monkeypatch.setenv("NOTIFIER_WORKER_POOL_SIZE", "3")

        settings = Configuration.from_dict({"aws": {"region": "us-east-1"}}).get_processor_settings()

        assert settings.queue_url == "https://queue"
        assert settings.dead_letter_queue_url == "https://dlq"
        assert settings.worker_pool_size == 3

    def test_environment_override_invalid_pool_size(self, monkeypatch):
        """Test that a non-integer pool size override is rejected."""
        monkeypatch.setenv("NOTIFIER_WORKER_POOL_SIZE", "many")

        with pytest.raises(ConfigurationError) as exc_info:
            Configuration.from_dict({"aws": {"region": "us-east-1"}})

        assert "NOTIFIER_WORKER_POOL_SIZE" in str(exc_info.value)

    def test_get_nested_value(self):
        """Test getting nested configuration values."""
        config = Configuration.from_dict(
            {"aws": {"region": "us-east-1", "nested": {"deep": {"value": "test"}}}}
        )

        assert config.get("aws.nested.deep.value") == "test"
        assert config.get("aws.nonexistent", "default") == "default"

    def test_defaults(self):
        """Test typed settings defaults."""
        config = Configuration.from_dict({"aws": {"region": "us-east-1"}})

        assert config.get_credential_settings() == CredentialSettings()
        assert config.get_retry_settings().max_attempts == 3
        assert config.get_circuit_breaker_settings().failure_threshold == 5
        assert config.get_isolation_settings().report_ttl_seconds == 1800.0
        assert config.get_processor_settings().queue_url == ""

    def test_unknown_option_rejected(self):
        """Test that misspelled options fail at load time."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration.from_dict(
                {"aws": {"region": "us-east-1"}, "credentials": {"session_duraton": 900}}
            )

        assert "Unknown option 'credentials.session_duraton'" in str(exc_info.value)

    def test_wrong_type_rejected(self):
        """Test that mistyped options fail at load time."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration.from_dict(
                {"aws": {"region": "us-east-1"}, "resilience": {"retry": {"max_attempts": "3"}}}
            )

        assert "must be an integer" in str(exc_info.value)

    def test_nested_resilience_settings(self):
        """Test loading retry and circuit breaker sections."""
        config = Configuration.from_dict(
            {
                "aws": {"region": "us-east-1"},
                "resilience": {
                    "retry": {"max_attempts": 5, "initial_delay": 2},
                    "circuit_breaker": {"failure_threshold": 2, "cooldown_seconds": 10},
                },
            }
        )

        retry = config.get_retry_settings()
        assert retry.max_attempts == 5
        assert retry.initial_delay == 2.0
        assert isinstance(retry.initial_delay, float)
        assert config.get_circuit_breaker_settings().cooldown_seconds == 10.0

    def test_to_dict(self):
        """Test converting configuration to dictionary."""
        config_path = _write_config({"aws": {"region": "us-east-1"}, "notifications": {"source_address": "a@b.c"}})

        try:
            config = Configuration(config_path)
            config_dict = config.to_dict()
            assert config_dict["aws"]["region"] == "us-east-1"
            assert config_dict["notifications"]["source_address"] == "a@b.c"
        finally:
            os.unlink(config_path)


class TestSettings:
    """Test cases for typed settings validation."""

    def test_credential_duration_minimum(self):
        """Test that sessions shorter than 15 minutes are rejected."""
        with pytest.raises(ConfigurationError):
            CredentialSettings.from_dict({"session_duration_seconds": 600})

    def test_credential_margin_shorter_than_duration(self):
        """Test that the safety margin must be below the session duration."""
        with pytest.raises(ConfigurationError):
            CredentialSettings.from_dict(
                {"session_duration_seconds": 900, "safety_margin_seconds": 900}
            )

    def test_retry_attempts_minimum(self):
        """Test that at least one attempt is required."""
        with pytest.raises(ConfigurationError):
            RetrySettings.from_dict({"max_attempts": 0})

    def test_breaker_threshold_minimum(self):
        """Test that the failure threshold must be positive."""
        with pytest.raises(ConfigurationError):
            CircuitBreakerSettings.from_dict({"failure_threshold": 0})

    @pytest.mark.parametrize(
        "section",
        [
            {"max_messages": 11},
            {"wait_time_seconds": 21},
            {"worker_pool_size": 0},
            {"message_buffer_size": 0},
            {"execution_retention_seconds": -1},
        ],
    )
    def test_processor_bounds(self, section):
        """Test pipeline settings bounds."""
        with pytest.raises(ConfigurationError):
            ProcessorSettings.from_dict(section)

    def test_section_must_be_mapping(self):
        """Test that a scalar section is rejected."""
        with pytest.raises(ConfigurationError):
            ProcessorSettings.from_dict("fast")
