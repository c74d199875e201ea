"""Tests for building the processing context from configuration."""

import pytest
from unittest.mock import Mock

from tenant_notifier.context import ProcessingContext
from tenant_notifier.core.aws_client import AWSClientManager
from tenant_notifier.core.config import Configuration, ConfigurationError
from tenant_notifier.pipeline.operations import NotificationOperation
from tenant_notifier.pipeline.processor import MessageProcessor


def _config(**sections):
    data = {
        "aws": {"region": "us-east-1"},
        "processor": {
            "queue_url": "https://sqs.us-east-1.amazonaws.com/999999999999/changes",
            "wait_time_seconds": 20,
        },
        "notifications": {"source_address": "changes@example.com"},
        "tenants": {
            "acme": {
                "name": "Acme",
                "account_id": "111111111111",
                "roles": {"notification": "arn:aws:iam::111111111111:role/acme-notifier-ses"},
                "recipients": ["ops@acme.example.com"],
            }
        },
    }
    data.update(sections)
    return Configuration.from_dict(data)


@pytest.fixture
def aws_client():
    return Mock(spec=AWSClientManager)


class TestProcessingContext:
    """Test ProcessingContext class."""

    def test_from_configuration(self, aws_client, metrics):
        """Test that every component is wired from configuration."""
        context = ProcessingContext.from_configuration(_config(), aws_client, metrics)

        assert context.registry.codes() == ["acme"]
        assert isinstance(context.processor, MessageProcessor)
        assert isinstance(context.processor.operation, NotificationOperation)
        assert context.credential_manager.registry is context.registry
        assert len(context.isolation_validator.rules) == 8
        aws_client.get_client.assert_called_once_with(
            "sqs", "us-east-1", connect_timeout=5.0, read_timeout=30.0
        )

    def test_without_queue(self, aws_client):
        """Test that message processing is optional."""
        context = ProcessingContext.from_configuration(_config(processor={}), aws_client)

        assert context.processor is None
        assert context.is_running() is False
        with pytest.raises(ConfigurationError):
            context.start()
        with pytest.raises(ConfigurationError):
            context.get_queue_depth()
        context.shutdown()

    def test_missing_source_address(self, aws_client):
        """Test that the default operation needs a sender address."""
        with pytest.raises(ConfigurationError) as exc_info:
            ProcessingContext.from_configuration(_config(notifications={}), aws_client)

        assert "notifications.source_address" in str(exc_info.value)

    def test_custom_operation(self, aws_client):
        """Test that a custom operation replaces the SES default."""
        operation = Mock()

        context = ProcessingContext.from_configuration(
            _config(notifications={}), aws_client, operation=operation
        )

        assert context.processor.operation is operation

    def test_invalid_tenant(self, aws_client):
        """Test that tenant errors surface as configuration errors."""
        with pytest.raises(ConfigurationError) as exc_info:
            ProcessingContext.from_configuration(
                _config(tenants={"acme": {"roles": {}}}), aws_client
            )

        assert "Invalid tenant configuration" in str(exc_info.value)

    def test_admin_surface(self, aws_client):
        """Test metrics and cache administration."""
        context = ProcessingContext.from_configuration(_config(), aws_client)

        metrics = context.get_metrics()

        assert set(metrics) == {"pipeline", "credentials", "isolation", "resilience", "executions"}
        assert metrics["pipeline"]["running"] is False
        assert metrics["credentials"]["cached_credentials"] == 0
        assert context.get_cache_status() == {}
        context.clear_credential_cache()
