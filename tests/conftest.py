"""Shared fixtures for notifier tests."""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import Mock

from tenant_notifier.core.aws_client import AWSClientManager
from tenant_notifier.core.metrics import InMemoryMetricsSink
from tenant_notifier.tenants.registry import TenantAccount, TenantRegistry


NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=NOW):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeMonotonic:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_tenant(code="acme", account_id="111111111111", **overrides):
    """Build a well-formed tenant account."""
    values = {
        "code": code,
        "name": code.title(),
        "account_id": account_id,
        "region": "us-east-1",
        "notification_role_arn": f"arn:aws:iam::{account_id}:role/{code}-notifier-ses",
        "recipients": (f"ops@{code}.example.com",),
    }
    values.update(overrides)
    return TenantAccount(**values)


def sts_response(account_id="111111111111", role="acme-notifier-ses", expires_in=3600, now=NOW):
    """Build an STS AssumeRole response."""
    return {
        "Credentials": {
            "AccessKeyId": "ASIAEXAMPLE",
            "SecretAccessKey": "secret",
            "SessionToken": "token",
            "Expiration": now + timedelta(seconds=expires_in),
        },
        "AssumedRoleUser": {
            "AssumedRoleId": "AROAEXAMPLE:session",
            "Arn": f"arn:aws:sts::{account_id}:assumed-role/{role}/session",
        },
    }


OVERRIDE_VARIABLES = (
    "AWS_REGION",
    "AWS_PROFILE",
    "NOTIFIER_QUEUE_URL",
    "NOTIFIER_DEAD_LETTER_QUEUE_URL",
    "NOTIFIER_WORKER_POOL_SIZE",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep configuration overrides from the host out of tests."""
    for name in OVERRIDE_VARIABLES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def registry():
    """Registry with two well-formed tenants."""
    return TenantRegistry(
        [
            make_tenant("acme", "111111111111"),
            make_tenant("globex", "222222222222", region="eu-west-1"),
        ]
    )


@pytest.fixture
def metrics():
    """In-memory metrics sink."""
    return InMemoryMetricsSink()


@pytest.fixture
def clock():
    """Fixed UTC clock that tests can advance."""
    return FakeClock()


@pytest.fixture
def monotonic():
    """Fixed monotonic clock that tests can advance."""
    return FakeMonotonic()


@pytest.fixture
def mock_sts():
    """Mock STS client."""
    return Mock()


@pytest.fixture
def mock_aws_client(mock_sts):
    """Mock AWS client manager returning the mock STS client."""
    aws_client = Mock(spec=AWSClientManager)
    aws_client.get_client.return_value = mock_sts
    return aws_client
