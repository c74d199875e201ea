"""Tests for the credential isolation manager."""

import threading
import time

import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from tenant_notifier.core.config import CredentialSettings
from tenant_notifier.credentials.manager import CredentialIsolationManager
from tenant_notifier.credentials.models import (
    CredentialValidationError,
    RoleAssumptionError,
)
from tenant_notifier.tenants.registry import UnknownTenantError

from conftest import NOW, sts_response


def _client_error(code, operation="AssumeRole"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def identity_sts():
    """STS client used through the tenant-scoped session."""
    client = Mock()
    client.get_caller_identity.return_value = {
        "Account": "111111111111",
        "Arn": "arn:aws:sts::111111111111:assumed-role/acme-notifier-ses/session",
    }
    return client


@pytest.fixture
def session_factory(identity_sts):
    """Session factory returning a session bound to the identity STS client."""
    session = Mock()
    session.client.return_value = identity_sts
    return Mock(return_value=session)


@pytest.fixture
def manager(registry, mock_aws_client, mock_sts, metrics, clock, session_factory):
    """Credential manager with mocked STS and a fixed clock."""
    mock_sts.assume_role.return_value = sts_response()
    return CredentialIsolationManager(
        registry,
        mock_aws_client,
        CredentialSettings(external_id="shared-secret"),
        metrics,
        clock=clock,
        session_factory=session_factory,
    )


class TestAssumeRole:
    """Test role assumption."""

    def test_assume_role_success(self, manager, mock_aws_client, mock_sts, metrics):
        """Test that assumed credentials are scoped and cached."""
        credentials = manager.assume_role("acme", "ses")

        assert credentials.tenant_code == "acme"
        assert credentials.service == "notification"
        assert credentials.access_key_id == "ASIAEXAMPLE"
        assert credentials.issued_at == NOW
        assert credentials.total_lifetime() == 3600
        assert manager.peek("acme", "notification") is credentials
        assert metrics.counter("role_assumptions", tenant="acme", service="notification") == 1

        params = mock_sts.assume_role.call_args.kwargs
        assert params["RoleArn"] == "arn:aws:iam::111111111111:role/acme-notifier-ses"
        assert params["RoleSessionName"].startswith("tenant-notifier-acme-")
        assert params["DurationSeconds"] == 3600
        assert params["ExternalId"] == "shared-secret"
        mock_aws_client.get_client.assert_called_with(
            "sts", "us-east-1", connect_timeout=5.0, read_timeout=10.0
        )

    def test_assume_role_uses_tenant_region(self, manager, mock_aws_client, mock_sts):
        """Test that STS is called in the tenant's region."""
        mock_sts.assume_role.return_value = sts_response("222222222222", "globex-notifier-ses")

        manager.assume_role("globex", "notification")

        assert mock_aws_client.get_client.call_args.args[1] == "eu-west-1"

    def test_assume_role_string_expiration(self, manager, mock_sts):
        """Test that ISO expiration strings are parsed as UTC."""
        response = sts_response()
        response["Credentials"]["Expiration"] = "2026-01-01T13:00:00Z"
        mock_sts.assume_role.return_value = response

        credentials = manager.assume_role("acme", "notification")

        assert credentials.remaining_lifetime(NOW) == 3600

    def test_access_denied_is_not_retryable(self, manager, mock_sts, metrics):
        """Test that identity provider denials are terminal."""
        mock_sts.assume_role.side_effect = _client_error("AccessDenied")

        with pytest.raises(RoleAssumptionError) as exc_info:
            manager.assume_role("acme", "notification")

        assert exc_info.value.retryable is False
        assert exc_info.value.error_code == "AccessDenied"
        assert manager.peek("acme", "notification") is None
        assert metrics.counter("role_assumption_failures", tenant="acme") == 1

    def test_throttling_is_retryable(self, manager, mock_sts):
        """Test that throttling from STS can be retried."""
        mock_sts.assume_role.side_effect = _client_error("Throttling")

        with pytest.raises(RoleAssumptionError) as exc_info:
            manager.assume_role("acme", "notification")

        assert exc_info.value.retryable is True

    def test_network_failure_is_retryable(self, manager, mock_sts):
        """Test that an unreachable endpoint can be retried."""
        mock_sts.assume_role.side_effect = EndpointConnectionError(endpoint_url="https://sts")

        with pytest.raises(RoleAssumptionError) as exc_info:
            manager.assume_role("acme", "notification")

        assert exc_info.value.retryable is True

    def test_missing_control_plane_credentials(self, manager, mock_sts):
        """Test that missing control-plane credentials are terminal."""
        mock_sts.assume_role.side_effect = NoCredentialsError()

        with pytest.raises(RoleAssumptionError) as exc_info:
            manager.assume_role("acme", "notification")

        assert exc_info.value.retryable is False

    def test_unknown_tenant(self, manager):
        """Test that unknown tenants are rejected before calling STS."""
        with pytest.raises(UnknownTenantError):
            manager.assume_role("initech", "notification")

    def test_service_without_role(self, manager, mock_sts):
        """Test that a service with no configured role is rejected."""
        with pytest.raises(RoleAssumptionError) as exc_info:
            manager.assume_role("acme", "storage")

        assert exc_info.value.retryable is False
        mock_sts.assume_role.assert_not_called()

    def test_unsupported_service(self, manager):
        """Test that unsupported services are rejected."""
        with pytest.raises(RoleAssumptionError):
            manager.assume_role("acme", "dynamodb")


class TestCache:
    """Test credential caching and the safety margin."""

    def test_cache_hit(self, manager, mock_sts, metrics):
        """Test that valid cached credentials are reused."""
        first = manager.get_cached_or_assume("acme", "notification")
        second = manager.get_cached_or_assume("acme", "ses")

        assert first is second
        mock_sts.assume_role.assert_called_once()
        assert metrics.counter("credential_cache_hits", tenant="acme") == 1
        assert metrics.counter("credential_cache_misses", tenant="acme") == 1

    def test_entry_inside_safety_margin_is_refreshed(self, manager, mock_sts, clock):
        """Test that credentials expiring within the margin are never returned."""
        first = manager.get_cached_or_assume("acme", "notification")

        clock.advance(3600 - 300)
        mock_sts.assume_role.return_value = sts_response(now=clock.now)
        second = manager.get_cached_or_assume("acme", "notification")

        assert second is not first
        assert mock_sts.assume_role.call_count == 2
        assert second.expiration - clock.now > manager.safety_margin

    def test_entry_outside_safety_margin_is_kept(self, manager, mock_sts, clock):
        """Test that credentials just outside the margin are still used."""
        first = manager.get_cached_or_assume("acme", "notification")

        clock.advance(3600 - 301)

        assert manager.get_cached_or_assume("acme", "notification") is first
        mock_sts.assume_role.assert_called_once()

    def test_concurrent_callers_share_one_refresh(self, manager, mock_sts):
        """Test that parallel lookups for one key assume the role once."""

        def slow_assume(**kwargs):
            time.sleep(0.05)
            return sts_response()

        mock_sts.assume_role.side_effect = slow_assume
        results = []

        def worker():
            results.append(manager.get_cached_or_assume("acme", "notification"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert mock_sts.assume_role.call_count == 1
        assert len(results) == 8
        assert all(result is results[0] for result in results)

    def test_tenants_are_cached_separately(self, manager, mock_sts):
        """Test that each tenant gets its own cache entry."""
        mock_sts.assume_role.side_effect = [
            sts_response(),
            sts_response("222222222222", "globex-notifier-ses"),
        ]

        acme = manager.get_cached_or_assume("acme", "notification")
        globex = manager.get_cached_or_assume("globex", "notification")

        assert acme.tenant_code == "acme"
        assert globex.tenant_code == "globex"
        assert set(manager.cache_status()) == {"acme:notification", "globex:notification"}

    def test_refresh_replaces_entry(self, manager, mock_sts):
        """Test that refresh always assumes the role again."""
        first = manager.get_cached_or_assume("acme", "notification")
        second = manager.refresh("acme", "notification")

        assert second is not first
        assert manager.peek("acme", "notification") is second
        assert mock_sts.assume_role.call_count == 2

    def test_evict_and_clear(self, manager):
        """Test removing cache entries."""
        manager.get_cached_or_assume("acme", "notification")

        assert manager.evict("acme", "ses") is True
        assert manager.evict("acme", "ses") is False

        manager.get_cached_or_assume("acme", "notification")
        manager.clear_cache()
        assert manager.cache_status() == {}

    def test_session_for(self, manager, session_factory):
        """Test that sessions are built from the tenant's cached credentials."""
        session = manager.session_for("acme", "notification")

        assert session is session_factory.return_value
        assert session_factory.call_args.args[0].tenant_code == "acme"

    def test_session_reused_until_credentials_change(self, manager, session_factory):
        """Test that one session is built per set of cached credentials."""
        session_factory.side_effect = lambda credentials: Mock()

        first = manager.session_for("acme", "notification")
        again = manager.session_for("acme", "notification")
        manager.refresh("acme", "notification")
        refreshed = manager.session_for("acme", "notification")

        assert again is first
        assert refreshed is not first
        assert session_factory.call_count == 2

        manager.evict("acme", "notification")
        manager.session_for("acme", "notification")
        assert session_factory.call_count == 3

    def test_get_metrics(self, manager, clock):
        """Test cache statistics."""
        manager.get_cached_or_assume("acme", "notification")
        manager.get_cached_or_assume("acme", "notification")
        clock.advance(3600 - 100)

        metrics = manager.get_metrics()

        assert metrics["cached_credentials"] == 1
        assert metrics["expiring_credentials"] == 1
        assert metrics["expired_credentials"] == 0
        assert metrics["cache_hits"] == 1
        assert metrics["cache_misses"] == 1
        assert metrics["cache_hit_ratio"] == 0.5
        assert metrics["role_assumptions"] == 1


class TestValidate:
    """Test credential validation."""

    def test_validate_success(self, manager, identity_sts):
        """Test validation against the tenant's account."""
        credentials = manager.get_cached_or_assume("acme", "notification")

        result = manager.validate(credentials)

        assert result.valid is True
        assert result.identity_verified is True
        assert result.account_id == "111111111111"
        assert result.remaining_seconds == 3600
        identity_sts.get_caller_identity.assert_called_once()

    def test_validate_without_identity_check(self, manager, identity_sts):
        """Test expiry-only validation."""
        credentials = manager.get_cached_or_assume("acme", "notification")

        result = manager.validate(credentials, verify_identity=False)

        assert result.valid is True
        assert result.identity_verified is False
        identity_sts.get_caller_identity.assert_not_called()

    def test_account_mismatch_evicts(self, manager, identity_sts, metrics):
        """Test that credentials for another account are rejected and evicted."""
        identity_sts.get_caller_identity.return_value = {"Account": "222222222222", "Arn": "x"}
        credentials = manager.get_cached_or_assume("acme", "notification")

        with pytest.raises(CredentialValidationError) as exc_info:
            manager.validate(credentials)

        assert exc_info.value.result.valid is False
        assert "222222222222" in exc_info.value.result.error
        assert manager.peek("acme", "notification") is None
        assert len(metrics.events("credential_account_mismatch")) == 1

    def test_expired_credentials_rejected(self, manager, clock, identity_sts):
        """Test that expired credentials fail validation without an STS call."""
        credentials = manager.get_cached_or_assume("acme", "notification")
        clock.advance(3601)

        with pytest.raises(CredentialValidationError) as exc_info:
            manager.validate(credentials)

        assert "expired" in exc_info.value.result.error
        identity_sts.get_caller_identity.assert_not_called()

    def test_identity_call_failure(self, manager, identity_sts):
        """Test that a failing identity check rejects the credentials."""
        identity_sts.get_caller_identity.side_effect = _client_error("ExpiredToken", "GetCallerIdentity")
        credentials = manager.get_cached_or_assume("acme", "notification")

        with pytest.raises(CredentialValidationError):
            manager.validate(credentials)

        assert manager.peek("acme", "notification") is None

    def test_validate_all(self, manager, mock_sts):
        """Test that validation errors are collected per tenant."""
        mock_sts.assume_role.side_effect = [sts_response(), _client_error("AccessDenied")]

        results = manager.validate_all()

        assert results["acme"].valid is True
        assert results["globex"].valid is False
        assert "AccessDenied" in results["globex"].error
