"""Tests for retry, classification and circuit breaking."""

import threading

import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from tenant_notifier.core.config import CircuitBreakerSettings, RetrySettings
from tenant_notifier.credentials.models import CredentialValidationError, RoleAssumptionError
from tenant_notifier.resilience.controller import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    ErrorCategory,
    ProcessingError,
    ResilienceController,
    classify_error,
)
from tenant_notifier.tenants.registry import UnknownTenantError


def _client_error(code, status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "SendEmail",
    )


@pytest.fixture
def sleep():
    """Sleep stub that never waits and is never cancelled."""
    return Mock(return_value=False)


@pytest.fixture
def controller(metrics, monotonic, sleep):
    """Controller with three attempts, no jitter and a threshold of five."""
    return ResilienceController(
        RetrySettings(max_attempts=3, initial_delay=1.0, multiplier=2.0, max_delay=30.0, jitter=0.0),
        CircuitBreakerSettings(failure_threshold=5, cooldown_seconds=30.0),
        metrics,
        clock=monotonic,
        sleep=sleep,
    )


class TestClassifyError:
    """Test error classification."""

    @pytest.mark.parametrize(
        "exc,category,retryable",
        [
            (_client_error("Throttling"), ErrorCategory.THROTTLING, True),
            (_client_error("ServiceUnavailable", 503), ErrorCategory.SERVICE, True),
            (_client_error("SomethingOdd", 502), ErrorCategory.SERVICE, True),
            (_client_error("RequestTimeout"), ErrorCategory.TIMEOUT, True),
            (_client_error("AccessDenied", 403), ErrorCategory.SECURITY, False),
            (_client_error("MessageRejected"), ErrorCategory.VALIDATION, False),
            (_client_error("SomethingOdd"), ErrorCategory.CLIENT, False),
            (EndpointConnectionError(endpoint_url="https://ses"), ErrorCategory.NETWORK, True),
            (ReadTimeoutError(endpoint_url="https://ses"), ErrorCategory.TIMEOUT, True),
            (RoleAssumptionError("denied", error_code="AccessDenied", retryable=False), ErrorCategory.CREDENTIALS, False),
            (RoleAssumptionError("slow", error_code="Throttling"), ErrorCategory.THROTTLING, True),
            (CredentialValidationError("mismatch"), ErrorCategory.CREDENTIALS, False),
            (UnknownTenantError("initech"), ErrorCategory.VALIDATION, False),
            (ValueError("bad"), ErrorCategory.VALIDATION, False),
            (RuntimeError("???"), ErrorCategory.UNKNOWN, False),
        ],
    )
    def test_classification(self, exc, category, retryable):
        """Test category and retryability per failure type."""
        classification = classify_error(exc)

        assert classification.category == category
        assert classification.retryable is retryable

    def test_processing_error_keeps_its_classification(self):
        """Test that ProcessingError carries its own category."""
        exc = ProcessingError("blocked", retryable=False, category=ErrorCategory.SECURITY)

        classification = classify_error(exc)

        assert classification.category == ErrorCategory.SECURITY
        assert classification.severity == "high"


class TestCircuitBreaker:
    """Test CircuitBreaker class."""

    def test_opens_after_threshold(self, monotonic):
        """Test that consecutive failures open the circuit."""
        breaker = CircuitBreaker("acme", CircuitBreakerSettings(failure_threshold=2), monotonic)

        breaker.before_call()
        assert breaker.record_failure() is False
        breaker.before_call()
        assert breaker.record_failure() is True

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()
        assert exc_info.value.retry_after == 30.0

    def test_success_resets_failures(self, monotonic):
        """Test that a success clears the consecutive failure count."""
        breaker = CircuitBreaker("acme", CircuitBreakerSettings(failure_threshold=2), monotonic)

        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.status().consecutive_failures == 1

    def test_half_open_admits_single_trial(self, monotonic):
        """Test that after the cooldown one trial call is admitted."""
        breaker = CircuitBreaker(
            "acme", CircuitBreakerSettings(failure_threshold=1, cooldown_seconds=10.0), monotonic
        )
        breaker.record_failure()

        monotonic.advance(10.0)
        breaker.before_call()
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            breaker.before_call()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        breaker.before_call()

    def test_half_open_failure_reopens(self, monotonic):
        """Test that a failed trial opens the circuit again."""
        breaker = CircuitBreaker(
            "acme", CircuitBreakerSettings(failure_threshold=1, cooldown_seconds=10.0), monotonic
        )
        breaker.record_failure()
        monotonic.advance(10.0)
        breaker.before_call()

        assert breaker.record_failure() is True
        assert breaker.state == CircuitState.OPEN
        assert breaker.status().trips == 2

    def test_release_frees_trial(self, monotonic):
        """Test that releasing a trial admits another caller."""
        breaker = CircuitBreaker(
            "acme", CircuitBreakerSettings(failure_threshold=1, cooldown_seconds=10.0), monotonic
        )
        breaker.record_failure()
        monotonic.advance(10.0)
        breaker.before_call()

        breaker.release()
        breaker.before_call()

        assert breaker.state == CircuitState.HALF_OPEN


class TestResilienceController:
    """Test ResilienceController class."""

    def test_success_returns_result(self, controller):
        """Test that the operation result is returned."""
        assert controller.execute_with_retry("acme:notify", lambda: "msg-1") == "msg-1"
        assert controller.get_error_metrics()["successes"] == 1

    def test_retries_transient_errors(self, controller, sleep, metrics):
        """Test that retryable errors are retried with backoff."""
        operation = Mock(side_effect=[_client_error("Throttling"), _client_error("Throttling"), "ok"])

        assert controller.execute_with_retry("acme:notify", operation) == "ok"

        assert operation.call_count == 3
        assert [call.args[0] for call in sleep.call_args_list] == [1.0, 2.0]
        assert metrics.counter("operation_retries", key="acme:notify") == 2
        assert controller.breaker("acme:notify").state == CircuitState.CLOSED

    def test_non_retryable_stops_immediately(self, controller, sleep):
        """Test that terminal errors are not retried."""
        operation = Mock(side_effect=_client_error("AccessDenied", 403))

        with pytest.raises(ProcessingError) as exc_info:
            controller.execute_with_retry("acme:notify", operation)

        assert operation.call_count == 1
        assert exc_info.value.category == ErrorCategory.SECURITY
        assert exc_info.value.retryable is False
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.__cause__, ClientError)
        sleep.assert_not_called()

    def test_attempts_exhausted(self, controller):
        """Test the error raised when every attempt fails."""
        operation = Mock(side_effect=_client_error("Throttling"))

        with pytest.raises(ProcessingError) as exc_info:
            controller.execute_with_retry("acme:notify", operation)

        assert operation.call_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.retryable is True
        assert "failed after 3 attempt(s)" in str(exc_info.value)

    def test_circuit_opens_after_five_failed_calls(self, controller, metrics):
        """Test that a sixth call fails fast without invoking the operation."""
        operation = Mock(side_effect=ValueError("bad template"))

        for _ in range(5):
            with pytest.raises(ProcessingError):
                controller.execute_with_retry("acme:notify", operation)
        assert operation.call_count == 5

        with pytest.raises(CircuitOpenError):
            controller.execute_with_retry("acme:notify", operation)

        assert operation.call_count == 5
        assert metrics.counter("circuit_breaker_trips", key="acme:notify") == 1
        assert metrics.counter("circuit_breaker_rejections", key="acme:notify") == 1
        assert controller.get_error_metrics()["circuit_breaker_trips"] == 1

    def test_circuits_are_independent_per_key(self, controller):
        """Test that one tenant's open circuit does not affect another."""
        failing = Mock(side_effect=ValueError("bad"))
        for _ in range(5):
            with pytest.raises(ProcessingError):
                controller.execute_with_retry("acme:notify", failing)

        assert controller.execute_with_retry("globex:notify", lambda: "ok") == "ok"

    def test_half_open_recovery(self, controller, monotonic):
        """Test that a successful trial after the cooldown closes the circuit."""
        failing = Mock(side_effect=ValueError("bad"))
        for _ in range(5):
            with pytest.raises(ProcessingError):
                controller.execute_with_retry("acme:notify", failing)

        monotonic.advance(30.0)

        assert controller.execute_with_retry("acme:notify", lambda: "ok") == "ok"
        assert controller.breaker("acme:notify").state == CircuitState.CLOSED

    def test_cancellation_between_attempts(self, metrics, monotonic):
        """Test that cancelling during backoff stops retrying."""
        cancel = threading.Event()
        controller = ResilienceController(
            RetrySettings(max_attempts=5, jitter=0.0),
            CircuitBreakerSettings(),
            metrics,
            clock=monotonic,
            sleep=lambda delay, event: True,
        )
        operation = Mock(side_effect=_client_error("Throttling"))

        with pytest.raises(ProcessingError) as exc_info:
            controller.execute_with_retry("acme:notify", operation, cancel)

        assert exc_info.value.category == ErrorCategory.CANCELLED
        assert operation.call_count == 1
        assert controller.breaker("acme:notify").status().consecutive_failures == 0

    def test_calculate_delay_is_capped(self, controller):
        """Test exponential growth up to the maximum delay."""
        assert controller.calculate_delay(1) == 1.0
        assert controller.calculate_delay(3) == 4.0
        assert controller.calculate_delay(10) == 30.0

    def test_calculate_delay_jitter_bounds(self, metrics):
        """Test that jitter stays within the configured fraction."""
        controller = ResilienceController(RetrySettings(initial_delay=10.0, jitter=0.1), metrics=metrics)

        for _ in range(20):
            assert 9.0 <= controller.calculate_delay(1) <= 11.0

    def test_error_metrics_and_reset(self, controller):
        """Test error counters, dead letters and resetting circuits."""
        failing = Mock(side_effect=ValueError("bad"))
        for _ in range(5):
            with pytest.raises(ProcessingError):
                controller.execute_with_retry("acme:notify", failing)
        controller.record_dead_letter("acme:notify")

        metrics = controller.get_error_metrics()
        assert metrics["total_errors"] == 5
        assert metrics["errors_by_key"] == {"acme:notify": 5}
        assert metrics["errors_by_category"] == {"validation": 5}
        assert metrics["dead_letter_count"] == 1

        assert controller.circuit_status()["acme:notify"].state == CircuitState.OPEN
        controller.reset("acme:notify")
        assert controller.circuit_status()["acme:notify"].state == CircuitState.CLOSED
