"""Retry with backoff and per-key circuit breaking.

The ResilienceController wraps tenant-scoped operations. Failures are
classified by exception type and AWS error code to decide whether another
attempt is worthwhile, and each key (a tenant or tenant:operation pair)
owns a circuit breaker that fails fast after repeated failed calls.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    ConnectionError as BotoConnectionError,
    ReadTimeoutError,
)

from tenant_notifier.core.config import CircuitBreakerSettings, RetrySettings
from tenant_notifier.core.metrics import LoggingMetricsSink, MetricsSink
from tenant_notifier.credentials.models import (
    CredentialValidationError,
    RoleAssumptionError,
)
from tenant_notifier.tenants.registry import UnknownTenantError


logger = logging.getLogger(__name__)


THROTTLING_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ProvisionedThroughputExceededException",
        "SlowDown",
    }
)
SERVICE_ERROR_CODES = frozenset(
    {
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalError",
        "InternalServerError",
        "InternalFailure",
    }
)
TIMEOUT_ERROR_CODES = frozenset({"RequestTimeout", "RequestTimeoutException", "RequestExpired"})
SECURITY_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "InvalidClientTokenId",
        "ExpiredToken",
        "ExpiredTokenException",
        "SignatureDoesNotMatch",
    }
)
VALIDATION_ERROR_CODES = frozenset(
    {
        "ValidationError",
        "ValidationException",
        "InvalidParameterValue",
        "InvalidParameterCombination",
        "MissingParameter",
        "MessageRejected",
        "MalformedQueryString",
    }
)


class ErrorCategory(Enum):
    THROTTLING = "throttling"
    SERVICE = "service"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SECURITY = "security"
    CREDENTIALS = "credentials"
    VALIDATION = "validation"
    CLIENT = "client"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorClassification:
    category: ErrorCategory
    retryable: bool
    severity: str = "medium"
    error_code: str = ""


class ProcessingError(Exception):
    """Failure of a tenant operation.

    Attributes:
        retryable: Whether another attempt could succeed
        category: ErrorCategory of the failure
        attempts: Number of attempts made before giving up
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.category = category
        self.attempts = attempts


class CircuitOpenError(ProcessingError):
    """Raised without invoking the operation while a circuit is open."""

    def __init__(self, key: str, retry_after: float = 0.0) -> None:
        super().__init__(
            f"Circuit breaker is open for {key}",
            retryable=False,
            category=ErrorCategory.CIRCUIT_OPEN,
        )
        self.key = key
        self.retry_after = retry_after


_SEVERITY = {
    ErrorCategory.SECURITY: "high",
    ErrorCategory.CREDENTIALS: "high",
    ErrorCategory.SERVICE: "high",
    ErrorCategory.CIRCUIT_OPEN: "low",
    ErrorCategory.CANCELLED: "low",
}


def _classification(category: ErrorCategory, retryable: bool, error_code: str = "") -> ErrorClassification:
    return ErrorClassification(
        category=category,
        retryable=retryable,
        severity=_SEVERITY.get(category, "medium"),
        error_code=error_code,
    )


def classify_error(exc: BaseException) -> ErrorClassification:
    """Classify an exception as retryable or terminal.

    Args:
        exc: Exception raised by a tenant operation

    Returns:
        ErrorClassification with category, retryability and severity
    """
    if isinstance(exc, ProcessingError):
        return _classification(exc.category, exc.retryable)

    if isinstance(exc, RoleAssumptionError):
        if exc.error_code in THROTTLING_ERROR_CODES:
            return _classification(ErrorCategory.THROTTLING, True, exc.error_code)
        return _classification(ErrorCategory.CREDENTIALS, exc.retryable, exc.error_code)

    if isinstance(exc, CredentialValidationError):
        return _classification(ErrorCategory.CREDENTIALS, False)

    if isinstance(exc, UnknownTenantError):
        return _classification(ErrorCategory.VALIDATION, False)

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        if code in THROTTLING_ERROR_CODES:
            return _classification(ErrorCategory.THROTTLING, True, code)
        if code in SERVICE_ERROR_CODES:
            return _classification(ErrorCategory.SERVICE, True, code)
        if code in TIMEOUT_ERROR_CODES:
            return _classification(ErrorCategory.TIMEOUT, True, code)
        if code in SECURITY_ERROR_CODES:
            return _classification(ErrorCategory.SECURITY, False, code)
        if code in VALIDATION_ERROR_CODES:
            return _classification(ErrorCategory.VALIDATION, False, code)

        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if isinstance(status, int) and status >= 500:
            return _classification(ErrorCategory.SERVICE, True, code)
        return _classification(ErrorCategory.CLIENT, False, code)

    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, TimeoutError)):
        return _classification(ErrorCategory.TIMEOUT, True)

    if isinstance(exc, (BotoConnectionError, ConnectionError)):
        return _classification(ErrorCategory.NETWORK, True)

    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return _classification(ErrorCategory.VALIDATION, False)

    return _classification(ErrorCategory.UNKNOWN, False)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerStatus:
    key: str
    state: CircuitState
    consecutive_failures: int
    trips: int
    last_transition: datetime
    last_failure: Optional[datetime] = None
    last_success: Optional[datetime] = None


class CircuitBreaker:
    """Circuit breaker for a single key.

    Closed passes calls through and opens after the configured number of
    consecutive failed calls. Open fails fast until the cooldown elapses,
    then HalfOpen admits a single trial call: success closes the circuit
    and failure opens it again.
    """

    def __init__(
        self,
        key: str,
        settings: CircuitBreakerSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self.settings = settings
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trips = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._last_transition = datetime.now(timezone.utc)
        self._last_failure: Optional[datetime] = None
        self._last_success: Optional[datetime] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def _transition(self, target: CircuitState) -> None:
        if self._state != target:
            logger.warning(
                f"Circuit breaker {self.key} transition {self._state.value} -> {target.value}"
            )
            self._state = target
            self._last_transition = datetime.now(timezone.utc)

    def before_call(self) -> None:
        """Admit a call or fail fast.

        Raises:
            CircuitOpenError: When the circuit is open or a half-open trial
                              is already running
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - self._opened_at
                if elapsed < self.settings.cooldown_seconds:
                    raise CircuitOpenError(self.key, self.settings.cooldown_seconds - elapsed)
                self._transition(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.key)
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._trial_in_flight = False
            self._last_success = datetime.now(timezone.utc)
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> bool:
        """Count a failed call.

        Returns:
            True if this failure opened the circuit
        """
        with self._lock:
            self._last_failure = datetime.now(timezone.utc)
            self._trial_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._open()
                return True

            self._failures += 1
            if self._state == CircuitState.CLOSED and self._failures >= self.settings.failure_threshold:
                self._open()
                return True
            return False

    def release(self) -> None:
        """Give back a half-open trial slot without an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def _open(self) -> None:
        self._transition(CircuitState.OPEN)
        self._opened_at = self._clock()
        self._trips += 1

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)

    def status(self) -> CircuitBreakerStatus:
        with self._lock:
            return CircuitBreakerStatus(
                key=self.key,
                state=self._state,
                consecutive_failures=self._failures,
                trips=self._trips,
                last_transition=self._last_transition,
                last_failure=self._last_failure,
                last_success=self._last_success,
            )


def _interruptible_sleep(delay: float, cancel_event: Optional[threading.Event]) -> bool:
    """Sleep for delay seconds; return True if cancelled meanwhile."""
    if cancel_event is None:
        time.sleep(delay)
        return False
    return cancel_event.wait(delay)


class ResilienceController:
    """Executes operations with retry, backoff and per-key circuit breaking."""

    def __init__(
        self,
        retry_settings: Optional[RetrySettings] = None,
        breaker_settings: Optional[CircuitBreakerSettings] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float, Optional[threading.Event]], bool] = _interruptible_sleep,
    ) -> None:
        """Initialize resilience controller.

        Args:
            retry_settings: Backoff and attempt limits
            breaker_settings: Failure threshold and cooldown per key
            metrics: Sink for error counters
            clock: Monotonic time source for circuit cooldowns
            sleep: Waits between attempts, returning True when cancelled
        """
        self.retry_settings = retry_settings or RetrySettings()
        self.breaker_settings = breaker_settings or CircuitBreakerSettings()
        self.metrics = metrics or LoggingMetricsSink()
        self._clock = clock
        self._sleep = sleep

        self._breakers: Dict[str, CircuitBreaker] = {}
        self._breakers_lock = threading.Lock()

        self._metrics_lock = threading.Lock()
        self._total_errors = 0
        self._errors_by_key: Dict[str, int] = {}
        self._errors_by_category: Dict[str, int] = {}
        self._retries = 0
        self._trips = 0
        self._dead_letters = 0
        self._successes = 0
        self._last_updated: Optional[datetime] = None

    def breaker(self, key: str) -> CircuitBreaker:
        """Get or create the circuit breaker for a key."""
        with self._breakers_lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(key, self.breaker_settings, self._clock)
                self._breakers[key] = breaker
            return breaker

    def calculate_delay(self, attempt: int) -> float:
        """Get the backoff before the attempt following attempt number 'attempt'."""
        settings = self.retry_settings
        delay = settings.initial_delay * (settings.multiplier ** (attempt - 1))
        delay = min(delay, settings.max_delay)
        if settings.jitter:
            delay += delay * random.uniform(-settings.jitter, settings.jitter)
        return max(0.0, delay)

    def execute_with_retry(
        self,
        key: str,
        operation: Callable[[], Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Run an operation with retries under the key's circuit breaker.

        The breaker counts the outcome of the whole call, not individual
        attempts. Cancellation is checked between attempts.

        Args:
            key: Circuit breaker key, e.g. 'acme' or 'acme:notify'
            operation: Zero-argument callable performing the work
            cancel_event: Shared cancellation token

        Returns:
            The operation's return value

        Raises:
            CircuitOpenError: When the circuit rejects the call
            ProcessingError: When the operation fails terminally or runs
                             out of attempts
        """
        breaker = self.breaker(key)
        try:
            breaker.before_call()
        except CircuitOpenError:
            self.metrics.increment("circuit_breaker_rejections", key=key)
            raise

        max_attempts = self.retry_settings.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                result = operation()
            except Exception as exc:
                classification = classify_error(exc)
                self._record_error(key, classification)

                if not classification.retryable or attempt >= max_attempts:
                    self._record_call_failure(key, breaker)
                    reason = "non-retryable error" if not classification.retryable else (
                        f"failed after {attempt} attempt(s)"
                    )
                    logger.warning(f"Operation for {key} {reason}: {exc}")
                    if isinstance(exc, ProcessingError):
                        exc.attempts = attempt
                        raise
                    raise ProcessingError(
                        f"Operation for {key} {reason}: {exc}",
                        retryable=classification.retryable,
                        category=classification.category,
                        attempts=attempt,
                    ) from exc

                delay = self.calculate_delay(attempt)
                with self._metrics_lock:
                    self._retries += 1
                self.metrics.increment("operation_retries", key=key)
                logger.info(
                    f"Retrying {key} in {delay:.2f}s after {classification.category.value} "
                    f"error (attempt {attempt}/{max_attempts})"
                )

                if self._sleep(delay, cancel_event):
                    breaker.release()
                    logger.info(f"Retries for {key} cancelled after {attempt} attempt(s)")
                    raise ProcessingError(
                        f"Operation for {key} cancelled after {attempt} attempt(s): {exc}",
                        retryable=True,
                        category=ErrorCategory.CANCELLED,
                        attempts=attempt,
                    ) from exc
                continue

            breaker.record_success()
            with self._metrics_lock:
                self._successes += 1
                self._last_updated = datetime.now(timezone.utc)
            return result

    def _record_error(self, key: str, classification: ErrorClassification) -> None:
        category = classification.category.value
        with self._metrics_lock:
            self._total_errors += 1
            self._errors_by_key[key] = self._errors_by_key.get(key, 0) + 1
            self._errors_by_category[category] = self._errors_by_category.get(category, 0) + 1
            self._last_updated = datetime.now(timezone.utc)
        self.metrics.increment("operation_errors", key=key, category=category)

    def _record_call_failure(self, key: str, breaker: CircuitBreaker) -> None:
        if breaker.record_failure():
            with self._metrics_lock:
                self._trips += 1
            self.metrics.increment("circuit_breaker_trips", key=key)
            self.metrics.event("circuit_breaker_open", key=key)

    def record_dead_letter(self, key: str = "") -> None:
        """Count a message handed to the dead-letter destination."""
        with self._metrics_lock:
            self._dead_letters += 1
            self._last_updated = datetime.now(timezone.utc)
        self.metrics.increment("dead_letters")

    def get_error_metrics(self) -> Dict[str, Any]:
        """Get a snapshot of error counters."""
        with self._metrics_lock:
            return {
                "total_errors": self._total_errors,
                "errors_by_key": dict(self._errors_by_key),
                "errors_by_category": dict(self._errors_by_category),
                "retries": self._retries,
                "successes": self._successes,
                "circuit_breaker_trips": self._trips,
                "dead_letter_count": self._dead_letters,
                "last_updated": self._last_updated,
            }

    def circuit_status(self) -> Dict[str, CircuitBreakerStatus]:
        with self._breakers_lock:
            breakers = list(self._breakers.values())
        return {breaker.key: breaker.status() for breaker in breakers}

    def reset(self, key: Optional[str] = None) -> None:
        """Close one circuit, or every circuit when key is None."""
        with self._breakers_lock:
            if key is None:
                breakers = list(self._breakers.values())
            else:
                breakers = [self._breakers[key]] if key in self._breakers else []
        for breaker in breakers:
            breaker.reset()
