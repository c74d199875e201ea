"""Resilience package.

Retry with backoff and per-key circuit breaking for tenant operations.
"""

from tenant_notifier.resilience.controller import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    ErrorCategory,
    ErrorClassification,
    ProcessingError,
    ResilienceController,
    classify_error,
)

__all__ = [
    'CircuitBreaker',
    'CircuitOpenError',
    'CircuitState',
    'ErrorCategory',
    'ErrorClassification',
    'ProcessingError',
    'ResilienceController',
    'classify_error',
]
