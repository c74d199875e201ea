"""Execution tracking package.

Tracks executions, per-tenant status and steps in memory.
"""

from tenant_notifier.tracking.models import (
    CustomerState,
    DuplicateExecutionError,
    Execution,
    ExecutionNotFoundError,
    ExecutionQuery,
    ExecutionState,
    InvalidTransitionError,
    StepState,
    TenantNotInExecutionError,
    TrackerError,
)
from tenant_notifier.tracking.tracker import ExecutionStatusTracker

__all__ = [
    'CustomerState',
    'DuplicateExecutionError',
    'Execution',
    'ExecutionNotFoundError',
    'ExecutionQuery',
    'ExecutionState',
    'ExecutionStatusTracker',
    'InvalidTransitionError',
    'StepState',
    'TenantNotInExecutionError',
    'TrackerError',
]
