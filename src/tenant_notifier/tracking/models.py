"""Execution tracking data model.

An Execution covers one change request across one or more tenants. Each
tenant has a CustomerExecution with an ordered list of ExecutionSteps.
Durations are expressed in seconds.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TrackerError(Exception):
    """Base exception for execution tracking operations."""

    pass


class ExecutionNotFoundError(TrackerError):
    """Raised when an execution id is not tracked."""

    pass


class TenantNotInExecutionError(TrackerError):
    """Raised when a tenant is not part of an execution."""

    pass


class StepNotFoundError(TrackerError):
    """Raised when a step id is not part of a tenant's execution."""

    pass


class DuplicateExecutionError(TrackerError):
    """Raised when an execution for the same change id already exists."""

    pass


class InvalidTransitionError(TrackerError):
    """Raised when a status change is not allowed from the current state."""

    pass


class ExecutionState(Enum):
    """Overall execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.PARTIAL)


class CustomerState(Enum):
    """Per-tenant status within an execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CustomerState.COMPLETED, CustomerState.FAILED)


class StepState(Enum):
    """Status of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepState.COMPLETED, StepState.FAILED)


@dataclass
class ExecutionStep:
    step_id: str
    name: str
    description: str = ""
    status: StepState = StepState.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    error_message: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CustomerExecution:
    tenant_code: str
    tenant_name: str = ""
    status: CustomerState = CustomerState.PENDING
    steps: List[ExecutionStep] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    error_message: str = ""
    error_category: str = ""
    retryable: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def step(self, step_id: str) -> Optional[ExecutionStep]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


@dataclass
class ExecutionMetrics:
    """Derived once when an execution reaches a terminal state."""

    total_duration: float = 0.0
    average_duration_per_customer: float = 0.0
    fastest_customer: str = ""
    slowest_customer: str = ""
    success_rate: float = 0.0
    throughput_per_minute: float = 0.0


@dataclass
class ErrorDetail:
    tenant_code: str
    category: str
    message: str
    retryable: bool
    step_id: str = ""
    timestamp: Optional[datetime] = None


@dataclass
class ErrorSummary:
    """Errors of an execution grouped by tenant and category."""

    total_errors: int = 0
    errors_by_tenant: Dict[str, int] = field(default_factory=dict)
    errors_by_category: Dict[str, int] = field(default_factory=dict)
    retryable_errors: int = 0
    permanent_errors: int = 0
    most_common_category: str = ""
    details: List[ErrorDetail] = field(default_factory=list)


@dataclass
class Execution:
    execution_id: str
    change_id: str
    title: str
    description: str
    initiator: str
    initiated_at: datetime
    status: ExecutionState = ExecutionState.PENDING
    customers: Dict[str, CustomerExecution] = field(default_factory=dict)
    priority: str = "normal"
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    metrics: Optional[ExecutionMetrics] = None
    error_summary: Optional[ErrorSummary] = None

    @property
    def total_customers(self) -> int:
        return len(self.customers)


@dataclass
class ExecutionQuery:
    """Filter for querying tracked executions.

    Empty fields do not filter. Results are returned newest first and then
    paginated with offset and limit (limit 0 means no limit).
    """

    statuses: Tuple[ExecutionState, ...] = ()
    tenant_code: str = ""
    initiator: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    priority: str = ""
    tags: Dict[str, str] = field(default_factory=dict)
    limit: int = 0
    offset: int = 0

    def matches(self, execution: Execution) -> bool:
        if self.statuses and execution.status not in self.statuses:
            return False
        if self.tenant_code and self.tenant_code not in execution.customers:
            return False
        if self.initiator and execution.initiator != self.initiator:
            return False
        if self.start_time is not None and execution.initiated_at < self.start_time:
            return False
        if self.end_time is not None and execution.initiated_at > self.end_time:
            return False
        if self.priority and execution.priority != self.priority:
            return False
        for key, value in self.tags.items():
            if execution.tags.get(key) != value:
                return False
        return True


@dataclass
class CustomerStats:
    tenant_code: str
    total_executions: int = 0
    status_counts: Dict[CustomerState, int] = field(default_factory=dict)
    total_duration: float = 0.0
    average_duration: float = 0.0


@dataclass
class PerformanceStats:
    average_duration: float = 0.0
    median_duration: float = 0.0
    min_duration: float = 0.0
    max_duration: float = 0.0
    success_rate: float = 0.0


@dataclass
class ExecutionSummary:
    """Aggregate view over executions initiated within a time window."""

    window: timedelta
    generated_at: datetime
    total_executions: int = 0
    status_counts: Dict[ExecutionState, int] = field(default_factory=dict)
    customer_stats: Dict[str, CustomerStats] = field(default_factory=dict)
    performance: PerformanceStats = field(default_factory=PerformanceStats)
