"""Execution status tracker.

Tracks executions in memory as a hierarchy of execution, per-tenant status
and ordered steps. Each execution is mutated under its own lock so deriving
the overall status once every tenant is terminal happens atomically.
Readers receive deep copies.
"""

import copy
import logging
import statistics
import threading
import uuid
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from tenant_notifier.core.metrics import LoggingMetricsSink, MetricsSink
from tenant_notifier.tenants.registry import TenantRegistry
from tenant_notifier.tracking.models import (
    CustomerExecution,
    CustomerState,
    CustomerStats,
    DuplicateExecutionError,
    ErrorDetail,
    ErrorSummary,
    Execution,
    ExecutionMetrics,
    ExecutionNotFoundError,
    ExecutionQuery,
    ExecutionState,
    ExecutionStep,
    ExecutionSummary,
    InvalidTransitionError,
    PerformanceStats,
    StepNotFoundError,
    StepState,
    TenantNotInExecutionError,
    TrackerError,
)


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _seconds(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds()


class ExecutionStatusTracker:
    """In-memory tracker for multi-tenant executions."""

    def __init__(
        self,
        registry: TenantRegistry,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize execution status tracker.

        Args:
            registry: Tenant registry used to reject unknown tenants
            metrics: Sink for execution counters
            clock: Source of the current UTC time
        """
        self.registry = registry
        self.metrics = metrics or LoggingMetricsSink()
        self._clock = clock

        self._lock = threading.Lock()
        self._executions: Dict[str, Execution] = {}
        self._execution_locks: Dict[str, threading.Lock] = {}
        self._by_change: Dict[str, str] = {}

    @contextmanager
    def _locked(self, execution_id: str) -> Iterator[Execution]:
        with self._lock:
            execution = self._executions.get(execution_id)
            lock = self._execution_locks.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        with lock:
            yield execution

    @staticmethod
    def _customer(execution: Execution, tenant_code: str) -> CustomerExecution:
        customer = execution.customers.get(tenant_code)
        if customer is None:
            raise TenantNotInExecutionError(
                f"Tenant {tenant_code} is not part of execution {execution.execution_id}"
            )
        return customer

    def start_execution(
        self,
        change_id: str,
        title: str,
        description: str,
        initiator: str,
        tenants: Sequence[str],
        priority: str = "normal",
        metadata: Optional[Dict] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Execution:
        """Create and start tracking an execution.

        Every tenant starts Pending, as does the execution itself.

        Args:
            change_id: Source change request id, unique per execution
            title: Change title
            description: Change description
            initiator: Who requested the change
            tenants: Tenant codes the change applies to

        Returns:
            Copy of the created Execution

        Raises:
            UnknownTenantError: When any tenant is not registered
            DuplicateExecutionError: When the change id is already tracked
            TrackerError: When no tenant is given
        """
        codes = list(dict.fromkeys(tenants))
        if not codes:
            raise TrackerError(f"Execution for change {change_id} has no tenants")

        accounts = [self.registry.get(code) for code in codes]
        now = self._clock()

        execution = Execution(
            execution_id=f"exec-{uuid.uuid4().hex[:16]}",
            change_id=change_id,
            title=title,
            description=description,
            initiator=initiator,
            initiated_at=now,
            priority=priority or "normal",
            metadata=dict(metadata or {}),
            tags=dict(tags or {}),
            customers={
                account.code: CustomerExecution(tenant_code=account.code, tenant_name=account.name)
                for account in accounts
            },
        )

        with self._lock:
            if change_id in self._by_change:
                raise DuplicateExecutionError(
                    f"Change {change_id} is already tracked as {self._by_change[change_id]}"
                )
            self._executions[execution.execution_id] = execution
            self._execution_locks[execution.execution_id] = threading.Lock()
            self._by_change[change_id] = execution.execution_id
            snapshot = copy.deepcopy(execution)

        self.metrics.increment("executions_started")
        logger.info(
            f"Started execution {execution.execution_id} for change {change_id} "
            f"({len(codes)} tenant(s))"
        )
        return snapshot

    def start_customer_execution(self, execution_id: str, tenant_code: str) -> None:
        """Move a tenant to Running; the first tenant also starts the execution.

        Raises:
            ExecutionNotFoundError: When the execution is unknown
            TenantNotInExecutionError: When the tenant is not part of it
            InvalidTransitionError: When the tenant is not Pending
        """
        with self._locked(execution_id) as execution:
            customer = self._customer(execution, tenant_code)
            if customer.status != CustomerState.PENDING:
                raise InvalidTransitionError(
                    f"Tenant {tenant_code} in {execution_id} is {customer.status.value}, not pending"
                )

            now = self._clock()
            customer.status = CustomerState.RUNNING
            customer.started_at = now
            self._mark_running(execution, now)

        logger.debug(f"Tenant {tenant_code} running in {execution_id}")

    @staticmethod
    def _mark_running(execution: Execution, now: datetime) -> None:
        if execution.status == ExecutionState.PENDING:
            execution.status = ExecutionState.RUNNING
            execution.started_at = now

    def add_execution_step(
        self,
        execution_id: str,
        tenant_code: str,
        step_id: str,
        name: str,
        description: str = "",
        metadata: Optional[Dict] = None,
    ) -> ExecutionStep:
        """Append a Pending step to a tenant's ordered step list.

        Raises:
            InvalidTransitionError: When the tenant already finished
            TrackerError: When the step id is already used for the tenant
        """
        with self._locked(execution_id) as execution:
            customer = self._customer(execution, tenant_code)
            if customer.status.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot add step to {tenant_code} in {execution_id}: already {customer.status.value}"
                )
            if customer.step(step_id) is not None:
                raise TrackerError(f"Step {step_id} already exists for {tenant_code} in {execution_id}")

            step = ExecutionStep(
                step_id=step_id,
                name=name,
                description=description,
                metadata=dict(metadata or {}),
            )
            customer.steps.append(step)
            return copy.deepcopy(step)

    def update_execution_step(
        self,
        execution_id: str,
        tenant_code: str,
        step_id: str,
        status: StepState,
        error_message: str = "",
    ) -> ExecutionStep:
        """Move a step to a new status.

        Entering Running records the start time. Entering a terminal status
        records the completion time and the duration since the start.

        Raises:
            StepNotFoundError: When the step is unknown
            InvalidTransitionError: When the step is already terminal or
                                    the move goes backwards
        """
        with self._locked(execution_id) as execution:
            customer = self._customer(execution, tenant_code)
            step = customer.step(step_id)
            if step is None:
                raise StepNotFoundError(f"Step {step_id} not found for {tenant_code} in {execution_id}")

            if step.status.is_terminal or status == StepState.PENDING or status == step.status:
                raise InvalidTransitionError(
                    f"Step {step_id} cannot move from {step.status.value} to {status.value}"
                )

            now = self._clock()
            if status == StepState.RUNNING:
                step.started_at = now
            else:
                if step.started_at is None:
                    step.started_at = now
                step.completed_at = now
                step.duration = _seconds(step.started_at, now)
                step.error_message = error_message
            step.status = status
            return copy.deepcopy(step)

    def complete_customer_execution(
        self,
        execution_id: str,
        tenant_code: str,
        success: bool,
        error_message: str = "",
        error_category: str = "",
        retryable: bool = False,
    ) -> Execution:
        """Finish a tenant's work as Completed or Failed.

        When this was the last non-terminal tenant the overall status is
        derived (Completed if all succeeded, Failed if all failed, Partial
        otherwise) and metrics plus an error summary are computed.

        Returns:
            Copy of the execution after the update

        Raises:
            InvalidTransitionError: When the tenant already finished
        """
        with self._locked(execution_id) as execution:
            customer = self._customer(execution, tenant_code)
            if customer.status.is_terminal:
                raise InvalidTransitionError(
                    f"Tenant {tenant_code} in {execution_id} already {customer.status.value}"
                )

            now = self._clock()
            if customer.started_at is None:
                customer.started_at = now
            customer.completed_at = now
            customer.duration = _seconds(customer.started_at, now)
            customer.status = CustomerState.COMPLETED if success else CustomerState.FAILED
            if not success:
                customer.error_message = error_message
                customer.error_category = error_category or "unknown"
                customer.retryable = retryable
            self._mark_running(execution, now)

            if all(c.status.is_terminal for c in execution.customers.values()):
                self._finalize(execution, now)

            snapshot = copy.deepcopy(execution)

        self.metrics.increment(
            "customer_executions_completed" if success else "customer_executions_failed",
            tenant=tenant_code,
        )
        if snapshot.status.is_terminal:
            self.metrics.increment("executions_finished", status=snapshot.status.value)
            logger.info(
                f"Execution {execution_id} finished {snapshot.status.value} "
                f"in {snapshot.duration:.3f}s"
            )
        return snapshot

    def _finalize(self, execution: Execution, now: datetime) -> None:
        states = [customer.status for customer in execution.customers.values()]
        if all(state == CustomerState.COMPLETED for state in states):
            execution.status = ExecutionState.COMPLETED
        elif all(state == CustomerState.FAILED for state in states):
            execution.status = ExecutionState.FAILED
        else:
            execution.status = ExecutionState.PARTIAL

        execution.completed_at = now
        execution.duration = _seconds(execution.initiated_at, now)
        execution.metrics = self._calculate_metrics(execution)
        if CustomerState.FAILED in states:
            execution.error_summary = self._error_summary(execution)

    @staticmethod
    def _calculate_metrics(execution: Execution) -> ExecutionMetrics:
        metrics = ExecutionMetrics(total_duration=execution.duration or 0.0)

        durations = {
            code: customer.duration
            for code, customer in execution.customers.items()
            if customer.duration is not None
        }
        if durations:
            metrics.average_duration_per_customer = sum(durations.values()) / len(durations)
            metrics.fastest_customer = min(durations, key=durations.get)
            metrics.slowest_customer = max(durations, key=durations.get)

        succeeded = sum(
            1 for customer in execution.customers.values() if customer.status == CustomerState.COMPLETED
        )
        metrics.success_rate = succeeded / execution.total_customers * 100
        if metrics.total_duration > 0:
            metrics.throughput_per_minute = execution.total_customers / (metrics.total_duration / 60)
        return metrics

    @staticmethod
    def _error_summary(execution: Execution) -> ErrorSummary:
        summary = ErrorSummary()
        categories: Counter = Counter()

        for code, customer in execution.customers.items():
            if customer.status != CustomerState.FAILED:
                continue

            failed_step = next(
                (step for step in customer.steps if step.status == StepState.FAILED), None
            )
            summary.details.append(
                ErrorDetail(
                    tenant_code=code,
                    category=customer.error_category,
                    message=customer.error_message,
                    retryable=customer.retryable,
                    step_id=failed_step.step_id if failed_step else "",
                    timestamp=customer.completed_at,
                )
            )
            summary.total_errors += 1
            summary.errors_by_tenant[code] = summary.errors_by_tenant.get(code, 0) + 1
            categories[customer.error_category] += 1
            if customer.retryable:
                summary.retryable_errors += 1
            else:
                summary.permanent_errors += 1

        summary.errors_by_category = dict(categories)
        if categories:
            summary.most_common_category = categories.most_common(1)[0][0]
        return summary

    def get_execution(self, execution_id: str) -> Execution:
        """Get a copy of an execution.

        Raises:
            ExecutionNotFoundError: When the execution is unknown
        """
        with self._locked(execution_id) as execution:
            return copy.deepcopy(execution)

    def get_execution_by_change(self, change_id: str) -> Optional[Execution]:
        with self._lock:
            execution_id = self._by_change.get(change_id)
        if execution_id is None:
            return None
        return self.get_execution(execution_id)

    def _snapshots(self, tenant_code: Optional[str] = None) -> List[Execution]:
        """Copy tracked executions, optionally only those including a tenant."""
        with self._lock:
            ids = [
                execution_id
                for execution_id, execution in self._executions.items()
                if not tenant_code or tenant_code in execution.customers
            ]
        snapshots = []
        for execution_id in ids:
            try:
                snapshots.append(self.get_execution(execution_id))
            except ExecutionNotFoundError:
                continue  # purged concurrently
        return snapshots

    def query_executions(self, query: Optional[ExecutionQuery] = None) -> List[Execution]:
        """Find executions matching a query, newest first."""
        query = query or ExecutionQuery()
        matches = [
            execution
            for execution in self._snapshots(query.tenant_code)
            if query.matches(execution)
        ]
        matches.sort(key=lambda execution: execution.initiated_at, reverse=True)

        matches = matches[query.offset:]
        if query.limit:
            matches = matches[: query.limit]
        return matches

    def get_execution_summary(self, window: timedelta = timedelta(hours=24)) -> ExecutionSummary:
        """Aggregate executions initiated within the window."""
        now = self._clock()
        executions = self.query_executions(ExecutionQuery(start_time=now - window))
        summary = ExecutionSummary(window=window, generated_at=now, total_executions=len(executions))

        status_counts: Counter = Counter()
        durations = []
        for execution in executions:
            status_counts[execution.status] += 1
            if execution.duration is not None:
                durations.append(execution.duration)

            for code, customer in execution.customers.items():
                stats = summary.customer_stats.setdefault(code, CustomerStats(tenant_code=code))
                stats.total_executions += 1
                stats.status_counts[customer.status] = stats.status_counts.get(customer.status, 0) + 1
                if customer.duration is not None:
                    stats.total_duration += customer.duration

        for stats in summary.customer_stats.values():
            if stats.total_executions:
                stats.average_duration = stats.total_duration / stats.total_executions

        summary.status_counts = dict(status_counts)
        if durations:
            summary.performance = PerformanceStats(
                average_duration=sum(durations) / len(durations),
                median_duration=statistics.median(durations),
                min_duration=min(durations),
                max_duration=max(durations),
            )

        finished = sum(count for state, count in status_counts.items() if state.is_terminal)
        if finished:
            summary.performance.success_rate = (
                status_counts.get(ExecutionState.COMPLETED, 0) / finished * 100
            )
        return summary

    def status_counts(self) -> Dict[str, int]:
        """Get the number of tracked executions per status."""
        counts: Counter = Counter(execution.status.value for execution in self._snapshots())
        return dict(counts)

    def purge(self, older_than: timedelta) -> int:
        """Drop finished executions completed before now minus older_than.

        Returns:
            Number of executions removed
        """
        cutoff = self._clock() - older_than
        removed = 0
        for execution in self._snapshots():
            if execution.completed_at is None or execution.completed_at >= cutoff:
                continue
            with self._lock:
                self._executions.pop(execution.execution_id, None)
                self._execution_locks.pop(execution.execution_id, None)
                if self._by_change.get(execution.change_id) == execution.execution_id:
                    del self._by_change[execution.change_id]
            removed += 1

        if removed:
            logger.info(f"Purged {removed} finished execution(s)")
        return removed
