"""Queue message ingestion pipeline.

One poller thread long-polls the change queue and pushes messages into a
bounded buffer, a fixed pool of worker threads drains the buffer, and a
reporter thread publishes pipeline gauges. All threads share one
cancellation event.

Each message moves through Received -> Validated -> Processing and ends
Acknowledged (deleted), DeadLettered (forwarded, then deleted) or Retained
(left on the queue for redelivery or the queue's redrive policy).
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from tenant_notifier.core.config import ProcessorSettings
from tenant_notifier.core.metrics import LoggingMetricsSink, MetricsSink
from tenant_notifier.pipeline.messages import (
    ChangeMessage,
    MessageValidationError,
    build_dead_letter_body,
)
from tenant_notifier.pipeline.operations import TenantOperation, TenantOperationContext
from tenant_notifier.resilience.controller import (
    ErrorCategory,
    ProcessingError,
    ResilienceController,
    classify_error,
)
from tenant_notifier.tenants.registry import (
    SERVICE_NOTIFICATION,
    TenantRegistry,
    UnknownTenantError,
)
from tenant_notifier.tracking.models import DuplicateExecutionError, ExecutionState


logger = logging.getLogger(__name__)

WORKER_POLL_TIMEOUT = 0.5


class QueueConnectionError(Exception):
    """Raised when the change queue cannot be reached."""

    pass


class ShutdownTimeoutError(Exception):
    """Raised when workers do not exit within the shutdown timeout."""

    def __init__(self, timeout: float, alive: List[str]) -> None:
        super().__init__(
            f"Shutdown timed out after {timeout:.1f}s; still running: {', '.join(alive)}"
        )
        self.timeout = timeout
        self.alive = alive


class MessageState(Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    PROCESSING = "processing"
    ACKNOWLEDGED = "acknowledged"
    DEAD_LETTERED = "dead_lettered"
    RETAINED = "retained"


@dataclass
class ProcessingOutcome:
    message_id: str
    state: MessageState
    execution_id: Optional[str] = None
    error: Optional[str] = None
    tenant_results: Dict[str, bool] = field(default_factory=dict)


class MessageProcessor:
    """Polls the change queue and processes messages with a worker pool."""

    def __init__(
        self,
        settings: ProcessorSettings,
        sqs_client,
        registry: TenantRegistry,
        credential_manager,
        isolation_validator,
        resilience: ResilienceController,
        tracker,
        operation: TenantOperation,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        """Initialize message processor.

        Args:
            settings: Queue, worker pool and shutdown options
            sqs_client: boto3 SQS client for the control-plane account
            registry: Tenant registry
            credential_manager: CredentialIsolationManager
            isolation_validator: IsolationValidator gating each tenant
            resilience: Controller wrapping tenant operations
            tracker: ExecutionStatusTracker
            operation: Work performed for each tenant of a message
            metrics: Sink for pipeline counters and gauges
        """
        if not settings.queue_url:
            raise ValueError("A queue URL is required to process messages")

        self.settings = settings
        self.sqs = sqs_client
        self.registry = registry
        self.credential_manager = credential_manager
        self.isolation_validator = isolation_validator
        self.resilience = resilience
        self.tracker = tracker
        self.operation = operation
        self.metrics = metrics or LoggingMetricsSink()

        self._buffer: "queue.Queue[dict]" = queue.Queue(maxsize=settings.message_buffer_size)
        self._cancel = threading.Event()
        self._threads: List[threading.Thread] = []
        self._workers: List[threading.Thread] = []
        self._started = False
        self._started_at: Optional[float] = None
        self._fatal_error: Optional[QueueConnectionError] = None

        self._stats_lock = threading.Lock()
        self._stats = {
            "messages_received": 0,
            "messages_processed": 0,
            "messages_dead_lettered": 0,
            "messages_retained": 0,
            "messages_dropped": 0,
            "tenant_successes": 0,
            "tenant_failures": 0,
            "poll_errors": 0,
        }
        self._in_flight = 0

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def _count(self, name: str, value: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] += value
        self.metrics.increment(name, value)

    def start(self) -> None:
        """Verify the queue is reachable and start the poller, workers and reporter.

        Raises:
            QueueConnectionError: When the queue cannot be reached
            RuntimeError: When the processor was already started
        """
        if self._started:
            raise RuntimeError("Message processor already started")

        try:
            self.sqs.get_queue_attributes(
                QueueUrl=self.settings.queue_url, AttributeNames=["QueueArn"]
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueConnectionError(f"Unable to reach queue {self.settings.queue_url}: {e}") from e

        self._started = True
        self._started_at = time.monotonic()

        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"notifier-worker-{index}", daemon=True)
            for index in range(self.settings.worker_pool_size)
        ]
        self._threads = [
            threading.Thread(target=self._poll_loop, name="notifier-poller", daemon=True),
            *self._workers,
            threading.Thread(target=self._report_loop, name="notifier-metrics", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

        logger.info(
            f"Message processor started: queue={self.settings.queue_url} "
            f"workers={self.settings.worker_pool_size} buffer={self.settings.message_buffer_size}"
        )

    def poll_once(self) -> int:
        """Receive one batch of messages into the buffer.

        Messages that do not fit in the buffer are dropped with a warning
        and become visible again on the queue after the visibility timeout.

        Returns:
            Number of messages buffered

        Raises:
            QueueConnectionError: When the receive call fails
        """
        try:
            response = self.sqs.receive_message(
                QueueUrl=self.settings.queue_url,
                MaxNumberOfMessages=self.settings.max_messages,
                WaitTimeSeconds=self.settings.wait_time_seconds,
                VisibilityTimeout=self.settings.visibility_timeout,
                AttributeNames=["All"],
                MessageAttributeNames=["All"],
            )
        except (ClientError, BotoCoreError) as e:
            self._count("poll_errors")
            raise QueueConnectionError(f"Failed to receive from {self.settings.queue_url}: {e}") from e

        messages = response.get("Messages", [])
        if self._cancel.is_set():
            return 0

        buffered = 0
        for message in messages:
            self._count("messages_received")
            try:
                self._buffer.put_nowait(message)
                buffered += 1
            except queue.Full:
                self._count("messages_dropped")
                logger.warning(
                    f"Message buffer full ({self.settings.message_buffer_size}); dropped "
                    f"{message.get('MessageId')}. Scale workers or throttle the producer."
                )

        if messages:
            logger.debug(f"Buffered {buffered}/{len(messages)} message(s)")
        return buffered

    def _poll_loop(self) -> None:
        failures = 0
        while not self._cancel.is_set():
            try:
                self.poll_once()
                failures = 0
            except QueueConnectionError as e:
                failures += 1
                logger.error(
                    f"Queue poll failed ({failures}/{self.settings.max_consecutive_poll_failures}): {e}"
                )
                if failures >= self.settings.max_consecutive_poll_failures:
                    self._fatal_error = e
                    logger.error("Queue connectivity lost; stopping message processor")
                    self._cancel.set()
                    break
            self._cancel.wait(self.settings.polling_interval)
        logger.info("Poller stopped")

    def _worker_loop(self) -> None:
        while not self._cancel.is_set():
            try:
                message = self._buffer.get(timeout=WORKER_POLL_TIMEOUT)
            except queue.Empty:
                continue

            with self._stats_lock:
                self._in_flight += 1
            try:
                self.process_message(message)
            except Exception as e:
                logger.error(f"Unhandled error processing {message.get('MessageId')}: {e}", exc_info=True)
            finally:
                with self._stats_lock:
                    self._in_flight -= 1
                self._buffer.task_done()

        logger.debug(f"{threading.current_thread().name} stopped")

    def _report_loop(self) -> None:
        while not self._cancel.wait(self.settings.metrics_interval):
            try:
                self.publish_metrics()
            except Exception as e:
                logger.error(f"Metrics reporting failed: {e}", exc_info=True)

    def publish_metrics(self) -> Dict[str, Any]:
        """Publish pipeline gauges and purge executions past the retention window.

        Returns:
            The metrics snapshot that was published
        """
        metrics = self.get_metrics()
        self.metrics.gauge("buffer_depth", metrics["buffer_depth"])
        self.metrics.gauge("messages_in_flight", metrics["in_flight"])
        logger.info(
            f"Pipeline: received={metrics['messages_received']} "
            f"processed={metrics['messages_processed']} "
            f"dead_lettered={metrics['messages_dead_lettered']} "
            f"dropped={metrics['messages_dropped']} buffer={metrics['buffer_depth']}"
        )

        retention = self.settings.execution_retention_seconds
        if retention > 0:
            purged = self.tracker.purge(timedelta(seconds=retention))
            if purged:
                self.metrics.increment("executions_purged", purged)
        return metrics

    def process_message(self, sqs_message: Dict[str, Any]) -> ProcessingOutcome:
        """Process one queue message end to end.

        Malformed messages and messages naming unknown tenants are
        dead-lettered without creating an execution. Otherwise an execution
        is started and every tenant is processed; the message is deleted
        when all tenants succeed and dead-lettered when any fails. A message
        whose processing was cancelled by shutdown stays on the queue.

        Returns:
            ProcessingOutcome describing the final message state
        """
        message_id = sqs_message.get("MessageId", "")
        body = sqs_message.get("Body", "")
        outcome = ProcessingOutcome(message_id=message_id, state=MessageState.RECEIVED)

        try:
            change = ChangeMessage.from_body(body)
            change.validate_tenants(self.registry)
        except (MessageValidationError, UnknownTenantError) as e:
            logger.warning(f"Rejecting message {message_id}: {e}")
            outcome.error = str(e)
            outcome.state = self._dead_letter(sqs_message, str(e))
            return outcome

        outcome.state = MessageState.VALIDATED

        try:
            execution = self.tracker.start_execution(
                change.change_id,
                change.title,
                change.description,
                change.created_by,
                list(change.customer_codes),
                priority=change.priority,
                metadata=dict(change.metadata, templateId=change.template_id, messageId=message_id),
            )
        except DuplicateExecutionError as e:
            return self._handle_redelivery(sqs_message, change, outcome, e)

        outcome.execution_id = execution.execution_id
        outcome.state = MessageState.PROCESSING
        logger.info(
            f"Processing change {change.change_id} ({message_id}) for "
            f"{', '.join(change.customer_codes)} as {execution.execution_id}"
        )

        errors: Dict[str, Exception] = {}
        for code in change.customer_codes:
            self._extend_visibility(sqs_message)
            error = self._process_tenant(change, code, execution.execution_id)
            outcome.tenant_results[code] = error is None
            if error is not None:
                errors[code] = error

        if errors:
            outcome.error = "; ".join(f"{code}: {error}" for code, error in errors.items())
            cancelled = any(
                classify_error(error).category == ErrorCategory.CANCELLED for error in errors.values()
            )
            if cancelled:
                logger.warning(
                    f"Processing of {message_id} interrupted by shutdown; leaving it for redelivery"
                )
                self._count("messages_retained")
                outcome.state = MessageState.RETAINED
            else:
                outcome.state = self._dead_letter(sqs_message, outcome.error)
        else:
            outcome.state = self._acknowledge(sqs_message)
            if outcome.state == MessageState.ACKNOWLEDGED:
                self._count("messages_processed")
        return outcome

    def _handle_redelivery(
        self,
        sqs_message: Dict[str, Any],
        change: ChangeMessage,
        outcome: ProcessingOutcome,
        error: DuplicateExecutionError,
    ) -> ProcessingOutcome:
        """Settle a redelivered message whose change id is already tracked."""
        existing = self.tracker.get_execution_by_change(change.change_id)
        outcome.execution_id = existing.execution_id if existing else None

        if existing is not None and existing.status == ExecutionState.COMPLETED:
            logger.info(f"Change {change.change_id} already completed; acknowledging redelivery")
            outcome.state = self._acknowledge(sqs_message)
            return outcome

        if existing is not None and not existing.status.is_terminal:
            # The first delivery still owns the message
            logger.info(
                f"Change {change.change_id} is still {existing.status.value} as "
                f"{existing.execution_id}; leaving redelivery {outcome.message_id} on the queue"
            )
            self._count("messages_retained")
            outcome.state = MessageState.RETAINED
            return outcome

        status = existing.status.value if existing else "unknown"
        outcome.error = f"Duplicate delivery of change {change.change_id} (execution {status})"
        logger.warning(outcome.error)
        outcome.state = self._dead_letter(sqs_message, outcome.error)
        return outcome

    def _check_isolation(self, tenant_code: str) -> None:
        """Fail the attempt when the tenant does not pass the isolation gate.

        A gate failing only on transient credential errors is retryable;
        any other failure is a security error.
        """
        report = self.isolation_validator.validate_tenant(tenant_code)
        if report.overall_passed:
            return

        failed = ", ".join(result.rule_id for result in report.failed_results())
        if report.retryable:
            raise ProcessingError(
                f"Isolation validation for {tenant_code} hit transient errors: {failed}",
                retryable=True,
                category=ErrorCategory.CREDENTIALS,
            )
        raise ProcessingError(
            f"Isolation validation failed for {tenant_code}: {failed}",
            retryable=False,
            category=ErrorCategory.SECURITY,
        )

    def _process_tenant(
        self, change: ChangeMessage, tenant_code: str, execution_id: str
    ) -> Optional[Exception]:
        """Run isolation, credentials and the operation for one tenant.

        Returns:
            None on success, otherwise the error that failed the tenant
        """
        tenant = self.registry.get(tenant_code)
        context = TenantOperationContext(
            message=change,
            tenant=tenant,
            execution_id=execution_id,
            tracker=self.tracker,
            credential_manager=self.credential_manager,
            isolation_validator=self.isolation_validator,
            cancel_event=self._cancel,
        )

        def attempt():
            with context.step("isolation", "Validate tenant isolation"):
                self._check_isolation(tenant_code)
            with context.step("credentials", "Acquire scoped credentials"):
                credentials = self.credential_manager.get_cached_or_assume(
                    tenant_code, SERVICE_NOTIFICATION
                )
                self.credential_manager.validate(credentials)
            return self.operation.run(context)

        self.tracker.start_customer_execution(execution_id, tenant_code)
        try:
            if self._cancel.is_set():
                raise ProcessingError(
                    f"Processing of {tenant_code} cancelled before it started",
                    retryable=True,
                    category=ErrorCategory.CANCELLED,
                )
            self.resilience.execute_with_retry(
                f"{tenant_code}:{self.operation.name}", attempt, self._cancel
            )
        except Exception as e:
            classification = classify_error(e)
            self.tracker.complete_customer_execution(
                execution_id,
                tenant_code,
                success=False,
                error_message=str(e),
                error_category=classification.category.value,
                retryable=classification.retryable,
            )
            self._count("tenant_failures")
            logger.error(f"Tenant {tenant_code} failed for change {change.change_id}: {e}")
            return e

        self.tracker.complete_customer_execution(execution_id, tenant_code, success=True)
        self._count("tenant_successes")
        return None

    def _extend_visibility(self, sqs_message: Dict[str, Any]) -> None:
        """Give the message a fresh visibility window before the next tenant."""
        try:
            self.sqs.change_message_visibility(
                QueueUrl=self.settings.queue_url,
                ReceiptHandle=sqs_message["ReceiptHandle"],
                VisibilityTimeout=self.settings.visibility_timeout,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to extend visibility of {sqs_message.get('MessageId')}: {e}")

    def _acknowledge(self, sqs_message: Dict[str, Any]) -> MessageState:
        try:
            self.sqs.delete_message(
                QueueUrl=self.settings.queue_url,
                ReceiptHandle=sqs_message["ReceiptHandle"],
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to delete message {sqs_message.get('MessageId')}: {e}")
            self._count("messages_retained")
            return MessageState.RETAINED
        return MessageState.ACKNOWLEDGED

    def _dead_letter(self, sqs_message: Dict[str, Any], error: str) -> MessageState:
        """Forward a failed message to the dead-letter queue, then delete it.

        Without a dead-letter queue, or when the hand-off fails, the message
        stays on the primary queue.
        """
        message_id = sqs_message.get("MessageId")
        if not self.settings.dead_letter_queue_url:
            logger.warning(
                f"No dead-letter queue configured; leaving {message_id} for the queue redrive policy"
            )
            self._count("messages_retained")
            return MessageState.RETAINED

        try:
            self.sqs.send_message(
                QueueUrl=self.settings.dead_letter_queue_url,
                MessageBody=build_dead_letter_body(
                    sqs_message.get("Body", ""), error, self.settings.processor_name
                ),
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to dead-letter message {message_id}: {e}")
            self._count("messages_retained")
            return MessageState.RETAINED

        self.resilience.record_dead_letter()
        self._count("messages_dead_lettered")
        logger.warning(f"Dead-lettered message {message_id}: {error}")

        if self._acknowledge(sqs_message) != MessageState.ACKNOWLEDGED:
            return MessageState.RETAINED
        return MessageState.DEAD_LETTERED

    def stop(self) -> None:
        """Signal the poller and workers to stop without waiting."""
        if not self._cancel.is_set():
            logger.info("Stopping message processor")
        self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for all pipeline threads to exit.

        Returns:
            True if every thread exited within the timeout

        Raises:
            QueueConnectionError: When the poller stopped on connectivity loss
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)

        finished = not any(thread.is_alive() for thread in self._threads)
        if finished and self._fatal_error is not None:
            raise self._fatal_error
        return finished

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the pipeline and wait for in-flight work to finish.

        Args:
            timeout: Seconds to wait, defaults to the configured shutdown timeout

        Raises:
            ShutdownTimeoutError: When threads are still running at the deadline
            QueueConnectionError: When the poller had stopped on connectivity loss
        """
        timeout = self.settings.shutdown_timeout if timeout is None else timeout
        self.stop()

        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        alive = [thread.name for thread in self._threads if thread.is_alive()]
        if alive:
            logger.error(f"Shutdown timed out; threads still running: {', '.join(alive)}")
            raise ShutdownTimeoutError(timeout, alive)

        abandoned = self._buffer.qsize()
        if abandoned:
            logger.info(f"{abandoned} buffered message(s) left for redelivery")
        logger.info("Message processor stopped")

        if self._fatal_error is not None:
            raise self._fatal_error

    def is_running(self) -> bool:
        return self._started and not self._cancel.is_set()

    def get_queue_depth(self) -> Dict[str, int]:
        """Get approximate queue depth plus the local buffer size.

        Raises:
            QueueConnectionError: When the queue cannot be reached
        """
        try:
            response = self.sqs.get_queue_attributes(
                QueueUrl=self.settings.queue_url,
                AttributeNames=[
                    "ApproximateNumberOfMessages",
                    "ApproximateNumberOfMessagesNotVisible",
                ],
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueConnectionError(f"Unable to read queue depth: {e}") from e

        attributes = response.get("Attributes", {})
        return {
            "visible": int(attributes.get("ApproximateNumberOfMessages", 0)),
            "in_flight": int(attributes.get("ApproximateNumberOfMessagesNotVisible", 0)),
            "buffered": self._buffer.qsize(),
        }

    def get_metrics(self) -> Dict[str, Any]:
        """Get pipeline counters and current load."""
        with self._stats_lock:
            metrics: Dict[str, Any] = dict(self._stats)
            metrics["in_flight"] = self._in_flight
        metrics["buffer_depth"] = self._buffer.qsize()
        metrics["buffer_capacity"] = self.settings.message_buffer_size
        metrics["worker_pool_size"] = self.settings.worker_pool_size
        metrics["running"] = self.is_running()
        metrics["uptime_seconds"] = (
            time.monotonic() - self._started_at if self._started_at is not None else 0.0
        )
        return metrics
