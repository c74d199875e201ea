"""Processing context.

Builds every component of the notifier explicitly from configuration and
exposes the administrative surface used by health and metrics endpoints.
"""

import logging
from typing import Any, Dict, Optional

from tenant_notifier.core.aws_client import AWSClientManager
from tenant_notifier.core.config import Configuration, ConfigurationError
from tenant_notifier.core.metrics import LoggingMetricsSink, MetricsSink
from tenant_notifier.credentials.manager import CredentialIsolationManager
from tenant_notifier.isolation.rules import default_rules
from tenant_notifier.isolation.validator import IsolationValidator
from tenant_notifier.pipeline.operations import NotificationOperation, TenantOperation
from tenant_notifier.pipeline.processor import MessageProcessor
from tenant_notifier.resilience.controller import ResilienceController
from tenant_notifier.tenants.registry import TenantRegistry, TenantRegistryError
from tenant_notifier.tracking.tracker import ExecutionStatusTracker


logger = logging.getLogger(__name__)

SQS_CONNECT_TIMEOUT = 5.0
# Long polls must finish before the read timeout fires
SQS_READ_TIMEOUT_MARGIN = 10.0


class ProcessingContext:
    """Owns the components of one notifier process."""

    def __init__(
        self,
        registry: TenantRegistry,
        credential_manager: CredentialIsolationManager,
        isolation_validator: IsolationValidator,
        resilience: ResilienceController,
        tracker: ExecutionStatusTracker,
        processor: Optional[MessageProcessor] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        self.registry = registry
        self.credential_manager = credential_manager
        self.isolation_validator = isolation_validator
        self.resilience = resilience
        self.tracker = tracker
        self.processor = processor
        self.metrics = metrics or LoggingMetricsSink()

    @classmethod
    def from_configuration(
        cls,
        config: Configuration,
        aws_client: Optional[AWSClientManager] = None,
        metrics: Optional[MetricsSink] = None,
        operation: Optional[TenantOperation] = None,
    ) -> "ProcessingContext":
        """Construct every component from configuration.

        Args:
            config: Loaded configuration
            aws_client: Control-plane client manager, created from the
                        configured profile and region when omitted
            metrics: Metrics sink shared by all components
            operation: Tenant operation, defaults to SES notifications from
                       'notifications.source_address'

        Returns:
            Fully wired ProcessingContext

        Raises:
            ConfigurationError: When required settings are missing or invalid
        """
        metrics = metrics or LoggingMetricsSink()
        if aws_client is None:
            aws_client = AWSClientManager(
                profile_name=config.get_profile_name(),
                region_name=config.get_region(),
            )

        try:
            registry = TenantRegistry.from_config(
                config.get_tenant_mappings(), config.get_region()
            )
        except TenantRegistryError as e:
            raise ConfigurationError(f"Invalid tenant configuration: {e}") from e

        credential_settings = config.get_credential_settings()
        isolation_settings = config.get_isolation_settings()

        credential_manager = CredentialIsolationManager(
            registry, aws_client, credential_settings, metrics
        )
        tracker = ExecutionStatusTracker(registry, metrics)
        isolation_validator = IsolationValidator(
            registry,
            default_rules(registry, credential_manager, isolation_settings, tracker),
            isolation_settings,
            metrics,
        )
        resilience = ResilienceController(
            config.get_retry_settings(),
            config.get_circuit_breaker_settings(),
            metrics,
        )

        processor = None
        processor_settings = config.get_processor_settings()
        if processor_settings.queue_url:
            if operation is None:
                source_address = config.get("notifications.source_address")
                if not source_address:
                    raise ConfigurationError(
                        "Required field 'notifications.source_address' is missing"
                    )
                operation = NotificationOperation.with_ses(
                    source_address,
                    connect_timeout=credential_settings.connect_timeout,
                    read_timeout=credential_settings.read_timeout,
                )

            sqs_client = aws_client.get_client(
                "sqs",
                processor_settings.region,
                connect_timeout=SQS_CONNECT_TIMEOUT,
                read_timeout=processor_settings.wait_time_seconds + SQS_READ_TIMEOUT_MARGIN,
            )
            processor = MessageProcessor(
                processor_settings,
                sqs_client,
                registry,
                credential_manager,
                isolation_validator,
                resilience,
                tracker,
                operation,
                metrics,
            )
        else:
            logger.info("No queue URL configured; message processing is disabled")

        logger.info(f"Processing context ready for {len(registry)} tenant(s)")
        return cls(
            registry,
            credential_manager,
            isolation_validator,
            resilience,
            tracker,
            processor,
            metrics,
        )

    def _require_processor(self) -> MessageProcessor:
        if self.processor is None:
            raise ConfigurationError("Message processing is not configured (no queue URL)")
        return self.processor

    def start(self) -> None:
        self._require_processor().start()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop message processing, waiting up to timeout for workers."""
        if self.processor is not None:
            self.processor.shutdown(timeout)

    def is_running(self) -> bool:
        return self.processor is not None and self.processor.is_running()

    def get_queue_depth(self) -> Dict[str, int]:
        return self._require_processor().get_queue_depth()

    def get_cache_status(self):
        return self.credential_manager.cache_status()

    def clear_credential_cache(self) -> None:
        self.credential_manager.clear_cache()

    def get_metrics(self) -> Dict[str, Any]:
        """Get a combined metrics snapshot of every component."""
        return {
            "pipeline": self.processor.get_metrics() if self.processor is not None else {},
            "credentials": self.credential_manager.get_metrics(),
            "isolation": self.isolation_validator.get_validation_metrics(),
            "resilience": self.resilience.get_error_metrics(),
            "executions": self.tracker.status_counts(),
        }
