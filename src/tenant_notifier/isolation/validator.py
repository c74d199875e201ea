"""Tenant isolation validator.

Runs the isolation rule battery against tenants, caches the resulting
reports for a configurable TTL and records cross-tenant access attempts.
"""

import logging
import threading
import time
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from tenant_notifier.core.config import IsolationSettings
from tenant_notifier.core.metrics import LoggingMetricsSink, MetricsSink
from tenant_notifier.core.validator import (
    ValidationCategory,
    ValidationResult,
    ValidationRule,
    ValidationSeverity,
)
from tenant_notifier.tenants.registry import TenantRegistry


logger = logging.getLogger(__name__)

MAX_RECORDED_ATTEMPTS = 1000

CATEGORY_RECOMMENDATIONS = {
    ValidationCategory.CREDENTIALS: "Review credential management and rotation policies",
    ValidationCategory.ACCESS: "Audit IAM roles and permissions for least privilege",
    ValidationCategory.DATA: "Implement additional data segregation controls",
    ValidationCategory.NETWORK: "Review network isolation and allowed regions",
    ValidationCategory.AUDIT: "Enhance audit logging and monitoring",
}


@dataclass
class TenantIsolationReport:
    """Outcome of running every isolation rule for one tenant."""

    tenant_code: str
    results: List[ValidationResult] = field(default_factory=list)
    total_rules: int = 0
    passed_rules: int = 0
    failed_rules: int = 0
    critical_issues: int = 0
    high_issues: int = 0
    summary: Dict[ValidationCategory, int] = field(default_factory=dict)
    overall_passed: bool = False
    recommendations: List[str] = field(default_factory=list)
    validated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration: float = 0.0
    error: Optional[str] = None

    def failed_results(self) -> List[ValidationResult]:
        return [result for result in self.results if not result.passed]

    def blocking_results(self) -> List[ValidationResult]:
        """Get failed results severe enough to fail the tenant gate."""
        return [
            result
            for result in self.failed_results()
            if result.severity in (ValidationSeverity.CRITICAL, ValidationSeverity.HIGH)
        ]

    @property
    def transient(self) -> bool:
        """True when some failure may clear on retry, e.g. throttled role assumption."""
        return any(result.details.get("transient") for result in self.failed_results())

    @property
    def retryable(self) -> bool:
        """True when the gate failed only because of transient failures."""
        blocking = self.blocking_results()
        return bool(blocking) and all(result.details.get("transient") for result in blocking)

    def result_for(self, rule_id: str) -> Optional[ValidationResult]:
        for result in self.results:
            if result.rule_id == rule_id:
                return result
        return None


@dataclass
class AccessAttempt:
    """An attempt by one tenant's context to touch another tenant's resource."""

    source_tenant: str
    target_tenant: str
    access_type: str
    resource: str
    blocked: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = field(default_factory=dict)


class IsolationValidator:
    """Rule engine proving that tenant boundaries are not crossed."""

    def __init__(
        self,
        registry: TenantRegistry,
        rules: List[ValidationRule],
        settings: Optional[IsolationSettings] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize isolation validator.

        Args:
            registry: Tenant registry to resolve tenants from
            rules: Rule battery evaluated for every tenant
            settings: Cache TTL, parallelism and access policy
            metrics: Sink for validation counters
            clock: Monotonic time source used for report expiry
        """
        self.registry = registry
        self.rules = list(rules)
        self.settings = settings or IsolationSettings()
        self.metrics = metrics or LoggingMetricsSink()
        self._clock = clock

        self._lock = threading.Lock()
        self._reports: Dict[str, TenantIsolationReport] = {}
        self._report_times: Dict[str, float] = {}
        self._attempts: Deque[AccessAttempt] = deque(maxlen=MAX_RECORDED_ATTEMPTS)
        self._validations_run = 0
        self._cache_hits = 0

    def _cached(self, tenant_code: str) -> Optional[TenantIsolationReport]:
        with self._lock:
            report = self._reports.get(tenant_code)
            if report is None:
                return None
            age = self._clock() - self._report_times[tenant_code]
            if age > self.settings.report_ttl_seconds:
                del self._reports[tenant_code]
                del self._report_times[tenant_code]
                return None
            self._cache_hits += 1
            return report

    def validate_tenant(self, tenant_code: str) -> TenantIsolationReport:
        """Run every rule for a tenant, or return a report cached within the TTL.

        Rule failures and rule exceptions are recorded in the report; every
        rule always runs.

        Args:
            tenant_code: Registered tenant code

        Returns:
            TenantIsolationReport with one result per rule

        Raises:
            UnknownTenantError: When the tenant is not registered
        """
        tenant = self.registry.get(tenant_code)

        cached = self._cached(tenant.code)
        if cached is not None:
            logger.debug(f"Using cached isolation report for {tenant.code}")
            return cached

        logger.info(f"Validating isolation for {tenant.code} ({len(self.rules)} rules)")
        started = time.perf_counter()
        report = TenantIsolationReport(tenant_code=tenant.code, total_rules=len(self.rules))
        failed_categories: Counter = Counter()

        for rule in self.rules:
            result = self._run_rule(rule, tenant)
            report.results.append(result)

            if result.passed:
                report.passed_rules += 1
                continue

            report.failed_rules += 1
            failed_categories[result.category] += 1
            if result.severity == ValidationSeverity.CRITICAL:
                report.critical_issues += 1
            elif result.severity == ValidationSeverity.HIGH:
                report.high_issues += 1
            self.metrics.increment(
                "isolation_rule_failures", tenant=tenant.code, rule=result.rule_id
            )

        report.summary = dict(failed_categories)
        report.overall_passed = report.critical_issues == 0 and report.high_issues == 0
        report.recommendations = self._recommendations(report)
        report.duration = time.perf_counter() - started

        with self._lock:
            if not report.transient:
                self._reports[tenant.code] = report
                self._report_times[tenant.code] = self._clock()
            self._validations_run += 1
        if report.transient:
            logger.info(f"Not caching isolation report for {tenant.code}: transient failures")

        self.metrics.increment("isolation_validations", tenant=tenant.code)
        log = logger.info if report.overall_passed else logger.warning
        log(
            f"Isolation validation for {tenant.code}: passed={report.overall_passed} "
            f"({report.passed_rules}/{report.total_rules} rules, "
            f"{report.critical_issues} critical, {report.high_issues} high)"
        )
        return report

    def _run_rule(self, rule: ValidationRule, tenant) -> ValidationResult:
        """Evaluate a rule, converting any exception into a failed result."""
        started = time.perf_counter()
        try:
            result = rule.check(tenant)
        except Exception as e:
            logger.error(f"Rule {rule.rule_id} raised for {tenant.code}: {e}")
            result = ValidationResult(
                rule_id=rule.rule_id,
                tenant_code=tenant.code,
                passed=False,
                message=f"Rule evaluation error: {str(e)}",
                category=rule.category,
                severity=rule.severity,
                details={"exception": type(e).__name__},
                remediation=rule.remediation,
            )
        result.duration = time.perf_counter() - started
        return result

    def _recommendations(self, report: TenantIsolationReport) -> List[str]:
        recommendations = []
        if report.critical_issues:
            recommendations.append("Address critical isolation issues immediately")
        if report.high_issues:
            recommendations.append("Review and fix high-severity isolation issues")

        for category in ValidationCategory:
            if report.summary.get(category):
                recommendations.append(CATEGORY_RECOMMENDATIONS[category])

        for result in report.failed_results():
            if result.remediation and result.remediation not in recommendations:
                recommendations.append(result.remediation)
        return recommendations

    def validate_all(self) -> Dict[str, TenantIsolationReport]:
        """Validate every registered tenant concurrently.

        Per-tenant errors are recorded in that tenant's report instead of
        aborting the sweep.

        Returns:
            Report keyed by tenant code
        """
        codes = self.registry.codes()
        reports: Dict[str, TenantIsolationReport] = {}
        if not codes:
            return reports

        workers = max(1, min(self.settings.max_parallel_validations, len(codes)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="isolation") as pool:
            futures = {code: pool.submit(self.validate_tenant, code) for code in codes}
            for code, future in futures.items():
                try:
                    reports[code] = future.result()
                except Exception as e:
                    logger.error(f"Isolation validation failed for {code}: {e}")
                    reports[code] = TenantIsolationReport(
                        tenant_code=code,
                        total_rules=len(self.rules),
                        error=str(e),
                    )

        self._log_summary(reports)
        return reports

    def _log_summary(self, reports: Dict[str, TenantIsolationReport]) -> None:
        total = len(reports)
        passed = sum(1 for report in reports.values() if report.overall_passed)
        critical = sum(report.critical_issues for report in reports.values())
        high = sum(report.high_issues for report in reports.values())
        logger.info(
            f"Isolation summary: {passed}/{total} tenants passed "
            f"({passed / total * 100:.1f}%), {critical} critical, {high} high issues"
        )
        self.metrics.gauge("isolation_tenants_passed", passed)
        self.metrics.gauge("isolation_tenants_failed", total - passed)

    def is_tenant_isolated(self, tenant_code: str) -> bool:
        """Check whether a tenant passes the isolation gate."""
        return self.validate_tenant(tenant_code).overall_passed

    def clear_cache(self) -> None:
        with self._lock:
            self._reports.clear()
            self._report_times.clear()
        logger.info("Isolation report cache cleared")

    def expire(self, tenant_code: str) -> None:
        """Drop the cached report for one tenant."""
        with self._lock:
            self._reports.pop(tenant_code, None)
            self._report_times.pop(tenant_code, None)

    def detect_cross_customer_access(
        self,
        source_tenant: str,
        target_tenant: str,
        access_type: str,
        resource: str,
    ) -> AccessAttempt:
        """Record an attempt by one tenant's context to reach a resource.

        Attempts across tenants are blocked unless blocking is disabled in
        settings. Same-tenant access is recorded as allowed.

        Returns:
            The recorded AccessAttempt
        """
        cross_tenant = source_tenant != target_tenant
        attempt = AccessAttempt(
            source_tenant=source_tenant,
            target_tenant=target_tenant,
            access_type=access_type,
            resource=resource,
            blocked=cross_tenant and self.settings.block_cross_tenant_access,
            details={"cross_tenant": cross_tenant},
        )

        with self._lock:
            self._attempts.append(attempt)

        if cross_tenant:
            logger.warning(
                f"Cross-tenant access attempt: {source_tenant} -> {target_tenant} "
                f"({access_type} {resource}), blocked={attempt.blocked}"
            )
            self.metrics.increment(
                "cross_tenant_access_attempts",
                source=source_tenant,
                target=target_tenant,
                blocked=attempt.blocked,
            )
            self.metrics.event(
                "cross_tenant_access",
                source=source_tenant,
                target=target_tenant,
                access_type=access_type,
                resource=resource,
                blocked=attempt.blocked,
            )
        return attempt

    def get_access_attempts(self) -> List[AccessAttempt]:
        with self._lock:
            return list(self._attempts)

    def get_validation_metrics(self) -> Dict[str, Any]:
        """Get validator cache and activity statistics."""
        with self._lock:
            attempts = list(self._attempts)
            return {
                "total_rules": len(self.rules),
                "rule_ids": [rule.rule_id for rule in self.rules],
                "cached_reports": len(self._reports),
                "cache_ttl_seconds": self.settings.report_ttl_seconds,
                "validations_run": self._validations_run,
                "cache_hits": self._cache_hits,
                "access_attempts": len(attempts),
                "blocked_attempts": sum(1 for attempt in attempts if attempt.blocked),
            }
