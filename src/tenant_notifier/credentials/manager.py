"""Credential isolation manager.

This module assumes a dedicated role per (tenant, service) pair through
STS, caches the resulting short-lived credentials and validates them
before they are handed to tenant operations. Cached entries are evicted
lazily on read; refreshes are serialized per cache key so workers serving
different tenants never wait on each other.
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, Optional, Tuple

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from tenant_notifier.core.aws_client import (
    AWSClientManager,
    build_client_config,
    session_from_credentials,
)
from tenant_notifier.core.config import CredentialSettings
from tenant_notifier.core.metrics import LoggingMetricsSink, MetricsSink
from tenant_notifier.credentials.models import (
    CredentialValidationError,
    CredentialValidationResult,
    RoleAssumptionError,
    ScopedCredentials,
    cache_key,
)
from tenant_notifier.tenants.registry import (
    TenantAccount,
    TenantRegistry,
    normalize_service,
)


logger = logging.getLogger(__name__)


# STS denials are terminal for the attempt
DENIAL_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "InvalidClientTokenId",
        "ExpiredToken",
        "ExpiredTokenException",
        "MalformedPolicyDocument",
        "PackedPolicyTooLarge",
        "RegionDisabledException",
        "ValidationError",
    }
)


class _KeyedLocks:
    """Arena of locks, one per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
        with lock:
            yield


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialIsolationManager:
    """Assumes, caches and validates tenant-scoped credentials.

    All public methods are safe to call from multiple worker threads.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        aws_client: AWSClientManager,
        settings: Optional[CredentialSettings] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
        session_factory: Callable[..., boto3.Session] = session_from_credentials,
    ) -> None:
        """Initialize credential isolation manager.

        Args:
            registry: Tenant registry to resolve tenant accounts from
            aws_client: Control-plane client manager used for STS calls
            settings: Role assumption and cache options
            metrics: Sink for credential counters
            clock: Source of the current UTC time
            session_factory: Builds a boto3 session from scoped credentials
        """
        self.registry = registry
        self.aws_client = aws_client
        self.settings = settings or CredentialSettings()
        self.metrics = metrics or LoggingMetricsSink()
        self._clock = clock
        self._session_factory = session_factory

        self._cache: Dict[str, ScopedCredentials] = {}
        self._sessions: Dict[str, Tuple[ScopedCredentials, boto3.Session]] = {}
        self._cache_lock = threading.Lock()
        self._key_locks = _KeyedLocks()

        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._assumptions = 0
        self._failures = 0
        self._evictions = 0

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(seconds=self.settings.safety_margin_seconds)

    def _resolve(self, tenant_code: str, service: str):
        """Resolve tenant account, canonical service and role ARN.

        Raises:
            UnknownTenantError: When the tenant is not registered
            RoleAssumptionError: When the service is unsupported or has no role
        """
        tenant = self.registry.get(tenant_code)
        canonical = normalize_service(service)
        if canonical is None:
            raise RoleAssumptionError(
                f"Unsupported service '{service}' for tenant {tenant_code}",
                tenant_code=tenant_code,
                service=str(service),
                retryable=False,
            )

        role_arn = tenant.role_arn_for(canonical)
        if not role_arn:
            raise RoleAssumptionError(
                f"No {canonical} role configured for tenant {tenant_code}",
                tenant_code=tenant_code,
                service=canonical,
                retryable=False,
            )
        return tenant, canonical, role_arn

    def _count(self, name: str) -> None:
        with self._stats_lock:
            setattr(self, name, getattr(self, name) + 1)

    def assume_role(self, tenant_code: str, service: str) -> ScopedCredentials:
        """Assume the tenant's role for a service and cache the credentials.

        Args:
            tenant_code: Registered tenant code
            service: Service name or alias ('notification', 'queue', 'storage')

        Returns:
            Freshly issued ScopedCredentials

        Raises:
            UnknownTenantError: When the tenant is not registered
            RoleAssumptionError: When STS refuses or cannot be reached
        """
        tenant, canonical, role_arn = self._resolve(tenant_code, service)
        session_name = (
            f"{self.settings.session_name_prefix}-{tenant.code}-{int(time.time())}"
        )

        params = {
            "RoleArn": role_arn,
            "RoleSessionName": session_name,
            "DurationSeconds": self.settings.session_duration_seconds,
        }
        if self.settings.external_id:
            params["ExternalId"] = self.settings.external_id

        logger.debug(f"Assuming {role_arn} for {cache_key(tenant.code, canonical)}")

        try:
            sts_client = self.aws_client.get_client(
                "sts",
                tenant.region,
                connect_timeout=self.settings.connect_timeout,
                read_timeout=self.settings.read_timeout,
            )
            response = sts_client.assume_role(**params)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            retryable = error_code not in DENIAL_ERROR_CODES
            self._count("_failures")
            self.metrics.increment("role_assumption_failures", tenant=tenant.code)
            logger.error(
                f"Role assumption failed for {tenant.code}:{canonical} ({error_code}): {e}"
            )
            raise RoleAssumptionError(
                f"Failed to assume {role_arn} for tenant {tenant.code}: {error_code}",
                tenant_code=tenant.code,
                service=canonical,
                role_arn=role_arn,
                error_code=error_code,
                retryable=retryable,
            ) from e
        except NoCredentialsError as e:
            self._count("_failures")
            self.metrics.increment("role_assumption_failures", tenant=tenant.code)
            raise RoleAssumptionError(
                "Control-plane AWS credentials are not available",
                tenant_code=tenant.code,
                service=canonical,
                role_arn=role_arn,
                retryable=False,
            ) from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, BotoCoreError) as e:
            self._count("_failures")
            self.metrics.increment("role_assumption_failures", tenant=tenant.code)
            logger.warning(f"STS unreachable for {tenant.code}:{canonical}: {e}")
            raise RoleAssumptionError(
                f"STS unreachable while assuming {role_arn}: {e}",
                tenant_code=tenant.code,
                service=canonical,
                role_arn=role_arn,
                retryable=True,
            ) from e

        credentials = self._credentials_from_response(tenant, canonical, role_arn, response)

        with self._cache_lock:
            self._cache[credentials.cache_key] = credentials

        self._count("_assumptions")
        self.metrics.increment("role_assumptions", tenant=tenant.code, service=canonical)
        logger.info(
            f"Assumed role for {credentials.cache_key}, expires {credentials.expiration.isoformat()}"
        )
        return credentials

    def _credentials_from_response(
        self, tenant: TenantAccount, service: str, role_arn: str, response: dict
    ) -> ScopedCredentials:
        raw = response["Credentials"]
        expiration = raw["Expiration"]
        if isinstance(expiration, str):
            expiration = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)

        return ScopedCredentials(
            tenant_code=tenant.code,
            service=service,
            role_arn=role_arn,
            region=tenant.region,
            access_key_id=raw["AccessKeyId"],
            secret_access_key=raw["SecretAccessKey"],
            session_token=raw["SessionToken"],
            expiration=expiration,
            assumed_role_arn=response.get("AssumedRoleUser", {}).get("Arn", ""),
            issued_at=self._clock(),
        )

    def _lookup(self, key: str) -> Optional[ScopedCredentials]:
        """Return a cached entry outside the safety margin, evicting stale ones."""
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.expiration - self._clock() > self.safety_margin:
                return entry
            del self._cache[key]

        self._count("_evictions")
        logger.debug(f"Evicted credentials for {key} inside the safety margin")
        return None

    def get_cached_or_assume(self, tenant_code: str, service: str) -> ScopedCredentials:
        """Get cached credentials or assume the role when none are usable.

        Concurrent callers for the same key wait for a single refresh and
        then reuse its result.

        Raises:
            UnknownTenantError: When the tenant is not registered
            RoleAssumptionError: When a refresh is needed and fails
        """
        _, canonical, _ = self._resolve(tenant_code, service)
        key = cache_key(tenant_code, canonical)

        entry = self._lookup(key)
        if entry is not None:
            self._count("_hits")
            self.metrics.increment("credential_cache_hits", tenant=tenant_code)
            return entry

        with self._key_locks.hold(key):
            entry = self._lookup(key)
            if entry is not None:
                self._count("_hits")
                self.metrics.increment("credential_cache_hits", tenant=tenant_code)
                return entry

            self._count("_misses")
            self.metrics.increment("credential_cache_misses", tenant=tenant_code)
            return self.assume_role(tenant_code, canonical)

    def refresh(self, tenant_code: str, service: str) -> ScopedCredentials:
        """Force a new role assumption for the key, replacing any cached entry."""
        _, canonical, _ = self._resolve(tenant_code, service)
        key = cache_key(tenant_code, canonical)
        with self._key_locks.hold(key):
            logger.info(f"Refreshing credentials for {key}")
            return self.assume_role(tenant_code, canonical)

    def evict(self, tenant_code: str, service: str) -> bool:
        """Remove one cache entry.

        Returns:
            True if an entry was removed
        """
        canonical = normalize_service(service) or service
        with self._cache_lock:
            removed = self._cache.pop(cache_key(tenant_code, canonical), None)
            self._sessions.pop(cache_key(tenant_code, canonical), None)
        if removed is not None:
            self._count("_evictions")
        return removed is not None

    def validate(
        self, credentials: ScopedCredentials, verify_identity: Optional[bool] = None
    ) -> CredentialValidationResult:
        """Validate scoped credentials.

        Expiry is always checked. When identity verification is enabled the
        credentials are used to call STS GetCallerIdentity and the account
        must match the tenant's account.

        Args:
            credentials: Credentials to validate
            verify_identity: Override for the configured verification flag

        Returns:
            CredentialValidationResult for valid credentials

        Raises:
            CredentialValidationError: When validation fails; the cached
                                       entry is evicted first
        """
        if verify_identity is None:
            verify_identity = self.settings.verify_identity

        now = self._clock()
        result = CredentialValidationResult(
            tenant_code=credentials.tenant_code,
            service=credentials.service,
            valid=False,
            expires_at=credentials.expiration,
            remaining_seconds=credentials.remaining_lifetime(now),
            checked_at=now,
        )

        if credentials.is_expired(now):
            result.error = "credentials have expired"
            self._reject(credentials, result)

        if verify_identity:
            tenant = self.registry.get(credentials.tenant_code)
            try:
                session = self._session(credentials)
                sts_client = session.client(
                    "sts",
                    region_name=credentials.region,
                    config=build_client_config(
                        self.settings.connect_timeout, self.settings.read_timeout
                    ),
                )
                identity = sts_client.get_caller_identity()
            except (ClientError, BotoCoreError) as e:
                result.error = f"identity check failed: {e}"
                self._reject(credentials, result)

            result.account_id = identity.get("Account")
            result.identity_arn = identity.get("Arn")
            result.identity_verified = True
            if result.account_id != tenant.account_id:
                result.error = (
                    f"credentials resolve to account {result.account_id}, "
                    f"expected {tenant.account_id}"
                )
                self.metrics.event(
                    "credential_account_mismatch",
                    tenant=tenant.code,
                    expected=tenant.account_id,
                    actual=result.account_id,
                )
                self._reject(credentials, result)

        result.valid = True
        self.metrics.increment("credential_validations", tenant=credentials.tenant_code)
        return result

    def _reject(self, credentials: ScopedCredentials, result: CredentialValidationResult) -> None:
        self.evict(credentials.tenant_code, credentials.service)
        self.metrics.increment("credential_validation_failures", tenant=credentials.tenant_code)
        logger.warning(f"Credential validation failed for {credentials.cache_key}: {result.error}")
        raise CredentialValidationError(
            f"Credential validation failed for {credentials.cache_key}: {result.error}",
            result=result,
        )

    def validate_all(self, service: str = "notification") -> Dict[str, CredentialValidationResult]:
        """Acquire and validate credentials for every tenant.

        Errors are recorded per tenant instead of stopping the sweep.

        Returns:
            Validation result keyed by tenant code
        """
        results = {}
        for tenant in self.registry:
            try:
                credentials = self.get_cached_or_assume(tenant.code, service)
                results[tenant.code] = self.validate(credentials)
            except CredentialValidationError as e:
                results[tenant.code] = e.result
            except RoleAssumptionError as e:
                results[tenant.code] = CredentialValidationResult(
                    tenant_code=tenant.code,
                    service=normalize_service(service) or service,
                    valid=False,
                    error=str(e),
                )

        failed = [code for code, result in results.items() if not result.valid]
        if failed:
            logger.warning(f"Credential validation failed for tenant(s): {', '.join(failed)}")
        else:
            logger.info(f"Validated {service} credentials for {len(results)} tenant(s)")
        return results

    def _session(self, credentials: ScopedCredentials) -> boto3.Session:
        """Get the session built for these exact credentials, building it once."""
        with self._cache_lock:
            cached = self._sessions.get(credentials.cache_key)
            if cached is not None and cached[0] is credentials:
                return cached[1]

        session = self._session_factory(credentials)
        with self._cache_lock:
            self._sessions[credentials.cache_key] = (credentials, session)
        return session

    def session_for(self, tenant_code: str, service: str) -> boto3.Session:
        """Get a boto3 session carrying only the tenant's scoped credentials.

        The session is reused until the cached credentials are replaced.
        """
        credentials = self.get_cached_or_assume(tenant_code, service)
        return self._session(credentials)

    def peek(self, tenant_code: str, service: str) -> Optional[ScopedCredentials]:
        """Get the cached entry for a key without refreshing or counting."""
        canonical = normalize_service(service) or service
        with self._cache_lock:
            return self._cache.get(cache_key(tenant_code, canonical))

    def clear_cache(self) -> None:
        """Drop every cached credential.

        In-flight assumptions are not blocked and may repopulate the cache.
        """
        with self._cache_lock:
            count = len(self._cache)
            self._cache.clear()
            self._sessions.clear()
        logger.info(f"Cleared {count} cached credential(s)")

    def cache_status(self) -> Dict[str, datetime]:
        """Get expiry time per cache key."""
        with self._cache_lock:
            return {key: entry.expiration for key, entry in self._cache.items()}

    def get_metrics(self) -> Dict[str, object]:
        """Get cache and assumption statistics."""
        now = self._clock()
        with self._cache_lock:
            entries = list(self._cache.values())

        expired = sum(1 for entry in entries if entry.expiration <= now)
        expiring = sum(
            1 for entry in entries if now < entry.expiration <= now + self.safety_margin
        )

        with self._stats_lock:
            lookups = self._hits + self._misses
            return {
                "cached_credentials": len(entries),
                "expired_credentials": expired,
                "expiring_credentials": expiring,
                "cache_hits": self._hits,
                "cache_misses": self._misses,
                "cache_hit_ratio": (self._hits / lookups) if lookups else 0.0,
                "role_assumptions": self._assumptions,
                "role_assumption_failures": self._failures,
                "evictions": self._evictions,
            }
