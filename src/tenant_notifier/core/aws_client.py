"""Centralized AWS client management with session handling.

This module provides a centralized way to manage the control-plane AWS
clients (STS, SQS) and to build tenant-scoped sessions from temporary
credentials obtained through role assumption.
"""

import logging
import threading
from typing import Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    NoCredentialsError,
    ClientError,
    ProfileNotFound,
)


logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"


class AWSClientManager:
    """Centralized AWS client management with session handling.

    Clients are cached per service, region and timeout profile. Client
    creation is serialized because boto3 sessions are not thread-safe,
    while the clients themselves may be shared across worker threads.
    """

    def __init__(
        self,
        profile_name: Optional[str] = None,
        region_name: Optional[str] = None,
        validate_credentials: bool = True,
    ) -> None:
        """Initialize AWS client manager.

        Args:
            profile_name: Optional AWS profile name for credentials
            region_name: Optional default region for control-plane clients
            validate_credentials: Whether to call STS GetCallerIdentity on
                                  construction

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, object] = {}
        self._profile_name = profile_name
        self._region_name = region_name
        self._lock = threading.Lock()
        if validate_credentials:
            self._validate_credentials()

    def _validate_credentials(self) -> None:
        """Validate AWS credentials are available and working.

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        try:
            session = self._get_session()
            sts_client = session.client("sts")
            sts_client.get_caller_identity()
        except NoCredentialsError:
            raise NoCredentialsError()
        except ProfileNotFound:
            raise ProfileNotFound(profile=self._profile_name)
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidUserID.NotFound":
                logger.error(
                    "AWS credentials are invalid or expired. "
                    "Please update your credentials."
                )
                raise NoCredentialsError() from e
            raise

    def _get_session(self) -> boto3.Session:
        """Get or create the control-plane boto3 session.

        Returns:
            Configured boto3 session
        """
        if self._session is None:
            kwargs = {}
            if self._profile_name:
                kwargs["profile_name"] = self._profile_name
            if self._region_name:
                kwargs["region_name"] = self._region_name
            self._session = boto3.Session(**kwargs)
        return self._session

    def get_client(
        self,
        service_name: str,
        region_name: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
    ):
        """Get AWS service client for specified region.

        Args:
            service_name: AWS service name (e.g., 'sts', 'sqs')
            region_name: AWS region name, defaults to the current region
            connect_timeout: Optional connect timeout in seconds
            read_timeout: Optional read timeout in seconds

        Returns:
            Configured boto3 client for the service and region
        """
        region_name = region_name or self.get_current_region()
        client_key = f"{service_name}_{region_name}_{connect_timeout}_{read_timeout}"

        with self._lock:
            if client_key not in self._clients:
                session = self._get_session()
                kwargs = {"region_name": region_name}
                config = build_client_config(connect_timeout, read_timeout)
                if config is not None:
                    kwargs["config"] = config
                self._clients[client_key] = session.client(service_name, **kwargs)
            return self._clients[client_key]

    def get_current_region(self) -> str:
        """Get current AWS region from session.

        Returns:
            Current AWS region name
        """
        if self._region_name:
            return self._region_name
        session = self._get_session()
        return session.region_name or DEFAULT_REGION

    def get_account_id(self) -> str:
        """Get the control-plane AWS account ID.

        Returns:
            Current AWS account ID

        Raises:
            ClientError: When unable to get account information
        """
        sts_client = self.get_client("sts")
        response = sts_client.get_caller_identity()
        return response["Account"]

    def clear_cache(self) -> None:
        """Clear cached clients to force recreation."""
        with self._lock:
            self._clients.clear()


def build_client_config(
    connect_timeout: Optional[float] = None,
    read_timeout: Optional[float] = None,
) -> Optional[Config]:
    """Build a botocore client config bounding network waits.

    Returns:
        botocore Config or None when no timeout is requested
    """
    if connect_timeout is None and read_timeout is None:
        return None
    kwargs = {}
    if connect_timeout is not None:
        kwargs["connect_timeout"] = connect_timeout
    if read_timeout is not None:
        kwargs["read_timeout"] = read_timeout
    return Config(**kwargs)


def session_from_credentials(credentials, region_name: Optional[str] = None) -> boto3.Session:
    """Create a boto3 session bound to temporary tenant credentials.

    Args:
        credentials: ScopedCredentials returned by role assumption
        region_name: Region override, defaults to the credentials region

    Returns:
        boto3 session that only carries the tenant-scoped credentials
    """
    return boto3.Session(
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
        aws_session_token=credentials.session_token,
        region_name=region_name or credentials.region,
    )
