"""AWS and Docker client providers.

Clients are created lazily, once per process, and handed to the pipeline
stages through these provider objects rather than module globals.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import boto3
import docker
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from docker.errors import DockerException

from nestlambda.lib.errors import (
    AuthenticationFailedError,
    DeploymentError,
    DeploymentTimeoutError,
    DockerNotAvailableError,
    PublishFailedError,
)
from nestlambda.lib.lazy import Lazy
from nestlambda.lib.logging_config import get_logger

logger = get_logger(__name__)

# Error codes AWS returns when credentials are missing, wrong or expired
AUTH_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnrecognizedClientException",
        "InvalidClientTokenId",
        "InvalidSignatureException",
        "SignatureDoesNotMatch",
        "ExpiredToken",
        "ExpiredTokenException",
        "AuthFailure",
    }
)


class AWSClients:
    """Per-process provider of boto3 clients for one region.

    Each service client is built on first use and reused afterwards.
    Botocore's own retries are disabled; the publisher retries with its own
    bounded policy.

    Example:
        >>> clients = AWSClients(region="us-east-1", timeout=30)
        >>> lambda_client = clients.client("lambda")  # doctest: +SKIP
    """

    def __init__(
        self,
        region: str,
        timeout: float = 60.0,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            region: AWS region for every client
            timeout: Connect and read timeout in seconds
            client_factory: Optional factory taking a service name, used
                instead of boto3 (tests inject fakes here)
        """
        self.region = region
        self.timeout = timeout
        self._client_factory = client_factory or self._create_client
        self._holders: dict[str, Lazy[Any]] = {}
        self._lock = threading.Lock()

    def _create_client(self, service_name: str) -> Any:
        config = Config(
            region_name=self.region,
            connect_timeout=self.timeout,
            read_timeout=self.timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        logger.debug(f"Creating {service_name} client for {self.region}")
        return boto3.client(service_name, config=config)

    def client(self, service_name: str) -> Any:
        """Return the client for ``service_name``, creating it once."""
        with self._lock:
            holder = self._holders.get(service_name)
            if holder is None:
                holder = Lazy(lambda: self._client_factory(service_name))
                self._holders[service_name] = holder
        return holder.get_or_init()

    @property
    def lambda_client(self) -> Any:
        """Lambda client."""
        return self.client("lambda")

    @property
    def ecr(self) -> Any:
        """ECR client."""
        return self.client("ecr")

    @property
    def sts(self) -> Any:
        """STS client."""
        return self.client("sts")


class DockerClientProvider:
    """Lazily connects to the Docker daemon."""

    def __init__(
        self,
        timeout: float = 900.0,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            timeout: Timeout in seconds for Docker API calls
            client_factory: Optional factory used instead of docker.from_env
        """
        self.timeout = timeout
        self._holder: Lazy[Any] = Lazy(client_factory or self._create_client)

    def _create_client(self) -> Any:
        return docker.from_env(timeout=int(self.timeout))  # type: ignore[attr-defined]

    def get(self, operation: str = "docker") -> Any:
        """Return the Docker client.

        Raises:
            DockerNotAvailableError: If the daemon cannot be reached
        """
        try:
            return self._holder.get_or_init()
        except DockerException as e:
            raise DockerNotAvailableError(operation=operation) from e


def aws_error_message(exc: BaseException) -> str:
    """Return the remote diagnostic carried by an AWS error, verbatim."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message", str(exc))
        return f"{code}: {message}"
    return str(exc)


def translate_aws_error(
    exc: BaseException,
    operation: str,
    timeout: float,
    error_cls: type[DeploymentError] = PublishFailedError,
) -> DeploymentError:
    """Map a boto3/botocore error onto the deployment error taxonomy.

    Args:
        exc: Error raised by a boto3 call
        operation: Name of the failing operation
        timeout: Timeout configured for the call
        error_cls: Error raised for non-auth, non-timeout failures

    Returns:
        DeploymentError subclass to raise from ``exc``
    """
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError)):
        return DeploymentTimeoutError(
            operation=operation, timeout=timeout, detail=str(exc)
        )
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return AuthenticationFailedError(operation=operation, message=str(exc))
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in AUTH_ERROR_CODES:
            return AuthenticationFailedError(
                operation=operation, message=aws_error_message(exc)
            )
    if isinstance(exc, (ClientError, BotoCoreError)):
        return error_cls(operation=operation, message=aws_error_message(exc))
    return error_cls(operation=operation, message=str(exc))
