"""Post-deployment status reporting.

The reporter reads the function's live configuration and URL, then calls the
health endpoint. It never changes remote state, and it never fails a run:
anything it cannot find out is reported as unknown with a diagnostic.
"""

from __future__ import annotations

from typing import Any

import requests
from botocore.exceptions import BotoCoreError, ClientError
from requests.exceptions import RequestException, Timeout

from nestlambda.deploy.clients import AWSClients, aws_error_message
from nestlambda.lib.errors import StatusUnknownError
from nestlambda.lib.logging_config import get_logger
from nestlambda.models.deployment import (
    DeploymentResult,
    DeploymentTarget,
    FunctionConfig,
    HealthStatus,
)

logger = get_logger(__name__)


class Reporter:
    """Describes a deployed function and probes its health endpoint.

    Example:
        >>> reporter = Reporter(clients, FunctionConfig(), probe_timeout=5)
        >>> result = reporter.report(target)  # doctest: +SKIP
        >>> result.health  # doctest: +SKIP
        <HealthStatus.HEALTHY: 'healthy'>
    """

    def __init__(
        self,
        clients: AWSClients,
        function: FunctionConfig,
        probe_timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the reporter.

        Args:
            clients: Provider of boto3 clients
            function: Lambda function settings (health check path)
            probe_timeout: Timeout in seconds for the health request
            session: HTTP session used for the probe
        """
        self.clients = clients
        self.function = function
        self.probe_timeout = probe_timeout
        self._session = session or requests.Session()

    def describe(self, function_name: str) -> dict[str, Any]:
        """Return the function's GetFunction configuration.

        Raises:
            StatusUnknownError: If the function cannot be described
        """
        try:
            response = self.clients.lambda_client.get_function(
                FunctionName=function_name
            )
        except (ClientError, BotoCoreError) as e:
            raise StatusUnknownError(
                operation="describe", message=aws_error_message(e)
            ) from e
        return dict(response.get("Configuration", {}))

    def function_url(self, function_name: str) -> str | None:
        """Return the function URL, or None when the function has none.

        Raises:
            StatusUnknownError: If the URL configuration cannot be read
        """
        try:
            config = self.clients.lambda_client.get_function_url_config(
                FunctionName=function_name
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return None
            raise StatusUnknownError(
                operation="function_url", message=aws_error_message(e)
            ) from e
        except BotoCoreError as e:
            raise StatusUnknownError(operation="function_url", message=str(e)) from e
        return str(config["FunctionUrl"])

    def probe(self, url: str) -> tuple[HealthStatus, str | None]:
        """Call the health endpoint below ``url``.

        Returns:
            Health status and a diagnostic message when not healthy
        """
        probe_url = url.rstrip("/") + self.function.health_check_path
        try:
            response = self._session.get(probe_url, timeout=self.probe_timeout)
        except Timeout:
            return (
                HealthStatus.UNKNOWN,
                f"Health probe {probe_url} timed out after {self.probe_timeout:g}s",
            )
        except RequestException as e:
            return HealthStatus.UNKNOWN, f"Health probe {probe_url} failed: {e}"

        if 200 <= response.status_code < 300:
            logger.debug(f"{probe_url} answered {response.status_code}")
            return HealthStatus.HEALTHY, None
        return (
            HealthStatus.UNHEALTHY,
            f"Health probe {probe_url} returned HTTP {response.status_code}",
        )

    def report(self, target: DeploymentTarget, success: bool = True) -> DeploymentResult:
        """Build the DeploymentResult for a target.

        Args:
            target: Deployment target to describe
            success: Whether the run that preceded the report succeeded

        Returns:
            DeploymentResult; remote failures set ``status_unknown`` and
            leave health as ``unknown`` instead of raising
        """
        result = DeploymentResult(
            success=success,
            target=target.name,
            function_name=target.function_name,
        )

        try:
            configuration = self.describe(target.function_name)
            result.state = configuration.get("State")
            result.last_update_status = configuration.get("LastUpdateStatus")
            result.url = self.function_url(target.function_name)
        except StatusUnknownError as e:
            logger.warning(f"Could not query {target.function_name}: {e.message}")
            result.status_unknown = True
            result.diagnostics.append(f"{e.kind}: {e.message}")
            return result

        if result.url is None:
            result.diagnostics.append(
                f"Function {target.function_name} has no function URL; "
                "health was not probed"
            )
            return result

        health, diagnostic = self.probe(result.url)
        result.health = health
        if diagnostic:
            result.diagnostics.append(diagnostic)
        return result
