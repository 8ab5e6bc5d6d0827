"""Base class for Lambda publishers.

Holds the Lambda operations both transports share: looking up the function,
waiting for updates, exposing the function URL and removing the function.
Every remote call goes through ``_call``, which retries transient failures
and maps the rest onto the deployment error taxonomy.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from nestlambda.deploy.clients import AWSClients, translate_aws_error
from nestlambda.lib.errors import DeploymentTimeoutError, PublishFailedError
from nestlambda.lib.logging_config import get_logger
from nestlambda.lib.retry import call_with_retry
from nestlambda.models.deployment import (
    Artifact,
    DeploymentTarget,
    FunctionConfig,
    PublishResult,
    RetryConfig,
)

logger = get_logger(__name__)

T = TypeVar("T")

FUNCTION_URL_STATEMENT_ID = "nestlambda-function-url-public"
WAITER_DELAY_SECONDS = 2
MANAGED_TAGS = {"managed-by": "nestlambda"}
NOT_FOUND_CODES = frozenset(
    {"ResourceNotFoundException", "RepositoryNotFoundException"}
)


def error_code(exc: BaseException) -> str:
    """Return the AWS error code of a ClientError, or an empty string."""
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


class BasePublisher(ABC):
    """Abstract base class for publishers.

    Attributes:
        clients: Provider of boto3 clients
        function: Lambda function settings
        retries: Retry policy for remote calls
        timeout: Network timeout in seconds, used for waits and error messages
    """

    def __init__(
        self,
        clients: AWSClients,
        function: FunctionConfig,
        retries: RetryConfig | None = None,
        timeout: float = 60.0,
    ) -> None:
        """Initialize the publisher.

        Args:
            clients: Provider of boto3 clients
            function: Lambda function settings
            retries: Retry policy for remote calls
            timeout: Network timeout in seconds
        """
        self.clients = clients
        self.function = function
        self.retries = retries or RetryConfig()
        self.timeout = timeout

    @abstractmethod
    def publish(
        self,
        artifact: Artifact,
        target: DeploymentTarget,
        environment: Mapping[str, str],
    ) -> PublishResult:
        """Make an artifact live on a target.

        Args:
            artifact: Output of the build stage
            target: Deployment target
            environment: Variables set on the function

        Returns:
            PublishResult describing the live function

        Raises:
            AuthenticationFailedError: If credentials are rejected
            PublishFailedError: If the upload fails
            PartialPublishError: If an image was pushed but not activated
            DeploymentTimeoutError: If a remote call times out
        """

    def _call(
        self,
        operation: str,
        func: Callable[..., T],
        **kwargs: Any,
    ) -> T:
        """Invoke a boto3 method with retries and error translation."""
        try:
            return call_with_retry(
                func,
                attempts=self.retries.attempts,
                backoff=self.retries.backoff,
                **kwargs,
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_aws_error(e, operation, self.timeout) from e

    def _call_if_exists(
        self, operation: str, func: Callable[..., T], **kwargs: Any
    ) -> T | None:
        """Like ``_call`` but return None when the resource does not exist."""
        try:
            return call_with_retry(
                func,
                attempts=self.retries.attempts,
                backoff=self.retries.backoff,
                **kwargs,
            )
        except ClientError as e:
            if error_code(e) in NOT_FOUND_CODES:
                return None
            raise translate_aws_error(e, operation, self.timeout) from e
        except BotoCoreError as e:
            raise translate_aws_error(e, operation, self.timeout) from e

    def get_function(self, function_name: str) -> dict[str, Any] | None:
        """Return the GetFunction response, or None if it does not exist."""
        return self._call_if_exists(
            "get_function",
            self.clients.lambda_client.get_function,
            FunctionName=function_name,
        )

    def wait_for(self, waiter_name: str, function_name: str) -> None:
        """Block until a Lambda waiter succeeds or the network timeout passes.

        Raises:
            DeploymentTimeoutError: If the function does not settle in time
            PublishFailedError: If the function reaches a failed state
        """
        waiter = self.clients.lambda_client.get_waiter(waiter_name)
        max_attempts = max(1, math.ceil(self.timeout / WAITER_DELAY_SECONDS))
        try:
            waiter.wait(
                FunctionName=function_name,
                WaiterConfig={
                    "Delay": WAITER_DELAY_SECONDS,
                    "MaxAttempts": max_attempts,
                },
            )
        except WaiterError as e:
            if "Max attempts exceeded" in str(e):
                raise DeploymentTimeoutError(
                    operation=waiter_name, timeout=self.timeout, detail=str(e)
                ) from e
            raise PublishFailedError(operation=waiter_name, message=str(e)) from e

    def ensure_function_url(self, function_name: str) -> str:
        """Return the function's public URL, creating it when absent."""
        lambda_client = self.clients.lambda_client
        config = self._call_if_exists(
            "function_url",
            lambda_client.get_function_url_config,
            FunctionName=function_name,
        )
        if config is not None:
            return str(config["FunctionUrl"])

        created = self._call(
            "function_url",
            lambda_client.create_function_url_config,
            FunctionName=function_name,
            AuthType="NONE",
        )

        def grant_public_invoke() -> None:
            try:
                lambda_client.add_permission(
                    FunctionName=function_name,
                    StatementId=FUNCTION_URL_STATEMENT_ID,
                    Action="lambda:InvokeFunctionUrl",
                    Principal="*",
                    FunctionUrlAuthType="NONE",
                )
            except ClientError as e:
                # Statement already present from an earlier deploy
                if error_code(e) != "ResourceConflictException":
                    raise

        self._call("function_url", grant_public_invoke)
        logger.info(f"Created function URL for {function_name}")
        return str(created["FunctionUrl"])

    def apply_configuration(
        self,
        function_name: str,
        environment: Mapping[str, str],
        **extra: Any,
    ) -> dict[str, Any]:
        """Apply memory, timeout and environment to an existing function."""
        response = self._call(
            "update_configuration",
            self.clients.lambda_client.update_function_configuration,
            FunctionName=function_name,
            MemorySize=self.function.memory,
            Timeout=self.function.timeout,
            Environment={"Variables": dict(environment)},
            **extra,
        )
        self.wait_for("function_updated", function_name)
        return response

    def tags_for(self, target: DeploymentTarget) -> dict[str, str]:
        """Tags applied to functions created by nestlambda."""
        return {**MANAGED_TAGS, "target": target.name}

    def require_role(self, function_name: str) -> str:
        """Return the execution role needed to create a function.

        Raises:
            PublishFailedError: If no role is configured
        """
        if not self.function.role_arn:
            raise PublishFailedError(
                operation="create_function",
                message=(
                    f"Function '{function_name}' does not exist and "
                    "function.role_arn is not set in the project file"
                ),
            )
        return self.function.role_arn

    def remove(self, target: DeploymentTarget) -> bool:
        """Delete the target's function and its URL.

        Returns:
            True if a function was deleted, False if none existed
        """
        lambda_client = self.clients.lambda_client
        name = target.function_name
        self._call_if_exists(
            "remove", lambda_client.delete_function_url_config, FunctionName=name
        )

        deleted = self._call_if_exists(
            "remove", lambda_client.delete_function, FunctionName=name
        )
        if deleted is None:
            logger.info(f"Function {name} does not exist; nothing to remove")
            return False
        logger.info(f"Deleted function {name}")
        return True
