"""Publisher for the container image transport.

Publishing an image happens in two phases. The image is first pushed to
ECR; the function is then pointed at the pushed image URI ("activation").
A failure in the second phase leaves the image in the registry and is
reported as a partial publish so the operator can retry activation alone.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping
from typing import Any

import requests
from botocore.exceptions import BotoCoreError, ClientError
from docker.errors import APIError, DockerException, ImageNotFound

from nestlambda.deploy.clients import (
    AWSClients,
    DockerClientProvider,
    translate_aws_error,
)
from nestlambda.deploy.publishers.base import MANAGED_TAGS, BasePublisher
from nestlambda.lib.errors import (
    AuthenticationFailedError,
    DeploymentError,
    DeploymentTimeoutError,
    PartialPublishError,
    PublishFailedError,
)
from nestlambda.lib.logging_config import get_logger
from nestlambda.lib.retry import call_with_retry
from nestlambda.models.deployment import (
    Artifact,
    DeploymentTarget,
    FunctionConfig,
    ImageConfig,
    PublishResult,
    RetryConfig,
    TransportKind,
)

logger = get_logger(__name__)

# Registry messages that mean the credentials were rejected
AUTH_REJECTION_MARKERS = ("denied", "unauthorized", "authentication required")


def is_auth_rejection(message: str) -> bool:
    """Return True if a registry error message is a credential rejection."""
    lowered = message.lower()
    return any(marker in lowered for marker in AUTH_REJECTION_MARKERS)


class RegistryCredentials:
    """Decoded ECR credentials for one registry."""

    def __init__(self, username: str, password: str, registry: str) -> None:
        self.username = username
        self.password = password
        self.registry = registry

    @property
    def auth_config(self) -> dict[str, str]:
        """Credentials in the form the Docker SDK expects."""
        return {"username": self.username, "password": self.password}


class ImagePublisher(BasePublisher):
    """Pushes an image to ECR and points the function at it."""

    def __init__(
        self,
        clients: AWSClients,
        image: ImageConfig,
        function: FunctionConfig,
        docker_provider: DockerClientProvider | None = None,
        retries: RetryConfig | None = None,
        timeout: float = 60.0,
    ) -> None:
        """Initialize the image publisher.

        Args:
            clients: Provider of boto3 clients
            image: Image transport settings
            function: Lambda function settings
            docker_provider: Lazily connected Docker client
            retries: Retry policy for remote calls
            timeout: Network timeout in seconds
        """
        super().__init__(clients, function, retries=retries, timeout=timeout)
        self.image = image
        self.docker = docker_provider or DockerClientProvider()

    def ensure_repository(self) -> str:
        """Return the ECR repository URI, creating the repository if needed."""
        ecr = self.clients.ecr
        found = self._call_if_exists(
            "describe_repository",
            ecr.describe_repositories,
            repositoryNames=[self.image.repository],
        )
        if found and found.get("repositories"):
            return str(found["repositories"][0]["repositoryUri"])

        logger.info(f"Creating ECR repository {self.image.repository}")
        created = self._call(
            "create_repository",
            ecr.create_repository,
            repositoryName=self.image.repository,
            imageScanningConfiguration={"scanOnPush": True},
            tags=[{"Key": k, "Value": v} for k, v in MANAGED_TAGS.items()],
        )
        return str(created["repository"]["repositoryUri"])

    def get_registry_credentials(self) -> RegistryCredentials:
        """Fetch a registry token from ECR and decode it.

        Raises:
            AuthenticationFailedError: If ECR refuses to issue a token
        """
        try:
            response = call_with_retry(
                self.clients.ecr.get_authorization_token,
                attempts=self.retries.attempts,
                backoff=self.retries.backoff,
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_aws_error(
                e, "registry_auth", self.timeout, error_cls=AuthenticationFailedError
            ) from e

        data = response["authorizationData"][0]
        token = base64.b64decode(data["authorizationToken"]).decode("utf-8")
        username, _, password = token.partition(":")
        return RegistryCredentials(username, password, data["proxyEndpoint"])

    def registry_login(self, client: Any) -> RegistryCredentials:
        """Log the Docker client in to the ECR registry.

        Raises:
            AuthenticationFailedError: If the registry rejects the credentials
        """
        credentials = self.get_registry_credentials()
        try:
            client.login(
                username=credentials.username,
                password=credentials.password,
                registry=credentials.registry,
                reauth=True,
            )
        except APIError as e:
            raise AuthenticationFailedError(
                operation="registry_login", message=str(e.explanation or e)
            ) from e
        logger.debug(f"Logged in to {credentials.registry}")
        return credentials

    def _push_once(
        self, client: Any, repository_uri: str, tag: str, auth_config: dict[str, str]
    ) -> str | None:
        digest = None
        for line in client.images.push(
            repository_uri, tag=tag, stream=True, decode=True, auth_config=auth_config
        ):
            if "error" in line:
                message = str(line.get("errorDetail", {}).get("message", line["error"]))
                if is_auth_rejection(message):
                    raise AuthenticationFailedError(operation="push", message=message)
                raise PublishFailedError(operation="push", message=message)
            aux = line.get("aux")
            if isinstance(aux, dict) and aux.get("Digest"):
                digest = aux["Digest"]
            elif line.get("status"):
                logger.debug(f"push: {line['status']} {line.get('progress', '')}")
        return digest

    def push(self, artifact: Artifact, repository_uri: str) -> str:
        """Tag and push a built image.

        Returns:
            The pushed image URI (``<repository_uri>:<tag>``)

        Raises:
            AuthenticationFailedError: If the registry rejects the push
            PublishFailedError: If the push fails
            DeploymentTimeoutError: If the registry does not answer in time
        """
        if artifact.transport != TransportKind.IMAGE:
            raise PublishFailedError(
                f"Expected an image artifact, got {artifact.transport.value}"
            )
        tag = artifact.tag or artifact.reference.rpartition(":")[2] or "latest"
        client = self.docker.get(operation="push")
        credentials = self.registry_login(client)

        try:
            local_image = client.images.get(artifact.reference)
            local_image.tag(repository_uri, tag=tag)
            logger.info(f"Pushing {repository_uri}:{tag}")
            digest = call_with_retry(
                self._push_once,
                client,
                repository_uri,
                tag,
                credentials.auth_config,
                attempts=self.retries.attempts,
                backoff=self.retries.backoff,
            )
        except ImageNotFound as e:
            raise PublishFailedError(
                operation="push",
                message=f"Local image {artifact.reference} not found. Run build first.",
            ) from e
        except requests.exceptions.Timeout as e:
            raise DeploymentTimeoutError(
                operation="push", timeout=self.docker.timeout, detail=str(e)
            ) from e
        except APIError as e:
            message = str(e.explanation or e)
            if e.status_code in (401, 403) or is_auth_rejection(message):
                raise AuthenticationFailedError(operation="push", message=message) from e
            raise PublishFailedError(operation="push", message=message) from e
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise PublishFailedError(operation="push", message=str(e)) from e

        if digest:
            logger.debug(f"Pushed digest {digest}")
        return f"{repository_uri}:{tag}"

    def _activate(
        self,
        image_uri: str,
        target: DeploymentTarget,
        environment: Mapping[str, str],
    ) -> PublishResult:
        name = target.function_name
        lambda_client = self.clients.lambda_client
        existing = self.get_function(name)

        if existing is None:
            role = self.require_role(name)
            logger.info(f"Creating function {name} from {image_uri}")
            response = self._call(
                "create_function",
                lambda_client.create_function,
                FunctionName=name,
                Role=role,
                Code={"ImageUri": image_uri},
                PackageType="Image",
                Timeout=self.function.timeout,
                MemorySize=self.function.memory,
                Environment={"Variables": dict(environment)},
                Architectures=[self.image.architecture],
                Tags=self.tags_for(target),
            )
            self.wait_for("function_active", name)
            created = True
        else:
            logger.info(f"Pointing {name} at {image_uri}")
            self._call(
                "update_function_code",
                lambda_client.update_function_code,
                FunctionName=name,
                ImageUri=image_uri,
                Architectures=[self.image.architecture],
            )
            self.wait_for("function_updated", name)
            response = self.apply_configuration(name, environment)
            created = False

        url = self.ensure_function_url(name) if self.function.function_url else None
        return PublishResult(
            function_name=name,
            function_arn=response.get("FunctionArn"),
            url=url,
            image_uri=image_uri,
            code_sha256=response.get("CodeSha256"),
            created=created,
        )

    def activate(
        self,
        image_uri: str,
        target: DeploymentTarget,
        environment: Mapping[str, str],
    ) -> PublishResult:
        """Point the target's function at an already pushed image.

        Args:
            image_uri: Registry reference of a pushed image
            target: Deployment target
            environment: Variables set on the function

        Returns:
            PublishResult describing the live function

        Raises:
            PartialPublishError: If the function could not be updated; the
                pushed image is left in place
        """
        try:
            return self._activate(image_uri, target, environment)
        except DeploymentError as e:
            raise PartialPublishError(
                image_uri=image_uri,
                function_name=target.function_name,
                message=f"{e.kind}: {e.message}",
            ) from e

    def publish(
        self,
        artifact: Artifact,
        target: DeploymentTarget,
        environment: Mapping[str, str],
    ) -> PublishResult:
        """Push the image, then activate it on the target's function."""
        repository_uri = self.ensure_repository()
        image_uri = self.push(artifact, repository_uri)
        return self.activate(image_uri, target, environment)
