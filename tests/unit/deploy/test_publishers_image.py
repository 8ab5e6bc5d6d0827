"""Unit tests for ImagePublisher."""

from __future__ import annotations

import base64
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from docker.errors import APIError, ImageNotFound

from nestlambda.deploy.clients import AWSClients, DockerClientProvider
from nestlambda.deploy.publishers.image import ImagePublisher, is_auth_rejection
from nestlambda.lib.errors import (
    AuthenticationFailedError,
    PartialPublishError,
    PublishFailedError,
)
from nestlambda.models.deployment import (
    Artifact,
    DeploymentTarget,
    FunctionConfig,
    ImageConfig,
    RetryConfig,
    TransportKind,
)

ROLE = "arn:aws:iam::123456789012:role/lambda-exec"
ARN = "arn:aws:lambda:us-east-1:123456789012:function:your-app-dev"
REGISTRY = "https://123456789012.dkr.ecr.us-east-1.amazonaws.com"
REPO_URI = "123456789012.dkr.ecr.us-east-1.amazonaws.com/your-app"
URL = "https://abc123.lambda-url.us-east-1.on.aws/"
ENV = {"DB_HOST": "db.example.com"}


@pytest.fixture
def target(tmp_path: Path) -> DeploymentTarget:
    """The dev target."""
    return DeploymentTarget(
        name="dev",
        function_name="your-app-dev",
        region="us-east-1",
        env_file=str(tmp_path / ".env"),
    )


@pytest.fixture
def artifact() -> Artifact:
    """A locally built image."""
    return Artifact(
        transport=TransportKind.IMAGE,
        reference="your-app:abc1234",
        digest="sha256:feedface",
        tag="abc1234",
    )


@pytest.fixture
def docker_client() -> MagicMock:
    """Docker client whose push succeeds."""
    client = MagicMock()
    client.images.push.return_value = iter(
        [
            {"status": "Pushing", "progress": "[=>  ]"},
            {"aux": {"Tag": "abc1234", "Digest": "sha256:0123", "Size": 1}},
        ]
    )
    return client


@pytest.fixture
def aws(aws_mocks: dict[str, MagicMock]) -> dict[str, MagicMock]:
    """AWS mocks with an existing repository and a valid ECR token."""
    token = base64.b64encode(b"AWS:registry-password").decode("ascii")
    aws_mocks["ecr"].get_authorization_token.return_value = {
        "authorizationData": [
            {"authorizationToken": token, "proxyEndpoint": REGISTRY}
        ]
    }
    aws_mocks["ecr"].describe_repositories.return_value = {
        "repositories": [{"repositoryUri": REPO_URI}]
    }
    lambda_client = aws_mocks["lambda"]
    lambda_client.get_function.return_value = {"Configuration": {}}
    lambda_client.get_function_url_config.return_value = {"FunctionUrl": URL}
    lambda_client.update_function_configuration.return_value = {"FunctionArn": ARN}
    return aws_mocks


@pytest.fixture
def publisher(
    aws_clients: AWSClients, aws: dict[str, MagicMock], docker_client: MagicMock
) -> ImagePublisher:
    """Image publisher wired to the mocks."""
    return ImagePublisher(
        aws_clients,
        ImageConfig(repository="your-app", platform="linux/arm64"),
        FunctionConfig(role_arn=ROLE),
        docker_provider=DockerClientProvider(client_factory=lambda: docker_client),
        retries=RetryConfig(attempts=2, backoff=0),
        timeout=10,
    )


@pytest.mark.unit
class TestRepository:
    """Tests for ensure_repository()."""

    def test_existing_repository(
        self, publisher: ImagePublisher, aws: dict[str, MagicMock]
    ) -> None:
        """An existing repository is reused."""
        assert publisher.ensure_repository() == REPO_URI
        aws["ecr"].create_repository.assert_not_called()

    def test_missing_repository_created(
        self,
        publisher: ImagePublisher,
        aws: dict[str, MagicMock],
        client_error: Callable[..., ClientError],
    ) -> None:
        """A missing repository is created with scanning enabled."""
        aws["ecr"].describe_repositories.side_effect = client_error(
            "RepositoryNotFoundException"
        )
        aws["ecr"].create_repository.return_value = {
            "repository": {"repositoryUri": REPO_URI}
        }

        assert publisher.ensure_repository() == REPO_URI
        kwargs = aws["ecr"].create_repository.call_args.kwargs
        assert kwargs["repositoryName"] == "your-app"
        assert kwargs["imageScanningConfiguration"] == {"scanOnPush": True}


@pytest.mark.unit
class TestRegistryAuth:
    """Tests for registry credentials and login."""

    def test_credentials_decoded(self, publisher: ImagePublisher) -> None:
        """The ECR token is split into user and password."""
        credentials = publisher.get_registry_credentials()

        assert credentials.username == "AWS"
        assert credentials.password == "registry-password"
        assert credentials.registry == REGISTRY

    def test_token_refused(
        self,
        publisher: ImagePublisher,
        aws: dict[str, MagicMock],
        client_error: Callable[..., ClientError],
    ) -> None:
        """Any ECR token failure is an authentication failure."""
        aws["ecr"].get_authorization_token.side_effect = client_error(
            "InvalidParameterException"
        )

        with pytest.raises(AuthenticationFailedError):
            publisher.get_registry_credentials()

    def test_login_rejected(
        self, publisher: ImagePublisher, docker_client: MagicMock
    ) -> None:
        """A rejected docker login is an authentication failure."""
        docker_client.login.side_effect = APIError(
            "login failed", explanation="unauthorized: bad token"
        )

        with pytest.raises(AuthenticationFailedError, match="unauthorized"):
            publisher.registry_login(docker_client)

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("denied: requested access to the resource is denied", True),
            ("unauthorized: authentication required", True),
            ("blob upload unknown", False),
        ],
    )
    def test_is_auth_rejection(self, message: str, expected: bool) -> None:
        """Registry messages are classified by their wording."""
        assert is_auth_rejection(message) is expected


@pytest.mark.unit
class TestPush:
    """Tests for ImagePublisher.push()."""

    def test_push_success(
        self, publisher: ImagePublisher, docker_client: MagicMock, artifact: Artifact
    ) -> None:
        """The local image is tagged for the registry and pushed."""
        image_uri = publisher.push(artifact, REPO_URI)

        assert image_uri == f"{REPO_URI}:abc1234"
        docker_client.images.get.assert_called_once_with("your-app:abc1234")
        docker_client.images.get.return_value.tag.assert_called_once_with(
            REPO_URI, tag="abc1234"
        )
        kwargs = docker_client.images.push.call_args.kwargs
        assert kwargs["tag"] == "abc1234"
        assert kwargs["auth_config"] == {
            "username": "AWS",
            "password": "registry-password",
        }

    def test_push_error_line_auth(
        self, publisher: ImagePublisher, docker_client: MagicMock, artifact: Artifact
    ) -> None:
        """A streamed auth error is an authentication failure."""
        docker_client.images.push.return_value = iter(
            [{"error": "denied: not authorized", "errorDetail": {"message": "denied"}}]
        )

        with pytest.raises(AuthenticationFailedError):
            publisher.push(artifact, REPO_URI)

    def test_push_error_line_other(
        self, publisher: ImagePublisher, docker_client: MagicMock, artifact: Artifact
    ) -> None:
        """Other streamed errors are publish failures."""
        docker_client.images.push.return_value = iter(
            [{"error": "blob upload invalid"}]
        )

        with pytest.raises(PublishFailedError, match="blob upload invalid"):
            publisher.push(artifact, REPO_URI)

    def test_missing_local_image(
        self, publisher: ImagePublisher, docker_client: MagicMock, artifact: Artifact
    ) -> None:
        """A missing local image asks for a build."""
        docker_client.images.get.side_effect = ImageNotFound("no such image")

        with pytest.raises(PublishFailedError, match="Run build first"):
            publisher.push(artifact, REPO_URI)

    def test_bundle_artifact_rejected(self, publisher: ImagePublisher) -> None:
        """A bundle cannot be pushed as an image."""
        bundle = Artifact(
            transport=TransportKind.BUNDLE, reference="/tmp/a.zip", digest="x"
        )

        with pytest.raises(PublishFailedError, match="Expected an image"):
            publisher.push(bundle, REPO_URI)


@pytest.mark.unit
class TestPublish:
    """Tests for the push-then-activate sequence."""

    def test_publish_updates_existing_function(
        self,
        publisher: ImagePublisher,
        aws: dict[str, MagicMock],
        artifact: Artifact,
        target: DeploymentTarget,
    ) -> None:
        """An existing function is pointed at the pushed image."""
        result = publisher.publish(artifact, target, ENV)

        aws["lambda"].update_function_code.assert_called_once_with(
            FunctionName="your-app-dev",
            ImageUri=f"{REPO_URI}:abc1234",
            Architectures=["arm64"],
        )
        assert result.image_uri == f"{REPO_URI}:abc1234"
        assert result.function_arn == ARN
        assert result.url == URL
        assert result.created is False

    def test_publish_creates_function(
        self,
        publisher: ImagePublisher,
        aws: dict[str, MagicMock],
        client_error: Callable[..., ClientError],
        artifact: Artifact,
        target: DeploymentTarget,
    ) -> None:
        """A missing function is created from the image."""
        aws["lambda"].get_function.side_effect = client_error(
            "ResourceNotFoundException"
        )
        aws["lambda"].create_function.return_value = {"FunctionArn": ARN}

        result = publisher.publish(artifact, target, ENV)

        kwargs = aws["lambda"].create_function.call_args.kwargs
        assert kwargs["PackageType"] == "Image"
        assert kwargs["Code"] == {"ImageUri": f"{REPO_URI}:abc1234"}
        assert kwargs["Architectures"] == ["arm64"]
        assert result.created is True

    def test_activation_failure_is_partial_publish(
        self,
        publisher: ImagePublisher,
        aws: dict[str, MagicMock],
        docker_client: MagicMock,
        client_error: Callable[..., ClientError],
        artifact: Artifact,
        target: DeploymentTarget,
    ) -> None:
        """A pushed image that cannot be activated is reported, not removed."""
        aws["lambda"].update_function_code.side_effect = client_error(
            "InvalidParameterValueException", "Image architecture mismatch"
        )

        with pytest.raises(PartialPublishError) as exc_info:
            publisher.publish(artifact, target, ENV)

        error = exc_info.value
        assert error.image_uri == f"{REPO_URI}:abc1234"
        assert error.function_name == "your-app-dev"
        assert "Image architecture mismatch" in error.message
        docker_client.images.push.assert_called_once()
        aws["ecr"].batch_delete_image.assert_not_called()

    def test_activate_only(
        self,
        publisher: ImagePublisher,
        aws: dict[str, MagicMock],
        docker_client: MagicMock,
        target: DeploymentTarget,
    ) -> None:
        """Activation alone does not touch Docker or the registry."""
        result = publisher.activate(f"{REPO_URI}:abc1234", target, ENV)

        assert result.image_uri == f"{REPO_URI}:abc1234"
        docker_client.images.push.assert_not_called()
        aws["ecr"].get_authorization_token.assert_not_called()
