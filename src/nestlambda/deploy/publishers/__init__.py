"""Lambda publishers for nestlambda artifacts."""

from __future__ import annotations

from nestlambda.deploy.clients import AWSClients, DockerClientProvider
from nestlambda.deploy.publishers.base import BasePublisher
from nestlambda.deploy.publishers.bundle import BundlePublisher
from nestlambda.deploy.publishers.image import ImagePublisher
from nestlambda.lib.errors import PublishFailedError
from nestlambda.models.deployment import ProjectConfig, TransportKind


def create_publisher(
    project: ProjectConfig,
    clients: AWSClients,
    docker_provider: DockerClientProvider | None = None,
) -> BasePublisher:
    """Create the publisher for the project's transport."""
    if project.transport == TransportKind.BUNDLE:
        if not project.bundle:
            raise PublishFailedError(
                operation="deploy",
                message="Bundle configuration is required for bundle deployments.",
            )
        return BundlePublisher(
            clients,
            project.bundle,
            project.function,
            retries=project.retries,
            timeout=project.timeouts.network,
        )

    if project.transport == TransportKind.IMAGE:
        if not project.image:
            raise PublishFailedError(
                operation="deploy",
                message="Image configuration is required for image deployments.",
            )
        return ImagePublisher(
            clients,
            project.image,
            project.function,
            docker_provider=docker_provider
            or DockerClientProvider(timeout=project.timeouts.command),
            retries=project.retries,
            timeout=project.timeouts.network,
        )

    raise PublishFailedError(
        operation="deploy",
        message=f"Unsupported transport: {project.transport}",
    )


__all__ = ["BasePublisher", "BundlePublisher", "ImagePublisher", "create_publisher"]
