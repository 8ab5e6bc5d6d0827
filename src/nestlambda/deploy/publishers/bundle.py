"""Publisher for the direct zip-bundle transport."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from nestlambda.deploy.clients import AWSClients
from nestlambda.deploy.publishers.base import BasePublisher
from nestlambda.lib.errors import PublishFailedError
from nestlambda.lib.logging_config import get_logger
from nestlambda.models.deployment import (
    Artifact,
    BundleConfig,
    DeploymentTarget,
    FunctionConfig,
    PublishResult,
    RetryConfig,
    TransportKind,
)

logger = get_logger(__name__)

# Lambda rejects zip files above this size in a direct upload
MAX_DIRECT_UPLOAD_BYTES = 50 * 1024 * 1024


class BundlePublisher(BasePublisher):
    """Uploads a zip bundle straight to a Lambda function.

    The function is created when absent and updated in place otherwise.
    Uploading is skipped when the live ``CodeSha256`` already matches the
    bundle, so publishing the same artifact twice leaves one function with
    the same code.

    Example:
        >>> publisher = BundlePublisher(clients, BundleConfig(), FunctionConfig())
        >>> result = publisher.publish(artifact, target, env)  # doctest: +SKIP
        >>> result.code_updated  # doctest: +SKIP
        True
    """

    def __init__(
        self,
        clients: AWSClients,
        bundle: BundleConfig,
        function: FunctionConfig,
        retries: RetryConfig | None = None,
        timeout: float = 60.0,
    ) -> None:
        """Initialize the bundle publisher.

        Args:
            clients: Provider of boto3 clients
            bundle: Bundle transport settings (handler, runtime)
            function: Lambda function settings
            retries: Retry policy for remote calls
            timeout: Network timeout in seconds
        """
        super().__init__(clients, function, retries=retries, timeout=timeout)
        self.bundle = bundle

    def _read_bundle(self, artifact: Artifact) -> bytes:
        if artifact.transport != TransportKind.BUNDLE:
            raise PublishFailedError(
                f"Expected a bundle artifact, got {artifact.transport.value}"
            )
        path = Path(artifact.reference)
        if not path.is_file():
            raise PublishFailedError(f"Bundle not found: {path}. Run build first.")
        size = path.stat().st_size
        if size > MAX_DIRECT_UPLOAD_BYTES:
            raise PublishFailedError(
                f"Bundle {path} is {size} bytes; direct uploads are limited to "
                f"{MAX_DIRECT_UPLOAD_BYTES} bytes. Use transport: image instead."
            )
        return path.read_bytes()

    def _create(
        self,
        name: str,
        zip_bytes: bytes,
        target: DeploymentTarget,
        environment: Mapping[str, str],
    ) -> dict[str, Any]:
        role = self.require_role(name)
        logger.info(f"Creating function {name} ({self.bundle.runtime})")
        response = self._call(
            "create_function",
            self.clients.lambda_client.create_function,
            FunctionName=name,
            Runtime=self.bundle.runtime,
            Role=role,
            Handler=self.bundle.handler,
            Code={"ZipFile": zip_bytes},
            Timeout=self.function.timeout,
            MemorySize=self.function.memory,
            Environment={"Variables": dict(environment)},
            PackageType="Zip",
            Tags=self.tags_for(target),
        )
        self.wait_for("function_active", name)
        return response

    def publish(
        self,
        artifact: Artifact,
        target: DeploymentTarget,
        environment: Mapping[str, str],
    ) -> PublishResult:
        """Create or update the target's function from a zip bundle."""
        name = target.function_name
        zip_bytes = self._read_bundle(artifact)

        existing = self.get_function(name)
        if existing is None:
            response = self._create(name, zip_bytes, target, environment)
            created, code_updated = True, True
        else:
            created = False
            live_sha = existing.get("Configuration", {}).get("CodeSha256")
            code_updated = live_sha != artifact.digest
            if code_updated:
                logger.info(f"Uploading {len(zip_bytes)} bytes to {name}")
                self._call(
                    "update_function_code",
                    self.clients.lambda_client.update_function_code,
                    FunctionName=name,
                    ZipFile=zip_bytes,
                )
                self.wait_for("function_updated", name)
            else:
                logger.info(f"Code of {name} is unchanged; skipping upload")

            response = self.apply_configuration(
                name,
                environment,
                Handler=self.bundle.handler,
                Runtime=self.bundle.runtime,
            )

        url = self.ensure_function_url(name) if self.function.function_url else None
        return PublishResult(
            function_name=name,
            function_arn=response.get("FunctionArn"),
            url=url,
            code_sha256=response.get("CodeSha256", artifact.digest),
            created=created,
            code_updated=code_updated,
        )
