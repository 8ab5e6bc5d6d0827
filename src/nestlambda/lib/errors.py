"""Custom exception hierarchy for nestlambda configuration and deployments.

Every error carries a ``kind`` naming its place in the deployment error
taxonomy. The pipeline reports the kind together with the stage that raised
it, and the CLI maps both to an exit code.
"""

from typing import ClassVar


class NestLambdaError(Exception):
    """Base exception for all nestlambda errors.

    All nestlambda-specific exceptions inherit from this class, enabling
    centralized exception handling in the pipeline and the CLI.
    """

    kind: ClassVar[str] = "NestLambdaError"


class ConfigError(NestLambdaError):
    """Exception raised for configuration errors.

    Raised when the project file or the environment file cannot be parsed
    or fails validation. Includes the offending field so users can locate
    the problem quickly.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    kind: ClassVar[str] = "ConfigError"

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class ConfigNotFoundError(ConfigError):
    """Exception raised when a configuration or environment file is missing.

    Attributes:
        path: Path to the file that was not found
    """

    kind: ClassVar[str] = "ConfigNotFound"

    def __init__(self, path: str, message: str | None = None) -> None:
        """Initialize ConfigNotFoundError with the missing path.

        Args:
            path: Path to the file that was not found
            message: Optional message with suggestions for the user
        """
        self.path = path
        super().__init__(field=path, message=message or f"File not found: {path}")


class ConfigIncompleteError(ConfigError):
    """Exception raised when required environment keys are absent or empty.

    Attributes:
        missing_keys: Every required key that is absent or has an empty value
        source: Path of the environment file that was checked
    """

    kind: ClassVar[str] = "ConfigIncomplete"

    def __init__(self, missing_keys: list[str], source: str) -> None:
        """Initialize ConfigIncompleteError.

        Args:
            missing_keys: Keys that are absent or empty
            source: Environment file the keys were expected in
        """
        self.missing_keys = list(missing_keys)
        self.source = source
        super().__init__(
            field=source,
            message=(
                "Missing or empty required keys: " + ", ".join(self.missing_keys)
            ),
        )


class PrerequisiteMissingError(NestLambdaError):
    """Exception raised when a required tool or credential is unavailable.

    Attributes:
        requirement: Name of the first unmet prerequisite
        message: Diagnostic message for the operator
    """

    kind: ClassVar[str] = "PrerequisiteMissing"

    def __init__(self, requirement: str, message: str) -> None:
        """Create a prerequisite error naming the unmet requirement."""
        self.requirement = requirement
        self.message = f"{requirement}: {message}"
        super().__init__(f"Prerequisite '{requirement}' is not satisfied: {message}")


class DeploymentError(NestLambdaError):
    """Exception raised when a deployment operation fails.

    Attributes:
        operation: The operation that failed (build, publish, status, ...)
        message: Human-readable message, including any remote diagnostic
    """

    kind: ClassVar[str] = "DeploymentError"

    def __init__(self, operation: str, message: str) -> None:
        """Initialize DeploymentError with operation and message.

        Args:
            operation: Name of the failing operation
            message: Descriptive error message
        """
        self.operation = operation
        self.message = message
        super().__init__(f"Deployment {operation} failed: {message}")


class BuildFailedError(DeploymentError):
    """Exception raised when the build step produces no artifact."""

    kind: ClassVar[str] = "BuildFailed"

    def __init__(self, message: str, operation: str = "build") -> None:
        """Create a build failure."""
        super().__init__(operation=operation, message=message)


class DockerNotAvailableError(DeploymentError):
    """Exception raised when the Docker daemon cannot be reached."""

    kind: ClassVar[str] = "DockerNotAvailable"

    def __init__(self, operation: str) -> None:
        """Create an error for an unreachable Docker daemon.

        Args:
            operation: Operation that needed Docker
        """
        super().__init__(
            operation=operation,
            message=(
                "Docker is not available. Ensure the Docker daemon is running "
                "and accessible (docker info)."
            ),
        )


class AuthenticationFailedError(DeploymentError):
    """Exception raised when AWS or the container registry rejects credentials."""

    kind: ClassVar[str] = "AuthenticationFailed"

    def __init__(self, message: str, operation: str = "authenticate") -> None:
        """Create an authentication failure."""
        super().__init__(operation=operation, message=message)


class PublishFailedError(DeploymentError):
    """Exception raised when uploading or pushing an artifact fails."""

    kind: ClassVar[str] = "PublishFailed"

    def __init__(self, message: str, operation: str = "publish") -> None:
        """Create a publish failure."""
        super().__init__(operation=operation, message=message)


class PartialPublishError(DeploymentError):
    """Exception raised when an image was pushed but the function kept the old one.

    The pushed image is left in the registry. The operator retries only the
    activation step, pointing the function at ``image_uri``.

    Attributes:
        image_uri: Registry reference of the image that was pushed
        function_name: Function whose image reference was not updated
    """

    kind: ClassVar[str] = "PartialPublish"

    def __init__(self, image_uri: str, function_name: str, message: str) -> None:
        """Create a partial publish error.

        Args:
            image_uri: Pushed image reference
            function_name: Function that failed to activate the image
            message: Remote diagnostic for the activation failure
        """
        self.image_uri = image_uri
        self.function_name = function_name
        super().__init__(
            operation="activate",
            message=(
                f"Image {image_uri} was pushed but function '{function_name}' "
                f"was not updated: {message}"
            ),
        )


class DeploymentTimeoutError(DeploymentError):
    """Exception raised when a blocking call exceeds its timeout.

    Attributes:
        timeout: Timeout in seconds that was exceeded
    """

    kind: ClassVar[str] = "Timeout"

    def __init__(self, operation: str, timeout: float, detail: str = "") -> None:
        """Create a timeout error for an operation."""
        self.timeout = timeout
        message = f"Timed out after {timeout:g}s"
        if detail:
            message += f": {detail}"
        super().__init__(operation=operation, message=message)


class StatusUnknownError(DeploymentError):
    """Exception raised when remote state cannot be queried."""

    kind: ClassVar[str] = "StatusUnknown"

    def __init__(self, message: str, operation: str = "status") -> None:
        """Create a status query failure."""
        super().__init__(operation=operation, message=message)


class PipelineCancelledError(NestLambdaError):
    """Exception raised when a pipeline run is cancelled between stages.

    Attributes:
        next_stage: The stage that was not started
    """

    kind: ClassVar[str] = "Cancelled"

    def __init__(self, next_stage: str) -> None:
        """Create a cancellation error."""
        self.next_stage = next_stage
        super().__init__(f"Pipeline cancelled before stage '{next_stage}'")
