"""Pydantic models for deployment configuration and results.

This module defines the project file schema (one configuration type tagged
with a transport kind), the resolved deployment target, build artifacts and
the results reported at the end of a pipeline run.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class TransportKind(str, Enum):
    """How the application reaches Lambda."""

    BUNDLE = "bundle"
    IMAGE = "image"


class Capability(str, Enum):
    """Operations a transport needs from the local machine and from AWS."""

    COMPILE = "compile"
    ZIP_PACKAGE = "zip_package"
    CODE_UPLOAD = "code_upload"
    CONTAINER_BUILD = "container_build"
    REGISTRY_AUTH = "registry_auth"
    IMAGE_PUSH = "image_push"
    FUNCTION_UPDATE = "function_update"


TRANSPORT_CAPABILITIES: dict[TransportKind, frozenset[Capability]] = {
    TransportKind.BUNDLE: frozenset(
        {
            Capability.COMPILE,
            Capability.ZIP_PACKAGE,
            Capability.CODE_UPLOAD,
            Capability.FUNCTION_UPDATE,
        }
    ),
    TransportKind.IMAGE: frozenset(
        {
            Capability.CONTAINER_BUILD,
            Capability.REGISTRY_AUTH,
            Capability.IMAGE_PUSH,
            Capability.FUNCTION_UPDATE,
        }
    ),
}

# External tools each capability relies on
CAPABILITY_TOOLS: dict[Capability, tuple[str, ...]] = {
    Capability.COMPILE: ("node", "npm"),
    Capability.CONTAINER_BUILD: ("docker",),
}


class TagStrategy(str, Enum):
    """Strategy for generating container image tags."""

    GIT_SHA = "git_sha"
    GIT_TAG = "git_tag"
    LATEST = "latest"
    CUSTOM = "custom"


# Tag strategies that read the tag from the git checkout
GIT_TAG_STRATEGIES = frozenset({TagStrategy.GIT_SHA, TagStrategy.GIT_TAG})


class HealthStatus(str, Enum):
    """Health of a deployed function as seen by the follow-up probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class PipelineStage(str, Enum):
    """States of a pipeline run."""

    START = "start"
    CHECKING = "checking"
    LOADING = "loading"
    BUILDING = "building"
    PUBLISHING = "publishing"
    REPORTING = "reporting"
    SUCCESS = "success"
    FAILED = "failed"


# Regex patterns for validation
AWS_ARN_PATTERN = re.compile(r"^arn:aws:iam::\d{12}:role/[\w+=,.@/-]+$")
AWS_REGION_PATTERN = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-\d$")
REPOSITORY_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._/-]*[a-z0-9]$|^[a-z0-9]$")
FUNCTION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
TARGET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,31}$")


class BundleConfig(BaseModel):
    """Settings for the direct zip-bundle transport.

    Attributes:
        build_command: Command that compiles the NestJS sources
        output_file: File that must exist after a successful build
        handler: Lambda handler (module path and export name)
        runtime: Lambda Node.js runtime identifier
        include: Paths, relative to the source dir, packed into the bundle
    """

    model_config = ConfigDict(extra="forbid")

    build_command: str = Field(
        default="npm run build", description="Command that compiles the sources"
    )
    output_file: str = Field(
        default="dist/main.js", description="Expected build output file"
    )
    handler: str = Field(default="dist/lambda.handler", description="Lambda handler")
    runtime: str = Field(default="nodejs20.x", description="Lambda runtime")
    include: list[str] = Field(
        default_factory=lambda: ["dist", "node_modules", "package.json"],
        description="Paths packed into the bundle",
    )

    @field_validator("runtime")
    @classmethod
    def validate_runtime(cls, v: str) -> str:
        """Only Node.js runtimes can host a NestJS application."""
        if not v.startswith("nodejs"):
            raise ValueError(f"Invalid runtime: {v}. Must be a nodejs runtime.")
        return v

    @field_validator("include")
    @classmethod
    def validate_include(cls, v: list[str]) -> list[str]:
        """Include paths must stay inside the source directory."""
        if not v:
            raise ValueError("include must list at least one path")
        for item in v:
            if item.startswith("/") or ".." in item.split("/"):
                raise ValueError(f"Include path must be relative: {item}")
        return v


class ImageConfig(BaseModel):
    """Settings for the container image transport.

    Attributes:
        repository: ECR repository name
        tag_strategy: Strategy for generating image tags
        custom_tag: Custom tag when tag_strategy is CUSTOM
        platform: Target platform for the image
        node_version: Node.js major version for the build stage
        dockerfile: Existing Dockerfile, relative to the source dir
        build_command: Command run in the build stage of a generated Dockerfile
        handler: Lambda handler baked into the image CMD
    """

    model_config = ConfigDict(extra="forbid")

    repository: str = Field(..., description="ECR repository name")
    tag_strategy: TagStrategy = Field(
        default=TagStrategy.GIT_SHA, description="Strategy for generating image tags"
    )
    custom_tag: str | None = Field(
        default=None, description="Custom tag when tag_strategy is CUSTOM"
    )
    platform: str = Field(default="linux/amd64", description="Image platform")
    node_version: str = Field(default="20", description="Node.js major version")
    dockerfile: str | None = Field(
        default=None, description="Existing Dockerfile to build instead"
    )
    build_command: str = Field(
        default="npm run build", description="Build command for the build stage"
    )
    handler: str = Field(default="dist/lambda.handler", description="Lambda handler")

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Validate repository name pattern."""
        if not REPOSITORY_PATTERN.match(v):
            raise ValueError(
                f"Invalid repository name: {v}. "
                "Must contain only lowercase letters, numbers, '.', '_', '/', '-'"
            )
        return v

    @field_validator("platform")
    @classmethod
    def validate_platform(cls, v: str) -> str:
        """Lambda only runs x86_64 and arm64 images."""
        if v not in ("linux/amd64", "linux/arm64"):
            raise ValueError(
                f"Invalid platform: {v}. Must be linux/amd64 or linux/arm64"
            )
        return v

    @model_validator(mode="after")
    def validate_custom_tag(self) -> "ImageConfig":
        """Validate that custom_tag is provided when tag_strategy is CUSTOM."""
        if self.tag_strategy == TagStrategy.CUSTOM and not self.custom_tag:
            raise ValueError("custom_tag is required when tag_strategy is 'custom'")
        return self

    @property
    def architecture(self) -> str:
        """Lambda architecture name matching the image platform."""
        return "arm64" if self.platform == "linux/arm64" else "x86_64"


class FunctionConfig(BaseModel):
    """Lambda function settings shared by both transports.

    Attributes:
        memory: Memory size in MB
        timeout: Invocation timeout in seconds
        role_arn: Execution role, required when the function is created
        health_check_path: HTTP path probed after deployment
        function_url: Whether to expose a public function URL
    """

    model_config = ConfigDict(extra="forbid")

    memory: int = Field(default=1024, ge=128, le=10240, description="Memory in MB")
    timeout: int = Field(default=30, ge=1, le=900, description="Timeout in seconds")
    role_arn: str | None = Field(default=None, description="Execution role ARN")
    health_check_path: str = Field(default="/health", description="Health path")
    function_url: bool = Field(default=True, description="Expose a function URL")

    @field_validator("role_arn")
    @classmethod
    def validate_role_arn(cls, v: str | None) -> str | None:
        """Validate execution role ARN format."""
        if v is not None and not AWS_ARN_PATTERN.match(v):
            raise ValueError(
                f"Invalid role ARN: {v}. "
                "Must match pattern: arn:aws:iam::<account-id>:role/<role-name>"
            )
        return v

    @field_validator("health_check_path")
    @classmethod
    def validate_health_check_path(cls, v: str) -> str:
        """Health path must be absolute."""
        if not v.startswith("/"):
            raise ValueError(f"health_check_path must start with '/': {v}")
        return v


class TargetConfig(BaseModel):
    """Per-target overrides from the project file."""

    model_config = ConfigDict(extra="forbid")

    env_file: str = Field(default=".env", description="Environment file")
    function_name: str | None = Field(
        default=None, description="Function name (default: <service>-<target>)"
    )

    @field_validator("function_name")
    @classmethod
    def validate_function_name(cls, v: str | None) -> str | None:
        """Validate Lambda function name."""
        if v is not None and not FUNCTION_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid function name: {v}. "
                "Use up to 64 letters, numbers, hyphens or underscores."
            )
        return v


class TimeoutConfig(BaseModel):
    """Timeouts, in seconds, for blocking calls."""

    model_config = ConfigDict(extra="forbid")

    command: float = Field(default=900, gt=0, description="External commands")
    network: float = Field(default=60, gt=0, description="AWS and registry calls")
    probe: float = Field(default=10, gt=0, description="Health probe")


class RetryConfig(BaseModel):
    """Retry policy for publisher network calls."""

    model_config = ConfigDict(extra="forbid")

    attempts: int = Field(default=3, ge=1, le=10, description="Maximum attempts")
    backoff: float = Field(default=1.0, ge=0, description="Backoff multiplier")


class DeploymentTarget(BaseModel):
    """A resolved deployment environment. Immutable for a pipeline run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Target name (e.g. dev, prod)")
    function_name: str = Field(..., description="Lambda function name")
    region: str = Field(..., description="AWS region")
    env_file: str = Field(..., description="Absolute path of the environment file")


class ProjectConfig(BaseModel):
    """Main project configuration model.

    One configuration type covers both transports. ``transport`` selects the
    capability set, and only the matching section (``bundle`` or ``image``)
    may be present.

    Attributes:
        service: Base name of the Lambda function
        region: AWS region
        transport: Transport kind (bundle or image)
        source_dir: NestJS project root, relative to the project file
        required_env: Keys that must be set in the environment file
        tools: Extra external tools to check
        bundle: Bundle transport settings
        image: Image transport settings
        function: Lambda function settings
        targets: Per-target overrides
        timeouts: Timeouts for blocking calls
        retries: Retry policy for network calls
    """

    model_config = ConfigDict(extra="forbid")

    service: str = Field(..., description="Service name")
    region: str = Field(default="us-east-1", description="AWS region")
    transport: TransportKind = Field(
        default=TransportKind.BUNDLE, description="Transport kind"
    )
    source_dir: str = Field(default=".", description="NestJS project root")
    required_env: list[str] = Field(
        default_factory=list, description="Required environment keys"
    )
    tools: list[str] = Field(default_factory=list, description="Extra tools")
    bundle: BundleConfig | None = Field(default=None, description="Bundle settings")
    image: ImageConfig | None = Field(default=None, description="Image settings")
    function: FunctionConfig = Field(
        default_factory=FunctionConfig, description="Function settings"
    )
    targets: dict[str, TargetConfig] = Field(
        default_factory=dict, description="Per-target overrides"
    )
    timeouts: TimeoutConfig = Field(
        default_factory=TimeoutConfig, description="Timeouts"
    )
    retries: RetryConfig = Field(default_factory=RetryConfig, description="Retries")

    @field_validator("service")
    @classmethod
    def validate_service(cls, v: str) -> str:
        """Service names become part of the function name."""
        if not FUNCTION_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid service name: {v}. "
                "Use letters, numbers, hyphens or underscores."
            )
        return v

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        if not AWS_REGION_PATTERN.match(v):
            raise ValueError(f"Invalid AWS region: {v}")
        return v

    @field_validator("targets")
    @classmethod
    def validate_target_names(
        cls, v: dict[str, TargetConfig]
    ) -> dict[str, TargetConfig]:
        """Validate target names."""
        for name in v:
            if not TARGET_NAME_PATTERN.match(name):
                raise ValueError(
                    f"Invalid target name: {name}. "
                    "Use lowercase letters, numbers and hyphens."
                )
        return v

    @model_validator(mode="after")
    def validate_transport_section(self) -> "ProjectConfig":
        """Validate that only the section matching the transport is set."""
        if self.transport == TransportKind.BUNDLE:
            if self.image is not None:
                raise ValueError(
                    "Only bundle configuration should be provided when "
                    "transport is 'bundle'"
                )
            if self.bundle is None:
                self.bundle = BundleConfig()
        elif self.transport == TransportKind.IMAGE:
            if self.bundle is not None:
                raise ValueError(
                    "Only image configuration should be provided when "
                    "transport is 'image'"
                )
            if self.image is None:
                self.image = ImageConfig(repository=self.service.lower())
        return self

    @property
    def capabilities(self) -> frozenset[Capability]:
        """Capabilities required by the configured transport."""
        return TRANSPORT_CAPABILITIES[self.transport]

    @property
    def required_tools(self) -> list[str]:
        """External tools needed by the transport plus any extra tools."""
        tools: list[str] = []
        for capability in sorted(self.capabilities, key=lambda c: c.value):
            for tool in CAPABILITY_TOOLS.get(capability, ()):
                if tool not in tools:
                    tools.append(tool)
        if (
            self.image is not None
            and self.image.tag_strategy in GIT_TAG_STRATEGIES
            and "git" not in tools
        ):
            tools.append("git")
        for tool in self.tools:
            if tool not in tools:
                tools.append(tool)
        return tools


class Artifact(BaseModel):
    """Output of one build, consumed by one publish.

    ``reference`` is a filesystem path for bundles and a local image
    reference (``name:tag``) for images. ``digest`` is the base64 SHA-256 of
    the zip for bundles and the image id for images.
    """

    model_config = ConfigDict(extra="forbid")

    transport: TransportKind = Field(..., description="Transport kind")
    reference: str = Field(..., description="Bundle path or image reference")
    digest: str = Field(..., description="Content digest")
    tag: str | None = Field(default=None, description="Image tag")
    size_bytes: int | None = Field(default=None, description="Bundle size")
    built_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Build timestamp",
    )
    log_lines: list[str] = Field(
        default_factory=list, exclude=True, description="Build log output"
    )


class PublishResult(BaseModel):
    """Outcome of making an artifact live on a target."""

    model_config = ConfigDict(extra="forbid")

    function_name: str = Field(..., description="Lambda function name")
    function_arn: str | None = Field(default=None, description="Function ARN")
    url: str | None = Field(default=None, description="Function URL")
    image_uri: str | None = Field(default=None, description="Pushed image URI")
    code_sha256: str | None = Field(default=None, description="Live code digest")
    created: bool = Field(default=False, description="Function was created")
    code_updated: bool = Field(default=True, description="Code was uploaded")


class DeploymentResult(BaseModel):
    """Status of a deployed function, as reported after a run.

    Attributes:
        success: Whether the run succeeded
        target: Target name
        function_name: Lambda function name
        url: Public invocation URL
        health: Result of the health probe
        state: Lambda function state (Active, Pending, ...)
        last_update_status: Lambda LastUpdateStatus
        status_unknown: Remote state could not be queried
        diagnostics: Messages for the operator
    """

    model_config = ConfigDict(extra="forbid")

    success: bool = Field(..., description="Run succeeded")
    target: str = Field(..., description="Target name")
    function_name: str = Field(..., description="Lambda function name")
    url: str | None = Field(default=None, description="Public invocation URL")
    health: HealthStatus = Field(
        default=HealthStatus.UNKNOWN, description="Health probe result"
    )
    state: str | None = Field(default=None, description="Function state")
    last_update_status: str | None = Field(
        default=None, description="Last update status"
    )
    status_unknown: bool = Field(default=False, description="Status query failed")
    diagnostics: Annotated[list[str], Field(default_factory=list)]
