"""Artifact builders for NestJS Lambda deployments.

``BundleBuilder`` compiles the application and packs it into a deterministic
zip for direct upload. ``ContainerBuilder`` builds a multi-stage container
image with the Docker SDK.
"""

from __future__ import annotations

import base64
import hashlib
import os
import shlex
import stat
import subprocess  # nosec B404
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import requests
from docker.errors import BuildError, DockerException, ImageNotFound

from nestlambda.deploy.clients import DockerClientProvider
from nestlambda.deploy.dockerfile import generate_dockerfile
from nestlambda.lib.errors import (
    BuildFailedError,
    DeploymentTimeoutError,
)
from nestlambda.lib.logging_config import get_logger
from nestlambda.models.deployment import (
    Artifact,
    BundleConfig,
    DeploymentTarget,
    ImageConfig,
    ProjectConfig,
    TagStrategy,
    TransportKind,
)

if TYPE_CHECKING:
    from docker.models.images import Image

logger = get_logger(__name__)

# Fixed timestamp for zip entries so identical sources give identical bundles
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

# Lines of build output kept in error messages
ERROR_TAIL_LINES = 20

# Seconds allowed for git calls made while tagging images
GIT_TIMEOUT = 30


def _run_git(args: list[str], cwd: Path | None) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(  # noqa: S603  # nosec B603 B607
            ["git", *args],  # noqa: S607
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=GIT_TIMEOUT,
        )
    except subprocess.TimeoutExpired as e:
        raise DeploymentTimeoutError(
            operation="tag_generation",
            timeout=GIT_TIMEOUT,
            detail="git " + " ".join(args),
        ) from e
    except OSError as e:
        raise BuildFailedError(
            operation="tag_generation", message=f"Could not run git: {e}"
        ) from e


def generate_tag(
    strategy: TagStrategy, custom_tag: str | None = None, cwd: Path | None = None
) -> str:
    """Generate an image tag based on the specified strategy.

    Args:
        strategy: Tag generation strategy (git_sha, git_tag, latest, custom)
        custom_tag: Custom tag value when strategy is CUSTOM
        cwd: Directory to run git in, defaults to the current directory

    Returns:
        Generated tag string

    Raises:
        ValueError: If custom strategy is used without providing custom_tag
        BuildFailedError: If git commands fail (not in repo, no tags, etc.)
        DeploymentTimeoutError: If git does not answer within GIT_TIMEOUT

    Example:
        >>> generate_tag(TagStrategy.LATEST)
        'latest'
        >>> generate_tag(TagStrategy.CUSTOM, custom_tag="v1.0.0")
        'v1.0.0'
    """
    if strategy == TagStrategy.LATEST:
        return "latest"

    if strategy == TagStrategy.CUSTOM:
        if not custom_tag:
            raise ValueError("custom_tag is required when using CUSTOM strategy")
        return custom_tag

    if strategy == TagStrategy.GIT_SHA:
        result = _run_git(["rev-parse", "HEAD"], cwd)
        if result.returncode != 0:
            raise BuildFailedError(
                operation="tag_generation",
                message="Failed to get git SHA: not a git repository",
            )
        return result.stdout.strip()[:7]

    if strategy == TagStrategy.GIT_TAG:
        result = _run_git(["describe", "--tags", "--abbrev=0"], cwd)
        if result.returncode != 0:
            raise BuildFailedError(
                operation="tag_generation",
                message="No git tags found. Create a tag first: git tag v1.0.0",
            )
        return result.stdout.strip()

    raise ValueError(f"Unknown tag strategy: {strategy}")


def get_oci_labels(
    service: str,
    version: str,
    target: str,
    source_sha: str | None = None,
) -> dict[str, str]:
    """Generate OCI-compliant container image labels.

    Args:
        service: Service name for the image title
        version: Version string (the image tag)
        target: Deployment target the image was built for
        source_sha: Optional git SHA for source tracking

    Returns:
        Dictionary of OCI labels
    """
    labels = {
        "org.opencontainers.image.title": service,
        "org.opencontainers.image.version": version,
        "org.opencontainers.image.created": datetime.now(timezone.utc).isoformat(),
        "com.nestlambda.managed": "true",
        "com.nestlambda.target": target,
    }
    if source_sha:
        labels["org.opencontainers.image.revision"] = source_sha[:7]
    return labels


def compute_code_sha256(path: Path) -> str:
    """Return the base64 SHA-256 of a file, as Lambda reports ``CodeSha256``."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")


def run_build_command(command: str, cwd: Path, timeout: float) -> list[str]:
    """Run a build command and return its output lines.

    Raises:
        DeploymentTimeoutError: If the command exceeds ``timeout``
        BuildFailedError: If the command cannot start or exits non-zero
    """
    argv = shlex.split(command)
    if not argv:
        raise BuildFailedError("Build command is empty")

    logger.info(f"Running build command: {command}")
    try:
        result = subprocess.run(  # noqa: S603  # nosec B603
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise DeploymentTimeoutError(
            operation="build", timeout=timeout, detail=command
        ) from e
    except OSError as e:
        raise BuildFailedError(f"Could not run '{command}': {e}") from e

    log_lines = (result.stdout or "").splitlines() + (result.stderr or "").splitlines()
    if result.returncode != 0:
        tail = "\n".join(log_lines[-ERROR_TAIL_LINES:])
        raise BuildFailedError(
            f"'{command}' exited with code {result.returncode}\n{tail}".rstrip()
        )
    return log_lines


def _iter_bundle_files(source_dir: Path, include: list[str]) -> list[tuple[Path, str]]:
    files: list[tuple[Path, str]] = []
    for item in include:
        path = source_dir / item
        if path.is_file():
            files.append((path, path.relative_to(source_dir).as_posix()))
        elif path.is_dir():
            for child in sorted(path.rglob("*")):
                if child.is_file():
                    files.append((child, child.relative_to(source_dir).as_posix()))
        else:
            raise BuildFailedError(f"Bundle include path not found: {path}")
    return sorted(files, key=lambda entry: entry[1])


def write_deterministic_zip(
    source_dir: Path, include: list[str], destination: Path
) -> int:
    """Pack ``include`` paths into a zip that depends only on file contents.

    Entries are sorted and written with a fixed timestamp and permissions.
    The zip is written next to ``destination`` and moved into place
    atomically, so an interrupted build leaves either the old bundle or the
    new one.

    Returns:
        Number of files written
    """
    files = _iter_bundle_files(source_dir, include)
    destination.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        dir=destination.parent, prefix=f".{destination.stem}-", suffix=".zip.tmp"
    )
    os.close(fd)
    try:
        with zipfile.ZipFile(tmp_name, "w", zipfile.ZIP_DEFLATED) as archive:
            for path, arcname in files:
                info = zipfile.ZipInfo(arcname, date_time=ZIP_EPOCH)
                executable = path.stat().st_mode & stat.S_IXUSR
                info.external_attr = (0o755 if executable else 0o644) << 16
                info.compress_type = zipfile.ZIP_DEFLATED
                archive.writestr(info, path.read_bytes())
        os.replace(tmp_name, destination)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return len(files)


class BundleBuilder:
    """Builds a zip bundle for direct upload to Lambda.

    Example:
        >>> builder = BundleBuilder(BundleConfig(), Path("."), Path(".nestlambda/build"))
        >>> artifact = builder.build(target)  # doctest: +SKIP
        >>> artifact.reference  # doctest: +SKIP
        '.nestlambda/build/dev/your-app-dev.zip'
    """

    def __init__(
        self,
        config: BundleConfig,
        source_dir: Path,
        build_root: Path,
        timeout: float = 900.0,
    ) -> None:
        """Initialize the bundle builder.

        Args:
            config: Bundle transport settings
            source_dir: NestJS project root
            build_root: Directory receiving per-target build outputs
            timeout: Timeout in seconds for the build command
        """
        self.config = config
        self.source_dir = source_dir
        self.build_root = build_root
        self.timeout = timeout

    def build(self, target: DeploymentTarget) -> Artifact:
        """Compile the application and pack the bundle.

        Raises:
            BuildFailedError: If the build fails or the output file is absent
            DeploymentTimeoutError: If the build command times out
        """
        if not self.source_dir.is_dir():
            raise BuildFailedError(f"Source directory not found: {self.source_dir}")

        log_lines = run_build_command(
            self.config.build_command, self.source_dir, self.timeout
        )

        # Exit code 0 is not enough; the compiled entry point must exist
        output_file = self.source_dir / self.config.output_file
        if not output_file.is_file():
            raise BuildFailedError(
                f"Build finished but expected output {output_file} does not exist"
            )

        bundle_path = self.build_root / target.name / f"{target.function_name}.zip"
        file_count = write_deterministic_zip(
            self.source_dir, self.config.include, bundle_path
        )
        size = bundle_path.stat().st_size
        digest = compute_code_sha256(bundle_path)
        logger.info(f"Packed {file_count} files into {bundle_path} ({size} bytes)")

        return Artifact(
            transport=TransportKind.BUNDLE,
            reference=str(bundle_path),
            digest=digest,
            size_bytes=size,
            log_lines=log_lines,
        )


class ContainerBuilder:
    """Builds container images for the image transport.

    Uses the Docker SDK. The Dockerfile is either the project's own
    (``image.dockerfile``) or a generated multi-stage one written into the
    target's build directory.
    """

    def __init__(
        self,
        config: ImageConfig,
        service: str,
        source_dir: Path,
        build_root: Path,
        docker_provider: DockerClientProvider | None = None,
    ) -> None:
        """Initialize the container builder.

        Args:
            config: Image transport settings
            service: Service name used for labels
            source_dir: Build context (NestJS project root)
            build_root: Directory receiving per-target build outputs
            docker_provider: Lazily connected Docker client
        """
        self.config = config
        self.service = service
        self.source_dir = source_dir
        self.build_root = build_root
        self.docker = docker_provider or DockerClientProvider()

    def prepare_dockerfile(self, target: DeploymentTarget) -> Path:
        """Return the Dockerfile to build, generating it when needed."""
        if self.config.dockerfile:
            dockerfile = self.source_dir / self.config.dockerfile
            if not dockerfile.is_file():
                raise BuildFailedError(f"Dockerfile not found: {dockerfile}")
            return dockerfile

        dockerfile = self.build_root / target.name / "Dockerfile"
        dockerfile.parent.mkdir(parents=True, exist_ok=True)
        content = generate_dockerfile(
            self.service,
            node_version=self.config.node_version,
            platform=self.config.platform,
            build_command=self.config.build_command,
            handler=self.config.handler,
        )
        tmp = dockerfile.with_suffix(".tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, dockerfile)
        return dockerfile

    def build(
        self,
        target: DeploymentTarget,
        tag: str | None = None,
        **build_kwargs: Any,
    ) -> Artifact:
        """Build the image for a target.

        Args:
            target: Deployment target
            tag: Image tag, defaults to the configured tag strategy
            **build_kwargs: Additional arguments passed to Docker build

        Returns:
            Artifact referencing the local image

        Raises:
            BuildFailedError: If the build fails or produces no image
            DockerNotAvailableError: If Docker is not reachable
            DeploymentTimeoutError: If the Docker API call times out
        """
        if not self.source_dir.is_dir():
            raise BuildFailedError(f"Build context not found: {self.source_dir}")

        image_tag = tag or generate_tag(
            self.config.tag_strategy, self.config.custom_tag, cwd=self.source_dir
        )
        full_tag = f"{self.config.repository}:{image_tag}"
        dockerfile = self.prepare_dockerfile(target)
        client = self.docker.get(operation="build")

        logger.info(f"Building image {full_tag} for {self.config.platform}")
        try:
            image, build_logs = client.images.build(
                path=str(self.source_dir),
                tag=full_tag,
                dockerfile=str(dockerfile),
                labels=get_oci_labels(self.service, image_tag, target.name),
                rm=True,
                platform=self.config.platform,
                pull=True,
                **build_kwargs,
            )
            log_lines = _collect_build_logs(build_logs)
            image = image or client.images.get(full_tag)
        except BuildError as e:
            raise BuildFailedError(f"Docker build failed: {e.msg}") from e
        except ImageNotFound as e:
            raise BuildFailedError(f"Docker build produced no image {full_tag}") from e
        except requests.exceptions.Timeout as e:
            raise DeploymentTimeoutError(
                operation="build", timeout=self.docker.timeout, detail=str(e)
            ) from e
        except DockerException as e:
            raise BuildFailedError(f"Docker error during build: {e}") from e

        return _artifact_from_image(image, full_tag, image_tag, log_lines)


def _collect_build_logs(build_logs: Any) -> list[str]:
    log_lines: list[str] = []
    for log_entry in build_logs:
        if isinstance(log_entry, dict):
            if "stream" in log_entry:
                stream_val = log_entry["stream"]
                if isinstance(stream_val, str):
                    log_lines.append(stream_val.rstrip("\n"))
            elif "error" in log_entry:
                log_lines.append(f"ERROR: {log_entry['error']}")
    return log_lines


def _artifact_from_image(
    image: Image | None, full_tag: str, tag: str, log_lines: list[str]
) -> Artifact:
    image_id = image.id if image is not None else None
    if not image_id:
        raise BuildFailedError(f"Docker build produced no image {full_tag}")
    return Artifact(
        transport=TransportKind.IMAGE,
        reference=full_tag,
        digest=image_id,
        tag=tag,
        log_lines=log_lines,
    )


def create_builder(
    project: ProjectConfig,
    source_dir: Path,
    build_root: Path,
    docker_provider: DockerClientProvider | None = None,
) -> BundleBuilder | ContainerBuilder:
    """Create the builder for the project's transport."""
    if project.transport == TransportKind.IMAGE:
        assert project.image is not None  # set by ProjectConfig validation
        return ContainerBuilder(
            project.image,
            project.service,
            source_dir,
            build_root,
            docker_provider=docker_provider
            or DockerClientProvider(timeout=project.timeouts.command),
        )
    assert project.bundle is not None  # set by ProjectConfig validation
    return BundleBuilder(
        project.bundle, source_dir, build_root, timeout=project.timeouts.command
    )
