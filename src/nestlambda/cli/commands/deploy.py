"""CLI commands for deploying NestJS applications to AWS Lambda.

Implements ``check``, ``build``, ``publish``, ``deploy``, ``status`` and
``remove``. Every command works on one target (``--target``, default
``dev``) of the project file (``--config``, default ``nestlambda.yaml``).
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Generator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

import click

from nestlambda.config.loader import (
    DEFAULT_PROJECT_FILE,
    ConfigLoader,
    resolve_source_dir,
    resolve_target,
)
from nestlambda.deploy.builder import BundleBuilder, ContainerBuilder, create_builder
from nestlambda.deploy.clients import AWSClients
from nestlambda.deploy.pipeline import (
    BUILD_STAGES,
    CHECK_STAGES,
    DEPLOY_STAGES,
    EXIT_CANCELLED,
    PUBLISH_STAGES,
    DeploymentPipeline,
    PipelineOutcome,
    exit_code_for,
)
from nestlambda.deploy.publishers import create_publisher
from nestlambda.deploy.reporter import Reporter
from nestlambda.deploy.state import (
    STATE_DIR,
    get_deployment_record,
    get_state_path,
    patch_deployment_record,
)
from nestlambda.lib.errors import NestLambdaError, PartialPublishError, PublishFailedError
from nestlambda.lib.logging_config import get_logger, setup_logging
from nestlambda.models.deployment import (
    DeploymentResult,
    DeploymentTarget,
    HealthStatus,
    PipelineStage,
    ProjectConfig,
    TransportKind,
)

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

HEALTH_COLORS = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.UNHEALTHY: "red",
    HealthStatus.UNKNOWN: "yellow",
}


@contextmanager
def handle_deployment_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in deployment commands.

    Catches errors raised outside a pipeline run (loading the project file,
    status, remove) and exits with the code of their kind.

    Exit codes:
        1: Prerequisite missing
        2: Build failure
        3: Publish or remote failure
        4: Configuration error
        5: Partial publish
        130: Interrupted
    """
    try:
        yield
    except NestLambdaError as e:
        logger.error(f"{e.kind}: {e}")
        _echo_error(None, e)
        sys.exit(exit_code_for(e))
    except KeyboardInterrupt:
        click.secho("Interrupted", fg="yellow", err=True)
        sys.exit(EXIT_CANCELLED)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)


def common_options(func: F) -> F:
    """Add the options every command accepts."""
    options = [
        click.option(
            "--target",
            "-t",
            default="dev",
            show_default=True,
            help="Deployment target (e.g. dev, prod)",
        ),
        click.option(
            "--config",
            "-c",
            "config_path",
            type=click.Path(dir_okay=False),
            default=DEFAULT_PROJECT_FILE,
            show_default=True,
            help="Project configuration file",
        ),
        click.option(
            "--verbose", "-v", is_flag=True, help="Enable verbose debug logging"
        ),
        click.option("--quiet", "-q", is_flag=True, help="Suppress progress output"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def create_clients(project: ProjectConfig) -> AWSClients:
    """Create the AWS client provider for a project."""
    return AWSClients(project.region, timeout=project.timeouts.network)


def _load_project(
    config_path: str, target_name: str
) -> tuple[ProjectConfig, Path, DeploymentTarget]:
    """Load the project file and resolve the target.

    Returns:
        Tuple of (project, project file path, target)
    """
    project_path = Path(config_path).resolve()
    project = ConfigLoader().load_project_yaml(str(project_path))
    target = resolve_target(project, target_name, project_path)
    return project, project_path, target


def _create_pipeline(
    project: ProjectConfig,
    project_path: Path,
    target: DeploymentTarget,
    **kwargs: Any,
) -> DeploymentPipeline:
    return DeploymentPipeline(
        project,
        project_path,
        target,
        create_clients(project),
        **kwargs,
    )


def _run(
    pipeline: DeploymentPipeline, stages: Sequence[PipelineStage], quiet: bool
) -> PipelineOutcome:
    if not quiet:
        click.echo(
            f"Target '{pipeline.target.name}' -> {pipeline.target.function_name} "
            f"({pipeline.target.region}, {pipeline.project.transport.value})"
        )
    with pipeline.cancel_on_interrupt():
        try:
            outcome = pipeline.run(stages)
        except KeyboardInterrupt:
            click.secho("Interrupted", fg="yellow", err=True)
            sys.exit(EXIT_CANCELLED)

    if not outcome.success:
        _echo_failure(outcome)
        sys.exit(outcome.exit_code)
    return outcome


def _echo_error(stage: str | None, error: NestLambdaError) -> None:
    prefix = f"Error: {stage} failed" if stage else "Error"
    click.secho(f"{prefix} [{error.kind}]", fg="red", err=True)
    message = getattr(error, "message", None) or str(error)
    for line in message.splitlines():
        click.echo(f"  {line}", err=True)


def _echo_failure(outcome: PipelineOutcome) -> None:
    error = outcome.error
    if error is None:
        return
    if outcome.cancelled:
        click.secho(f"Cancelled: {error}", fg="yellow", err=True)
        return

    stage = outcome.failed_stage.value if outcome.failed_stage else None
    _echo_error(stage, error)

    if len(outcome.missing) > 1:
        click.echo("  Also missing:", err=True)
        for problem in outcome.missing[1:]:
            click.echo(f"    - {problem.name}: {problem.reason}", err=True)

    if isinstance(error, PartialPublishError):
        click.echo(
            "  The image was pushed and left in the registry. Retry activation "
            "with:",
            err=True,
        )
        click.echo(
            f"    nestlambda publish --target {outcome.target.name} --activate-only",
            err=True,
        )


def _echo_result(result: DeploymentResult, title: str) -> None:
    click.echo()
    click.secho(title, fg="green" if result.success else "red", bold=True)
    click.echo(f"  Function:  {result.function_name}")
    click.echo(f"  State:     {result.state or 'unknown'}")
    if result.last_update_status:
        click.echo(f"  Update:    {result.last_update_status}")
    click.echo(f"  URL:       {result.url or '(none)'}")
    click.secho(
        f"  Health:    {result.health.value}", fg=HEALTH_COLORS[result.health]
    )
    for diagnostic in result.diagnostics:
        click.secho(f"  ! {diagnostic}", fg="yellow")
    click.echo()


def _echo_build_plan(
    project: ProjectConfig,
    builder: BundleBuilder | ContainerBuilder,
    target: DeploymentTarget,
) -> None:
    click.secho("[DRY RUN] Would build:", fg="yellow")
    if isinstance(builder, ContainerBuilder):
        image = builder.config
        click.echo(f"  Image:      {image.repository} ({image.tag_strategy.value})")
        click.echo(f"  Platform:   {image.platform}")
        click.echo(f"  Context:    {builder.source_dir}")
        if image.dockerfile:
            click.echo(f"  Dockerfile: {builder.source_dir / image.dockerfile}")
        else:
            from nestlambda.deploy.dockerfile import generate_dockerfile

            content = generate_dockerfile(
                project.service,
                node_version=image.node_version,
                platform=image.platform,
                build_command=image.build_command,
                handler=image.handler,
            )
            click.echo()
            click.secho("Generated Dockerfile:", bold=True)
            for line in content.split("\n"):
                click.echo(f"  {line}")
    else:
        bundle = builder.config
        click.echo(f"  Command:    {bundle.build_command}")
        click.echo(f"  Source:     {builder.source_dir}")
        click.echo(f"  Output:     {bundle.output_file}")
        click.echo(f"  Include:    {', '.join(bundle.include)}")
        click.echo(
            f"  Bundle:     {builder.build_root / target.name}/"
            f"{target.function_name}.zip"
        )
    click.echo()
    click.secho("[DRY RUN] Nothing was built", fg="yellow")


@click.command()
@common_options
def check(target: str, config_path: str, verbose: bool, quiet: bool) -> None:
    """Check tools, credentials and the target's environment file.

    Example:

        nestlambda check --target dev
    """
    setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        project, project_path, deployment_target = _load_project(config_path, target)
        pipeline = _create_pipeline(project, project_path, deployment_target)

    outcome = _run(pipeline, CHECK_STAGES, quiet)
    if not quiet:
        keys = len(pipeline.config) if pipeline.config is not None else 0
        click.secho("Ready to deploy", fg="green", bold=True)
        click.echo(f"  Tools:     {', '.join(project.required_tools) or '(none)'}")
        click.echo(f"  Env file:  {deployment_target.env_file} ({keys} keys)")
    logger.debug(f"Completed stages: {[s.value for s in outcome.completed]}")


@click.command()
@common_options
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be built without building",
)
def build(
    target: str, config_path: str, verbose: bool, quiet: bool, dry_run: bool
) -> None:
    """Build the deployment artifact for a target.

    Bundle projects are compiled and zipped; image projects are built into a
    local container image.

    Example:

        nestlambda build --target dev

        nestlambda build --dry-run
    """
    setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        project, project_path, deployment_target = _load_project(config_path, target)
        if dry_run:
            builder = create_builder(
                project,
                resolve_source_dir(project, project_path),
                project_path.parent / STATE_DIR / "build",
            )
            _echo_build_plan(project, builder, deployment_target)
            return
        pipeline = _create_pipeline(project, project_path, deployment_target)

    outcome = _run(pipeline, BUILD_STAGES, quiet)
    artifact = outcome.artifact
    if artifact is None:
        return

    if verbose and artifact.log_lines:
        click.secho("Build Output:", bold=True)
        for line in artifact.log_lines:
            if line.strip():
                click.echo(f"  {line}")
        click.echo()

    if quiet:
        click.echo(artifact.reference)
        return

    click.secho("Build Successful!", fg="green", bold=True)
    click.echo(f"  Artifact:  {artifact.reference}")
    click.echo(f"  Digest:    {artifact.digest}")
    if artifact.size_bytes is not None:
        click.echo(f"  Size:      {artifact.size_bytes} bytes")


@click.command()
@common_options
@click.option(
    "--activate-only",
    is_flag=True,
    help="Point the function at the image pushed by the last partial publish",
)
def publish(
    target: str, config_path: str, verbose: bool, quiet: bool, activate_only: bool
) -> None:
    """Publish the most recent build of a target.

    Example:

        nestlambda publish --target prod

        nestlambda publish --target prod --activate-only
    """
    setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        project, project_path, deployment_target = _load_project(config_path, target)
        image_uri = None
        if activate_only:
            if project.transport != TransportKind.IMAGE:
                raise PublishFailedError(
                    operation="activate",
                    message="--activate-only applies to the image transport only",
                )
            record = get_deployment_record(
                get_state_path(project_path), deployment_target.name
            )
            if record is None or not record.image_uri:
                raise PublishFailedError(
                    operation="activate",
                    message=f"No pushed image recorded for target '{target}'",
                )
            image_uri = record.image_uri
        pipeline = _create_pipeline(
            project, project_path, deployment_target, activate_image=image_uri
        )

    outcome = _run(pipeline, PUBLISH_STAGES, quiet)
    if outcome.result is None:
        return
    if quiet:
        click.echo(outcome.result.url or "")
        return
    _echo_result(outcome.result, "Publish Successful!")


@click.command()
@common_options
def deploy(target: str, config_path: str, verbose: bool, quiet: bool) -> None:
    """Build and publish a target, then report its status.

    Example:

        nestlambda deploy --target dev
    """
    setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        project, project_path, deployment_target = _load_project(config_path, target)
        pipeline = _create_pipeline(project, project_path, deployment_target)

    outcome = _run(pipeline, DEPLOY_STAGES, quiet)
    if outcome.result is None:
        return
    if quiet:
        click.echo(outcome.result.url or "")
        return
    _echo_result(outcome.result, "Deployment Successful!")


@click.command()
@common_options
def status(target: str, config_path: str, verbose: bool, quiet: bool) -> None:
    """Show the live state and health of a target's function.

    Never changes anything remotely. When AWS cannot be queried the status
    is reported as unknown and the command still succeeds.
    """
    setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        project, project_path, deployment_target = _load_project(config_path, target)
        reporter = Reporter(
            create_clients(project),
            project.function,
            probe_timeout=project.timeouts.probe,
        )
        result = reporter.report(deployment_target)

        state_path = get_state_path(project_path)
        record = get_deployment_record(state_path, deployment_target.name)
        if record is not None and not result.status_unknown:
            patch_deployment_record(
                state_path,
                deployment_target.name,
                health=result.health,
                url=result.url or record.url,
            )

    if quiet:
        click.echo(result.health.value)
        return
    _echo_result(result, "Deployment Status")
    if record is not None and record.updated_at:
        click.echo(f"  Last deploy: {record.updated_at.isoformat()}")


@click.command()
@common_options
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
def remove(
    target: str, config_path: str, verbose: bool, quiet: bool, force: bool
) -> None:
    """Delete a target's function and its function URL.

    Images pushed to ECR are kept.
    """
    setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        project, project_path, deployment_target = _load_project(config_path, target)
        name = deployment_target.function_name

        if not force:
            confirm = click.confirm(f"Remove function '{name}'?", default=False)
            if not confirm:
                click.secho("Remove aborted.", fg="yellow")
                sys.exit(0)

        publisher = create_publisher(project, create_clients(project))
        deleted = publisher.remove(deployment_target)

        patch_deployment_record(
            get_state_path(project_path),
            deployment_target.name,
            status="removed",
            url=None,
            artifact=None,
        )

    if quiet:
        click.echo("removed" if deleted else "absent")
        return
    if deleted:
        click.secho("Function Removed", fg="green", bold=True)
    else:
        click.secho("Nothing to remove", fg="yellow", bold=True)
    click.echo(f"  Function:  {name}")
