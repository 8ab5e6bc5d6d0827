"""Deployment pipeline state machine.

A run moves through ``checking -> loading -> building -> publishing ->
reporting`` and ends in ``success`` or ``failed``. Stages run one after the
other; the first failing stage ends the run, and no stage is retried. A
cancel flag is checked before every stage, so an interrupt stops the run
before the next stage starts.
"""

from __future__ import annotations

import contextlib
import os
import signal
import threading
from collections.abc import Callable, Iterator, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType
from typing import Any

from nestlambda.config.env_loader import (
    DeploymentConfig,
    load_env_file,
    locate_env_file,
)
from nestlambda.config.loader import resolve_source_dir
from nestlambda.deploy.builder import BundleBuilder, ContainerBuilder, create_builder
from nestlambda.deploy.clients import AWSClients, DockerClientProvider
from nestlambda.deploy.prerequisites import (
    MissingPrerequisite,
    PrerequisiteChecker,
    sts_credential_probe,
)
from nestlambda.deploy.publishers import BasePublisher, create_publisher
from nestlambda.deploy.publishers.image import ImagePublisher
from nestlambda.deploy.reporter import Reporter
from nestlambda.deploy.state import (
    STATE_DIR,
    get_deployment_record,
    get_state_path,
    record_target_status,
)
from nestlambda.lib.errors import (
    BuildFailedError,
    ConfigError,
    DeploymentError,
    NestLambdaError,
    PartialPublishError,
    PipelineCancelledError,
    PrerequisiteMissingError,
    PublishFailedError,
)
from nestlambda.lib.logging_config import get_logger
from nestlambda.models.deployment import (
    Artifact,
    DeploymentResult,
    DeploymentTarget,
    PipelineStage,
    ProjectConfig,
    PublishResult,
)
from nestlambda.models.deployment_state import DeploymentRecord

logger = get_logger(__name__)

CHECK_STAGES = (PipelineStage.CHECKING, PipelineStage.LOADING)
BUILD_STAGES = (*CHECK_STAGES, PipelineStage.BUILDING)
PUBLISH_STAGES = (*CHECK_STAGES, PipelineStage.PUBLISHING, PipelineStage.REPORTING)
DEPLOY_STAGES = (
    *BUILD_STAGES,
    PipelineStage.PUBLISHING,
    PipelineStage.REPORTING,
)

# Exit codes per failing stage
STAGE_EXIT_CODES = {
    PipelineStage.START: 4,
    PipelineStage.CHECKING: 1,
    PipelineStage.LOADING: 4,
    PipelineStage.BUILDING: 2,
    PipelineStage.PUBLISHING: 3,
    PipelineStage.REPORTING: 3,
}
EXIT_SUCCESS = 0
EXIT_CONFIG = 4
EXIT_PARTIAL_PUBLISH = 5
EXIT_CANCELLED = 130


@dataclass
class PipelineOutcome:
    """Result of a pipeline run.

    Attributes:
        target: Target the run was for
        stage: Final state, ``success`` or ``failed``
        failed_stage: Stage that raised, when the run failed
        error: Error that ended the run
        completed: Stages that finished successfully, in order
        artifact: Artifact built or loaded for publishing
        publish: Result of the publishing stage
        result: Report produced by the reporting stage
        missing: Unmet prerequisites found by the checking stage
    """

    target: DeploymentTarget
    stage: PipelineStage = PipelineStage.START
    failed_stage: PipelineStage | None = None
    error: NestLambdaError | None = None
    completed: list[PipelineStage] = field(default_factory=list)
    artifact: Artifact | None = None
    publish: PublishResult | None = None
    result: DeploymentResult | None = None
    missing: list[MissingPrerequisite] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether the run reached the success state."""
        return self.stage == PipelineStage.SUCCESS

    @property
    def cancelled(self) -> bool:
        """Whether the run was stopped by a cancel request."""
        return isinstance(self.error, PipelineCancelledError)

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        return exit_code_for(self.error, self.failed_stage)


def exit_code_for(
    error: BaseException | None, stage: PipelineStage | None = None
) -> int:
    """Map an error, and the stage it came from, to a process exit code.

    Configuration errors map to 4 and partial publishes to 5 whatever the
    stage. Other errors map to the stage: 1 checking, 2 building, 3
    publishing. Without a stage the error type decides.
    """
    if error is None:
        return EXIT_SUCCESS
    if isinstance(error, PipelineCancelledError):
        return EXIT_CANCELLED
    if isinstance(error, ConfigError):
        return EXIT_CONFIG
    if isinstance(error, PartialPublishError):
        return EXIT_PARTIAL_PUBLISH
    if stage is not None:
        return STAGE_EXIT_CODES.get(stage, 1)
    if isinstance(error, BuildFailedError):
        return STAGE_EXIT_CODES[PipelineStage.BUILDING]
    if isinstance(error, DeploymentError):
        return STAGE_EXIT_CODES[PipelineStage.PUBLISHING]
    return STAGE_EXIT_CODES[PipelineStage.CHECKING]


class DeploymentPipeline:
    """Runs the deployment stages for one target.

    Collaborators (checker, builder, publisher, reporter) are created from
    the project configuration unless passed in.

    Example:
        >>> pipeline = DeploymentPipeline(project, project_path, target, clients)
        >>> outcome = pipeline.run(DEPLOY_STAGES)  # doctest: +SKIP
        >>> outcome.result.url  # doctest: +SKIP
        'https://abc.lambda-url.us-east-1.on.aws/'
    """

    def __init__(
        self,
        project: ProjectConfig,
        project_path: Path,
        target: DeploymentTarget,
        clients: AWSClients,
        docker_provider: DockerClientProvider | None = None,
        checker: PrerequisiteChecker | None = None,
        builder: BundleBuilder | ContainerBuilder | None = None,
        publisher: BasePublisher | None = None,
        reporter: Reporter | None = None,
        activate_image: str | None = None,
        environ: MutableMapping[str, str] | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            project: Validated project configuration
            project_path: Path of the project file
            target: Resolved deployment target
            clients: Provider of boto3 clients
            docker_provider: Lazily connected Docker client
            checker: Prerequisite checker override
            builder: Builder override
            publisher: Publisher override
            reporter: Reporter override
            activate_image: Already pushed image to activate instead of
                pushing a build (image transport only)
            environ: Mapping the loaded configuration is exported into,
                defaults to ``os.environ``
        """
        self.project = project
        self.project_path = project_path
        self.target = target
        self.clients = clients
        self.docker_provider = docker_provider or DockerClientProvider(
            timeout=project.timeouts.command
        )
        self.activate_image = activate_image
        self.environ = os.environ if environ is None else environ
        self.state_path = get_state_path(project_path)
        self.build_root = project_path.parent / STATE_DIR / "build"

        self._checker = checker
        self._builder = builder
        self._publisher = publisher
        self._reporter = reporter
        self._cancel = threading.Event()

        self.stage = PipelineStage.START
        self.config: DeploymentConfig | None = None

    # Collaborators are created on first use

    @property
    def checker(self) -> PrerequisiteChecker:
        """Prerequisite checker for the project's transport."""
        if self._checker is None:
            self._checker = PrerequisiteChecker(
                self.project.required_tools,
                credential_probe=sts_credential_probe(self.clients),
                timeout=self.project.timeouts.network,
            )
        return self._checker

    @property
    def builder(self) -> BundleBuilder | ContainerBuilder:
        """Builder for the project's transport."""
        if self._builder is None:
            self._builder = create_builder(
                self.project,
                resolve_source_dir(self.project, self.project_path),
                self.build_root,
                docker_provider=self.docker_provider,
            )
        return self._builder

    @property
    def publisher(self) -> BasePublisher:
        """Publisher for the project's transport."""
        if self._publisher is None:
            self._publisher = create_publisher(
                self.project, self.clients, docker_provider=self.docker_provider
            )
        return self._publisher

    @property
    def reporter(self) -> Reporter:
        """Status reporter."""
        if self._reporter is None:
            self._reporter = Reporter(
                self.clients,
                self.project.function,
                probe_timeout=self.project.timeouts.probe,
            )
        return self._reporter

    def cancel(self) -> None:
        """Request the run to stop before its next stage."""
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        """Whether a cancel request is pending."""
        return self._cancel.is_set()

    @contextlib.contextmanager
    def cancel_on_interrupt(self) -> Iterator[None]:
        """Turn the first Ctrl-C into a cancel request.

        The running stage is allowed to finish. A second Ctrl-C interrupts
        it. Outside the main thread this is a no-op.
        """
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        previous = signal.getsignal(signal.SIGINT)

        def handle(signum: int, frame: FrameType | None) -> None:
            if self._cancel.is_set():
                raise KeyboardInterrupt
            logger.warning("Interrupt received; stopping after the current stage")
            self.cancel()

        signal.signal(signal.SIGINT, handle)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)

    def _transition(self, stage: PipelineStage) -> None:
        logger.debug(f"{self.stage.value} -> {stage.value}")
        self.stage = stage

    def run(self, stages: Sequence[PipelineStage] = DEPLOY_STAGES) -> PipelineOutcome:
        """Run ``stages`` in order.

        Errors never escape: the returned outcome carries the failing stage
        and the error. Exceptions outside the nestlambda hierarchy are wrapped
        in a DeploymentError for that stage.

        Args:
            stages: Stages to run, in pipeline order

        Returns:
            PipelineOutcome describing the run
        """
        outcome = PipelineOutcome(target=self.target)
        self._transition(PipelineStage.START)
        handlers: dict[PipelineStage, Callable[[PipelineOutcome], None]] = {
            PipelineStage.CHECKING: self._check,
            PipelineStage.LOADING: self._load,
            PipelineStage.BUILDING: self._build,
            PipelineStage.PUBLISHING: self._publish,
            PipelineStage.REPORTING: self._report,
        }

        try:
            # The environment file must exist before any network call
            locate_env_file(self.target.env_file)
        except ConfigError as e:
            return self._fail(outcome, PipelineStage.START, e)

        for stage in stages:
            if self._cancel.is_set():
                return self._fail(outcome, stage, PipelineCancelledError(stage.value))

            self._transition(stage)
            logger.info(f"[{self.target.name}] {stage.value}")
            try:
                handlers[stage](outcome)
            except NestLambdaError as e:
                return self._fail(outcome, stage, e)
            except Exception as e:
                logger.debug(f"Unexpected error in {stage.value}", exc_info=True)
                error = DeploymentError(
                    operation=stage.value, message=f"{type(e).__name__}: {e}"
                )
                error.__cause__ = e
                return self._fail(outcome, stage, error)
            outcome.completed.append(stage)

        self._transition(PipelineStage.SUCCESS)
        outcome.stage = PipelineStage.SUCCESS
        logger.info(f"[{self.target.name}] success")
        return outcome

    def _fail(
        self, outcome: PipelineOutcome, stage: PipelineStage, error: NestLambdaError
    ) -> PipelineOutcome:
        self._transition(PipelineStage.FAILED)
        outcome.stage = PipelineStage.FAILED
        outcome.failed_stage = stage
        outcome.error = error
        if not isinstance(error, PipelineCancelledError):
            logger.error(f"[{self.target.name}] {stage.value} failed: {error}")
        return outcome

    def _check(self, outcome: PipelineOutcome) -> None:
        outcome.missing = self.checker.check()
        if outcome.missing:
            first = outcome.missing[0]
            raise PrerequisiteMissingError(first.name, first.reason)

    def _load(self, outcome: PipelineOutcome) -> None:
        self.config = load_env_file(
            self.target.env_file, required=self.project.required_env
        )
        self.config.export(self.environ)

    def _build(self, outcome: PipelineOutcome) -> None:
        artifact = self.builder.build(self.target)
        for line in artifact.log_lines:
            logger.debug(f"build: {line}")
        outcome.artifact = artifact
        self._save_record(status="built", artifact=artifact)

    def _publish(self, outcome: PipelineOutcome) -> None:
        environment = self.config.as_dict() if self.config is not None else {}

        try:
            publisher = self.publisher
            if self.activate_image:
                if not isinstance(publisher, ImagePublisher):
                    raise PublishFailedError(
                        operation="activate",
                        message="Activation only applies to the image transport",
                    )
                result = publisher.activate(
                    self.activate_image, self.target, environment
                )
            else:
                artifact = outcome.artifact or self._recorded_artifact()
                outcome.artifact = artifact
                result = publisher.publish(artifact, self.target, environment)
        except PartialPublishError as e:
            self._save_record(status="partial", image_uri=e.image_uri)
            raise

        outcome.publish = result
        self._save_record(
            status="published",
            function_arn=result.function_arn,
            url=result.url,
            image_uri=result.image_uri,
            code_sha256=result.code_sha256,
        )

    def _report(self, outcome: PipelineOutcome) -> None:
        result = self.reporter.report(self.target, success=True)
        if result.url is None and outcome.publish is not None:
            result.url = outcome.publish.url
        outcome.result = result
        self._save_record(status="deployed", url=result.url, health=result.health)

    def _recorded_artifact(self) -> Artifact:
        record = get_deployment_record(self.state_path, self.target.name)
        if record is None or record.artifact is None:
            raise PublishFailedError(
                operation="publish",
                message=(
                    f"No build recorded for target '{self.target.name}'. "
                    f"Run 'nestlambda build --target {self.target.name}' first."
                ),
            )
        if record.artifact.transport != self.project.transport:
            raise PublishFailedError(
                operation="publish",
                message=(
                    f"Recorded build is a {record.artifact.transport.value} "
                    f"artifact but the project transport is "
                    f"{self.project.transport.value}. Rebuild first."
                ),
            )
        return record.artifact

    def _save_record(self, status: str, **updates: Any) -> DeploymentRecord:
        return record_target_status(
            self.state_path, self.project, self.target, status, **updates
        )
