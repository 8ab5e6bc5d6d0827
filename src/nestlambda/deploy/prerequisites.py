"""Local prerequisite checks run before any deployment work.

Verifies that external tools (node, npm, docker, ...) can be invoked and
that AWS credentials are valid.
"""

from __future__ import annotations

import shutil
import subprocess  # nosec B404
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from nestlambda.deploy.clients import AWSClients, aws_error_message
from nestlambda.lib.errors import PrerequisiteMissingError
from nestlambda.lib.logging_config import get_logger

logger = get_logger(__name__)

CREDENTIALS_REQUIREMENT = "aws-credentials"


@dataclass(frozen=True)
class MissingPrerequisite:
    """A tool or credential that is not usable.

    Attributes:
        name: Tool name, or ``aws-credentials`` for the credential probe
        reason: Why the prerequisite is considered missing
    """

    name: str
    reason: str


def sts_credential_probe(clients: AWSClients) -> Callable[[], str]:
    """Return a probe that validates credentials with STS GetCallerIdentity.

    The probe returns the caller ARN and raises on any failure.
    """

    def probe() -> str:
        identity = clients.sts.get_caller_identity()
        return str(identity.get("Arn", identity.get("Account", "")))

    return probe


class PrerequisiteChecker:
    """Checks required tools and credentials.

    Example:
        >>> checker = PrerequisiteChecker(tools=["node", "npm"])
        >>> missing = checker.check()  # doctest: +SKIP
        >>> [m.name for m in missing]  # doctest: +SKIP
        []
    """

    def __init__(
        self,
        tools: list[str],
        credential_probe: Callable[[], str] | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the checker.

        Args:
            tools: External tools that must be invocable
            credential_probe: Callable raising if credentials are invalid
            timeout: Timeout in seconds for each tool invocation
        """
        self.tools = list(tools)
        self.credential_probe = credential_probe
        self.timeout = timeout

    def check_tool(self, name: str) -> MissingPrerequisite | None:
        """Check that ``name --version`` runs successfully."""
        path = shutil.which(name)
        if path is None:
            return MissingPrerequisite(name, "not found on PATH")

        try:
            result = subprocess.run(  # noqa: S603  # nosec B603
                [path, "--version"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return MissingPrerequisite(
                name, f"'{name} --version' timed out after {self.timeout:g}s"
            )
        except OSError as e:
            return MissingPrerequisite(name, f"could not be executed: {e}")

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            return MissingPrerequisite(
                name, f"exited with code {result.returncode}: {detail}"
            )

        version = (result.stdout or "").strip().splitlines()
        logger.debug(f"Found {name} at {path} ({version[0] if version else '?'})")
        return None

    def check_credentials(self) -> MissingPrerequisite | None:
        """Run the credential probe, if one is configured."""
        if self.credential_probe is None:
            return None
        try:
            identity = self.credential_probe()
        except Exception as e:
            # Any probe failure means the credentials cannot be used
            return MissingPrerequisite(CREDENTIALS_REQUIREMENT, aws_error_message(e))
        logger.debug(f"AWS credentials valid for {identity}")
        return None

    def _problems(self) -> Iterator[MissingPrerequisite]:
        for tool in self.tools:
            problem = self.check_tool(tool)
            if problem is not None:
                yield problem
        problem = self.check_credentials()
        if problem is not None:
            yield problem

    def check(self) -> list[MissingPrerequisite]:
        """Return every missing or invalid prerequisite; empty means ready."""
        return list(self._problems())

    def ensure(self) -> None:
        """Stop at the first unmet prerequisite.

        Raises:
            PrerequisiteMissingError: Naming the first unmet requirement
        """
        problem = next(self._problems(), None)
        if problem is not None:
            raise PrerequisiteMissingError(problem.name, problem.reason)
