"""Project file loading for nestlambda.

Loads ``nestlambda.yaml``, substitutes ``${VAR}`` references from the process
environment, validates the result against :class:`ProjectConfig` and resolves
named deployment targets.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from nestlambda.config.validator import flatten_pydantic_errors
from nestlambda.lib.errors import ConfigError, ConfigNotFoundError
from nestlambda.lib.logging_config import get_logger
from nestlambda.models.deployment import (
    TARGET_NAME_PATTERN,
    DeploymentTarget,
    ProjectConfig,
    TargetConfig,
)

logger = get_logger(__name__)

DEFAULT_PROJECT_FILE = "nestlambda.yaml"

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute_env_vars(text: str, environ: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` references with environment values.

    Args:
        text: Raw file content
        environ: Variables to substitute from, defaults to ``os.environ``

    Returns:
        Text with every reference replaced

    Raises:
        ConfigError: If a referenced variable is not set
    """
    env = os.environ if environ is None else environ

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in env:
            raise ConfigError(
                name,
                f"Environment variable '{name}' is referenced but not set",
            )
        return env[name]

    return ENV_VAR_PATTERN.sub(replace, text)


class ConfigLoader:
    """Loads and validates project configuration from YAML files."""

    def parse_yaml(self, file_path: str) -> dict[str, Any]:
        """Parse a YAML file with environment substitution.

        Args:
            file_path: Path to the YAML file to parse

        Returns:
            Dictionary containing parsed YAML content, empty if the file is empty

        Raises:
            ConfigNotFoundError: If the file does not exist
            ConfigError: If YAML parsing fails
        """
        path = Path(file_path)
        try:
            raw = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ConfigError(
                "yaml_parse", f"Project file {file_path} is not valid UTF-8: {e}"
            ) from e
        except OSError as e:
            raise ConfigNotFoundError(
                file_path,
                f"Project file not found at {file_path}. "
                f"Create a {DEFAULT_PROJECT_FILE} or pass --config.",
            ) from e

        try:
            content = yaml.safe_load(substitute_env_vars(raw))
        except yaml.YAMLError as e:
            raise ConfigError(
                "yaml_parse",
                f"Failed to parse YAML file {file_path}: {str(e)}",
            ) from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigError(
                "yaml_parse",
                f"Expected a mapping at the top of {file_path}",
            )
        return content

    def load_project_yaml(self, file_path: str) -> ProjectConfig:
        """Load and validate a project configuration.

        Args:
            file_path: Path to nestlambda.yaml

        Returns:
            Validated ProjectConfig instance

        Raises:
            ConfigNotFoundError: If the file doesn't exist
            ConfigError: If parsing or validation fails
        """
        data = self.parse_yaml(file_path)
        try:
            project = ProjectConfig(**data)
        except PydanticValidationError as e:
            error_text = "\n".join(flatten_pydantic_errors(e))
            raise ConfigError(
                "project_validation",
                f"Invalid project configuration in {file_path}:\n{error_text}",
            ) from e
        logger.debug(
            f"Loaded project '{project.service}' "
            f"(transport={project.transport.value}) from {file_path}"
        )
        return project


def resolve_source_dir(project: ProjectConfig, project_path: Path) -> Path:
    """Return the absolute NestJS project root."""
    return (project_path.parent / project.source_dir).resolve()


def resolve_target(
    project: ProjectConfig, name: str, project_path: Path
) -> DeploymentTarget:
    """Resolve a named target into an immutable DeploymentTarget.

    Targets missing from the project file use ``.env`` and the function name
    ``<service>-<target>``.

    Raises:
        ConfigError: If the target name is invalid
    """
    if not TARGET_NAME_PATTERN.match(name):
        raise ConfigError(
            "target",
            f"Invalid target name: {name}. Use lowercase letters, numbers and hyphens.",
        )

    overrides = project.targets.get(name, TargetConfig())
    env_file = Path(overrides.env_file)
    if not env_file.is_absolute():
        env_file = project_path.parent / env_file

    return DeploymentTarget(
        name=name,
        function_name=overrides.function_name or f"{project.service}-{name}",
        region=project.region,
        env_file=str(env_file),
    )
