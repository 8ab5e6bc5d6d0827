"""Configuration loading and validation for nestlambda projects.

Main components:
- ConfigLoader: Load and validate nestlambda.yaml files
- resolve_target: Resolve a named target into a DeploymentTarget
- load_env_file: Parse a target's KEY=VALUE environment file
"""

from nestlambda.config.env_loader import DeploymentConfig, load_env_file
from nestlambda.config.loader import ConfigLoader, resolve_target

__all__ = [
    "ConfigLoader",
    "DeploymentConfig",
    "load_env_file",
    "resolve_target",
]
