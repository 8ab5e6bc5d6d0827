"""nestlambda - Deploy NestJS applications to AWS Lambda.

nestlambda replaces hand-run deployment scripts with one pipeline that
checks prerequisites, loads the target's environment file, builds an
artifact, publishes it and reports the live function's health.

Main features:
- One YAML project file for both transports (zip bundle or container image)
- Per-target environment files (dev, staging, prod, ...)
- Idempotent publishes with bounded retries
- Health probe of the deployed function URL
"""

from nestlambda.config.loader import ConfigLoader
from nestlambda.lib.errors import ConfigError, DeploymentError, NestLambdaError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ConfigLoader",
    "ConfigError",
    "DeploymentError",
    "NestLambdaError",
]
