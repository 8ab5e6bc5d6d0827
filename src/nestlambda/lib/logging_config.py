"""Logging configuration for nestlambda.

Centralizes logger setup so CLI commands can switch between quiet, default
and verbose output with a single call.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
VERBOSE_LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
)

# Third-party loggers that flood the console at INFO/DEBUG
NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "docker", "s3transfer")


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logging for a CLI invocation.

    Args:
        verbose: Enable DEBUG level and detailed format
        quiet: Only show errors
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.WARNING

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(VERBOSE_LOG_FORMAT if verbose else LOG_FORMAT)
    )
    root.addHandler(handler)
    root.setLevel(level)

    package_logger = logging.getLogger("nestlambda")
    package_logger.setLevel(logging.DEBUG if verbose else level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger.

    Args:
        name: Logger name, normally ``__name__``

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
