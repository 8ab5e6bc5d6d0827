"""Bounded retry with exponential backoff for remote calls."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

import requests
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
)
from docker.errors import APIError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from nestlambda.lib.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# AWS error codes worth another attempt
TRANSIENT_AWS_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServiceException",
        "ServiceUnavailable",
        "InternalFailure",
        "ResourceConflictException",
    }
)

MAX_BACKOFF_SECONDS = 30


def is_transient(exc: BaseException) -> bool:
    """Return True if ``exc`` is a transient failure worth retrying.

    Throttling, AWS server errors, update conflicts while a function is still
    updating, registry 5xx responses and dropped connections qualify.
    Credential rejections, validation errors and timeouts do not.
    """
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return error.get("Code") in TRANSIENT_AWS_CODES or status >= 500
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError)):
        return True
    if isinstance(exc, APIError):
        return exc.is_server_error()
    if isinstance(exc, requests.exceptions.Timeout):
        return False
    return isinstance(exc, requests.exceptions.ConnectionError)


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    attempts: int = 3,
    backoff: float = 1.0,
    **kwargs: Any,
) -> T:
    """Call ``func`` retrying transient failures.

    Args:
        func: Callable performing one remote call
        *args: Positional arguments for ``func``
        attempts: Maximum number of attempts, including the first
        backoff: Multiplier for the exponential wait between attempts
        **kwargs: Keyword arguments for ``func``

    Returns:
        The value returned by ``func``

    Raises:
        Exception: The last error once attempts are exhausted, or the first
            non-transient error
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff, max=MAX_BACKOFF_SECONDS),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    return retrying(func, *args, **kwargs)
