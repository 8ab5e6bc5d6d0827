"""Unit tests for bounded retries of remote calls."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import MagicMock

import pytest
import requests
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError
from docker.errors import APIError

from nestlambda.lib.retry import call_with_retry, is_transient


def _api_error(status: int) -> APIError:
    response = MagicMock(status_code=status)
    return APIError("registry error", response=response)


@pytest.mark.unit
class TestIsTransient:
    """Tests for transient error classification."""

    @pytest.mark.parametrize(
        "code",
        ["ThrottlingException", "TooManyRequestsException", "ResourceConflictException"],
    )
    def test_transient_aws_codes(
        self, client_error: Callable[..., ClientError], code: str
    ) -> None:
        """Throttling and update conflicts are retried."""
        assert is_transient(client_error(code)) is True

    def test_aws_server_error(self, client_error: Callable[..., ClientError]) -> None:
        """Any AWS 5xx is retried."""
        assert is_transient(client_error("Whatever", status=503)) is True

    @pytest.mark.parametrize(
        "code",
        ["AccessDeniedException", "InvalidParameterValueException"],
    )
    def test_permanent_aws_codes(
        self, client_error: Callable[..., ClientError], code: str
    ) -> None:
        """Credential and validation errors are not retried."""
        assert is_transient(client_error(code)) is False

    def test_connection_errors(self) -> None:
        """Dropped connections are retried."""
        assert is_transient(EndpointConnectionError(endpoint_url="https://x")) is True
        assert is_transient(requests.exceptions.ConnectionError()) is True

    def test_timeouts_not_retried(self) -> None:
        """Timeouts surface immediately."""
        assert is_transient(ReadTimeoutError(endpoint_url="https://x")) is False
        assert is_transient(requests.exceptions.ReadTimeout()) is False

    def test_docker_api_errors(self) -> None:
        """Registry 5xx responses are retried, 4xx are not."""
        assert is_transient(_api_error(502)) is True
        assert is_transient(_api_error(401)) is False

    def test_other_exceptions(self) -> None:
        """Unrelated errors are not retried."""
        assert is_transient(ValueError("bad")) is False


@pytest.mark.unit
class TestCallWithRetry:
    """Tests for call_with_retry()."""

    def test_returns_value(self) -> None:
        """Successful calls pass arguments through."""
        func = MagicMock(return_value="ok")

        assert call_with_retry(func, 1, key="v", attempts=3, backoff=0) == "ok"
        func.assert_called_once_with(1, key="v")

    def test_retries_transient_then_succeeds(
        self, client_error: Callable[..., ClientError]
    ) -> None:
        """Transient failures are retried until a call succeeds."""
        func = MagicMock(
            side_effect=[client_error("ThrottlingException"), {"ok": True}]
        )

        assert call_with_retry(func, attempts=3, backoff=0) == {"ok": True}
        assert func.call_count == 2

    def test_exhausted_retries_reraise_last_error(
        self, client_error: Callable[..., ClientError]
    ) -> None:
        """After the last attempt the underlying error is raised."""
        func = MagicMock(side_effect=client_error("ThrottlingException"))

        with pytest.raises(ClientError) as exc_info:
            call_with_retry(func, attempts=3, backoff=0)

        assert exc_info.value.response["Error"]["Code"] == "ThrottlingException"
        assert func.call_count == 3

    def test_permanent_error_not_retried(
        self, client_error: Callable[..., ClientError]
    ) -> None:
        """Non-transient errors are raised on the first attempt."""
        func = MagicMock(side_effect=client_error("AccessDeniedException"))

        with pytest.raises(ClientError):
            call_with_retry(func, attempts=5, backoff=0)

        assert func.call_count == 1
