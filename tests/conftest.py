"""Pytest configuration and shared fixtures for nestlambda tests."""

import os
import shutil
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from nestlambda.deploy.clients import AWSClients

ENV_FILE_CONTENT = """\
# database settings
DB_HOST=db.example.com
DB_USERNAME=u
DB_PASSWORD=p
DB_NAME=d
"""

BUNDLE_PROJECT_YAML = """\
service: your-app
region: us-east-1
transport: bundle
source_dir: app
required_env:
  - DB_HOST
  - DB_USERNAME
  - DB_PASSWORD
  - DB_NAME
function:
  memory: 512
  timeout: 30
  role_arn: arn:aws:iam::123456789012:role/lambda-exec
retries:
  attempts: 2
  backoff: 0
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test file operations.

    Yields:
        Path to temporary directory

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def isolated_env() -> Generator[dict[str, str], None, None]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.

    Yields:
        Dictionary of original environment variables
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a bundle-mode project with a NestJS source tree and a .env file.

    Layout::

        nestlambda.yaml
        .env
        app/package.json
        app/dist/main.js
        app/dist/lambda.js
        app/node_modules/left-pad/index.js
    """
    (tmp_path / "nestlambda.yaml").write_text(BUNDLE_PROJECT_YAML, encoding="utf-8")
    (tmp_path / ".env").write_text(ENV_FILE_CONTENT, encoding="utf-8")

    app = tmp_path / "app"
    (app / "dist").mkdir(parents=True)
    (app / "node_modules" / "left-pad").mkdir(parents=True)
    (app / "package.json").write_text('{"name": "your-app"}', encoding="utf-8")
    (app / "dist" / "main.js").write_text("bootstrap();\n", encoding="utf-8")
    (app / "dist" / "lambda.js").write_text("exports.handler = h;\n", encoding="utf-8")
    (app / "node_modules" / "left-pad" / "index.js").write_text(
        "module.exports = pad;\n", encoding="utf-8"
    )
    return tmp_path


@pytest.fixture
def client_error() -> Callable[..., ClientError]:
    """Return a factory for botocore ClientErrors.

    Example:
        >>> error = client_error("ResourceNotFoundException", "Function not found")
    """

    def make(
        code: str,
        message: str = "error",
        operation: str = "Operation",
        status: int = 400,
    ) -> ClientError:
        return ClientError(
            {
                "Error": {"Code": code, "Message": message},
                "ResponseMetadata": {"HTTPStatusCode": status},
            },
            operation,
        )

    return make


@pytest.fixture
def aws_mocks() -> dict[str, MagicMock]:
    """Mock boto3 clients keyed by service name."""
    lambda_client = MagicMock(name="lambda")
    lambda_client.get_waiter.return_value = MagicMock(name="waiter")
    ecr = MagicMock(name="ecr")
    sts = MagicMock(name="sts")
    sts.get_caller_identity.return_value = {
        "Account": "123456789012",
        "Arn": "arn:aws:iam::123456789012:user/deployer",
    }
    return {"lambda": lambda_client, "ecr": ecr, "sts": sts}


@pytest.fixture
def aws_clients(aws_mocks: dict[str, MagicMock]) -> AWSClients:
    """AWSClients whose clients are the mocks from ``aws_mocks``."""
    return AWSClients("us-east-1", timeout=5, client_factory=aws_mocks.__getitem__)


# Configure pytest
def pytest_configure(config: Any) -> None:
    """Configure pytest with marker options."""
    # Register custom markers
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests",
    )
    config.addinivalue_line(
        "markers",
        "unit: marks tests as unit tests",
    )
    config.addinivalue_line(
        "markers",
        "docker: marks tests that need a running Docker daemon",
    )
