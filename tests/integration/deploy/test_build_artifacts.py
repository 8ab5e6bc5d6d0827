"""Integration tests for artifact builds.

Bundle builds run a real build command. Tests marked with
@pytest.mark.docker require a running Docker daemon.
"""

from __future__ import annotations

import sys
import zipfile
from pathlib import Path

import pytest

from nestlambda.deploy.builder import BundleBuilder, ContainerBuilder, compute_code_sha256
from nestlambda.deploy.clients import DockerClientProvider
from nestlambda.lib.errors import BuildFailedError, DockerNotAvailableError
from nestlambda.models.deployment import (
    BundleConfig,
    DeploymentTarget,
    ImageConfig,
    TransportKind,
)

# Stands in for `nest build`: writes dist/main.js and dist/lambda.js
COMPILE_SCRIPT = (
    "import pathlib; d = pathlib.Path('dist'); d.mkdir(exist_ok=True); "
    "(d / 'main.js').write_text('bootstrap();'); "
    "(d / 'lambda.js').write_text('exports.handler = h;'); print('compiled')"
)


def _target(tmp_path: Path) -> DeploymentTarget:
    return DeploymentTarget(
        name="dev",
        function_name="your-app-dev",
        region="us-east-1",
        env_file=str(tmp_path / ".env"),
    )


@pytest.fixture
def nest_app(tmp_path: Path) -> Path:
    """A NestJS-shaped source tree without compiled output."""
    app = tmp_path / "app"
    (app / "node_modules" / "left-pad").mkdir(parents=True)
    (app / "package.json").write_text('{"name": "your-app"}', encoding="utf-8")
    (app / "node_modules" / "left-pad" / "index.js").write_text(
        "module.exports = pad;", encoding="utf-8"
    )
    return app


@pytest.mark.integration
class TestBundleBuild:
    """Bundle builds with a real build command."""

    def test_build_and_rebuild(self, nest_app: Path, tmp_path: Path) -> None:
        """Compiling twice gives the same bundle."""
        config = BundleConfig(build_command=f'{sys.executable} -c "{COMPILE_SCRIPT}"')
        builder = BundleBuilder(config, nest_app, tmp_path / "build", timeout=60)

        first = builder.build(_target(tmp_path))
        second = builder.build(_target(tmp_path))

        assert first.transport == TransportKind.BUNDLE
        assert first.digest == second.digest
        assert first.log_lines == ["compiled"]
        assert compute_code_sha256(Path(second.reference)) == second.digest
        with zipfile.ZipFile(first.reference) as archive:
            assert "dist/main.js" in archive.namelist()
            assert "node_modules/left-pad/index.js" in archive.namelist()

    def test_build_without_output(self, nest_app: Path, tmp_path: Path) -> None:
        """A command that succeeds without output fails the build."""
        config = BundleConfig(build_command=f"{sys.executable} -c pass")
        builder = BundleBuilder(config, nest_app, tmp_path / "build", timeout=60)

        with pytest.raises(BuildFailedError, match="does not exist"):
            builder.build(_target(tmp_path))


@pytest.mark.integration
@pytest.mark.docker
class TestContainerBuild:
    """Image builds against a real Docker daemon."""

    def test_build_custom_dockerfile(self, nest_app: Path, tmp_path: Path) -> None:
        """A project Dockerfile is built and tagged."""
        (nest_app / "Dockerfile.lambda").write_text(
            "FROM scratch\nCOPY package.json /package.json\n", encoding="utf-8"
        )
        builder = ContainerBuilder(
            ImageConfig(
                repository="nestlambda-test",
                dockerfile="Dockerfile.lambda",
                tag_strategy="custom",
                custom_tag="integration",
            ),
            "nestlambda-test",
            nest_app,
            tmp_path / "build",
            docker_provider=DockerClientProvider(timeout=300),
        )

        try:
            artifact = builder.build(_target(tmp_path))
        except DockerNotAvailableError:
            pytest.skip("Docker daemon not available")

        assert artifact.reference == "nestlambda-test:integration"
        assert artifact.digest.startswith("sha256:")
