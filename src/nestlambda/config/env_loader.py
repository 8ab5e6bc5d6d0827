"""Environment file loading.

Environment files hold the deployment configuration of a target as
newline-delimited ``KEY=VALUE`` pairs. Blank lines and lines starting with
``#`` are ignored. The key is the text before the first ``=``; the value is
everything after it, up to the end of the line, taken as a raw string with
no quoting or escaping rules.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator, Mapping, MutableMapping
from pathlib import Path
from types import MappingProxyType

from nestlambda.lib.errors import ConfigError, ConfigIncompleteError, ConfigNotFoundError
from nestlambda.lib.logging_config import get_logger

logger = get_logger(__name__)


class DeploymentConfig(Mapping[str, str]):
    """Read-only, ordered mapping of environment keys to raw string values.

    Example:
        >>> config = DeploymentConfig({"DB_HOST": "db.example.com"}, "/app/.env")
        >>> config["DB_HOST"]
        'db.example.com'
    """

    def __init__(self, values: Mapping[str, str], source: str | Path) -> None:
        """Create a configuration from parsed values.

        Args:
            values: Parsed key/value pairs in file order
            source: Path of the file the values came from
        """
        self._values = MappingProxyType(dict(values))
        self._source = str(source)

    @property
    def source(self) -> str:
        """Path of the environment file."""
        return self._source

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"DeploymentConfig(source={self._source!r}, keys={list(self._values)})"

    def missing(self, keys: Iterable[str]) -> list[str]:
        """Return the keys that are absent or have an empty value."""
        return [key for key in keys if not self._values.get(key)]

    def require(self, keys: Iterable[str]) -> None:
        """Ensure every key is present and non-empty.

        Raises:
            ConfigIncompleteError: Listing every absent or empty key
        """
        missing = self.missing(keys)
        if missing:
            raise ConfigIncompleteError(missing_keys=missing, source=self._source)

    def export(self, environ: MutableMapping[str, str] | None = None) -> None:
        """Write the pairs into the process environment.

        Args:
            environ: Target mapping, defaults to ``os.environ``
        """
        target = os.environ if environ is None else environ
        for key, value in self._values.items():
            target[key] = value
        logger.debug(f"Exported {len(self._values)} keys from {self._source}")

    def as_dict(self) -> dict[str, str]:
        """Return a mutable copy of the pairs."""
        return dict(self._values)


def locate_env_file(path: str | Path) -> Path:
    """Return the resolved environment file path.

    Raises:
        ConfigNotFoundError: If the file does not exist
    """
    env_path = Path(path)
    if not env_path.is_file():
        raise ConfigNotFoundError(
            path=str(env_path),
            message=(
                f"Environment file not found: {env_path}\n"
                "Create it with one KEY=VALUE pair per line."
            ),
        )
    return env_path.resolve()


def parse_env_lines(lines: Iterable[str], source: str = "<string>") -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines into an ordered dict.

    Args:
        lines: Lines without trailing newlines
        source: File name used in error messages

    Returns:
        Parsed pairs; a repeated key keeps its last value

    Raises:
        ConfigError: If a non-comment line has no ``=`` or an empty key
    """
    values: dict[str, str] = {}
    for line_number, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep:
            raise ConfigError(
                field=f"{source}:{line_number}",
                message=f"Expected KEY=VALUE, got: {stripped}",
            )
        if not key:
            raise ConfigError(
                field=f"{source}:{line_number}",
                message="Missing key before '='",
            )
        values[key] = value
    return values


def load_env_file(
    path: str | Path, required: Iterable[str] = ()
) -> DeploymentConfig:
    """Load an environment file into a DeploymentConfig.

    Args:
        path: Path of the environment file
        required: Keys that must be present and non-empty

    Returns:
        Parsed, read-only DeploymentConfig

    Raises:
        ConfigNotFoundError: If the file is missing
        ConfigIncompleteError: If a required key is absent or empty
        ConfigError: If a line cannot be parsed
    """
    env_path = locate_env_file(path)
    try:
        content = env_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigError(
            field=str(env_path),
            message=f"Environment file is not valid UTF-8: {exc}",
        ) from exc
    except OSError as exc:
        raise ConfigError(
            field=str(env_path), message=f"Failed to read environment file: {exc}"
        ) from exc

    values = parse_env_lines(content.splitlines(), source=str(env_path))
    config = DeploymentConfig(values, env_path)
    config.require(required)
    logger.debug(f"Loaded {len(config)} keys from {env_path}")
    return config
