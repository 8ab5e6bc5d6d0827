"""Unit tests for environment file loading."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from nestlambda.config.env_loader import (
    DeploymentConfig,
    load_env_file,
    locate_env_file,
    parse_env_lines,
)
from nestlambda.lib.errors import (
    ConfigError,
    ConfigIncompleteError,
    ConfigNotFoundError,
)


@pytest.mark.unit
class TestParseEnvLines:
    """Tests for KEY=VALUE parsing."""

    def test_parses_declared_keys_only(self) -> None:
        """Every non-comment, non-blank line yields exactly one pair."""
        lines = [
            "# comment",
            "",
            "DB_HOST=db.example.com",
            "   ",
            "  # indented comment",
            "DB_NAME=d",
        ]

        values = parse_env_lines(lines)

        assert values == {"DB_HOST": "db.example.com", "DB_NAME": "d"}

    def test_value_is_text_after_first_equals(self) -> None:
        """Only the first '=' separates key and value."""
        values = parse_env_lines(["DATABASE_URL=postgres://u:p@h/d?sslmode=require"])

        assert values["DATABASE_URL"] == "postgres://u:p@h/d?sslmode=require"

    def test_value_is_raw_without_quote_handling(self) -> None:
        """Quotes, inline '#' and surrounding spaces are kept verbatim."""
        values = parse_env_lines(['GREETING="hello world" # not a comment', "PAD= x "])

        assert values["GREETING"] == '"hello world" # not a comment'
        assert values["PAD"] == " x "

    def test_key_is_trimmed(self) -> None:
        """Whitespace around the key is removed."""
        values = parse_env_lines(["  DB_HOST  =db"])

        assert list(values) == ["DB_HOST"]

    def test_empty_value_allowed(self) -> None:
        """A key with nothing after '=' has an empty value."""
        assert parse_env_lines(["EMPTY="]) == {"EMPTY": ""}

    def test_duplicate_key_keeps_last_value(self) -> None:
        """A repeated key keeps the last value and its first position."""
        values = parse_env_lines(["A=1", "B=2", "A=3"])

        assert values == {"A": "3", "B": "2"}
        assert list(values) == ["A", "B"]

    def test_line_without_equals_raises(self) -> None:
        """A line without '=' names the file and line number."""
        with pytest.raises(ConfigError) as exc_info:
            parse_env_lines(["A=1", "NOT_A_PAIR"], source=".env")

        assert exc_info.value.field == ".env:2"
        assert "NOT_A_PAIR" in exc_info.value.message

    def test_empty_key_raises(self) -> None:
        """A line starting with '=' has no key."""
        with pytest.raises(ConfigError, match="Missing key"):
            parse_env_lines(["=value"])


@pytest.mark.unit
class TestDeploymentConfig:
    """Tests for the read-only DeploymentConfig mapping."""

    def test_mapping_interface(self) -> None:
        """DeploymentConfig behaves like an ordered mapping."""
        config = DeploymentConfig({"B": "2", "A": "1"}, "/app/.env")

        assert list(config) == ["B", "A"]
        assert len(config) == 2
        assert config["A"] == "1"
        assert config.get("C") is None
        assert config.source == "/app/.env"

    def test_is_read_only(self) -> None:
        """Items cannot be assigned after construction."""
        config = DeploymentConfig({"A": "1"}, ".env")

        with pytest.raises(TypeError):
            config["A"] = "2"  # type: ignore[index]

    def test_source_values_are_copied(self) -> None:
        """Mutating the input dict does not change the config."""
        values = {"A": "1"}
        config = DeploymentConfig(values, ".env")
        values["A"] = "changed"

        assert config["A"] == "1"

    def test_missing_reports_absent_and_empty_keys(self) -> None:
        """Absent and empty keys are both reported, in request order."""
        config = DeploymentConfig({"A": "1", "B": ""}, ".env")

        assert config.missing(["A", "B", "C"]) == ["B", "C"]

    def test_require_raises_config_incomplete(self) -> None:
        """require() lists every missing key."""
        config = DeploymentConfig({"DB_HOST": "h"}, "/app/.env")

        with pytest.raises(ConfigIncompleteError) as exc_info:
            config.require(["DB_HOST", "DB_USERNAME", "DB_PASSWORD"])

        assert exc_info.value.missing_keys == ["DB_USERNAME", "DB_PASSWORD"]
        assert exc_info.value.kind == "ConfigIncomplete"
        assert exc_info.value.source == "/app/.env"

    def test_require_passes_when_complete(self) -> None:
        """require() returns quietly when nothing is missing."""
        DeploymentConfig({"A": "1"}, ".env").require(["A"])

    def test_export_writes_into_mapping(self) -> None:
        """export() copies every pair into the target mapping."""
        environ: dict[str, str] = {"OTHER": "x"}
        DeploymentConfig({"A": "1", "B": "2"}, ".env").export(environ)

        assert environ == {"OTHER": "x", "A": "1", "B": "2"}

    def test_export_defaults_to_os_environ(
        self, isolated_env: dict[str, str]
    ) -> None:
        """export() without a mapping writes to os.environ."""
        DeploymentConfig({"NESTLAMBDA_TEST_KEY": "v"}, ".env").export()

        assert os.environ["NESTLAMBDA_TEST_KEY"] == "v"

    def test_as_dict_returns_copy(self) -> None:
        """as_dict() returns an independent dict."""
        config = DeploymentConfig({"A": "1"}, ".env")
        copy = config.as_dict()
        copy["A"] = "2"

        assert config["A"] == "1"


@pytest.mark.unit
class TestLoadEnvFile:
    """Tests for loading environment files from disk."""

    def test_locate_missing_file_raises_not_found(self, tmp_path: Path) -> None:
        """A missing file raises ConfigNotFoundError."""
        with pytest.raises(ConfigNotFoundError) as exc_info:
            locate_env_file(tmp_path / ".env")

        assert exc_info.value.kind == "ConfigNotFound"
        assert exc_info.value.path.endswith(".env")

    def test_locate_directory_raises_not_found(self, tmp_path: Path) -> None:
        """A directory is not an environment file."""
        with pytest.raises(ConfigNotFoundError):
            locate_env_file(tmp_path)

    def test_load_env_file(self, project_dir: Path) -> None:
        """The project's .env is parsed into a DeploymentConfig."""
        config = load_env_file(project_dir / ".env")

        assert dict(config) == {
            "DB_HOST": "db.example.com",
            "DB_USERNAME": "u",
            "DB_PASSWORD": "p",
            "DB_NAME": "d",
        }
        assert config.source == str((project_dir / ".env").resolve())

    def test_load_env_file_with_required_keys(self, tmp_path: Path) -> None:
        """Required keys are checked after parsing."""
        env_file = tmp_path / ".env"
        env_file.write_text("DB_HOST=h\nDB_PASSWORD=\n", encoding="utf-8")

        with pytest.raises(ConfigIncompleteError) as exc_info:
            load_env_file(env_file, required=["DB_HOST", "DB_PASSWORD", "DB_NAME"])

        assert exc_info.value.missing_keys == ["DB_PASSWORD", "DB_NAME"]

    def test_load_env_file_handles_crlf(self, tmp_path: Path) -> None:
        """Windows line endings do not leak into values."""
        env_file = tmp_path / ".env"
        env_file.write_bytes(b"A=1\r\nB=2\r\n")

        config = load_env_file(env_file)

        assert dict(config) == {"A": "1", "B": "2"}

    def test_load_env_file_rejects_non_utf8(self, tmp_path: Path) -> None:
        """A Latin-1 file raises ConfigError naming the file."""
        env_file = tmp_path / ".env"
        env_file.write_bytes(b"DB_HOST=caf\xe9\n")

        with pytest.raises(ConfigError, match="not valid UTF-8") as exc_info:
            load_env_file(env_file)

        assert exc_info.value.field == str(env_file.resolve())
