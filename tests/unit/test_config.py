"""
Unit tests for configuration module.

Tests cover Settings defaults, environment variable parsing, version
validation and error handling.
"""

from unittest.mock import patch

import pytest
from _pytest.monkeypatch import MonkeyPatch

from tfpipeline.config import Settings, get_settings
from tfpipeline.errors import ConfigurationError


class TestSettingsValidation:
    """Tests for Settings validation."""

    def test_settings_from_env_vars(
        self,
        mock_env_vars: dict[str, str],
    ) -> None:
        """Test that Settings loads from environment variables."""
        _ = mock_env_vars
        get_settings.cache_clear()

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.terraform_version == "1.12.0"
        assert settings.compatibility_versions == ["1.12.0", "1.12.1"]
        assert settings.aws_region == "us-west-2"
        assert settings.max_concurrent_workers == 2
        assert settings.log_level == "DEBUG"

    def test_defaults(self, monkeypatch: MonkeyPatch) -> None:
        """Test that Settings has sensible defaults."""
        for key in ("TERRAFORM_VERSION", "COMPATIBILITY_VERSIONS", "MAX_CONCURRENT_WORKERS", "AWS_REGION"):
            monkeypatch.delenv(f"TFPIPELINE_{key}", raising=False)

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.terraform_version == "1.12.0"
        assert settings.compatibility_versions == ["1.12.0", "1.12.1"]
        assert settings.max_concurrent_workers == 4
        assert settings.command_timeout_seconds == 1800
        assert settings.aws_region == "eu-west-1"

    def test_version_prefix_stripped(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that a leading 'v' is removed from tool versions."""
        _ = mock_env_vars
        monkeypatch.setenv("TFPIPELINE_TFLINT_VERSION", "v0.55.1")

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.tflint_version == "0.55.1"

    def test_invalid_version_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that a malformed tool version raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("TFPIPELINE_TERRAFORM_VERSION", "latest")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert "latest" in str(exc_info.value)

    def test_compatibility_versions_json(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that compatibility versions accept a JSON list."""
        _ = mock_env_vars
        monkeypatch.setenv("TFPIPELINE_COMPATIBILITY_VERSIONS", '["1.11.4", "v1.12.2"]')

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.compatibility_versions == ["1.11.4", "1.12.2"]

    def test_compatibility_versions_invalid_json_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that invalid JSON raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("TFPIPELINE_COMPATIBILITY_VERSIONS", "[1.11.4,")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert exc_info.value.config_key == "TFPIPELINE_COMPATIBILITY_VERSIONS"

    def test_compatibility_versions_bad_entry_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that a malformed entry in the list raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("TFPIPELINE_COMPATIBILITY_VERSIONS", "1.12.0,next")

        with pytest.raises(ConfigurationError):
            _ = Settings()  # pyright: ignore[reportCallIssue]

    def test_invalid_log_level_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that invalid LOG_LEVEL raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("TFPIPELINE_LOG_LEVEL", "INVALID")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert "LOG_LEVEL" in str(exc_info.value)

    def test_log_level_case_insensitive(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that log level is normalized to uppercase."""
        _ = mock_env_vars
        monkeypatch.setenv("TFPIPELINE_LOG_LEVEL", "warning")

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.log_level == "WARNING"

    def test_module_execution_path(self, mock_settings: Settings) -> None:
        """Test that module paths are resolved below the modules root."""
        assert mock_settings.module_execution_path("vpc") == "modules/vpc"


class TestGetSettings:
    """Tests for get_settings caching and error wrapping."""

    def test_get_settings_is_cached(self, mock_env_vars: dict[str, str]) -> None:
        """Test that get_settings returns the same instance."""
        _ = mock_env_vars
        get_settings.cache_clear()

        assert get_settings() is get_settings()

    def test_get_settings_wraps_unexpected_errors(self, mock_env_vars: dict[str, str]) -> None:
        """Test that non-configuration errors are wrapped in ConfigurationError."""
        _ = mock_env_vars
        get_settings.cache_clear()

        with patch("tfpipeline.config.Settings", side_effect=ValueError("bad input")):
            with pytest.raises(ConfigurationError) as exc_info:
                _ = get_settings()

        assert "bad input" in str(exc_info.value)
        get_settings.cache_clear()
