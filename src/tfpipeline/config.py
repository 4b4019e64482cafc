"""
Configuration management for tfpipeline.

Settings are loaded from environment variables (prefix ``TFPIPELINE_``) or a
local ``.env`` file using Pydantic settings. Tool versions, paths and
concurrency limits are passed explicitly from Settings into jobs and matrix
builders, so tests can substitute any of them.

Environment Variables:
    TFPIPELINE_TERRAFORM_VERSION: Default Terraform version (default: 1.12.0)
    TFPIPELINE_TFLINT_VERSION: Default TFLint version (default: 0.58.0)
    TFPIPELINE_TERRAFORM_DOCS_VERSION: Default terraform-docs version (default: 0.20.0)
    TFPIPELINE_COMPATIBILITY_VERSIONS: Versions checked by the compatibility
        job, JSON list or comma separated (default: 1.12.0,1.12.1)
    TFPIPELINE_MODULES_ROOT_PATH: Directory holding modules (default: modules)
    TFPIPELINE_FIXTURES_PATH: Directory holding .tfvars fixtures (default: fixtures)
    TFPIPELINE_PLUGIN_CACHE_DIR: Shared Terraform plugin cache (default: ~/.terraform.d/plugin-cache)
    TFPIPELINE_AWS_REGION: Region used when none is given (default: eu-west-1)
    TFPIPELINE_MAX_CONCURRENT_WORKERS: Max parallel tasks (default: 4)
    TFPIPELINE_COMMAND_TIMEOUT_SECONDS: Deadline for one fan-out run (default: 1800)
    TFPIPELINE_LOG_LEVEL: Logging level (default: INFO)

Usage:
    from tfpipeline.config import get_settings

    settings = get_settings()
    print(settings.compatibility_versions)
"""

import json
import os
from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from tfpipeline.errors import ConfigurationError

DEFAULT_TERRAFORM_VERSION = "1.12.0"
DEFAULT_TFLINT_VERSION = "0.58.0"
DEFAULT_TERRAFORM_DOCS_VERSION = "0.20.0"
DEFAULT_AWS_REGION = "eu-west-1"


class Settings(BaseSettings):
    """
    tfpipeline configuration settings.

    Attributes:
        terraform_version: Terraform version installed when none is requested
        tflint_version: TFLint version installed when none is requested
        terraform_docs_version: terraform-docs version installed when none is requested
        compatibility_versions: Terraform versions exercised by the compatibility job
        modules_root_path: Directory, relative to the source root, holding modules
        fixtures_path: Directory, relative to the module, holding .tfvars fixtures
        plugin_cache_dir: Terraform plugin cache shared between tasks
        aws_region: AWS region used when credentials come without one
        max_concurrent_workers: Upper bound on concurrently running tasks
        command_timeout_seconds: Deadline applied to a whole fan-out run
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    model_config = SettingsConfigDict(
        env_prefix="TFPIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Tool versions
    terraform_version: str = Field(
        default=DEFAULT_TERRAFORM_VERSION,
        description="Default Terraform version",
    )
    tflint_version: str = Field(
        default=DEFAULT_TFLINT_VERSION,
        description="Default TFLint version",
    )
    terraform_docs_version: str = Field(
        default=DEFAULT_TERRAFORM_DOCS_VERSION,
        description="Default terraform-docs version",
    )
    compatibility_versions: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["1.12.0", "1.12.1"],
        description="Terraform versions verified by the compatibility check",
    )

    # Layout
    modules_root_path: str = Field(
        default="modules",
        description="Directory holding Terraform modules, relative to the source root",
    )
    fixtures_path: str = Field(
        default="fixtures",
        description="Directory holding .tfvars fixtures, relative to the module",
    )
    plugin_cache_dir: str = Field(
        default_factory=lambda: os.path.expanduser("~/.terraform.d/plugin-cache"),
        description="Terraform plugin cache directory",
    )

    # Cloud defaults
    aws_region: str = Field(
        default=DEFAULT_AWS_REGION,
        description="AWS region used when none is provided",
    )

    # Execution
    max_concurrent_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum concurrently running tasks",
    )
    command_timeout_seconds: int = Field(
        default=1800,
        ge=1,
        description="Deadline for one fan-out run in seconds",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("terraform_version", "tflint_version", "terraform_docs_version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """
        Validate a tool version is a dotted numeric version.

        Raises:
            ConfigurationError: If the version is empty or malformed
        """
        v = v.strip().removeprefix("v")
        if not _is_version(v):
            raise ConfigurationError(
                f"Tool version '{v}' is not a valid version (expected format: 1.12.0)",
                config_key="version",
                reason=f"Invalid version: {v}",
            )
        return v

    @field_validator("compatibility_versions", mode="before")
    @classmethod
    def parse_compatibility_versions(cls, v: Any) -> list[str]:
        """
        Parse compatibility versions from a JSON list, comma list or list.

        Raises:
            ConfigurationError: If parsing fails or a version is malformed
        """
        if isinstance(v, str):
            raw = v.strip()
            if raw.startswith("["):
                try:
                    v = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise ConfigurationError(
                        f"COMPATIBILITY_VERSIONS is not valid JSON: {e}",
                        config_key="TFPIPELINE_COMPATIBILITY_VERSIONS",
                        reason=str(e),
                    ) from e
            else:
                v = [part for part in raw.split(",") if part.strip()]

        if not isinstance(v, list):
            raise ConfigurationError(
                "COMPATIBILITY_VERSIONS must be a list of versions",
                config_key="TFPIPELINE_COMPATIBILITY_VERSIONS",
                reason="Value is not a list",
            )

        versions: list[str] = []
        for item in v:
            version = str(item).strip().removeprefix("v")
            if not _is_version(version):
                raise ConfigurationError(
                    f"COMPATIBILITY_VERSIONS entry '{item}' is not a valid version",
                    config_key="TFPIPELINE_COMPATIBILITY_VERSIONS",
                    reason=f"Invalid version: {item}",
                )
            versions.append(version)
        return versions

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate log level is recognized.

        Raises:
            ConfigurationError: If log level is invalid
        """
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ConfigurationError(
                f"LOG_LEVEL '{v}' is not valid. Must be one of: {', '.join(sorted(valid_levels))}",
                config_key="TFPIPELINE_LOG_LEVEL",
                reason=f"Invalid log level: {v}",
            )
        return v_upper

    def module_execution_path(self, module_name: str) -> str:
        """
        Get a module's path relative to the source root.

        Example:
            >>> settings.module_execution_path("vpc")
            'modules/vpc'
        """
        return os.path.join(self.modules_root_path, module_name)


def _is_version(value: str) -> bool:
    parts = value.split(".")
    return len(parts) >= 2 and all(part.isdigit() for part in parts)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    try:
        return Settings()
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load configuration: {e}",
            reason=str(e),
        ) from e
