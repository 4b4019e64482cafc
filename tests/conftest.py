"""
Shared pytest fixtures for tfpipeline tests.

This module provides common test fixtures used across unit tests.
Fixtures include environment variables for Settings, an in-memory fake
execution environment and temporary module repositories.

Usage:
    def test_something(mock_settings, fake_environment_factory):
        # Fixtures are injected automatically by pytest
        assert mock_settings.max_concurrent_workers == 2
"""

import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
from _pytest.monkeypatch import MonkeyPatch

from tfpipeline.config import Settings, get_settings
from tfpipeline.environment import RunContext
from tfpipeline.errors import CommandFailedError, EnvironmentSetupError
from tfpipeline.logging_config import get_correlation_id, get_task_label
from tfpipeline.parsing import CommandLine


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def mock_env_vars(monkeypatch: MonkeyPatch) -> dict[str, str]:
    """
    Set up mock environment variables for testing.

    Args:
        monkeypatch: pytest monkeypatch fixture

    Returns:
        Dictionary of environment variable names and values
    """
    env_vars = {
        "TFPIPELINE_TERRAFORM_VERSION": "1.12.0",
        "TFPIPELINE_TFLINT_VERSION": "0.58.0",
        "TFPIPELINE_TERRAFORM_DOCS_VERSION": "0.20.0",
        "TFPIPELINE_COMPATIBILITY_VERSIONS": "1.12.0,1.12.1",
        "TFPIPELINE_MODULES_ROOT_PATH": "modules",
        "TFPIPELINE_FIXTURES_PATH": "fixtures",
        "TFPIPELINE_PLUGIN_CACHE_DIR": "/tmp/tfpipeline-plugin-cache",
        "TFPIPELINE_AWS_REGION": "us-west-2",
        "TFPIPELINE_MAX_CONCURRENT_WORKERS": "2",
        "TFPIPELINE_COMMAND_TIMEOUT_SECONDS": "60",
        "TFPIPELINE_LOG_LEVEL": "DEBUG",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Settings:
    """
    Provide test Settings instance.

    The lru_cache on get_settings is bypassed by creating Settings directly.

    Args:
        mock_env_vars: Environment variables fixture (used for side effects)

    Returns:
        Configured Settings instance for testing
    """
    _ = mock_env_vars
    get_settings.cache_clear()
    return Settings()  # pyright: ignore[reportCallIssue]


# =============================================================================
# Fake Execution Environment
# =============================================================================


class FakeEnvironment:
    """
    In-memory execution environment recording every call.

    Attributes:
        fail_on: Command that fails with exit status 1 when reached
        setup_error: When set, setup() raises EnvironmentSetupError with it
        run_error: When set, run() raises this exception unchanged
        delay: Seconds slept before each command
        barrier: Optional barrier every run() waits on before its commands
        executed: Commands run so far, in order
    """

    def __init__(
        self,
        fail_on: CommandLine | None = None,
        setup_error: str | None = None,
        run_error: Exception | None = None,
        delay: float = 0.0,
        barrier: threading.Barrier | None = None,
        teardown_error: Exception | None = None,
    ) -> None:
        self.fail_on = fail_on
        self.setup_error = setup_error
        self.run_error = run_error
        self.delay = delay
        self.barrier = barrier
        self.teardown_error = teardown_error
        self.executed: list[CommandLine] = []
        self.setup_calls = 0
        self.teardown_calls = 0
        self.correlation_id: str | None = None
        self.task_label: str | None = None

    def setup(self, ctx: RunContext) -> None:
        _ = ctx
        self.setup_calls += 1
        if self.setup_error:
            raise EnvironmentSetupError("", self.setup_error)

    def run(self, ctx: RunContext, commands: Sequence[CommandLine]) -> str:
        _ = ctx
        self.correlation_id = get_correlation_id()
        self.task_label = get_task_label()
        if self.run_error is not None:
            raise self.run_error
        if self.barrier is not None:
            _ = self.barrier.wait(timeout=5)

        output = ""
        for command in commands:
            if self.delay:
                time.sleep(self.delay)
            self.executed.append(tuple(command))
            if self.fail_on is not None and tuple(command) == self.fail_on:
                raise CommandFailedError("", command, "exit status 1", exit_code=1)
            output = f"{' '.join(command)}\n"
        return output

    def teardown(self) -> None:
        self.teardown_calls += 1
        if self.teardown_error is not None:
            raise self.teardown_error


@pytest.fixture
def fake_environment_factory() -> Callable[..., FakeEnvironment]:
    """
    Provide a factory creating FakeEnvironment instances.

    Every created environment is kept on the factory's ``created`` list.
    """
    created: list[FakeEnvironment] = []

    def factory(**kwargs: object) -> FakeEnvironment:
        environment = FakeEnvironment(**kwargs)  # pyright: ignore[reportArgumentType]
        created.append(environment)
        return environment

    factory.created = created  # pyright: ignore[reportFunctionMemberAccess]
    return factory


# =============================================================================
# Repository Fixtures
# =============================================================================


@pytest.fixture
def sample_module_repo(tmp_path: Path) -> Path:
    """
    Create a repository with one complete Terraform module.

    Layout:
        modules/vpc/{main,variables,outputs,locals,versions}.tf
        modules/vpc/README.md, .terraform-docs.yml, .tflint.hcl
        modules/vpc/fixtures/dev.tfvars

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to the repository root
    """
    module_dir = tmp_path / "modules" / "vpc"
    module_dir.mkdir(parents=True)

    _ = (module_dir / "main.tf").write_text(
        'resource "aws_vpc" "this" {\n  cidr_block = var.cidr_block\n}\n'
    )
    _ = (module_dir / "variables.tf").write_text('variable "cidr_block" {\n  type = string\n}\n')
    _ = (module_dir / "outputs.tf").write_text('output "vpc_id" {\n  value = aws_vpc.this.id\n}\n')
    _ = (module_dir / "locals.tf").write_text("locals {}\n")
    _ = (module_dir / "versions.tf").write_text(
        'terraform {\n  required_version = ">= 1.12.0"\n}\n'
    )
    _ = (module_dir / "README.md").write_text("# vpc\n")
    _ = (module_dir / ".terraform-docs.yml").write_text("formatter: markdown\n")
    _ = (module_dir / ".tflint.hcl").write_text('plugin "terraform" {\n  enabled = true\n}\n')

    fixtures_dir = module_dir / "fixtures"
    fixtures_dir.mkdir()
    _ = (fixtures_dir / "dev.tfvars").write_text('cidr_block = "10.0.0.0/16"\n')

    return tmp_path
