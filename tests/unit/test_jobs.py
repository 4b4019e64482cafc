"""
Unit tests for the pipeline jobs.

Jobs are exercised with the subprocess backend replaced by a recording
fake, so the tests check which environments and commands each job
produces without installing any Terraform tooling.
"""

from pathlib import Path

import pytest
from _pytest.monkeypatch import MonkeyPatch

from tests.conftest import FakeEnvironment
from tfpipeline import jobs
from tfpipeline.config import Settings
from tfpipeline.credentials import AwsCredentials
from tfpipeline.environment import EnvironmentConfig, RunContext
from tfpipeline.errors import (
    AggregationFailedError,
    CommandFailedError,
    ConfigurationError,
    ModuleVerificationError,
)
from tfpipeline.jobs import (
    JobOptions,
    base_environment_config,
    is_terraform_module_dir,
    terraform_build,
    terraform_docs,
    terraform_exec,
    terraform_lint,
    terraform_static_check,
    terraform_version_compatibility_check,
    verify_module_files,
)
from tfpipeline.matrix import TERRAFORM_INIT


@pytest.fixture
def recording_environment(monkeypatch: MonkeyPatch) -> type[FakeEnvironment]:
    """Replace SubprocessEnvironment in jobs with a recording fake."""

    class RecordingEnvironment(FakeEnvironment):
        instances: list["RecordingEnvironment"] = []
        fail_command: tuple[str, ...] | None = None
        fail_version: str | None = None

        def __init__(self, config: EnvironmentConfig, source_dir: Path, label: str = "") -> None:
            fails = RecordingEnvironment.fail_version in (None, label)
            super().__init__(fail_on=RecordingEnvironment.fail_command if fails else None)
            self.config = config
            self.source_dir = source_dir
            self.label = label
            RecordingEnvironment.instances.append(self)

    monkeypatch.setattr(jobs, "SubprocessEnvironment", RecordingEnvironment)
    return RecordingEnvironment


def _env(config: EnvironmentConfig) -> dict[str, str]:
    return dict(config.env_vars)


class TestBaseEnvironmentConfig:
    """Tests for base_environment_config."""

    def test_defaults(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that the default config installs Terraform and uses the plugin cache."""
        config = base_environment_config(mock_settings, sample_module_repo, JobOptions())

        assert "terraform_1.12.0_" in config.setup_commands[0]
        assert _env(config)["TF_PLUGIN_CACHE_DIR"] == "/tmp/tfpipeline-plugin-cache"
        assert config.workdir == "."
        assert config.secret_vars == ()

    def test_no_cache_sets_cache_buster(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that no_cache replaces the plugin cache with a cache buster."""
        config = base_environment_config(mock_settings, sample_module_repo, JobOptions(no_cache=True))

        assert "TFPIPELINE_CACHE_BUSTER" in _env(config)
        assert "TF_PLUGIN_CACHE_DIR" not in _env(config)

    def test_terraform_version_override(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that an explicit Terraform version wins over the default."""
        config = base_environment_config(
            mock_settings,
            sample_module_repo,
            JobOptions(),
            terraform_version="1.12.1",
        )

        assert "terraform_1.12.1_" in config.setup_commands[0]

    def test_credentials_and_options(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that credentials, tokens, workdir and env vars are applied."""
        options = JobOptions(
            module_path="vpc",
            aws_credentials=AwsCredentials("AKIAEXAMPLE", "secret-key"),
            github_token="gh",
            gitlab_token="gl",
            terraform_registry_gitlab_token="reg",
            env_vars=("EXTRA=1",),
            log_level="DEBUG",
            dot_terraform_version="1.12.0",
            tflint_version="0.55.1",
        )

        config = base_environment_config(mock_settings, sample_module_repo, options)

        assert config.workdir == "modules/vpc"
        assert _env(config)["AWS_REGION"] == "us-west-2"
        assert _env(config)["TF_LOG"] == "debug"
        assert _env(config)["EXTRA"] == "1"
        assert dict(config.secret_vars) == {
            "AWS_ACCESS_KEY_ID": "AKIAEXAMPLE",
            "AWS_SECRET_ACCESS_KEY": "secret-key",
            "TF_TOKEN_gitlab_com": "reg",
            "GITLAB_TOKEN": "gl",
            "GITHUB_TOKEN": "gh",
        }
        assert config.dot_terraform_version == "1.12.0"
        assert any("/v0.55.1/" in command for command in config.setup_commands)

    def test_dot_env_loaded(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that .env files at the source root are loaded on request."""
        _ = (sample_module_repo / ".env").write_text("TF_VAR_environment=dev\n")

        config = base_environment_config(
            mock_settings,
            sample_module_repo,
            JobOptions(load_dot_env_file=True),
        )

        assert _env(config)["TF_VAR_environment"] == "dev"

    def test_dot_env_missing_raises(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that requesting .env loading without a .env file raises ConfigurationError."""
        with pytest.raises(ConfigurationError) as exc_info:
            _ = base_environment_config(
                mock_settings,
                sample_module_repo,
                JobOptions(load_dot_env_file=True),
            )

        assert "no .env files found" in str(exc_info.value)

    def test_aws_oidc_options(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that a role ARN and OIDC token configure web identity federation."""
        config = base_environment_config(
            mock_settings,
            sample_module_repo,
            JobOptions(aws_role_arn="arn:aws:iam::123456789012:role/ci", aws_oidc_token="jwt"),
        )
        env = _env(config)

        assert env["AWS_ROLE_ARN"] == "arn:aws:iam::123456789012:role/ci"
        assert env["AWS_REGION"] == "us-west-2"
        assert env["AWS_WEB_IDENTITY_TOKEN_FILE"].endswith("/run/secrets/AWS_OIDC_TOKEN")
        assert config.files == (("run/secrets/AWS_OIDC_TOKEN", "jwt"),)


class TestFanOutJobs:
    """Tests for the concurrent jobs."""

    def test_static_check(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that the static check runs init, validate and fmt-check."""
        report = terraform_static_check(
            mock_settings,
            sample_module_repo,
            JobOptions(module_path="vpc"),
            RunContext(timeout=30),
        )

        assert sorted(report.labels) == ["fmt-check", "init", "validate"]
        instances = recording_environment.instances  # pyright: ignore[reportAttributeAccessIssue]
        assert len(instances) == 3
        assert all(instance.config.workdir == "modules/vpc" for instance in instances)

    def test_compatibility_check(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that every configured and extra version is checked."""
        report = terraform_version_compatibility_check(
            mock_settings,
            sample_module_repo,
            JobOptions(),
            RunContext(timeout=30),
            extra_versions=["1.11.4", "1.12.0"],
        )

        assert sorted(report.labels) == [
            "1.11.4.init",
            "1.11.4.validate",
            "1.12.0.init",
            "1.12.0.validate",
            "1.12.1.init",
            "1.12.1.validate",
        ]
        instances = recording_environment.instances  # pyright: ignore[reportAttributeAccessIssue]
        for instance in instances:
            assert f"terraform_{instance.label}_" in instance.config.setup_commands[0]

    def test_compatibility_check_failure(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that a failing version is named in the raised error."""
        recording_environment.fail_command = TERRAFORM_INIT  # pyright: ignore[reportAttributeAccessIssue]
        recording_environment.fail_version = "1.12.1"  # pyright: ignore[reportAttributeAccessIssue]

        with pytest.raises(AggregationFailedError) as exc_info:
            _ = terraform_version_compatibility_check(
                mock_settings,
                sample_module_repo,
                ctx=RunContext(timeout=30),
            )

        assert exc_info.value.label.startswith("1.12.1.")
        assert len(exc_info.value.results) == 4


class TestSingleTaskJobs:
    """Tests for the single-environment jobs."""

    def test_exec(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that exec runs one terraform command with its arguments."""
        output = terraform_exec(
            mock_settings,
            sample_module_repo,
            "plan",
            ["-out=plan.tfplan", " "],
            ctx=RunContext(timeout=30),
        )

        assert output == "terraform plan -out=plan.tfplan\n"
        instance = recording_environment.instances[0]  # pyright: ignore[reportAttributeAccessIssue]
        assert instance.executed == [("terraform", "plan", "-out=plan.tfplan")]
        assert instance.teardown_calls == 1

    def test_exec_failure_raises_command_failed(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that a failing single task raises its own error."""
        recording_environment.fail_command = ("terraform", "apply")  # pyright: ignore[reportAttributeAccessIssue]

        with pytest.raises(CommandFailedError) as exc_info:
            _ = terraform_exec(mock_settings, sample_module_repo, "apply", ctx=RunContext(timeout=30))

        assert exc_info.value.label == "apply"

    def test_lint(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that lint installs TFLint and runs it recursively."""
        _ = terraform_lint(mock_settings, sample_module_repo, JobOptions(module_path="vpc"), RunContext(timeout=30))

        instance = recording_environment.instances[0]  # pyright: ignore[reportAttributeAccessIssue]
        assert any("/v0.58.0/" in command for command in instance.config.setup_commands)
        assert instance.executed == [
            ("cat", ".tflint.hcl"),
            ("tflint", "--init"),
            ("tflint", "--recursive"),
        ]

    def test_docs(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that docs installs terraform-docs and writes README.md."""
        _ = terraform_docs(mock_settings, sample_module_repo, JobOptions(module_path="vpc"), RunContext(timeout=30))

        instance = recording_environment.instances[0]  # pyright: ignore[reportAttributeAccessIssue]
        assert any("terraform-docs-v0.20.0-" in command for command in instance.config.setup_commands)
        assert instance.executed[-1] == ("terraform-docs", "markdown", ".", "--output-file", "README.md")

    def test_build_with_fixture(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that build plans with the fixture's var file."""
        _ = terraform_build(
            mock_settings,
            sample_module_repo,
            fixture="dev.tfvars",
            options=JobOptions(module_path="vpc"),
            ctx=RunContext(timeout=30),
        )

        instance = recording_environment.instances[0]  # pyright: ignore[reportAttributeAccessIssue]
        assert instance.executed == [
            ("terraform", "init", "-backend=false"),
            ("terraform", "plan", "-var-file=fixtures/dev.tfvars"),
        ]

    def test_build_without_fixture(
        self,
        mock_settings: Settings,
        sample_module_repo: Path,
        recording_environment: type[FakeEnvironment],
    ) -> None:
        """Test that build plans without a var file by default."""
        _ = terraform_build(mock_settings, sample_module_repo, ctx=RunContext(timeout=30))

        instance = recording_environment.instances[0]  # pyright: ignore[reportAttributeAccessIssue]
        assert instance.executed[-1] == ("terraform", "plan")


class TestModuleFiles:
    """Tests for module file verification."""

    def test_complete_module_passes(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that a complete module passes and lists its files."""
        found = verify_module_files(mock_settings, sample_module_repo, "vpc")

        assert "main.tf" in found
        assert ".tflint.hcl" in found

    def test_missing_module_file(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that a missing .tf file fails the module category."""
        (sample_module_repo / "modules" / "vpc" / "locals.tf").unlink()

        with pytest.raises(ModuleVerificationError) as exc_info:
            _ = verify_module_files(mock_settings, sample_module_repo, "vpc")

        assert exc_info.value.category == "Terraform module"
        assert exc_info.value.missing_files == ["locals.tf"]

    def test_first_missing_category_reported(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that the documentation category is reported before tooling."""
        module_dir = sample_module_repo / "modules" / "vpc"
        (module_dir / "README.md").unlink()
        (module_dir / ".tflint.hcl").unlink()

        with pytest.raises(ModuleVerificationError) as exc_info:
            _ = verify_module_files(mock_settings, sample_module_repo, "vpc")

        assert exc_info.value.category == "documentation"

    def test_extra_files(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that additional mandatory files are enforced last."""
        with pytest.raises(ModuleVerificationError) as exc_info:
            _ = verify_module_files(mock_settings, sample_module_repo, "vpc", ["CHANGELOG.md"])

        assert exc_info.value.category == "additional"

    def test_missing_module_directory(self, mock_settings: Settings, sample_module_repo: Path) -> None:
        """Test that a missing module directory reports every module file."""
        with pytest.raises(ModuleVerificationError) as exc_info:
            _ = verify_module_files(mock_settings, sample_module_repo, "missing")

        assert len(exc_info.value.missing_files) == 5

    def test_is_terraform_module_dir(self, sample_module_repo: Path, tmp_path: Path) -> None:
        """Test module directory detection."""
        empty = tmp_path / "empty"
        empty.mkdir()

        assert is_terraform_module_dir(sample_module_repo / "modules" / "vpc")
        assert not is_terraform_module_dir(empty)
        assert not is_terraform_module_dir(tmp_path / "does-not-exist")
