"""
Pipeline jobs for Terraform modules.

Each job derives task environments from one immutable base configuration
built from Settings and JobOptions, runs its commands, and returns the
command output (single-task jobs) or an AggregateReport (fan-out jobs).

Jobs:
    terraform_static_check: init, validate and fmt-check run concurrently
    terraform_version_compatibility_check: init and validate against every
        configured Terraform version, concurrently
    terraform_exec: one arbitrary terraform command
    terraform_lint: TFLint against the module
    terraform_docs: README generation with terraform-docs
    terraform_build: init and plan, optionally with a .tfvars fixture
    verify_module_files: mandatory file presence checks

Usage:
    from tfpipeline.config import get_settings
    from tfpipeline.jobs import JobOptions, terraform_version_compatibility_check

    report = terraform_version_compatibility_check(
        get_settings(),
        source_dir=Path("."),
        options=JobOptions(module_path="vpc"),
    )
    print(report.render())
"""

import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

from tfpipeline.config import Settings
from tfpipeline.credentials import AwsCredentials
from tfpipeline.environment import EnvironmentConfig, RunContext, SubprocessEnvironment
from tfpipeline.errors import ModuleVerificationError
from tfpipeline.logging_config import get_logger, log_with_context
from tfpipeline.matrix import COMPATIBILITY_CHECKS, STATIC_CHECKS, build_checks, build_matrix
from tfpipeline.orchestrator import AggregateReport, TaskDescriptor, execute_task, run_matrix
from tfpipeline.parsing import CommandLine, build_terraform_command

logger = get_logger(__name__)

MANDATORY_MODULE_FILES = ["main.tf", "variables.tf", "outputs.tf", "locals.tf", "versions.tf"]
MANDATORY_DOC_FILES = ["README.md", ".terraform-docs.yml"]
MANDATORY_TOOLING_FILES = [".tflint.hcl"]
MODULE_ENTRY_FILES = ["main.tf", "variables.tf", "outputs.tf"]

TFLINT_CONFIG_FILE = ".tflint.hcl"
TERRAFORM_DOCS_CONFIG_FILE = ".terraform-docs.yml"


@dataclass(frozen=True)
class JobOptions:
    """
    Per-invocation options shared by all jobs.

    Attributes:
        module_path: Module name below Settings.modules_root_path ("" = source root)
        aws_credentials: AWS credentials injected as AWS_* variables
        aws_role_arn: Role assumed through web identity (needs aws_oidc_token)
        aws_oidc_token: OIDC token written to AWS_WEB_IDENTITY_TOKEN_FILE
        terraform_registry_gitlab_token: Token for the GitLab Terraform registry
        github_token: Token exported as GITHUB_TOKEN
        gitlab_token: Token exported as GITLAB_TOKEN
        env_vars: Extra KEY=VALUE environment variables
        load_dot_env_file: Load .env files found at the source root
        no_cache: Skip the shared plugin cache and set a cache buster
        git_ssh_socket: SSH agent socket forwarded for git@ module sources
        log_level: Terraform TF_LOG level
        dot_terraform_version: Version written to .terraform-version
        tflint_version: TFLint version to install (also installs TFLint)
        terraform_docs_version: terraform-docs version to install (also installs it)
    """

    module_path: str = ""
    aws_credentials: AwsCredentials | None = None
    aws_role_arn: str | None = None
    aws_oidc_token: str | None = field(default=None, repr=False)
    terraform_registry_gitlab_token: str | None = field(default=None, repr=False)
    github_token: str | None = field(default=None, repr=False)
    gitlab_token: str | None = field(default=None, repr=False)
    env_vars: tuple[str, ...] = ()
    load_dot_env_file: bool = False
    no_cache: bool = False
    git_ssh_socket: str | None = None
    log_level: str = ""
    dot_terraform_version: str = ""
    tflint_version: str = ""
    terraform_docs_version: str = ""


def base_environment_config(
    settings: Settings,
    source_dir: Path,
    options: JobOptions,
    terraform_version: str | None = None,
) -> EnvironmentConfig:
    """
    Build the environment description shared by a job's tasks.

    Raises:
        ConfigurationError: If env vars or .env files are malformed
    """
    config = EnvironmentConfig().with_terraform(terraform_version or settings.terraform_version)

    if options.no_cache:
        config = config.with_cache_buster()
    else:
        config = config.with_terraform_plugin_cache(settings.plugin_cache_dir)

    if options.aws_credentials is not None:
        credentials = options.aws_credentials
        config = config.with_aws_keys(
            credentials.access_key_id,
            credentials.secret_access_key,
            credentials.region or settings.aws_region,
            credentials.session_token,
        )

    if options.aws_role_arn and options.aws_oidc_token:
        config = config.with_aws_oidc(
            options.aws_role_arn,
            options.aws_oidc_token,
            region=settings.aws_region,
        )

    if options.terraform_registry_gitlab_token:
        config = config.with_terraform_registry_gitlab_token(options.terraform_registry_gitlab_token)

    if options.gitlab_token:
        config = config.with_gitlab_token(options.gitlab_token)

    if options.github_token:
        config = config.with_github_token(options.github_token)

    config = config.with_terraform_log_level(options.log_level)

    if options.dot_terraform_version:
        config = config.with_dot_terraform_version_file(options.dot_terraform_version)

    if options.tflint_version:
        config = config.with_tflint(options.tflint_version)

    if options.terraform_docs_version:
        config = config.with_terraform_docs(options.terraform_docs_version)

    if options.module_path:
        config = config.with_workdir(settings.module_execution_path(options.module_path))

    if options.env_vars:
        config = config.with_env_vars(list(options.env_vars))

    if options.git_ssh_socket:
        config = config.with_ssh_auth_socket(options.git_ssh_socket)

    if options.load_dot_env_file:
        config = config.with_dot_env_files(source_dir)

    return config


def environment_factory(
    settings: Settings,
    source_dir: Path,
    options: JobOptions,
) -> Callable[[str], SubprocessEnvironment]:
    """Return a factory producing an independent environment per Terraform version."""

    def factory(version: str) -> SubprocessEnvironment:
        config = base_environment_config(settings, source_dir, options, terraform_version=version)
        return SubprocessEnvironment(config, source_dir, label=version)

    return factory


def _default_context(settings: Settings, ctx: RunContext | None) -> RunContext:
    return ctx if ctx is not None else RunContext(timeout=settings.command_timeout_seconds)


def _run_single(
    settings: Settings,
    source_dir: Path,
    config: EnvironmentConfig,
    label: str,
    commands: Sequence[CommandLine],
    ctx: RunContext | None,
) -> str:
    result = execute_task(
        _default_context(settings, ctx),
        TaskDescriptor(
            label=label,
            commands=tuple(commands),
            environment=SubprocessEnvironment(config, source_dir, label=label),
        ),
    )
    if result.error is not None:
        raise result.error
    return result.output


def terraform_static_check(
    settings: Settings,
    source_dir: Path,
    options: JobOptions | None = None,
    ctx: RunContext | None = None,
) -> AggregateReport:
    """
    Run init, validate and fmt-check concurrently, each in its own environment.

    Raises:
        AggregationFailedError: When any check failed
    """
    options = options or JobOptions()
    factory = environment_factory(settings, source_dir, options)
    descriptors = build_checks(STATIC_CHECKS, lambda: factory(settings.terraform_version))

    log_with_context(
        logger,
        "info",
        "Starting static check",
        module_path=options.module_path,
        checks=[descriptor.label for descriptor in descriptors],
    )

    return run_matrix(
        _default_context(settings, ctx),
        descriptors,
        max_workers=settings.max_concurrent_workers,
    )


def terraform_version_compatibility_check(
    settings: Settings,
    source_dir: Path,
    options: JobOptions | None = None,
    ctx: RunContext | None = None,
    extra_versions: Sequence[str] = (),
) -> AggregateReport:
    """
    Run init and validate against every compatibility version concurrently.

    Versions are Settings.compatibility_versions followed by extra_versions,
    de-duplicated.

    Raises:
        AggregationFailedError: Naming the first failing "<version>.<check>"
    """
    options = options or JobOptions()
    versions = [*settings.compatibility_versions, *extra_versions]
    descriptors = build_matrix(
        versions,
        COMPATIBILITY_CHECKS,
        environment_factory(settings, source_dir, options),
    )

    log_with_context(
        logger,
        "info",
        "Starting version compatibility check",
        module_path=options.module_path,
        versions=versions,
        tasks=len(descriptors),
    )

    return run_matrix(
        _default_context(settings, ctx),
        descriptors,
        max_workers=settings.max_concurrent_workers,
    )


def terraform_exec(
    settings: Settings,
    source_dir: Path,
    command: str,
    arguments: Sequence[str] = (),
    options: JobOptions | None = None,
    ctx: RunContext | None = None,
) -> str:
    """
    Run one terraform command and return its stdout.

    Raises:
        ConfigurationError: If command is blank
        CommandFailedError: If the command fails
        EnvironmentSetupError: If the environment cannot be prepared
    """
    options = options or JobOptions()
    terraform_command = build_terraform_command(command, list(arguments))
    config = base_environment_config(settings, source_dir, options)
    return _run_single(settings, source_dir, config, command.strip(), [terraform_command], ctx)


def terraform_lint(
    settings: Settings,
    source_dir: Path,
    options: JobOptions | None = None,
    ctx: RunContext | None = None,
) -> str:
    """Run TFLint recursively using the module's .tflint.hcl."""
    options = options or JobOptions()
    options = replace(options, tflint_version=options.tflint_version or settings.tflint_version)
    config = base_environment_config(settings, source_dir, options)
    commands: list[CommandLine] = [
        ("cat", TFLINT_CONFIG_FILE),
        ("tflint", "--init"),
        ("tflint", "--recursive"),
    ]
    return _run_single(settings, source_dir, config, "lint", commands, ctx)


def terraform_docs(
    settings: Settings,
    source_dir: Path,
    options: JobOptions | None = None,
    ctx: RunContext | None = None,
) -> str:
    """Generate README.md with terraform-docs using the module's .terraform-docs.yml."""
    options = options or JobOptions()
    options = replace(
        options,
        terraform_docs_version=options.terraform_docs_version or settings.terraform_docs_version,
    )
    config = base_environment_config(settings, source_dir, options)
    commands: list[CommandLine] = [
        ("cat", TERRAFORM_DOCS_CONFIG_FILE),
        ("terraform-docs", "markdown", ".", "--output-file", "README.md"),
    ]
    return _run_single(settings, source_dir, config, "docs", commands, ctx)


def terraform_build(
    settings: Settings,
    source_dir: Path,
    fixture: str = "",
    options: JobOptions | None = None,
    ctx: RunContext | None = None,
) -> str:
    """Run terraform init and plan, with ``-var-file`` when a fixture is given."""
    options = options or JobOptions()
    config = base_environment_config(settings, source_dir, options)

    plan: CommandLine = ("terraform", "plan")
    if fixture:
        plan = (*plan, f"-var-file={os.path.join(settings.fixtures_path, fixture)}")

    commands: list[CommandLine] = [("terraform", "init", "-backend=false"), plan]
    return _run_single(settings, source_dir, config, "build", commands, ctx)


def is_terraform_module_dir(path: Path, extra_files: Sequence[str] = ()) -> bool:
    """Return True when path holds at least one of the module entry files."""
    if not path.is_dir():
        return False
    candidates = {*MODULE_ENTRY_FILES, *extra_files}
    return any(
        entry.is_file() and entry.suffix == ".tf" and entry.name in candidates
        for entry in path.iterdir()
    )


def verify_module_files(
    settings: Settings,
    source_dir: Path,
    module_path: str,
    extra_files: Sequence[str] = (),
) -> list[str]:
    """
    Check that a module carries its mandatory files.

    Categories are checked in order (module, documentation, tooling,
    additional) and the first incomplete category is reported.

    Returns:
        Sorted names of the entries found in the module directory

    Raises:
        ModuleVerificationError: For the first category with missing files
    """
    module_dir = source_dir / settings.module_execution_path(module_path)
    found = {entry.name for entry in module_dir.iterdir()} if module_dir.is_dir() else set()

    categories = [
        ("Terraform module", MANDATORY_MODULE_FILES),
        ("documentation", MANDATORY_DOC_FILES),
        ("tooling", MANDATORY_TOOLING_FILES),
        ("additional", list(extra_files)),
    ]
    for category, required in categories:
        missing = [name for name in required if name not in found]
        if missing:
            log_with_context(
                logger,
                "error",
                "Module verification failed",
                module_path=module_path,
                category=category,
                missing=missing,
            )
            raise ModuleVerificationError(category, missing, required)

    log_with_context(
        logger,
        "info",
        "Module verification passed",
        module_path=module_path,
    )
    return sorted(found)
