"""
Execution environments for Terraform tooling.

An execution environment is a prepared runtime (tool binaries installed,
module sources available, environment variables and credentials applied)
that runs command sequences in order against persistent state.

Two layers live here:

    EnvironmentConfig: an immutable description of the runtime. Every
        ``with_*`` call returns a new config, so one base config can be
        reused to derive many concurrent variants without aliasing.

    SubprocessEnvironment: the local backend. ``setup`` materializes a
        config into a private temporary root (a copy of the sources, a
        private bin directory and HOME), ``run`` executes commands with
        subprocess, ``teardown`` removes the root.

Config values may reference the placeholders ``$TFPIPELINE_ROOT``,
``$TFPIPELINE_HOME`` and ``$TFPIPELINE_BIN_DIR``; they are resolved against
the private root when the environment is set up. Any other "$" text is
passed through unchanged.

Usage:
    from tfpipeline.environment import EnvironmentConfig, RunContext, SubprocessEnvironment

    config = (
        EnvironmentConfig()
        .with_terraform("1.12.0")
        .with_workdir("modules/vpc")
        .with_terraform_log_level("INFO")
    )
    env = SubprocessEnvironment(config, source_dir=Path("."), label="vpc")
    ctx = RunContext(timeout=600)
    env.setup(ctx)
    try:
        output = env.run(ctx, [("terraform", "init", "-backend=false"), ("terraform", "validate")])
    finally:
        env.teardown()
"""

import os
import shlex
import shutil
import subprocess
import tempfile
import threading
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from tfpipeline.config import DEFAULT_AWS_REGION
from tfpipeline.errors import CommandFailedError, ConfigurationError, EnvironmentSetupError
from tfpipeline.logging_config import get_logger, log_with_context
from tfpipeline.parsing import CommandLine, find_dot_env_files, parse_dot_env, parse_env_vars, parse_variables
from tfpipeline.tools import (
    detect_platform,
    terraform_docs_install_command,
    terraform_install_command,
    tflint_install_command,
)

logger = get_logger(__name__)

BIN_DIR_PLACEHOLDER = "$TFPIPELINE_BIN_DIR"
ROOT_PLACEHOLDER = "$TFPIPELINE_ROOT"
HOME_PLACEHOLDER = "$TFPIPELINE_HOME"

VALID_TERRAFORM_LOG_LEVELS = ("trace", "debug", "info", "warn", "error", "off")

AWS_KEY_VARIABLES = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN")
MIN_STATE_PERSIST_INTERVAL = 20


def expand_placeholders(value: str, placeholders: dict[str, str]) -> str:
    """
    Replace the $TFPIPELINE_* placeholders in value.

    Only the exact placeholder names are replaced; any other "$" sequence
    (including "$$") is left untouched.
    """
    for name, replacement in placeholders.items():
        value = value.replace(name, replacement)
    return value


class RunContext:
    """
    Cancellation and deadline scope shared by every task of one run.

    Passed to every ``setup``/``run`` call. Environments poll it while a
    command is running and abort the command once it is done.

    Attributes:
        deadline: Monotonic time after which the run is over, or None
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._cancelled = threading.Event()
        self.deadline: float | None = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        """Request cancellation of everything bound to this context."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def done(self) -> bool:
        """Return True once the context is cancelled or past its deadline."""
        return self.cancelled or self.expired

    def reason(self) -> str | None:
        """Describe why the context is done, or None while it is still live."""
        if self.cancelled:
            return "run cancelled"
        if self.expired:
            return "run deadline exceeded"
        return None

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


@runtime_checkable
class ExecutionEnvironment(Protocol):
    """
    A runtime that executes command sequences for exactly one task.

    Handles are owned by a single worker for their whole lifetime and must
    never be shared between concurrent tasks.
    """

    def setup(self, ctx: RunContext) -> None:
        """Prepare the runtime. Raises EnvironmentSetupError on failure."""
        ...

    def run(self, ctx: RunContext, commands: Sequence[CommandLine]) -> str:
        """
        Run commands strictly in order and return the last command's stdout.

        Raises CommandFailedError on the first failing command; later
        commands are not started.
        """
        ...

    def teardown(self) -> None:
        """Release resources. Must be safe to call after a failed setup."""
        ...


@dataclass(frozen=True)
class EnvironmentConfig:
    """
    Immutable description of an execution environment.

    Attributes:
        workdir: Working directory relative to the source root
        env_vars: Plain environment variables, in application order
        secret_vars: Environment variables whose values are never logged
        setup_commands: Shell commands run once during setup, in order
        files: Files written below the private HOME (relative path -> content)
        dot_terraform_version: Version written to .terraform-version in workdir
    """

    workdir: str = "."
    env_vars: tuple[tuple[str, str], ...] = ()
    secret_vars: tuple[tuple[str, str], ...] = field(default=(), repr=False)
    setup_commands: tuple[str, ...] = ()
    files: tuple[tuple[str, str], ...] = field(default=(), repr=False)
    dot_terraform_version: str | None = None

    # Generic

    def with_workdir(self, workdir: str) -> "EnvironmentConfig":
        return replace(self, workdir=workdir or ".")

    def with_env_variable(self, key: str, value: str) -> "EnvironmentConfig":
        return replace(self, env_vars=self.env_vars + ((key, value),))

    def with_env_vars(self, env_vars: list[str]) -> "EnvironmentConfig":
        """
        Add strict KEY=VALUE environment variables.

        Raises:
            ConfigurationError: If an entry is blank or malformed
        """
        return replace(self, env_vars=self.env_vars + tuple(parse_env_vars(env_vars)))

    def with_secret_variable(self, key: str, value: str) -> "EnvironmentConfig":
        return replace(self, secret_vars=self.secret_vars + ((key, value),))

    def with_setup_command(self, command: str) -> "EnvironmentConfig":
        return replace(self, setup_commands=self.setup_commands + (command,))

    def with_file(self, relative_path: str, content: str) -> "EnvironmentConfig":
        return replace(self, files=self.files + ((relative_path, content),))

    def with_cache_buster(self, now: datetime | None = None) -> "EnvironmentConfig":
        """Set a value that changes once a day, invalidating day-old caches."""
        now = now or datetime.now(UTC)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.with_env_variable("TFPIPELINE_CACHE_BUSTER", str(int(day_start.timestamp())))

    # Tools

    def with_terraform(self, version: str) -> "EnvironmentConfig":
        """Install Terraform ``version`` into the private bin directory."""
        os_name, arch = detect_platform()
        return self.with_setup_command(
            terraform_install_command(version, BIN_DIR_PLACEHOLDER, os_name, arch)
        ).with_setup_command("terraform version")

    def with_tflint(self, version: str = "") -> "EnvironmentConfig":
        """Install TFLint; an empty version installs the default one."""
        os_name, arch = detect_platform()
        return self.with_setup_command(
            tflint_install_command(version, BIN_DIR_PLACEHOLDER, os_name, arch)
        ).with_setup_command("tflint --version")

    def with_terraform_docs(self, version: str = "") -> "EnvironmentConfig":
        """Install terraform-docs; an empty version installs the default one."""
        os_name, arch = detect_platform()
        return self.with_setup_command(
            terraform_docs_install_command(version, BIN_DIR_PLACEHOLDER, os_name, arch)
        ).with_setup_command("terraform-docs --version")

    def with_dot_terraform_version_file(self, version: str) -> "EnvironmentConfig":
        return replace(self, dot_terraform_version=version)

    # Terraform behaviour

    def with_terraform_plugin_cache(self, cache_dir: str) -> "EnvironmentConfig":
        return self.with_setup_command(f"mkdir -p {shlex.quote(cache_dir)}").with_env_variable(
            "TF_PLUGIN_CACHE_DIR", cache_dir
        )

    def with_terraform_state_persist_interval(self, seconds: int) -> "EnvironmentConfig":
        """Set TF_STATE_PERSIST_INTERVAL; Terraform ignores values below 20 seconds."""
        return self.with_env_variable(
            "TF_STATE_PERSIST_INTERVAL", str(max(seconds, MIN_STATE_PERSIST_INTERVAL))
        )

    def with_terraform_data_dir(self, data_dir: str = "") -> "EnvironmentConfig":
        data_dir = data_dir or f"{HOME_PLACEHOLDER}/.terraform.d"
        return self.with_env_variable("TF_DATA_DIR", data_dir)

    def with_terraform_log_level(self, level: str) -> "EnvironmentConfig":
        if not level:
            return self
        return self.with_env_variable("TF_LOG", level.lower())

    def with_terraform_log_level_validated(self, level: str) -> "EnvironmentConfig":
        """
        Set TF_LOG, rejecting unknown levels.

        Raises:
            ConfigurationError: If level is not trace/debug/info/warn/error/off
        """
        if level.lower() not in VALID_TERRAFORM_LOG_LEVELS:
            raise ConfigurationError(
                f"invalid Terraform log level '{level}', must be one of: {', '.join(VALID_TERRAFORM_LOG_LEVELS)}",
                config_key="TF_LOG",
                reason=f"Invalid level: {level}",
            )
        return self.with_terraform_log_level(level)

    def with_terraform_log_path(self, log_path: str) -> "EnvironmentConfig":
        if not log_path:
            return self
        return self.with_env_variable("TF_LOG_PATH", log_path)

    def with_terraform_input(self, allow_input: bool) -> "EnvironmentConfig":
        return self.with_env_variable("TF_INPUT", "1" if allow_input else "0")

    def with_terraform_no_input(self) -> "EnvironmentConfig":
        return self.with_terraform_input(False)

    def with_terraform_workspace(self, workspace: str) -> "EnvironmentConfig":
        if not workspace:
            return self
        return self.with_env_variable("TF_WORKSPACE", workspace)

    def with_terraform_parallelism(self, parallelism: int) -> "EnvironmentConfig":
        if parallelism <= 0:
            return self
        return self.with_env_variable("TF_CLI_ARGS_plan", f"-parallelism={parallelism}").with_env_variable(
            "TF_CLI_ARGS_apply", f"-parallelism={parallelism}"
        )

    def with_terraform_cli_args(self, args: str) -> "EnvironmentConfig":
        if not args:
            return self
        return self.with_env_variable("TF_CLI_ARGS", args)

    def with_terraform_cli_args_for_command(self, command: str, args: str) -> "EnvironmentConfig":
        if not command or not args:
            return self
        return self.with_env_variable(f"TF_CLI_ARGS_{command}", args)

    def with_terraform_variable(self, name: str, value: str) -> "EnvironmentConfig":
        if not name:
            return self
        return self.with_env_variable(f"TF_VAR_{name}", value)

    def with_terraform_variables(self, variables: list[str]) -> "EnvironmentConfig":
        """
        Add TF_VAR_* variables from lenient KEY=VALUE entries.

        Raises:
            ConfigurationError: If an entry has no '=' or an empty key
        """
        config = self
        for name, value in parse_variables(variables).items():
            config = config.with_terraform_variable(name, value)
        return config

    def with_terraform_registry_client_timeout(self, timeout_seconds: int) -> "EnvironmentConfig":
        if timeout_seconds <= 0:
            return self
        return self.with_env_variable("TF_REGISTRY_CLIENT_TIMEOUT", str(timeout_seconds))

    def with_terraform_cli_config_file(self, config_path: str) -> "EnvironmentConfig":
        if not config_path:
            return self
        return self.with_env_variable("TF_CLI_CONFIG_FILE", config_path)

    def with_terraform_cloud_organization(self, organization: str) -> "EnvironmentConfig":
        if not organization:
            return self
        return self.with_env_variable("TF_CLOUD_ORGANIZATION", organization)

    def with_terraform_cloud_hostname(self, hostname: str) -> "EnvironmentConfig":
        if not hostname:
            return self
        return self.with_env_variable("TF_CLOUD_HOSTNAME", hostname)

    # Credentials

    def with_aws_keys(
        self,
        access_key_id: str,
        secret_access_key: str,
        region: str = "",
        session_token: str | None = None,
    ) -> "EnvironmentConfig":
        config = (
            self.with_env_variable("AWS_REGION", region or DEFAULT_AWS_REGION)
            .with_secret_variable("AWS_ACCESS_KEY_ID", access_key_id)
            .with_secret_variable("AWS_SECRET_ACCESS_KEY", secret_access_key)
        )
        if session_token:
            config = config.with_secret_variable("AWS_SESSION_TOKEN", session_token)
        return config

    def with_aws_oidc(
        self,
        role_arn: str,
        oidc_token: str,
        token_name: str = "AWS_OIDC_TOKEN",
        region: str = "",
        session_name: str = "",
    ) -> "EnvironmentConfig":
        """
        Authenticate to AWS through web identity federation.

        The OIDC token is written below the private HOME and the AWS SDKs
        assume ``role_arn`` with it. Static AWS keys set earlier are dropped
        so they cannot take precedence over the web identity.

        Raises:
            ConfigurationError: If role_arn or oidc_token is empty
        """
        if not role_arn or not oidc_token:
            raise ConfigurationError(
                "AWS OIDC authentication requires a role ARN and a token",
                config_key="AWS_ROLE_ARN" if not role_arn else token_name,
                reason="Empty value",
            )

        token_path = f"run/secrets/{token_name}"
        config = replace(
            self,
            env_vars=tuple((k, v) for k, v in self.env_vars if k not in AWS_KEY_VARIABLES),
            secret_vars=tuple((k, v) for k, v in self.secret_vars if k not in AWS_KEY_VARIABLES),
        )
        return (
            config.with_file(token_path, oidc_token)
            .with_env_variable("AWS_REGION", region or DEFAULT_AWS_REGION)
            .with_env_variable("AWS_ROLE_ARN", role_arn)
            .with_env_variable("AWS_ROLE_SESSION_NAME", session_name or f"tfpipeline-{uuid.uuid4()}")
            .with_env_variable("AWS_WEB_IDENTITY_TOKEN_FILE", f"{HOME_PLACEHOLDER}/{token_path}")
        )

    def with_github_token(self, token: str) -> "EnvironmentConfig":
        return self.with_secret_variable("GITHUB_TOKEN", token)

    def with_gitlab_token(self, token: str) -> "EnvironmentConfig":
        return self.with_secret_variable("GITLAB_TOKEN", token)

    def with_terraform_token(self, token: str) -> "EnvironmentConfig":
        return self.with_secret_variable("TF_TOKEN_app_terraform_io", token)

    def with_terraform_registry_gitlab_token(self, token: str) -> "EnvironmentConfig":
        return self.with_secret_variable("TF_TOKEN_gitlab_com", token)

    def with_netrc(self, machine: str, login: str, password: str) -> "EnvironmentConfig":
        """Write a .netrc in the private HOME so git/terraform can fetch private modules."""
        return self.with_file(".netrc", f"machine {machine}\nlogin {login}\npassword {password}\n")

    def with_ssh_auth_socket(
        self,
        socket_path: str,
        known_hosts: Sequence[str] = ("github.com", "gitlab.com"),
    ) -> "EnvironmentConfig":
        """
        Forward an SSH agent socket for git@ module sources.

        Scans host keys for ``known_hosts`` into a private known_hosts file
        and points git's ssh at it.
        """
        known_hosts_file = f"{HOME_PLACEHOLDER}/.ssh/known_hosts"
        quoted_file = shlex.quote(known_hosts_file)
        config = self.with_setup_command(f"mkdir -p {shlex.quote(f'{HOME_PLACEHOLDER}/.ssh')}")
        for host in known_hosts:
            config = config.with_setup_command(f"ssh-keyscan {shlex.quote(host)} >> {quoted_file}")
        return (
            config.with_setup_command(f"touch {quoted_file} && chmod 600 {quoted_file}")
            .with_env_variable("SSH_AUTH_SOCK", socket_path)
            .with_env_variable("GIT_SSH_COMMAND", f"ssh -o UserKnownHostsFile={known_hosts_file}")
        )

    def with_dot_env_files(self, source_dir: Path) -> "EnvironmentConfig":
        """
        Load every .env file at the root of ``source_dir``.

        Variables from files whose name contains "secret" become secret
        variables.

        Raises:
            ConfigurationError: If no .env file exists or a file contains a
                malformed line
        """
        env_files = find_dot_env_files(source_dir)
        if not env_files:
            raise ConfigurationError(
                f"no .env files found in {source_dir}",
                config_key="load_dot_env_file",
                reason="Loading .env files was requested but none exist",
            )

        config = self
        for env_file in env_files:
            is_secret = "secret" in env_file.name
            for key, value in parse_dot_env(env_file.read_text(encoding="utf-8"), env_file.name):
                if is_secret:
                    config = config.with_secret_variable(key, value)
                else:
                    config = config.with_env_variable(key, value)

            log_with_context(
                logger,
                "debug",
                "Loaded dot env file",
                env_file=env_file.name,
                secret=is_secret,
            )
        return config


class SubprocessEnvironment:
    """
    Local execution backend running commands with subprocess.

    Every instance works in its own temporary root holding a copy of the
    sources, so concurrent ``terraform init`` runs for different versions
    never share a ``.terraform`` directory.

    Attributes:
        config: Environment description applied during setup
        source_dir: Source root copied into the private root
        label: Task label used in raised errors
        poll_interval: Seconds between cancellation checks of a running command
    """

    def __init__(
        self,
        config: EnvironmentConfig,
        source_dir: Path,
        label: str = "",
        poll_interval: float = 0.5,
        base_env: dict[str, str] | None = None,
    ) -> None:
        self.config: EnvironmentConfig = config
        self.source_dir: Path = Path(source_dir)
        self.label: str = label
        self.poll_interval: float = poll_interval
        self._base_env: dict[str, str] = dict(os.environ if base_env is None else base_env)
        self._root: Path | None = None
        self._env: dict[str, str] = {}

    @property
    def root(self) -> Path | None:
        return self._root

    @property
    def workdir(self) -> Path:
        if self._root is None:
            raise EnvironmentSetupError(self.label, "environment has not been set up")
        return self._root / "src" / self.config.workdir

    def setup(self, ctx: RunContext) -> None:
        """
        Materialize the config into a private temporary root.

        Raises:
            EnvironmentSetupError: If copying sources, writing files or any
                setup command fails
        """
        if ctx.done():
            raise EnvironmentSetupError(self.label, ctx.reason() or "run is over")

        root = Path(tempfile.mkdtemp(prefix="tfpipeline_"))
        self._root = root
        bin_dir = root / "bin"
        home_dir = root / "home"

        try:
            _ = shutil.copytree(
                self.source_dir,
                root / "src",
                ignore=shutil.ignore_patterns(".terraform"),
                symlinks=True,
            )
            bin_dir.mkdir()
            home_dir.mkdir()
        except OSError as e:
            raise EnvironmentSetupError(self.label, f"failed to prepare sources: {e}") from e

        placeholders = {
            ROOT_PLACEHOLDER: str(root),
            HOME_PLACEHOLDER: str(home_dir),
            BIN_DIR_PLACEHOLDER: str(bin_dir),
        }

        env = dict(self._base_env)
        env.update({name.lstrip("$"): value for name, value in placeholders.items()})
        env["HOME"] = str(home_dir)
        env["PATH"] = os.pathsep.join([str(bin_dir), self._base_env.get("PATH", os.defpath)])
        for key, value in self.config.env_vars:
            env[key] = expand_placeholders(value, placeholders)
        for key, value in self.config.secret_vars:
            env[key] = value
        self._env = env

        if not self.workdir.is_dir():
            raise EnvironmentSetupError(
                self.label,
                f"working directory '{self.config.workdir}' does not exist in {self.source_dir}",
            )

        try:
            for relative_path, content in self.config.files:
                target = home_dir / relative_path
                target.parent.mkdir(parents=True, exist_ok=True)
                _ = target.write_text(content, encoding="utf-8")
                target.chmod(0o600)

            if self.config.dot_terraform_version:
                _ = (self.workdir / ".terraform-version").write_text(
                    f"{self.config.dot_terraform_version}\n", encoding="utf-8"
                )
        except OSError as e:
            raise EnvironmentSetupError(self.label, f"failed to write files: {e}") from e

        for command in self.config.setup_commands:
            expanded = expand_placeholders(command, placeholders)
            try:
                _ = self._execute(ctx, ("sh", "-c", expanded), cwd=root)
            except CommandFailedError as e:
                raise EnvironmentSetupError(self.label, e.cause) from e

        log_with_context(
            logger,
            "debug",
            "Environment ready",
            label=self.label,
            root=str(root),
            setup_commands=len(self.config.setup_commands),
        )

    def run(self, ctx: RunContext, commands: Sequence[CommandLine]) -> str:
        """
        Run commands in the working directory, strictly in order.

        Returns:
            Stdout of the last command ("" when commands is empty)

        Raises:
            CommandFailedError: On the first command that fails, times out
                or is cancelled
        """
        output = ""
        for command in commands:
            output = self._execute(ctx, tuple(command), cwd=self.workdir)
        return output

    def teardown(self) -> None:
        if self._root is not None:
            shutil.rmtree(self._root, ignore_errors=True)
            self._root = None

    def _execute(self, ctx: RunContext, command: CommandLine, cwd: Path) -> str:
        if ctx.done():
            raise CommandFailedError(self.label, command, ctx.reason() or "run is over")

        log_with_context(
            logger,
            "debug",
            "Running command",
            label=self.label,
            command=" ".join(command),
        )

        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                env=self._env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise CommandFailedError(self.label, command, e) from e

        # Poll in small increments so cancellation is noticed while the command runs
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if ctx.done():
                    process.kill()
                    _ = process.communicate()
                    raise CommandFailedError(self.label, command, ctx.reason() or "run is over")

        if process.returncode != 0:
            detail = (stderr or stdout).strip()[-2000:]
            raise CommandFailedError(
                self.label,
                command,
                f"exit status {process.returncode}: {detail}" if detail else f"exit status {process.returncode}",
                exit_code=process.returncode,
            )
        return stdout
