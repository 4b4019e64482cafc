"""
CLI interface for tfpipeline.

Runs the pipeline jobs against a local checkout of a Terraform module
repository.

Usage:
    tfpipeline static-check --module vpc
    tfpipeline compat-check --module vpc --versions 1.11.4,1.12.2
    tfpipeline exec plan --module vpc --args "-out=plan.tfplan,-lock=false"
    tfpipeline verify-files --module vpc
"""

import argparse
import os
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from types import FrameType
from typing import Any

from tfpipeline.config import Settings, get_settings
from tfpipeline.credentials import assume_role_with_web_identity, resolve_aws_credentials
from tfpipeline.environment import RunContext
from tfpipeline.errors import AggregationFailedError, ConfigurationError, PipelineError
from tfpipeline.jobs import (
    JobOptions,
    terraform_build,
    terraform_docs,
    terraform_exec,
    terraform_lint,
    terraform_static_check,
    terraform_version_compatibility_check,
    verify_module_files,
)
from tfpipeline.logging_config import get_logger, log_with_context, setup_logging
from tfpipeline.parsing import parse_command_args

logger = get_logger(__name__)

SignalHandler = Callable[[int, FrameType | None], Any] | int | signal.Handlers | None


def main(argv: list[str] | None = None) -> int:
    """
    CLI main entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    common = argparse.ArgumentParser(add_help=False)
    _ = common.add_argument(
        "--source-dir",
        type=str,
        default=".",
        help="Repository checkout holding the modules (default: .)",
    )
    _ = common.add_argument(
        "--module",
        type=str,
        default="",
        help="Module name below the modules root (default: source root)",
    )
    _ = common.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra environment variable (repeatable)",
    )
    _ = common.add_argument(
        "--load-dot-env",
        action="store_true",
        help="Load .env files found at the source root",
    )
    _ = common.add_argument(
        "--no-cache",
        action="store_true",
        help="Skip the shared plugin cache",
    )
    _ = common.add_argument(
        "--ssh-socket",
        type=str,
        default=os.environ.get("SSH_AUTH_SOCK", ""),
        help="SSH agent socket for git@ module sources (default: $SSH_AUTH_SOCK)",
    )
    _ = common.add_argument(
        "--tf-log",
        type=str,
        default="",
        help="Terraform TF_LOG level",
    )
    _ = common.add_argument(
        "--dot-terraform-version",
        type=str,
        default="",
        help="Version written to .terraform-version",
    )
    _ = common.add_argument(
        "--aws",
        action="store_true",
        help="Resolve AWS credentials and pass them to Terraform",
    )
    _ = common.add_argument(
        "--aws-profile",
        type=str,
        default=None,
        help="AWS profile used with --aws",
    )
    _ = common.add_argument(
        "--aws-role-arn",
        type=str,
        default=None,
        help="Role assumed with the OIDC token from $AWS_OIDC_TOKEN",
    )

    parser = argparse.ArgumentParser(
        description="tfpipeline - Concurrent Terraform validation pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    _ = subparsers.add_parser(
        "static-check",
        parents=[common],
        help="Run init, validate and fmt-check concurrently",
    )

    compat_parser = subparsers.add_parser(
        "compat-check",
        parents=[common],
        help="Validate the module against every compatibility version",
    )
    _ = compat_parser.add_argument(
        "--versions",
        type=str,
        default="",
        help="Comma separated versions added to the configured ones",
    )

    exec_parser = subparsers.add_parser(
        "exec",
        parents=[common],
        help="Run one terraform command",
    )
    _ = exec_parser.add_argument("terraform_command", help="Terraform command (e.g. plan)")
    _ = exec_parser.add_argument(
        "--args",
        type=str,
        default="",
        help="Comma separated command arguments",
    )

    lint_parser = subparsers.add_parser(
        "lint",
        parents=[common],
        help="Run TFLint",
    )
    _ = lint_parser.add_argument("--tflint-version", type=str, default="")

    docs_parser = subparsers.add_parser(
        "docs",
        parents=[common],
        help="Generate README.md with terraform-docs",
    )
    _ = docs_parser.add_argument("--terraform-docs-version", type=str, default="")

    build_parser = subparsers.add_parser(
        "build",
        parents=[common],
        help="Run terraform init and plan",
    )
    _ = build_parser.add_argument(
        "--fixture",
        type=str,
        default="",
        help=".tfvars file below the fixtures directory",
    )

    verify_parser = subparsers.add_parser(
        "verify-files",
        parents=[common],
        help="Check the module carries its mandatory files",
    )
    _ = verify_parser.add_argument(
        "--extra-files",
        type=str,
        default="",
        help="Comma separated additional mandatory files",
    )

    args = parser.parse_args(argv)

    command: str | None = str(args.command) if args.command else None
    if not command:
        parser.print_help()
        return 1

    # Load configuration
    try:
        settings = get_settings()
    except Exception as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level)

    try:
        if command == "verify-files":
            return cmd_verify_files(args, settings)

        options = build_job_options(args)
        ctx = RunContext(timeout=settings.command_timeout_seconds)
        previous_handlers = _install_cancel_handlers(ctx)
        try:
            return _run_command(command, args, settings, options, ctx)
        finally:
            _restore_signal_handlers(previous_handlers)

    except AggregationFailedError as e:
        _print_failures(e)
        return 1

    except PipelineError as e:
        log_with_context(
            logger,
            "error",
            "Command failed",
            command=command,
            error=str(e),
        )
        print(f"Error: {e}", file=sys.stderr)
        return 1


def build_job_options(args: argparse.Namespace) -> JobOptions:
    """
    Translate parsed arguments into JobOptions.

    Tokens are read from GITHUB_TOKEN, GITLAB_TOKEN and TF_TOKEN_gitlab_com.
    With --aws-role-arn the OIDC token is read from AWS_OIDC_TOKEN. Combined
    with --aws, the token is exchanged for temporary keys up front; otherwise
    Terraform assumes the role itself.

    Raises:
        ConfigurationError: If AWS credentials were requested but none
            resolve, or --aws-role-arn is given without AWS_OIDC_TOKEN
    """
    aws_oidc_token = None
    if args.aws_role_arn:
        aws_oidc_token = os.environ.get("AWS_OIDC_TOKEN") or None
        if aws_oidc_token is None:
            raise ConfigurationError(
                "--aws-role-arn requires the AWS_OIDC_TOKEN environment variable",
                config_key="AWS_OIDC_TOKEN",
                reason="Not set",
            )

    aws_credentials = None
    aws_role_arn = args.aws_role_arn
    if args.aws and aws_oidc_token is not None:
        aws_credentials = assume_role_with_web_identity(args.aws_role_arn, aws_oidc_token)
        aws_role_arn = aws_oidc_token = None
    elif args.aws:
        aws_credentials = resolve_aws_credentials(profile=args.aws_profile)

    return JobOptions(
        module_path=args.module,
        aws_credentials=aws_credentials,
        aws_role_arn=aws_role_arn,
        aws_oidc_token=aws_oidc_token,
        terraform_registry_gitlab_token=os.environ.get("TF_TOKEN_gitlab_com") or None,
        github_token=os.environ.get("GITHUB_TOKEN") or None,
        gitlab_token=os.environ.get("GITLAB_TOKEN") or None,
        env_vars=tuple(args.env),
        load_dot_env_file=args.load_dot_env,
        no_cache=args.no_cache,
        git_ssh_socket=args.ssh_socket or None,
        log_level=args.tf_log,
        dot_terraform_version=args.dot_terraform_version,
        tflint_version=getattr(args, "tflint_version", ""),
        terraform_docs_version=getattr(args, "terraform_docs_version", ""),
    )


def _run_command(
    command: str,
    args: argparse.Namespace,
    settings: Settings,
    options: JobOptions,
    ctx: RunContext,
) -> int:
    if command == "static-check":
        return cmd_static_check(args, settings, options, ctx)
    if command == "compat-check":
        return cmd_compat_check(args, settings, options, ctx)
    if command == "exec":
        return cmd_exec(args, settings, options, ctx)
    if command == "lint":
        return cmd_lint(args, settings, options, ctx)
    if command == "docs":
        return cmd_docs(args, settings, options, ctx)
    if command == "build":
        return cmd_build(args, settings, options, ctx)
    print(f"Unknown command: {command}", file=sys.stderr)
    return 1


def _install_cancel_handlers(ctx: RunContext) -> dict[int, SignalHandler]:
    """Route SIGTERM/SIGINT to ctx.cancel() and return the handlers they replace."""

    def handler(signum: int, frame: FrameType | None) -> None:
        _ = frame
        log_with_context(
            logger,
            "warning",
            "Cancellation signal received",
            signal=signum,
        )
        ctx.cancel()

    previous: dict[int, SignalHandler] = {}
    for signum in (signal.SIGTERM, signal.SIGINT):
        previous[signum] = signal.signal(signum, handler)
    return previous


def _restore_signal_handlers(previous: dict[int, SignalHandler]) -> None:
    for signum, handler in previous.items():
        # None means the handler was not installed from Python; fall back to the default
        _ = signal.signal(signum, signal.SIG_DFL if handler is None else handler)


def _print_failures(error: AggregationFailedError) -> None:
    print(f"Error: {error}", file=sys.stderr)
    for result in error.results:
        if result.error is not None:
            print(f"  {result.label}: {result.error}", file=sys.stderr)


def cmd_static_check(
    args: argparse.Namespace,
    settings: Settings,
    options: JobOptions,
    ctx: RunContext,
) -> int:
    """
    Run the static checks and print the aggregated report.

    Returns:
        Exit code
    """
    report = terraform_static_check(settings, Path(args.source_dir), options, ctx)
    print(report.render())
    return 0


def cmd_compat_check(
    args: argparse.Namespace,
    settings: Settings,
    options: JobOptions,
    ctx: RunContext,
) -> int:
    """
    Run the version compatibility matrix and print the aggregated report.

    Returns:
        Exit code
    """
    report = terraform_version_compatibility_check(
        settings,
        Path(args.source_dir),
        options,
        ctx,
        extra_versions=parse_command_args(args.versions),
    )
    print(report.render())
    return 0


def cmd_exec(
    args: argparse.Namespace,
    settings: Settings,
    options: JobOptions,
    ctx: RunContext,
) -> int:
    output = terraform_exec(
        settings,
        Path(args.source_dir),
        args.terraform_command,
        parse_command_args(args.args),
        options,
        ctx,
    )
    print(output, end="")
    return 0


def cmd_lint(
    args: argparse.Namespace,
    settings: Settings,
    options: JobOptions,
    ctx: RunContext,
) -> int:
    print(terraform_lint(settings, Path(args.source_dir), options, ctx), end="")
    return 0


def cmd_docs(
    args: argparse.Namespace,
    settings: Settings,
    options: JobOptions,
    ctx: RunContext,
) -> int:
    print(terraform_docs(settings, Path(args.source_dir), options, ctx), end="")
    return 0


def cmd_build(
    args: argparse.Namespace,
    settings: Settings,
    options: JobOptions,
    ctx: RunContext,
) -> int:
    print(terraform_build(settings, Path(args.source_dir), args.fixture, options, ctx), end="")
    return 0


def cmd_verify_files(args: argparse.Namespace, settings: Settings) -> int:
    """
    Verify the module's mandatory files.

    Returns:
        Exit code
    """
    if not args.module:
        print("--module is required for verify-files", file=sys.stderr)
        return 1

    found = verify_module_files(
        settings,
        Path(args.source_dir),
        args.module,
        parse_command_args(args.extra_files),
    )
    print(f"All mandatory files present in {settings.module_execution_path(args.module)}:")
    for name in found:
        print(f"  {name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
