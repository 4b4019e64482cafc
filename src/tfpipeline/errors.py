"""
Custom exception classes for tfpipeline.

This module defines the exceptions raised by the pipeline helpers. Failures
inside concurrent tasks are never raised across thread boundaries; they are
carried as data inside a TaskResult and converted into a raised exception by
the result aggregator only.

Exception Hierarchy:
    PipelineError (base)
    ├── CommandFailedError (a command in a task's sequence failed)
    ├── EnvironmentSetupError (a task's environment could not be prepared)
    ├── AggregationFailedError (first failure surfaced by the aggregator)
    ├── ConfigurationError (invalid settings or malformed input)
    └── ModuleVerificationError (mandatory module files are missing)

Retry Semantics:
    Nothing in this package retries. Every error is created with
    retryable=False; retry policy belongs to the caller.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tfpipeline.orchestrator import TaskResult


class PipelineError(Exception):
    """
    Base exception for all tfpipeline errors.

    Attributes:
        message: Human-readable error description
        retryable: Whether this error should be retried
        context: Additional context dictionary for structured logging
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        context: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.context = context or {}

    def __str__(self) -> str:
        """Return string representation of error."""
        return self.message


class CommandFailedError(PipelineError):
    """
    A command inside a task's command sequence failed.

    Aborts the remaining commands of that task only. Sibling tasks keep
    running.

    Attributes:
        label: Label of the task the command belonged to
        command: The command line that failed
        cause: Underlying failure description or exception
        exit_code: Process exit code, if the process ran at all
    """

    def __init__(
        self,
        label: str,
        command: tuple[str, ...] | list[str],
        cause: BaseException | str,
        exit_code: int | None = None,
    ) -> None:
        command_text = " ".join(command)
        context: dict[str, object] = {
            "label": label,
            "command": command_text,
            "exit_code": exit_code,
        }
        super().__init__(
            f"command '{command_text}' failed on task '{label}': {cause}",
            retryable=False,
            context=context,
        )
        self.label = label
        self.command = tuple(command)
        self.cause = cause
        self.exit_code = exit_code


class EnvironmentSetupError(PipelineError):
    """
    The execution environment for a task could not be prepared.

    Raised before any of the task's commands ran. Aggregated exactly like a
    CommandFailedError.

    Attributes:
        label: Label of the task whose environment failed
        cause: Underlying failure description or exception
    """

    def __init__(self, label: str, cause: BaseException | str) -> None:
        super().__init__(
            f"failed to set up environment for task '{label}': {cause}",
            retryable=False,
            context={"label": label},
        )
        self.label = label
        self.cause = cause


class AggregationFailedError(PipelineError):
    """
    Externally visible failure of a fan-out run.

    Wraps the first task error observed by the aggregator together with the
    label of the task that produced it.

    Attributes:
        label: Label of the failing task (e.g. "1.12.1.init")
        cause: The task's underlying error
        results: Every task result drained before the error was raised
    """

    def __init__(
        self,
        label: str,
        cause: BaseException,
        results: tuple["TaskResult", ...] = (),
    ) -> None:
        super().__init__(
            f"task '{label}' failed: {cause}",
            retryable=False,
            context={"label": label, "cause_type": type(cause).__name__},
        )
        self.label = label
        self.cause = cause
        self.results = results


class ConfigurationError(PipelineError):
    """
    Error in tfpipeline configuration or caller input.

    Raised for invalid settings, malformed KEY=VALUE entries, unparsable
    .env lines and duplicated task labels.

    Attributes:
        config_key: Configuration key or input that is invalid
        reason: Specific validation failure reason
    """

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        reason: str | None = None,
    ) -> None:
        context = {
            "config_key": config_key,
            "reason": reason,
        }
        super().__init__(message, retryable=False, context=context)
        self.config_key = config_key
        self.reason = reason


class ModuleVerificationError(PipelineError):
    """
    Mandatory files are missing from a Terraform module directory.

    Attributes:
        category: File category that failed (module, documentation, tooling, additional)
        missing_files: Files that were not found
        required_files: Full list of files required for the category
    """

    def __init__(
        self,
        category: str,
        missing_files: list[str],
        required_files: list[str],
    ) -> None:
        context: dict[str, object] = {
            "category": category,
            "missing_files": missing_files,
            "required_files": required_files,
        }
        super().__init__(
            f"mandatory {category} files are missing: {missing_files} (required: {required_files})",
            retryable=False,
            context=context,
        )
        self.category = category
        self.missing_files = missing_files
        self.required_files = required_files
