"""
Concurrent fan-out of command sequences and aggregation of their results.

Given a list of task descriptors (label, commands, environment), the
dispatcher runs every descriptor on its own worker thread and the
aggregator collects exactly one TaskResult per descriptor before deciding
the verdict.

Guarantees:
    - One worker per descriptor, one TaskResult per worker, whatever happens
      inside the worker (setup failure, command failure, unexpected error).
    - Commands of one descriptor run strictly in order; a failure aborts
      only that descriptor.
    - The result stream ends only after every worker finished. The
      executor owns that step; workers never signal completion for anyone
      but themselves.
    - The aggregator drains every result before returning or raising.

Usage:
    from tfpipeline.orchestrator import TaskDescriptor, run_matrix
    from tfpipeline.environment import RunContext

    report = run_matrix(RunContext(timeout=900), descriptors)
    print(report.render())
"""

import contextvars
import time
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from tfpipeline.environment import ExecutionEnvironment, RunContext
from tfpipeline.errors import (
    AggregationFailedError,
    CommandFailedError,
    ConfigurationError,
    EnvironmentSetupError,
    PipelineError,
)
from tfpipeline.logging_config import LogContext, get_logger, log_with_context, set_task_label
from tfpipeline.parsing import CommandLine

logger = get_logger(__name__)


@dataclass(frozen=True)
class TaskDescriptor:
    """
    One unit of work: a labelled command sequence bound to its own environment.

    Attributes:
        label: Unique label within one run (e.g. "1.12.0.validate")
        commands: Command lines run strictly in order
        environment: Environment handle owned exclusively by this task
    """

    label: str
    commands: tuple[CommandLine, ...]
    environment: ExecutionEnvironment


@dataclass(frozen=True)
class TaskResult:
    """
    Outcome of one task.

    Attributes:
        label: Label of the task that produced the result
        output: Stdout of the task's last command ("" on failure)
        error: CommandFailedError or EnvironmentSetupError, None on success
        duration_seconds: Wall time spent in the worker
    """

    label: str
    output: str = ""
    error: PipelineError | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class AggregateReport:
    """
    Successful outcome of a fan-out run.

    Attributes:
        results: Every task result, in arrival order
    """

    results: tuple[TaskResult, ...] = ()

    @property
    def labels(self) -> list[str]:
        return [result.label for result in self.results]

    def render(self) -> str:
        """
        Concatenate task outputs into one human-readable report.

        Each block is a ``=== <label> ===`` header followed by the task's
        output. Block order follows arrival order, which varies between runs.
        """
        return "\n".join(
            f"=== {result.label} ===\n{result.output.rstrip()}" for result in self.results
        )

    def __str__(self) -> str:
        return self.render()


def execute_task(ctx: RunContext, descriptor: TaskDescriptor) -> TaskResult:
    """
    Run one descriptor to completion and convert the outcome into a TaskResult.

    Never raises: every failure is returned as data.

    Args:
        ctx: Run context shared by all tasks of the run
        descriptor: Task to execute

    Returns:
        TaskResult for the descriptor
    """
    set_task_label(descriptor.label)
    started = time.monotonic()
    environment = descriptor.environment

    try:
        environment.setup(ctx)
        output = environment.run(ctx, descriptor.commands)
        result = TaskResult(
            label=descriptor.label,
            output=output,
            duration_seconds=time.monotonic() - started,
        )

    except EnvironmentSetupError as e:
        result = TaskResult(
            label=descriptor.label,
            error=EnvironmentSetupError(descriptor.label, e.cause),
            duration_seconds=time.monotonic() - started,
        )

    except CommandFailedError as e:
        result = TaskResult(
            label=descriptor.label,
            error=CommandFailedError(descriptor.label, e.command, e.cause, e.exit_code),
            duration_seconds=time.monotonic() - started,
        )

    except Exception as e:
        log_with_context(
            logger,
            "error",
            "Unexpected error in task",
            label=descriptor.label,
            error=str(e),
            error_type=type(e).__name__,
        )
        last_command = descriptor.commands[-1] if descriptor.commands else ()
        result = TaskResult(
            label=descriptor.label,
            error=CommandFailedError(descriptor.label, last_command, e),
            duration_seconds=time.monotonic() - started,
        )

    finally:
        try:
            environment.teardown()
        except Exception as e:
            log_with_context(
                logger,
                "warning",
                "Failed to tear down environment",
                label=descriptor.label,
                error=str(e),
            )

    log_with_context(
        logger,
        "info" if result.succeeded else "warning",
        "Task completed" if result.succeeded else "Task failed",
        label=descriptor.label,
        duration_seconds=round(result.duration_seconds, 3),
        error=str(result.error) if result.error else None,
    )
    return result


def dispatch(
    ctx: RunContext,
    descriptors: Sequence[TaskDescriptor],
    max_workers: int | None = None,
) -> Iterator[TaskResult]:
    """
    Start one worker per descriptor and stream their results as they complete.

    Descriptors are validated before any worker starts. The returned
    iterator yields exactly len(descriptors) results; closing it early still
    waits for every started worker.

    Args:
        ctx: Run context passed to every environment call
        descriptors: Tasks to run
        max_workers: Thread pool size (default: one thread per descriptor)

    Returns:
        Iterator over TaskResults in completion order

    Raises:
        ConfigurationError: If labels are duplicated or an environment handle
            is shared between descriptors
    """
    _validate_descriptors(descriptors)
    if not descriptors:
        return iter(())

    workers = min(max_workers or len(descriptors), len(descriptors))

    log_with_context(
        logger,
        "info",
        "Dispatching tasks",
        count=len(descriptors),
        max_workers=workers,
    )

    return _iter_results(ctx, list(descriptors), workers)


def _iter_results(
    ctx: RunContext,
    descriptors: list[TaskDescriptor],
    max_workers: int,
) -> Iterator[TaskResult]:
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tfpipeline") as executor:
        # Each worker gets its own copy of the caller's context (correlation ID)
        future_to_descriptor = {
            executor.submit(contextvars.copy_context().run, execute_task, ctx, descriptor): descriptor
            for descriptor in descriptors
        }

        for future in as_completed(future_to_descriptor):
            descriptor = future_to_descriptor[future]
            try:
                result = future.result()
            except Exception as e:
                # execute_task returns failures as data; reaching this means the worker itself broke
                result = TaskResult(
                    label=descriptor.label,
                    error=CommandFailedError(descriptor.label, (), e),
                )
            yield result


def _validate_descriptors(descriptors: Sequence[TaskDescriptor]) -> None:
    seen_labels: set[str] = set()
    seen_environments: set[int] = set()

    for descriptor in descriptors:
        if descriptor.label in seen_labels:
            raise ConfigurationError(
                f"duplicate task label '{descriptor.label}'",
                config_key="label",
                reason="Task labels must be unique within one run",
            )
        seen_labels.add(descriptor.label)

        if id(descriptor.environment) in seen_environments:
            raise ConfigurationError(
                f"task '{descriptor.label}' shares its environment with another task",
                config_key="environment",
                reason="Each task needs its own environment handle",
            )
        seen_environments.add(id(descriptor.environment))


def aggregate_results(results: Iterable[TaskResult]) -> AggregateReport:
    """
    Consume every result, then report success or the first failure.

    All results are drained even after a failure has been seen; their
    content no longer affects the verdict.

    Args:
        results: Result stream, typically from dispatch()

    Returns:
        AggregateReport holding every result when all tasks succeeded

    Raises:
        AggregationFailedError: For the first failed result observed
    """
    collected: list[TaskResult] = []
    first_failure: TaskResult | None = None

    for result in results:
        collected.append(result)
        if first_failure is None and result.error is not None:
            first_failure = result

    if first_failure is not None and first_failure.error is not None:
        failed = [result.label for result in collected if not result.succeeded]
        log_with_context(
            logger,
            "error",
            "Task run failed",
            total=len(collected),
            failed=failed,
            first_failure=first_failure.label,
        )
        raise AggregationFailedError(
            first_failure.label,
            first_failure.error,
            results=tuple(collected),
        )

    log_with_context(
        logger,
        "info",
        "Task run succeeded",
        total=len(collected),
    )
    return AggregateReport(results=tuple(collected))


def run_matrix(
    ctx: RunContext,
    descriptors: Sequence[TaskDescriptor],
    max_workers: int | None = None,
) -> AggregateReport:
    """
    Run descriptors concurrently and aggregate their results.

    Args:
        ctx: Run context (cancellation and deadline)
        descriptors: Tasks to run; an empty list succeeds immediately
        max_workers: Thread pool size (default: one thread per descriptor)

    Returns:
        AggregateReport when every task succeeded

    Raises:
        AggregationFailedError: When at least one task failed
        ConfigurationError: When descriptors are invalid

    Example:
        >>> report = run_matrix(RunContext(), descriptors)
        >>> print(report.render())
    """
    if not descriptors:
        return AggregateReport()

    with LogContext():
        return aggregate_results(dispatch(ctx, descriptors, max_workers))
