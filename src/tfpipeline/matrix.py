"""
Expansion of tool versions and check definitions into task descriptors.

Pure functions, no concurrency. The factory is invoked once per descriptor,
so every task receives an independent environment handle.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from tfpipeline.environment import ExecutionEnvironment
from tfpipeline.errors import ConfigurationError
from tfpipeline.orchestrator import TaskDescriptor
from tfpipeline.parsing import CommandLine

EnvironmentFactory = Callable[[str], ExecutionEnvironment]


@dataclass(frozen=True)
class CheckDefinition:
    """
    A named command sequence run against one environment.

    Attributes:
        name: Check name, used as the label suffix (e.g. "validate")
        commands: Command lines run strictly in order
    """

    name: str
    commands: tuple[CommandLine, ...]


TERRAFORM_INIT: CommandLine = ("terraform", "init", "-backend=false")
TERRAFORM_VALIDATE: CommandLine = ("terraform", "validate")
TERRAFORM_VERSION: CommandLine = ("terraform", "version")

STATIC_CHECKS: tuple[CheckDefinition, ...] = (
    CheckDefinition("init", (TERRAFORM_INIT,)),
    CheckDefinition("validate", (TERRAFORM_INIT, TERRAFORM_VALIDATE)),
    CheckDefinition("fmt-check", (("terraform", "fmt", "-check", "-diff"),)),
)

COMPATIBILITY_CHECKS: tuple[CheckDefinition, ...] = (
    CheckDefinition("init", (TERRAFORM_VERSION, TERRAFORM_INIT)),
    CheckDefinition("validate", (TERRAFORM_VERSION, TERRAFORM_INIT, TERRAFORM_VALIDATE)),
)


def unique_versions(versions: Sequence[str]) -> list[str]:
    """
    De-duplicate versions, keeping the first occurrence.

    Raises:
        ConfigurationError: If a version is blank
    """
    result: list[str] = []
    for version in versions:
        version = version.strip()
        if not version:
            raise ConfigurationError(
                "tool version cannot be empty",
                config_key="versions",
                reason="Blank version",
            )
        if version not in result:
            result.append(version)
    return result


def _check_names_unique(checks: Sequence[CheckDefinition]) -> None:
    names = [check.name for check in checks]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(
            f"duplicate check names: {duplicates}",
            config_key="checks",
            reason="Check names must be unique",
        )


def build_matrix(
    versions: Sequence[str],
    checks: Sequence[CheckDefinition],
    environment_factory: EnvironmentFactory,
) -> list[TaskDescriptor]:
    """
    Build one descriptor per (version, check) pair.

    Labels are "<version>.<check name>", ordered version-major, so the same
    inputs always produce the same label list.

    Args:
        versions: Tool versions (duplicates are dropped)
        checks: Checks to run against every version
        environment_factory: Called fresh for every pair with the version

    Returns:
        Task descriptors ready for run_matrix()

    Raises:
        ConfigurationError: On blank versions or duplicate check names

    Example:
        >>> descriptors = build_matrix(["1.12.0"], COMPATIBILITY_CHECKS, factory)
        >>> [d.label for d in descriptors]
        ['1.12.0.init', '1.12.0.validate']
    """
    _check_names_unique(checks)

    return [
        TaskDescriptor(
            label=f"{version}.{check.name}",
            commands=check.commands,
            environment=environment_factory(version),
        )
        for version in unique_versions(versions)
        for check in checks
    ]


def build_checks(
    checks: Sequence[CheckDefinition],
    environment_factory: Callable[[], ExecutionEnvironment],
) -> list[TaskDescriptor]:
    """
    Build one descriptor per check, labelled by the check name.

    Raises:
        ConfigurationError: On duplicate check names
    """
    _check_names_unique(checks)

    return [
        TaskDescriptor(
            label=check.name,
            commands=check.commands,
            environment=environment_factory(),
        )
        for check in checks
    ]
