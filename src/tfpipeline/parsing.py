"""
Parsing helpers for pipeline inputs.

Converts the string forms accepted on the command line and in CI variables
(KEY=VALUE lists, .env files, comma separated argument strings) into
structured values, and builds Terraform command lines.
"""

from pathlib import Path

from tfpipeline.errors import ConfigurationError

CommandLine = tuple[str, ...]


def parse_env_vars(env_vars: list[str]) -> list[tuple[str, str]]:
    """
    Parse strict KEY=VALUE environment variable entries.

    Each entry must contain exactly one '=' and a non-empty key. Blank
    entries are rejected.

    Args:
        env_vars: Entries such as ["AWS_REGION=us-west-2", "DEBUG=true"]

    Returns:
        List of (key, value) pairs in input order

    Raises:
        ConfigurationError: If any entry is blank or malformed
    """
    pairs: list[tuple[str, str]] = []
    for env_var in env_vars:
        trimmed = env_var.strip()
        if not trimmed:
            raise ConfigurationError(
                "environment variable cannot be empty",
                config_key="env_vars",
                reason="Blank entry",
            )

        parts = trimmed.split("=")
        if len(parts) != 2 or not parts[0].strip():
            raise ConfigurationError(
                f"environment variable must be in the format KEY=VALUE: {trimmed}",
                config_key="env_vars",
                reason=f"Malformed entry: {trimmed}",
            )

        pairs.append((parts[0].strip(), parts[1]))
    return pairs


def parse_variables(variables: list[str]) -> dict[str, str]:
    """
    Parse lenient KEY=VALUE Terraform variable entries.

    Blank entries are skipped and the value may itself contain '='.

    Raises:
        ConfigurationError: If an entry has no '=' or an empty key
    """
    result: dict[str, str] = {}
    for variable in variables:
        trimmed = variable.strip()
        if not trimmed:
            continue

        if "=" not in trimmed:
            raise ConfigurationError(
                f"variable must be in the format KEY=VALUE: {trimmed}",
                config_key="variables",
                reason=f"Missing '=' in: {trimmed}",
            )

        key, value = trimmed.split("=", 1)
        key = key.strip()
        if not key:
            raise ConfigurationError(
                f"variable key cannot be empty: {trimmed}",
                config_key="variables",
                reason=f"Empty key in: {trimmed}",
            )
        result[key] = value.strip()
    return result


def parse_dot_env(content: str, filename: str = ".env") -> list[tuple[str, str]]:
    """
    Parse the contents of a .env file.

    Supports comments (#), blank lines, KEY=VALUE pairs split on the first
    '=', whitespace trimming and removal of one pair of matching surrounding
    quotes.

    Args:
        content: File contents
        filename: File name, used in error messages

    Returns:
        List of (key, value) pairs in file order

    Raises:
        ConfigurationError: If a line has no '=' or an empty key

    Example:
        >>> parse_dot_env('# comment\\nTF_LOG="debug"\\n')
        [('TF_LOG', 'debug')]
    """
    pairs: list[tuple[str, str]] = []
    for line_number, line in enumerate(content.splitlines(), start=1):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue

        if "=" not in trimmed:
            raise ConfigurationError(
                f"invalid format in file '{filename}' on line {line_number}: '{trimmed}'",
                config_key=filename,
                reason="Line is not KEY=VALUE",
            )

        key, value = (part.strip() for part in trimmed.split("=", 1))
        if not key:
            raise ConfigurationError(
                f"empty key found in file '{filename}' on line {line_number}: '{trimmed}'",
                config_key=filename,
                reason="Empty key",
            )

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]

        pairs.append((key, value))
    return pairs


def find_dot_env_files(source_dir: Path) -> list[Path]:
    """Return the .env files at the root of source_dir, sorted by name."""
    return sorted(
        path
        for path in source_dir.iterdir()
        if path.is_file() and (path.name == ".env" or path.name.endswith(".env"))
    )


def parse_command_args(args_string: str) -> list[str]:
    """
    Split a comma separated argument string.

    Example:
        >>> parse_command_args("-auto-approve, -parallelism=10")
        ['-auto-approve', '-parallelism=10']

    Raises:
        ConfigurationError: If the string is non-blank but holds no arguments
    """
    if not args_string.strip():
        return []

    args = [arg.strip() for arg in args_string.split(",") if arg.strip()]
    if not args:
        raise ConfigurationError(
            "no valid arguments found in the provided string",
            config_key="arguments",
            reason=f"No arguments in: {args_string!r}",
        )
    return args


def build_terraform_command(command: str, arguments: list[str] | None = None) -> CommandLine:
    """
    Build a terraform command line.

    Blank arguments are dropped.

    Raises:
        ConfigurationError: If command is blank

    Example:
        >>> build_terraform_command("plan", ["-out=plan.tfplan", " "])
        ('terraform', 'plan', '-out=plan.tfplan')
    """
    trimmed_command = command.strip()
    if not trimmed_command:
        raise ConfigurationError(
            "terraform command cannot be empty",
            config_key="command",
            reason="Blank command",
        )

    cmd = ["terraform", trimmed_command]
    cmd.extend(arg.strip() for arg in arguments or [] if arg.strip())
    return tuple(cmd)
