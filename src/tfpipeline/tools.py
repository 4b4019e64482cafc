"""
Install commands for Terraform tooling.

Each function returns a single shell command (for ``sh -c``) that downloads
one release binary into ``install_dir``. Paths are shell-quoted, so the
install directory may contain spaces. Install directories are private to
an execution environment, so several versions of the same tool can be
installed side by side by concurrent tasks.
"""

import platform
import shlex

from tfpipeline.config import DEFAULT_TERRAFORM_DOCS_VERSION, DEFAULT_TFLINT_VERSION

TERRAFORM_RELEASES_URL = "https://releases.hashicorp.com/terraform"
TFLINT_RELEASES_URL = "https://github.com/terraform-linters/tflint/releases/download"
TERRAFORM_DOCS_RELEASES_URL = "https://github.com/terraform-docs/terraform-docs/releases/download"

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def detect_platform() -> tuple[str, str]:
    """
    Return the (os, arch) pair used in release asset names.

    Example:
        >>> detect_platform()
        ('linux', 'amd64')
    """
    system = platform.system().lower()
    machine = platform.machine().lower()
    return system, _ARCH_ALIASES.get(machine, machine)


def terraform_install_command(
    version: str,
    install_dir: str,
    os_name: str = "linux",
    arch: str = "amd64",
) -> str:
    """Build the command installing Terraform ``version`` into ``install_dir``."""
    url = f"{TERRAFORM_RELEASES_URL}/{version}/terraform_{version}_{os_name}_{arch}.zip"
    quoted_dir = shlex.quote(install_dir)
    return " && ".join(
        [
            f"mkdir -p {quoted_dir}",
            f"curl -fsSL {shlex.quote(url)} -o {quoted_dir}/terraform.zip",
            f"unzip -o {quoted_dir}/terraform.zip terraform -d {quoted_dir}",
            f"chmod +x {quoted_dir}/terraform",
            f"rm {quoted_dir}/terraform.zip",
        ]
    )


def tflint_install_command(
    version: str,
    install_dir: str,
    os_name: str = "linux",
    arch: str = "amd64",
) -> str:
    """
    Build the command installing TFLint into ``install_dir``.

    An empty version installs DEFAULT_TFLINT_VERSION.
    """
    version = (version or DEFAULT_TFLINT_VERSION).removeprefix("v")
    url = f"{TFLINT_RELEASES_URL}/v{version}/tflint_{os_name}_{arch}.zip"
    quoted_dir = shlex.quote(install_dir)
    return " && ".join(
        [
            f"mkdir -p {quoted_dir}",
            f"curl -fsSL {shlex.quote(url)} -o {quoted_dir}/tflint.zip",
            f"unzip -o {quoted_dir}/tflint.zip tflint -d {quoted_dir}",
            f"chmod +x {quoted_dir}/tflint",
            f"rm {quoted_dir}/tflint.zip",
        ]
    )


def terraform_docs_install_command(
    version: str,
    install_dir: str,
    os_name: str = "linux",
    arch: str = "amd64",
) -> str:
    """
    Build the command installing terraform-docs into ``install_dir``.

    An empty version installs DEFAULT_TERRAFORM_DOCS_VERSION.
    """
    version = (version or DEFAULT_TERRAFORM_DOCS_VERSION).removeprefix("v")
    url = (
        f"{TERRAFORM_DOCS_RELEASES_URL}/v{version}/"
        f"terraform-docs-v{version}-{os_name}-{arch}.tar.gz"
    )
    quoted_dir = shlex.quote(install_dir)
    return " && ".join(
        [
            f"mkdir -p {quoted_dir}",
            f"curl -fsSL {shlex.quote(url)} -o {quoted_dir}/terraform-docs.tar.gz",
            f"tar -xzf {quoted_dir}/terraform-docs.tar.gz -C {quoted_dir} terraform-docs",
            f"chmod +x {quoted_dir}/terraform-docs",
            f"rm {quoted_dir}/terraform-docs.tar.gz",
        ]
    )
