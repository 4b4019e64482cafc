"""
tfpipeline: Concurrent Terraform validation pipeline.

tfpipeline runs Terraform checks (init, validate, fmt, lint, docs, plan)
against a module, fanning independent checks and tool versions out to
isolated execution environments and reducing their outcomes to a single
verdict.

Key Components:
    - EnvironmentConfig: Immutable description of a task environment
    - SubprocessEnvironment: Local backend with a private root per task
    - build_matrix: Expands versions x checks into labelled task descriptors
    - run_matrix: Runs descriptors concurrently and aggregates the results
    - jobs: Static, compatibility, lint, docs, exec and build jobs

Architecture:
    Settings + JobOptions → EnvironmentConfig → build_matrix
                                                    ↓
                           dispatch (one worker per task) → aggregate_results

Usage:
    # Version compatibility matrix for modules/vpc
    tfpipeline compat-check --module vpc

    # Programmatic use
    from tfpipeline.orchestrator import run_matrix

Version: 0.1.0
License: MIT
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
