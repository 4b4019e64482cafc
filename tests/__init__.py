"""
tfpipeline test suite.

Test Organization:
    - tests/conftest.py: Shared fixtures (settings, FakeEnvironment, sample module repo)
    - tests/unit/test_*.py: Unit tests for individual modules

Subprocess backend tests need only a POSIX shell (sh, echo, sleep); no
Terraform tooling is installed or downloaded.
"""
