"""
Entry point for running tfpipeline as a module.

Allows running tfpipeline with:
    python -m tfpipeline compat-check --module vpc
"""

import sys

from tfpipeline.cli import main

if __name__ == "__main__":
    sys.exit(main())
