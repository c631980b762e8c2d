"""Operator CLI for the tasks API.

The command surface is implemented with Typer and Rich for better help and
error ergonomics, while `--json` output stays machine-friendly.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
