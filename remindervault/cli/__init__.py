"""Remindervault CLI.

Diagnostics and maintenance commands over the tiered reminder storage,
built with Click and Rich.
"""

from remindervault.cli.main import cli

__all__ = ["cli"]
