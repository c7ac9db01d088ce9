"""Command-line interface."""

from nestor.cli.main import main

__all__ = ["main"]
