"""Command-line interface for flowforge."""

from .main import cli

__all__ = ["cli"]
