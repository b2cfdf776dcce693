"""Command-line interface for stagegate."""

from __future__ import annotations

from stagegate.cli.main import cli, main

__all__ = ["cli", "main"]
