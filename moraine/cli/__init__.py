"""
Moraine CLI.

Usage:
    moraine graph stack.yaml
    moraine plan stack.yaml
    moraine apply stack.yaml --concurrency 8
    moraine pipeline stack.yaml --resume
"""

from moraine.cli.main import cli

__all__ = ["cli"]
