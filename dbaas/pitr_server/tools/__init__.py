"""
Operator tools for pg-pitr.

- cli: the `pitr` command (archive, backup, restore, retention)
"""

from .cli import PitrCLI, build_parser, main

__all__ = ["PitrCLI", "build_parser", "main"]
