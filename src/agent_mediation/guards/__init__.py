"""Mechanical guards: path and command validation."""

from .command_guard import CommandGuard, quote_for_shell, wrap_for_shell
from .path_guard import PathGuard, canonicalize, is_within

__all__ = [
    "CommandGuard",
    "PathGuard",
    "canonicalize",
    "is_within",
    "quote_for_shell",
    "wrap_for_shell",
]
