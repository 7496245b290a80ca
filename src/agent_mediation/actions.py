"""Closed set of mediated actions."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional, Sequence, Tuple, Union


class ActionClass(str, Enum):
    """Action classes a grant can cover."""

    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    COMMAND_EXEC = "command_exec"


class FileMode(str, Enum):
    """How a file tool intends to touch a path."""

    READ = "read"
    WRITE = "write"
    LIST = "list"


# Tools whose first positional argument selects a distinct operation.
SUBCOMMAND_TOOLS = frozenset(
    {
        "apt",
        "brew",
        "cargo",
        "docker",
        "gh",
        "git",
        "go",
        "kubectl",
        "make",
        "npm",
        "pip",
        "pip3",
        "pnpm",
        "poetry",
        "uv",
        "yarn",
    }
)


def command_scope_tokens(argv: Sequence[str]) -> Tuple[str, ...]:
    """Return the token prefix used as the grant scope for a command.

    The executable is reduced to its basename. Tools in ``SUBCOMMAND_TOOLS``
    keep their subcommand, so approving ``git status`` does not cover
    ``git push``.
    """
    if not argv:
        return ()
    executable = PurePosixPath(argv[0]).name or argv[0]
    if executable in SUBCOMMAND_TOOLS and len(argv) > 1 and not argv[1].startswith("-"):
        return (executable, argv[1])
    return (executable,)


@dataclass(frozen=True)
class FileAction:
    """A file tool operation on a canonical path."""

    path: Path
    mode: FileMode = FileMode.READ

    @property
    def action_class(self) -> ActionClass:
        if self.mode == FileMode.WRITE:
            return ActionClass.FILE_WRITE
        return ActionClass.FILE_READ

    @property
    def scope(self) -> str:
        # Listing is scoped to the directory itself, file access to its parent.
        if self.mode == FileMode.LIST:
            return str(self.path)
        return str(self.path.parent)

    @property
    def concrete(self) -> str:
        return str(self.path)

    def describe(self) -> str:
        verb = {FileMode.READ: "Read", FileMode.WRITE: "Write", FileMode.LIST: "List"}[self.mode]
        return f"{verb} {self.path}"


@dataclass(frozen=True)
class CommandAction:
    """A command as an argv vector plus the directory it runs in."""

    argv: Tuple[str, ...]
    cwd: Optional[Path] = None

    @property
    def action_class(self) -> ActionClass:
        return ActionClass.COMMAND_EXEC

    @property
    def scope(self) -> str:
        return shlex.join(command_scope_tokens(self.argv))

    @property
    def concrete(self) -> Tuple[str, ...]:
        return self.argv

    @property
    def is_directory_change(self) -> bool:
        return bool(self.argv) and self.argv[0] == "cd"

    def describe(self) -> str:
        where = f" (in {self.cwd})" if self.cwd else ""
        return f"Run {shlex.join(self.argv)}{where}"


Action = Union[FileAction, CommandAction]
