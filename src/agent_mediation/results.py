"""Tagged validation and approval outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Generic, Tuple, TypeVar, Union

from fastmcp.exceptions import ToolError


class Reason(str, Enum):
    """Machine-readable reasons an action was stopped."""

    # Mechanical (guard) rejections
    PATH_TRAVERSAL = "path_traversal"
    OUTSIDE_ALLOWED_ROOT = "outside_allowed_root"
    DISALLOWED_EXTENSION = "disallowed_extension"
    SIZE_LIMIT_EXCEEDED = "size_limit_exceeded"
    PATH_TOO_LONG = "path_too_long"
    UNSAFE_CHARACTERS = "unsafe_characters"
    BANNED_COMMAND = "banned_command"
    DIRECTORY_ESCAPE = "directory_escape"
    ARGUMENT_PATH_REJECTED = "argument_path_rejected"
    MALFORMED_COMMAND = "malformed_command"

    # Approval-stage aborts
    PREVIOUSLY_DENIED = "previously_denied"
    USER_DENIED = "user_denied"
    CANCELLED = "cancelled"

    @property
    def is_mechanical(self) -> bool:
        """True for rejections that no human approval can cure."""
        return self not in _APPROVAL_REASONS


_APPROVAL_REASONS = frozenset(
    {Reason.PREVIOUSLY_DENIED, Reason.USER_DENIED, Reason.CANCELLED}
)

# Fixed summaries shown to the agent. They never include paths or patterns.
SUMMARIES: Dict[Reason, str] = {
    Reason.PATH_TRAVERSAL: "The path is malformed or uses an encoded traversal sequence.",
    Reason.OUTSIDE_ALLOWED_ROOT: "The path resolves outside the allowed project directories.",
    Reason.DISALLOWED_EXTENSION: "Files of this type may not be accessed.",
    Reason.SIZE_LIMIT_EXCEEDED: "The file exceeds the maximum allowed size.",
    Reason.PATH_TOO_LONG: "The path exceeds the maximum allowed length.",
    Reason.UNSAFE_CHARACTERS: "The path contains shell metacharacters.",
    Reason.BANNED_COMMAND: "The command is banned by the security policy.",
    Reason.DIRECTORY_ESCAPE: "The command would leave the allowed project directories.",
    Reason.ARGUMENT_PATH_REJECTED: "A path argument of the command is not allowed.",
    Reason.MALFORMED_COMMAND: "The command could not be parsed as a single command.",
    Reason.PREVIOUSLY_DENIED: "The user previously denied this kind of action.",
    Reason.USER_DENIED: "The user denied this action.",
    Reason.CANCELLED: "The approval request was cancelled.",
}


T = TypeVar("T")


@dataclass(frozen=True)
class Valid(Generic[T]):
    """Successful validation carrying the normalized value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    """Mechanical rejection.

    ``detail`` is for logs and the audit trail only; it is never part of the
    refusal handed back to the agent.
    """

    reason: Reason
    detail: str = ""

    @property
    def ok(self) -> bool:
        return False


PathValidationResult = Union[Valid[Path], Rejected]
CommandValidationResult = Union[Valid[Tuple[str, ...]], Rejected]


@dataclass(frozen=True)
class Proceed(Generic[T]):
    """The action may run, possibly in a human-edited form."""

    action: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Abort:
    """The action must not run."""

    reason: Reason
    summary: str = ""

    def __post_init__(self) -> None:
        if not self.summary:
            object.__setattr__(self, "summary", SUMMARIES[self.reason])

    @property
    def ok(self) -> bool:
        return False

    @classmethod
    def from_rejection(cls, rejection: Rejected) -> "Abort":
        return cls(reason=rejection.reason)

    def to_refusal(self) -> Dict[str, Any]:
        """Structured refusal for the agent loop."""
        return {
            "status": "refused",
            "reason": self.reason.value,
            "summary": self.summary,
        }

    def to_tool_error(self) -> ToolError:
        """Refusal as a FastMCP ``ToolError`` for MCP tool handlers."""
        return ToolError(f"Action refused ({self.reason.value}): {self.summary}")


Outcome = Union[Proceed, Abort]
