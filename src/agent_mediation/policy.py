"""Session security policy and its YAML loader."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Pattern, Tuple

import yaml
from loguru import logger

from .actions import ActionClass
from .governance.models import Expiry

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_PATH_LENGTH = 4096

DEFAULT_BANNED_COMMANDS: Tuple[str, ...] = (
    "rm -rf /",
    "rm -rf ~",
    "chmod -R 777 /",
    "chown -R /",
    "dd of=/dev/*",
    "mkfs",
    "fdisk",
    "sfdisk",
    "parted",
    "wipefs",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
)

DEFAULT_BANNED_PATTERNS: Tuple[str, ...] = (
    r":\(\)\s*\{",  # fork bomb
    r">\s*/dev/sd[a-z]",
)

DEFAULT_EXPIRY: Mapping[ActionClass, Expiry] = MappingProxyType(
    {
        ActionClass.FILE_READ: Expiry.SESSION,
        ActionClass.FILE_WRITE: Expiry.SESSION,
        ActionClass.COMMAND_EXEC: Expiry.ONE_SHOT,
    }
)


class PolicyError(ValueError):
    """Raised when a policy definition is unusable."""


@dataclass(frozen=True)
class SecurityPolicy:
    """
    Immutable per-session security policy.

    Roots are canonicalized once at construction; nesting is allowed and the
    effective boundary is their union. An empty extension allow-list admits
    every extension; the entry ``""`` admits extensionless files.
    """

    allowed_roots: Tuple[Path, ...]
    banned_commands: Tuple[str, ...] = DEFAULT_BANNED_COMMANDS
    banned_patterns: Tuple[str, ...] = DEFAULT_BANNED_PATTERNS
    command_aliases: Mapping[str, str] = field(default_factory=dict)
    allowed_extensions: FrozenSet[str] = frozenset()
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_path_length: int = DEFAULT_MAX_PATH_LENGTH
    default_expiry: Mapping[ActionClass, Expiry] = field(default_factory=lambda: DEFAULT_EXPIRY)
    _compiled_patterns: Tuple[Pattern[str], ...] = field(
        default=(), init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        errors = []

        roots = []
        for root in self.allowed_roots:
            expanded = Path(os.path.expanduser(str(root)))
            if not expanded.is_absolute():
                errors.append(f"allowed root must be absolute: {root}")
                continue
            roots.append(expanded.resolve())
        if not self.allowed_roots:
            errors.append("at least one allowed root is required")

        if self.max_file_size <= 0:
            errors.append(f"max_file_size must be > 0, got {self.max_file_size}")
        if self.max_path_length <= 0:
            errors.append(f"max_path_length must be > 0, got {self.max_path_length}")

        compiled = []
        for pattern in self.banned_patterns:
            try:
                compiled.append(re.compile(pattern))
            except re.error as e:
                errors.append(f"invalid banned pattern {pattern!r}: {e}")

        if errors:
            raise PolicyError(f"Policy validation failed: {'; '.join(errors)}")

        expiry = dict(DEFAULT_EXPIRY)
        expiry.update(self.default_expiry)

        object.__setattr__(self, "allowed_roots", tuple(dict.fromkeys(roots)))
        object.__setattr__(self, "banned_commands", tuple(self.banned_commands))
        object.__setattr__(self, "banned_patterns", tuple(self.banned_patterns))
        object.__setattr__(
            self, "command_aliases", MappingProxyType(dict(self.command_aliases))
        )
        object.__setattr__(
            self,
            "allowed_extensions",
            frozenset(_normalize_extension(ext) for ext in self.allowed_extensions),
        )
        object.__setattr__(self, "default_expiry", MappingProxyType(expiry))
        object.__setattr__(self, "_compiled_patterns", tuple(compiled))

    @property
    def compiled_patterns(self) -> Tuple[Pattern[str], ...]:
        return self._compiled_patterns

    def expiry_for(self, action_class: ActionClass) -> Expiry:
        return self.default_expiry[action_class]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SecurityPolicy":
        """Build a policy from a plain mapping (e.g. parsed YAML)."""
        if not isinstance(data, Mapping):
            raise PolicyError("Policy must be a mapping")

        roots = data.get("allowed_roots")
        if not roots:
            raise PolicyError("Policy is missing allowed_roots")

        kwargs: Dict[str, Any] = {"allowed_roots": tuple(Path(str(r)) for r in _as_list(roots))}
        if "banned_commands" in data:
            kwargs["banned_commands"] = tuple(str(c) for c in _as_list(data["banned_commands"]))
        if "banned_patterns" in data:
            kwargs["banned_patterns"] = tuple(str(p) for p in _as_list(data["banned_patterns"]))
        if "command_aliases" in data:
            aliases = data["command_aliases"] or {}
            if not isinstance(aliases, Mapping):
                raise PolicyError("command_aliases must be a mapping")
            kwargs["command_aliases"] = {str(k): str(v) for k, v in aliases.items()}
        if "allowed_extensions" in data:
            kwargs["allowed_extensions"] = frozenset(
                str(e) for e in _as_list(data["allowed_extensions"])
            )
        for key in ("max_file_size", "max_path_length"):
            if key in data:
                try:
                    kwargs[key] = int(data[key])
                except (TypeError, ValueError) as e:
                    raise PolicyError(f"{key} must be an integer: {e}") from e
        if "default_expiry" in data:
            kwargs["default_expiry"] = _parse_expiry(data["default_expiry"])

        return cls(**kwargs)


def _as_list(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        return [value]
    return list(value)


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return ext


def _parse_expiry(raw: Any) -> Dict[ActionClass, Expiry]:
    if not isinstance(raw, Mapping):
        raise PolicyError("default_expiry must be a mapping")
    parsed = {}
    for key, value in raw.items():
        try:
            parsed[ActionClass(str(key).strip().lower())] = Expiry(str(value).strip().lower())
        except ValueError as e:
            raise PolicyError(f"Invalid default_expiry entry {key}={value}: {e}") from e
    return parsed


def load_policy(path: str | os.PathLike, overrides: Optional[Mapping[str, Any]] = None) -> SecurityPolicy:
    """
    Load a SecurityPolicy from a YAML file.

    Args:
        path: Path to the policy YAML file
        overrides: Optional top-level keys replacing those from the file

    Returns:
        Validated SecurityPolicy

    Raises:
        PolicyError: If the file is missing, unparsable or invalid
    """
    policy_path = Path(path)
    try:
        with open(policy_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise PolicyError(f"Cannot read policy file {policy_path}: {e}") from e
    except yaml.YAMLError as e:
        raise PolicyError(f"Failed to parse policy file {policy_path}: {e}") from e

    if data is None:
        raise PolicyError(f"Policy file {policy_path} is empty")
    if not isinstance(data, dict):
        raise PolicyError(f"Policy file {policy_path} must contain a mapping")
    if overrides:
        data.update(overrides)

    policy = SecurityPolicy.from_mapping(data)
    logger.info(
        f"Loaded security policy from {policy_path}: "
        f"{len(policy.allowed_roots)} roots, {len(policy.banned_commands)} banned commands"
    )
    return policy
