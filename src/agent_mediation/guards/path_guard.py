"""Path validation against the session security policy."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable, Optional, Sequence

from loguru import logger

from ..actions import FileMode
from ..policy import SecurityPolicy
from ..results import PathValidationResult, Reason, Rejected, Valid

# %2e (.), %2f (/), %5c (\) and %00, in either case, possibly double-encoded.
_ENCODED_TRAVERSAL = re.compile(r"%(25)*(2e|2f|5c|00)", re.IGNORECASE)

# Fragments that change meaning if the path ever reaches shell text.
_SHELL_FRAGMENTS = (";", "|", "&", "`", "$(", "${", "<", ">", "\n", "\r")


def is_within(path: Path, roots: Iterable[Path]) -> bool:
    """True if canonical ``path`` equals or descends from any canonical root."""
    return any(path == root or path.is_relative_to(root) for root in roots)


def canonicalize(raw_path: str | os.PathLike, cwd: Optional[Path] = None) -> Path:
    """Absolute, symlink-free form of ``raw_path`` relative to ``cwd``."""
    candidate = Path(raw_path)
    if not candidate.is_absolute():
        candidate = (cwd or Path.cwd()) / candidate
    return candidate.resolve(strict=False)


class PathGuard:
    """
    Stateless path validator.

    Validation always runs on the canonical form, after symlinks and
    relative segments are resolved, so a symlink or a ``..`` chain cannot
    carry a path outside the allowed roots.
    """

    def __init__(self, policy: SecurityPolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    def validate(
        self,
        raw_path: str | os.PathLike,
        intended_roots: Optional[Sequence[str | os.PathLike]] = None,
        *,
        mode: FileMode = FileMode.READ,
        cwd: Optional[str | os.PathLike] = None,
        for_interpolation: bool = False,
        content_size: Optional[int] = None,
    ) -> PathValidationResult:
        """
        Validate and canonicalize a path.

        Args:
            raw_path: Path as supplied by the agent
            intended_roots: Roots the path must stay under (default: policy roots)
            mode: READ and WRITE apply extension and size checks, LIST does not
            cwd: Directory relative paths are resolved against
            for_interpolation: Also reject shell metacharacter fragments
            content_size: Bytes about to be written, checked against the size limit

        Returns:
            Valid(canonical_path) or Rejected(reason, detail)
        """
        raw = os.fspath(raw_path) if not isinstance(raw_path, str) else raw_path
        if isinstance(raw, bytes):
            raw = os.fsdecode(raw)

        rejection = self._check_raw(raw, for_interpolation)
        if rejection is not None:
            return self._reject(rejection, raw)

        base = Path(cwd).resolve() if cwd is not None else None
        try:
            canonical = canonicalize(raw, base)
        except (OSError, RuntimeError) as e:
            # RuntimeError: symlink loop on older interpreters
            return self._reject(Rejected(Reason.PATH_TRAVERSAL, f"cannot resolve: {e}"), raw)

        roots = self._roots(intended_roots)
        if not is_within(canonical, roots):
            return self._reject(
                Rejected(Reason.OUTSIDE_ALLOWED_ROOT, f"{canonical} is outside {list(map(str, roots))}"),
                raw,
            )

        if mode in (FileMode.READ, FileMode.WRITE):
            rejection = self._check_file(canonical, content_size)
            if rejection is not None:
                return self._reject(rejection, raw)

        return Valid(canonical)

    def _check_raw(self, raw: str, for_interpolation: bool) -> Optional[Rejected]:
        if len(raw) > self._policy.max_path_length:
            return Rejected(
                Reason.PATH_TOO_LONG,
                f"length {len(raw)} exceeds {self._policy.max_path_length}",
            )
        if not raw.strip():
            return Rejected(Reason.PATH_TRAVERSAL, "empty path")
        if "\x00" in raw:
            return Rejected(Reason.PATH_TRAVERSAL, "null byte in path")
        if _ENCODED_TRAVERSAL.search(raw):
            return Rejected(Reason.PATH_TRAVERSAL, "percent-encoded separator or dot")
        if for_interpolation:
            for fragment in _SHELL_FRAGMENTS:
                if fragment in raw:
                    return Rejected(Reason.UNSAFE_CHARACTERS, f"contains {fragment!r}")
        return None

    def _check_file(self, canonical: Path, content_size: Optional[int]) -> Optional[Rejected]:
        allowed = self._policy.allowed_extensions
        if allowed:
            suffix = canonical.suffix.lower()
            if suffix not in allowed:
                return Rejected(Reason.DISALLOWED_EXTENSION, f"extension {suffix or '<none>'!r}")

        limit = self._policy.max_file_size
        if content_size is not None and content_size > limit:
            return Rejected(Reason.SIZE_LIMIT_EXCEEDED, f"content of {content_size} bytes exceeds {limit}")
        try:
            if canonical.is_file():
                size = canonical.stat().st_size
                if size > limit:
                    return Rejected(Reason.SIZE_LIMIT_EXCEEDED, f"file of {size} bytes exceeds {limit}")
        except OSError as e:
            logger.debug(f"stat failed for {canonical}: {e}")
        return None

    def _roots(self, intended_roots: Optional[Sequence[str | os.PathLike]]) -> tuple:
        if intended_roots is None:
            return self._policy.allowed_roots
        return tuple(Path(root).resolve() for root in intended_roots)

    @staticmethod
    def _reject(rejection: Rejected, raw: str) -> Rejected:
        logger.warning(f"Path rejected ({rejection.reason.value}): {raw!r} - {rejection.detail}")
        return rejection
