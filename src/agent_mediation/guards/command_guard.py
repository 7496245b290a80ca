"""Command validation: tokenize, screen and rewrite invocations into argv."""

from __future__ import annotations

import fnmatch
import os
import posixpath
import re
import shlex
from pathlib import Path, PurePosixPath
from typing import FrozenSet, Iterator, List, Optional, Sequence, Tuple

from loguru import logger

from ..actions import FileMode
from ..policy import SecurityPolicy
from ..results import CommandValidationResult, Reason, Rejected, Valid
from .path_guard import PathGuard, is_within

CONTROL_OPERATORS = frozenset({";", ";;", "&", "&&", "|", "||", "|&", "(", ")", "<", ">", ">>", "<<", ">&", "<&"})

SHELLS = frozenset({"sh", "bash", "zsh", "dash", "ksh", "mksh", "fish", "busybox-sh"})
CD_COMMANDS = frozenset({"cd", "pushd", "chdir"})

WRAPPERS = frozenset(
    {
        "builtin",
        "busybox",
        "command",
        "doas",
        "env",
        "exec",
        "ionice",
        "nice",
        "nohup",
        "setsid",
        "stdbuf",
        "sudo",
        "time",
        "timeout",
        "xargs",
    }
)

# Wrapper options that consume the following token.
WRAPPER_VALUE_OPTIONS = {
    "sudo": frozenset({"-u", "-g", "-C", "-D", "-h", "-p", "-r", "-t", "-U"}),
    "doas": frozenset({"-u", "-C"}),
    "nice": frozenset({"-n"}),
    "ionice": frozenset({"-c", "-n", "-p"}),
    "timeout": frozenset({"-s", "-k", "--signal", "--kill-after"}),
    "xargs": frozenset({"-I", "-n", "-P", "-d", "-L", "-s", "-E", "-a"}),
    "env": frozenset({"-u", "-C", "--unset", "--chdir"}),
}
# Shell options that consume the following token.
SHELL_VALUE_OPTIONS = frozenset({"-o", "+o", "-O", "+O", "--rcfile", "--init-file"})
# Leading positional arguments a wrapper takes before the wrapped command.
WRAPPER_POSITIONALS = {"timeout": 1}

# Per-executable flag spellings folded into one short flag.
FLAG_ALIASES = {
    "rm": {"R": "r", "--recursive": "r", "--force": "f"},
    "chmod": {"--recursive": "R"},
    "chown": {"--recursive": "R"},
    "chgrp": {"--recursive": "R"},
}

PATH_ONLY_COMMANDS = frozenset(
    {
        "cat",
        "cp",
        "du",
        "head",
        "less",
        "ln",
        "ls",
        "mkdir",
        "more",
        "mv",
        "rm",
        "rmdir",
        "stat",
        "tail",
        "touch",
        "tree",
        "truncate",
        "wc",
    }
)
FIRST_ARG_NOT_PATH = frozenset({"chmod", "chown", "chgrp"})

_MAX_SHELL_DEPTH = 4
_GLOB_CHARS = set("*?[")
_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_HOME_SPELLINGS = frozenset({"~", "$HOME", "${HOME}"})
_SAFE_REDIRECT_TARGETS = frozenset({"/dev/null", "/dev/stdout", "/dev/stderr", "/dev/tty"})
# Pseudo-executable for the command line carried by `env -S`
_SPLIT_STRING = "env -S"


def quote_for_shell(argv: Sequence[str]) -> str:
    """Quote every argument on its own, then join. Never quote the whole line."""
    return " ".join(shlex.quote(arg) for arg in argv)


def wrap_for_shell(argv: Sequence[str], shell: str = "sh") -> Tuple[str, ...]:
    """argv that runs ``argv`` through ``shell -c`` with literal arguments."""
    return (shell, "-c", quote_for_shell(argv))


def has_unquoted_operator(raw: str) -> bool:
    """True if ``raw`` holds a shell control or redirection operator outside quotes."""
    quote: Optional[str] = None
    escaped = False
    for char in raw:
        if escaped:
            escaped = False
            continue
        if char == "\\" and quote != "'":
            escaped = True
            continue
        if quote:
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char in ";&|<>\n":
            return True
    return False


def _scan_tokens(raw: str) -> List[str]:
    """Tokens with shell punctuation split out, used only for screening.

    Each line becomes its own segment, since a newline separates commands
    in shell text.
    """
    try:
        tokens: List[str] = []
        for line in raw.splitlines() or [raw]:
            tokens.extend(_lex(line))
            tokens.append(";")
        return tokens
    except ValueError:
        # A quoted argument spans lines
        return _lex(raw)


def _lex(text: str) -> List[str]:
    lexer = shlex.shlex(text, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    return list(lexer)


def _segments(tokens: Sequence[str]) -> Iterator[List[str]]:
    current: List[str] = []
    for token in tokens:
        if token in CONTROL_OPERATORS or (token and set(token) <= set(";&|()<>")):
            if current:
                yield current
            current = []
        else:
            current.append(token)
    if current:
        yield current


def _basename(token: str) -> str:
    return PurePosixPath(token).name or token


class CommandGuard:
    """
    Stateless command validator.

    The output is always an argv vector. Downstream execution must pass it
    to the process directly, without a shell, so no argument is ever
    re-parsed.
    """

    def __init__(
        self,
        policy: SecurityPolicy,
        path_guard: Optional[PathGuard] = None,
        *,
        home: Optional[str | os.PathLike] = None,
    ) -> None:
        self._policy = policy
        self._path_guard = path_guard or PathGuard(policy)
        # Target of a bare `cd` and of `~`; unknown means both are refused
        self._home = Path(home) if home is not None else None
        self._banned = [shlex.split(p) for p in policy.banned_commands if p.strip()]

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    def validate(self, raw_invocation: str, *, cwd: Optional[str | os.PathLike] = None) -> CommandValidationResult:
        """
        Validate a raw command line.

        Args:
            raw_invocation: Command text proposed by the agent
            cwd: Working directory the command would run in

        Returns:
            Valid(argv) or Rejected(reason, detail)
        """
        if not raw_invocation or not raw_invocation.strip():
            return self._reject(Rejected(Reason.MALFORMED_COMMAND, "empty command"), raw_invocation)
        try:
            argv = shlex.split(raw_invocation)
            scan_tokens = _scan_tokens(raw_invocation)
        except ValueError as e:
            return self._reject(Rejected(Reason.MALFORMED_COMMAND, f"cannot tokenize: {e}"), raw_invocation)
        if not argv:
            return self._reject(Rejected(Reason.MALFORMED_COMMAND, "empty command"), raw_invocation)

        banned = self._find_banned_text(raw_invocation) or self._find_banned(scan_tokens) or self._find_banned(argv)
        if banned:
            return self._reject(Rejected(Reason.BANNED_COMMAND, banned), raw_invocation)

        if has_unquoted_operator(raw_invocation):
            return self._reject(
                Rejected(Reason.MALFORMED_COMMAND, "shell operators are not supported"),
                raw_invocation,
            )

        return self._validate_tokens(argv, cwd, raw_invocation)

    def validate_argv(self, argv: Sequence[str], *, cwd: Optional[str | os.PathLike] = None) -> CommandValidationResult:
        """Validate an argv vector, e.g. one supplied by a human edit."""
        tokens = [str(arg) for arg in argv]
        label = shlex.join(tokens)
        if not tokens or not tokens[0].strip():
            return self._reject(Rejected(Reason.MALFORMED_COMMAND, "empty command"), label)
        if any("\x00" in token for token in tokens):
            return self._reject(Rejected(Reason.MALFORMED_COMMAND, "null byte in argument"), label)

        banned = self._find_banned(tokens) or self._match_patterns(tokens)
        if banned:
            return self._reject(Rejected(Reason.BANNED_COMMAND, banned), label)

        return self._validate_tokens(tokens, cwd, label)

    # ------------------------------------------------------------------
    # Scoping checks
    # ------------------------------------------------------------------

    def _validate_tokens(
        self, argv: List[str], cwd: Optional[str | os.PathLike], label: str
    ) -> CommandValidationResult:
        base = Path(cwd).resolve() if cwd is not None else Path.cwd().resolve()
        if not is_within(base, self._policy.allowed_roots):
            return self._reject(
                Rejected(Reason.DIRECTORY_ESCAPE, f"working directory {base} is outside the allowed roots"),
                label,
            )

        executable, args = self._unwrap(argv)
        if executable in CD_COMMANDS and executable == _basename(argv[0]):
            result = self._cd_target(args, base)
            return self._reject(result, label) if isinstance(result, Rejected) else result

        rejected = self._check_path_arguments(executable, args, base) or self._check_inline_script(
            executable, args, base
        )
        if rejected is not None:
            return self._reject(rejected, label)

        return Valid(tuple(argv))

    def _cd_target(self, args: List[str], base: Path) -> CommandValidationResult:
        operands = [a for a in args if a not in ("-L", "-P", "-e", "-@", "--")]
        if len(operands) > 1:
            return Rejected(Reason.MALFORMED_COMMAND, "cd takes one directory")
        if operands and operands[0] == "-":
            return Rejected(Reason.DIRECTORY_ESCAPE, "cd - target is unknown")

        target = self._expand_home(operands[0] if operands else "~")
        if target is None:
            return Rejected(Reason.DIRECTORY_ESCAPE, "home directory is not known")
        result = self._path_guard.validate(target, mode=FileMode.LIST, cwd=base)
        if not result.ok:
            return Rejected(Reason.DIRECTORY_ESCAPE, f"cd target rejected: {result.reason.value}")
        return Valid(("cd", str(result.value)))

    def _expand_home(self, target: str) -> Optional[str]:
        if not target.startswith("~"):
            return target
        if self._home is None or not (target == "~" or target.startswith("~/")):
            return None
        return str(self._home / target[2:]) if target != "~" else str(self._home)

    def _check_inline_script(
        self, executable: str, args: List[str], base: Path, depth: int = 0
    ) -> Optional[Rejected]:
        """Apply the cd and path checks to every command of an inline script."""
        script = self._inline_script(executable, args)
        if script is None:
            return None
        if depth >= _MAX_SHELL_DEPTH:
            return Rejected(Reason.MALFORMED_COMMAND, "inline shell scripts nested too deeply")
        try:
            tokens = _scan_tokens(script)
        except ValueError:
            return Rejected(Reason.MALFORMED_COMMAND, "unparsable inline shell script")

        rejected = self._check_redirections(tokens, base)
        if rejected is not None:
            return rejected

        for segment in _segments(tokens):
            inner, inner_args = self._unwrap(segment)
            if not inner:
                continue
            if inner in CD_COMMANDS:
                result = self._cd_target(inner_args, base)
                if isinstance(result, Rejected):
                    return result
                # Later commands of the script run in the new directory
                base = Path(result.value[1])
                continue
            rejected = self._check_path_arguments(inner, inner_args, base) or self._check_inline_script(
                inner, inner_args, base, depth + 1
            )
            if rejected is not None:
                return rejected
        return None

    def _check_redirections(self, tokens: Sequence[str], base: Path) -> Optional[Rejected]:
        for operator, target in zip(tokens, tokens[1:]):
            if not (set(operator) <= set("<>&|") and set(operator) & set("<>")):
                continue
            if target.isdigit() or target == "-" or target in _SAFE_REDIRECT_TARGETS:
                continue
            if set(target) <= set(";&|()<>"):
                continue
            result = self._path_guard.validate(target, mode=FileMode.LIST, cwd=base)
            if not result.ok:
                return Rejected(
                    Reason.ARGUMENT_PATH_REJECTED,
                    f"redirection target {target!r} rejected: {result.reason.value}",
                )
        return None

    def _check_path_arguments(self, executable: str, args: List[str], base: Path) -> Optional[Rejected]:
        positional_only = False
        positionals_seen = 0
        for arg in args:
            if not positional_only and arg == "--":
                positional_only = True
                continue

            is_flag = not positional_only and arg.startswith("-") and arg != "-"
            if executable in PATH_ONLY_COMMANDS or executable in FIRST_ARG_NOT_PATH:
                if is_flag:
                    candidate = self._option_value(arg)
                else:
                    positionals_seen += 1
                    if executable in FIRST_ARG_NOT_PATH and positionals_seen == 1:
                        continue
                    candidate = arg
            else:
                candidate = self._option_value(arg) if is_flag else arg
                if candidate is not None and not self._looks_like_path(candidate):
                    candidate = None

            if candidate is None or candidate == "-":
                continue

            result = self._path_guard.validate(candidate, mode=FileMode.LIST, cwd=base)
            if not result.ok:
                return Rejected(
                    Reason.ARGUMENT_PATH_REJECTED,
                    f"argument {candidate!r} rejected: {result.reason.value}",
                )
        return None

    def _option_value(self, arg: str) -> Optional[str]:
        if arg.startswith("--") and "=" in arg:
            value = arg.split("=", 1)[1]
            return value if value and self._looks_like_path(value) else None
        return None

    @staticmethod
    def _looks_like_path(token: str) -> bool:
        if not token or any(ch.isspace() for ch in token) or "://" in token:
            return False
        return "/" in token or token.startswith(".") or token.startswith("~")

    # ------------------------------------------------------------------
    # Banned command screening
    # ------------------------------------------------------------------

    def _find_banned_text(self, text: str) -> Optional[str]:
        for pattern in self._policy.compiled_patterns:
            if pattern.search(text):
                return f"matches banned pattern {pattern.pattern!r}"
        return None

    def _match_patterns(self, tokens: Sequence[str]) -> Optional[str]:
        return self._find_banned_text(shlex.join(tokens))

    def _find_banned(self, tokens: Sequence[str], depth: int = 0) -> Optional[str]:
        for segment in _segments(tokens):
            match = self._match_patterns(segment) or self._find_banned_segment(segment, depth)
            if match:
                return match
        return None

    def _find_banned_segment(self, segment: List[str], depth: int) -> Optional[str]:
        executable, args = self._unwrap(segment)
        if not executable:
            return None

        names = self._executable_names(executable)
        for pattern in self._banned:
            pattern_exe = pattern[0].lower()
            if pattern_exe in names and self._arguments_match(pattern_exe, pattern[1:], args):
                return f"matches banned command {shlex.join(pattern)!r}"

        script = self._inline_script(executable, args)
        if script is None:
            return None
        if depth >= _MAX_SHELL_DEPTH:
            return "inline shell scripts nested too deeply"
        try:
            nested = _scan_tokens(script)
        except ValueError:
            return "unparsable inline shell script"
        return self._find_banned_text(script) or self._find_banned(nested, depth + 1)

    def _executable_names(self, executable: str) -> FrozenSet[str]:
        name = executable.lower()
        names = {name, name.split(".", 1)[0]}
        alias = self._policy.command_aliases.get(executable) or self._policy.command_aliases.get(name)
        if alias:
            names.add(alias.lower())
        return frozenset(names)

    @staticmethod
    def _inline_script(executable: str, args: List[str]) -> Optional[str]:
        """Script text run by ``eval``, ``env -S`` or ``<shell> -c``, else None.

        For shells, ``-c`` only marks the first operand as the script, so
        options may sit on either side of it.
        """
        if executable == "eval":
            return " ".join(args)
        if executable == _SPLIT_STRING:
            return " ".join([args[0], *(shlex.quote(arg) for arg in args[1:])]) if args else ""
        if executable not in SHELLS:
            return None

        inline = False
        index = 0
        while index < len(args):
            arg = args[index]
            if arg in ("-", "--"):
                index += 1
                break
            if arg.startswith("--command="):
                return arg.split("=", 1)[1]
            if arg == "--command":
                inline = True
                index += 1
                break
            if arg in SHELL_VALUE_OPTIONS:
                index += 2
                continue
            if arg.startswith("--"):
                index += 1
                continue
            if len(arg) > 1 and arg[0] in "-+":
                if arg[0] == "-" and "c" in arg[1:]:
                    inline = True
                # A cluster such as -eo takes the option name that follows
                index += 2 if arg[-1] in "oO" else 1
                continue
            break

        if not inline:
            return None
        return args[index] if index < len(args) else ""

    @staticmethod
    def _unwrap(tokens: Sequence[str]) -> Tuple[str, List[str]]:
        """Strip env assignments and wrapper commands; return (executable, args)."""
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if _ASSIGNMENT.match(token):
                index += 1
                continue
            name = _basename(token)
            if name not in WRAPPERS:
                return name, list(tokens[index + 1 :])

            index += 1
            value_options = WRAPPER_VALUE_OPTIONS.get(name, frozenset())
            positionals = WRAPPER_POSITIONALS.get(name, 0)
            while index < len(tokens):
                current = tokens[index]
                if current == "--":
                    index += 1
                    break
                if current.startswith("-") and current != "-":
                    if name == "env":
                        split = _split_string(tokens, index)
                        if split is not None:
                            value, index = split
                            return _SPLIT_STRING, [value, *tokens[index:]]
                    index += 2 if current in value_options else 1
                    continue
                if name == "env" and _ASSIGNMENT.match(current):
                    index += 1
                    continue
                if positionals:
                    positionals -= 1
                    index += 1
                    continue
                break
        return "", []

    @staticmethod
    def _arguments_match(executable: str, pattern_args: Sequence[str], args: Sequence[str]) -> bool:
        aliases = FLAG_ALIASES.get(executable, {})
        short_flags = set()
        long_flags = set()
        positionals = []
        positional_only = False
        for arg in args:
            if positional_only or arg == "-" or not arg.startswith("-"):
                positionals.append(arg)
            elif arg == "--":
                positional_only = True
            elif arg.startswith("--"):
                flag = arg.split("=", 1)[0]
                long_flags.add(flag)
                if flag in aliases:
                    short_flags.add(aliases[flag])
            else:
                short_flags.update(aliases.get(ch, ch) for ch in arg[1:])

        for pattern_arg in pattern_args:
            if pattern_arg.startswith("--"):
                if pattern_arg in aliases:
                    if aliases[pattern_arg] not in short_flags:
                        return False
                elif pattern_arg not in long_flags:
                    return False
            elif pattern_arg.startswith("-") and pattern_arg != "-":
                wanted = {aliases.get(ch, ch) for ch in pattern_arg[1:]}
                if not wanted <= short_flags:
                    return False
            elif not any(_positional_matches(pattern_arg, arg) for arg in positionals):
                return False
        return True

    @staticmethod
    def _reject(rejection: Rejected, label: str) -> Rejected:
        logger.warning(f"Command rejected ({rejection.reason.value}): {label!r} - {rejection.detail}")
        return rejection


def _split_string(tokens: Sequence[str], index: int) -> Optional[Tuple[str, int]]:
    """(command line, next index) when tokens[index] is env's -S/--split-string."""
    current = tokens[index]
    if current.startswith("--split-string="):
        return current.split("=", 1)[1], index + 1
    if current == "--split-string" or (not current.startswith("--") and current.endswith("S")):
        return (tokens[index + 1] if index + 1 < len(tokens) else ""), index + 2
    if not current.startswith("--") and "S" in current:
        return current[current.index("S") + 1 :], index + 1
    return None


def _normalize_target(arg: str) -> str:
    if arg in _HOME_SPELLINGS or arg.startswith(("~/", "$HOME/", "${HOME}/")):
        rest = arg.split("/", 1)[1] if "/" in arg else ""
        arg = "~/" + rest if rest else "~"
        return posixpath.normpath(arg)
    if arg.startswith("/"):
        return "/" + posixpath.normpath(arg).lstrip("/")
    return arg


def _positional_matches(pattern_arg: str, arg: str) -> bool:
    if pattern_arg.startswith(("/", "~")):
        target = _normalize_target(arg)
        pattern = _normalize_target(pattern_arg)
        if target == pattern:
            return True
        # "/*" or "/.*" expand to everything directly under the pattern path
        head, tail = posixpath.split(target)
        return head == pattern and bool(set(tail) & _GLOB_CHARS)
    if set(pattern_arg) & _GLOB_CHARS:
        return fnmatch.fnmatchcase(arg, pattern_arg)
    return arg == pattern_arg
