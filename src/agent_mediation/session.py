"""Per-session mediation state and the caller entry points."""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from loguru import logger

from .actions import Action, CommandAction, FileAction, FileMode
from .audit import AuditEvent, AuditLogger
from .config import Config
from .governance.approval import ApprovalPresenter, EditedAction, create_presenter
from .governance.coordinator import ApprovalCoordinator
from .governance.ledger import PermissionLedger
from .guards import CommandGuard, PathGuard, is_within
from .policy import SecurityPolicy, load_policy
from .results import Abort, Outcome, Reason, Rejected, Valid


def default_policy() -> SecurityPolicy:
    """Policy from Config.MEDIATION_POLICY_PATH, or a single-root policy if absent."""
    policy_path = Path(Config.MEDIATION_POLICY_PATH)
    if policy_path.is_file():
        return load_policy(policy_path)

    root = Path(Config.MEDIATION_DEFAULT_ROOT).resolve()
    logger.info(f"No policy file at {policy_path}, confining the session to {root}")
    return SecurityPolicy(
        allowed_roots=(root,),
        max_file_size=Config.DEFAULT_MAX_FILE_SIZE,
        max_path_length=Config.DEFAULT_MAX_PATH_LENGTH,
    )


class MediationSession:
    """
    One agent session: policy, guards, ledger and approval coordinator.

    Every proposed file or command operation enters through
    ``guard_and_approve_file`` or ``guard_and_approve_command``. Mechanical
    rejections return immediately; valid actions go to the coordinator.
    """

    def __init__(
        self,
        policy: SecurityPolicy,
        presenter: ApprovalPresenter,
        *,
        actor_id: str = "agent",
        session_id: Optional[str] = None,
        audit_logger: Optional[AuditLogger] = None,
        cwd: Optional[Union[str, os.PathLike]] = None,
        approval_timeout: Optional[int] = None,
        home: Optional[Union[str, os.PathLike]] = None,
    ) -> None:
        self.policy = policy
        self.actor_id = actor_id
        self.session_id = session_id or uuid.uuid4().hex
        self.audit_logger = audit_logger

        self.path_guard = PathGuard(policy)
        self.command_guard = CommandGuard(policy, self.path_guard, home=home)
        self.ledger = PermissionLedger()
        self.coordinator = ApprovalCoordinator(
            self.ledger,
            presenter,
            policy,
            self._revalidate,
            actor_id=actor_id,
            session_id=self.session_id,
            timeout_seconds=approval_timeout,
            audit_logger=audit_logger,
        )

        self._cwd = self._initial_cwd(cwd)
        logger.info(
            f"Mediation session {self.session_id} started for {actor_id} "
            f"(presenter: {presenter.get_name()}, cwd: {self._cwd})"
        )

    @classmethod
    async def create(
        cls,
        policy: Optional[SecurityPolicy] = None,
        presenter: Optional[ApprovalPresenter] = None,
        *,
        actor_id: str = "agent",
        session_id: Optional[str] = None,
        audit_logger: Optional[AuditLogger] = None,
        cwd: Optional[Union[str, os.PathLike]] = None,
        context: Any = None,
    ) -> "MediationSession":
        """
        Build a session, filling unspecified parts from Config.

        Args:
            policy: Security policy (default: loaded from MEDIATION_POLICY_PATH)
            presenter: Approval presenter (default: selected by APPROVAL_PRESENTER)
            actor_id: Actor the session mediates
            session_id: Session identifier (default: random)
            audit_logger: Audit trail (default: one at AUDIT_LOG_PATH when ENABLE_AUDIT)
            cwd: Initial working directory
            context: FastMCP context for the elicit presenter

        Raises:
            PolicyError: If the policy file is invalid
            RuntimeError: If no approval presenter is available
        """
        if policy is None:
            policy = default_policy()
        if presenter is None:
            presenter = await create_presenter(Config.APPROVAL_PRESENTER, context)
        if audit_logger is None and Config.ENABLE_AUDIT:
            audit_logger = AuditLogger()

        return cls(
            policy,
            presenter,
            actor_id=actor_id,
            session_id=session_id,
            audit_logger=audit_logger,
            cwd=cwd,
            approval_timeout=Config.APPROVAL_TIMEOUT or None,
            home=Config.MEDIATION_HOME or None,
        )

    @property
    def cwd(self) -> Path:
        return self._cwd

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def guard_and_approve_file(
        self,
        raw_path: Union[str, os.PathLike],
        mode: Union[FileMode, str] = FileMode.READ,
        *,
        content_size: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Outcome:
        """
        Validate a file operation and obtain approval for it.

        Returns:
            Proceed(FileAction) or Abort(reason)
        """
        mode = FileMode(mode)
        result = self.path_guard.validate(raw_path, mode=mode, cwd=self._cwd, content_size=content_size)
        if isinstance(result, Rejected):
            self._audit_rejection("path", os.fspath(raw_path), result)
            return Abort.from_rejection(result)

        action = FileAction(result.value, mode)
        return await self.coordinator.request_approval(action, description)

    async def guard_and_approve_command(
        self,
        raw_invocation: Union[str, Sequence[str]],
        *,
        description: Optional[str] = None,
    ) -> Outcome:
        """
        Validate a command and obtain approval for it.

        A string is parsed as a command line; a sequence is taken as argv.

        Returns:
            Proceed(CommandAction) or Abort(reason)
        """
        if isinstance(raw_invocation, str):
            result = self.command_guard.validate(raw_invocation, cwd=self._cwd)
            label = raw_invocation
        else:
            result = self.command_guard.validate_argv(raw_invocation, cwd=self._cwd)
            label = " ".join(map(str, raw_invocation))
        if isinstance(result, Rejected):
            self._audit_rejection("command", label, result)
            return Abort.from_rejection(result)

        action = CommandAction(result.value, self._cwd)
        return await self.coordinator.request_approval(action, description)

    def apply(self, action: Action) -> Path:
        """Apply the session-side effect of an approved action.

        Only ``cd`` changes session state: the working directory moves to the
        already-validated target. Returns the working directory.
        """
        if isinstance(action, CommandAction) and action.is_directory_change:
            target = Path(action.argv[1])
            if not is_within(target, self.policy.allowed_roots):
                raise ValueError(f"Directory {target} is outside the allowed roots")
            logger.info(f"Session {self.session_id} working directory: {self._cwd} -> {target}")
            self._cwd = target
        return self._cwd

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def reset(self) -> int:
        """Drop every grant of this session. Returns how many were removed."""
        removed = await self.ledger.clear()
        logger.info(f"Cleared {removed} grants for session {self.session_id}")
        if self.audit_logger is not None:
            self.audit_logger.log(
                AuditEvent.LEDGER_CLEARED,
                session_id=self.session_id,
                actor_id=self.actor_id,
                removed=removed,
            )
        return removed

    async def close(self) -> None:
        await self.coordinator.close()
        await self.reset()
        logger.info(f"Mediation session {self.session_id} closed")

    async def __aenter__(self) -> "MediationSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _initial_cwd(self, cwd: Optional[Union[str, os.PathLike]]) -> Path:
        if cwd is not None:
            return Path(cwd).resolve()
        here = Path.cwd().resolve()
        if is_within(here, self.policy.allowed_roots):
            return here
        return self.policy.allowed_roots[0]

    def _revalidate(self, original: Action, edited: EditedAction) -> Union[Valid, Rejected]:
        """Run a human-edited action through the guard that admitted the original."""
        if isinstance(original, FileAction):
            if not isinstance(edited, str):
                edited = list(edited)
                if len(edited) != 1:
                    return Rejected(Reason.PATH_TRAVERSAL, "edited path must be a single value")
                edited = edited[0]
            result = self.path_guard.validate(edited, mode=original.mode, cwd=self._cwd)
            if isinstance(result, Rejected):
                self._audit_rejection("path", edited, result)
                return result
            return Valid(FileAction(result.value, original.mode))

        cwd = original.cwd or self._cwd
        if isinstance(edited, str):
            result = self.command_guard.validate(edited, cwd=cwd)
            label = edited
        else:
            result = self.command_guard.validate_argv(edited, cwd=cwd)
            label = " ".join(map(str, edited))
        if isinstance(result, Rejected):
            self._audit_rejection("command", label, result)
            return result
        return Valid(CommandAction(result.value, cwd))

    def _audit_rejection(self, kind: str, raw: str, rejection: Rejected) -> None:
        if self.audit_logger is None:
            return
        self.audit_logger.log_rejection(
            kind,
            raw,
            rejection.reason.value,
            rejection.detail,
            session_id=self.session_id,
            actor_id=self.actor_id,
        )
