"""Structured JSON audit trail for mediation decisions."""

import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .config import Config

MAX_CONTENT_LENGTH = 1000  # Truncate large content to prevent log bloat


class AuditEvent(str, Enum):
    """Audit event types for mediation decisions."""

    PATH_REJECTED = "path_rejected"
    COMMAND_REJECTED = "command_rejected"
    GRANT_USED = "grant_used"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_DENIED = "approval_denied"
    APPROVAL_EDITED = "approval_edited"
    APPROVAL_CANCELLED = "approval_cancelled"
    LEDGER_CLEARED = "ledger_cleared"


class AuditLogger:
    """
    Append-only JSON Lines trail of guard rejections and approval decisions.

    Records carry a UTC ISO 8601 timestamp plus event-specific fields; long
    strings are truncated. The file is moved to a timestamped backup once it
    reaches rotation_bytes, and backups older than retention_days are
    deleted (checked at most once a day).

    Grants themselves are never written here; only the decisions that
    produced or used them.
    """

    def __init__(
        self,
        log_path: Optional[str] = None,
        retention_days: Optional[int] = None,
        rotation_bytes: Optional[int] = None,
    ):
        """
        Initialize audit logger.

        Args:
            log_path: Path to audit log file (defaults to Config.AUDIT_LOG_PATH)
            retention_days: Days to keep rotated logs (defaults to Config.AUDIT_RETENTION_DAYS)
            rotation_bytes: Size that triggers rotation (defaults to Config.AUDIT_ROTATION_BYTES)
        """
        self.log_path = Path(log_path or Config.AUDIT_LOG_PATH)
        self.retention_days = (
            Config.AUDIT_RETENTION_DAYS if retention_days is None else retention_days
        )
        self.rotation_bytes = (
            Config.AUDIT_ROTATION_BYTES if rotation_bytes is None else rotation_bytes
        )
        self._next_cleanup: Optional[datetime] = None
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._cleanup_old_logs()

    def _backup_path(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        candidate = self.log_path.with_name(f"{self.log_path.name}.{stamp}")
        suffix = 0
        while candidate.exists():
            suffix += 1
            candidate = self.log_path.with_name(f"{self.log_path.name}.{stamp}.{suffix}")
        return candidate

    def _rotate_if_needed(self) -> None:
        """Move the current file aside once it reaches rotation_bytes."""
        try:
            size = self.log_path.stat().st_size
        except FileNotFoundError:
            return
        if size >= self.rotation_bytes:
            self.log_path.replace(self._backup_path())

    def _cleanup_old_logs(self) -> None:
        """Delete the log and its backups when last modified before the retention window."""
        now = datetime.now(timezone.utc)
        self._next_cleanup = now + timedelta(days=1)
        if self.retention_days <= 0:
            return
        oldest_kept = (now - timedelta(days=self.retention_days)).timestamp()
        for candidate in self.log_path.parent.glob(f"{self.log_path.name}*"):
            if candidate.is_file() and candidate.stat().st_mtime < oldest_kept:
                candidate.unlink()

    @staticmethod
    def _truncate_content(value: Any, max_length: int = MAX_CONTENT_LENGTH) -> Any:
        """Shorten long strings, recursing into mappings and sequences."""
        if isinstance(value, str):
            if len(value) <= max_length:
                return value
            return f"{value[:max_length]}... [truncated, {len(value)} total chars]"
        if isinstance(value, dict):
            return {key: AuditLogger._truncate_content(item, max_length) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [AuditLogger._truncate_content(item, max_length) for item in value]
        return value

    def log(
        self,
        event: AuditEvent,
        session_id: Optional[str] = None,
        request_id: Optional[str] = None,
        **kwargs,
    ):
        """
        Append one audit record.

        Args:
            event: Audit event type
            session_id: Session the event belongs to
            request_id: Approval request the event belongs to, if any
            **kwargs: Event-specific fields
        """
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event.value,
            "session_id": session_id,
            "request_id": request_id,
        }
        record.update(self._truncate_content(kwargs))
        line = json.dumps(record, ensure_ascii=False, default=str)

        if self._next_cleanup is None or datetime.now(timezone.utc) >= self._next_cleanup:
            self._cleanup_old_logs()
        self._rotate_if_needed()

        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def log_rejection(
        self,
        kind: str,
        raw: str,
        reason: str,
        detail: str,
        session_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ):
        """
        Log a mechanical rejection by a guard.

        Args:
            kind: "path" or "command"
            raw: Raw input as proposed by the agent
            reason: Reason code
            detail: Internal detail (never shown to the agent)
            session_id: Session identifier
            actor_id: Actor that proposed the action
        """
        event = AuditEvent.PATH_REJECTED if kind == "path" else AuditEvent.COMMAND_REJECTED
        self.log(
            event,
            session_id=session_id,
            actor_id=actor_id,
            raw=raw,
            reason=reason,
            detail=detail,
        )

    def log_decision(
        self,
        event: AuditEvent,
        action_class: str,
        scope: str,
        concrete: Any,
        session_id: Optional[str] = None,
        request_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        expiry: Optional[str] = None,
        reason: Optional[str] = None,
        edited_action: Any = None,
    ):
        """
        Log an approval-stage event.

        Args:
            event: One of the GRANT_USED / APPROVAL_* events
            action_class: Action class value
            scope: Scope the decision applies to
            concrete: Concrete path or argv
            session_id: Session identifier
            request_id: Request identifier for traceability
            actor_id: Actor that proposed the action
            expiry: Grant expiry when a grant was recorded or used
            reason: Abort reason when the action was stopped
            edited_action: Replacement action on EDIT
        """
        log_data = {
            "actor_id": actor_id,
            "action_class": action_class,
            "scope": scope,
            "concrete": concrete,
        }
        if expiry is not None:
            log_data["expiry"] = expiry
        if reason is not None:
            log_data["reason"] = reason
        if edited_action is not None:
            log_data["edited_action"] = edited_action

        self.log(event, session_id=session_id, request_id=request_id, **log_data)
