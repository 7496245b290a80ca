"""Helpers for constructing approval requests."""

import hashlib
import itertools
import time
from typing import Optional

from ..actions import Action
from .approval import ApprovalRequest

_counter = itertools.count(1)


def generate_request_id(session_id: str, action_class: str, scope: str) -> str:
    """
    Generate a readable, unique request ID.

    Format: {session_hash}_{action_class}_{scope_hash}_{timestamp_ms}_{n}

    Args:
        session_id: Session identifier
        action_class: Action class value
        scope: Proposed grant scope

    Returns:
        Request ID for this approval request
    """
    # Hash session_id and scope so paths never appear in identifiers
    session_hash = hashlib.sha256(session_id.encode()).hexdigest()[:8]
    scope_hash = hashlib.sha256(scope.encode()).hexdigest()[:8]
    timestamp_ms = int(time.monotonic() * 1000)
    return f"{session_hash}_{action_class}_{scope_hash}_{timestamp_ms}_{next(_counter)}"


def build_approval_request(
    action: Action,
    *,
    description: Optional[str] = None,
    actor_id: str = "agent",
    session_id: str = "default",
    timeout_seconds: Optional[int] = None,
) -> ApprovalRequest:
    """
    Build an ApprovalRequest for a validated action.

    Args:
        action: Validated file or command action
        description: Human-readable description (defaults to action.describe())
        actor_id: Actor proposing the action
        session_id: Session identifier
        timeout_seconds: Presenter timeout hint

    Returns:
        ApprovalRequest in PENDING state
    """
    action_class = action.action_class
    scope = action.scope
    return ApprovalRequest(
        request_id=generate_request_id(session_id, action_class.value, scope),
        action_class=action_class,
        description=description or action.describe(),
        proposed_scope=scope,
        action=action,
        actor_id=actor_id,
        session_id=session_id,
        timeout_seconds=timeout_seconds,
        context_metadata={"concrete": str(action.concrete)},
    )
