"""Governance: permission ledger and human approval protocol."""

from .approval import (
    ApprovalDecision,
    ApprovalPresenter,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalState,
    FastMCPElicitPresenter,
    PresenterFactory,
    PromptCancelled,
    SystemdAskPresenter,
    create_presenter,
)
from .coordinator import ApprovalCoordinator
from .ledger import PermissionLedger
from .models import Expiry, GrantDecision, PermissionGrant

__all__ = [
    "ApprovalCoordinator",
    "ApprovalDecision",
    "ApprovalPresenter",
    "ApprovalRequest",
    "ApprovalResponse",
    "ApprovalState",
    "Expiry",
    "FastMCPElicitPresenter",
    "GrantDecision",
    "PermissionGrant",
    "PermissionLedger",
    "PresenterFactory",
    "PromptCancelled",
    "SystemdAskPresenter",
    "create_presenter",
]
