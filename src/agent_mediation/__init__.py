"""Agent Mediation - path, command and approval guards for coding agents."""

__version__ = "0.1.0"

from .actions import ActionClass, CommandAction, FileAction, FileMode
from .policy import PolicyError, SecurityPolicy, load_policy
from .results import Abort, Proceed, Reason, Rejected, Valid
from .session import MediationSession

__all__ = [
    "Abort",
    "ActionClass",
    "CommandAction",
    "FileAction",
    "FileMode",
    "MediationSession",
    "PolicyError",
    "Proceed",
    "Reason",
    "Rejected",
    "SecurityPolicy",
    "Valid",
    "load_policy",
    "__version__",
]
