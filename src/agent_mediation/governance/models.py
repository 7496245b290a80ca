"""Data models for permission grants."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..actions import ActionClass


class GrantDecision(str, Enum):
    """Recorded human decision."""

    ALLOWED = "allowed"
    DENIED = "denied"


class Expiry(str, Enum):
    """How long a grant stays in force."""

    SESSION = "session"
    ONE_SHOT = "one_shot"


@dataclass(frozen=True)
class PermissionGrant:
    """
    Human decision bound to an actor, action class and scope.

    Grants live in memory only, for the lifetime of the session that
    recorded them.

    Invariants:
    - actor_id and scope must not be empty
    - sequence increases with every record, so later grants sort after
      earlier ones even when created_at collides
    """

    actor_id: str
    action_class: ActionClass
    scope: str
    decision: GrantDecision
    expiry: Expiry
    sequence: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.actor_id or not self.actor_id.strip():
            raise ValueError("actor_id must not be empty")
        if not self.scope or not self.scope.strip():
            raise ValueError("scope must not be empty")

    @property
    def allowed(self) -> bool:
        return self.decision == GrantDecision.ALLOWED

    @property
    def one_shot(self) -> bool:
        return self.expiry == Expiry.ONE_SHOT

    def to_dict(self) -> dict:
        return {
            "actor_id": self.actor_id,
            "action_class": self.action_class.value,
            "scope": self.scope,
            "decision": self.decision.value,
            "expiry": self.expiry.value,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
        }
