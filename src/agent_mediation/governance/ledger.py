"""Session-scoped permission ledger."""

import asyncio
import itertools
import shlex
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from ..actions import ActionClass
from .models import Expiry, GrantDecision, PermissionGrant

Concrete = Union[str, Path, Sequence[str]]


def _command_tokens(value: Concrete) -> Tuple[str, ...]:
    tokens = shlex.split(value) if isinstance(value, str) else [str(v) for v in value]
    if not tokens:
        return ()
    return (PurePosixPath(tokens[0]).name or tokens[0], *tokens[1:])


def scope_specificity(action_class: ActionClass, scope: str, concrete: Concrete) -> Optional[int]:
    """
    Specificity of ``scope`` for ``concrete``, or None if it does not match.

    File scopes are directory prefixes compared by path ancestry; command
    scopes are token prefixes of the argv, executable compared by basename.
    """
    if action_class == ActionClass.COMMAND_EXEC:
        scope_tokens = _command_tokens(scope)
        concrete_tokens = _command_tokens(concrete)
        if scope_tokens and concrete_tokens[: len(scope_tokens)] == scope_tokens:
            return len(scope_tokens)
        return None

    scope_path = Path(scope)
    concrete_path = Path(concrete) if not isinstance(concrete, (list, tuple)) else None
    if concrete_path is not None and concrete_path.is_relative_to(scope_path):
        return len(scope_path.parts)
    return None


class PermissionLedger:
    """
    In-memory grant store for one session.

    Features:
    - Grants keyed by (actor_id, action_class, scope); recording the same
      key replaces the previous grant
    - Most specific matching scope wins on lookup
    - One-shot grants are consumed by the lookup that returns them
    - Nothing is persisted; clear() or process exit destroys all grants

    Concurrency:
    - Every operation runs under one asyncio.Lock, so lookups and records
      are linearizable
    """

    def __init__(self) -> None:
        self._grants: Dict[str, Dict[Tuple[ActionClass, str], PermissionGrant]] = {}
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    async def lookup(
        self, actor_id: str, action_class: ActionClass, concrete: Concrete
    ) -> Optional[PermissionGrant]:
        """
        Find the grant covering a concrete path or command.

        Args:
            actor_id: Actor the grant must belong to
            action_class: Class of the action being checked
            concrete: Canonical path, argv, or command string

        Returns:
            Most specific matching grant, or None when nothing matches or
            equally specific grants disagree
        """
        async with self._lock:
            actor_grants = self._grants.get(actor_id, {})
            best: List[Tuple[int, PermissionGrant]] = []
            for (grant_class, scope), grant in actor_grants.items():
                if grant_class != action_class:
                    continue
                specificity = scope_specificity(action_class, scope, concrete)
                if specificity is None:
                    continue
                if not best or specificity > best[0][0]:
                    best = [(specificity, grant)]
                elif specificity == best[0][0]:
                    best.append((specificity, grant))

            if not best:
                return None

            tied = [grant for _, grant in best]
            if len({grant.decision for grant in tied}) > 1:
                logger.warning(
                    f"Conflicting grants of equal specificity for {actor_id}:{action_class.value} "
                    f"({[g.scope for g in tied]}); fresh approval required"
                )
                return None

            grant = max(tied, key=lambda g: g.sequence)
            if grant.one_shot:
                del actor_grants[(grant.action_class, grant.scope)]
                logger.debug(f"Consumed one-shot grant {grant.scope!r} for {actor_id}")
            return grant

    async def record(
        self,
        actor_id: str,
        action_class: ActionClass,
        scope: str,
        decision: GrantDecision,
        expiry: Expiry = Expiry.SESSION,
    ) -> PermissionGrant:
        """
        Insert or replace the grant for (actor_id, action_class, scope).

        Raises:
            ValueError: If actor_id or scope is empty
        """
        async with self._lock:
            grant = PermissionGrant(
                actor_id=actor_id,
                action_class=action_class,
                scope=scope,
                decision=decision,
                expiry=expiry,
                sequence=next(self._sequence),
            )
            self._grants.setdefault(actor_id, {})[(action_class, scope)] = grant
            logger.info(
                f"Recorded {decision.value} grant for {actor_id}:{action_class.value} "
                f"scope={scope!r} expiry={expiry.value}"
            )
            return grant

    async def consume(self, grant: PermissionGrant) -> bool:
        """Remove ``grant`` if it is still the one stored under its key."""
        async with self._lock:
            actor_grants = self._grants.get(grant.actor_id, {})
            key = (grant.action_class, grant.scope)
            current = actor_grants.get(key)
            if current is None or current.sequence != grant.sequence:
                return False
            del actor_grants[key]
            return True

    async def revoke(self, actor_id: str, action_class: ActionClass, scope: str) -> bool:
        """Delete one grant. Returns True if it existed."""
        async with self._lock:
            removed = self._grants.get(actor_id, {}).pop((action_class, scope), None)
            if removed is not None:
                logger.info(f"Revoked grant {actor_id}:{action_class.value} scope={scope!r}")
            return removed is not None

    async def grants(self, actor_id: Optional[str] = None) -> List[PermissionGrant]:
        """Snapshot of stored grants, oldest first."""
        async with self._lock:
            if actor_id is not None:
                selected = list(self._grants.get(actor_id, {}).values())
            else:
                selected = [g for per_actor in self._grants.values() for g in per_actor.values()]
            return sorted(selected, key=lambda g: g.sequence)

    async def clear(self, actor_id: Optional[str] = None) -> int:
        """Wipe grants for one actor, or for the whole session. Returns the count removed."""
        async with self._lock:
            if actor_id is not None:
                removed = len(self._grants.pop(actor_id, {}))
            else:
                removed = sum(len(per_actor) for per_actor in self._grants.values())
                self._grants.clear()
            logger.info(f"Cleared {removed} grants" + (f" for {actor_id}" if actor_id else ""))
            return removed
