"""Tests for the session permission ledger."""

import asyncio

import pytest

from agent_mediation.actions import ActionClass
from agent_mediation.governance.ledger import PermissionLedger, scope_specificity
from agent_mediation.governance.models import Expiry, GrantDecision, PermissionGrant

READ = ActionClass.FILE_READ
EXEC = ActionClass.COMMAND_EXEC


@pytest.fixture
def ledger() -> PermissionLedger:
    return PermissionLedger()


# ============================================================================
# SCOPE MATCHING
# ============================================================================


def test_file_scope_matches_descendants_only():
    assert scope_specificity(READ, "/p/src", "/p/src/a.py") == 3
    assert scope_specificity(READ, "/p/src", "/p/src") == 3
    assert scope_specificity(READ, "/p/src", "/p/srcx/a.py") is None
    assert scope_specificity(READ, "/p/src", "/p/README.md") is None


def test_command_scope_is_a_token_prefix():
    assert scope_specificity(EXEC, "git status", ("git", "status", "-s")) == 2
    assert scope_specificity(EXEC, "git", ("/usr/bin/git", "push")) == 1
    assert scope_specificity(EXEC, "git status", ("git", "push")) is None
    assert scope_specificity(EXEC, "git", ("gitk",)) is None


# ============================================================================
# LOOKUP
# ============================================================================


@pytest.mark.asyncio
async def test_lookup_miss_returns_none(ledger):
    assert await ledger.lookup("agent", READ, "/p/src/a.py") is None


@pytest.mark.asyncio
async def test_session_grant_covers_scope(ledger):
    await ledger.record("agent", READ, "/p/src", GrantDecision.ALLOWED)

    grant = await ledger.lookup("agent", READ, "/p/src/pkg/mod.py")

    assert grant is not None and grant.allowed
    # Session grants survive lookups
    assert await ledger.lookup("agent", READ, "/p/src/other.py") is not None


@pytest.mark.asyncio
async def test_grants_are_isolated_per_actor_and_class(ledger):
    await ledger.record("agent", READ, "/p", GrantDecision.ALLOWED)

    assert await ledger.lookup("other-agent", READ, "/p/a.py") is None
    assert await ledger.lookup("agent", ActionClass.FILE_WRITE, "/p/a.py") is None


@pytest.mark.asyncio
async def test_most_specific_scope_wins(ledger):
    await ledger.record("agent", READ, "/p", GrantDecision.ALLOWED)
    await ledger.record("agent", READ, "/p/secrets", GrantDecision.DENIED)

    denied = await ledger.lookup("agent", READ, "/p/secrets/key.txt")
    allowed = await ledger.lookup("agent", READ, "/p/src/a.py")

    assert denied.decision == GrantDecision.DENIED
    assert allowed.decision == GrantDecision.ALLOWED


@pytest.mark.asyncio
async def test_rerecording_a_scope_replaces_the_grant(ledger):
    await ledger.record("agent", READ, "/p", GrantDecision.DENIED)
    await ledger.record("agent", READ, "/p", GrantDecision.ALLOWED)

    grant = await ledger.lookup("agent", READ, "/p/a.py")

    assert grant.allowed
    assert len(await ledger.grants("agent")) == 1


@pytest.mark.asyncio
async def test_conflicting_tie_requires_fresh_approval(ledger):
    # Same specificity, different spellings of the same command prefix
    await ledger.record("agent", EXEC, "git", GrantDecision.ALLOWED)
    await ledger.record("agent", EXEC, "/usr/bin/git", GrantDecision.DENIED)

    assert await ledger.lookup("agent", EXEC, ("git", "log")) is None


@pytest.mark.asyncio
async def test_agreeing_tie_returns_most_recent(ledger):
    first = await ledger.record("agent", EXEC, "git", GrantDecision.ALLOWED)
    second = await ledger.record("agent", EXEC, "/usr/bin/git", GrantDecision.ALLOWED)

    grant = await ledger.lookup("agent", EXEC, ("git", "log"))

    assert grant.sequence == second.sequence
    assert grant.sequence > first.sequence


# ============================================================================
# ONE-SHOT, REVOKE, CLEAR
# ============================================================================


@pytest.mark.asyncio
async def test_one_shot_grant_is_consumed_by_lookup(ledger):
    await ledger.record("agent", EXEC, "make", GrantDecision.ALLOWED, Expiry.ONE_SHOT)

    assert (await ledger.lookup("agent", EXEC, ("make", "test"))).one_shot
    assert await ledger.lookup("agent", EXEC, ("make", "test")) is None


@pytest.mark.asyncio
async def test_consume_only_removes_the_same_grant(ledger):
    old = await ledger.record("agent", EXEC, "make", GrantDecision.ALLOWED, Expiry.ONE_SHOT)
    await ledger.record("agent", EXEC, "make", GrantDecision.ALLOWED, Expiry.SESSION)

    assert await ledger.consume(old) is False
    assert await ledger.lookup("agent", EXEC, ("make",)) is not None


@pytest.mark.asyncio
async def test_revoke(ledger):
    await ledger.record("agent", READ, "/p", GrantDecision.ALLOWED)

    assert await ledger.revoke("agent", READ, "/p") is True
    assert await ledger.revoke("agent", READ, "/p") is False
    assert await ledger.lookup("agent", READ, "/p/a.py") is None


@pytest.mark.asyncio
async def test_clear_per_actor_and_all(ledger):
    await ledger.record("agent", READ, "/p", GrantDecision.ALLOWED)
    await ledger.record("agent", EXEC, "ls", GrantDecision.ALLOWED)
    await ledger.record("reviewer", READ, "/p", GrantDecision.DENIED)

    assert await ledger.clear("agent") == 2
    assert [g.actor_id for g in await ledger.grants()] == ["reviewer"]
    assert await ledger.clear() == 1
    assert await ledger.grants() == []


@pytest.mark.asyncio
async def test_concurrent_records_are_linearizable(ledger):
    grants = await asyncio.gather(
        *(ledger.record("agent", READ, f"/p/{i}", GrantDecision.ALLOWED) for i in range(20))
    )

    assert sorted(g.sequence for g in grants) == list(range(1, 21))


# ============================================================================
# MODELS
# ============================================================================


def test_grant_requires_actor_and_scope():
    with pytest.raises(ValueError, match="actor_id"):
        PermissionGrant(" ", READ, "/p", GrantDecision.ALLOWED, Expiry.SESSION)
    with pytest.raises(ValueError, match="scope"):
        PermissionGrant("agent", READ, "", GrantDecision.ALLOWED, Expiry.SESSION)


def test_grant_to_dict():
    grant = PermissionGrant("agent", EXEC, "git push", GrantDecision.DENIED, Expiry.ONE_SHOT, sequence=7)

    data = grant.to_dict()

    assert data["action_class"] == "command_exec"
    assert data["decision"] == "denied"
    assert data["expiry"] == "one_shot"
    assert data["sequence"] == 7
