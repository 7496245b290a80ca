"""Pytest fixtures and test utilities for the mediation test suite."""

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_mediation.audit import AuditLogger
from agent_mediation.governance.approval import (
    ApprovalDecision,
    ApprovalPresenter,
    ApprovalRequest,
    ApprovalResponse,
)
from agent_mediation.governance.models import Expiry
from agent_mediation.policy import SecurityPolicy
from agent_mediation.session import MediationSession

Answer = Union[Callable[[ApprovalRequest], ApprovalResponse], BaseException]


# ============================================================================
# SCRIPTED ANSWERS
# ============================================================================


def approve(expiry: Optional[Expiry] = None) -> Callable[[ApprovalRequest], ApprovalResponse]:
    return lambda request: ApprovalResponse(request.request_id, ApprovalDecision.APPROVE, expiry=expiry)


def deny(expiry: Optional[Expiry] = None) -> Callable[[ApprovalRequest], ApprovalResponse]:
    return lambda request: ApprovalResponse(request.request_id, ApprovalDecision.DENY, expiry=expiry)


def edit(replacement) -> Callable[[ApprovalRequest], ApprovalResponse]:
    return lambda request: ApprovalResponse(
        request.request_id, ApprovalDecision.EDIT, edited_action=replacement
    )


class ScriptedPresenter(ApprovalPresenter):
    """
    Presenter that answers from a script instead of a human.

    Every presented request is recorded. When ``gate`` is set, each prompt
    blocks until the event fires, which lets tests pile up concurrent
    requests behind the first prompt.
    """

    def __init__(self, *answers: Answer, gate: Optional[asyncio.Event] = None):
        self.answers: List[Answer] = list(answers)
        self.presented: List[ApprovalRequest] = []
        self.gate = gate
        self.active = 0
        self.max_active = 0
        self.prompted = asyncio.Event()

    async def present(self, request: ApprovalRequest) -> ApprovalResponse:
        self.presented.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.prompted.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            answer = self.answers.pop(0) if self.answers else approve()
            if isinstance(answer, BaseException):
                raise answer
            return answer(request)
        finally:
            self.active -= 1

    async def is_available(self) -> bool:
        return True

    def get_name(self) -> str:
        return "Scripted"


# ============================================================================
# POLICY FIXTURES
# ============================================================================


@pytest.fixture
def project_root(tmp_path) -> Path:
    """
    Provide a small project tree as the only allowed root.

    Layout:
        project/src/main.py
        project/README.md
        project/Makefile
    """
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.py").write_text("print('hello')\n")
    (root / "README.md").write_text("# project\n")
    (root / "Makefile").write_text("all:\n\ttrue\n")
    return root.resolve()


@pytest.fixture
def policy(project_root) -> SecurityPolicy:
    """Policy confined to project_root with a small size limit."""
    return SecurityPolicy(
        allowed_roots=(project_root,),
        allowed_extensions=frozenset({".py", ".md", ".txt", ""}),
        max_file_size=1024,
        max_path_length=512,
    )


# ============================================================================
# SESSION FIXTURES
# ============================================================================


@pytest.fixture
def presenter() -> ScriptedPresenter:
    """Presenter approving every request with the policy default expiry."""
    return ScriptedPresenter()


@pytest.fixture
def audit_log_path(tmp_path) -> Path:
    """Temporary audit.jsonl path, outside the project root."""
    return tmp_path / "logs" / "audit.jsonl"


@pytest.fixture
def audit_logger(audit_log_path) -> AuditLogger:
    return AuditLogger(str(audit_log_path))


@pytest.fixture
async def session(policy, presenter, project_root, audit_logger):
    """
    Provide a mediation session rooted at project_root.

    Yields:
        MediationSession using the scripted presenter

    Cleanup:
        Closes the session (cancels pending prompts, clears the ledger)
    """
    mediation = MediationSession(
        policy,
        presenter,
        session_id="test-session",
        audit_logger=audit_logger,
        cwd=project_root,
    )
    yield mediation
    await mediation.close()


# ============================================================================
# FASTMCP CONTEXT MOCK FIXTURES
# ============================================================================


@pytest.fixture
def mock_fastmcp_context():
    """
    Create mock FastMCP Context object.

    Returns:
        MagicMock with an elicit() AsyncMock
    """
    context = MagicMock()
    context.elicit = AsyncMock()
    return context


def elicit_result(data: Any = None, action: str = "accept") -> MagicMock:
    """Mock elicitation result carrying ``data``."""
    result = MagicMock()
    result.action = action
    result.data = data
    return result


# ============================================================================
# HELPERS
# ============================================================================


def read_audit_log(log_path: Path) -> List[Dict[str, Any]]:
    """
    Read and parse audit log file.

    Args:
        log_path: Path to audit.jsonl file

    Returns:
        List of audit log entries (parsed JSON objects)
    """
    if not log_path.exists():
        return []

    entries = []
    with open(log_path, "r") as f:
        for line in f:
            if line.strip():
                entries.append(json.loads(line))
    return entries
