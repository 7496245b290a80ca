"""Approval presenters: the human side of the approval protocol.

Two ways to reach a human are provided: an elicitation round trip
through the connected MCP client, and an interactive terminal question
asked with systemd-ask-password when no client can prompt.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from ..actions import Action, ActionClass
from .models import Expiry

EditedAction = Union[str, Sequence[str]]


class ApprovalDecision(str, Enum):
    """Human decision on a presented request."""

    APPROVE = "approve"
    DENY = "deny"
    EDIT = "edit"


class ApprovalState(str, Enum):
    """Lifecycle of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EDITED = "edited"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self != ApprovalState.PENDING


class PromptCancelled(Exception):
    """The presenter could not obtain a decision (dismissed, garbled, unavailable)."""


@dataclass
class ApprovalRequest:
    """Request for a human decision on one proposed action.

    Attributes:
        request_id: Identifier echoed back by the response
        action_class: Class of the proposed action
        description: Human-readable description of the operation
        proposed_scope: Scope a grant would cover if approved
        action: The validated action (canonical path or argv)
        actor_id: Actor that proposed the action
        session_id: Session the request belongs to
        timeout_seconds: Optional hint for the presenter; the kernel never times out
        state: Current lifecycle state
        created_at: When the request was created
        resolved_at: When the request reached a terminal state
        context_metadata: Additional context for presenters
    """

    request_id: str
    action_class: ActionClass
    description: str
    proposed_scope: str
    action: Action
    actor_id: str = "agent"
    session_id: Optional[str] = None
    timeout_seconds: Optional[int] = None
    state: ApprovalState = ApprovalState.PENDING
    created_at: float = field(default_factory=time.time)
    resolved_at: Optional[float] = None
    context_metadata: Dict[str, Any] = field(default_factory=dict)

    def resolve(self, state: ApprovalState) -> None:
        """Move to a terminal state. Terminal states are final."""
        if self.state.terminal:
            return
        self.state = state
        self.resolved_at = time.time()


@dataclass
class ApprovalResponse:
    """Human response to an approval request.

    Attributes:
        request_id: Identifier of the request being answered
        decision: Approve, deny or edit
        edited_action: Replacement path or command when decision is EDIT
        expiry: Grant lifetime chosen by the human (None = policy default)
        timestamp: Wall-clock time of the answer
    """

    request_id: str
    decision: ApprovalDecision
    edited_action: Optional[EditedAction] = None
    expiry: Optional[Expiry] = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.decision == ApprovalDecision.EDIT and not self.edited_action:
            raise ValueError("EDIT responses must carry an edited_action")


class ApprovalPresenter(ABC):
    """Abstract base class for approval presenters.

    Presenters render a request to a human and return the decision. All
    methods are async so GUI, network and terminal front ends fit the same
    interface.
    """

    @abstractmethod
    async def present(self, request: ApprovalRequest) -> ApprovalResponse:
        """Show ``request`` to a human and wait for the decision.

        Raises:
            PromptCancelled: If no decision could be obtained
            asyncio.TimeoutError: If the presenter's own timeout elapsed
        """

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if this presenter can reach a human."""

    @abstractmethod
    def get_name(self) -> str:
        """Human-readable presenter name."""


def format_prompt(request: ApprovalRequest) -> str:
    """Render the prompt text shown to the human."""
    action = request.action
    target = getattr(action, "argv", None)
    target_line = (
        f"Command argv: {json.dumps(list(target))}"
        if target is not None
        else f"Path: {getattr(action, 'path', '')}"
    )
    return "\n".join(
        [
            f"Action: {request.action_class.value}",
            f"Operation: {request.description}",
            target_line,
            f"Grant scope if approved: {request.proposed_scope}",
            "",
            "Options: approve | deny | edit",
        ]
    )


class FastMCPElicitPresenter(ApprovalPresenter):
    """Asks the connected MCP client through ``ctx.elicit``.

    Usable only when the tool handler hands over a context whose client
    implements elicitation.
    """

    def __init__(self, context: Any = None):
        self._context = context

    def set_context(self, context: Any) -> None:
        """Set FastMCP context for elicitation."""
        self._context = context

    async def is_available(self) -> bool:
        return (
            self._context is not None
            and hasattr(self._context, "elicit")
            and callable(self._context.elicit)
        )

    async def present(self, request: ApprovalRequest) -> ApprovalResponse:
        if not await self.is_available():
            raise PromptCancelled("FastMCP context not available")

        message = f"""{format_prompt(request)}

Respond with JSON or key=value pairs.

JSON example:
{{"decision": "approve", "expiry": "session"}}
{{"decision": "edit", "edited_action": ["git", "commit", "-m", "message"]}}

Or as key=value lines (semicolons also separate):
decision=deny
"""
        if request.timeout_seconds:
            result = await asyncio.wait_for(
                self._context.elicit(message), timeout=request.timeout_seconds
            )
        else:
            result = await self._context.elicit(message)

        return self._parse_response(request, result)

    def get_name(self) -> str:
        return "FastMCP Elicit"

    @classmethod
    def _parse_response(cls, request: ApprovalRequest, result: Any) -> ApprovalResponse:
        action = getattr(result, "action", None)
        if action == "decline":
            return ApprovalResponse(request_id=request.request_id, decision=ApprovalDecision.DENY)
        if action == "cancel":
            raise PromptCancelled("User cancelled the elicitation")
        if not hasattr(result, "data"):
            raise PromptCancelled("Elicitation returned no data")

        parsed = cls._parse_structured_response(result.data)
        decision = cls._parse_decision(parsed.get("decision"))
        if decision is None:
            raise PromptCancelled("Invalid approval response format")

        edited = parsed.get("edited_action") or parsed.get("action") or parsed.get("argv")
        if decision == ApprovalDecision.EDIT:
            edited = cls._parse_edited_action(edited)
            if not edited:
                raise PromptCancelled("Edit response without an edited action")
        else:
            edited = None

        return ApprovalResponse(
            request_id=request.request_id,
            decision=decision,
            edited_action=edited,
            expiry=cls._parse_expiry(parsed.get("expiry")),
        )

    @staticmethod
    def _parse_structured_response(payload: Any) -> Dict[str, Any]:
        if payload is None:
            return {}

        if isinstance(payload, dict):
            return {str(key).lower(): value for key, value in payload.items()}

        if isinstance(payload, str):
            stripped = payload.strip()
            if not stripped:
                return {}
            try:
                parsed_json = json.loads(stripped)
                if isinstance(parsed_json, dict):
                    return {str(key).lower(): value for key, value in parsed_json.items()}
            except json.JSONDecodeError:
                pass
            if "=" not in stripped and ":" not in stripped:
                return {"decision": stripped}
            return FastMCPElicitPresenter._parse_key_value_response(stripped)

        return {}

    @staticmethod
    def _parse_key_value_response(payload: str) -> Dict[str, Any]:
        parsed: Dict[str, Any] = {}
        for chunk in payload.split(";"):
            for line in chunk.splitlines():
                if not line.strip():
                    continue
                if "=" in line:
                    key, value = line.split("=", 1)
                elif ":" in line:
                    key, value = line.split(":", 1)
                else:
                    continue
                parsed[key.strip().lower()] = value.strip()
        return parsed

    @staticmethod
    def _parse_decision(raw_value: Any) -> Optional[ApprovalDecision]:
        if raw_value is None:
            return None
        normalized = str(raw_value).strip().lower()
        if normalized in {"approve", "approved", "yes", "y", "allow"}:
            return ApprovalDecision.APPROVE
        if normalized in {"deny", "denied", "no", "n", "reject"}:
            return ApprovalDecision.DENY
        if normalized in {"edit", "edited", "modify"}:
            return ApprovalDecision.EDIT
        return None

    @staticmethod
    def _parse_edited_action(raw_value: Any) -> Optional[EditedAction]:
        if raw_value is None:
            return None
        if isinstance(raw_value, (list, tuple)):
            return [str(arg) for arg in raw_value]
        if isinstance(raw_value, str):
            stripped = raw_value.strip()
            if stripped.startswith("["):
                try:
                    parsed = json.loads(stripped)
                    if isinstance(parsed, list):
                        return [str(arg) for arg in parsed]
                except json.JSONDecodeError:
                    pass
            return stripped or None
        return None

    @staticmethod
    def _parse_expiry(raw_value: Any) -> Optional[Expiry]:
        if raw_value is None:
            return None
        normalized = str(raw_value).strip().lower().replace("-", "_")
        if normalized in {"once", "one_shot", "oneshot"}:
            return Expiry.ONE_SHOT
        if normalized in {"session", "always"}:
            return Expiry.SESSION
        return None


class SystemdAskPresenter(ApprovalPresenter):
    """Presenter using systemd-ask-password for terminal prompts.

    Answers: ``yes``/``y`` (policy default lifetime), ``once``, ``always``,
    ``no``/``n``, or ``edit <replacement>``.

    Needs the systemd-ask-password binary and a terminal to ask on, so it
    serves headless and SSH sessions where no client can elicit.
    """

    async def is_available(self) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                "which",
                "systemd-ask-password",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            await proc.communicate()
            return proc.returncode == 0
        except OSError:
            return False

    async def present(self, request: ApprovalRequest) -> ApprovalResponse:
        prompt = (
            f"{request.description} [scope: {request.proposed_scope}] "
            "(yes/once/always/no/edit <replacement>)"
        )
        args = ["systemd-ask-password", "--echo"]
        if request.timeout_seconds:
            args += ["--timeout", str(request.timeout_seconds)]
        args.append(prompt)

        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            raise

        return self._parse_answer(request, stdout.decode().strip())

    @staticmethod
    def _parse_answer(request: ApprovalRequest, answer: str) -> ApprovalResponse:
        lowered = answer.lower()
        if lowered in {"yes", "y"}:
            return ApprovalResponse(request.request_id, ApprovalDecision.APPROVE)
        if lowered == "once":
            return ApprovalResponse(request.request_id, ApprovalDecision.APPROVE, expiry=Expiry.ONE_SHOT)
        if lowered == "always":
            return ApprovalResponse(request.request_id, ApprovalDecision.APPROVE, expiry=Expiry.SESSION)
        if lowered in {"no", "n"}:
            return ApprovalResponse(request.request_id, ApprovalDecision.DENY)
        if lowered.startswith("edit ") and answer[5:].strip():
            return ApprovalResponse(
                request.request_id, ApprovalDecision.EDIT, edited_action=answer[5:].strip()
            )
        raise PromptCancelled(f"Unrecognized answer: {answer!r}")

    def get_name(self) -> str:
        return "systemd Fallback"


class PresenterFactory:
    """Factory for creating and selecting approval presenters."""

    PRESENTERS = {
        "fastmcp_elicit": FastMCPElicitPresenter,
        "systemd_fallback": SystemdAskPresenter,
    }

    @classmethod
    async def create_presenter(
        cls, presenter_name: Optional[str] = None, context: Any = None
    ) -> ApprovalPresenter:
        """Create an approval presenter.

        Args:
            presenter_name: Explicit presenter name or "auto" for auto-selection
            context: FastMCP context (for the elicit presenter)

        Returns:
            First available presenter

        Raises:
            RuntimeError: If no presenter is available
        """
        preference = presenter_name or "auto"

        if preference != "auto":
            presenter_cls = cls.PRESENTERS.get(preference)
            if presenter_cls is None:
                logger.warning(f"Unknown approval presenter {preference!r}, falling back to auto")
            else:
                explicit = presenter_cls()
                if isinstance(explicit, FastMCPElicitPresenter):
                    explicit.set_context(context)
                if await explicit.is_available():
                    logger.info(f"Using explicit approval presenter: {explicit.get_name()}")
                    return explicit
                logger.warning(f"Requested presenter {preference} not available, falling back to auto")

        candidates: List[ApprovalPresenter] = [
            FastMCPElicitPresenter(context),
            SystemdAskPresenter(),
        ]
        for presenter in candidates:
            if await presenter.is_available():
                logger.info(f"Auto-selected approval presenter: {presenter.get_name()}")
                return presenter

        raise RuntimeError(
            "No approval presenters available. Pass a FastMCP context or ensure systemd is available."
        )


async def create_presenter(presenter_name: Optional[str] = None, context: Any = None) -> ApprovalPresenter:
    """Shorthand for PresenterFactory.create_presenter."""
    return await PresenterFactory.create_presenter(presenter_name, context)
