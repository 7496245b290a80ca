"""Human-in-the-loop approval coordinator."""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, Union

from loguru import logger

from ..actions import Action, ActionClass
from ..audit import AuditEvent, AuditLogger
from ..results import Abort, Outcome, Proceed, Reason, Rejected, Valid
from .approval import (
    ApprovalDecision,
    ApprovalPresenter,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalState,
    EditedAction,
    PromptCancelled,
)
from .approval_request import build_approval_request
from .ledger import PermissionLedger
from .models import Expiry, GrantDecision, PermissionGrant

if TYPE_CHECKING:
    from ..policy import SecurityPolicy

# Re-runs an edited action through the guard that admitted the original.
Revalidator = Callable[[Action, EditedAction], Union[Valid, Rejected]]

_InflightKey = Tuple[str, ActionClass, str, str]

# Resolved requests kept for get_request lookups
RESOLVED_HISTORY = 256


@dataclass(eq=False)
class _PendingPrompt:
    """One queued or active prompt, shared by identical concurrent requests."""

    key: _InflightKey
    request: ApprovalRequest
    future: "asyncio.Future[Outcome]"
    waiters: int = 0
    task: Optional["asyncio.Task[ApprovalResponse]"] = None
    withdrawn: bool = False


class ApprovalCoordinator:
    """
    Orchestrates the approval protocol for one session.

    Flow per request:
    1. Ledger hit: ALLOWED proceeds immediately, DENIED aborts
    2. Miss: the request is queued; identical in-flight requests share it
    3. A single worker presents queued requests one at a time, re-checking
       the ledger first so a decision made meanwhile is reused
    4. The decision is recorded (approve/deny) or the edit is revalidated

    Cancellation never records a grant.
    """

    def __init__(
        self,
        ledger: PermissionLedger,
        presenter: ApprovalPresenter,
        policy: "SecurityPolicy",
        revalidate: Revalidator,
        *,
        actor_id: str = "agent",
        session_id: str = "default",
        timeout_seconds: Optional[int] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self._ledger = ledger
        self._presenter = presenter
        self._policy = policy
        self._revalidate = revalidate
        self._actor_id = actor_id
        self._session_id = session_id
        self._timeout_seconds = timeout_seconds
        self._audit = audit_logger

        self._gate = asyncio.Lock()
        self._queue: "asyncio.Queue[_PendingPrompt]" = asyncio.Queue()
        self._inflight: Dict[_InflightKey, _PendingPrompt] = {}
        self._resolved: "OrderedDict[str, ApprovalRequest]" = OrderedDict()
        self._by_request_id: Dict[str, _PendingPrompt] = {}
        self._worker: Optional["asyncio.Task[None]"] = None
        self._closed = False

    @property
    def presenter(self) -> ApprovalPresenter:
        return self._presenter

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        pending = self._by_request_id.get(request_id)
        if pending is not None:
            return pending.request
        return self._resolved.get(request_id)

    def pending_requests(self) -> List[ApprovalRequest]:
        return [p.request for p in self._inflight.values() if not p.future.done()]

    async def request_approval(
        self,
        action: Action,
        description: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> Outcome:
        """
        Decide whether a mechanically valid action may run.

        Args:
            action: Validated file or command action
            description: Human-readable description for the prompt
            actor_id: Actor proposing the action (defaults to the session actor)

        Returns:
            Proceed(final_action) or Abort(reason)

        Raises:
            asyncio.CancelledError: If the calling task is cancelled while
                waiting; the request is marked CANCELLED and nothing is recorded
        """
        actor = actor_id or self._actor_id

        async with self._gate:
            if self._closed:
                return Abort(Reason.CANCELLED)

            outcome = await self._from_ledger(actor, action, request_id=None)
            if outcome is not None:
                return outcome

            key = (actor, action.action_class, action.scope, repr(action))
            pending = self._inflight.get(key)
            if pending is None:
                pending = self._enqueue(key, actor, action, description)
            else:
                logger.debug(f"Joining in-flight approval {pending.request.request_id}")
            pending.waiters += 1

        try:
            return await asyncio.shield(pending.future)
        except asyncio.CancelledError:
            pending.waiters -= 1
            if pending.waiters <= 0:
                self._withdraw(pending, "caller cancelled")
            raise

    def cancel(self, request_id: str) -> bool:
        """Cancel a pending request. Its callers receive Abort(CANCELLED)."""
        pending = self._by_request_id.get(request_id)
        if pending is None or pending.future.done():
            return False
        self._withdraw(pending, "cancelled on request")
        return True

    def cancel_all(self) -> int:
        """Cancel every pending request. Returns how many were cancelled."""
        cancelled = 0
        for pending in list(self._inflight.values()):
            if not pending.future.done():
                self._withdraw(pending, "cancelled with all pending requests")
                cancelled += 1
        return cancelled

    async def close(self) -> None:
        """Cancel all pending requests and stop the prompt worker."""
        self._closed = True
        self.cancel_all()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        logger.debug(f"Approval coordinator closed for session {self._session_id}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _from_ledger(
        self, actor: str, action: Action, request_id: Optional[str]
    ) -> Optional[Outcome]:
        grant = await self._ledger.lookup(actor, action.action_class, action.concrete)
        if grant is None:
            return None

        if grant.allowed:
            logger.debug(f"Grant {grant.scope!r} covers {action.describe()}")
            self._audit_decision(AuditEvent.GRANT_USED, actor, action, grant.scope, request_id, expiry=grant.expiry)
            return Proceed(action)

        logger.info(f"Previously denied scope {grant.scope!r} blocks {action.describe()}")
        self._audit_decision(
            AuditEvent.APPROVAL_DENIED,
            actor,
            action,
            grant.scope,
            request_id,
            reason=Reason.PREVIOUSLY_DENIED.value,
        )
        return Abort(Reason.PREVIOUSLY_DENIED)

    def _enqueue(
        self, key: _InflightKey, actor: str, action: Action, description: Optional[str]
    ) -> _PendingPrompt:
        request = build_approval_request(
            action,
            description=description,
            actor_id=actor,
            session_id=self._session_id,
            timeout_seconds=self._timeout_seconds,
        )
        pending = _PendingPrompt(
            key=key,
            request=request,
            future=asyncio.get_running_loop().create_future(),
        )
        self._inflight[key] = pending
        self._by_request_id[request.request_id] = pending
        self._queue.put_nowait(pending)
        self._ensure_worker()

        logger.info(f"Approval requested {request.request_id}: {request.description}")
        self._audit_decision(AuditEvent.APPROVAL_REQUESTED, actor, action, request.proposed_scope, request.request_id)
        return pending

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run_worker())

    async def _run_worker(self) -> None:
        """Single consumer: at most one prompt is shown at any time."""
        while not self._closed:
            pending = await self._queue.get()
            try:
                if not pending.future.done():
                    await self._process(pending)
            except asyncio.CancelledError:
                self._finish(pending, ApprovalState.CANCELLED, Abort(Reason.CANCELLED))
                raise
            except Exception as e:
                logger.error(f"Approval worker failed on {pending.request.request_id}: {e}")
                self._finish(pending, ApprovalState.CANCELLED, Abort(Reason.CANCELLED))
            finally:
                self._queue.task_done()

    async def _process(self, pending: _PendingPrompt) -> None:
        request = pending.request
        action = request.action

        # A decision recorded while this request was queued applies to it too
        outcome = await self._from_ledger(request.actor_id, action, request.request_id)
        if outcome is not None:
            state = ApprovalState.APPROVED if outcome.ok else ApprovalState.DENIED
            self._finish(pending, state, outcome)
            return

        pending.task = asyncio.ensure_future(self._presenter.present(request))
        try:
            response = await pending.task
        except asyncio.CancelledError:
            if pending.withdrawn and not self._closed:
                logger.info(f"Prompt {request.request_id} withdrawn")
                return
            raise
        except (PromptCancelled, asyncio.TimeoutError) as e:
            logger.warning(f"Approval {request.request_id} got no decision: {e!r}")
            self._audit_cancelled(request, "no_decision")
            self._finish(pending, ApprovalState.CANCELLED, Abort(Reason.CANCELLED))
            return
        finally:
            pending.task = None

        if pending.future.done():
            # Withdrawn after the human answered; nothing is recorded
            return

        await self._apply_response(pending, response)

    async def _apply_response(self, pending: _PendingPrompt, response: ApprovalResponse) -> None:
        request = pending.request
        action = request.action
        actor = request.actor_id

        if response.decision == ApprovalDecision.APPROVE:
            expiry = response.expiry or self._policy.expiry_for(action.action_class)
            grant = await self._record(actor, action, GrantDecision.ALLOWED, expiry)
            self._audit_decision(
                AuditEvent.APPROVAL_GRANTED, actor, action, grant.scope, request.request_id, expiry=expiry
            )
            self._finish(pending, ApprovalState.APPROVED, Proceed(action))

        elif response.decision == ApprovalDecision.DENY:
            expiry = response.expiry or self._policy.expiry_for(action.action_class)
            grant = await self._record(actor, action, GrantDecision.DENIED, expiry)
            self._audit_decision(
                AuditEvent.APPROVAL_DENIED,
                actor,
                action,
                grant.scope,
                request.request_id,
                expiry=expiry,
                reason=Reason.USER_DENIED.value,
            )
            self._finish(pending, ApprovalState.DENIED, Abort(Reason.USER_DENIED))

        else:
            # An edit is untrusted input: same guard, no grant for either action
            result = self._revalidate(action, response.edited_action)
            if isinstance(result, Rejected):
                logger.warning(
                    f"Edited action for {request.request_id} rejected ({result.reason.value}): {result.detail}"
                )
                outcome: Outcome = Abort(result.reason)
            else:
                outcome = Proceed(result.value)
            self._audit_decision(
                AuditEvent.APPROVAL_EDITED,
                actor,
                action,
                request.proposed_scope,
                request.request_id,
                reason=None if outcome.ok else outcome.reason.value,
                edited_action=response.edited_action,
            )
            self._finish(pending, ApprovalState.EDITED, outcome)

    async def _record(
        self, actor: str, action: Action, decision: GrantDecision, expiry: Expiry
    ) -> PermissionGrant:
        grant = await self._ledger.record(actor, action.action_class, action.scope, decision, expiry)
        if grant.one_shot:
            # The request that obtained a one-shot decision is its only use
            await self._ledger.consume(grant)
        return grant

    def _withdraw(self, pending: _PendingPrompt, why: str) -> None:
        if pending.future.done():
            return
        pending.withdrawn = True
        logger.warning(f"Approval {pending.request.request_id} {why}")
        self._audit_cancelled(pending.request, why)
        self._finish(pending, ApprovalState.CANCELLED, Abort(Reason.CANCELLED))
        if pending.task is not None and not pending.task.done():
            pending.task.cancel()

    def _finish(self, pending: _PendingPrompt, state: ApprovalState, outcome: Outcome) -> None:
        pending.request.resolve(state)
        if not pending.future.done():
            pending.future.set_result(outcome)
        if self._inflight.get(pending.key) is pending:
            del self._inflight[pending.key]
        self._by_request_id.pop(pending.request.request_id, None)
        self._resolved[pending.request.request_id] = pending.request
        while len(self._resolved) > RESOLVED_HISTORY:
            self._resolved.popitem(last=False)
        if state.terminal:
            logger.info(f"Approval {pending.request.request_id} resolved: {pending.request.state.value}")

    def _audit_cancelled(self, request: ApprovalRequest, why: str) -> None:
        self._audit_decision(
            AuditEvent.APPROVAL_CANCELLED,
            request.actor_id,
            request.action,
            request.proposed_scope,
            request.request_id,
            reason=why,
        )

    def _audit_decision(
        self,
        event: AuditEvent,
        actor: str,
        action: Action,
        scope: str,
        request_id: Optional[str],
        expiry: Optional[Expiry] = None,
        reason: Optional[str] = None,
        edited_action: Optional[EditedAction] = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_decision(
            event,
            action_class=action.action_class.value,
            scope=scope,
            concrete=action.concrete if isinstance(action.concrete, tuple) else str(action.concrete),
            session_id=self._session_id,
            request_id=request_id,
            actor_id=actor,
            expiry=expiry.value if expiry is not None else None,
            reason=reason,
            edited_action=edited_action,
        )
