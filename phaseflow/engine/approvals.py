"""
Approval Gate Manager.

Tracks the single outstanding human decision of each instance: an
approval of a node's output, or a value for a user input prompt. The
engine awaits a future while the instance is paused, so no thread or
task is busy while a decision is pending.
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass
import asyncio
import logging

from phaseflow.engine.errors import Cancelled, WorkflowError
from phaseflow.engine.models import ApprovalRequest, RequestKind


logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marks "no edited output supplied" (None is a valid edited output)
UNSET: Any = _Unset()


@dataclass
class Decision:
    """How a pending request was resolved."""
    kind: RequestKind
    approved: bool = True
    reason: Optional[str] = None
    value: Any = None
    output: Any = UNSET

    @property
    def output_replaced(self) -> bool:
        return self.output is not UNSET


@dataclass
class _Pending:
    request: ApprovalRequest
    future: "asyncio.Future[Decision]"


class ApprovalGateManager:
    """
    At most one pending request per instance.

    ``approve``, ``reject`` and ``supply_input`` only act on a pending
    request of the matching instance, node and kind; anything else is
    a no-op returning False, so duplicate external signals are harmless.
    """

    def __init__(self):
        self._pending: Dict[str, _Pending] = {}

    def open_request(
        self,
        instance_id: str,
        node_id: str,
        phase_name: str,
        kind: RequestKind = RequestKind.APPROVAL,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "asyncio.Future[Decision]":
        """
        Register a pending request and return the future resolving it.

        Raises:
            WorkflowError: if the instance already has a pending request
        """
        if instance_id in self._pending:
            existing = self._pending[instance_id].request
            raise WorkflowError(
                f"Instance '{instance_id}' already awaits a decision on node '{existing.node_id}'",
                node_id,
            )

        request = ApprovalRequest(
            instance_id=instance_id,
            node_id=node_id,
            phase_name=phase_name,
            kind=kind,
            payload=payload or {},
        )
        future: "asyncio.Future[Decision]" = asyncio.get_running_loop().create_future()
        self._pending[instance_id] = _Pending(request=request, future=future)
        logger.info(f"{kind.value.capitalize()} requested for {instance_id}/{node_id}")
        return future

    def get_pending(self, instance_id: str) -> Optional[ApprovalRequest]:
        pending = self._pending.get(instance_id)
        return pending.request if pending else None

    def list_pending(self) -> List[ApprovalRequest]:
        return [p.request for p in self._pending.values()]

    def _take(self, instance_id: str, node_id: str, kind: RequestKind) -> Optional[_Pending]:
        pending = self._pending.get(instance_id)
        if pending is None or pending.request.node_id != node_id or pending.request.kind != kind:
            return None
        if pending.future.done():
            return None
        del self._pending[instance_id]
        return pending

    def approve(self, instance_id: str, node_id: str, output: Any = UNSET) -> bool:
        """Approve the pending node, optionally replacing its output."""
        pending = self._take(instance_id, node_id, RequestKind.APPROVAL)
        if pending is None:
            logger.debug(f"No pending approval for {instance_id}/{node_id}")
            return False
        pending.future.set_result(Decision(kind=RequestKind.APPROVAL, approved=True, output=output))
        logger.info(f"Approved {instance_id}/{node_id}")
        return True

    def reject(self, instance_id: str, node_id: str, reason: str = "") -> bool:
        pending = self._take(instance_id, node_id, RequestKind.APPROVAL)
        if pending is None:
            logger.debug(f"No pending approval for {instance_id}/{node_id}")
            return False
        pending.future.set_result(Decision(kind=RequestKind.APPROVAL, approved=False, reason=reason))
        logger.info(f"Rejected {instance_id}/{node_id}: {reason}")
        return True

    def supply_input(self, instance_id: str, node_id: str, value: Any) -> bool:
        pending = self._take(instance_id, node_id, RequestKind.INPUT)
        if pending is None:
            logger.debug(f"No pending input request for {instance_id}/{node_id}")
            return False
        pending.future.set_result(Decision(kind=RequestKind.INPUT, value=value))
        return True

    def cancel(self, instance_id: str, reason: str = "Workflow cancelled") -> bool:
        """Resolve the instance's pending request, if any, with cancellation."""
        pending = self._pending.pop(instance_id, None)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(Cancelled(reason, pending.request.node_id))
        logger.info(f"Cancelled pending {pending.request.kind.value} for {instance_id}")
        return True

    def discard(self, instance_id: str) -> None:
        """Drop a request whose waiter has gone away (e.g. attempt timeout)."""
        pending = self._pending.pop(instance_id, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()
