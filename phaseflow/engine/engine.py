"""
Workflow Engine.

Schedules workflow instances: each instance runs as one asyncio task
that walks its graph one node at a time, resolving inputs, invoking the
node's executor through the retry wrapper, recording outputs and
publishing lifecycle events until the instance completes or fails.

Usage:
    engine = WorkflowEngine(definition_storage, capabilities)
    instance_id = await engine.start_workflow("novel-pipeline", seed_variables={"topic": "tides"})
    state = await engine.wait_for(instance_id)
"""

from typing import Any, Callable, Dict, List, Optional
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime
import asyncio
import logging
import traceback
import uuid

from phaseflow.capabilities.base import Capabilities, DefinitionSource, FileSystemCapability, RecordSink
from phaseflow.capabilities.filesystem import ProjectFileSystem
from phaseflow.config import settings
from phaseflow.engine.approvals import UNSET, ApprovalGateManager, Decision
from phaseflow.engine.context import ExecutionContext, LoopFrame
from phaseflow.engine.errors import (
    Cancelled,
    DefinitionNotFound,
    ExecutorError,
    InvalidDefinition,
    InvalidStartNode,
    RecursionLimitExceeded,
    Rejected,
    WorkflowError,
)
from phaseflow.engine.events import EventBus, EventType
from phaseflow.engine.graph import WorkflowGraph
from phaseflow.engine.models import (
    InstanceStatus,
    NodeOutput,
    NodeState,
    NodeType,
    OutputStatus,
    RequestKind,
    WorkflowDefinition,
    WorkflowExecutionState,
    WorkflowNode,
)
from phaseflow.engine.resolver import Resolver
from phaseflow.engine.retry import run_with_retry
from phaseflow.executors import build_registry
from phaseflow.executors.base import ExecutionScope, ExecutorRegistry, LoopPlan, NodeExecutor


logger = logging.getLogger(__name__)


_TRANSITIONS = {
    InstanceStatus.PENDING: (InstanceStatus.RUNNING,),
    InstanceStatus.RUNNING: (InstanceStatus.PAUSED, InstanceStatus.COMPLETED, InstanceStatus.FAILED),
    InstanceStatus.PAUSED: (InstanceStatus.RUNNING,),
}

# Child failures that end the parent node with the same kind and no retry
_PROPAGATED_CHILD_ERRORS = {
    RecursionLimitExceeded.kind: RecursionLimitExceeded,
    Cancelled.kind: Cancelled,
}

# Failures that end the instance even when the node sets continue_on_error
_HALTING_ERRORS = (Cancelled, Rejected, RecursionLimitExceeded)


@dataclass
class _Instance:
    """Runtime bookkeeping of one instance. Only its own task mutates it."""
    state: WorkflowExecutionState
    definition: WorkflowDefinition
    graph: WorkflowGraph
    context: ExecutionContext
    capabilities: Capabilities
    start_node: str
    done: asyncio.Event = field(default_factory=asyncio.Event)
    stop_requested: bool = False
    task: Optional["asyncio.Task[None]"] = None
    children: List[str] = field(default_factory=list)
    steps: int = 0

    @property
    def instance_id(self) -> str:
        return self.state.instance_id


class WorkflowEngine:
    """
    Runs workflow instances concurrently on the event loop.

    Within an instance nodes run strictly one after another. Approval
    gates, user input prompts and retry delays are awaited, so a paused
    instance holds no thread.

    Args:
        definitions: Where definitions are looked up
        capabilities: Agent, filesystem and HTTP capabilities
        registry: Node type -> executor table (built-ins by default)
        event_bus: Receives lifecycle events
        record_sink: Optional write-only store for outputs and finished instances
        filesystem_factory: Builds the filesystem for a per-instance project root
    """

    def __init__(
        self,
        definitions: DefinitionSource,
        capabilities: Optional[Capabilities] = None,
        registry: Optional[ExecutorRegistry] = None,
        event_bus: Optional[EventBus] = None,
        approvals: Optional[ApprovalGateManager] = None,
        resolver: Optional[Resolver] = None,
        record_sink: Optional[RecordSink] = None,
        filesystem_factory: Callable[[str], FileSystemCapability] = ProjectFileSystem,
        retention_seconds: Optional[float] = None,
        max_node_executions: Optional[int] = None,
    ):
        self.definitions = definitions
        self.capabilities = capabilities or Capabilities()
        self.registry = registry or build_registry()
        self.event_bus = event_bus or EventBus()
        self.approvals = approvals or ApprovalGateManager()
        self.resolver = resolver or Resolver()
        self.record_sink = record_sink
        self.filesystem_factory = filesystem_factory
        self.retention_seconds = (
            settings.INSTANCE_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        )
        self.max_node_executions = max_node_executions or settings.MAX_NODE_EXECUTIONS

        self._instances: Dict[str, _Instance] = {}

    # ============================================================
    # Starting and Stopping
    # ============================================================

    async def start_workflow(
        self,
        definition_id: str,
        version: Optional[str] = None,
        seed_variables: Optional[Dict[str, Any]] = None,
        start_node: Optional[str] = None,
        reference: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        project_root: Optional[str] = None,
    ) -> str:
        """
        Start a new instance and return its id.

        The instance runs in the background; use ``wait_for`` or the
        event bus to follow it.

        Raises:
            DefinitionNotFound: if (definition_id, version) is unknown
            InvalidStartNode: if start_node is not a node of the definition
            InvalidDefinition: if the definition's graph is invalid
        """
        definition = await self.find_definition(definition_id, version)
        if definition is None:
            raise DefinitionNotFound(
                f"Workflow '{definition_id}' (version {version or 'latest'}) not found"
            )

        instance = self._create_instance(
            definition,
            seed_variables=seed_variables,
            start_node=start_node,
            reference=reference,
            user_id=user_id,
            project_root=project_root,
        )
        self._spawn(instance)
        logger.info(
            f"Started workflow '{definition.id}' v{definition.version} as {instance.instance_id}"
        )
        return instance.instance_id

    def stop_workflow(self, instance_id: str) -> bool:
        """
        Request cooperative cancellation.

        The instance stops before its next node (an in-flight node runs
        to completion) and fails with ``Cancelled``. A pending approval or
        input request is resolved with cancellation right away.

        Returns:
            False if the instance is unknown or already finished
        """
        instance = self._instances.get(instance_id)
        if instance is None or instance.state.is_terminal:
            return False

        instance.stop_requested = True
        self.approvals.cancel(instance_id)
        for child_id in instance.children:
            self.stop_workflow(child_id)
        logger.info(f"Stop requested for {instance_id}")
        return True

    async def shutdown(self) -> None:
        """Stop every live instance and wait for their tasks."""
        tasks = []
        for instance in list(self._instances.values()):
            if not instance.state.is_terminal:
                self.stop_workflow(instance.instance_id)
            if instance.task is not None and not instance.task.done():
                tasks.append(instance.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ============================================================
    # Queries
    # ============================================================

    def get_workflow_state(self, instance_id: str) -> Optional[WorkflowExecutionState]:
        instance = self._instances.get(instance_id)
        return instance.state.model_copy(deep=True) if instance else None

    def get_running_workflows(self) -> List[WorkflowExecutionState]:
        """States of all instances that have not finished."""
        return [
            instance.state.model_copy(deep=True)
            for instance in self._instances.values()
            if not instance.state.is_terminal
        ]

    def list_instances(self) -> List[WorkflowExecutionState]:
        return [instance.state.model_copy(deep=True) for instance in self._instances.values()]

    def get_context_snapshot(self, instance_id: str) -> Optional[Dict[str, Any]]:
        instance = self._instances.get(instance_id)
        return instance.context.to_dict() if instance else None

    async def wait_for(self, instance_id: str, timeout: Optional[float] = None) -> WorkflowExecutionState:
        """
        Wait until an instance reaches a terminal state.

        Raises:
            KeyError: if the instance is unknown
            asyncio.TimeoutError: if it does not finish in time
        """
        instance = self._instances.get(instance_id)
        if instance is None:
            raise KeyError(instance_id)
        await asyncio.wait_for(instance.done.wait(), timeout)
        return instance.state.model_copy(deep=True)

    async def find_definition(
        self, definition_id: str, version: Optional[str] = None
    ) -> Optional[WorkflowDefinition]:
        return await self.definitions.get_definition(definition_id, version)

    # ============================================================
    # Human Decisions
    # ============================================================

    def approve_phase(self, instance_id: str, node_id: str, output: Any = UNSET) -> bool:
        """
        Approve the node awaiting approval.

        ``output``, when given, replaces the node's output before it is
        recorded. Returns False if no matching approval is pending.
        """
        return self.approvals.approve(instance_id, node_id, output)

    def reject_phase(self, instance_id: str, node_id: str, reason: str = "") -> bool:
        """Reject the node awaiting approval. Returns False if none is pending."""
        return self.approvals.reject(instance_id, node_id, reason)

    def supply_user_input(self, instance_id: str, node_id: str, value: Any) -> bool:
        """Answer a pending user input prompt. Returns False if none is pending."""
        return self.approvals.supply_input(instance_id, node_id, value)

    # ============================================================
    # Instance Lifecycle
    # ============================================================

    def _create_instance(
        self,
        definition: WorkflowDefinition,
        seed_variables: Optional[Dict[str, Any]] = None,
        start_node: Optional[str] = None,
        reference: Optional[Any] = None,
        user_id: Optional[str] = None,
        project_root: Optional[str] = None,
        depth: int = 0,
        parent: Optional[_Instance] = None,
        instance_id: Optional[str] = None,
    ) -> _Instance:
        # Lock the definition version for this instance
        frozen = definition.model_copy(deep=True)
        graph = WorkflowGraph(frozen)

        errors = graph.validate()
        if errors:
            raise InvalidDefinition(f"Workflow '{frozen.id}' is invalid: {'; '.join(errors)}")

        if start_node is not None and graph.get_node(start_node) is None:
            raise InvalidStartNode(f"Start node '{start_node}' not found in workflow '{frozen.id}'")

        variables = deepcopy(frozen.variables)
        variables.update(deepcopy(seed_variables or {}))
        context = ExecutionContext(
            variables=variables,
            reference=reference,
            user_id=user_id,
            project_root=project_root,
        )

        capabilities = parent.capabilities if parent else self.capabilities
        if project_root and (parent is None or project_root != parent.context.project_root):
            capabilities = replace(capabilities, filesystem=self.filesystem_factory(project_root))

        state = WorkflowExecutionState(
            instance_id=instance_id or str(uuid.uuid4()),
            definition_id=frozen.id,
            version=frozen.version,
            parent_instance_id=parent.instance_id if parent else None,
            depth=depth,
            project_root=project_root,
            node_states={node.id: NodeState.PENDING for node in frozen.nodes},
        )
        instance = _Instance(
            state=state,
            definition=frozen,
            graph=graph,
            context=context,
            capabilities=capabilities,
            start_node=start_node or graph.entry_point,
        )
        self._instances[state.instance_id] = instance
        return instance

    def _spawn(self, instance: _Instance) -> None:
        instance.task = asyncio.create_task(
            self._run_instance(instance), name=f"workflow-{instance.instance_id}"
        )

    async def _run_instance(self, instance: _Instance) -> None:
        state = instance.state
        self._transition(instance, InstanceStatus.RUNNING)
        state.started_at = datetime.now()
        self._emit(instance, EventType.WORKFLOW_STARTED, data={
            "definition_id": state.definition_id,
            "version": state.version,
            "parent_instance_id": state.parent_instance_id,
        })

        try:
            await self._walk(instance, instance.start_node)
        except WorkflowError as e:
            await self._fail(instance, e)
        except asyncio.CancelledError:
            await self._fail(instance, Cancelled("Workflow task cancelled", state.current_node))
            raise
        except Exception as e:
            logger.exception(f"Unexpected engine error in {instance.instance_id}: {e}")
            await self._fail(instance, ExecutorError(str(e), state.current_node))
        else:
            await self._complete(instance)
        finally:
            instance.done.set()
            self._schedule_eviction(instance)

    def _transition(self, instance: _Instance, status: InstanceStatus) -> None:
        current = instance.state.status
        if status not in _TRANSITIONS.get(current, ()):
            raise WorkflowError(
                f"Illegal status transition {current.value} -> {status.value} "
                f"for {instance.instance_id}"
            )
        instance.state.status = status

    async def _complete(self, instance: _Instance) -> None:
        self._transition(instance, InstanceStatus.COMPLETED)
        instance.state.completed_at = datetime.now()
        instance.state.current_node = None
        logger.info(f"Workflow {instance.instance_id} completed")
        self._emit(instance, EventType.WORKFLOW_COMPLETED, data={
            "variables": deepcopy(instance.context.variables),
        })
        await self._record_instance(instance)

    async def _fail(self, instance: _Instance, error: WorkflowError) -> None:
        state = instance.state
        if state.status == InstanceStatus.PAUSED:
            self._transition(instance, InstanceStatus.RUNNING)
        self._transition(instance, InstanceStatus.FAILED)
        state.completed_at = datetime.now()
        state.error = error.message
        state.error_kind = error.kind
        state.error_node_id = error.node_id
        logger.error(f"Workflow {instance.instance_id} failed ({error.kind}): {error.message}")
        self._emit(
            instance,
            EventType.WORKFLOW_FAILED,
            node_id=error.node_id,
            data=error.to_dict(),
            error=error.message,
        )
        await self._record_instance(instance)

    def _schedule_eviction(self, instance: _Instance) -> None:
        if self.retention_seconds is None or self.retention_seconds < 0:
            return
        loop = asyncio.get_running_loop()
        loop.call_later(self.retention_seconds, self._evict, instance.instance_id)

    def _evict(self, instance_id: str) -> None:
        instance = self._instances.pop(instance_id, None)
        if instance is not None:
            self.event_bus.clear_history(instance_id)
            logger.debug(f"Evicted finished instance {instance_id}")

    def _check_stop(self, instance: _Instance) -> None:
        if instance.stop_requested:
            raise Cancelled("Workflow cancelled", instance.state.current_node)

    # ============================================================
    # Graph Walk
    # ============================================================

    async def _walk(self, instance: _Instance, start: Optional[str], stop_at: Optional[str] = None) -> None:
        """Run nodes from ``start`` until the graph ends or control reaches ``stop_at``."""
        cursor = start
        while cursor is not None and cursor != stop_at:
            self._check_stop(instance)
            node = instance.graph.get_node(cursor)
            if node is None:
                raise InvalidStartNode(f"Node '{cursor}' not found in graph", cursor)
            cursor = await self._step(instance, node)

    async def _step(self, instance: _Instance, node: WorkflowNode) -> Optional[str]:
        """Run one node occurrence and return the id of the next node."""
        state = instance.state
        context = instance.context
        graph = instance.graph

        instance.steps += 1
        if instance.steps > self.max_node_executions:
            raise ExecutorError(
                f"Maximum node executions ({self.max_node_executions}) exceeded", node.id
            )

        state.current_node = node.id

        if node.skip_condition and self.resolver.evaluate_condition(
            node.skip_condition, context.scope(), None, node.id
        ):
            return await self._skip(instance, node)

        executor = self.registry.get(node.type)
        if executor is None:
            raise ExecutorError(f"No executor registered for node type '{node.type.value}'", node.id)

        state.node_states[node.id] = NodeState.RUNNING
        self._emit(instance, EventType.NODE_STARTED, node, data={"type": node.type.value})
        logger.info(f"Executing node: {node.display_name} ({node.type.value}) in {instance.instance_id}")

        scope = ExecutionScope(
            instance_id=instance.instance_id,
            context=context,
            capabilities=instance.capabilities,
            resolver=self.resolver,
            engine=self,
            depth=state.depth,
        )
        resolved: Dict[str, Any] = {}

        async def attempt(number: int):
            scope.attempt = number
            resolved.clear()
            resolved.update(self.resolver.resolve_inputs(node, context))
            return await executor.execute(node, dict(resolved), scope)

        def on_retry(number: int, delay: float, error: WorkflowError) -> None:
            self._emit(instance, EventType.NODE_RETRYING, node, data={
                "attempt": number + 1,
                "delay_ms": round(delay * 1000),
                "kind": error.kind,
            }, error=error.message)

        try:
            result = await run_with_retry(attempt, node.retry, node.timeout_ms, node.id, on_retry)

            output = result.output
            exported = result.variables
            if result.approval_required or node.requires_approval:
                decision = await self._await_approval(instance, node, output, result.approval_reason)
                if not decision.approved:
                    return await self._handle_rejection(instance, node, output, decision)
                if decision.output_replaced:
                    output = decision.output
                    exported = {**exported, **NodeExecutor.output_variables(node, output)}

            exports = self.resolver.resolve_exports(node, output, exported, dict(resolved), context)
        except WorkflowError as e:
            return await self._handle_failure(instance, node, e)

        record = NodeOutput(
            node_id=node.id,
            node_name=node.display_name,
            status=OutputStatus.SUCCESS,
            output=deepcopy(output),
            variables=deepcopy(exports),
        )
        context.update(exports)
        context.record(record)
        state.node_states[node.id] = NodeState.COMPLETED
        self._emit(instance, EventType.NODE_COMPLETED, node, data={
            "output": output,
            "variables": exports,
        })
        await self._record_node(instance, record)

        if node.type == NodeType.CONDITIONAL:
            return graph.branch_target(node.id, result.branch)
        return graph.next_node(node.id)

    async def _skip(self, instance: _Instance, node: WorkflowNode) -> Optional[str]:
        reason = f"Skip condition met: {node.skip_condition}"
        record = NodeOutput(
            node_id=node.id,
            node_name=node.display_name,
            status=OutputStatus.SKIPPED,
            output={"skipped": True, "reason": reason},
        )
        instance.context.record(record)
        instance.state.node_states[node.id] = NodeState.SKIPPED
        self._emit(instance, EventType.NODE_SKIPPED, node, data={"reason": reason})
        logger.info(f"Skipping node {node.id}: {reason}")
        await self._record_node(instance, record)
        return instance.graph.next_node(node.id)

    async def _handle_failure(self, instance: _Instance, node: WorkflowNode, error: WorkflowError) -> Optional[str]:
        if error.node_id is None:
            error.node_id = node.id

        record = NodeOutput(
            node_id=node.id,
            node_name=node.display_name,
            status=OutputStatus.FAILED,
            error=error.message,
            error_trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        )
        instance.context.record(record)
        instance.state.node_states[node.id] = NodeState.FAILED
        self._emit(instance, EventType.NODE_FAILED, node, data=error.to_dict(), error=error.message)
        await self._record_node(instance, record)

        if node.continue_on_error and not isinstance(error, _HALTING_ERRORS):
            logger.warning(f"Node {node.id} failed, continuing: {error.message}")
            return instance.graph.next_node(node.id)
        raise error

    async def _handle_rejection(
        self, instance: _Instance, node: WorkflowNode, output: Any, decision: Decision
    ) -> Optional[str]:
        reason = decision.reason or ""
        if not instance.graph.has_rejection_handler(node.id):
            raise Rejected(reason, node.id)

        record = NodeOutput(
            node_id=node.id,
            node_name=node.display_name,
            status=OutputStatus.FAILED,
            output={"rejected": True, "reason": reason, "output": deepcopy(output)},
            error=f"Phase rejected: {reason}",
        )
        instance.context.record(record)
        instance.state.node_states[node.id] = NodeState.FAILED
        self._emit(instance, EventType.NODE_FAILED, node, data={"kind": Rejected.kind, "reason": reason},
                   error=record.error)
        await self._record_node(instance, record)
        return instance.graph.rejection_target(node.id)

    # ============================================================
    # Suspension
    # ============================================================

    async def _suspend(
        self,
        instance: _Instance,
        node: WorkflowNode,
        kind: RequestKind,
        payload: Dict[str, Any],
        event_type: EventType,
    ) -> Decision:
        """Pause the instance until the pending request is resolved."""
        future = self.approvals.open_request(
            instance.instance_id, node.id, node.display_name, kind, payload
        )
        state = instance.state
        state.node_states[node.id] = NodeState.AWAITING_APPROVAL
        state.pending_request = self.approvals.get_pending(instance.instance_id)
        self._transition(instance, InstanceStatus.PAUSED)
        self._emit(instance, EventType.WORKFLOW_PAUSED, node, data={"kind": kind.value})
        self._emit(instance, event_type, node, data={"phase_name": node.display_name, **payload})

        try:
            return await future
        finally:
            self.approvals.discard(instance.instance_id)
            state.pending_request = None
            state.node_states[node.id] = NodeState.RUNNING
            self._transition(instance, InstanceStatus.RUNNING)
            self._emit(instance, EventType.WORKFLOW_RESUMED, node, data={"kind": kind.value})

    async def _await_approval(
        self, instance: _Instance, node: WorkflowNode, output: Any, reason: Optional[str]
    ) -> Decision:
        decision = await self._suspend(
            instance,
            node,
            RequestKind.APPROVAL,
            {"output": deepcopy(output), "reason": reason},
            EventType.APPROVAL_REQUIRED,
        )
        self._emit(instance, EventType.APPROVAL_RESOLVED, node, data={
            "approved": decision.approved,
            "reason": decision.reason,
            "output_replaced": decision.output_replaced,
        })
        return decision

    async def request_input(self, scope: ExecutionScope, node: WorkflowNode, prompt: Dict[str, Any]) -> Any:
        instance = self._instances[scope.instance_id]
        self._check_stop(instance)
        decision = await self._suspend(
            instance, node, RequestKind.INPUT, prompt, EventType.USER_INPUT_REQUIRED
        )
        return decision.value

    # ============================================================
    # Loops and Sub-workflows
    # ============================================================

    async def run_loop(self, scope: ExecutionScope, node: WorkflowNode, plan: LoopPlan) -> Dict[str, Any]:
        """Run the loop body once per iteration, one frame per iteration."""
        instance = self._instances[scope.instance_id]
        context = instance.context
        body = instance.graph.loop_body(node.id)
        if body is None:
            raise ExecutorError(f"Loop node '{node.id}' has no body", node.id)

        total = len(plan.items) if plan.items is not None else plan.count
        iterations: List[Dict[str, Any]] = []
        index = 0
        while True:
            if plan.mode == "while":
                if index >= plan.max_iterations:
                    raise ExecutorError(
                        f"While loop exceeded max_iterations ({plan.max_iterations})", node.id
                    )
                if not self.resolver.evaluate_condition(
                    plan.condition, context.scope(), {"index": index}, node.id
                ):
                    break
            elif index >= total:
                break

            self._check_stop(instance)
            item = plan.items[index] if plan.items is not None else index
            frame = LoopFrame(
                loop_node_id=node.id,
                iterator_variable=plan.iterator_variable,
                index=index,
                total=total,
                item=item,
                index_variable=plan.index_variable,
            )
            history_mark = len(context.history)
            context.push_loop(frame)
            try:
                await self._walk(instance, body, stop_at=node.id)
            finally:
                context.pop_loop()

            iterations.append({
                "index": index,
                "item": deepcopy(item),
                "outputs": {
                    out.node_id: deepcopy(out.output) for out in context.history[history_mark:]
                },
            })
            index += 1

        logger.info(f"Loop {node.id} finished after {index} iterations")
        return {
            "iterations": iterations,
            "iteration_count": index,
            "last_iteration": iterations[-1] if iterations else None,
        }

    async def run_subworkflow(
        self,
        scope: ExecutionScope,
        node: WorkflowNode,
        definition: WorkflowDefinition,
        seed_variables: Dict[str, Any],
        timeout_ms: Optional[int],
    ) -> Dict[str, Any]:
        """Run a child instance to completion and collect its declared outputs."""
        parent = self._instances[scope.instance_id]
        self._check_stop(parent)

        child_id = f"{parent.instance_id}-sub-{node.id}"
        if child_id in self._instances:
            child_id = f"{child_id}-{uuid.uuid4().hex[:8]}"

        child = self._create_instance(
            definition,
            seed_variables=seed_variables,
            reference=parent.context.reference,
            user_id=parent.context.user_id,
            project_root=parent.context.project_root,
            depth=scope.depth + 1,
            parent=parent,
            instance_id=child_id,
        )
        parent.children.append(child_id)
        self._spawn(child)
        logger.info(f"Started sub-workflow '{definition.id}' as {child_id} (depth {scope.depth + 1})")

        try:
            await asyncio.wait_for(
                asyncio.shield(child.done.wait()),
                timeout=timeout_ms / 1000.0 if timeout_ms else None,
            )
        except asyncio.TimeoutError:
            self.stop_workflow(child_id)
            raise ExecutorError(
                f"Sub-workflow '{definition.id}' timed out after {timeout_ms}ms",
                node.id,
                {"child_instance_id": child_id},
            )
        except asyncio.CancelledError:
            # The parent attempt was abandoned (node timeout or task cancel)
            self.stop_workflow(child_id)
            raise

        if child.state.status != InstanceStatus.COMPLETED:
            if parent.stop_requested:
                raise Cancelled("Workflow cancelled", node.id)
            propagated = _PROPAGATED_CHILD_ERRORS.get(child.state.error_kind)
            if propagated is not None:
                raise propagated(child.state.error or propagated.kind, node.id)
            raise ExecutorError(
                f"Sub-workflow '{definition.id}' failed: {child.state.error}",
                node.id,
                {"child_instance_id": child_id, "error_kind": child.state.error_kind},
            )

        outputs = {
            name: deepcopy(child.context.variables[name])
            for name in child.definition.outputs
            if name in child.context.variables
        }
        return {"instance_id": child_id, "status": child.state.status.value, "outputs": outputs}

    # ============================================================
    # Events and Records
    # ============================================================

    def _emit(
        self,
        instance: _Instance,
        event_type: EventType,
        node: Optional[WorkflowNode] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> None:
        self.event_bus.emit(
            event_type,
            instance.instance_id,
            node_id=node.id if node else node_id,
            node_name=node.display_name if node else None,
            data=data,
            error=error,
        )

    async def _record_node(self, instance: _Instance, record: NodeOutput) -> None:
        if self.record_sink is None:
            return
        try:
            await self.record_sink.record_node(instance.instance_id, record)
        except Exception as e:
            logger.warning(f"Record sink failed for node {record.node_id}: {e}")

    async def _record_instance(self, instance: _Instance) -> None:
        if self.record_sink is None:
            return
        try:
            await self.record_sink.record_instance(
                instance.state.model_copy(deep=True), instance.context.to_dict()
            )
        except Exception as e:
            logger.warning(f"Record sink failed for instance {instance.instance_id}: {e}")
