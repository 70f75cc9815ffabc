"""
Node Executor contract and registry.

Each node type has one executor implementing ``execute``. Executors
report failure by raising; a returned ``ExecutorResult`` is a success.
The registry mapping node types to executors is built once and frozen
before it is handed to the engine.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType

from phaseflow.capabilities.base import Capabilities
from phaseflow.engine.context import ExecutionContext
from phaseflow.engine.models import NodeType, WorkflowDefinition, WorkflowNode
from phaseflow.engine.resolver import Resolver


@dataclass
class ExecutorResult:
    """
    Successful result of one node execution.

    Attributes:
        output: Raw output payload recorded for the node
        variables: Variables the executor exports on its own
        branch: Branch label chosen by a conditional node
        approval_required: Ask a human to approve before recording
        approval_reason: Shown with the approval request
    """
    output: Any = None
    variables: Dict[str, Any] = field(default_factory=dict)
    branch: Optional[str] = None
    approval_required: bool = False
    approval_reason: Optional[str] = None
    status: str = "success"


@dataclass
class LoopPlan:
    """Validated loop parameters handed to the engine."""
    mode: str
    iterator_variable: str
    index_variable: Optional[str] = None
    items: Optional[List[Any]] = None
    count: Optional[int] = None
    condition: Optional[str] = None
    max_iterations: int = 1000


class EngineHooks(Protocol):
    """Engine operations executors delegate to."""

    async def request_input(
        self, scope: "ExecutionScope", node: WorkflowNode, prompt: Dict[str, Any]
    ) -> Any: ...

    async def run_loop(
        self, scope: "ExecutionScope", node: WorkflowNode, plan: LoopPlan
    ) -> Dict[str, Any]: ...

    async def run_subworkflow(
        self,
        scope: "ExecutionScope",
        node: WorkflowNode,
        definition: WorkflowDefinition,
        seed_variables: Dict[str, Any],
        timeout_ms: Optional[int],
    ) -> Dict[str, Any]: ...

    async def find_definition(
        self, definition_id: str, version: Optional[str] = None
    ) -> Optional[WorkflowDefinition]: ...


@dataclass
class ExecutionScope:
    """Everything an executor may touch while running one node."""
    instance_id: str
    context: ExecutionContext
    capabilities: Capabilities
    resolver: Resolver
    engine: EngineHooks
    depth: int = 0
    attempt: int = 0


def template_scope(resolved_input: Dict[str, Any], scope: ExecutionScope) -> Dict[str, Any]:
    """
    Resolver scope for rendering node config.

    Bare names see the node's input first, then the variables.
    """
    render_scope = dict(scope.context.scope())
    render_scope["variables"] = {**scope.context.variables, **resolved_input}
    render_scope["input"] = resolved_input
    return render_scope


class NodeExecutor(ABC):
    """Base class for node executors."""

    node_types: Iterable[NodeType] = ()

    @abstractmethod
    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        """
        Run the node.

        Args:
            node: The node definition
            resolved_input: Input computed from the node's input mappings
            scope: Context, capabilities and engine hooks

        Returns:
            ExecutorResult on success

        Raises:
            WorkflowError (or any exception) on failure
        """

    @staticmethod
    def output_variables(node: WorkflowNode, output: Any) -> Dict[str, Any]:
        """Export the whole output under ``config.output_variable`` if set."""
        name = node.config.get("output_variable")
        return {name: output} if name else {}


class ExecutorRegistry(Mapping[NodeType, NodeExecutor]):
    """
    Immutable mapping of node type to executor.

    Usage:
        registry = ExecutorRegistry.build([CodeExecutor(), HttpRequestExecutor()])
        registry[NodeType.CODE].execute(...)
    """

    def __init__(self, executors: Mapping[NodeType, NodeExecutor]):
        self._executors = MappingProxyType(dict(executors))

    @classmethod
    def build(
        cls,
        executors: Iterable[NodeExecutor],
        overrides: Optional[Mapping[NodeType, NodeExecutor]] = None,
    ) -> "ExecutorRegistry":
        table: Dict[NodeType, NodeExecutor] = {}
        for executor in executors:
            for node_type in executor.node_types:
                table[NodeType(node_type)] = executor
        if overrides:
            table.update(overrides)
        return cls(table)

    def __getitem__(self, node_type: NodeType) -> NodeExecutor:
        return self._executors[node_type]

    def __iter__(self):
        return iter(self._executors)

    def __len__(self) -> int:
        return len(self._executors)
