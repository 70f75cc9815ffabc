"""
Data Model for the Workflow Engine.

Workflow definitions, node and edge declarations, mapping rules, and the
records the engine produces while running an instance (node outputs,
execution state, approval requests).
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from phaseflow.config import settings


# ============================================================
# Enums
# ============================================================

class NodeType(str, Enum):
    """Kinds of nodes a workflow can contain."""
    AGENT = "agent"
    PLANNING = "planning"      # Agent variant: produces a plan
    WRITING = "writing"        # Agent variant: produces content
    GATE = "gate"              # Agent variant: quality gate with a predicate
    USER_INPUT = "user_input"
    CODE = "code"
    HTTP_REQUEST = "http_request"
    FILE_OPERATION = "file_operation"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    SUBWORKFLOW = "subworkflow"


AGENT_NODE_TYPES = (NodeType.AGENT, NodeType.PLANNING, NodeType.WRITING, NodeType.GATE)


class EdgeType(str, Enum):
    """How the engine follows an edge."""
    SEQUENTIAL = "sequential"
    CONDITIONAL = "conditional"  # Taken when the source's branch label matches
    LOOP = "loop"                # From a loop node to the first node of its body
    REJECTION = "rejection"      # Taken when the source's approval is rejected


class InstanceStatus(str, Enum):
    """Lifecycle status of a workflow instance."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (InstanceStatus.COMPLETED, InstanceStatus.FAILED)


class NodeState(str, Enum):
    """State of the latest occurrence of a node within an instance."""
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting-approval"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutputStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RequestKind(str, Enum):
    """What a pending request waits for."""
    APPROVAL = "approval"
    INPUT = "input"


# ============================================================
# Definition Schemas
# ============================================================

class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff."""
    max_retries: int = Field(0, ge=0, description="Retries after the first attempt")
    base_delay_ms: int = Field(
        default_factory=lambda: settings.DEFAULT_RETRY_DELAY_MS, ge=0
    )
    backoff_multiplier: float = Field(
        default_factory=lambda: settings.DEFAULT_BACKOFF_MULTIPLIER, ge=1.0
    )

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retrying after the given 0-based attempt."""
        return self.base_delay_ms * (self.backoff_multiplier ** attempt) / 1000.0


class InputMapping(BaseModel):
    """
    Computes one key of a node's input from the context.

    Exactly one of ``source`` (a path) or ``template`` (a ``{{path}}``
    string) is used; ``transform`` is an expression applied afterwards
    with the looked-up value bound to ``value``.
    """
    target: str = Field(..., description="Key in the node's resolved input")
    source: Optional[str] = Field(None, description="Path, e.g. 'nodes.fetch.output.body'")
    template: Optional[str] = Field(None, description="String template with {{path}} references")
    default: Any = Field(None, description="Used when the source path is missing")
    transform: Optional[str] = Field(None, description="Expression applied to 'value'")

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class OutputMapping(BaseModel):
    """Writes part of a node's result back into a context variable."""
    target: str = Field(..., description="Variable name to write")
    source: str = Field("output", description="Path rooted at 'output', 'input' or the context")
    default: Any = None
    transform: Optional[str] = None

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class WorkflowNode(BaseModel):
    """One step of a workflow."""
    id: str
    name: str = ""
    type: NodeType
    description: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    inputs: List[InputMapping] = Field(default_factory=list)
    outputs: List[OutputMapping] = Field(default_factory=list)
    retry: Optional[RetryPolicy] = None
    timeout_ms: Optional[int] = Field(None, gt=0)
    skip_condition: Optional[str] = None
    requires_approval: bool = False
    continue_on_error: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.id


class WorkflowEdge(BaseModel):
    """A directed edge between two nodes."""
    source: str
    target: str
    type: EdgeType = EdgeType.SEQUENTIAL
    label: Optional[str] = Field(None, description="Branch label for conditional edges")
    default: bool = Field(False, description="Taken when no conditional label matches")


class WorkflowDefinition(BaseModel):
    """
    A versioned workflow graph.

    When ``edges`` is empty the nodes run in declaration order.

    Attributes:
        variables: Declared variables and their initial values
        outputs: Variables folded back into a parent when run as a sub-workflow
        entry_point: First node to run (defaults to the first declared node)
    """
    id: str
    version: str = "1"
    name: str = ""
    description: str = ""
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    outputs: List[str] = Field(default_factory=list)
    entry_point: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "greeting",
                "version": "1",
                "name": "Greeting",
                "nodes": [
                    {"id": "compose", "type": "code", "config": {
                        "code": "result = 'Hello, ' + variables['name']",
                        "output_variable": "greeting",
                    }},
                ],
                "variables": {"name": "world"},
            }
        }

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


# ============================================================
# Runtime Records
# ============================================================

class NodeOutput(BaseModel):
    """The recorded result of one node execution. Never mutated once recorded."""
    node_id: str
    node_name: str
    timestamp: datetime = Field(default_factory=datetime.now)
    status: OutputStatus
    output: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_trace: Optional[str] = None

    class Config:
        frozen = True


class ApprovalRequest(BaseModel):
    """A pending human decision: an approval or a user input value."""
    instance_id: str
    node_id: str
    phase_name: str
    kind: RequestKind = RequestKind.APPROVAL
    created_at: datetime = Field(default_factory=datetime.now)
    payload: Dict[str, Any] = Field(default_factory=dict)


class WorkflowExecutionState(BaseModel):
    """Externally visible state of one workflow instance."""
    instance_id: str
    definition_id: str
    version: str
    status: InstanceStatus = InstanceStatus.PENDING
    current_node: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_node_id: Optional[str] = None
    parent_instance_id: Optional[str] = None
    depth: int = 0
    project_root: Optional[str] = None
    node_states: Dict[str, NodeState] = Field(default_factory=dict)
    pending_request: Optional[ApprovalRequest] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
