"""
Engine package - workflow data model, context, resolver and scheduling.

The scheduler itself lives in ``phaseflow.engine.engine``.
"""

from phaseflow.engine.context import ExecutionContext, LoopFrame
from phaseflow.engine.events import EventBus, EventType, WorkflowEvent
from phaseflow.engine.graph import END, WorkflowGraph
from phaseflow.engine.models import (
    InstanceStatus,
    NodeType,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowExecutionState,
    WorkflowNode,
)
from phaseflow.engine.resolver import Resolver

__all__ = [
    "ExecutionContext",
    "LoopFrame",
    "EventBus",
    "EventType",
    "WorkflowEvent",
    "END",
    "WorkflowGraph",
    "InstanceStatus",
    "NodeType",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowExecutionState",
    "WorkflowNode",
    "Resolver",
]
