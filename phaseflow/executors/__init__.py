"""
Executors package - one executor per node type.
"""

from typing import List, Mapping, Optional

from phaseflow.engine.models import NodeType
from phaseflow.executors.base import (
    ExecutionScope,
    ExecutorRegistry,
    ExecutorResult,
    LoopPlan,
    NodeExecutor,
)
from phaseflow.executors.agent import AgentExecutor
from phaseflow.executors.code import CodeExecutor
from phaseflow.executors.conditional import ConditionalExecutor
from phaseflow.executors.file_ops import FileOperationExecutor
from phaseflow.executors.http import HttpRequestExecutor
from phaseflow.executors.loop import LoopExecutor
from phaseflow.executors.subworkflow import SubWorkflowExecutor
from phaseflow.executors.user_input import UserInputExecutor


def default_executors() -> List[NodeExecutor]:
    return [
        AgentExecutor(),
        UserInputExecutor(),
        CodeExecutor(),
        HttpRequestExecutor(),
        FileOperationExecutor(),
        ConditionalExecutor(),
        LoopExecutor(),
        SubWorkflowExecutor(),
    ]


def build_registry(overrides: Optional[Mapping[NodeType, NodeExecutor]] = None) -> ExecutorRegistry:
    """Registry with the built-in executors, optionally overriding some types."""
    return ExecutorRegistry.build(default_executors(), overrides)


__all__ = [
    "ExecutionScope",
    "ExecutorRegistry",
    "ExecutorResult",
    "LoopPlan",
    "NodeExecutor",
    "AgentExecutor",
    "CodeExecutor",
    "ConditionalExecutor",
    "FileOperationExecutor",
    "HttpRequestExecutor",
    "LoopExecutor",
    "SubWorkflowExecutor",
    "UserInputExecutor",
    "default_executors",
    "build_registry",
]
