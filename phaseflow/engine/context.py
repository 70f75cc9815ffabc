"""
Execution Context for Workflow Instances.

The context is the per-instance store every node reads from and writes
to: variables, the latest output of each completed node, the full output
history, the active loop frames and read-only reference data.
"""

from typing import Any, Dict, List, Mapping, Optional
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from copy import deepcopy

from phaseflow.engine.models import NodeOutput


@dataclass
class LoopFrame:
    """
    One active loop iteration.

    ``item`` is the collection element for for-each loops and the
    iteration index otherwise.
    """
    loop_node_id: str
    iterator_variable: str
    index: int = 0
    total: Optional[int] = None
    item: Any = None
    index_variable: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loop_node_id": self.loop_node_id,
            "iterator_variable": self.iterator_variable,
            "index_variable": self.index_variable,
            "index": self.index,
            "total": self.total,
            "item": self.item,
        }


class ExecutionContext:
    """
    Variable and output store owned by exactly one instance.

    Only the engine task running the instance writes to it, one node at
    a time, so no locking is needed.

    Attributes:
        variables: Current variable values
        node_outputs: Latest output per node, in completion order
        history: Every recorded output, including repeated loop executions
        loop_stack: Active loop frames, innermost last
        reference: Read-only data supplied by the host (project ids etc.)
    """

    def __init__(
        self,
        variables: Optional[Dict[str, Any]] = None,
        reference: Optional[Mapping[str, Any]] = None,
        user_id: Optional[str] = None,
        project_root: Optional[str] = None,
    ):
        self.variables: Dict[str, Any] = dict(variables or {})
        self.node_outputs: Dict[str, NodeOutput] = {}
        self.history: List[NodeOutput] = []
        self.loop_stack: List[LoopFrame] = []
        self.reference: Mapping[str, Any] = MappingProxyType(dict(reference or {}))
        self.user_id = user_id
        self.project_root = project_root
        self.started_at = datetime.now()

    def get(self, name: str, default: Any = None) -> Any:
        return self.variables.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def update(self, values: Dict[str, Any]) -> None:
        self.variables.update(values)

    def record(self, output: NodeOutput) -> None:
        """Record a node output; re-executions move the node to the end."""
        self.node_outputs.pop(output.node_id, None)
        self.node_outputs[output.node_id] = output
        self.history.append(output)

    def get_output(self, node_id: str) -> Optional[NodeOutput]:
        return self.node_outputs.get(node_id)

    @property
    def current_loop(self) -> Optional[LoopFrame]:
        return self.loop_stack[-1] if self.loop_stack else None

    def push_loop(self, frame: LoopFrame) -> None:
        self.loop_stack.append(frame)
        self.variables[frame.iterator_variable] = frame.item
        if frame.index_variable:
            self.variables[frame.index_variable] = frame.index

    def pop_loop(self) -> LoopFrame:
        return self.loop_stack.pop()

    def scope(self) -> Dict[str, Any]:
        """Namespace the resolver evaluates paths and expressions against."""
        frame = self.current_loop
        return {
            "variables": self.variables,
            "nodes": {
                node_id: {
                    "output": out.output,
                    "variables": out.variables,
                    "status": out.status.value,
                    "error": out.error,
                }
                for node_id, out in self.node_outputs.items()
            },
            "reference": self.reference,
            "loop": frame.to_dict() if frame else {},
        }

    def seed_variables(self) -> Dict[str, Any]:
        """Independent copy of the variables, used to seed a child instance."""
        return deepcopy(self.variables)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variables": deepcopy(self.variables),
            "node_outputs": {
                node_id: out.model_dump(mode="json")
                for node_id, out in self.node_outputs.items()
            },
            "history": [out.model_dump(mode="json") for out in self.history],
            "loop_stack": [frame.to_dict() for frame in self.loop_stack],
            "reference": dict(self.reference),
            "user_id": self.user_id,
            "project_root": self.project_root,
            "started_at": self.started_at.isoformat(),
        }
