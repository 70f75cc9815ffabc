"""
Capability interfaces consumed by the engine.

The host application supplies implementations; the engine and the
executors only depend on these protocols. Implementations are shared by
all running instances and must be safe for concurrent use.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
from dataclasses import dataclass, field
import json

from phaseflow.engine.models import NodeOutput, WorkflowDefinition, WorkflowExecutionState


@dataclass
class AgentResponse:
    """Text produced by an agent call plus free-form metadata."""
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HttpResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body)


@runtime_checkable
class DefinitionSource(Protocol):
    async def get_definition(
        self, definition_id: str, version: Optional[str] = None
    ) -> Optional[WorkflowDefinition]:
        """Return the definition, or None when (id, version) is unknown."""
        ...


@runtime_checkable
class AgentCapability(Protocol):
    async def invoke(self, prompt: str, config: Dict[str, Any]) -> AgentResponse:
        ...


@runtime_checkable
class FileSystemCapability(Protocol):
    """Filesystem access confined to one root directory."""

    def read(self, path: str) -> str: ...

    def write(self, path: str, content: str, overwrite: bool = True) -> str: ...

    def list(self, path: str = ".") -> List[str]: ...

    def delete(self, path: str) -> bool: ...

    def exists(self, path: str) -> bool: ...

    def copy(self, source: str, destination: str, overwrite: bool = True) -> str: ...

    def move(self, source: str, destination: str, overwrite: bool = True) -> str: ...


@runtime_checkable
class HttpCapability(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        ...


@runtime_checkable
class RecordSink(Protocol):
    """Write-only store for finished instances and node outputs."""

    async def record_node(self, instance_id: str, output: NodeOutput) -> None: ...

    async def record_instance(self, state: WorkflowExecutionState, context: Dict[str, Any]) -> None: ...


@dataclass
class Capabilities:
    """The capability set handed to every executor."""
    agent: Optional[AgentCapability] = None
    filesystem: Optional[FileSystemCapability] = None
    http: Optional[HttpCapability] = None
