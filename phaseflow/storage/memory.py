"""
In-Memory Storage for the Workflow Engine.

Provides asyncio-safe storage for versioned workflow definitions and for
the records of finished instances. Can be replaced with a database
implementation of the same interface.
"""

from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
import asyncio
from dataclasses import dataclass, field

from phaseflow.engine.models import NodeOutput, WorkflowDefinition, WorkflowExecutionState


def version_key(version: str) -> Tuple[Tuple[int, Any], ...]:
    """Sort key so that "10" > "9" and "1.10" > "1.9"."""
    return tuple(
        (0, int(part)) if part.isdigit() else (1, part)
        for part in version.split(".")
    )


@dataclass
class StoredDefinition:
    """A registered definition version."""
    definition: WorkflowDefinition
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.definition.id,
            "version": self.definition.version,
            "name": self.definition.name,
            "description": self.definition.description,
            "node_count": len(self.definition.nodes),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class StoredRun:
    """Record of one instance: node outputs as they complete, final state at the end."""
    instance_id: str
    node_outputs: List[Dict[str, Any]] = field(default_factory=list)
    state: Optional[Dict[str, Any]] = None
    context: Optional[Dict[str, Any]] = None
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def definition_id(self) -> Optional[str]:
        return self.state["definition_id"] if self.state else None

    @property
    def status(self) -> Optional[str]:
        return self.state["status"] if self.state else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "state": self.state,
            "node_outputs": self.node_outputs,
            "context": self.context,
            "updated_at": self.updated_at.isoformat(),
        }


class DefinitionStorage:
    """
    Versioned store of workflow definitions.

    Registering an existing (id, version) replaces it for new instances
    only; running instances keep their own copy.
    """

    def __init__(self):
        self._definitions: Dict[str, Dict[str, StoredDefinition]] = {}
        self._lock = asyncio.Lock()

    async def save(self, definition: WorkflowDefinition) -> StoredDefinition:
        """
        Save a definition version.

        Args:
            definition: The definition to register

        Returns:
            The stored definition
        """
        async with self._lock:
            stored = StoredDefinition(definition=definition.model_copy(deep=True))
            self._definitions.setdefault(definition.id, {})[definition.version] = stored
            return stored

    async def get(self, definition_id: str, version: Optional[str] = None) -> Optional[StoredDefinition]:
        """Get a version, or the latest version when none is given."""
        async with self._lock:
            versions = self._definitions.get(definition_id)
            if not versions:
                return None
            if version is None:
                version = max(versions, key=version_key)
            return versions.get(version)

    async def get_definition(
        self, definition_id: str, version: Optional[str] = None
    ) -> Optional[WorkflowDefinition]:
        stored = await self.get(definition_id, version)
        return stored.definition.model_copy(deep=True) if stored else None

    async def list_versions(self, definition_id: str) -> List[str]:
        async with self._lock:
            return sorted(self._definitions.get(definition_id, {}), key=version_key)

    async def delete(self, definition_id: str, version: Optional[str] = None) -> bool:
        """Delete one version, or every version when none is given."""
        async with self._lock:
            versions = self._definitions.get(definition_id)
            if not versions:
                return False
            if version is None:
                del self._definitions[definition_id]
                return True
            if version not in versions:
                return False
            del versions[version]
            if not versions:
                del self._definitions[definition_id]
            return True

    async def list_all(self) -> List[StoredDefinition]:
        """Latest version of every definition."""
        async with self._lock:
            return [
                versions[max(versions, key=version_key)]
                for versions in self._definitions.values()
            ]

    async def exists(self, definition_id: str) -> bool:
        async with self._lock:
            return definition_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


class RunRecordStorage:
    """
    Write-only sink for the engine plus read access for the API.
    """

    def __init__(self):
        self._runs: Dict[str, StoredRun] = {}
        self._lock = asyncio.Lock()

    async def record_node(self, instance_id: str, output: NodeOutput) -> None:
        async with self._lock:
            stored = self._runs.setdefault(instance_id, StoredRun(instance_id=instance_id))
            stored.node_outputs.append(output.model_dump(mode="json"))
            stored.updated_at = datetime.now()

    async def record_instance(self, state: WorkflowExecutionState, context: Dict[str, Any]) -> None:
        async with self._lock:
            stored = self._runs.setdefault(state.instance_id, StoredRun(instance_id=state.instance_id))
            stored.state = state.model_dump(mode="json")
            stored.context = context
            stored.updated_at = datetime.now()

    async def get(self, instance_id: str) -> Optional[StoredRun]:
        async with self._lock:
            return self._runs.get(instance_id)

    async def list_all(self) -> List[StoredRun]:
        async with self._lock:
            return list(self._runs.values())

    async def list_by_definition(self, definition_id: str) -> List[StoredRun]:
        async with self._lock:
            return [r for r in self._runs.values() if r.definition_id == definition_id]

    async def delete(self, instance_id: str) -> bool:
        async with self._lock:
            if instance_id in self._runs:
                del self._runs[instance_id]
                return True
            return False

    def __len__(self) -> int:
        return len(self._runs)


# Global storage instances
definition_storage = DefinitionStorage()
run_record_storage = RunRecordStorage()
