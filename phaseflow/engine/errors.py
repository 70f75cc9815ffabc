"""
Error types raised by the workflow engine.

Every error carries a ``kind`` used in instance state and events, a
human-readable message, and the id of the node it originated from
when there is one.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    kind: str = "WorkflowError"
    retryable: bool = True

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "node_id": self.node_id,
        }


class DefinitionNotFound(WorkflowError):
    kind = "DefinitionNotFound"


class InvalidDefinition(WorkflowError):
    """The definition's graph failed validation."""
    kind = "InvalidDefinition"


class InvalidStartNode(WorkflowError):
    kind = "InvalidStartNode"


class NoMatchingBranch(WorkflowError):
    kind = "NoMatchingBranch"


class RecursionLimitExceeded(WorkflowError):
    kind = "RecursionLimitExceeded"
    retryable = False


class UnresolvedReference(WorkflowError):
    """A mapping, template or expression referenced a missing path."""
    kind = "UnresolvedReference"

    def __init__(self, path: str, node_id: Optional[str] = None, message: Optional[str] = None):
        super().__init__(message or f"Unresolved reference: '{path}'", node_id)
        self.path = path


class PathViolation(WorkflowError):
    kind = "PathViolation"
    retryable = False


class NodeTimeout(WorkflowError):
    """A single attempt exceeded the node's timeout."""
    kind = "Timeout"

    def __init__(self, timeout_ms: int, node_id: Optional[str] = None):
        super().__init__(f"Node timed out after {timeout_ms}ms", node_id)
        self.timeout_ms = timeout_ms


class ExecutorError(WorkflowError):
    """
    A node executor failed.

    Wraps the underlying capability failure (kept as ``__cause__``) and
    optional structured details such as an HTTP status code.
    """
    kind = "ExecutorError"

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, node_id)
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.details:
            data["details"] = self.details
        return data


class Cancelled(WorkflowError):
    kind = "Cancelled"
    retryable = False

    def __init__(self, message: str = "Workflow cancelled", node_id: Optional[str] = None):
        super().__init__(message, node_id)


class Rejected(WorkflowError):
    """A human rejected the node's output at an approval gate."""
    kind = "Rejected"
    retryable = False

    def __init__(self, reason: str, node_id: Optional[str] = None):
        super().__init__(f"Phase rejected: {reason}", node_id)
        self.reason = reason
