"""
Pydantic Schemas for API Request/Response Models.

Definitions and execution states are served with the engine's own
models; these schemas cover everything around them.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from phaseflow.engine.events import WorkflowEvent
from phaseflow.engine.models import InstanceStatus, WorkflowDefinition, WorkflowExecutionState


# ============================================================
# Definition Schemas
# ============================================================

class DefinitionSummary(BaseModel):
    """Short description of a registered definition."""
    id: str
    version: str
    name: str
    description: str = ""
    node_count: int
    created_at: str


class DefinitionInfoResponse(BaseModel):
    """A definition with its graph rendered as Mermaid."""
    definition: WorkflowDefinition
    versions: List[str]
    mermaid_diagram: str
    created_at: str


class DefinitionListResponse(BaseModel):
    definitions: List[DefinitionSummary]
    total: int


# ============================================================
# Instance Schemas
# ============================================================

class StartWorkflowRequest(BaseModel):
    """Request to start a workflow instance."""
    definition_id: str = Field(..., description="ID of the workflow definition")
    version: Optional[str] = Field(None, description="Definition version (default: latest)")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Seed variables")
    start_node: Optional[str] = Field(None, description="Node to start from (default: entry point)")
    reference: Dict[str, Any] = Field(default_factory=dict, description="Read-only reference data")
    user_id: Optional[str] = None
    project_root: Optional[str] = Field(
        None, description="Project folder for file operations, inside the server's project root"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "definition_id": "article-pipeline",
                "variables": {"topic": "tide pools", "sections": ["Intro", "Life", "Care"]},
                "reference": {"project_id": "p-42"},
            }
        }


class StartWorkflowResponse(BaseModel):
    instance_id: str
    definition_id: str
    status: InstanceStatus
    message: str = "Workflow started"


class InstanceListResponse(BaseModel):
    instances: List[WorkflowExecutionState]
    total: int


class EventListResponse(BaseModel):
    instance_id: str
    events: List[WorkflowEvent]
    total: int


# ============================================================
# Decision Schemas
# ============================================================

class ApproveRequest(BaseModel):
    """Approve a pending phase, optionally replacing its output."""
    output: Any = Field(None, description="Edited output (omit to keep the original)")

    class Config:
        json_schema_extra = {
            "example": {"output": {"text": "Edited chapter outline"}}
        }


class RejectRequest(BaseModel):
    reason: str = Field("", description="Why the phase was rejected")


class UserInputRequest(BaseModel):
    value: Any = Field(..., description="Value for the pending prompt")


class DecisionResponse(BaseModel):
    instance_id: str
    node_id: str
    accepted: bool
    message: str


# ============================================================
# Error Schemas
# ============================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    status_code: int
