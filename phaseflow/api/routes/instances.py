"""
Workflow Instance Routes.

Endpoints for starting, inspecting and stopping instances and for the
human decisions they wait on.
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, HTTPException, status
import logging

from phaseflow.api.deps import engine, event_bus
from phaseflow.api.schemas import (
    ApproveRequest,
    DecisionResponse,
    ErrorResponse,
    EventListResponse,
    InstanceListResponse,
    RejectRequest,
    StartWorkflowRequest,
    StartWorkflowResponse,
    UserInputRequest,
)
from phaseflow.capabilities import ProjectFileSystem
from phaseflow.config import settings
from phaseflow.engine.approvals import UNSET
from phaseflow.engine.errors import DefinitionNotFound, InvalidDefinition, InvalidStartNode, PathViolation
from phaseflow.engine.models import InstanceStatus, WorkflowExecutionState
from phaseflow.storage.memory import run_record_storage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/instances", tags=["Instances"])


def _get_state(instance_id: str) -> WorkflowExecutionState:
    state = engine.get_workflow_state(instance_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Instance '{instance_id}' not found")
    return state


def _project_root(requested: Optional[str]) -> Optional[str]:
    """Confine a client supplied project folder to the server's project root."""
    if not requested:
        return None
    return str(ProjectFileSystem(settings.PROJECT_ROOT).resolve(requested))


def _decision(instance_id: str, node_id: str, accepted: bool, action: str) -> DecisionResponse:
    if not accepted:
        _get_state(instance_id)
        raise HTTPException(
            status_code=409,
            detail=f"No pending {action} for node '{node_id}' in instance '{instance_id}'",
        )
    return DecisionResponse(
        instance_id=instance_id,
        node_id=node_id,
        accepted=True,
        message=f"{action.capitalize()} accepted",
    )


# ============================================================
# Lifecycle Endpoints
# ============================================================

@router.post(
    "",
    response_model=StartWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid start node, definition or project folder"},
        404: {"model": ErrorResponse, "description": "Definition not found"},
    },
)
async def start_instance(request: StartWorkflowRequest) -> StartWorkflowResponse:
    """
    Start a workflow instance.

    Returns immediately; follow progress with `GET /instances/{id}` or
    the WebSocket stream at `/ws/instances/{id}`.
    """
    try:
        instance_id = await engine.start_workflow(
            request.definition_id,
            version=request.version,
            seed_variables=request.variables,
            start_node=request.start_node,
            reference=request.reference,
            user_id=request.user_id,
            project_root=_project_root(request.project_root),
        )
    except DefinitionNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except (InvalidStartNode, InvalidDefinition, PathViolation) as e:
        raise HTTPException(status_code=400, detail=e.message)

    return StartWorkflowResponse(
        instance_id=instance_id,
        definition_id=request.definition_id,
        status=InstanceStatus.PENDING,
    )


@router.get("", response_model=InstanceListResponse)
async def list_instances(running_only: bool = False) -> InstanceListResponse:
    """List retained instances, or only those still running."""
    states = engine.get_running_workflows() if running_only else engine.list_instances()
    return InstanceListResponse(instances=states, total=len(states))


@router.get(
    "/{instance_id}",
    response_model=WorkflowExecutionState,
    responses={404: {"model": ErrorResponse}},
)
async def get_instance(instance_id: str) -> WorkflowExecutionState:
    """Get the current execution state of an instance."""
    return _get_state(instance_id)


@router.get("/{instance_id}/context")
async def get_instance_context(instance_id: str) -> Dict[str, Any]:
    """Snapshot of an instance's variables, node outputs and loop frames."""
    snapshot = engine.get_context_snapshot(instance_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Instance '{instance_id}' not found")
    return snapshot


@router.get("/{instance_id}/events", response_model=EventListResponse)
async def get_instance_events(instance_id: str) -> EventListResponse:
    """Events published so far for an instance."""
    _get_state(instance_id)
    events = event_bus.history(instance_id)
    return EventListResponse(instance_id=instance_id, events=events, total=len(events))


@router.get("/{instance_id}/record")
async def get_instance_record(instance_id: str) -> Dict[str, Any]:
    """Persisted record of an instance (kept after the instance is evicted)."""
    stored = await run_record_storage.get(instance_id)
    if stored is None:
        raise HTTPException(status_code=404, detail=f"No record for instance '{instance_id}'")
    return stored.to_dict()


@router.post("/{instance_id}/stop", response_model=WorkflowExecutionState)
async def stop_instance(instance_id: str) -> WorkflowExecutionState:
    """Request cooperative cancellation of a running instance."""
    state = _get_state(instance_id)
    if not engine.stop_workflow(instance_id):
        raise HTTPException(
            status_code=409,
            detail=f"Instance '{instance_id}' already finished with status '{state.status.value}'",
        )
    return _get_state(instance_id)


# ============================================================
# Decision Endpoints
# ============================================================

@router.post("/{instance_id}/nodes/{node_id}/approve", response_model=DecisionResponse)
async def approve_phase(instance_id: str, node_id: str, request: ApproveRequest) -> DecisionResponse:
    """Approve a phase awaiting approval, optionally with an edited output."""
    output = request.output if "output" in request.model_fields_set else UNSET
    accepted = engine.approve_phase(instance_id, node_id, output)
    return _decision(instance_id, node_id, accepted, "approval")


@router.post("/{instance_id}/nodes/{node_id}/reject", response_model=DecisionResponse)
async def reject_phase(instance_id: str, node_id: str, request: RejectRequest) -> DecisionResponse:
    """Reject a phase awaiting approval."""
    accepted = engine.reject_phase(instance_id, node_id, request.reason)
    return _decision(instance_id, node_id, accepted, "approval")


@router.post("/{instance_id}/nodes/{node_id}/input", response_model=DecisionResponse)
async def supply_input(instance_id: str, node_id: str, request: UserInputRequest) -> DecisionResponse:
    """Supply the value a user input node is waiting for."""
    accepted = engine.supply_user_input(instance_id, node_id, request.value)
    return _decision(instance_id, node_id, accepted, "input")
