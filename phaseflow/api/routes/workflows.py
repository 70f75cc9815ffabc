"""
Workflow Definition Routes.

Endpoints for registering, inspecting and deleting workflow definitions.
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, status
import logging

from phaseflow.api.schemas import (
    DefinitionInfoResponse,
    DefinitionListResponse,
    DefinitionSummary,
    ErrorResponse,
)
from phaseflow.engine.graph import WorkflowGraph
from phaseflow.engine.models import WorkflowDefinition
from phaseflow.storage.memory import StoredDefinition, definition_storage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["Workflows"])


async def _info(stored: StoredDefinition) -> DefinitionInfoResponse:
    definition = stored.definition
    return DefinitionInfoResponse(
        definition=definition,
        versions=await definition_storage.list_versions(definition.id),
        mermaid_diagram=WorkflowGraph(definition).to_mermaid(),
        created_at=stored.created_at.isoformat(),
    )


# ============================================================
# Definition CRUD Endpoints
# ============================================================

@router.post(
    "",
    response_model=DefinitionInfoResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Invalid workflow graph"}},
)
async def register_workflow(definition: WorkflowDefinition) -> DefinitionInfoResponse:
    """
    Register a workflow definition version.

    Re-registering an existing id and version replaces it for instances
    started afterwards; running instances are not affected.
    """
    errors = WorkflowGraph(definition).validate()
    if errors:
        raise HTTPException(status_code=400, detail=f"Invalid workflow: {'; '.join(errors)}")

    stored = await definition_storage.save(definition)
    logger.info(f"Registered workflow '{definition.id}' v{definition.version}")
    return await _info(stored)


@router.get("", response_model=DefinitionListResponse)
async def list_workflows() -> DefinitionListResponse:
    """List the latest version of every registered workflow."""
    stored = await definition_storage.list_all()
    return DefinitionListResponse(
        definitions=[DefinitionSummary(**s.to_dict()) for s in stored],
        total=len(stored),
    )


@router.get(
    "/{definition_id}",
    response_model=DefinitionInfoResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_workflow(definition_id: str, version: Optional[str] = None) -> DefinitionInfoResponse:
    """Get a workflow definition (latest version unless one is given)."""
    stored = await definition_storage.get(definition_id, version)
    if stored is None:
        raise HTTPException(
            status_code=404,
            detail=f"Workflow '{definition_id}' (version {version or 'latest'}) not found",
        )
    return await _info(stored)


@router.delete("/{definition_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(definition_id: str, version: Optional[str] = None):
    """Delete one version, or all versions of a workflow."""
    deleted = await definition_storage.delete(definition_id, version)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Workflow '{definition_id}' not found")
