"""
API endpoints for workflows and workflow suggestions.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from sophia.api_gateway.models import ExecuteWorkflowRequest, MessageResponse
from sophia.workflow.models import (
    Workflow,
    WorkflowExecutionResult,
    WorkflowProgress,
    WorkflowSuggestion,
    WorkflowSuggestionRequest,
)
from sophia.workflow.service import WorkflowService
from sophia.workflow.suggestions import LLMWorkflowService


# Set up logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/api/workflows",
    tags=["workflows"],
    responses={404: {"description": "Not found"}}
)


def get_workflow_service(request: Request) -> WorkflowService:
    return request.app.state.workflow_service


def get_suggestion_service(request: Request) -> LLMWorkflowService:
    service = request.app.state.suggestion_service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workflow suggestions are not configured"
        )
    return service


@router.get("", response_model=List[Workflow])
async def list_workflows(service: WorkflowService = Depends(get_workflow_service)):
    return await service.list_workflows()


@router.post("", response_model=Workflow, status_code=status.HTTP_201_CREATED)
async def create_workflow(workflow: Dict[str, Any], service: WorkflowService = Depends(get_workflow_service)):
    """Save a workflow definition; referenced tools may not exist yet."""
    return await service.save_workflow(workflow)


@router.post("/suggestions", response_model=List[WorkflowSuggestion])
async def get_suggestions(
    request: WorkflowSuggestionRequest,
    service: LLMWorkflowService = Depends(get_suggestion_service)
):
    """
    Ask the LLM for up to three workflows composed of the available tools.

    Args:
        request: Task description and the tools the suggestions may use

    Returns:
        Suggestions ordered by confidence
    """
    return await service.get_suggestions(request)


@router.get("/executions/{execution_id}", response_model=WorkflowProgress)
async def get_workflow_progress(execution_id: str, service: WorkflowService = Depends(get_workflow_service)):
    """Progress of a running or finished execution."""
    return await service.get_workflow_progress(execution_id)


@router.delete("/executions/{execution_id}", response_model=MessageResponse)
async def clear_workflow_progress(execution_id: str, service: WorkflowService = Depends(get_workflow_service)):
    service.clear_progress(execution_id)
    return MessageResponse(message=f"Progress of {execution_id} cleared")


@router.get("/{workflow_id}", response_model=Workflow)
async def get_workflow(workflow_id: str, service: WorkflowService = Depends(get_workflow_service)):
    workflow = await service.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Workflow '{workflow_id}' not found")
    return workflow


@router.api_route("/{workflow_id}", methods=["PUT", "PATCH"], response_model=Workflow)
async def update_workflow(
    workflow_id: str,
    updates: Dict[str, Any],
    service: WorkflowService = Depends(get_workflow_service)
):
    return await service.update_workflow(workflow_id, updates)


@router.delete("/{workflow_id}", response_model=MessageResponse)
async def delete_workflow(workflow_id: str, service: WorkflowService = Depends(get_workflow_service)):
    await service.delete_workflow(workflow_id)
    return MessageResponse(message=f"Workflow {workflow_id} deleted")


@router.post("/{workflow_id}/execute", response_model=WorkflowExecutionResult)
async def execute_workflow(
    workflow_id: str,
    request: Optional[ExecuteWorkflowRequest] = Body(None),
    service: WorkflowService = Depends(get_workflow_service)
):
    """
    Execute a workflow and wait for it to finish.

    A failed step is reported with success=false and HTTP 200.
    """
    return await service.execute_workflow(workflow_id, request.input if request else None)
