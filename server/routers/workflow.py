"""Workflow lifecycle and execution routes."""

from typing import Optional

from fastapi import APIRouter, Depends, status

from core.container import container
from core.logging import get_logger
from models.nodes import WorkflowCreateRequest, WorkflowUpdateRequest, ExecuteWorkflowRequest
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


def get_workflow_service() -> WorkflowService:
    return container.workflow_service()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreateRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    """Create a workflow in draft state."""
    workflow = await workflow_service.create_workflow(
        owner_id=request.owner_id,
        name=request.name,
        description=request.description,
        nodes=request.nodes,
        edges=request.edges,
        workflow_id=request.id,
    )
    return workflow.model_dump(mode="json")


@router.get("")
async def list_workflows(
    owner_id: Optional[str] = None,
    status: Optional[str] = None,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    workflows = await workflow_service.list_workflows(owner_id=owner_id, status=status)
    return {"workflows": [w.model_dump(mode="json") for w in workflows]}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    workflow = await workflow_service.get_workflow(workflow_id)
    return workflow.model_dump(mode="json")


@router.patch("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdateRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    workflow = await workflow_service.update_workflow(
        workflow_id,
        name=request.name,
        description=request.description,
        nodes=request.nodes,
        edges=request.edges,
    )
    return workflow.model_dump(mode="json")


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    await workflow_service.delete_workflow(workflow_id)


@router.post("/{workflow_id}/activate")
async def activate_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    """Activate a workflow and arm its scheduled trigger."""
    workflow = await workflow_service.activate(workflow_id)
    next_fire = workflow_service.scheduler.armed_at(workflow_id)
    return {
        "success": True,
        "workflow": workflow.model_dump(mode="json"),
        "next_fire_time": next_fire.isoformat() if next_fire else None,
    }


@router.post("/{workflow_id}/deactivate")
async def deactivate_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    workflow = await workflow_service.deactivate(workflow_id)
    return {"success": True, "workflow": workflow.model_dump(mode="json")}


@router.post("/{workflow_id}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_workflow(
    workflow_id: str,
    request: ExecuteWorkflowRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    """Submit a manual or test run; returns the execution id immediately."""
    execution_id = await workflow_service.execute(
        workflow_id,
        trigger_data=request.trigger_data,
        test=request.test,
    )
    return {"success": True, "execution_id": execution_id}


@router.get("/{workflow_id}/executions")
async def list_workflow_executions(
    workflow_id: str,
    limit: int = 50,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    await workflow_service.get_workflow(workflow_id)
    executions = await workflow_service.list_executions(workflow_id=workflow_id, limit=limit)
    return {"executions": [e.model_dump(mode="json") for e in executions]}
